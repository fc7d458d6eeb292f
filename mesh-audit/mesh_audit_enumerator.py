#!/usr/bin/env python3
"""
Mesh Resource Enumerator
Counts workload and Istio/Tetrate configuration resources per namespace
"""

import logging
from dataclasses import dataclass, fields
from types import MappingProxyType
from typing import Any, Dict, Iterable, List

from mesh_audit_clients import call_api
from mesh_audit_errors import GatewaySpecError

# System namespaces that are never audited
EXCLUDED_NAMESPACES = frozenset({
    'kube-system',
    'istio-system',
    'istio-gateway',
    'tsb',
    'cert-manager',
})

# Port reserved by the mesh for cross-cluster traffic
MULTICLUSTER_GATEWAY_PORT = 15443

HOSTNAME_COUNT_LAST = 'last'
HOSTNAME_COUNT_SUM = 'sum'
HOSTNAME_COUNT_MODES = (HOSTNAME_COUNT_LAST, HOSTNAME_COUNT_SUM)


@dataclass(frozen=True)
class ResourceKind:
    group: str
    version: str
    plural: str


RESOURCE_KINDS = MappingProxyType({
    'gateways': ResourceKind('networking.istio.io', 'v1alpha3', 'gateways'),
    'virtualservices': ResourceKind('networking.istio.io', 'v1alpha3', 'virtualservices'),
    'destinationrules': ResourceKind('networking.istio.io', 'v1alpha3', 'destinationrules'),
    'serviceentries': ResourceKind('networking.istio.io', 'v1alpha3', 'serviceentries'),
    'tier1gateways': ResourceKind('install.tetrate.io', 'v1alpha1', 'tier1gateways'),
    'ingressgateways': ResourceKind('install.tetrate.io', 'v1alpha1', 'ingressgateways'),
})


@dataclass
class ResourceTally:
    """Resource counts for a single namespace"""
    namespace: str
    services: int = 0
    pods: int = 0
    gateways: int = 0
    gateway_hostnames: int = 0
    virtual_services: int = 0
    destination_rules: int = 0
    service_entries: int = 0
    tier1_gateways: int = 0
    ingress_gateways: int = 0

    def counts(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != 'namespace'}


def filter_namespaces(names: Iterable[str], extra_excluded: Iterable[str] = ()) -> List[str]:
    """Drop denylisted namespaces, keeping the order of the rest"""
    excluded = EXCLUDED_NAMESPACES | frozenset(extra_excluded)
    return [name for name in names if name not in excluded]


def count_gateway_hostnames(gateways: Iterable[Dict[str, Any]], mode: str = HOSTNAME_COUNT_LAST) -> int:
    """Count declared hosts on gateway servers, skipping the multicluster port.

    In 'last' mode every qualifying server overwrites the count, so the result is
    the host count of the last non-15443 server seen across all gateways.
    In 'sum' mode the host counts of all qualifying servers are added.
    """
    if mode not in HOSTNAME_COUNT_MODES:
        raise ValueError(f"unknown hostname count mode: {mode}")

    hostnames = 0
    for gw in gateways:
        name = (gw.get('metadata') or {}).get('name', '<unnamed>')
        spec = gw.get('spec') or {}
        if not isinstance(spec, dict):
            raise GatewaySpecError(f"gateway {name} has a non-object spec")
        servers = spec.get('servers') or []
        if not isinstance(servers, list):
            raise GatewaySpecError(f"gateway {name} has non-list spec.servers")

        for server in servers:
            if not isinstance(server, dict):
                raise GatewaySpecError(f"gateway {name} has a non-object server entry")
            port = server.get('port') or {}
            number = port.get('number') if isinstance(port, dict) else None
            if number is not None and (isinstance(number, bool) or not isinstance(number, int)):
                raise GatewaySpecError(f"gateway {name} has non-integer port number {number!r}")
            if number == MULTICLUSTER_GATEWAY_PORT:
                continue
            hosts = server.get('hosts') or []
            if not isinstance(hosts, list):
                raise GatewaySpecError(f"gateway {name} has non-list hosts on port {number}")
            if mode == HOSTNAME_COUNT_SUM:
                hostnames += len(hosts)
            else:
                hostnames = len(hosts)
    return hostnames


class meshResourceEnumerator:
    """Issues one list call per resource kind and records item counts"""

    def __init__(self, core_v1, custom_objects,
                 api_timeout: float = 30,
                 hostname_mode: str = HOSTNAME_COUNT_LAST,
                 extra_excluded: Iterable[str] = (),
                 multicluster_namespace: str = 'xcp-multicluster'):
        if hostname_mode not in HOSTNAME_COUNT_MODES:
            raise ValueError(f"unknown hostname count mode: {hostname_mode}")
        self.core_v1 = core_v1
        self.custom_objects = custom_objects
        self.api_timeout = api_timeout
        self.hostname_mode = hostname_mode
        self.extra_excluded = frozenset(extra_excluded)
        self.multicluster_namespace = multicluster_namespace
        self.logger = logging.getLogger(__name__)

    def _call(self, api_method, *args, **kwargs):
        return call_api(api_method, self.api_timeout, *args, **kwargs)

    def _list_custom(self, kind: str, namespace: str) -> List[Dict[str, Any]]:
        rk = RESOURCE_KINDS[kind]
        result = self._call(
            self.custom_objects.list_namespaced_custom_object,
            group=rk.group,
            version=rk.version,
            namespace=namespace,
            plural=rk.plural,
        )
        return result.get('items') or []

    def list_namespaces(self) -> List[str]:
        namespaces = self._call(self.core_v1.list_namespace)
        names = [ns.metadata.name for ns in namespaces.items]
        kept = filter_namespaces(names, self.extra_excluded)
        self.logger.info(f"Found {len(names)} namespaces, auditing {len(kept)}")
        return kept

    def count_resources(self, namespace: str) -> ResourceTally:
        tally = ResourceTally(namespace=namespace)

        tally.services = len(self._call(self.core_v1.list_namespaced_service, namespace=namespace).items)
        tally.pods = len(self._call(self.core_v1.list_namespaced_pod, namespace=namespace).items)

        gateways = self._list_custom('gateways', namespace)
        tally.gateways = len(gateways)
        tally.gateway_hostnames = count_gateway_hostnames(gateways, self.hostname_mode)

        tally.virtual_services = len(self._list_custom('virtualservices', namespace))
        tally.destination_rules = len(self._list_custom('destinationrules', namespace))
        tally.service_entries = len(self._list_custom('serviceentries', namespace))
        tally.tier1_gateways = len(self._list_custom('tier1gateways', namespace))
        tally.ingress_gateways = len(self._list_custom('ingressgateways', namespace))

        self.logger.debug(f"Namespace {namespace}: {tally.counts()}")
        return tally

    def count_multicluster_service_entries(self) -> int:
        return len(self._list_custom('serviceentries', self.multicluster_namespace))
