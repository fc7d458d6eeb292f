#!/usr/bin/env python3
"""
Mesh Audit Report
Flat text report sink: one line per namespace, the multicluster service entry
count, then the raw edge metrics body
"""

import logging
import sys
from typing import BinaryIO, Optional

from mesh_audit_enumerator import ResourceTally

NAMESPACE_LINE = (
    "Namespace {namespace} has {services} services, {pods} pods, "
    "{gateways} gateways with {gateway_hostnames} hostnames, "
    "{virtual_services} virtual services, {destination_rules} destination rules, "
    "{service_entries} service entries, {tier1_gateways} tier1 gateway pods "
    "and {ingress_gateways} ingressgateway pods."
)


def format_namespace_line(tally: ResourceTally) -> str:
    return NAMESPACE_LINE.format(namespace=tally.namespace, **tally.counts())


def format_multicluster_line(count: int) -> str:
    return f"{count} multicluster service entries"


def report_path(cluster_name: str) -> str:
    return f"{cluster_name}.txt"


class meshAuditReport:
    """Writes report lines to <cluster>.txt, or to stdout when no cluster name is given"""

    def __init__(self, cluster_name: Optional[str] = None, stream: Optional[BinaryIO] = None):
        self.logger = logging.getLogger(__name__)
        self.cluster_name = cluster_name
        self.path = report_path(cluster_name) if cluster_name else None
        self._stream = stream
        self._owns_stream = False

    @property
    def destination(self) -> str:
        return self.path or '<stdout>'

    def open(self) -> 'meshAuditReport':
        if self._stream is None:
            if self.path:
                self._stream = open(self.path, 'wb')
                self._owns_stream = True
            else:
                self._stream = sys.stdout.buffer
        self.logger.info(f"Writing report to {self.destination}")
        return self

    def write_line(self, line: str) -> None:
        self.write_bytes((line + "\n").encode('utf-8'))

    def write_bytes(self, blob: bytes) -> None:
        if self._stream is None:
            raise ValueError("report is not open")
        self._stream.write(blob)
        self._stream.flush()

    def write_tally(self, tally: ResourceTally) -> None:
        self.write_line(format_namespace_line(tally))

    def close(self) -> None:
        if self._stream is not None and self._owns_stream:
            self._stream.close()
        self._stream = None
        self._owns_stream = False

    def __enter__(self) -> 'meshAuditReport':
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False
