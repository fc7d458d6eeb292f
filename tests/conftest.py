"""
Shared fakes for the mesh audit tests.

FakeCluster answers list calls from in-memory counts the way the Kubernetes
client does: typed lists expose .items, custom object lists are dicts.
FakePortForward stands in for kubernetes.stream.portforward: its socket()
end is served by a tiny HTTP responder thread.
"""

import socket
import threading
from types import SimpleNamespace
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from mesh_audit import Config
from mesh_audit_clients import ClusterConnection


def k8s_list(names: List[str]) -> SimpleNamespace:
    return SimpleNamespace(items=[SimpleNamespace(metadata=SimpleNamespace(name=n)) for n in names])


def gateway(name: str, servers: List[dict]) -> dict:
    return {'metadata': {'name': name}, 'spec': {'servers': servers}}


def http_response(status: int, reason: str, body: bytes = b'') -> bytes:
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        f"Content-Type: text/plain\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"Connection: close\r\n\r\n"
    )
    return head.encode('ascii') + body


class FakeCluster:
    def __init__(self, namespaces: List[str],
                 services: Optional[Dict[str, int]] = None,
                 pods: Optional[Dict[str, int]] = None,
                 custom: Optional[Dict[tuple, List[dict]]] = None,
                 edge_pods: List[str] = ()):
        self.namespaces = namespaces
        self.services = services or {}
        self.pods = pods or {}
        self.custom = custom or {}
        self.edge_pods = list(edge_pods)

        self.core_v1 = MagicMock()
        self.core_v1.list_namespace.side_effect = self._list_namespace
        self.core_v1.list_namespaced_service.side_effect = self._list_services
        self.core_v1.list_namespaced_pod.side_effect = self._list_pods
        self.custom_objects = MagicMock()
        self.custom_objects.list_namespaced_custom_object.side_effect = self._list_custom

    def _list_namespace(self, **kwargs):
        return k8s_list(self.namespaces)

    def _list_services(self, namespace, **kwargs):
        return k8s_list([f"svc-{i}" for i in range(self.services.get(namespace, 0))])

    def _list_pods(self, namespace, label_selector=None, **kwargs):
        if label_selector is not None:
            if namespace == 'istio-system' and label_selector == 'app=edge':
                return k8s_list(self.edge_pods)
            return k8s_list([])
        return k8s_list([f"pod-{i}" for i in range(self.pods.get(namespace, 0))])

    def _list_custom(self, group, version, namespace, plural, **kwargs):
        return {'items': list(self.custom.get((plural, namespace), []))}

    def connection(self) -> ClusterConnection:
        return ClusterConnection(
            configuration=None,
            api_client=None,
            core_v1=self.core_v1,
            custom_objects=self.custom_objects,
        )


class FakePortForward:
    """Socket pair whose far end reads one HTTP request and answers it"""

    def __init__(self, response: Optional[bytes]):
        self._local, self._remote = socket.socketpair()
        self.closed = False
        self._server = threading.Thread(target=self._serve, args=(response,), daemon=True)
        self._server.start()

    def _serve(self, response):
        try:
            buf = b''
            while b'\r\n\r\n' not in buf:
                chunk = self._remote.recv(4096)
                if not chunk:
                    return
                buf += chunk
            if response is not None:
                self._remote.sendall(response)
        except OSError:
            pass
        finally:
            self._remote.close()

    def socket(self, port):
        return self._local

    def error(self, port):
        return None

    def close(self):
        self.closed = True
        self._local.close()


@pytest.fixture
def audit_config(tmp_path):
    config = Config()
    config.log_file = str(tmp_path / 'mesh_audit.log')
    config.extra_excluded_namespaces = []
    config.hostname_count_mode = 'last'
    config.fetch_metrics = True
    config.edge_namespace = 'istio-system'
    config.edge_label_selector = 'app=edge'
    config.multicluster_namespace = 'xcp-multicluster'
    return config
