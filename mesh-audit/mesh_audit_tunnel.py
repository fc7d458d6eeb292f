#!/usr/bin/env python3
"""
Edge Metrics Tunnel
Port-forwards a local TCP port to the control-plane edge pod and fetches its
metrics endpoint over it

Lifecycle:
- IDLE -> ESTABLISHING when open() starts the forwarding thread
- ESTABLISHING -> READY once the port-forward upgrade succeeded and the local
  listener is bound
- ESTABLISHING -> FAILED on a transport error (READY -> FAILED if streaming breaks)
- READY / FAILED -> CLOSED after stop is signalled and the thread has exited

The forwarding loop runs in exactly one background thread per tunnel. It is
coordinated with the caller through a ready event, a stop event and a join.
A tunnel is never reused after CLOSED.
"""

import enum
import logging
import select
import socket
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from kubernetes.stream import portforward
import urllib3

from mesh_audit_clients import call_api
from mesh_audit_errors import EdgePodNotFound, MetricsFetchError, TunnelError, TunnelTimeout

BUFFER_SIZE = 64 * 1024
LOCAL_ADDRESS = '127.0.0.1'

logger = logging.getLogger(__name__)


class TunnelState(enum.Enum):
    IDLE = 'idle'
    ESTABLISHING = 'establishing'
    READY = 'ready'
    FAILED = 'failed'
    CLOSED = 'closed'


@dataclass(frozen=True)
class EdgePodReference:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class MetricsSnapshot:
    """Raw metrics response, written to the report verbatim"""
    status: int
    body: bytes


def find_edge_pod(core_v1, namespace: str = 'istio-system',
                  label_selector: str = 'app=edge',
                  api_timeout: float = 30) -> EdgePodReference:
    """Locate the edge pod; the lexicographically first name wins when several match"""
    pods = call_api(core_v1.list_namespaced_pod, api_timeout,
                    namespace=namespace, label_selector=label_selector)
    names = sorted(pod.metadata.name for pod in pods.items)
    if not names:
        raise EdgePodNotFound(f"edge pod does not exist in {namespace} namespace (selector {label_selector})")
    if len(names) > 1:
        logger.warning(f"{len(names)} pods match {label_selector} in {namespace}, using {names[0]}")
    return EdgePodReference(namespace=namespace, name=names[0])


class edgeMetricsTunnel:
    """Single-use port-forward to a pod plus one HTTP GET over it"""

    def __init__(self, core_v1, pod: EdgePodReference,
                 local_port: int = 8080,
                 remote_port: int = 8080,
                 metrics_path: str = '/metrics',
                 api_timeout: float = 30,
                 ready_timeout: float = 30,
                 fetch_timeout: float = 30,
                 close_timeout: float = 10,
                 poll_interval: float = 0.2,
                 connect: Optional[Callable[[], object]] = None):
        self.core_v1 = core_v1
        self.pod = pod
        self.local_port = local_port
        self.remote_port = remote_port
        self.metrics_path = metrics_path
        self.api_timeout = api_timeout
        self.ready_timeout = ready_timeout
        self.fetch_timeout = fetch_timeout
        self.close_timeout = close_timeout
        self.poll_interval = poll_interval
        self._connect = connect or self._open_portforward

        self.state = TunnelState.IDLE
        self.error: Optional[BaseException] = None
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Background forwarding thread
    # ------------------------------------------------------------------

    def _open_portforward(self):
        """Upgrade a request on the pod's portforward subresource to a stream"""
        return portforward(
            self.core_v1.connect_get_namespaced_pod_portforward,
            self.pod.name,
            self.pod.namespace,
            ports=str(self.remote_port),
            _request_timeout=self.api_timeout,
        )

    def _bind(self) -> socket.socket:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            listener.bind((LOCAL_ADDRESS, self.local_port))
            listener.listen()
        except OSError:
            listener.close()
            raise
        self.local_port = listener.getsockname()[1]
        return listener

    @staticmethod
    def _close_forwarder(forwarder) -> None:
        if forwarder is not None:
            forwarder.close()

    def _run(self) -> None:
        forwarder = None
        listener = None
        try:
            forwarder = self._connect()
            listener = self._bind()
        except Exception as e:
            self.error = e
            self.state = TunnelState.FAILED
            self.logger.error(f"port-forward to {self.pod} failed: {e}")
            self._close_forwarder(forwarder)
            # Establishment has settled; wake the waiter so it sees FAILED
            self._ready.set()
            return

        if self._stop.is_set():
            # close() gave up waiting while the upgrade was still in flight
            listener.close()
            self._close_forwarder(forwarder)
            return

        self.logger.info(f"Forwarding from {LOCAL_ADDRESS}:{self.local_port} -> {self.remote_port}")
        self.state = TunnelState.READY
        self._ready.set()

        try:
            self._serve(listener, forwarder)
        except Exception as e:
            self.error = e
            self.state = TunnelState.FAILED
            self.logger.error(f"error during port-forward: {e}")
        finally:
            listener.close()

    def _serve(self, listener: socket.socket, forwarder) -> None:
        """Accept local connections until stop; each one gets its own stream"""
        try:
            while not self._stop.is_set():
                readable, _, _ = select.select([listener], [], [], self.poll_interval)
                if not readable:
                    continue
                conn, _ = listener.accept()
                self.logger.info(f"Handling connection for {self.local_port}")
                try:
                    if forwarder is None:
                        forwarder = self._connect()
                    self._pump(conn, forwarder.socket(self.remote_port))
                    stream_error = forwarder.error(self.remote_port)
                    if stream_error:
                        self.logger.warning(f"port-forward stream error on {self.remote_port}: {stream_error}")
                finally:
                    conn.close()
                    self._close_forwarder(forwarder)
                    forwarder = None
        finally:
            self._close_forwarder(forwarder)

    def _pump(self, local, remote) -> None:
        """Copy bytes both ways until either side closes or stop fires"""
        peers = {local: remote, remote: local}
        while not self._stop.is_set():
            readable, _, _ = select.select(list(peers), [], [], self.poll_interval)
            for sock in readable:
                data = sock.recv(BUFFER_SIZE)
                if not data:
                    return
                peers[sock].sendall(data)

    # ------------------------------------------------------------------
    # Caller-side lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        if self.state is not TunnelState.IDLE:
            raise TunnelError(f"tunnel to {self.pod} cannot be opened from state {self.state.value}")
        self.state = TunnelState.ESTABLISHING
        self._thread = threading.Thread(
            target=self._run,
            name=f"port-forward {self.pod}",
            daemon=True,
        )
        self._thread.start()

    def wait_ready(self, timeout: Optional[float] = None) -> None:
        timeout = self.ready_timeout if timeout is None else timeout
        if not self._ready.wait(timeout):
            raise TunnelTimeout(f"port-forward to {self.pod} not ready after {timeout}s")
        if self.state is not TunnelState.READY:
            raise TunnelError(f"port-forward to {self.pod} failed: {self.error}") from self.error

    def fetch(self) -> MetricsSnapshot:
        """Single GET on the tunnel's local endpoint; the tunnel stays open either way"""
        if self.state is not TunnelState.READY:
            raise TunnelError(f"tunnel to {self.pod} is {self.state.value}, not ready")

        url = f"http://{LOCAL_ADDRESS}:{self.local_port}{self.metrics_path}"
        http = urllib3.PoolManager(retries=False, timeout=urllib3.Timeout(total=self.fetch_timeout))
        try:
            response = http.request('GET', url, headers={'Connection': 'close'})
        except urllib3.exceptions.HTTPError as e:
            raise MetricsFetchError(f"error generating the request to {url}: {e}") from e
        finally:
            http.clear()

        if not 200 <= response.status < 300:
            raise MetricsFetchError(f"{url} returned HTTP {response.status}", status=response.status)
        self.logger.info(f"Fetched {len(response.data)} bytes of metrics from {self.pod}")
        return MetricsSnapshot(status=response.status, body=response.data)

    def close(self) -> None:
        """Signal stop and join the forwarding thread"""
        if self.state is TunnelState.CLOSED:
            return
        self._stop.set()
        if self._thread is not None:
            self._thread.join(self.close_timeout)
            if self._thread.is_alive():
                raise TunnelTimeout(f"port-forward thread for {self.pod} still running after {self.close_timeout}s")
        self.state = TunnelState.CLOSED

    def _close_after_error(self) -> None:
        try:
            self.close()
        except TunnelError as e:
            self.logger.error(f"Failed to close tunnel after error: {e}")

    def __enter__(self) -> 'edgeMetricsTunnel':
        self.open()
        try:
            self.wait_ready()
        except BaseException:
            self._close_after_error()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.close()
        else:
            self._close_after_error()
        return False


def fetch_edge_metrics(core_v1, pod: EdgePodReference, **tunnel_options) -> MetricsSnapshot:
    """Open a tunnel to the edge pod, fetch metrics once and tear the tunnel down"""
    with edgeMetricsTunnel(core_v1, pod, **tunnel_options) as tunnel:
        return tunnel.fetch()
