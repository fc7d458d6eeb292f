#!/usr/bin/env python3
"""
Mesh Audit Errors
Exception types raised by the mesh audit modules. Kubernetes API failures
keep their ApiException type and file errors stay OSError.
"""


class MeshAuditError(Exception):
    """Base class for mesh audit failures"""


class ClusterConfigError(MeshAuditError):
    """Credentials could not be loaded or a client could not be built"""


class ClusterApiTimeout(MeshAuditError):
    """A Kubernetes API call did not answer within the request timeout"""


class GatewaySpecError(MeshAuditError):
    """A Gateway object carries a spec that cannot be decoded"""


class EdgePodNotFound(MeshAuditError):
    """No pod matched the edge label selector"""


class TunnelError(MeshAuditError):
    """Port-forward upgrade or streaming failure"""


class TunnelTimeout(TunnelError):
    """The tunnel did not become ready, or did not shut down, in time"""


class MetricsFetchError(MeshAuditError):
    """The metrics GET failed or returned a non-2xx status"""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status
