#!/usr/bin/env python3
"""
Mesh Audit Cluster Clients
Builds the Kubernetes API clients used by the audit from local credentials

Credential loading order:
- Explicit kubeconfig path (KUBECONFIG / --kubeconfig), optionally with a context
- In-cluster service account
- Default kubeconfig (~/.kube/config)

SSL/TLS Handling:
- K8S_VERIFY, OCP_API_VERIFY, VERIFY_SSL force verification on or off
- K8S_CA_CERT overrides the CA bundle after it is validated with ssl
- No automatic fallback: a failed connectivity probe aborts the run
"""

import logging
import os
import ssl
from dataclasses import dataclass
from typing import Any, Optional

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
import urllib3

from mesh_audit_errors import ClusterApiTimeout, ClusterConfigError


def _is_timeout(err) -> bool:
    # NewConnectionError subclasses ConnectTimeoutError but means refused/unreachable
    return (isinstance(err, urllib3.exceptions.TimeoutError)
            and not isinstance(err, urllib3.exceptions.NewConnectionError))


def call_api(api_method, timeout: float, *args, **kwargs):
    """Run a Kubernetes API call with a request timeout.

    Timeouts surface as ClusterApiTimeout; every other error, ApiException
    included, propagates unchanged.
    """
    name = getattr(api_method, '__name__', 'API call')
    try:
        return api_method(*args, _request_timeout=timeout, **kwargs)
    except (urllib3.exceptions.TimeoutError, urllib3.exceptions.MaxRetryError) as e:
        cause = e.reason if isinstance(e, urllib3.exceptions.MaxRetryError) else e
        if _is_timeout(cause):
            raise ClusterApiTimeout(f"{name} timed out after {timeout}s") from e
        raise


@dataclass(frozen=True)
class ClusterConnection:
    """Clients and connection settings shared by the whole run"""
    configuration: Any
    api_client: Any
    core_v1: Any
    custom_objects: Any


def _is_ca_file_valid(ca_path: str) -> bool:
    """Validate a CA bundle by attempting to load it with ssl.

    Returns False if the file cannot be loaded as a trust store.
    """
    try:
        if not os.path.isfile(ca_path):
            return False
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.load_verify_locations(cafile=ca_path)
        return True
    except (OSError, ssl.SSLError) as e:
        logging.getLogger(__name__).debug(f"CA validation failed for {ca_path}: {e}")
        return False


class meshAuditClients:
    """Loads credentials and builds the typed and custom-object API clients"""

    def __init__(self, kubeconfig_path: Optional[str] = None,
                 context: Optional[str] = None,
                 verify_ssl: Optional[bool] = None,
                 ca_cert_path: Optional[str] = None,
                 probe_timeout: float = 30):
        self.logger = logging.getLogger(__name__)
        self.kubeconfig_path = kubeconfig_path
        self.context = context
        self.verify_ssl = verify_ssl
        self.ca_cert_path = ca_cert_path
        self.probe_timeout = probe_timeout

    def load_credentials(self) -> None:
        """Load kubeconfig or in-cluster credentials into the default configuration"""
        try:
            if self.kubeconfig_path:
                self.logger.info(f"Loading kubeconfig from: {self.kubeconfig_path}")
                config.load_kube_config(config_file=self.kubeconfig_path, context=self.context)
                return
            try:
                config.load_incluster_config()
                self.logger.info("Using in-cluster Kubernetes configuration")
            except ConfigException:
                config.load_kube_config(context=self.context)
                self.logger.info("Using default kubeconfig file")
        except (ConfigException, OSError) as e:
            raise ClusterConfigError(f"unable to load Kubernetes configuration: {e}") from e

    def build_configuration(self):
        """Copy the loaded configuration and apply TLS and retry settings"""
        k8s_conf = client.Configuration.get_default_copy()

        if self.verify_ssl is not None:
            k8s_conf.verify_ssl = self.verify_ssl
            if not self.verify_ssl:
                k8s_conf.assert_hostname = False
                k8s_conf.ssl_ca_cert = None
                urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self.logger.info(f"SSL verification set via environment: {self.verify_ssl}")

        if self.ca_cert_path:
            if not _is_ca_file_valid(self.ca_cert_path):
                raise ClusterConfigError(f"CA certificate is not a valid trust store: {self.ca_cert_path}")
            k8s_conf.ssl_ca_cert = self.ca_cert_path
            self.logger.info(f"Using CA cert from K8S_CA_CERT env: {self.ca_cert_path}")

        # One attempt per call; failures surface to the caller
        k8s_conf.retries = False
        return k8s_conf

    def probe(self, api_client) -> None:
        """Lightweight version call to fail fast on unreachable or unauthorized clusters"""
        try:
            version = client.VersionApi(api_client).get_code(_request_timeout=self.probe_timeout)
        except Exception as e:
            raise ClusterConfigError(f"Kubernetes API connectivity check failed: {e}") from e
        self.logger.info(f"Connected to Kubernetes {getattr(version, 'git_version', 'unknown')}")

    def connect(self) -> ClusterConnection:
        self.load_credentials()
        k8s_conf = self.build_configuration()
        try:
            api_client = client.ApiClient(configuration=k8s_conf)
            core_v1 = client.CoreV1Api(api_client)
            custom_objects = client.CustomObjectsApi(api_client)
        except Exception as e:
            raise ClusterConfigError(f"unable to create Kubernetes clients: {e}") from e
        self.probe(api_client)
        return ClusterConnection(
            configuration=k8s_conf,
            api_client=api_client,
            core_v1=core_v1,
            custom_objects=custom_objects,
        )


def build_cluster_connection(cfg) -> ClusterConnection:
    """Build the shared ClusterConnection from a mesh audit Config"""
    return meshAuditClients(
        kubeconfig_path=cfg.kubeconfig_path,
        context=cfg.kube_context,
        verify_ssl=cfg.k8s_verify_ssl,
        ca_cert_path=cfg.k8s_ca_cert_path,
        probe_timeout=cfg.api_timeout,
    ).connect()
