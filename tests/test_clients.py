"""
Credential loading, TLS settings and API timeout classification.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import urllib3
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

import mesh_audit_clients
from mesh_audit_clients import ClusterConnection, call_api, meshAuditClients
from mesh_audit_errors import ClusterApiTimeout, ClusterConfigError


class TestCallApi:

    def test_passes_request_timeout(self):
        api = MagicMock(return_value='ok')
        assert call_api(api, 12, namespace='team-a') == 'ok'
        api.assert_called_once_with(namespace='team-a', _request_timeout=12)

    def test_read_timeout_is_reported_as_api_timeout(self):
        def slow(**kwargs):
            raise urllib3.exceptions.ReadTimeoutError(None, '/api/v1/pods', 'read timed out')

        with pytest.raises(ClusterApiTimeout, match='slow timed out after 5s'):
            call_api(slow, 5)

    def test_connect_timeout_behind_max_retry(self):
        reason = urllib3.exceptions.ConnectTimeoutError('connect timed out')
        api = MagicMock(side_effect=urllib3.exceptions.MaxRetryError(None, '/api', reason=reason))

        with pytest.raises(ClusterApiTimeout, match='API call timed out'):
            call_api(api, 5)

    def test_refused_connection_is_not_a_timeout(self):
        reason = urllib3.exceptions.NewConnectionError(None, 'connection refused')
        error = urllib3.exceptions.MaxRetryError(None, '/api', reason=reason)
        api = MagicMock(side_effect=error)

        with pytest.raises(urllib3.exceptions.MaxRetryError) as excinfo:
            call_api(api, 5)
        assert excinfo.value is error

    def test_api_exception_passes_through(self):
        error = ApiException(status=404, reason='Not Found')
        api = MagicMock(side_effect=error)

        with pytest.raises(ApiException) as excinfo:
            call_api(api, 5)
        assert excinfo.value is error


class TestLoadCredentials:

    def test_explicit_kubeconfig_with_context(self, monkeypatch):
        load = MagicMock()
        monkeypatch.setattr(mesh_audit_clients.config, 'load_kube_config', load)

        meshAuditClients(kubeconfig_path='/tmp/kc', context='prod').load_credentials()

        load.assert_called_once_with(config_file='/tmp/kc', context='prod')

    def test_falls_back_to_default_kubeconfig(self, monkeypatch):
        load = MagicMock()
        monkeypatch.setattr(mesh_audit_clients.config, 'load_incluster_config',
                            MagicMock(side_effect=ConfigException('not in cluster')))
        monkeypatch.setattr(mesh_audit_clients.config, 'load_kube_config', load)

        meshAuditClients(context='staging').load_credentials()

        load.assert_called_once_with(context='staging')

    def test_missing_credentials_raise_config_error(self, monkeypatch):
        monkeypatch.setattr(mesh_audit_clients.config, 'load_incluster_config',
                            MagicMock(side_effect=ConfigException('not in cluster')))
        monkeypatch.setattr(mesh_audit_clients.config, 'load_kube_config',
                            MagicMock(side_effect=ConfigException('Invalid kube-config file')))

        with pytest.raises(ClusterConfigError, match='Invalid kube-config'):
            meshAuditClients().load_credentials()

    def test_unreadable_kubeconfig_raises_config_error(self, monkeypatch):
        monkeypatch.setattr(mesh_audit_clients.config, 'load_kube_config',
                            MagicMock(side_effect=FileNotFoundError(2, 'No such file')))

        with pytest.raises(ClusterConfigError):
            meshAuditClients(kubeconfig_path='/missing').load_credentials()


class TestBuildConfiguration:

    def test_disabling_verification(self):
        conf = meshAuditClients(verify_ssl=False).build_configuration()
        assert conf.verify_ssl is False
        assert conf.assert_hostname is False
        assert conf.ssl_ca_cert is None
        assert conf.retries is False

    def test_invalid_ca_file_is_rejected(self, tmp_path):
        ca = tmp_path / 'ca.pem'
        ca.write_text('not a certificate\n')

        with pytest.raises(ClusterConfigError, match='ca.pem'):
            meshAuditClients(ca_cert_path=str(ca)).build_configuration()

    def test_missing_ca_file_is_rejected(self, tmp_path):
        with pytest.raises(ClusterConfigError):
            meshAuditClients(ca_cert_path=str(tmp_path / 'absent.pem')).build_configuration()


class TestProbe:

    def test_failed_probe_raises_config_error(self, monkeypatch):
        version_api = MagicMock()
        version_api.return_value.get_code.side_effect = ApiException(status=401, reason='Unauthorized')
        monkeypatch.setattr(mesh_audit_clients.client, 'VersionApi', version_api)

        with pytest.raises(ClusterConfigError, match='Unauthorized'):
            meshAuditClients(probe_timeout=4).probe(MagicMock())

        version_api.return_value.get_code.assert_called_once_with(_request_timeout=4)

    def test_connect_builds_clients(self, monkeypatch):
        monkeypatch.setattr(mesh_audit_clients.config, 'load_incluster_config', MagicMock())
        version_api = MagicMock()
        version_api.return_value.get_code.return_value = SimpleNamespace(git_version='v1.29.4')
        monkeypatch.setattr(mesh_audit_clients.client, 'VersionApi', version_api)

        connection = meshAuditClients().connect()

        assert isinstance(connection, ClusterConnection)
        assert connection.core_v1.api_client is connection.api_client
        assert connection.custom_objects.api_client is connection.api_client
        assert connection.configuration.retries is False
