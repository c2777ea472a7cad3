"""
Integration tests for the end-to-end provisioning flow

Operator mints a one-time token with the master token, a joining node
exchanges it for a connection config through the API client, and caches
the config for subsequent starts.
"""

import httpx
import pytest

from tunnel.client import ProvisioningClient, ProvisioningClientError, prepare_client_config
from tunnel.security.certificate_authority import verify_certificate


@pytest.fixture
def operator(client, app_settings):
    return ProvisioningClient(
        api_addr="http://testserver", token=app_settings.master_token, client=client
    )


class TestProvisioningFlow:
    """Token issuance through node configuration"""

    def test_node_joins_with_one_time_token(self, client, operator, tmp_path):
        """
        Given an operator holding the master token
        When a node joins with a freshly minted one-time token
        Then it receives a config signed by the coordinator CA
        And the config is cached with local listen and forwarding options
        And the token cannot be reused
        """
        token = operator.request_token()
        node = ProvisioningClient(api_addr="http://testserver", token=token, client=client)
        conn_cfg_path = tmp_path / "node" / "conn.yaml"

        settings = prepare_client_config(
            node,
            conn_cfg_path=str(conn_cfg_path),
            listen_addr="[::]:4243",
            port_mappings=["8080:127.0.0.1:80:tcp"]
        )

        identity = verify_certificate(settings["pki"]["cert"], settings["pki"]["ca"])
        assert identity.networks == ["10.0.0.2/8"]
        assert settings["listen"] == {"host": "::", "port": "4243"}
        assert settings["port_forwarding"]["inbound"][0]["listen_port"] == 8080
        assert conn_cfg_path.exists()
        assert conn_cfg_path.stat().st_mode & 0o777 == 0o600

        with pytest.raises(ProvisioningClientError) as exc_info:
            node.connect()
        assert exc_info.value.status_code == 401

    def test_cached_config_is_reused(self, client, operator, tmp_path):
        """
        Given a cached connection config
        When the node starts again with a spent token
        Then the cached config is used and no new address is allocated
        """
        token = operator.request_token()
        node = ProvisioningClient(api_addr="http://testserver", token=token, client=client)
        conn_cfg_path = str(tmp_path / "conn.yaml")

        first = prepare_client_config(node, conn_cfg_path=conn_cfg_path)
        second = prepare_client_config(node, conn_cfg_path=conn_cfg_path)

        assert second["pki"] == first["pki"]

        next_node = operator.connect()
        identity = verify_certificate(next_node["pki"]["cert"], next_node["pki"]["ca"])
        assert identity.networks == ["10.0.0.3/8"]

    def test_distinct_nodes_get_distinct_addresses(self, operator):
        networks = set()
        for _ in range(5):
            token = operator.request_token()
            node = ProvisioningClient(
                api_addr="http://testserver", token=token, client=operator.client
            )
            settings = node.connect()
            identity = verify_certificate(settings["pki"]["cert"], settings["pki"]["ca"])
            networks.update(identity.networks)

        assert len(networks) == 5
        assert "10.0.0.1/8" not in networks


class TestProvisioningClientErrors:
    """Client-side error handling"""

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        node = ProvisioningClient(client=httpx.Client(transport=httpx.MockTransport(handler)))

        with pytest.raises(ProvisioningClientError) as exc_info:
            node.connect()
        assert exc_info.value.status_code is None

    def test_non_json_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        node = ProvisioningClient(client=httpx.Client(transport=transport))

        with pytest.raises(ProvisioningClientError):
            node.request_token()

    def test_missing_field(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        node = ProvisioningClient(client=httpx.Client(transport=transport))

        with pytest.raises(ProvisioningClientError):
            node.connect()

    def test_bearer_header_sent(self):
        seen = {}

        def handler(request):
            seen["authorization"] = request.headers.get("authorization")
            return httpx.Response(200, json={"one_time_token": "abc"})

        node = ProvisioningClient(
            token="secret", client=httpx.Client(transport=httpx.MockTransport(handler))
        )

        assert node.request_token() == "abc"
        assert seen["authorization"] == "Bearer secret"
        node.close()
