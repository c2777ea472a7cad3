"""
Provisioning API client

Used by joining nodes: fetches the connection config from the coordinator
once, caches it on disk, and applies local listen and port forwarding
options before handing it to the overlay engine.
"""

import logging
from pathlib import Path
from typing import List, Optional

import httpx

from tunnel.networking.overlay_config import (
    Settings,
    apply_listen,
    apply_port_mappings,
    load_yaml,
    render_yaml,
)

logger = logging.getLogger(__name__)


class ProvisioningClientError(Exception):
    """Raised when the coordinator API call fails"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ProvisioningClient:
    """
    HTTP client for the coordinator API

    Attributes:
        api_addr: Base URL of the coordinator API
        token: One-time or master token sent as bearer credential
    """

    def __init__(
        self,
        api_addr: str = "http://127.0.0.1:8080",
        token: str = "",
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0
    ):
        self.api_addr = api_addr.rstrip('/')
        self.token = token
        self.client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        """Close HTTP client"""
        self.client.close()

    def _headers(self) -> dict:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _get_json(self, path: str) -> dict:
        try:
            response = self.client.get(f"{self.api_addr}{path}", headers=self._headers())
        except httpx.HTTPError as e:
            raise ProvisioningClientError(f"Making http request to {path}: {e}") from e

        if response.status_code != httpx.codes.OK:
            raise ProvisioningClientError(
                f"Non-OK status code from {path}: {response.status_code}",
                status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProvisioningClientError(
                f"Unmarshaling JSON response from {path}: {e}"
            ) from e

    def connect(self) -> Settings:
        """
        Request a connection config (consumes a one-time token)

        Returns:
            Overlay engine settings mapping

        Raises:
            ProvisioningClientError: If the request fails
        """
        body = self._get_json("/connect")
        if "connection_config" not in body:
            raise ProvisioningClientError("Response has no connection_config")
        return load_yaml(body["connection_config"])

    def request_token(self) -> str:
        """
        Request a one-time token (requires the master token)

        Returns:
            Token value

        Raises:
            ProvisioningClientError: If the request fails
        """
        body = self._get_json("/token")
        if "one_time_token" not in body:
            raise ProvisioningClientError("Response has no one_time_token")
        return body["one_time_token"]


def prepare_client_config(
    client: ProvisioningClient,
    conn_cfg_path: str = "conn.yaml",
    listen_addr: str = "0.0.0.0:4243",
    port_mappings: Optional[List[str]] = None
) -> Settings:
    """
    Load the cached connection config or fetch and cache a new one

    Args:
        client: Coordinator API client
        conn_cfg_path: Cache file for the connection config
        listen_addr: Local tunnel listen address
        port_mappings: PORT:DIAL_ADDRESS:tcp|udp|both entries

    Returns:
        Settings with listen and port forwarding applied
    """
    path = Path(conn_cfg_path)

    if path.exists():
        settings = load_yaml(path.read_text(encoding="utf-8"))
    else:
        logger.info(f"Requesting connection config from {client.api_addr}")
        settings = client.connect()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_yaml(settings), encoding="utf-8")
        path.chmod(0o600)
        logger.info(f"Saved connection config to {path}")

    apply_listen(settings, listen_addr)
    apply_port_mappings(settings, port_mappings or [])

    return settings
