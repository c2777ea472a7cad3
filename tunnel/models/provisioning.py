"""
Provisioning Models

Pydantic models for node provisioning: per-node tunnel options, the
connection profile handed to the overlay config builder, and the HTTP
response bodies.
"""

from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import List, Optional
import ipaddress


def validate_endpoint(v: str) -> str:
    """
    Validate a public endpoint in "host:port" form

    Raises:
        ValueError: If host or port is missing or the port is out of range
    """
    if ':' not in v:
        raise ValueError(f"Endpoint '{v}' must be in format 'host:port'")
    host, port = v.rsplit(':', 1)
    if not host:
        raise ValueError(f"Endpoint '{v}' host must not be empty")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"Invalid port number in endpoint '{v}'")
    if not 1 <= port_num <= 65535:
        raise ValueError("port must be between 1 and 65535")
    return v


class NodeOptions(BaseModel):
    """Tunnel behaviour flags for a provisioned node"""
    model_config = ConfigDict(extra='forbid')

    groups: str = Field(
        "client",
        description="Comma separated group list"
    )
    punch: bool = Field(False, description="Enable NAT hole punching")
    am_relay: bool = Field(False, description="Act as a relay for other nodes")
    use_relays: bool = Field(False, description="Reach peers through relays")
    use_tun: bool = Field(False, description="Create a TUN device")
    tun_device: str = Field("", description="TUN device name")
    accept_inbound: bool = Field(True, description="Allow any inbound traffic")
    accept_outbound: bool = Field(False, description="Allow any outbound traffic")

    @classmethod
    def client(cls) -> "NodeOptions":
        """Defaults for nodes joining through the API"""
        return cls()

    @classmethod
    def server(cls, tun_device: str = "nebula1") -> "NodeOptions":
        """Defaults for the coordinator's own node"""
        return cls(
            groups="server",
            punch=True,
            am_relay=True,
            use_relays=True,
            use_tun=True,
            tun_device=tun_device,
            accept_inbound=True,
            accept_outbound=True,
        )


class ConnectionProfile(BaseModel):
    """Everything a node needs to join the overlay network"""
    model_config = ConfigDict(extra='forbid')

    name: str = Field(..., min_length=1, description="Node name (certificate CN)")
    groups: List[str] = Field(default_factory=list, description="Node groups")
    assigned_address: str = Field(..., description="Assigned address with prefix")
    certificate_pem: str = Field(..., description="Signed leaf certificate (PEM)")
    private_key_pem: Optional[str] = Field(
        None,
        description="Node private key, only when generated by the coordinator"
    )
    ca_pem: str = Field(..., description="CA certificate (PEM)")
    server_address: str = Field(..., description="Coordinator's overlay address")
    public_address: str = Field(
        ...,
        description="Coordinator's public tunnel endpoint (host:port)"
    )
    options: NodeOptions = Field(default_factory=NodeOptions)
    provisioned_at: str = Field(..., description="ISO 8601 timestamp of provisioning")

    @field_validator('assigned_address')
    @classmethod
    def validate_assigned_address(cls, v):
        """Validate address/prefix format"""
        if '/' not in v:
            raise ValueError("assigned_address must include a prefix length")
        try:
            ipaddress.ip_interface(v)
        except ValueError as e:
            raise ValueError(f"Invalid assigned_address: {e}")
        return v

    @field_validator('public_address')
    @classmethod
    def validate_public_address(cls, v):
        """Validate endpoint format (host:port)"""
        return validate_endpoint(v)


class ConnectResponse(BaseModel):
    """Response of the connect endpoint"""
    connection_config: str = Field(..., description="Overlay engine config (YAML)")


class TokenResponse(BaseModel):
    """Response of the token endpoint"""
    one_time_token: str = Field(..., description="Single-use provisioning token")
