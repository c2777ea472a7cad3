"""
Overlay engine configuration builder.

This module provides functionality for:
- Rendering a connection profile into the overlay engine's settings mapping
- Applying listen address and port forwarding options
- Serializing settings to YAML

The settings layout (pki, punchy, relay, tun, firewall, static_host_map,
lighthouse, listen, port_forwarding) follows the overlay engine's config
file schema; this module only fills the sections it needs.
"""

import re
from typing import Any, Dict, List

import yaml

from tunnel.errors import InvalidInputError
from tunnel.models.provisioning import ConnectionProfile

Settings = Dict[str, Any]

PORT_MAPPING_RE = re.compile(r'^(\d+):(.*):(tcp|udp|both)$')

_ALLOW_ANY = [{"port": "any", "proto": "any", "host": "any"}]


def build_settings(profile: ConnectionProfile) -> Settings:
    """
    Render a connection profile into overlay engine settings.

    Args:
        profile: Connection profile from the provisioning coordinator

    Returns:
        Settings mapping ready for YAML serialization
    """
    options = profile.options

    settings: Settings = {
        "pki": {
            "cert": profile.certificate_pem,
            "key": profile.private_key_pem or "",
            "ca": profile.ca_pem,
        },
        "punchy": {
            "punch": options.punch,
        },
        "relay": {
            "am_relay": options.am_relay,
            "use_relays": options.use_relays,
        },
        "tun": {
            "disabled": not options.use_tun,
            "dev": options.tun_device,
        },
    }

    firewall: Dict[str, List[Dict[str, str]]] = {}
    if options.accept_outbound:
        firewall["outbound"] = [dict(rule) for rule in _ALLOW_ANY]
    if options.accept_inbound:
        firewall["inbound"] = [dict(rule) for rule in _ALLOW_ANY]
    settings["firewall"] = firewall

    apply_static_hosts(settings, {profile.server_address: [profile.public_address]})
    apply_lighthouse_hosts(settings, [profile.server_address])

    return settings


def apply_static_hosts(settings: Settings, hosts: Dict[str, List[str]]) -> None:
    """Map overlay addresses to their public endpoints"""
    settings["static_host_map"] = {k: list(v) for k, v in hosts.items()}


def apply_lighthouse_hosts(settings: Settings, hosts: List[str]) -> None:
    """Set the lighthouse (discovery) hosts"""
    settings["lighthouse"] = {"hosts": list(hosts)}


def apply_listen(settings: Settings, listen_addr: str) -> None:
    """
    Set the tunnel listen address.

    Args:
        settings: Settings mapping to update
        listen_addr: "host:port" or "[v6host]:port"

    Raises:
        InvalidInputError: If the address cannot be split into host and port
    """
    if ':' not in listen_addr:
        raise InvalidInputError(f"Splitting address {listen_addr}: missing port")

    host, port = listen_addr.rsplit(':', 1)
    if not port.isdigit():
        raise InvalidInputError(f"Splitting address {listen_addr}: invalid port")

    # IPv6 can be in [::]:PORT format
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    elif ':' in host:
        raise InvalidInputError(
            f"Splitting address {listen_addr}: IPv6 hosts must be bracketed"
        )

    settings["listen"] = {"host": host, "port": port}


def apply_port_mappings(settings: Settings, port_mappings: List[str]) -> None:
    """
    Set inbound port forwarding rules.

    Args:
        settings: Settings mapping to update
        port_mappings: Entries formatted PORT:DIAL_ADDRESS:tcp|udp|both

    Raises:
        InvalidInputError: If an entry is malformed
    """
    inbound = []

    for mapping in port_mappings:
        match = PORT_MAPPING_RE.match(mapping)
        if not match:
            raise InvalidInputError(
                f"Invalid port mapping format: '{mapping}'. "
                "expected format: PORT:DIAL_ADDRESS:tcp/udp/both"
            )

        port = int(match.group(1))
        host = match.group(2).strip()
        proto = match.group(3)

        if not 1 <= port <= 65535:
            raise InvalidInputError(f"Invalid port number in mapping '{mapping}'")
        if not host:
            raise InvalidInputError(f"DIAL_ADDRESS cannot be empty in mapping '{mapping}'")

        inbound.append({
            "listen_port": port,
            "dial_address": host,
            "protocols": ["tcp", "udp"] if proto == "both" else [proto],
        })

    settings["port_forwarding"] = {"inbound": inbound}


def render_yaml(settings: Settings) -> str:
    """Serialize settings to YAML"""
    return yaml.safe_dump(settings, default_flow_style=False, sort_keys=False)


def load_yaml(document: str) -> Settings:
    """
    Parse a YAML settings document.

    Raises:
        InvalidInputError: If the document is not a YAML mapping
    """
    try:
        settings = yaml.safe_load(document)
    except yaml.YAMLError as e:
        raise InvalidInputError(f"Invalid connection config: {e}") from e
    if not isinstance(settings, dict):
        raise InvalidInputError("Connection config must be a mapping")
    return settings
