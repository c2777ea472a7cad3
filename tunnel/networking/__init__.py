"""
Overlay Networking Package

Renders connection profiles into the overlay engine's configuration.
"""

from tunnel.networking.overlay_config import (
    apply_listen,
    apply_port_mappings,
    build_settings,
    load_yaml,
    render_yaml,
)

__all__ = [
    "apply_listen",
    "apply_port_mappings",
    "build_settings",
    "load_yaml",
    "render_yaml",
]
