"""Overlay network node provisioning: address pool, CA and one-time tokens."""

__version__ = "0.1.0"
