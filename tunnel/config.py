"""
Application settings

Settings are read from environment variables, after loading a `.env` file
from the working directory if one exists.
"""

import logging
import os
from datetime import timedelta
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator

from tunnel.models.provisioning import validate_endpoint
from tunnel.security.certificate_authority import Curve


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime configuration of the coordinator"""

    database_url: str = Field("sqlite:///./tunnel.db", description="SQLAlchemy database URL")
    api_listen_addr: str = Field("0.0.0.0:8080", description="HTTP API listen address")
    nebula_listen_addr: str = Field("0.0.0.0:4242", description="Tunnel listen address")
    nebula_public_addr: str = Field("127.0.0.1:4242", description="Public tunnel address")
    cors_allow_origins: List[str] = Field(default_factory=list)

    conn_cfg_path: str = Field("server.yaml", description="Server connection config path")
    ca_key_path: str = Field("ca.key", description="CA private key path")
    ca_cert_path: str = Field("ca.cert", description="CA certificate path")
    ca_name: str = Field("Tunnel Network CA", description="CA name used on first boot")
    ca_curve: Curve = Field(Curve.CURVE25519, description="CA curve used on first boot")

    master_token: str = Field("tunnel", description="Master token (empty disables)")
    master_localhost_only: bool = Field(
        True,
        description="Accept the master token from loopback clients only"
    )
    token_auth_disabled: bool = Field(False, description="Reject all one-time tokens")

    network_cidr: str = Field("10.0.0.0/8", description="Overlay network range")
    tun_dev_name: str = Field("nebula1", description="Server TUN device name")
    force_reinit: bool = Field(
        False,
        description="Wipe an existing address pool when bootstrapping the server"
    )

    token_ttl_seconds: int = Field(86400, gt=0)
    leaf_duration_seconds: int = Field(365 * 24 * 3600, gt=0)

    log_level: str = Field("INFO")

    @field_validator('nebula_public_addr')
    @classmethod
    def validate_public_addr(cls, v):
        """Validate public tunnel endpoint (host:port)"""
        return validate_endpoint(v)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level name"""
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return v

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(seconds=self.token_ttl_seconds)

    @property
    def leaf_duration(self) -> timedelta:
        return timedelta(seconds=self.leaf_duration_seconds)

    @classmethod
    def from_env(
        cls,
        load_dotenv_file: bool = True,
        dotenv_path: Optional[str] = None
    ) -> "Settings":
        """
        Build settings from environment variables

        Variables already set in the environment take precedence over `.env`.

        Args:
            load_dotenv_file: Load `.env` before reading the environment
            dotenv_path: Explicit `.env` path (default: search from the
                working directory upwards)

        Returns:
            Settings instance
        """
        if load_dotenv_file:
            load_dotenv(dotenv_path or find_dotenv(usecwd=True))

        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            api_listen_addr=os.getenv("API_LISTEN_ADDR", defaults.api_listen_addr),
            nebula_listen_addr=os.getenv("NEBULA_LISTEN_ADDR", defaults.nebula_listen_addr),
            nebula_public_addr=os.getenv("NEBULA_PUBLIC_ADDR", defaults.nebula_public_addr),
            cors_allow_origins=_env_list("CORS_ALLOW_ORIGINS"),
            conn_cfg_path=os.getenv("CONN_CFG_PATH", defaults.conn_cfg_path),
            ca_key_path=os.getenv("CA_KEY_PATH", defaults.ca_key_path),
            ca_cert_path=os.getenv("CA_CERT_PATH", defaults.ca_cert_path),
            ca_name=os.getenv("CA_NAME", defaults.ca_name),
            ca_curve=os.getenv("CA_CURVE", defaults.ca_curve.value),
            master_token=os.getenv("MASTER_TOKEN", defaults.master_token),
            master_localhost_only=_env_bool("MASTER_LOCALHOST", defaults.master_localhost_only),
            token_auth_disabled=_env_bool("AUTH_DISABLE", defaults.token_auth_disabled),
            network_cidr=os.getenv("NETWORK_CIDR", defaults.network_cidr),
            tun_dev_name=os.getenv("TUN_DEV_NAME", defaults.tun_dev_name),
            force_reinit=_env_bool("FORCE_REINIT", defaults.force_reinit),
            token_ttl_seconds=int(os.getenv("TOKEN_TTL_SECONDS", defaults.token_ttl_seconds)),
            leaf_duration_seconds=int(
                os.getenv("LEAF_DURATION_SECONDS", defaults.leaf_duration_seconds)
            ),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the application entry point"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
