"""
FastAPI application entrypoint

Registers the API routers and, on startup, prepares the coordinator:
creates tables, loads or generates the CA, and on first boot initializes
the address pool and writes the server's own overlay engine config.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tunnel.api.v1.endpoints.connect import router as connect_router
from tunnel.api.v1.endpoints.tokens import router as tokens_router
from tunnel.config import Settings, configure_logging
from tunnel.db.base import create_db_engine, create_session_factory, init_db
from tunnel.networking.overlay_config import apply_listen, build_settings, render_yaml
from tunnel.security.ca_store import load_or_generate_ca
from tunnel.security.certificate_authority import CAKeyMaterial
from tunnel.services.address_allocator import AddressAllocator
from tunnel.services.provisioning_coordinator import ProvisioningCoordinator
from tunnel.services.token_ledger import TokenLedger

logger = logging.getLogger(__name__)


def log_pool_stats(allocator: AddressAllocator) -> None:
    """Log address pool utilization"""
    stats = allocator.get_pool_stats()
    logger.info(
        f"Address pool: {stats['allocated_addresses']}/{stats['total_addresses']} allocated "
        f"({stats['utilization_percent']}%), "
        f"{stats['available_addresses']} available"
    )


def bootstrap(app: FastAPI) -> CAKeyMaterial:
    """
    Prepare store, CA and server config

    Args:
        app: Application whose state holds settings and session factory

    Returns:
        Loaded CA material
    """
    settings: Settings = app.state.settings

    init_db(app.state.engine)

    ca = load_or_generate_ca(
        key_path=settings.ca_key_path,
        cert_path=settings.ca_cert_path,
        name=settings.ca_name,
        curve=settings.ca_curve
    )

    db = app.state.session_factory()
    try:
        TokenLedger(db).purge_expired()
        allocator = AddressAllocator(db=db, network_cidr=settings.network_cidr)

        conn_cfg_path = Path(settings.conn_cfg_path)
        if conn_cfg_path.exists():
            if not allocator.is_initialized():
                logger.warning(
                    f"Server config {conn_cfg_path} exists but the address pool "
                    "is not initialized; /connect will fail until it is"
                )
            else:
                log_pool_stats(allocator)
            logger.info(f"Using existing server config at {conn_cfg_path}")
            return ca

        logger.info(
            f"Generating server keypair with network {settings.network_cidr} "
            f"at {conn_cfg_path}"
        )
        coordinator = ProvisioningCoordinator(
            allocator=allocator,
            ca=ca,
            public_address=settings.nebula_public_addr,
            leaf_duration=settings.leaf_duration
        )
        profile = coordinator.bootstrap_server(
            tun_device=settings.tun_dev_name,
            reinitialize=settings.force_reinit
        )
        log_pool_stats(allocator)
    finally:
        db.close()

    server_settings = build_settings(profile)
    apply_listen(server_settings, settings.nebula_listen_addr)

    conn_cfg_path.parent.mkdir(parents=True, exist_ok=True)
    conn_cfg_path.write_text(render_yaml(server_settings), encoding="utf-8")
    conn_cfg_path.chmod(0o600)

    return ca


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.ca = bootstrap(app)
    yield
    app.state.engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        settings: Application settings (read from the environment if omitted)

    Returns:
        Configured FastAPI app
    """
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="Tunnel API",
        description="Overlay network node provisioning",
        version="0.0.1",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = create_db_engine(settings.database_url)
    app.state.session_factory = create_session_factory(app.state.engine)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["HEAD", "GET", "POST", "DELETE"],
        allow_headers=["authorization", "content-type"],
    )

    app.include_router(connect_router)
    app.include_router(tokens_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def main() -> None:
    """Run the API server with uvicorn"""
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    host, port = settings.api_listen_addr.rsplit(":", 1)
    uvicorn.run(create_app(settings), host=host.strip("[]"), port=int(port))


if __name__ == "__main__":
    main()
