"""
Pytest configuration and shared fixtures
"""

import pytest
import sys
from pathlib import Path

# Add repository root to Python path
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root))

from fastapi.testclient import TestClient

from tunnel.config import Settings
from tunnel.db.base import create_db_engine, create_session_factory, init_db
from tunnel.main import create_app
from tunnel.security.certificate_authority import Curve, generate_ca, parse_ca


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """
    File-backed SQLite engine

    A file (not :memory:) so that every thread's connection sees the
    same database.
    """
    engine = create_db_engine(f"sqlite:///{tmp_path / 'tunnel-test.db'}")
    init_db(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory bound to the test engine"""
    return create_session_factory(db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Database session for a single test"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session")
def ca_pair():
    """Curve25519 CA shared by tests that do not mutate it"""
    return generate_ca("Test Network CA")


@pytest.fixture(scope="session")
def p256_ca_pair():
    """P-256 CA"""
    return generate_ca("Test P256 CA", curve=Curve.P256)


@pytest.fixture(scope="session")
def ca_material(ca_pair):
    """Parsed Curve25519 CA with private key"""
    return parse_ca(ca_pair.cert_pem, ca_pair.key_pem)


@pytest.fixture(scope="function")
def app_settings(tmp_path):
    """Coordinator settings with every path under a temporary directory"""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'coordinator.db'}",
        conn_cfg_path=str(tmp_path / "server.yaml"),
        ca_key_path=str(tmp_path / "ca.key"),
        ca_cert_path=str(tmp_path / "ca.cert"),
        ca_name="Test Coordinator CA",
        master_token="test-master-token",
        master_localhost_only=False,
        nebula_public_addr="203.0.113.10:4242",
    )


@pytest.fixture(scope="function")
def client(app_settings):
    """TestClient with the application lifespan (bootstrap) applied"""
    with TestClient(create_app(app_settings)) as test_client:
        yield test_client


@pytest.fixture
def master_headers(app_settings):
    return {"Authorization": f"Bearer {app_settings.master_token}"}
