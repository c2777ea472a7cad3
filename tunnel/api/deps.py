"""
FastAPI dependencies

Resolve per-application state (settings, session factory, CA material)
stored on `app.state` by `create_app`.
"""

from typing import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from tunnel.config import Settings
from tunnel.security.certificate_authority import CAKeyMaterial


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_ca(request: Request) -> CAKeyMaterial:
    return request.app.state.ca


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Database session dependency for FastAPI

    Yields:
        Database session, closed after the request (an open transaction is
        rolled back on close)
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
