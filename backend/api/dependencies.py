"""
Dependency injection for the admin API.
Provides the repository, normalizer, run lock and admin auth to route handlers.
"""
from __future__ import annotations

import asyncio
import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from ingest.normalization.normalizer import NameNormalizer
from shared.config import Settings, get_settings
from shared.utils.logging import get_logger
from storage.repository import FixtureRepository

logger = get_logger(__name__)

# Module-level singletons, initialized at startup
_repository: FixtureRepository | None = None
_normalizer: NameNormalizer | None = None
# Admin jobs rewrite the whole fixture list, so one at a time per process
_run_lock = asyncio.Lock()


def init_dependencies(repository: FixtureRepository, normalizer: NameNormalizer) -> None:
    """Initialize module-level singletons. Called once at startup."""
    global _repository, _normalizer
    _repository = repository
    _normalizer = normalizer


def get_repository() -> FixtureRepository:
    """FastAPI dependency: returns the shared FixtureRepository."""
    if _repository is None:
        raise RuntimeError("FixtureRepository not initialized; call init_dependencies first")
    return _repository


def get_normalizer() -> NameNormalizer:
    if _normalizer is None:
        raise RuntimeError("NameNormalizer not initialized; call init_dependencies first")
    return _normalizer


def get_run_lock() -> asyncio.Lock:
    return _run_lock


def _presented_token(x_admin_token: Optional[str], authorization: Optional[str]) -> str:
    if x_admin_token:
        return x_admin_token.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[len("bearer "):].strip()
    return ""


def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Admin auth: X-Admin-Token header or Bearer token, compared in constant time.
    An unset admin_token locks the admin endpoints entirely.
    """
    presented = _presented_token(x_admin_token, authorization)
    expected = settings.admin_token
    if not expected or not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
        logger.warning("admin_auth_rejected", token_presented=bool(presented))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid or missing admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )
