# backend/app/api/deps.py
from typing import Optional

from fastapi import Depends, Request

from backend.app.core.config import get_settings
from backend.app.db.session import Database
from backend.app.services.auth import AuthService, ClientContext


def get_database(request: Request) -> Database:
    # Set by the app factory; the lifespan owns its lifecycle
    return request.app.state.database


def get_auth_service(request: Request, database: Database = Depends(get_database)) -> AuthService:
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return AuthService(database, settings)


def get_client_ip(request: Request) -> Optional[str]:
    """Real client IP, honouring reverse-proxy headers."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # First entry is the original client
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host
    return None


def get_client_context(request: Request) -> ClientContext:
    return ClientContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
