from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from newsletter_tracker.core.config import Settings, get_settings
from newsletter_tracker.core.errors import StorageError
from newsletter_tracker.persistence.base import SubscriberStore
from newsletter_tracker.services.admin import AdminService
from newsletter_tracker.services.directory import DirectoryClient, NullDirectory
from newsletter_tracker.services.ingestion import IngestionService


def get_store(request: Request) -> SubscriberStore:
    # The store is chosen once at startup; routes never branch on backend.
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise StorageError("Storage backend is not initialized")
    return store


def get_directory(request: Request) -> DirectoryClient:
    directory = getattr(request.app.state, "directory", None)
    return directory if directory is not None else NullDirectory()


def get_ingestion_service(
    store: SubscriberStore = Depends(get_store),
    directory: DirectoryClient = Depends(get_directory),
    settings: Settings = Depends(get_settings),
) -> IngestionService:
    return IngestionService(store, directory, settings)


def get_admin_service(store: SubscriberStore = Depends(get_store)) -> AdminService:
    return AdminService(store)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_admin(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    # Admin routes are open when no key is configured (local development).
    expected = settings.admin_api_key
    if not expected:
        return
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _auth_error("Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Invalid admin key")
