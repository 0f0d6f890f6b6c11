"""Middleware: API key authentication."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from imageident.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)

# Routes that also accept ?key= (thumbnails are loaded by <img> tags).
_QUERY_KEY_ROUTES = ("/api/v1/blobs/",)


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _matches(candidate: str | None, api_key: str) -> bool:
    return candidate is not None and secrets.compare_digest(candidate.encode(), api_key.encode())


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    key: Annotated[str | None, Query(include_in_schema=False)] = None,
) -> None:
    """Check the caller against IMAGEIDENT_API_KEY.

    Without a configured key every request passes. Otherwise requests need
    'Authorization: Bearer <key>', or '?key=<key>' on blob downloads.
    """
    api_key = _get_settings_from_request(request).api_key
    if api_key is None:
        return

    if credentials is not None and _matches(credentials.credentials, api_key):
        return
    if request.url.path.startswith(_QUERY_KEY_ROUTES) and _matches(key, api_key):
        return

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
