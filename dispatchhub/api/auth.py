"""Shared-key authentication for the HTTP and WebSocket surfaces.

The daemon has a single configured key. REST callers present it as
`Authorization: Bearer <key>` or `X-Dispatch-Key: <key>`; WebSocket clients send
it in their first `auth` control message.
"""

from __future__ import annotations

import hmac
from typing import Annotated, Optional

from fastapi import Depends, Header, Request

from dispatchhub.core.errors import Unauthenticated


def verify_key(expected: str, provided: Optional[str]) -> bool:
    """Constant-time key comparison. An unset key accepts nothing."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def extract_key(authorization: Optional[str], x_dispatch_key: Optional[str]) -> Optional[str]:
    if x_dispatch_key:
        return x_dispatch_key.strip()
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return None


async def require_key(
    request: Request,
    authorization: Annotated[Optional[str], Header()] = None,
    x_dispatch_key: Annotated[Optional[str], Header()] = None,
) -> None:
    """FastAPI dependency guarding /api routes."""
    expected: str = request.app.state.auth_key
    if not verify_key(expected, extract_key(authorization, x_dispatch_key)):
        raise Unauthenticated("Missing or invalid key")


RequireKey = Depends(require_key)
