"""Caller identity for the assist API.

Authentication is terminated upstream; the gateway forwards the
authenticated owner as the X-Owner-ID header.
"""

from typing import Annotated

from fastapi import Header, HTTPException, status

OWNER_HEADER = "X-Owner-ID"


def get_owner_id(
    x_owner_id: Annotated[str | None, Header(alias=OWNER_HEADER)] = None,
) -> str:
    """Return the calling owner's id or reject the request with 401."""
    if x_owner_id is None or not x_owner_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Missing {OWNER_HEADER} header")
    return x_owner_id.strip()
