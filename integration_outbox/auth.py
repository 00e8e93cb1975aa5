from __future__ import annotations

import base64
import binascii
import hmac
import os

from fastapi import Header, HTTPException


def require_bearer(authorization: str | None = Header(default=None)) -> None:
    expected = os.getenv("API_BEARER_TOKEN", "").strip()
    if not expected:
        raise HTTPException(status_code=500, detail="Server missing API_BEARER_TOKEN")
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization.removeprefix("Bearer ").strip()
    if not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=403, detail="Invalid bearer token")


def _challenge(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Basic"})


def _operator_password(authorization: str) -> str:
    """Password half of a Basic credential; operators are not told apart by username."""
    scheme, _, encoded = authorization.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded:
        raise _challenge("Basic credentials required")
    try:
        credential = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise _challenge("Malformed Basic credentials")
    _, sep, password = credential.partition(":")
    if not sep:
        raise _challenge("Malformed Basic credentials")
    return password


def require_admin_auth(authorization: str | None = Header(default=None)) -> None:
    admin_password = os.getenv("ADMIN_PASSWORD", "").strip()
    if not admin_password:
        raise HTTPException(status_code=500, detail="ADMIN_PASSWORD is missing")
    if not authorization:
        raise _challenge("Unauthorized")
    if not hmac.compare_digest(_operator_password(authorization).encode("utf-8"), admin_password.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Forbidden")
