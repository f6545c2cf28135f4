"""
Credential checks for the cron trigger routes.
Bearer CRON_SECRET or Basic CRON_USER:CRON_PASSWORD, read on every request.
"""

import base64
import binascii
import logging
import os

from fastapi import HTTPException, Request, status

from src.infrastructure.gateway.webhook_security import constant_time_compare

logger = logging.getLogger(__name__)


def _bearer_authorized(auth_header: str) -> bool:
    cron_secret = os.getenv("CRON_SECRET")
    if not cron_secret:
        return False

    scheme, _, token = auth_header.partition(" ")
    if scheme != "Bearer" or not token:
        return False
    return constant_time_compare(token, cron_secret)


def _basic_authorized(auth_header: str) -> bool:
    scheme, _, encoded = auth_header.partition(" ")
    if scheme != "Basic" or not encoded:
        return False

    valid_user = os.getenv("CRON_USER", "admin")
    valid_pass = os.getenv("CRON_PASSWORD")
    if not valid_pass:
        return False

    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False

    user, sep, password = decoded.partition(":")
    if not sep:
        return False
    return constant_time_compare(user, valid_user) and constant_time_compare(password, valid_pass)


def is_cron_authorized(
    auth_header: str | None,
    allow_bearer: bool = True,
    allow_basic: bool = True,
) -> bool:
    if not auth_header:
        return False
    if allow_bearer and _bearer_authorized(auth_header):
        return True
    if allow_basic and _basic_authorized(auth_header):
        return True
    return False


def require_cron_auth(request: Request) -> None:
    """FastAPI dependency guarding the cron trigger routes."""
    if not is_cron_authorized(request.headers.get("authorization")):
        logger.error("Invalid cron credentials for %s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic realm='Secure Area'"},
        )
