"""Authentication dependencies.

Two guards:
  - require_admin_token()     — debug/admin HTTP endpoints (Bearer token)
  - verify_twilio_signature() — telephony webhooks (X-Twilio-Signature)

Admin behavior matrix:
  ADMIN_API_KEY set + valid token   → allow
  ADMIN_API_KEY set + wrong/missing → 401 Unauthorized
  ADMIN_API_KEY empty + DEBUG=true  → allow (local dev convenience)
  ADMIN_API_KEY empty + DEBUG=false → 403 Forbidden (locked in production)

Signature checks only run when TWILIO_VALIDATE=true.
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from twilio.request_validator import RequestValidator

from receptionist.config import settings

log = logging.getLogger("receptionist.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency — protect HTTP admin endpoints with bearer token."""
    key = settings.admin_api_key

    if not key:
        if settings.debug:
            return  # Local dev — allow without auth
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )

    if credentials is None or credentials.credentials != key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _public_url(request: Request) -> str:
    """The URL Twilio signed, honouring a TLS-terminating proxy."""
    url = request.url
    proto = request.headers.get("x-forwarded-proto")
    if proto:
        url = url.replace(scheme=proto)
    host = request.headers.get("x-forwarded-host")
    if host:
        url = url.replace(netloc=host)
    return str(url)


async def verify_twilio_signature(request: Request) -> None:
    """FastAPI dependency — reject webhooks not signed by our Twilio account."""
    if not settings.twilio_validate:
        return

    signature = request.headers.get("x-twilio-signature", "")
    form = await request.form()
    params = {k: v for k, v in form.items() if isinstance(v, str)}
    validator = RequestValidator(settings.twilio_auth_token)

    if not signature or not validator.validate(_public_url(request), params, signature):
        log.warning("Rejected unsigned webhook for %s", request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid Twilio signature.",
        )
