import time
from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings
from .errors import invalid_token


bearer_scheme = HTTPBearer(auto_error=False)

SESSION_TOKEN_TYPE = "session"
OTP_CONTEXT_TOKEN_TYPE = "otp_context"


@dataclass(frozen=True)
class SessionCredential:
    token: str
    tenant_id: str
    email: str
    phone: Optional[str]
    role: str
    issued_at: int
    expires_at: int

    def account(self) -> dict:
        return {"email": self.email, "phone": self.phone, "role": self.role, "tenantId": self.tenant_id}


class SessionSigner:
    """HS256 signer for session credentials and the short-lived verify context."""

    def __init__(self, secret: str, expires_minutes: int, clock: Callable[[], float] = time.time):
        self.secret = secret
        self.expires_minutes = expires_minutes
        self._clock = clock

    def issue(self, tenant_id: str, phone: Optional[str], email: str, role: str = "tenant") -> SessionCredential:
        now = int(self._clock())
        exp = now + self.expires_minutes * 60
        payload = {
            "sub": tenant_id,
            "typ": SESSION_TOKEN_TYPE,
            "tenantId": tenant_id,
            "email": email,
            "phone": phone,
            "role": role,
            "iat": now,
            "exp": exp,
        }
        token = jwt.encode(payload, self.secret, algorithm="HS256")
        return SessionCredential(
            token=token,
            tenant_id=tenant_id,
            email=email,
            phone=phone,
            role=role,
            issued_at=now,
            expires_at=exp,
        )

    def decode_session(self, token: str) -> SessionCredential:
        payload = self._decode(token, SESSION_TOKEN_TYPE)
        return SessionCredential(
            token=token,
            tenant_id=payload["sub"],
            email=payload.get("email") or "",
            phone=payload.get("phone"),
            role=payload.get("role") or "tenant",
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )

    def sign_context(self, phone: str, max_age_secs: int) -> str:
        now = int(self._clock())
        payload = {"typ": OTP_CONTEXT_TOKEN_TYPE, "phone": phone, "iat": now, "exp": now + max_age_secs}
        return jwt.encode(payload, self.secret, algorithm="HS256")

    def read_context(self, token: Optional[str]) -> Optional[str]:
        """Canonical phone from a verify-context token, or None when absent/invalid."""
        if not token:
            return None
        try:
            payload = self._decode(token, OTP_CONTEXT_TOKEN_TYPE)
        except jwt.InvalidTokenError:
            return None
        phone = payload.get("phone")
        return phone if isinstance(phone, str) and phone else None

    def _decode(self, token: str, token_type: str) -> dict:
        payload = jwt.decode(
            token,
            self.secret,
            algorithms=["HS256"],
            options={"require": ["exp", "iat"]},
        )
        if payload.get("typ") != token_type:
            raise jwt.InvalidTokenError("unexpected token type")
        return payload


def get_session_signer(request: Request) -> SessionSigner:
    return request.app.state.session_signer


def get_current_session(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    signer: SessionSigner = Depends(get_session_signer),
) -> SessionCredential:
    token = creds.credentials if creds else request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token:
        raise invalid_token()
    try:
        return signer.decode_session(token)
    except (jwt.InvalidTokenError, KeyError):
        raise invalid_token()
