"""
Bearer token verification.

Tokens are issued by the identity provider as ``<base64url(email)>.<hmac>``
where the HMAC is SHA-256 over the email with the shared ``AUTH_SECRET``.
This service only verifies them; the role comes from the ``user`` collection.
"""

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import settings
from database import Store, get_store
from errors import Forbidden, Unauthorized
from schemas import Role

logger = structlog.get_logger(__name__)

bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    email: str
    role: str = Role.CUSTOMER.value

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


class TokenVerifier:
    def __init__(self, secret: str):
        self.secret = secret.encode()

    def _digest(self, email: str) -> str:
        return hmac.new(self.secret, email.encode(), hashlib.sha256).hexdigest()

    def sign(self, email: str) -> str:
        """Token for ``email``; used by local tooling and tests."""
        encoded = base64.urlsafe_b64encode(email.encode()).decode().rstrip("=")
        return f"{encoded}.{self._digest(email)}"

    def verify(self, token: str) -> str:
        """Return the verified subject email or raise ``Unauthorized``."""
        try:
            encoded, signature = token.split(".", 1)
            padded = encoded + "=" * (-len(encoded) % 4)
            email = base64.urlsafe_b64decode(padded.encode()).decode()
        except (ValueError, binascii.Error, UnicodeDecodeError):
            raise Unauthorized("Malformed token")
        if not hmac.compare_digest(signature, self._digest(email)):
            raise Unauthorized("Invalid token")
        return email


def get_verifier() -> TokenVerifier:
    return TokenVerifier(settings.AUTH_SECRET)


def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    store: Store = Depends(get_store),
    verifier: TokenVerifier = Depends(get_verifier),
) -> Principal:
    if credentials is None:
        raise Unauthorized("Missing bearer token")
    email = verifier.verify(credentials.credentials)
    user = store.users.find_one({"email": email}, {"role": 1})
    role = (user or {}).get("role") or Role.CUSTOMER.value
    return Principal(email=email, role=role)


def require_role(*roles: Role):
    allowed = {r.value for r in roles} | {Role.ADMIN.value}

    def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in allowed:
            logger.info("Access denied", email=principal.email, role=principal.role, required=sorted(allowed))
            raise Forbidden(f"Requires role: {', '.join(sorted(allowed))}")
        return principal

    return dependency


def ensure_self_or_admin(principal: Principal, email: str):
    if principal.email != email and not principal.is_admin:
        raise Forbidden("Cannot access another user's data")
