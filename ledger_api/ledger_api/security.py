"""Bearer token issuing and validation.

Tokens are HMAC-SHA256 signed and have the form
``ldev.<urlsafe-b64 payload>.<hex signature>`` where the signature covers
the JSON payload.  The payload carries the caller identity the access gate
works with: the credential ``kind`` (``tenant`` or ``service``), the
tenant a tenant credential belongs to, and the grants of a service
credential.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, ValidationError, model_validator

from ledger_core.access.gate import CallerContext, CallerKind

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "ldev"
TOKEN_ISSUER = "ledger"


class AuthMode(str, Enum):
    DEVELOPMENT = "development"


class TokenConfig(BaseModel):
    """Signing configuration for :class:`TokenManager`."""

    auth_mode: AuthMode = AuthMode.DEVELOPMENT
    jwt_secret: SecretStr
    token_ttl_seconds: int = Field(default=3600, gt=0)
    max_token_ttl_seconds: int = Field(default=86400, gt=0)


class TokenClaims(BaseModel):
    """Validated token payload."""

    sub: str = Field(min_length=1)
    kind: CallerKind
    tenant_id: str | None = None
    grants: list[str] = Field(default_factory=list)
    iss: str = TOKEN_ISSUER
    iat: float
    exp: float
    jti: str | None = None

    @model_validator(mode="after")
    def _tenant_required(self) -> TokenClaims:
        if self.kind == CallerKind.TENANT and not self.tenant_id:
            raise ValueError("tenant tokens must carry tenant_id")
        return self

    def to_caller(self) -> CallerContext:
        """Build the access-gate identity for these claims."""
        if self.kind == CallerKind.TENANT:
            assert self.tenant_id is not None  # noqa: S101
            return CallerContext.for_tenant(self.tenant_id, subject=self.sub)
        return CallerContext.for_service(self.sub, self.grants)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class TokenManager:
    """Issue and validate signed bearer tokens.

    Parameters
    ----------
    config:
        Secret and lifetime settings.
    """

    def __init__(self, config: TokenConfig) -> None:
        self._config = config
        self._secret = config.jwt_secret.get_secret_value().encode("utf-8")

    def _sign(self, payload_json: str) -> str:
        return hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()

    def create_token(
        self,
        sub: str,
        *,
        kind: CallerKind | str,
        tenant_id: str | None = None,
        grants: list[str] | None = None,
        ttl_seconds: int | None = None,
    ) -> str:
        """Return a signed token for the given identity.

        ``ttl_seconds`` is capped at ``max_token_ttl_seconds``.
        """
        ttl = min(ttl_seconds or self._config.token_ttl_seconds, self._config.max_token_ttl_seconds)
        now = time.time()
        claims = TokenClaims(
            sub=sub,
            kind=CallerKind(kind),
            tenant_id=tenant_id,
            grants=sorted(grants or []),
            iat=now,
            exp=now + ttl,
            jti=uuid.uuid4().hex,
        )
        payload_json = json.dumps(claims.model_dump(mode="json"), sort_keys=True)
        return f"{TOKEN_PREFIX}.{_b64encode(payload_json.encode('utf-8'))}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        PermissionError
            If the token is malformed, the signature does not match, the
            issuer is wrong, or the token has expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")

        try:
            payload_json = _b64decode(parts[1]).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if not hmac.compare_digest(self._sign(payload_json), parts[2]):
            raise PermissionError("Invalid token signature")

        try:
            payload: dict[str, Any] = json.loads(payload_json)
            claims = TokenClaims.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise PermissionError("Invalid token claims") from exc

        if claims.iss != TOKEN_ISSUER:
            raise PermissionError("Invalid token issuer")
        if claims.exp <= time.time():
            raise PermissionError("Token has expired")
        return claims
