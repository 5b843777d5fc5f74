"""First-touch attribution capture at the registration edge.

Everything arriving here is untrusted: URLs are reduced to
``scheme://host[:port]/path`` (query string, fragment and userinfo
removed), only a fixed set of named fields is read, and every value is
trimmed, stripped of control characters and truncated to its column
width.  :func:`capture` is pure.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field

# Column widths in ``tenant_attribution``.
MAX_UTM_LENGTH = 255
MAX_MEDIUM_LENGTH = 100
MAX_REFERRAL_LENGTH = 100
MAX_CHANNEL_LENGTH = 100
MAX_URL_LENGTH = 2048

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f\u200b-\u200f\u2028\u2029\ufeff]")
_ALLOWED_SCHEMES = frozenset({"http", "https"})

_FIELD_LIMITS: dict[str, int] = {
    "utm_source": MAX_UTM_LENGTH,
    "utm_medium": MAX_MEDIUM_LENGTH,
    "utm_campaign": MAX_UTM_LENGTH,
    "utm_content": MAX_UTM_LENGTH,
    "utm_term": MAX_UTM_LENGTH,
    "referral_code": MAX_REFERRAL_LENGTH,
}

# Query-string aliases, checked in order after the canonical name.
_QUERY_ALIASES: dict[str, tuple[str, ...]] = {
    "referral_code": ("ref",),
}


class RegistrationContext(BaseModel):
    """Raw attribution inputs observed on a registration request.

    Attributes
    ----------
    referrer:
        Value of the ``Referer`` header.
    landing_page:
        URL of the first page the visitor landed on (client supplied).
    query_params:
        Query-string parameters of the registration request.
    body:
        Explicit attribution fields from the request body.  These win over
        query-string values.
    signup_channel:
        Surface the registration came through (``web``, ``api``, ...).
    signup_method:
        Credential type used (``email``, ``wallet``, ``oauth``, ...).
    """

    referrer: str | None = None
    landing_page: str | None = None
    query_params: Mapping[str, str] = Field(default_factory=dict)
    body: Mapping[str, Any] = Field(default_factory=dict)
    signup_channel: str | None = None
    signup_method: str | None = None


class TenantAttribution(BaseModel):
    """Sanitized first-touch attribution for one tenant.

    ``tenant_id`` is ``None`` until the attribution is bound to the tenant
    the provisioner created.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str | None = None
    signup_channel: str | None = None
    signup_method: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_content: str | None = None
    utm_term: str | None = None
    referral_code: str | None = None
    landing_page: str | None = None
    referrer: str | None = None
    captured_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def bind(self, tenant_id: str) -> TenantAttribution:
        """Return a copy bound to *tenant_id*."""
        return self.model_copy(update={"tenant_id": tenant_id})

    @property
    def has_signal(self) -> bool:
        return any(
            (
                self.utm_source,
                self.utm_medium,
                self.utm_campaign,
                self.utm_content,
                self.utm_term,
                self.referral_code,
                self.referrer,
            )
        )

    def to_row(self) -> dict[str, Any]:
        if self.tenant_id is None:
            raise ValueError("Attribution must be bound to a tenant before it is stored")
        return self.model_dump()


def clean_value(value: object, max_length: int) -> str | None:
    """Trim, drop control characters and truncate; non-strings and blanks become ``None``."""
    if not isinstance(value, str):
        return None
    cleaned = _CONTROL_CHARS_RE.sub("", value).strip()
    if not cleaned:
        return None
    return cleaned[:max_length].rstrip() or None


def sanitize_url(raw: object) -> str | None:
    """Reduce *raw* to ``scheme://host[:port]/path``.

    Returns ``None`` for anything that is not an absolute ``http``/``https``
    URL with a host.

    >>> sanitize_url("https://x.com/?ref=abc&uid=123#frag")
    'https://x.com/'
    """
    if not isinstance(raw, str):
        return None
    candidate = _CONTROL_CHARS_RE.sub("", raw).strip()
    if not candidate:
        return None
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if scheme not in _ALLOWED_SCHEMES or not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    netloc = f"{host}:{port}" if port is not None else host
    return urlunsplit((scheme, netloc, parts.path, "", ""))[:MAX_URL_LENGTH]


def _pick(name: str, body: Mapping[str, Any], query: Mapping[str, str]) -> str | None:
    limit = _FIELD_LIMITS[name]
    value = clean_value(body.get(name), limit)
    if value is not None:
        return value
    for key in (name, *_QUERY_ALIASES.get(name, ())):
        value = clean_value(query.get(key), limit)
        if value is not None:
            return value
    return None


def capture(context: RegistrationContext, *, now: datetime | None = None) -> TenantAttribution | None:
    """Extract sanitized attribution from a registration request.

    Returns ``None`` when there is no attribution signal: no UTM field, no
    referral code and no usable referrer.  A landing page alone is not a
    signal.
    """
    body = context.body
    query = context.query_params
    fields = {name: _pick(name, body, query) for name in _FIELD_LIMITS}

    referrer = sanitize_url(context.referrer)
    landing_page = sanitize_url(body.get("landing_page") or context.landing_page)

    attribution = TenantAttribution(
        signup_channel=clean_value(context.signup_channel, MAX_CHANNEL_LENGTH),
        signup_method=clean_value(context.signup_method, MAX_CHANNEL_LENGTH),
        landing_page=landing_page,
        referrer=referrer,
        captured_at=now or datetime.now(UTC),
        **fields,
    )
    if not attribution.has_signal:
        return None
    return attribution
