"""Usage type registry.

Closed mapping from raw event kinds emitted by the ingestion pipeline to
the canonical :class:`UsageType` values the ledger bills on.  Metric
identity is decided here and nowhere else: two events are summed together
only when they classify to the same type.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from enum import Enum
from typing import TYPE_CHECKING

from ledger_core.errors import IncomparableUsageTypes, InvalidUsageEvent, UnknownUsageType

if TYPE_CHECKING:
    from ledger_core.usage.events import RawUsageEvent, UsageEvent

logger = logging.getLogger(__name__)

# Fixed-point scale for continuous quantities; matches Numeric(28, 6).
QUANTITY_SCALE = Decimal("0.000001")


class UsageType(str, Enum):
    """Canonical billing metric."""

    CAPACITY_TOKENS = "capacity_tokens"
    API_COMPLEXITY = "api_complexity"
    BANDWIDTH_BYTES = "bandwidth_bytes"
    STREAM_MINUTES = "stream_minutes"
    COMPUTE_SECONDS = "compute_seconds"


class NumericKind(str, Enum):
    DISCRETE = "discrete"
    CONTINUOUS = "continuous"


@dataclass(frozen=True)
class UsageTypeSpec:
    """Unit and numeric kind of a :class:`UsageType`."""

    usage_type: UsageType
    unit: str
    kind: NumericKind
    description: str = ""

    @property
    def is_discrete(self) -> bool:
        return self.kind == NumericKind.DISCRETE


_SPECS: dict[UsageType, UsageTypeSpec] = {
    UsageType.CAPACITY_TOKENS: UsageTypeSpec(
        UsageType.CAPACITY_TOKENS, "tokens", NumericKind.DISCRETE, "LLM input/output capacity tokens"
    ),
    UsageType.API_COMPLEXITY: UsageTypeSpec(
        UsageType.API_COMPLEXITY, "units", NumericKind.DISCRETE, "GraphQL/REST query complexity units"
    ),
    UsageType.BANDWIDTH_BYTES: UsageTypeSpec(
        UsageType.BANDWIDTH_BYTES, "bytes", NumericKind.CONTINUOUS, "Egress bandwidth"
    ),
    UsageType.STREAM_MINUTES: UsageTypeSpec(
        UsageType.STREAM_MINUTES, "minutes", NumericKind.CONTINUOUS, "Delivered stream minutes"
    ),
    UsageType.COMPUTE_SECONDS: UsageTypeSpec(
        UsageType.COMPUTE_SECONDS, "seconds", NumericKind.CONTINUOUS, "Processing and transcode time"
    ),
}

DEFAULT_RAW_KINDS: dict[str, UsageType] = {
    "capacity_tokens": UsageType.CAPACITY_TOKENS,
    "llm.tokens": UsageType.CAPACITY_TOKENS,
    "inference_tokens": UsageType.CAPACITY_TOKENS,
    "api_complexity": UsageType.API_COMPLEXITY,
    "graphql.complexity": UsageType.API_COMPLEXITY,
    "rest.complexity": UsageType.API_COMPLEXITY,
    "bandwidth_bytes": UsageType.BANDWIDTH_BYTES,
    "egress_bytes": UsageType.BANDWIDTH_BYTES,
    "stream_minutes": UsageType.STREAM_MINUTES,
    "stream.minutes": UsageType.STREAM_MINUTES,
    "compute_seconds": UsageType.COMPUTE_SECONDS,
    "transcode_seconds": UsageType.COMPUTE_SECONDS,
}


def spec_for(usage_type: UsageType | str) -> UsageTypeSpec:
    """Return the unit and numeric kind for *usage_type*."""
    return _SPECS[UsageType(usage_type)]


def all_specs() -> list[UsageTypeSpec]:
    """Every usage type spec, in declaration order."""
    return [_SPECS[usage_type] for usage_type in UsageType]


def is_comparable(a: UsageType | str, b: UsageType | str) -> bool:
    """Return ``True`` only when *a* and *b* are the same usage type."""
    return UsageType(a) == UsageType(b)


def require_comparable(a: UsageType | str, b: UsageType | str) -> None:
    if not is_comparable(a, b):
        raise IncomparableUsageTypes(f"Cannot combine {UsageType(a).value} with {UsageType(b).value}")


def normalize_quantity(usage_type: UsageType | str, value: object) -> int | Decimal:
    """Coerce *value* to the canonical numeric form of *usage_type*.

    Discrete types return a non-negative ``int``; a fractional value is
    rejected rather than rounded.  Continuous types return a non-negative
    ``Decimal`` quantized to six places.

    Raises
    ------
    InvalidUsageEvent
        If the value is not numeric, negative, or fractional for a
        discrete type.
    """
    spec = spec_for(usage_type)
    if isinstance(value, bool):
        raise InvalidUsageEvent(f"Quantity must be numeric, got {value!r}")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidUsageEvent(f"Quantity must be numeric, got {value!r}") from exc
    if not amount.is_finite():
        raise InvalidUsageEvent(f"Quantity must be finite, got {value!r}")
    if amount < 0:
        raise InvalidUsageEvent(f"Quantity must not be negative, got {value!r}")

    if spec.is_discrete:
        if amount != amount.to_integral_value():
            raise InvalidUsageEvent(f"{spec.usage_type.value} is discrete; got fractional quantity {value!r}")
        return int(amount)
    return amount.quantize(QUANTITY_SCALE, rounding=ROUND_HALF_EVEN)


def zero_quantity(usage_type: UsageType | str) -> int | Decimal:
    return 0 if spec_for(usage_type).is_discrete else Decimal("0").quantize(QUANTITY_SCALE)


class UsageTypeRegistry:
    """Maps raw event kinds to :class:`UsageType`.

    Parameters
    ----------
    mappings:
        Initial raw-kind mappings.  Defaults to :data:`DEFAULT_RAW_KINDS`.
    """

    def __init__(self, mappings: dict[str, UsageType] | None = None) -> None:
        self._lock = threading.Lock()
        self._kinds: dict[str, UsageType] = {}
        for raw_kind, usage_type in (mappings if mappings is not None else DEFAULT_RAW_KINDS).items():
            self.register(raw_kind, usage_type)

    def register(self, raw_kind: str, usage_type: UsageType | str) -> None:
        """Map *raw_kind* to *usage_type*.

        Re-registering the same mapping is a no-op; remapping a kind to a
        different type raises ``ValueError``.
        """
        key = raw_kind.strip()
        if not key:
            raise ValueError("raw_kind must be non-empty")
        target = UsageType(usage_type)
        with self._lock:
            existing = self._kinds.get(key)
            if existing is not None and existing != target:
                raise ValueError(
                    f"Raw kind {key!r} is already mapped to {existing.value}, cannot remap to {target.value}"
                )
            self._kinds[key] = target

    def classify(self, raw_event_kind: str) -> UsageType:
        """Return the usage type for *raw_event_kind*.

        Raises
        ------
        UnknownUsageType
            If the kind has no mapping.
        """
        usage_type = self._kinds.get(raw_event_kind.strip()) if isinstance(raw_event_kind, str) else None
        if usage_type is None:
            logger.debug("Unmapped raw usage kind: %r", raw_event_kind)
            raise UnknownUsageType(str(raw_event_kind))
        return usage_type

    def classify_event(self, raw_event: RawUsageEvent) -> UsageEvent:
        """Classify *raw_event* and validate its unit and quantity.

        Raises
        ------
        UnknownUsageType
            If ``usage_type_raw`` has no mapping.
        InvalidUsageEvent
            If the unit differs from the canonical unit of the type, or
            the quantity is invalid for the type's numeric kind.
        """
        from ledger_core.usage.events import UsageEvent

        usage_type = self.classify(raw_event.usage_type_raw)
        spec = spec_for(usage_type)
        if raw_event.unit.strip().lower() != spec.unit:
            raise InvalidUsageEvent(
                f"Event {raw_event.event_id}: unit {raw_event.unit!r} does not match "
                f"{usage_type.value} unit {spec.unit!r}"
            )
        return UsageEvent(
            event_id=raw_event.event_id,
            tenant_id=raw_event.tenant_id,
            usage_type=usage_type,
            quantity=normalize_quantity(usage_type, raw_event.quantity),
            unit=spec.unit,
            occurred_at=raw_event.occurred_at,
            observed_at=raw_event.observed_at,
        )

    def is_comparable(self, a: UsageType | str, b: UsageType | str) -> bool:
        return is_comparable(a, b)

    def spec_for(self, usage_type: UsageType | str) -> UsageTypeSpec:
        return spec_for(usage_type)

    def raw_kinds_for(self, usage_type: UsageType | str) -> list[str]:
        """Return every raw kind mapped to *usage_type*, sorted."""
        target = UsageType(usage_type)
        with self._lock:
            return sorted(k for k, v in self._kinds.items() if v == target)

    def mappings(self) -> dict[str, UsageType]:
        with self._lock:
            return dict(self._kinds)

    def __contains__(self, raw_kind: object) -> bool:
        return isinstance(raw_kind, str) and raw_kind.strip() in self._kinds

    def __len__(self) -> int:
        return len(self._kinds)
