"""Data model for flag and experiment decisions."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from .exceptions import MalformedResponseError

ANONYMOUS_SUBJECT = "anonymous"
CONTROL_VARIANT = "control"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlagReason(str, Enum):
    """Why a flag resolved the way it did."""

    DEFAULT = "default"
    ROLLOUT_INCLUDED = "rollout_included"
    ROLLOUT_EXCLUDED = "rollout_excluded"
    PERCENTAGE_ENABLED = "percentage_enabled"
    PERCENTAGE_DISABLED = "percentage_disabled"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    FALLBACK_DEFAULT = "fallback_default"


class ExperimentReason(str, Enum):
    """Why an experiment resolved the way it did."""

    TRAFFIC_EXCLUDED = "traffic_excluded"
    ASSIGNED_TO_VARIANT = "assigned_to_variant"
    EXPERIMENT_NOT_FOUND = "experiment_not_found"
    EXPERIMENT_NOT_RUNNING = "experiment_not_running"
    FORCED_VARIANT = "forced_variant"
    FALLBACK_DEFAULT = "fallback_default"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"


class ExperimentStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


def _coerce_reason(raw: Any, enum_cls: type[Enum]) -> Enum | str:
    """Map a reason string onto the enum, keeping unknown authority reasons verbatim."""
    try:
        return enum_cls(raw)
    except ValueError:
        return str(raw)


def _reason_value(reason: Enum | str) -> str:
    return reason.value if isinstance(reason, Enum) else reason


def is_anonymous(subject_id: str | None) -> bool:
    return not subject_id or subject_id == ANONYMOUS_SUBJECT


def freeze_payload(payload: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Read-only deep copy of a payload; nested objects and lists are frozen too."""
    return MappingProxyType({key: _freeze_value(value) for key, value in (payload or {}).items()})


def _freeze_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return freeze_payload(value)
    if isinstance(value, (list, tuple)):
        return tuple(_freeze_value(item) for item in value)
    return value


def thaw_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Plain, JSON-serializable copy of a frozen payload."""
    return {key: _thaw_value(value) for key, value in payload.items()}


def _thaw_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return thaw_payload(value)
    if isinstance(value, tuple):
        return [_thaw_value(item) for item in value]
    return value


# =============================================================================
# EVALUATION INPUTS
# =============================================================================


@dataclass(frozen=True)
class EvaluationContext:
    """Who is asking, and from which environment."""

    subject_id: str = ANONYMOUS_SUBJECT
    environment: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_anonymous(self) -> bool:
        return is_anonymous(self.subject_id)

    def with_environment(self, environment: str) -> EvaluationContext:
        return replace(self, environment=environment)

    def cache_token(self) -> str:
        """Stable serialization used as part of cache keys."""
        return json.dumps(
            {
                "subject_id": self.subject_id or ANONYMOUS_SUBJECT,
                "environment": self.environment,
                "attributes": dict(self.attributes),
            },
            sort_keys=True,
            default=str,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.subject_id,
            "environment": self.environment,
            "user_attributes": dict(self.attributes),
        }


@dataclass(frozen=True)
class Variant:
    key: str
    weight: int
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", freeze_payload(self.payload))


@dataclass(frozen=True)
class ExperimentDefinition:
    """
    A running (or paused/stopped) A/B/n test.

    Variant order matters: cumulative weight boundaries follow declaration
    order, so reordering variants moves subjects that sit near a boundary.
    """

    key: str
    status: ExperimentStatus
    traffic_allocation: int
    variants: tuple[Variant, ...] = ()

    @property
    def total_weight(self) -> int:
        return sum(variant.weight for variant in self.variants)

    def variant_named(self, variant_key: str) -> Variant | None:
        for variant in self.variants:
            if variant.key == variant_key:
                return variant
        return None

    @classmethod
    def from_payload(cls, key: str, payload: Mapping[str, Any]) -> ExperimentDefinition:
        """
        Build a definition from an authority payload.

        Raises:
            MalformedResponseError: if any field has the wrong shape.
        """
        try:
            status = ExperimentStatus(payload.get("status", ExperimentStatus.RUNNING.value))
        except ValueError as e:
            raise MalformedResponseError(f"experiment {key}: unknown status {payload.get('status')!r}") from e

        allocation = payload.get("traffic_allocation")
        if isinstance(allocation, bool) or not isinstance(allocation, int) or not 0 <= allocation <= 100:
            raise MalformedResponseError(f"experiment {key}: traffic_allocation must be an int in [0, 100]")

        raw_variants = payload.get("variants", [])
        if not isinstance(raw_variants, list):
            raise MalformedResponseError(f"experiment {key}: variants must be a list")

        variants = []
        for raw in raw_variants:
            if not isinstance(raw, Mapping) or not isinstance(raw.get("key"), str):
                raise MalformedResponseError(f"experiment {key}: variant without a key")
            weight = raw.get("weight", 0)
            if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
                raise MalformedResponseError(
                    f"experiment {key}: variant {raw['key']} has invalid weight {weight!r}"
                )
            variant_payload = raw.get("payload") or {}
            if not isinstance(variant_payload, Mapping):
                raise MalformedResponseError(f"experiment {key}: variant {raw['key']} payload must be an object")
            variants.append(Variant(key=raw["key"], weight=weight, payload=variant_payload))

        return cls(key=key, status=status, traffic_allocation=allocation, variants=tuple(variants))


# =============================================================================
# DECISIONS
# =============================================================================


@dataclass(frozen=True)
class FlagResult:
    """A boolean flag decision. ``value`` always mirrors ``enabled``."""

    key: str
    enabled: bool
    reason: FlagReason | str
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def value(self) -> bool:
        return self.enabled

    @classmethod
    def from_payload(cls, key: str, payload: Any) -> FlagResult:
        """
        Parse an authority flag response ``{enabled, value?, reason?}``.

        Raises:
            MalformedResponseError: if the payload has no boolean decision.
        """
        if not isinstance(payload, Mapping):
            raise MalformedResponseError(f"flag {key}: expected an object, got {type(payload).__name__}")

        enabled = payload.get("enabled", payload.get("value"))
        if not isinstance(enabled, bool):
            raise MalformedResponseError(f"flag {key}: missing boolean 'enabled'")

        return cls(
            key=key,
            enabled=enabled,
            reason=_coerce_reason(payload.get("reason", FlagReason.DEFAULT.value), FlagReason),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "enabled": self.enabled,
            "value": self.value,
            "reason": _reason_value(self.reason),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ExperimentResult:
    """
    An experiment assignment.

    Subjects outside the experiment always see ``control`` with no variant id;
    use :meth:`excluded` to build those.
    """

    key: str
    in_experiment: bool
    variant: str
    reason: ExperimentReason | str
    variant_id: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        # cached results are shared between callers, so payloads are read-only
        object.__setattr__(self, "payload", freeze_payload(self.payload))
        if not self.in_experiment and (self.variant != CONTROL_VARIANT or self.variant_id is not None):
            raise ValueError("subjects outside an experiment must get the control variant without a variant_id")

    @classmethod
    def excluded(
        cls,
        key: str,
        reason: ExperimentReason | str,
        payload: Mapping[str, Any] | None = None,
    ) -> ExperimentResult:
        return cls(
            key=key,
            in_experiment=False,
            variant=CONTROL_VARIANT,
            variant_id=None,
            payload=payload,
            reason=reason,
        )

    @classmethod
    def assigned(
        cls,
        key: str,
        variant: Variant,
        reason: ExperimentReason = ExperimentReason.ASSIGNED_TO_VARIANT,
    ) -> ExperimentResult:
        return cls(
            key=key,
            in_experiment=True,
            variant=variant.key,
            variant_id=f"variant-{variant.key}",
            payload=variant.payload,
            reason=reason,
        )

    @classmethod
    def from_payload(cls, key: str, payload: Mapping[str, Any]) -> ExperimentResult:
        """
        Parse an already-resolved authority answer ``{in_experiment, variant, ...}``.

        Raises:
            MalformedResponseError: on a missing or mistyped field.
        """
        in_experiment = payload.get("in_experiment")
        if not isinstance(in_experiment, bool):
            raise MalformedResponseError(f"experiment {key}: missing boolean 'in_experiment'")

        reason = _coerce_reason(
            payload.get("reason", ExperimentReason.ASSIGNED_TO_VARIANT.value if in_experiment
                        else ExperimentReason.TRAFFIC_EXCLUDED.value),
            ExperimentReason,
        )
        result_payload = payload.get("payload") or {}
        if not isinstance(result_payload, Mapping):
            raise MalformedResponseError(f"experiment {key}: payload must be an object")

        if not in_experiment:
            return cls.excluded(key, reason, result_payload)

        variant = payload.get("variant")
        if not isinstance(variant, str) or not variant:
            raise MalformedResponseError(f"experiment {key}: missing 'variant'")
        return cls(
            key=key,
            in_experiment=True,
            variant=variant,
            variant_id=payload.get("variant_id") or f"variant-{variant}",
            payload=result_payload,
            reason=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "in_experiment": self.in_experiment,
            "variant": self.variant,
            "variant_id": self.variant_id,
            "payload": thaw_payload(self.payload),
            "reason": _reason_value(self.reason),
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# TRACKING
# =============================================================================


@dataclass(frozen=True)
class TrackEventRequest:
    """An analytics event about flag or experiment exposure."""

    event_type: str
    subject_id: str | None = None
    flag_key: str | None = None
    experiment_key: str | None = None
    variant_key: str | None = None
    properties: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "event_type": self.event_type,
            "user_id": self.subject_id,
            "flag_key": self.flag_key,
            "experiment_key": self.experiment_key,
            "variant_key": self.variant_key,
            "properties": dict(self.properties),
        }
        return {name: value for name, value in data.items() if value is not None}


@dataclass(frozen=True)
class TrackResult:
    """Outcome of a best-effort tracking call. Never raised, only returned."""

    success: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.reason is not None:
            data["reason"] = self.reason
        return data
