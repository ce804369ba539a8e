"""
Local decision logic shared by the live and degraded paths.

resolve_flag() and resolve_experiment() are pure: given the assignment hash,
the fallback tables and whatever the remote authority returned (or nothing),
they produce a decision. The resilient service calls them on every path so a
subject gets the same rollout bucket whether the authority is up or down.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .assignment import BUCKET_COUNT, bucket
from .defaults import FallbackDefaults
from .models import (
    ANONYMOUS_SUBJECT,
    ExperimentDefinition,
    ExperimentReason,
    ExperimentResult,
    ExperimentStatus,
    FlagReason,
    FlagResult,
    Variant,
    is_anonymous,
)

# =============================================================================
# FLAGS
# =============================================================================


def rollout_decision(key: str, subject_id: str, percentage: int) -> FlagResult:
    """Percentage rollout: a subject is included when its bucket is below ``percentage``."""
    enabled = bucket(subject_id, key) < percentage
    return FlagResult(
        key=key,
        enabled=enabled,
        reason=FlagReason.ROLLOUT_INCLUDED if enabled else FlagReason.ROLLOUT_EXCLUDED,
    )


def resolve_flag(
    key: str,
    subject_id: str | None,
    environment: str | None,
    defaults: FallbackDefaults,
    live_result: FlagResult | None = None,
    fallback_reason: FlagReason = FlagReason.DEFAULT,
) -> FlagResult:
    """
    Resolve a flag decision.

    Precedence:
        1. Local percentage rollout, for keys that have one and identified
           subjects. This wins over the live result so bucketing never drifts
           with backend rollout logic.
        2. The live result, passed through with the authority's reason.
        3. The fallback table, tagged with ``fallback_reason``.

    Anonymous subjects never take part in a rollout.
    """
    percentage = defaults.rollout_for(key)
    if percentage is not None and not is_anonymous(subject_id):
        return rollout_decision(key, subject_id, percentage)

    if live_result is not None:
        return live_result

    return FlagResult(
        key=key,
        enabled=defaults.default_for(key, environment),
        reason=fallback_reason,
    )


# =============================================================================
# EXPERIMENTS
# =============================================================================


def select_variant(variants: tuple[Variant, ...], variant_hash: int) -> Variant:
    """
    Walk variants in declared order and return the first whose cumulative
    weight exceeds ``variant_hash``. When weights add up to less than the
    hash, the last variant is returned so nobody is left unassigned.
    """
    cumulative = 0
    for variant in variants:
        cumulative += variant.weight
        if variant_hash < cumulative:
            return variant
    return variants[-1]


def resolve_experiment(
    key: str,
    subject_id: str | None,
    environment: str | None,
    defaults: FallbackDefaults,
    definition: ExperimentDefinition | None = None,
    missing_reason: ExperimentReason = ExperimentReason.EXPERIMENT_NOT_FOUND,
    force_variant: str | None = None,
) -> ExperimentResult:
    """
    Resolve an experiment assignment.

    Args:
        key: Experiment key
        subject_id: Subject being assigned ("anonymous" when unknown)
        environment: Deployment environment (kept for symmetry with flags)
        defaults: Fallback tables supplying the static payload
        definition: The experiment definition, or None when unavailable
        missing_reason: Reason used when there is no definition
            (experiment_not_found, fallback_default or circuit_breaker_open)
        force_variant: Explicit call-site override, e.g. for QA sessions.
            Ignored unless it names a declared variant.

    Returns:
        ExperimentResult. Traffic gating and variant selection share one
        bucket, so a subject in traffic always lands on the same arm.
    """
    if definition is None:
        return ExperimentResult.excluded(key, missing_reason, _static_payload(defaults, key))

    if definition.status != ExperimentStatus.RUNNING:
        return ExperimentResult.excluded(
            key, ExperimentReason.EXPERIMENT_NOT_RUNNING, _static_payload(defaults, key)
        )

    if force_variant is not None:
        forced = definition.variant_named(force_variant)
        if forced is not None:
            return ExperimentResult.assigned(key, forced, ExperimentReason.FORCED_VARIANT)

    subject_bucket = bucket(subject_id or ANONYMOUS_SUBJECT, key)
    if subject_bucket >= definition.traffic_allocation or not definition.variants:
        return ExperimentResult.excluded(key, ExperimentReason.TRAFFIC_EXCLUDED)

    variant = select_variant(definition.variants, subject_bucket % BUCKET_COUNT)
    return ExperimentResult.assigned(key, variant)


def _static_payload(defaults: FallbackDefaults, key: str) -> Mapping[str, Any]:
    return defaults.experiment_fallback(key).payload
