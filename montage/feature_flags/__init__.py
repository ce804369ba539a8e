"""
Resilient feature flags and experiments.

USAGE:
    from montage.feature_flags import EvaluationContext, create_service

    service = create_service()
    ctx = EvaluationContext(subject_id="user-123")

    # Boolean flag
    if (await service.evaluate_flag("dark_mode", ctx)).enabled:
        enable_dark_mode()

    # Experiment assignment
    experiment = await service.evaluate_experiment("onboarding_flow_test", ctx)
    if experiment.in_experiment:
        render(experiment.variant, experiment.payload)

    # Everything the fallback tables know about
    flags = await service.get_all_flags(ctx)

    # Exposure tracking (fire and forget)
    service.track_event_in_background(
        TrackEventRequest("experiment_viewed", subject_id="user-123", experiment_key="onboarding_flow_test")
    )

    # Diagnostics
    service.get_service_status().to_dict()

    # PostHog instead of the REST feature service
    service = ResilientFeatureService(PostHogAuthority.from_env())

ENVIRONMENT VARIABLES:
    See montage.feature_flags.config (engine tunables) and
    montage.feature_flags.posthog_client (POSTHOG_*).
"""

from .assignment import assignment_hash, bucket
from .authority import DecisionAuthority, HttpDecisionAuthority
from .cache import MISS, TTLCache
from .circuit_breaker import BreakerSnapshot, CircuitBreaker, CircuitState
from .config import ResilienceConfig
from .defaults import ExperimentFallback, FallbackDefaults
from .evaluator import resolve_experiment, resolve_flag, select_variant
from .exceptions import (
    AuthorityError,
    ConfigurationError,
    FeatureFlagError,
    FeatureFlagErrorCodes,
    MalformedResponseError,
)
from .models import (
    EvaluationContext,
    ExperimentDefinition,
    ExperimentReason,
    ExperimentResult,
    ExperimentStatus,
    FlagReason,
    FlagResult,
    TrackEventRequest,
    TrackResult,
    Variant,
)
from .posthog_client import PostHogAuthority
from .service import ResilientFeatureService, ServiceStatus, create_service

__all__ = [
    # High-level API
    "ResilientFeatureService",
    "ServiceStatus",
    "create_service",
    # Authorities
    "DecisionAuthority",
    "HttpDecisionAuthority",
    "PostHogAuthority",
    # Models
    "EvaluationContext",
    "ExperimentDefinition",
    "ExperimentReason",
    "ExperimentResult",
    "ExperimentStatus",
    "FlagReason",
    "FlagResult",
    "TrackEventRequest",
    "TrackResult",
    "Variant",
    # Building blocks
    "assignment_hash",
    "bucket",
    "TTLCache",
    "MISS",
    "CircuitBreaker",
    "CircuitState",
    "BreakerSnapshot",
    "ResilienceConfig",
    "FallbackDefaults",
    "ExperimentFallback",
    "resolve_flag",
    "resolve_experiment",
    "select_variant",
    # Errors
    "FeatureFlagError",
    "FeatureFlagErrorCodes",
    "AuthorityError",
    "MalformedResponseError",
    "ConfigurationError",
]
