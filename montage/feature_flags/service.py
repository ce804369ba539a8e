"""
Resilient facade over the remote decision authority.

    evaluate_flag / evaluate_experiment
        1. breaker open            -> local decision, reason circuit_breaker_open
        2. cache hit               -> cached decision, breaker untouched
        3. remote call (bounded)   -> success: record, resolve, cache, return
                                      failure: record, local decision, reason fallback_default
        Decision reads never raise.

    track_event
        Best effort. Skipped while the breaker is open, failures are logged and
        reported as TrackResult(success=False); breaker counters never move.

USAGE:
    from montage.feature_flags import EvaluationContext, create_service

    service = create_service()
    ctx = EvaluationContext(subject_id="user-123", environment="production")

    flag = await service.evaluate_flag("dark_mode", ctx)
    if flag.enabled:
        enable_dark_mode()

    experiment = await service.evaluate_experiment("onboarding_flow_test", ctx)
    render_onboarding(experiment.variant, experiment.payload)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from montage.logger import logger

from .authority import DecisionAuthority, HttpDecisionAuthority
from .cache import MISS, TTLCache
from .circuit_breaker import BreakerSnapshot, CircuitBreaker
from .config import ResilienceConfig
from .defaults import FallbackDefaults
from .evaluator import resolve_experiment, resolve_flag
from .exceptions import MalformedResponseError
from .models import (
    EvaluationContext,
    ExperimentDefinition,
    ExperimentReason,
    ExperimentResult,
    FlagReason,
    FlagResult,
    TrackEventRequest,
    TrackResult,
)

T = TypeVar("T")

FLAG = "flag"
EXPERIMENT = "experiment"


@dataclass(frozen=True)
class ServiceStatus:
    """Operational view of one engine instance."""

    flags: BreakerSnapshot
    experiments: BreakerSnapshot
    cache_size: int

    @property
    def breaker_state(self) -> str:
        return self.flags.state.value

    @property
    def failure_count(self) -> int:
        return self.flags.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "breaker_state": self.breaker_state,
            "failure_count": self.failure_count,
            "cache_size": self.cache_size,
            "breakers": {
                "flags": self.flags.to_dict(),
                "experiments": self.experiments.to_dict(),
            },
        }


class ResilientFeatureService:
    """
    Flag and experiment evaluation that keeps answering when the authority doesn't.

    Each instance owns its breakers and cache, so several engines (one per
    tenant, say) keep isolated fault history. Flags and experiments have
    separate breakers: a failing experiment endpoint does not take flags down.
    """

    def __init__(
        self,
        authority: DecisionAuthority,
        defaults: FallbackDefaults | None = None,
        config: ResilienceConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or ResilienceConfig()
        if defaults is None:
            defaults = (
                FallbackDefaults.from_json_file(self._config.defaults_file)
                if self._config.defaults_file
                else FallbackDefaults()
            )
        self._authority = authority
        self._defaults = defaults
        self._flag_breaker = CircuitBreaker(
            "flags",
            failure_threshold=self._config.failure_threshold,
            reset_timeout=self._config.reset_timeout,
            clock=clock,
        )
        self._experiment_breaker = CircuitBreaker(
            "experiments",
            failure_threshold=self._config.failure_threshold,
            reset_timeout=self._config.reset_timeout,
            clock=clock,
        )
        self._cache = TTLCache(default_ttl=self._config.cache_ttl, clock=clock)
        self._background_tasks: set[asyncio.Task[TrackResult]] = set()

    @property
    def config(self) -> ResilienceConfig:
        return self._config

    @property
    def defaults(self) -> FallbackDefaults:
        return self._defaults

    # =========================================================================
    # FLAGS
    # =========================================================================

    async def evaluate_flag(
        self,
        key: str,
        context: EvaluationContext | None = None,
        timeout: float | None = None,
    ) -> FlagResult:
        """
        Evaluate one flag. Never raises (cancellation aside).

        Args:
            key: Flag key
            context: Subject and environment (environment defaults to config)
            timeout: Upper bound for the remote call, in seconds
        """
        ctx = self._context(context)

        def local(reason: FlagReason) -> FlagResult:
            return resolve_flag(key, ctx.subject_id, ctx.environment, self._defaults, fallback_reason=reason)

        def resolve(payload: Any) -> FlagResult:
            live = FlagResult.from_payload(key, payload)
            return resolve_flag(key, ctx.subject_id, ctx.environment, self._defaults, live_result=live)

        return await self._resilient(
            kind=FLAG,
            key=key,
            cache_key=(FLAG, key, ctx.cache_token()),
            breaker=self._flag_breaker,
            fetch=lambda: self._authority.evaluate_flag(key, ctx),
            resolve=resolve,
            circuit_open=lambda: local(FlagReason.CIRCUIT_BREAKER_OPEN),
            fallback=lambda: local(FlagReason.FALLBACK_DEFAULT),
            timeout=timeout,
        )

    async def evaluate_flags(
        self,
        keys: Iterable[str],
        context: EvaluationContext | None = None,
        timeout: float | None = None,
    ) -> dict[str, FlagResult]:
        """Evaluate several flags concurrently, with per-key resilience."""
        ctx = self._context(context)
        unique_keys = list(dict.fromkeys(keys))
        results = await asyncio.gather(
            *(self.evaluate_flag(key, ctx, timeout=timeout) for key in unique_keys)
        )
        return dict(zip(unique_keys, results))

    async def get_all_flags(
        self,
        context: EvaluationContext | None = None,
        timeout: float | None = None,
    ) -> dict[str, FlagResult]:
        """Evaluate every flag known to the fallback tables."""
        ctx = self._context(context)
        return await self.evaluate_flags(self._defaults.flag_keys(ctx.environment), ctx, timeout=timeout)

    # =========================================================================
    # EXPERIMENTS
    # =========================================================================

    async def evaluate_experiment(
        self,
        key: str,
        context: EvaluationContext | None = None,
        timeout: float | None = None,
        force_variant: str | None = None,
    ) -> ExperimentResult:
        """
        Evaluate one experiment. Never raises (cancellation aside).

        Args:
            key: Experiment key
            context: Subject and environment
            timeout: Upper bound for the remote call, in seconds
            force_variant: Pin the subject to this variant (QA / development).
                Only honoured when the authority returns a definition that
                declares the variant.
        """
        ctx = self._context(context)

        def local(reason: ExperimentReason) -> ExperimentResult:
            return resolve_experiment(key, ctx.subject_id, ctx.environment, self._defaults, missing_reason=reason)

        def resolve(payload: Any) -> ExperimentResult:
            if payload is None:
                return local(ExperimentReason.EXPERIMENT_NOT_FOUND)
            if not isinstance(payload, Mapping):
                raise MalformedResponseError(f"experiment {key}: expected an object, got {type(payload).__name__}")
            if "in_experiment" in payload:
                return ExperimentResult.from_payload(key, payload)
            definition = ExperimentDefinition.from_payload(key, payload)
            return resolve_experiment(
                key,
                ctx.subject_id,
                ctx.environment,
                self._defaults,
                definition=definition,
                force_variant=force_variant,
            )

        token = ctx.cache_token()
        if force_variant is not None:
            token = f"{token}|force={force_variant}"

        return await self._resilient(
            kind=EXPERIMENT,
            key=key,
            cache_key=(EXPERIMENT, key, token),
            breaker=self._experiment_breaker,
            fetch=lambda: self._authority.evaluate_experiment(key, ctx),
            resolve=resolve,
            circuit_open=lambda: local(ExperimentReason.CIRCUIT_BREAKER_OPEN),
            fallback=lambda: local(ExperimentReason.FALLBACK_DEFAULT),
            timeout=timeout,
        )

    # =========================================================================
    # TRACKING
    # =========================================================================

    async def track_event(self, event: TrackEventRequest, timeout: float | None = None) -> TrackResult:
        """
        Send an analytics event. Never raises (cancellation aside).

        Returns:
            TrackResult(success=False, reason="service_unavailable") while the
            flag breaker is open, TrackResult(success=False,
            reason="tracking_failed") when the call fails.
        """
        if self._flag_breaker.is_open:
            logger.warning("feature_event_skipped", event_type=event.event_type, reason="service_unavailable")
            return TrackResult(success=False, reason="service_unavailable")

        try:
            ack = await self._bounded(self._authority.track_event(event), timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "feature_event_tracking_failed",
                event_type=event.event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            return TrackResult(success=False, reason="tracking_failed")

        if ack is False:
            return TrackResult(success=False, reason="rejected")
        if isinstance(ack, Mapping) and ack.get("success") is False:
            return TrackResult(success=False, reason=ack.get("reason") or "rejected")
        return TrackResult(success=True)

    def track_event_in_background(self, event: TrackEventRequest) -> asyncio.Task[TrackResult]:
        """
        Fire-and-forget tracking. Must be called from a running event loop.

        The returned task always completes with a TrackResult; callers may
        ignore it entirely.
        """
        task = asyncio.get_running_loop().create_task(self.track_event(event))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # =========================================================================
    # CACHE & DIAGNOSTICS
    # =========================================================================

    def invalidate_cache(self, keys: str | Iterable[str] | None = None) -> int:
        """
        Drop cached decisions for ``keys`` (one flag or experiment key, or
        several), or all of them when ``keys`` is None. Breaker state is not
        affected.

        Returns:
            Number of evicted entries
        """
        if keys is None:
            evicted = self._cache.clear()
        else:
            wanted = {keys} if isinstance(keys, str) else set(keys)
            evicted = self._cache.evict_where(lambda cache_key: cache_key[1] in wanted)
        logger.info("feature_cache_invalidated", keys=None if keys is None else sorted(wanted), evicted=evicted)
        return evicted

    def get_service_status(self) -> ServiceStatus:
        return ServiceStatus(
            flags=self._flag_breaker.snapshot(),
            experiments=self._experiment_breaker.snapshot(),
            cache_size=len(self._cache),
        )

    def reset(self) -> None:
        """Close both breakers and empty the cache."""
        self._flag_breaker.reset()
        self._experiment_breaker.reset()
        self._cache.clear()
        logger.info("feature_service_reset")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _context(self, context: EvaluationContext | None) -> EvaluationContext:
        ctx = context or EvaluationContext()
        if ctx.environment is None:
            ctx = ctx.with_environment(self._config.environment)
        return ctx

    async def _bounded(self, awaitable: Awaitable[T], timeout: float | None) -> T:
        return await asyncio.wait_for(awaitable, self._config.call_timeout if timeout is None else timeout)

    async def _resilient(
        self,
        *,
        kind: str,
        key: str,
        cache_key: tuple[str, str, str],
        breaker: CircuitBreaker,
        fetch: Callable[[], Awaitable[Any]],
        resolve: Callable[[Any], T],
        circuit_open: Callable[[], T],
        fallback: Callable[[], T],
        timeout: float | None,
    ) -> T:
        if not breaker.is_available():
            logger.warning(f"feature_{kind}_circuit_open", key=key)
            return circuit_open()

        cached = self._cache.get(cache_key)
        if cached is not MISS:
            logger.debug(f"feature_{kind}_cache_hit", key=key)
            return cached

        # a concurrent caller may have taken the half-open trial slot meanwhile
        if not breaker.try_acquire():
            logger.warning(f"feature_{kind}_circuit_open", key=key)
            return circuit_open()

        try:
            result = resolve(await self._bounded(fetch(), timeout))
        except asyncio.CancelledError:
            breaker.release()
            raise
        except Exception as e:
            breaker.record_failure()
            logger.error(
                f"feature_{kind}_fallback",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return fallback()

        breaker.record_success()
        self._cache.put(cache_key, result)
        logger.debug(f"feature_{kind}_evaluated", key=key, reason=str(getattr(result.reason, "value", result.reason)))
        return result


def create_service(
    authority: DecisionAuthority | None = None,
    config: ResilienceConfig | None = None,
    defaults: FallbackDefaults | None = None,
) -> ResilientFeatureService:
    """
    Build a service from environment configuration.

    Without an explicit authority, the REST feature service at
    FEATURE_API_BASE_URL is used.
    """
    config = config or ResilienceConfig.from_env()
    if authority is None:
        authority = HttpDecisionAuthority(config.api_base_url, timeout=config.call_timeout)
    return ResilientFeatureService(authority, defaults=defaults, config=config)
