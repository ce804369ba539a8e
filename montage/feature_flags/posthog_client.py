"""
PostHog-backed decision authority.

PostHog evaluates boolean flags and multivariate flags (used as experiments);
this adapter exposes them through the DecisionAuthority protocol so they get
the breaker, cache and fallback behaviour of ResilientFeatureService.

The PostHog SDK is synchronous, so every call runs in a worker thread.
Unlike a bare PostHog client, errors are NOT swallowed here: the resilient
service needs to see them to count breaker failures.

USAGE:
    from montage.feature_flags import PostHogAuthority, ResilientFeatureService

    authority = PostHogAuthority.from_env()
    service = ResilientFeatureService(authority)
    ...
    authority.shutdown()

ENVIRONMENT VARIABLES:
    POSTHOG_API_KEY: Project API key (required)
    POSTHOG_PERSONAL_API_KEY: Feature flags secure API key (enables local evaluation)
    POSTHOG_HOST: PostHog host (default: https://us.i.posthog.com)
    POSTHOG_POLL_INTERVAL: Polling interval in seconds (default: 15)
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Mapping
from typing import Any

from posthog import Posthog

from montage.logger import logger

from .exceptions import AuthorityError, ConfigurationError, MalformedResponseError
from .models import EvaluationContext, ExperimentReason, TrackEventRequest

POSTHOG_HOST = os.getenv("POSTHOG_HOST", "https://us.i.posthog.com")
POSTHOG_POLL_INTERVAL = int(os.getenv("POSTHOG_POLL_INTERVAL", "15"))

# Reason attached to flag decisions PostHog made for us.
POSTHOG_REASON = "posthog_evaluated"


def _person_properties(context: EvaluationContext) -> dict[str, Any]:
    """Targeting properties: the caller's attributes plus the environment."""
    properties: dict[str, Any] = {}
    if context.environment:
        properties["environment"] = context.environment
    properties.update(context.attributes)
    return properties


class PostHogAuthority:
    """
    DecisionAuthority implemented with the PostHog SDK.

    WHAT IT DOES:
        - evaluate_flag: PostHog boolean flag -> {enabled, reason}
        - evaluate_experiment: multivariate flag value + its payload
          -> resolved experiment result
        - track_event: PostHog capture()
    """

    def __init__(
        self,
        project_api_key: str | None = None,
        host: str = POSTHOG_HOST,
        personal_api_key: str | None = None,
        poll_interval: int = POSTHOG_POLL_INTERVAL,
        client: Posthog | None = None,
    ) -> None:
        if client is None:
            if not project_api_key:
                raise ConfigurationError("POSTHOG_API_KEY is required for the PostHog authority")
            client = Posthog(
                project_api_key=project_api_key,
                host=host,
                personal_api_key=personal_api_key or None,
                poll_interval=poll_interval,
            )
            logger.info(
                "posthog_client_initialized",
                host=host,
                poll_interval=poll_interval,
                local_evaluation=bool(personal_api_key),
            )
        self._client = client

    @classmethod
    def from_env(cls) -> PostHogAuthority:
        return cls(
            project_api_key=os.getenv("POSTHOG_API_KEY", ""),
            host=os.getenv("POSTHOG_HOST", POSTHOG_HOST),
            personal_api_key=os.getenv("POSTHOG_PERSONAL_API_KEY", ""),
            poll_interval=int(os.getenv("POSTHOG_POLL_INTERVAL", str(POSTHOG_POLL_INTERVAL))),
        )

    def shutdown(self) -> None:
        """Flush queued events and stop the poller. Call at application shutdown."""
        self._client.shutdown()
        logger.info("posthog_client_shutdown")

    # -------------------------------------------------------------------------
    # DecisionAuthority
    # -------------------------------------------------------------------------

    async def evaluate_flag(self, key: str, context: EvaluationContext) -> Mapping[str, Any]:
        value = await asyncio.to_thread(
            self._client.get_feature_flag,
            key,
            context.subject_id,
            person_properties=_person_properties(context),
        )
        if value is None:
            # PostHog answers None both for unknown flags and for its own errors
            raise AuthorityError(f"PostHog returned no value for flag {key}")
        return {"enabled": bool(value), "reason": POSTHOG_REASON}

    async def evaluate_experiment(self, key: str, context: EvaluationContext) -> Mapping[str, Any] | None:
        properties = _person_properties(context)
        variant = await asyncio.to_thread(
            self._client.get_feature_flag,
            key,
            context.subject_id,
            person_properties=properties,
        )
        if variant is None:
            return None
        if variant is False:
            return {"in_experiment": False, "reason": ExperimentReason.TRAFFIC_EXCLUDED.value}
        if not isinstance(variant, str):
            raise MalformedResponseError(f"experiment {key} is a boolean flag, not a multivariate one")

        payload = await asyncio.to_thread(
            self._client.get_feature_flag_payload,
            key,
            context.subject_id,
            match_value=variant,
            person_properties=properties,
        )
        return {
            "in_experiment": True,
            "variant": variant,
            "variant_id": f"variant-{variant}",
            "payload": self._decode_payload(key, payload),
            "reason": ExperimentReason.ASSIGNED_TO_VARIANT.value,
        }

    async def track_event(self, event: TrackEventRequest) -> Any:
        properties = dict(event.properties)
        for name in ("flag_key", "experiment_key", "variant_key"):
            value = getattr(event, name)
            if value is not None:
                properties[name] = value
        await asyncio.to_thread(
            self._client.capture,
            distinct_id=event.subject_id or "anonymous",
            event=event.event_type,
            properties=properties,
        )
        return {"success": True}

    @staticmethod
    def _decode_payload(key: str, payload: Any) -> dict[str, Any]:
        if payload is None:
            return {}
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError as e:
                raise MalformedResponseError(f"experiment {key}: payload is not JSON") from e
        if not isinstance(payload, Mapping):
            raise MalformedResponseError(f"experiment {key}: payload must be an object")
        return dict(payload)
