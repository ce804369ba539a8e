"""
Static fallback tables: the last line of defense when neither a cached nor a
live decision exists.

Resolution order for ``default_for(key, environment)``:
    1. ENVIRONMENT_OVERRIDES[environment][key]
    2. FEATURE_DEFAULTS[key]
    3. False (unknown keys fail closed)

USAGE:
    from montage.feature_flags.defaults import FallbackDefaults

    defaults = FallbackDefaults()                      # built-in tables
    defaults = FallbackDefaults.from_json_file("flags.json")

    defaults.default_for("dark_mode", "production")    # True
    defaults.rollout_for("new_discovery_algorithm")    # 25

JSON FILE LAYOUT:
    {
        "flags": {"dark_mode": true},
        "environment_overrides": {"development": {"beta_mobile_app": true}},
        "rollouts": {"new_discovery_algorithm": 25},
        "experiments": {"onboarding_flow_test": {"payload": {"steps": 4}}}
    }
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from .exceptions import ConfigurationError
from .models import freeze_payload

FEATURE_DEFAULTS: Mapping[str, bool] = MappingProxyType({
    "dark_mode": True,
    "new_discovery_algorithm": False,
    "premium_features": False,
    "beta_mobile_app": False,
    "ai_chat_assistant": True,
    "enhanced_onboarding": False,
})

ENVIRONMENT_OVERRIDES: Mapping[str, Mapping[str, bool]] = MappingProxyType({
    "development": MappingProxyType({
        "beta_mobile_app": True,
        "enhanced_onboarding": True,
    }),
    "staging": MappingProxyType({
        "beta_mobile_app": True,
    }),
    "production": MappingProxyType({}),
})

# Flags whose bucketing is always computed locally, in percent.
ROLLOUT_PERCENTAGES: Mapping[str, int] = MappingProxyType({
    "new_discovery_algorithm": 25,
})


@dataclass(frozen=True)
class ExperimentFallback:
    """
    Payload shown for an experiment when no definition is available.

    The variant is always control: a subject outside an experiment never sees
    a treatment arm.
    """

    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", freeze_payload(self.payload))


EXPERIMENT_DEFAULTS: Mapping[str, ExperimentFallback] = MappingProxyType({
    "onboarding_flow_test": ExperimentFallback(payload={"flow_type": "standard", "steps": 4}),
    "profile_layout_test": ExperimentFallback(payload={"layout": "sidebar"}),
})

_NO_EXPERIMENT_FALLBACK = ExperimentFallback()


def _freeze_bools(table: Mapping[str, Any], label: str) -> Mapping[str, bool]:
    frozen = {}
    for key, value in table.items():
        if not isinstance(value, bool):
            raise ConfigurationError(f"{label}.{key} must be a boolean, got {value!r}")
        frozen[key] = value
    return MappingProxyType(frozen)


class FallbackDefaults:
    """
    Immutable lookup of default decisions.

    Tables are copied into read-only mappings at construction, so nothing a
    caller does afterwards can change a fallback decision.
    """

    def __init__(
        self,
        flags: Mapping[str, bool] | None = None,
        environment_overrides: Mapping[str, Mapping[str, bool]] | None = None,
        rollouts: Mapping[str, int] | None = None,
        experiments: Mapping[str, ExperimentFallback] | None = None,
    ) -> None:
        self._flags = _freeze_bools(FEATURE_DEFAULTS if flags is None else flags, "flags")
        overrides = ENVIRONMENT_OVERRIDES if environment_overrides is None else environment_overrides
        self._overrides = MappingProxyType({
            env: _freeze_bools(table, f"environment_overrides.{env}")
            for env, table in overrides.items()
        })

        raw_rollouts = ROLLOUT_PERCENTAGES if rollouts is None else rollouts
        for key, percentage in raw_rollouts.items():
            if isinstance(percentage, bool) or not isinstance(percentage, int) or not 0 <= percentage <= 100:
                raise ConfigurationError(f"rollouts.{key} must be an int in [0, 100], got {percentage!r}")
        self._rollouts = MappingProxyType(dict(raw_rollouts))

        self._experiments = MappingProxyType(dict(EXPERIMENT_DEFAULTS if experiments is None else experiments))

    # -------------------------------------------------------------------------
    # Construction helpers
    # -------------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> FallbackDefaults:
        """Build tables from a plain mapping (see the module docstring for the layout)."""
        experiments = {}
        for key, raw in (data.get("experiments") or {}).items():
            if not isinstance(raw, Mapping):
                raise ConfigurationError(f"experiments.{key} must be an object")
            payload = raw.get("payload") or {}
            if not isinstance(payload, Mapping):
                raise ConfigurationError(f"experiments.{key}.payload must be an object")
            experiments[key] = ExperimentFallback(payload=payload)

        return cls(
            flags=data.get("flags") or {},
            environment_overrides=data.get("environment_overrides") or {},
            rollouts=data.get("rollouts") or {},
            experiments=experiments,
        )

    @classmethod
    def from_json_file(cls, path: str | Path) -> FallbackDefaults:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"cannot load fallback defaults from {path}: {e}") from e
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"fallback defaults file {path} must contain a JSON object")
        return cls.from_mapping(data)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def default_for(self, key: str, environment: str | None = None) -> bool:
        if environment is not None:
            override = self._overrides.get(environment, {}).get(key)
            if override is not None:
                return override
        return self._flags.get(key, False)

    def rollout_for(self, key: str) -> int | None:
        return self._rollouts.get(key)

    def experiment_fallback(self, key: str) -> ExperimentFallback:
        return self._experiments.get(key, _NO_EXPERIMENT_FALLBACK)

    def flag_keys(self, environment: str | None = None) -> list[str]:
        """Every flag key known to the tables, in a stable order."""
        keys = dict.fromkeys(self._flags)
        if environment is not None:
            keys.update(dict.fromkeys(self._overrides.get(environment, {})))
        keys.update(dict.fromkeys(self._rollouts))
        return list(keys)
