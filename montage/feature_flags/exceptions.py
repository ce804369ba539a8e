"""
Error taxonomy for the feature flag engine.

Decision reads never raise these to callers. They travel between the remote
authority adapters and the resilient service, which turns every one of them
into a breaker failure plus a fallback decision.
"""

from __future__ import annotations


class FeatureFlagErrorCodes:
    """Error code constants."""

    AUTHORITY_UNAVAILABLE: str = "AUTHORITY_UNAVAILABLE"
    MALFORMED_RESPONSE: str = "MALFORMED_RESPONSE"
    CONFIG_ERROR: str = "CONFIG_ERROR"


class FeatureFlagError(Exception):
    """Base class for feature flag errors."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class AuthorityError(FeatureFlagError):
    """The remote decision authority could not be reached or refused the call."""

    def __init__(self, message: str) -> None:
        super().__init__(FeatureFlagErrorCodes.AUTHORITY_UNAVAILABLE, message)


class MalformedResponseError(FeatureFlagError):
    """The remote decision authority answered with an unexpected payload shape."""

    def __init__(self, message: str) -> None:
        super().__init__(FeatureFlagErrorCodes.MALFORMED_RESPONSE, message)


class ConfigurationError(FeatureFlagError):
    """Invalid engine configuration (raised at construction only)."""

    def __init__(self, message: str) -> None:
        super().__init__(FeatureFlagErrorCodes.CONFIG_ERROR, message)
