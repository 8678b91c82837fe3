"""
Per-dependency policy models.

Policies are immutable Pydantic models created once at process start.
Durations are stored in seconds and accept either numbers (seconds) or
strings with a unit suffix ("250ms", "1.5s", "2m").

Keys are accepted in snake_case and in the camelCase spelling used by the
platform configuration (``failureThreshold``, ``rateLimit.capacity``,
``retry.perAttemptTimeout``, ...).
"""

from __future__ import annotations

import os
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from dependency_guard.errors import ConfigurationError

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m)?\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, None: 1.0}

ENV_PREFIX = "DEPENDENCY_GUARD_"


def parse_duration(value: Any) -> Any:
    """Parse a duration into seconds.

    Args:
        value: Number of seconds, or a string such as "1000ms", "30s", "1m"

    Returns:
        Seconds as float; values that are neither numbers nor strings are
        returned unchanged for the model validator to reject
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        amount, unit = match.groups()
        return float(amount) * _UNIT_SECONDS[unit]
    return value


class _PolicyModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )


class RateLimitConfig(_PolicyModel):
    """Sliding-window admission limits.

    Attributes:
        capacity: Calls admitted per window (0 rejects every call)
        window: Trailing window length in seconds (must be > 0)
    """

    capacity: int = Field(default=500, ge=0)
    window: float = Field(default=60.0, gt=0)

    @field_validator("window", mode="before")
    @classmethod
    def parse_window(cls, value: Any) -> Any:
        return parse_duration(value)


class RetryConfig(_PolicyModel):
    """Retry and backoff settings.

    Attributes:
        max_attempts: Retries after the first try (0 = try once)
        base_backoff: Delay before the first retry, in seconds
        max_backoff: Ceiling for the exponential delay, in seconds
        per_attempt_timeout: Deadline for one attempt, None to disable
    """

    max_attempts: int = Field(default=3, ge=0)
    base_backoff: float = Field(default=1.0, ge=0)
    max_backoff: float = Field(default=30.0, ge=0)
    per_attempt_timeout: float | None = Field(default=30.0, gt=0)

    @field_validator(
        "base_backoff", "max_backoff", "per_attempt_timeout", mode="before"
    )
    @classmethod
    def parse_durations(cls, value: Any) -> Any:
        return parse_duration(value)

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> RetryConfig:
        if self.max_backoff < self.base_backoff:
            raise ValueError("max_backoff must be >= base_backoff")
        return self

    @classmethod
    def no_retry(cls) -> RetryConfig:
        """Create a config that disables retries."""
        return cls(max_attempts=0)


class PolicyConfig(_PolicyModel):
    """Static policy for one dependency.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit
        open_timeout: Seconds the circuit stays open before probing
        half_open_success_threshold: Probe successes required to close
        rate_limit: Sliding-window limits
        retry: Retry and backoff settings
    """

    failure_threshold: int = Field(default=5, ge=1)
    open_timeout: float = Field(default=60.0, gt=0)
    half_open_success_threshold: int = Field(default=2, ge=1)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("open_timeout", mode="before")
    @classmethod
    def parse_open_timeout(cls, value: Any) -> Any:
        return parse_duration(value)

    @classmethod
    def default(cls) -> PolicyConfig:
        """Create default configuration."""
        return cls()

    @classmethod
    def from_mapping(
        cls,
        data: dict[str, Any] | None,
        *,
        base: PolicyConfig | None = None,
        dependency: str | None = None,
    ) -> PolicyConfig:
        """Create a policy from a configuration record.

        Nested ``rateLimit``/``retry`` records are merged over ``base`` so a
        record only needs to name the options it changes.

        Args:
            data: Configuration record (snake_case or camelCase keys)
            base: Policy supplying values for omitted options
            dependency: Dependency name, used in error messages

        Returns:
            PolicyConfig instance

        Raises:
            ConfigurationError: If the record is invalid
        """
        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(
                f"policy for {dependency or 'default'} must be a mapping",
                value=type(data).__name__,
            )

        merged: dict[str, Any] = base.model_dump() if base else {}
        for key, value in (data or {}).items():
            name = _field_name(key)
            if name in ("rate_limit", "retry") and isinstance(value, dict):
                nested = dict(merged.get(name, {}))
                nested.update({_field_name(k): v for k, v in value.items()})
                merged[name] = nested
            else:
                merged[name] = value

        try:
            return cls.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(
                f"invalid policy for {dependency or 'default'}: {_first_error(e)}",
                option=_error_location(e),
            ) from e

    @classmethod
    def from_env(cls, base: PolicyConfig | None = None) -> PolicyConfig:
        """Create a policy from environment variables.

        Unset variables keep the value from ``base`` (or the defaults).

        Args:
            base: Policy to override

        Returns:
            PolicyConfig instance
        """
        record: dict[str, Any] = {}
        rate: dict[str, Any] = {}
        retry: dict[str, Any] = {}

        for env_name, target, key in (
            ("FAILURE_THRESHOLD", record, "failure_threshold"),
            ("OPEN_TIMEOUT", record, "open_timeout"),
            ("HALF_OPEN_SUCCESS_THRESHOLD", record, "half_open_success_threshold"),
            ("RATE_CAPACITY", rate, "capacity"),
            ("RATE_WINDOW", rate, "window"),
            ("MAX_ATTEMPTS", retry, "max_attempts"),
            ("BASE_BACKOFF", retry, "base_backoff"),
            ("MAX_BACKOFF", retry, "max_backoff"),
            ("ATTEMPT_TIMEOUT", retry, "per_attempt_timeout"),
        ):
            value = os.getenv(ENV_PREFIX + env_name)
            if value is not None and value.strip():
                target[key] = value.strip()

        if rate:
            record["rate_limit"] = rate
        if retry:
            record["retry"] = retry

        return cls.from_mapping(record, base=base or cls())


def _field_name(key: str) -> str:
    """Convert a camelCase key to its snake_case field name."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _first_error(error: ValidationError) -> str:
    errors = error.errors()
    if not errors:
        return str(error)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    return f"{loc}: {first.get('msg', '')}" if loc else first.get("msg", "")


def _error_location(error: ValidationError) -> str | None:
    errors = error.errors()
    if not errors or not errors[0].get("loc"):
        return None
    return ".".join(str(part) for part in errors[0]["loc"])
