"""
Configuration for dependency-guard.

Provides immutable per-dependency policies and the registry that loads them.
"""

from dependency_guard.config.loader import POLICY_FILE_ENV, PolicyRegistry
from dependency_guard.config.policy import (
    ENV_PREFIX,
    PolicyConfig,
    RateLimitConfig,
    RetryConfig,
    parse_duration,
)

__all__ = [
    "ENV_PREFIX",
    "POLICY_FILE_ENV",
    "PolicyConfig",
    "PolicyRegistry",
    "RateLimitConfig",
    "RetryConfig",
    "parse_duration",
]
