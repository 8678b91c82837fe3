"""
Policy registry and loading.

Supports:
- Python mappings
- YAML documents and files
- Environment variable overrides for the default policy
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from dependency_guard.config.policy import PolicyConfig, RateLimitConfig
from dependency_guard.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

# Environment variable naming a policy file to load
POLICY_FILE_ENV = "DEPENDENCY_GUARD_POLICY_FILE"


class PolicyRegistry:
    """Immutable set of per-dependency policies.

    Dependencies without an explicit record fall back to the default
    ("general") policy.

    Example:
        >>> registry = PolicyRegistry.from_yaml_file("policies.yaml")
        >>> registry.get("inference").retry.max_attempts
        3
    """

    def __init__(
        self,
        policies: Mapping[str, PolicyConfig] | None = None,
        default: PolicyConfig | None = None,
    ) -> None:
        """Initialize registry.

        Args:
            policies: Policy per dependency name
            default: Policy for dependencies not listed in ``policies``
        """
        self._policies: dict[str, PolicyConfig] = dict(policies or {})
        self._default = default or PolicyConfig()

    @property
    def default(self) -> PolicyConfig:
        """Get the fallback policy."""
        return self._default

    def get(self, dependency: str) -> PolicyConfig:
        """Get the policy for a dependency.

        Args:
            dependency: Dependency name

        Returns:
            Registered policy, or the default policy
        """
        return self._policies.get(dependency, self._default)

    def is_configured(self, dependency: str) -> bool:
        """Check whether a dependency has its own policy."""
        return dependency in self._policies

    def dependencies(self) -> list[str]:
        """Get configured dependency names in registration order."""
        return list(self._policies)

    def __contains__(self, dependency: object) -> bool:
        return dependency in self._policies

    def __iter__(self) -> Iterator[str]:
        return iter(self._policies)

    def __len__(self) -> int:
        return len(self._policies)

    def __repr__(self) -> str:
        return f"PolicyRegistry(dependencies={self.dependencies()})"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> PolicyRegistry:
        """Create a registry from a configuration mapping.

        Expected shape::

            default: {failureThreshold: 5, rateLimit: {capacity: 500, window: 60s}}
            dependencies:
              inference: {retry: {maxAttempts: 2}}

        Dependency records are merged over the default record.

        Args:
            data: Configuration mapping

        Returns:
            PolicyRegistry instance

        Raises:
            ConfigurationError: If the mapping is invalid
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError(
                "policy configuration must be a mapping",
                value=type(data).__name__,
            )

        unknown = set(data) - {"default", "dependencies"}
        if unknown:
            raise ConfigurationError(
                f"unknown top-level keys: {sorted(unknown)}",
                option=sorted(unknown)[0],
            )

        default = PolicyConfig.from_mapping(data.get("default"))

        records = data.get("dependencies") or {}
        if not isinstance(records, dict):
            raise ConfigurationError(
                "'dependencies' must map names to policy records",
                option="dependencies",
            )

        policies = {
            str(name): PolicyConfig.from_mapping(
                record, base=default, dependency=str(name)
            )
            for name, record in records.items()
        }
        return cls(policies, default=default)

    @classmethod
    def from_yaml(cls, text: str) -> PolicyRegistry:
        """Create a registry from a YAML document.

        Args:
            text: YAML source

        Returns:
            PolicyRegistry instance

        Raises:
            ConfigurationError: If the YAML is malformed or invalid
        """
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid policy YAML: {e}") from e
        return cls.from_mapping(data)

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> PolicyRegistry:
        """Create a registry from a YAML file.

        Args:
            path: File path

        Returns:
            PolicyRegistry instance

        Raises:
            ConfigurationError: If the file cannot be read or is invalid
        """
        file_path = Path(path)
        try:
            text = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                f"cannot read policy file: {file_path}", value=str(file_path)
            ) from e
        return cls.from_yaml(text)

    @classmethod
    def from_env(cls) -> PolicyRegistry:
        """Create a registry from the environment.

        Loads the file named by ``DEPENDENCY_GUARD_POLICY_FILE`` when set,
        otherwise the platform defaults, then applies ``DEPENDENCY_GUARD_*``
        overrides to the default policy.

        Returns:
            PolicyRegistry instance
        """
        policy_file = os.getenv(POLICY_FILE_ENV)
        base = cls.from_yaml_file(policy_file) if policy_file else cls.platform_defaults()
        return cls(
            {name: base.get(name) for name in base},
            default=PolicyConfig.from_env(base.default),
        )

    @classmethod
    def platform_defaults(cls) -> PolicyRegistry:
        """Create the platform's built-in policies.

        - inference: 100 calls/min
        - datastore: 1000 calls/min
        - secrets, functions: general limits
        - default (general): 500 calls/min
        """
        default = PolicyConfig()
        return cls(
            {
                "inference": default.model_copy(
                    update={"rate_limit": RateLimitConfig(capacity=100, window=60.0)}
                ),
                "datastore": default.model_copy(
                    update={"rate_limit": RateLimitConfig(capacity=1000, window=60.0)}
                ),
                "secrets": default,
                "functions": default,
            },
            default=default,
        )
