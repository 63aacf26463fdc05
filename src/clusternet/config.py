"""Configuration management with validation.

Operator configuration is read from the environment once at startup and
validated at construction time. The desired cluster topology itself lives in
the cluster document (see spec_loader.py), not here.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

# Backoff used while waiting for Octavia/Neutron objects to settle.
# Worst case wait is roughly WAIT_STEPS * WAIT_INTERVAL * (1 + WAIT_JITTER).
DEFAULT_WAIT_STEPS = 10
DEFAULT_WAIT_INTERVAL_SECONDS = 30.0
DEFAULT_WAIT_FACTOR = 1.0
DEFAULT_WAIT_JITTER = 0.1
MAX_WAIT_STEPS = 100

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max cluster document

# Cluster names end up in every resource name, keep them DNS-label shaped
VALID_CLUSTER_NAME_PATTERN = r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"


@dataclass(frozen=True)
class WaitConfig:
    """Backoff parameters for provisioning-status waits."""

    steps: int = DEFAULT_WAIT_STEPS
    interval_seconds: float = DEFAULT_WAIT_INTERVAL_SECONDS
    factor: float = DEFAULT_WAIT_FACTOR
    jitter: float = DEFAULT_WAIT_JITTER


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    cluster_name: str
    cloud: str

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))
    status_dir: Path | None = None

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    wait: WaitConfig = field(default_factory=WaitConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster_name):
            errors.append(
                f"CLUSTER_NAME must match pattern {VALID_CLUSTER_NAME_PATTERN}: "
                f"{self.cluster_name}"
            )

        if not self.cloud:
            errors.append("OS_CLOUD is required")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if self.status_dir is not None and not self.status_dir.exists():
            errors.append(f"Status directory does not exist: {self.status_dir}")

        if not (1 <= self.wait.steps <= MAX_WAIT_STEPS):
            errors.append(f"WAIT_STEPS must be between 1 and {MAX_WAIT_STEPS}")
        if self.wait.interval_seconds < 0:
            errors.append("WAIT_INTERVAL_SECONDS must not be negative")
        if self.wait.factor < 1.0:
            errors.append("WAIT_FACTOR must be at least 1.0")
        if not (0.0 <= self.wait.jitter <= 1.0):
            errors.append("WAIT_JITTER must be between 0 and 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def spec_path(self) -> Path:
        """Path of the cluster document reconciled by this operator."""
        return self.specs_dir / f"{self.cluster_name}.yaml"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CLUSTER_NAME: Cluster to reconcile; also the spec file stem
            OS_CLOUD: clouds.yaml entry used to authenticate against OpenStack
            SPECS_DIR: Path to cluster documents (default: /specs)
            STATUS_DIR: If set, status is written there after each pass
            RECONCILE_INTERVAL: Seconds between reconciliation passes (default: 300)

        Wait Variables:
            WAIT_STEPS: Status probes before a wait gives up (default: 10)
            WAIT_INTERVAL_SECONDS: Initial delay between probes (default: 30)
            WAIT_FACTOR: Delay multiplier applied after each probe (default: 1.0)
            WAIT_JITTER: Random extra delay as a fraction of the delay (default: 0.1)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        status_dir = os.environ.get("STATUS_DIR")

        return cls(
            cluster_name=os.environ.get("CLUSTER_NAME", ""),
            cloud=os.environ.get("OS_CLOUD", ""),
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            status_dir=Path(status_dir) if status_dir else None,
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            wait=WaitConfig(
                steps=get_int("WAIT_STEPS", DEFAULT_WAIT_STEPS),
                interval_seconds=get_float("WAIT_INTERVAL_SECONDS", DEFAULT_WAIT_INTERVAL_SECONDS),
                factor=get_float("WAIT_FACTOR", DEFAULT_WAIT_FACTOR),
                jitter=get_float("WAIT_JITTER", DEFAULT_WAIT_JITTER),
            ),
        )
