"""Bounded polling of remote resources until they reach a target status.

This is the only place a reconciliation pass suspends. Status mismatches are
retried with jittered exponential backoff; errors raised by the probe itself
are never retried, since endless retries against an unreachable backend look
exactly like a hang.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .config import WaitConfig
from .exceptions import WaitTimeoutError, backend_call

logger = logging.getLogger(__name__)

# Provisioning status reported by Octavia and Neutron once an object is usable
ACTIVE = "ACTIVE"


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff budget for a single wait.

    steps is the number of probes, so a wait sleeps at most steps - 1 times.
    """

    steps: int = 10
    duration: float = 30.0
    factor: float = 1.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.steps < 1:
            raise ValueError("steps must be at least 1")
        if self.factor < 1.0:
            raise ValueError("factor must be at least 1.0")
        if self.duration < 0 or self.jitter < 0:
            raise ValueError("duration and jitter must not be negative")

    @classmethod
    def from_config(cls, wait: WaitConfig) -> RetryPolicy:
        return cls(
            steps=wait.steps,
            duration=wait.interval_seconds,
            factor=wait.factor,
            jitter=wait.jitter,
        )

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry (steps - 1 values)."""
        duration = self.duration
        for _ in range(self.steps - 1):
            jitter = random.uniform(0, duration * self.jitter) if self.jitter > 0 else 0.0
            yield duration + jitter
            duration *= self.factor


class Waiter:
    """Polls a probe under a RetryPolicy.

    Args:
        policy: Backoff budget shared by every wait issued through this waiter.
        sleep: Blocking sleep function, replaceable in tests.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def wait_until(
        self,
        probe: Callable[[], str | None],
        target: str,
        *,
        kind: str,
        resource_id: str,
    ) -> None:
        """Block until probe() returns target.

        Args:
            probe: Reads the current status of the resource.
            target: Status that ends the wait.
            kind: Resource kind, for logs and errors.
            resource_id: Resource id, for logs and errors.

        Raises:
            WaitTimeoutError: If the budget runs out before target is observed.
            BackendError: If the probe fails; the wait stops immediately.
        """
        logger.info(
            "Waiting for %s %s to become %s",
            kind,
            resource_id,
            target,
            extra={"kind": kind, "resource_id": resource_id, "target": target},
        )

        delays = self._policy.delays()
        last_status: str | None = None

        for attempt in range(1, self._policy.steps + 1):
            with backend_call(f"getting {kind} {resource_id}"):
                last_status = probe()

            if last_status == target:
                return

            delay = next(delays, None)
            if delay is None:
                break

            logger.debug(
                "Status not reached, retrying",
                extra={
                    "kind": kind,
                    "resource_id": resource_id,
                    "status": last_status,
                    "attempt": attempt,
                    "max_attempts": self._policy.steps,
                    "wait_seconds": delay,
                },
            )
            self._sleep(delay)

        logger.error(
            "Timed out waiting for status",
            extra={
                "kind": kind,
                "resource_id": resource_id,
                "target": target,
                "status": last_status,
            },
        )
        raise WaitTimeoutError(kind, resource_id, target, last_status)

    def wait_for_presence(
        self,
        probe: Callable[[], object],
        *,
        kind: str,
        resource_id: str,
    ) -> None:
        """Wait for a resource that exposes no status field.

        A successful read is the only completion signal available, so there
        is nothing to poll for: the probe runs once.

        Raises:
            BackendError: If the probe fails.
        """
        logger.info(
            "Waiting for %s %s to become readable",
            kind,
            resource_id,
            extra={"kind": kind, "resource_id": resource_id},
        )
        with backend_call(f"getting {kind} {resource_id}"):
            probe()


# =============================================================================
# Load balancer family waits
# =============================================================================


def wait_for_load_balancer(waiter: Waiter, conn: Any, load_balancer_id: str) -> None:
    """Block until the load balancer accepts the next mutation."""
    waiter.wait_until(
        lambda: conn.load_balancer.get_load_balancer(load_balancer_id).provisioning_status,
        ACTIVE,
        kind="load balancer",
        resource_id=load_balancer_id,
    )


def wait_for_floating_ip(waiter: Waiter, conn: Any, floating_ip_id: str) -> None:
    waiter.wait_until(
        lambda: conn.network.get_ip(floating_ip_id).status,
        ACTIVE,
        kind="floating IP",
        resource_id=floating_ip_id,
    )


def wait_for_listener(waiter: Waiter, conn: Any, listener_id: str) -> None:
    waiter.wait_for_presence(
        lambda: conn.load_balancer.get_listener(listener_id),
        kind="listener",
        resource_id=listener_id,
    )
