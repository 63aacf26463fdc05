"""Change provenance for audit and idempotence checks.

Every mutating call a reconciler issues against OpenStack is recorded in the
pass's ChangeSummary. A converged cluster therefore produces a summary with
no changes, which is what operators (and tests) look at to confirm that a
pass was a no-op.
"""

from __future__ import annotations

import logging
import os
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


class ChangeAction(str, Enum):
    """Kinds of mutating calls issued against the backend."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ResourceChange:
    action: ChangeAction
    kind: str
    resource_id: str
    name: str = ""


@dataclass
class ChangeSummary:
    """Ordered record of the mutations issued during one pass."""

    changes: list[ResourceChange] = field(default_factory=list)

    def record(
        self,
        action: ChangeAction,
        kind: str,
        resource_id: str,
        name: str = "",
    ) -> None:
        change = ResourceChange(action=action, kind=kind, resource_id=resource_id, name=name)
        self.changes.append(change)
        logger.info(
            "Resource change",
            extra={
                "action": action.value,
                "kind": kind,
                "resource_id": resource_id,
                "resource_name": name,
            },
        )

    def count(self, action: ChangeAction, kind: str | None = None) -> int:
        return sum(
            1 for c in self.changes if c.action == action and (kind is None or c.kind == kind)
        )

    @property
    def create_count(self) -> int:
        return self.count(ChangeAction.CREATE)

    @property
    def update_count(self) -> int:
        return self.count(ChangeAction.UPDATE)

    @property
    def delete_count(self) -> int:
        return self.count(ChangeAction.DELETE)

    @property
    def total(self) -> int:
        return len(self.changes)

    def by_kind(self) -> dict[str, int]:
        """Number of mutations per "<action> <kind>" key."""
        return dict(Counter(f"{c.action.value} {c.kind}" for c in self.changes))


@dataclass
class ReconcileProvenance:
    """Provenance record for one reconciliation or teardown pass."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    cluster_name: str = ""
    cloud: str = ""
    operation: str = "reconcile"  # reconcile, delete, member
    operator_version: str = OPERATOR_VERSION
    operator_instance_id: str = ""
    git_commit_sha: str = ""

    change_summary: ChangeSummary = field(default_factory=ChangeSummary)
    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        result["change_summary"] = self.change_summary.by_kind()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(self, cluster_name: str, cloud: str, operation: str) -> ReconcileProvenance:
        return ReconcileProvenance(
            cluster_name=cluster_name,
            cloud=cloud,
            operation=operation,
            operator_version=OPERATOR_VERSION,
            operator_instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
        )

    def log_provenance(self, provenance: ReconcileProvenance) -> None:
        """Log a completed provenance record.

        Args:
            provenance: Completed provenance record.
        """
        log_level = logging.ERROR if provenance.error else logging.INFO

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "cluster_name": provenance.cluster_name,
                "operation": provenance.operation,
                "changes_applied": provenance.change_summary.total,
                "operator_version": provenance.operator_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
