"""Run provenance tracking for audit.

Every preview, apply and destroy is stamped with a provenance record that
answers:
- "What did this run change, and what did it leave alone?"
- "Which version of the stack file and of the tool was running?"

Records are emitted as structured log entries so they can be queried
alongside the rest of the JSON log stream.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Summary of planned changes for provenance tracking."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    delete_count: int = 0
    no_op_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total changes that needed a provider call."""
        return self.create_count + self.update_count + self.replace_count + self.delete_count

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> ChangeProvenanceSummary:
        """Build from a plan summary keyed by change type value."""
        return cls(
            create_count=counts.get("Create", 0),
            update_count=counts.get("Update", 0),
            replace_count=counts.get("Replace", 0),
            delete_count=counts.get("Delete", 0),
            no_op_count=counts.get("NoOp", 0),
        )


@dataclass
class RunProvenance:
    """Provenance record for one run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    stack: str = ""
    operation: str = "apply"  # preview, apply, destroy
    provisioner_version: str = PROVISIONER_VERSION

    # Source of truth
    git_commit_sha: str = ""
    stack_file: str = ""
    stack_file_hash: str = ""  # SHA256 of the stack file content

    # Outcome
    mode: str = "enforce"
    dry_run: bool = False
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    applied: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def hash_file(path: Path) -> str:
    """SHA256 of a file's content, or empty string if unreadable."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_provenance(
        self,
        stack: str,
        operation: str,
        mode: str,
        stack_file: Path | None = None,
        dry_run: bool = False,
    ) -> RunProvenance:
        """Create a new provenance record for a run.

        Args:
            stack: Stack name.
            operation: preview, apply or destroy.
            mode: Reconciliation mode.
            stack_file: Stack file that was loaded, hashed into the record.
            dry_run: Whether provider calls were suppressed.
        """
        return RunProvenance(
            stack=stack,
            operation=operation,
            mode=mode,
            git_commit_sha=self._git_commit_sha,
            stack_file=str(stack_file) if stack_file else "",
            stack_file_hash=hash_file(stack_file) if stack_file else "",
            dry_run=dry_run,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record."""
        log_level = logging.INFO
        if provenance.error or provenance.failed:
            log_level = logging.ERROR
        elif provenance.skipped or provenance.cancelled:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "stack": provenance.stack,
                "operation": provenance.operation,
                "changes_applied": provenance.applied,
                "changes_failed": provenance.failed,
                "git_commit": provenance.git_commit_sha,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_change_detail(
        self,
        provenance: RunProvenance,
        resource: str,
        change_type: str,
        paths: list[str] | None = None,
    ) -> None:
        """Log one planned change for fine-grained audit.

        Property values are not logged; only the differing paths.
        """
        logger.info(
            "Resource change",
            extra={
                "stack": provenance.stack,
                "git_commit": provenance.git_commit_sha,
                "resource": resource,
                "change_type": change_type,
                "paths": paths or [],
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
