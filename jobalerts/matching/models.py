"""Data models for alert matching runs."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class AlertOutcome:
    """
    What happened to a single alert within a run.

    Attributes:
        alert_id: Alert evaluated
        new_job_ids: Jobs matched for the first time in this run
        notification_queued: Whether the notification job was enqueued
        failed: Whether any step failed for this alert
        error_message: Failure detail when ``failed`` is set
    """

    alert_id: int
    new_job_ids: List[int] = field(default_factory=list)
    notification_queued: bool = False
    failed: bool = False
    error_message: Optional[str] = None


@dataclass
class AlertRunResult:
    """
    Aggregate results of one orchestrator run for a frequency tier.

    Attributes:
        frequency: Tier processed (daily, weekly, monthly)
        run_started_at: UTC timestamp when the run began
        run_finished_at: UTC timestamp when the run completed
        processed: Alerts evaluated (searched), including failed ones
        matches_found: New matches across all alerts
        notifications_queued: Notification jobs enqueued
        failed: Alerts whose processing failed at some step
        skipped_recent: Candidates skipped because their interval had not elapsed
        outcomes: Per-alert outcomes
    """

    frequency: str
    run_started_at: datetime
    run_finished_at: Optional[datetime] = None
    processed: int = 0
    matches_found: int = 0
    notifications_queued: int = 0
    failed: int = 0
    skipped_recent: int = 0
    outcomes: List[AlertOutcome] = field(default_factory=list)

    def record(self, outcome: AlertOutcome) -> None:
        self.outcomes.append(outcome)
        self.processed += 1
        self.matches_found += len(outcome.new_job_ids)
        if outcome.notification_queued:
            self.notifications_queued += 1
        if outcome.failed:
            self.failed += 1

    @property
    def duration_seconds(self) -> float:
        if self.run_finished_at is None:
            return 0.0
        return (self.run_finished_at - self.run_started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Job result shape: ``processed`` and ``matchesFound`` plus extra counters."""
        return {
            "processed": self.processed,
            "matchesFound": self.matches_found,
            "notificationsQueued": self.notifications_queued,
            "failed": self.failed,
            "skippedRecent": self.skipped_recent,
        }
