"""Error taxonomy shared by the ingestion, budget and compute layers."""

from __future__ import annotations


class RadarError(Exception):
    """Base class for all pipeline errors."""


class TransientIOError(RadarError):
    """Network or provider failure that is safe to retry at the queue level."""


class CallTimeout(TransientIOError):
    """An outbound call exceeded its time limit."""

    def __init__(self, label: str, timeout: float):
        self.label = label
        self.timeout = timeout
        super().__init__(f"{label} timed out after {timeout:.1f}s")


class ConfigError(RadarError):
    """Bad source/job configuration. Fail the job, do not retry."""


class BudgetDenied(RadarError):
    """Credits exhausted under the `stop` policy.

    Not a failure: callers turn it into a `skipped` record or a skipped item.
    """

    def __init__(self, user_id: str, purpose: str, reason: str):
        self.user_id = user_id
        self.purpose = purpose
        self.reason = reason
        super().__init__(f"Budget denied for {purpose}: {reason}")


class PersistenceConflict(RadarError):
    """Uniqueness violation on insert. Expected during dedup, never logged as an error."""
