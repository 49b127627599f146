"""Run control: executor, retry policy, and retention."""

from dsr.control_plane.executor import BuildExecutor, BuildRun, aggregate_outcome
from dsr.control_plane.retention import RetentionReport, RetentionSweeper
from dsr.control_plane.retry import RetryAction, RetryDecision, RetryPolicy

__all__ = [
    "BuildExecutor",
    "BuildRun",
    "RetentionReport",
    "RetentionSweeper",
    "RetryAction",
    "RetryDecision",
    "RetryPolicy",
    "aggregate_outcome",
]
