"""Log retention for execution traces and insights."""

from acekb.retention.trace_cleaner import (
    CleanupResult,
    LogRetentionResult,
    TraceRetentionCleaner,
    cleanup_file,
)

__all__ = ["CleanupResult", "LogRetentionResult", "TraceRetentionCleaner", "cleanup_file"]
