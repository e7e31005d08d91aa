from .sweeper import CategoryStats, RetentionSweeper, SweepResult, format_bytes

__all__ = ["CategoryStats", "RetentionSweeper", "SweepResult", "format_bytes"]
