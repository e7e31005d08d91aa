"""Test runs — execution, progress tracking, scheduling and reports."""
