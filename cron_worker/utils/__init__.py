"""Retry, circuit breaking and run bookkeeping helpers."""
