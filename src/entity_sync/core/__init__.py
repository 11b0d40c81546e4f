"""Async helpers shared by the engine and repository adapters."""

from .async_utils import call_with_timeout, gather_bounded, run_sync

__all__ = ["call_with_timeout", "gather_bounded", "run_sync"]
