"""
Common utilities shared by the draft engine and its entry points.

Modules:
- debounce: keyed debouncer that coalesces bursts of writes
- drafts_api: remote draft API client with retry/backoff
"""

__all__ = [
    "debounce",
    "drafts_api",
]
