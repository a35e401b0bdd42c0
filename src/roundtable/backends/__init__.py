from roundtable.backends.base import (
    ActorBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from roundtable.backends.claude import ClaudeCodeBackend
from roundtable.backends.resilient import ResilientBackend, RetryPolicy, is_retryable_error

__all__ = [
    "ActorBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "ResilientBackend",
    "RetryPolicy",
    "is_retryable_error",
]
