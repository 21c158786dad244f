from .deduplication import (
    DeduplicationCache,
    Deduplicator,
    MessageDeduplicator,
    build_deduplicator,
    idempotency_key,
)
from .retry import RetryConfig, RetryItem, RetryQueue

__all__ = [
    "DeduplicationCache",
    "Deduplicator",
    "MessageDeduplicator",
    "build_deduplicator",
    "idempotency_key",
    "RetryConfig",
    "RetryItem",
    "RetryQueue",
]
