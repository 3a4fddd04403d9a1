"""
Retry decisions for the outbox sweeper and the poison channel orchestrator.

Usage:
    from src.core.retry import ExponentialBackoffRetryStrategy, RetryContext

    strategy = ExponentialBackoffRetryStrategy(base=2.0, unit=timedelta(minutes=1))
    context = RetryContext(correlation_id, current_retry_count=0, max_retry_attempts=3)
    if strategy.should_retry(context):
        delay = strategy.calculate_next_delay(context)
"""

from .strategy import ExponentialBackoffRetryStrategy, RetryContext

__all__ = [
    "ExponentialBackoffRetryStrategy",
    "RetryContext",
]
