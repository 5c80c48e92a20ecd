from .logger import (
    setup_logging,
    get_logger,
    scheduler_logger,
    proposal_logger,
    execution_logger,
    exchange_logger,
)
from .retry import RetryConfig, RetryableClient, classify_exchange_error

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "scheduler_logger",
    "proposal_logger",
    "execution_logger",
    "exchange_logger",

    # Retry
    "RetryConfig",
    "RetryableClient",
    "classify_exchange_error",
]
