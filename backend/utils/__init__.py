from .logger import setup_logging, get_logger, SUCCESS
from .retry import RetryConfig, RetryableClient, calculate_delay
from .rate_limiter import RateLimiter, rate_limiter
from .utcnow import utcnow, parse_timestamp, to_iso
from .validation import (
    validate_eth_address,
    is_eth_address,
    SyncTriggerParams,
    TrackedTokenParams,
)

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "SUCCESS",

    # Retry
    "RetryConfig",
    "RetryableClient",
    "calculate_delay",

    # Rate Limiter
    "RateLimiter",
    "rate_limiter",

    # Time
    "utcnow",
    "parse_timestamp",
    "to_iso",

    # Validation
    "validate_eth_address",
    "is_eth_address",
    "SyncTriggerParams",
    "TrackedTokenParams",
]
