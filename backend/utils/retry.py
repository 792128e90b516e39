import asyncio
import random
from typing import Optional, Type, Tuple
import httpx

from utils.logger import get_logger

logger = get_logger("indexer.retry")


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (
            httpx.TimeoutException,
            httpx.NetworkError,
            httpx.ConnectError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes

    @classmethod
    def from_settings(cls, **overrides) -> "RetryConfig":
        from config import settings

        params = {
            "max_attempts": settings.MAX_RETRY_ATTEMPTS,
            "base_delay": settings.RETRY_BASE_DELAY,
        }
        params.update(overrides)
        return cls(**params)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and optional jitter"""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    """Check if an error should be retried"""
    if isinstance(error, config.retryable_exceptions):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes

    return False


def _retry_after_seconds(error: Exception) -> Optional[float]:
    if not isinstance(error, httpx.HTTPStatusError) or error.response.status_code != 429:
        return None
    raw = error.response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class RetryableClient:
    """httpx client wrapper that retries transient failures.

    Non-retryable errors (4xx other than 429, decoding errors) propagate on
    the first attempt; the last transient error propagates once attempts
    are exhausted.
    """

    def __init__(self, client: httpx.AsyncClient, config: RetryConfig = None):
        self.client = client
        self.config = config or RetryConfig()

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        last_error = None

        for attempt in range(self.config.max_attempts):
            try:
                response = await self.client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except Exception as e:
                last_error = e

                if not is_retryable_error(e, self.config):
                    raise

                if attempt < self.config.max_attempts - 1:
                    delay = calculate_delay(attempt, self.config)
                    retry_after = _retry_after_seconds(e)
                    if retry_after is not None:
                        delay = max(delay, retry_after)

                    logger.warning(
                        "Retrying HTTP request",
                        method=method,
                        url=url,
                        attempt=attempt + 1,
                        delay=round(delay, 3),
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        logger.error(
            "All retry attempts exhausted",
            method=method,
            url=url,
            attempts=self.config.max_attempts,
            error=str(last_error),
        )
        raise last_error

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)
