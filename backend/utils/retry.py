import asyncio
import random
from typing import Type, Tuple
import httpx

from utils.logger import get_logger

logger = get_logger("retry")

SOFT = "SOFT"
HARD = "HARD"


class RetryConfig:
    """Configuration for retry behavior on idempotent exchange reads"""

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
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes


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


def classify_exchange_error(error: Exception) -> str:
    """SOFT when the outcome may be unknown or transient, HARD when the venue refused.

    A SOFT failure during order placement leaves the execution SUBMITTING so
    the next attempt reconciles before it could place again.
    """
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429 or status >= 500:
            return SOFT
        return HARD
    return SOFT


class RetryableClient:
    """HTTP client wrapper that retries GET requests only.

    Order placement and cancellation go through ``send_once`` so a lost
    response can never turn into a second order.
    """

    def __init__(self, client: httpx.AsyncClient, config: RetryConfig = None):
        self.client = client
        self.config = config or RetryConfig()

    async def get(self, url: str, **kwargs) -> httpx.Response:
        last_error = None

        for attempt in range(self.config.max_attempts):
            try:
                response = await self.client.request("GET", url, **kwargs)
                response.raise_for_status()
                return response
            except Exception as e:
                last_error = e

                if not is_retryable_error(e, self.config):
                    raise

                if attempt < self.config.max_attempts - 1:
                    delay = calculate_delay(attempt, self.config)

                    # Special handling for rate limits
                    if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 429:
                        retry_after = e.response.headers.get("Retry-After")
                        if retry_after:
                            try:
                                delay = max(delay, float(retry_after))
                            except ValueError:
                                pass

                    logger.warning(
                        "Retrying HTTP request",
                        method="GET",
                        url=url,
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        raise last_error

    async def send_once(self, method: str, url: str, **kwargs) -> httpx.Response:
        response = await self.client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def aclose(self) -> None:
        await self.client.aclose()
