from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_USER_MESSAGES = {
    400: "The request was invalid.",
    401: "Authentication is required.",
    403: "You do not have permission to access this resource.",
    404: "The requested resource was not found.",
    429: "Too many requests. Please try again shortly.",
    500: "An internal server error occurred.",
    502: "An upstream service returned an invalid response.",
    503: "The service is temporarily unavailable.",
}


class HttpError(Exception):
    def __init__(
        self,
        message: str = "",
        status_code: int = 500,
        user_message: str | None = None,
        details: Any = None,
        is_operational: bool = True,
    ) -> None:
        self.status_code = int(status_code)
        self.message = message or DEFAULT_USER_MESSAGES.get(self.status_code, DEFAULT_USER_MESSAGES[500])
        self.user_message = user_message or DEFAULT_USER_MESSAGES.get(self.status_code, DEFAULT_USER_MESSAGES[500])
        self.details = details
        self.is_operational = is_operational
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "userMessage": self.user_message,
            "statusCode": self.status_code,
            "details": self.details,
        }


class ValidationError(HttpError):
    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        details = {"field": field, "value": value} if field else None
        super().__init__(message, 400, user_message=message, details=details)
        self.field = field
        self.value = value


class AuthenticationError(HttpError):
    def __init__(self, message: str = "Authentication failed.") -> None:
        super().__init__(message, 401)


class AuthorizationError(HttpError):
    def __init__(self, resource: str | None = None) -> None:
        message = f"Access to {resource} is forbidden." if resource else "Access is forbidden."
        super().__init__(message, 403, details={"resource": resource} if resource else None)
        self.resource = resource


class NotFoundError(HttpError):
    def __init__(self, message: str = "", resource: str | None = None) -> None:
        message = message or (f"{resource} not found." if resource else "")
        super().__init__(message, 404, user_message=message or None, details={"resource": resource} if resource else None)
        self.resource = resource


class ExternalApiError(HttpError):
    def __init__(self, message: str, service: str, original_status: int | None = None, original_message: str | None = None) -> None:
        super().__init__(
            message,
            502,
            details={"service": service, "originalStatus": original_status, "originalMessage": original_message},
        )
        self.service = service
        self.original_status = original_status


RIOT_USER_MESSAGES = {
    400: "The request to the Riot API was invalid.",
    401: "The Riot API key is invalid or missing.",
    403: "The Riot API key has expired or lacks permission.",
    404: "No matching player or match was found.",
    429: "The Riot API rate limit was reached. Please try again in a moment.",
}


class RiotApiError(HttpError):
    def __init__(self, status: int | None, endpoint: str = "", message: str = "", retry_after: int | None = None) -> None:
        if status is None:
            status_code = 500
        elif status >= 500:
            status_code = 502
        else:
            status_code = int(status)
        if status is not None and status >= 500:
            user_message = "The Riot API is currently unavailable. Please try again later."
        else:
            user_message = RIOT_USER_MESSAGES.get(status_code, "Failed to fetch data from the Riot API.")
        if status_code == 429 and retry_after:
            user_message = f"The Riot API rate limit was reached. Please retry in {retry_after} seconds."
        super().__init__(
            message or f"Riot API request failed ({status if status is not None else 'no response'}).",
            status_code,
            user_message=user_message,
            details={"endpoint": endpoint, "originalStatus": status, "retryAfter": retry_after},
        )
        self.upstream_status = status
        self.endpoint = endpoint
        self.retry_after = retry_after


class DatabaseError(HttpError):
    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message, 500, user_message="A storage error occurred.", details={"operation": operation} if operation else None)


class RateLimitError(HttpError):
    def __init__(self, retry_after: int = 60, message: str = "") -> None:
        super().__init__(
            message or "Rate limit exceeded.",
            429,
            user_message=f"Too many requests. Please try again in {retry_after} seconds.",
            details={"retryAfter": retry_after},
        )
        self.retry_after = retry_after


def _parse_retry_after(value: Any) -> int | None:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def normalize_error(error: BaseException, context: dict[str, Any] | None = None) -> HttpError:
    context = context or {}
    if isinstance(error, HttpError):
        return error

    service = str(context.get("service") or "")
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        url = str(error.request.url) if error.request is not None else str(context.get("endpoint") or "")
        if service == "riot" or "api.riotgames.com" in url:
            return RiotApiError(response.status_code, endpoint=url, retry_after=_parse_retry_after(response.headers.get("Retry-After")))
        return ExternalApiError(
            f"{service or 'External service'} request failed ({response.status_code}).",
            service or "external",
            original_status=response.status_code,
            original_message=response.text[:500],
        )

    if isinstance(error, (httpx.ConnectError, httpx.TimeoutException)):
        return ExternalApiError(
            f"Could not reach {service or 'external service'}: {error}",
            service or "external",
            original_message=str(error),
        )

    if isinstance(error, OSError) and service == "store":
        return DatabaseError(str(error), operation=str(context.get("operation") or "") or None)

    return HttpError(str(error) or "Unexpected server error.", 500, is_operational=False)


def _default_should_retry(error: BaseException) -> bool:
    if isinstance(error, HttpError):
        return error.status_code >= 500
    return isinstance(error, (httpx.ConnectError, httpx.TimeoutException))


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Callable[[BaseException], bool] | None = None,
    delay_for: Callable[[BaseException, int], float | None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    label: str = "Operation",
) -> T:
    """Call ``fn`` until it succeeds, backing off exponentially between attempts.

    ``delay_for`` may return a fixed wait for a given error (e.g. an upstream
    Retry-After); returning None falls back to the exponential delay.
    """
    should_retry = should_retry or _default_should_retry
    sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as error:
            if attempt >= max_attempts or not should_retry(error):
                raise
            delay = delay_for(error, attempt) if delay_for else None
            if delay is None:
                delay = min(max_delay, base_delay * (2 ** (attempt - 1))) + random.uniform(0, min(1.0, base_delay))
            logger.warning("%s attempt %s/%s failed (%s); retrying in %.2fs", label, attempt, max_attempts, error, delay)
            await sleep(delay)


class CircuitBreaker:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"

    def __init__(self, name: str = "default", failure_threshold: int = 5, recovery_timeout: float = 60.0, success_threshold: int = 3) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.state = self.CLOSED
        self.failures = 0
        self.successes = 0
        self.opened_at = 0.0

    def _before_call(self) -> None:
        if self.state != self.OPEN:
            return
        if time.monotonic() - self.opened_at >= self.recovery_timeout:
            self.state = self.HALF_OPEN
            self.successes = 0
            logger.info("Circuit %s half-open", self.name)
            return
        raise HttpError(f"Circuit breaker {self.name} is open.", 503, details={"circuit": self.name})

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            self.successes += 1
            if self.successes >= self.success_threshold:
                self.state = self.CLOSED
                self.failures = 0
                logger.info("Circuit %s closed", self.name)
        else:
            self.failures = 0

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == self.HALF_OPEN or self.failures >= self.failure_threshold:
            if self.state != self.OPEN:
                logger.warning("Circuit %s opened after %s failures", self.name, self.failures)
            self.state = self.OPEN
            self.opened_at = time.monotonic()

    async def call(self, fn: Callable[[], Awaitable[T]], is_failure: Callable[[BaseException], bool] | None = None) -> T:
        self._before_call()
        try:
            result = await fn()
        except Exception as error:
            if is_failure is None or is_failure(error):
                self.record_failure()
            raise
        self.record_success()
        return result

    def get_state(self) -> dict[str, Any]:
        return {"name": self.name, "state": self.state, "failures": self.failures, "successes": self.successes}
