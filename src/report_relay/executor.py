"""Send one report through the channel client with bounded retry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Union

from .channel import ChannelError, PayloadRejectedError, RateLimitedError

if TYPE_CHECKING:
    from .channel import ChannelClient
    from .models import DispatchTask
    from .rate_limiter import SlidingWindowRateLimiter

REASON_RATE_LIMITED = "rate limited"
REASON_FILE_MISSING = "file missing"
REASON_EMPTY_FILE = "empty file"
REASON_FILE_TOO_LARGE = "file too large"


class OutcomeKind(Enum):
    """Category of a dispatch outcome."""

    DELIVERED = "delivered"
    FAILED_PERMANENT = "failed_permanent"
    FAILED_RETRYABLE = "failed_retryable"


@dataclass(frozen=True)
class Delivered:
    """The channel accepted the document."""

    attempts: int
    kind: OutcomeKind = OutcomeKind.DELIVERED


@dataclass(frozen=True)
class FailedPermanent:
    """Retrying cannot help (missing, empty or oversized file)."""

    reason: str
    attempts: int
    kind: OutcomeKind = OutcomeKind.FAILED_PERMANENT


@dataclass(frozen=True)
class FailedRetryable:
    """Transient failure, either at admission or after the attempt cap.

    ``rate_limited`` marks a local admission denial: no request was made.
    """

    reason: str
    attempts: int
    rate_limited: bool = False
    kind: OutcomeKind = OutcomeKind.FAILED_RETRYABLE


DispatchOutcome = Union[Delivered, FailedPermanent, FailedRetryable]


class DispatchExecutor:
    """Runs one ``DispatchTask`` to a terminal outcome.

    The executor owns no durable state: recording a delivery in the ledger
    is the caller's job, once ``Delivered`` has been returned.
    """

    def __init__(
        self,
        client: ChannelClient,
        rate_limiter: SlidingWindowRateLimiter,
        logger: logging.Logger,
        *,
        max_attempts: int = 3,
        cooldown: float = 1.0,
        rate_limit_backoff: float = 5.0,
        max_file_size: int = 50 * 1024 * 1024,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            client: Channel client used for uploads.
            rate_limiter: Shared admission control.
            logger: Logger instance.
            max_attempts: Attempt cap per task.
            cooldown: Linear backoff unit for generic errors.
            rate_limit_backoff: Exponential backoff base for 429 responses.
            max_file_size: Largest accepted file in bytes.
            sleep: Awaitable sleep, injectable for tests.

        """
        self.client = client
        self.rate_limiter = rate_limiter
        self.logger = logger
        self.max_attempts = max_attempts
        self.cooldown = cooldown
        self.rate_limit_backoff = rate_limit_backoff
        self.max_file_size = max_file_size
        self._sleep = sleep

    def _check_payload(self, task: DispatchTask) -> FailedPermanent | None:
        try:
            size = task.path.stat().st_size
        except FileNotFoundError:
            return FailedPermanent(REASON_FILE_MISSING, attempts=0)
        if size == 0:
            return FailedPermanent(REASON_EMPTY_FILE, attempts=0)
        if size > self.max_file_size:
            return FailedPermanent(REASON_FILE_TOO_LARGE, attempts=0)
        return None

    async def send(self, task: DispatchTask) -> DispatchOutcome:
        """Deliver one file.

        Args:
            task: Task to run.

        Returns:
            Terminal outcome of this dispatch.

        """
        if not self.rate_limiter.try_admit():
            self.logger.debug("Rate limit reached, deferring %s", task.path.name)
            return FailedRetryable(REASON_RATE_LIMITED, attempts=0, rate_limited=True)

        try:
            outcome = await self._attempt(task)
        except BaseException:
            self.rate_limiter.release()
            raise

        if isinstance(outcome, Delivered):
            self.rate_limiter.record_send()
        else:
            self.rate_limiter.release()
        return outcome

    async def _attempt(self, task: DispatchTask) -> DispatchOutcome:
        """Run the attempt loop for an admitted task."""
        name = task.path.name
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            if rejected := self._check_payload(task):
                self.logger.warning("Not sending %s: %s", name, rejected.reason)
                return FailedPermanent(rejected.reason, attempts=attempt - 1)

            self.logger.info(
                "Sending %s to topic %d (attempt %d/%d)",
                name,
                task.destination.topic_id,
                attempt,
                self.max_attempts,
            )
            try:
                await self.client.send_document(task.destination, task.path, task.caption)
            except FileNotFoundError:
                return FailedPermanent(REASON_FILE_MISSING, attempts=attempt)
            except RateLimitedError as e:
                last_error = f"rate limited by server: {e.message}"
                delay = max(e.retry_after or 0.0, self.rate_limit_backoff * 2**attempt)
                self.logger.warning("Server rate limit while sending %s, backing off %.1fs", name, delay)
                if attempt < self.max_attempts:
                    await self._sleep(delay)
                continue
            except PayloadRejectedError as e:
                self.logger.error("Server rejected %s: %s", name, e.message)
                return FailedPermanent(f"rejected: {e.message}", attempts=attempt)
            except (ChannelError, OSError) as e:
                last_error = str(e)
                self.logger.warning("Attempt %d/%d for %s failed: %s", attempt, self.max_attempts, name, e)
                if attempt < self.max_attempts:
                    await self._sleep(self.cooldown * attempt)
                continue

            self.logger.info("Delivered %s to topic %d", name, task.destination.topic_id)
            return Delivered(attempts=attempt)

        self.logger.error("Giving up on %s after %d attempts: %s", name, self.max_attempts, last_error)
        return FailedRetryable(last_error or "send failed", attempts=self.max_attempts)
