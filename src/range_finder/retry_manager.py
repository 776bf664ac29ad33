"""
Retry Manager for the range finder system.

This module provides retry logic with exponential backoff and a cooldown
between exhausted cycles. Used by the session lifecycle manager for
scheduled credential refreshes, which must never give up for good.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .config import RetryConfig

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class RetryResult(Generic[T]):
    """Result of a retry operation."""

    success: bool
    result: Optional[T]
    attempts: int
    last_error: Optional[Exception]


class RetryManager:
    """
    Manages retry logic with exponential backoff.

    One cycle is an initial attempt plus `max_retries` retries, waiting
    base * 2^n seconds (capped at max_delay) before retry n. When a cycle
    fails, `run_until_success` waits the cooldown and starts a new cycle.
    """

    def __init__(
        self,
        config: RetryConfig,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        """
        Initialize the retry manager.

        Args:
            config: Retry configuration with max_retries, delays, and cooldown
            sleep: Awaitable sleep used between attempts (asyncio.sleep by default)
        """
        self._config = config
        self._sleep = sleep or asyncio.sleep

    @property
    def config(self) -> RetryConfig:
        return self._config

    def _calculate_delay(self, attempt: int) -> float:
        """
        Calculate wait time with exponential backoff.

        Args:
            attempt: The current attempt number (0-indexed)

        Returns:
            The delay in seconds before the next retry
        """
        delay = self._config.base_delay_seconds * (2 ** attempt)
        return min(delay, self._config.max_delay_seconds)

    def delay_schedule(self) -> list[float]:
        """Delays of one full failing cycle, cooldown included."""
        delays = [self._calculate_delay(n) for n in range(self._config.max_retries)]
        delays.append(self._config.cooldown_seconds)
        return delays

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        is_retryable: Optional[Callable[[Exception], bool]] = None,
    ) -> RetryResult[T]:
        """
        Execute an operation with retry logic and exponential backoff.

        Args:
            operation: The async operation to execute
            is_retryable: Optional function to determine if an exception is retryable.
                         If not provided, all exceptions are considered retryable.

        Returns:
            RetryResult containing success status, result, attempts, and last error
        """
        last_error: Optional[Exception] = None
        attempts = 0

        # Total attempts = 1 initial + max_retries
        max_attempts = self._config.max_retries + 1

        while attempts < max_attempts:
            try:
                result = await operation()
                return RetryResult(
                    success=True,
                    result=result,
                    attempts=attempts + 1,
                    last_error=None,
                )
            except Exception as e:
                last_error = e
                attempts += 1

                should_retry = is_retryable(e) if is_retryable else True

                if not should_retry or attempts >= max_attempts:
                    break

                await self._sleep(self._calculate_delay(attempts - 1))

        return RetryResult(
            success=False,
            result=None,
            attempts=attempts,
            last_error=last_error,
        )

    async def run_until_success(
        self,
        operation: Callable[[], Awaitable[T]],
        on_cycle_failed: Optional[Callable[[RetryResult[T], int], None]] = None,
        max_cycles: Optional[int] = None,
    ) -> RetryResult[T]:
        """
        Repeat retry cycles, separated by the cooldown, until one succeeds.

        Args:
            operation: The async operation to execute
            on_cycle_failed: Called with the failed cycle result and cycle number
            max_cycles: Stop after this many cycles (None retries forever)

        Returns:
            The successful RetryResult, or the last failed one when max_cycles is hit
        """
        cycle = 0
        total_attempts = 0
        while True:
            cycle += 1
            result = await self.execute_with_retry(operation)
            total_attempts += result.attempts
            if result.success:
                result.attempts = total_attempts
                return result

            if on_cycle_failed is not None:
                on_cycle_failed(result, cycle)

            if max_cycles is not None and cycle >= max_cycles:
                result.attempts = total_attempts
                return result

            await self._sleep(self._config.cooldown_seconds)
