"""Bounded exponential backoff with a single fallback substitution.

States: attempting -> (2xx) done
                   -> (429) backoff, resend; 4th consecutive 429 -> fallback
                   -> (404/403) fallback
                   -> (other) fatal
Fallback sends exactly once and its outcome is terminal.
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

import httpx

from vertex_gateway.common.errors import GatewayTimeoutError, UpstreamError

LOGGER = logging.getLogger("vertex_gateway.retry")

Send = Callable[[], Awaitable[httpx.Response]]

RATE_LIMITED = 429
UNAVAILABLE = frozenset({403, 404})


class Decision(str, Enum):
    DONE = "done"
    RETRY = "retry"
    FALLBACK = "fallback"
    FATAL = "fatal"


def classify(status: int) -> Decision:
    if 200 <= status < 300:
        return Decision.DONE
    if status == RATE_LIMITED:
        return Decision.RETRY
    if status in UNAVAILABLE:
        return Decision.FALLBACK
    return Decision.FATAL


@dataclass
class RetryState:
    attempt: int = 0
    last_status: int | None = None
    delays: list[float] = field(default_factory=list)


@dataclass
class RetryOutcome:
    response: httpx.Response
    state: RetryState
    used_fallback: bool = False


class RetryPolicy:
    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep
        self.clock = clock

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``: 2s, 4s, 8s."""
        return self.base_delay * 2 ** (attempt + 1)

    async def _backoff(self, state: RetryState, deadline: float | None) -> None:
        delay = self.backoff_delay(state.attempt)
        if deadline is not None and self.clock() + delay >= deadline:
            raise GatewayTimeoutError(
                f"Request deadline reached while rate limited after {state.attempt + 1} attempt(s)"
            )
        LOGGER.info("Rate limited (429); retry %d/%d in %.0fs", state.attempt + 1, self.max_retries, delay)
        state.delays.append(delay)
        await self.sleep(delay)
        state.attempt += 1

    async def run(
        self,
        send_primary: Send,
        send_fallback: Send,
        deadline: float | None = None,
    ) -> RetryOutcome:
        """Drive the primary send through retries and at most one fallback.

        Raises:
            UpstreamError: On a fatal status, or when the fallback fails.
            GatewayTimeoutError: If a backoff would overrun ``deadline``.
        """
        state = RetryState()
        while True:
            response = await send_primary()
            state.last_status = response.status_code
            decision = classify(response.status_code)

            if decision is Decision.DONE:
                return RetryOutcome(response, state)
            if decision is Decision.FATAL:
                raise UpstreamError.from_response(response)
            if decision is Decision.RETRY and state.attempt < self.max_retries:
                await self._backoff(state, deadline)
                continue
            break

        if state.last_status == RATE_LIMITED:
            LOGGER.warning("Retries exhausted; falling back")
        else:
            LOGGER.warning("Primary model unavailable (%s); falling back", state.last_status)

        response = await send_fallback()
        state.last_status = response.status_code
        if not response.is_success:
            raise UpstreamError.from_response(response)
        return RetryOutcome(response, state, used_fallback=True)
