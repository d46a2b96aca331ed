"""Fallback Dispatcher.

Runs an ordered plan of interchangeable providers ("try A, then B, ...")
and stops at the first success.  Provider exceptions are turned into
failed steps; only the final outcome is reported to the caller, naming the
provider that produced it.

Providers whose jobs complete asynchronously use ``poll_until_done`` inside
their own step.  Polling is always bounded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ..models import DispatchResult, FallbackStep, StepResult

log = logging.getLogger(__name__)


class PollTimeoutError(TimeoutError):
    """A polled job did not finish within the allowed attempts."""


async def dispatch(
    plan: list[FallbackStep],
    prompt: Any,
    **inputs: Any,
) -> DispatchResult:
    """Try each step of *plan* in order with *prompt* and return the first success.

    Extra keyword *inputs* (e.g. ``image=`` for image-to-video) are passed to
    every step.  A blank prompt is rejected before any provider is called.
    """
    if not isinstance(prompt, str) or not prompt.strip():
        log.warning("Dispatch skipped: empty or invalid prompt")
        return DispatchResult.skip("No valid prompt provided.")
    if not plan:
        log.warning("Dispatch failed: no providers configured")
        return DispatchResult(success=False, error="No providers configured.")

    prompt = prompt.strip()
    attempts: list[tuple[str, str]] = []
    last_provider: str | None = None
    last_error = ""

    for position, step in enumerate(plan, start=1):
        last_provider = step.provider_id
        log.info("Dispatch: trying provider=%s (%d/%d)",
                 step.provider_id, position, len(plan))
        try:
            outcome = await step.generate(prompt, **inputs)
        except Exception as exc:
            log.exception("Provider %s raised", step.provider_id)
            outcome = StepResult(success=False, error=str(exc) or type(exc).__name__)

        if outcome.success:
            log.info("Dispatch: provider=%s succeeded", step.provider_id)
            return DispatchResult(
                success=True,
                result=outcome.artifact,
                provider_used=step.provider_id,
                attempts=attempts,
            )

        last_error = outcome.error or "unknown error"
        attempts.append((step.provider_id, last_error))
        if position < len(plan):
            log.warning("Provider %s failed: %s -- falling back to %s",
                        step.provider_id, last_error, plan[position].provider_id)
        else:
            log.warning("Provider %s failed: %s -- no providers left",
                        step.provider_id, last_error)

    return DispatchResult(
        success=False,
        error=f"{last_provider}: {last_error}",
        provider_used=last_provider,
        attempts=attempts,
    )


async def poll_until_done(
    check: Callable[[], Awaitable[tuple[bool, Any]]],
    interval_s: float = 10.0,
    max_attempts: int = 60,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Call *check* until it reports done, sleeping *interval_s* between calls.

    *check* returns ``(done, value)``; the value of the first done check is
    returned.  Raises ``PollTimeoutError`` after *max_attempts* checks.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1; got {max_attempts}")

    for attempt in range(1, max_attempts + 1):
        done, value = await check()
        if done:
            return value
        if attempt < max_attempts:
            log.debug("Job not finished (check %d/%d), waiting %.1fs",
                      attempt, max_attempts, interval_s)
            await sleep(interval_s)

    raise PollTimeoutError(
        f"job not finished after {max_attempts} checks "
        f"({interval_s:.0f}s interval)"
    )
