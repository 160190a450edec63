"""Retry-until-converged primitive used by every wait in the harness.

Kubernetes objects and LVM state change asynchronously, so every check
against them is phrased as a probe: a callable that either returns a value
(the condition holds) or raises (not yet). wait_until() keeps calling the
probe until it returns or the time budget runs out.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import TimeoutExceeded

log = logging.getLogger(__name__)

T = TypeVar("T")


def wait_until(
    probe: Callable[[], T],
    timeout: float,
    interval: float,
    description: str | None = None,
    give_up_on: tuple[type[BaseException], ...] = (),
) -> T:
    """Call probe until it returns without raising.

    The probe is called once immediately, so a condition that already holds
    returns without sleeping, and a zero or negative timeout still gets one
    check. Every exception raised by the probe counts as "not yet" unless it
    is an instance of one of the give_up_on types, which propagate at once.

    Args:
        probe: Callable returning a value once the condition holds
        timeout: Time budget in seconds
        interval: Delay between attempts in seconds
        description: What is being waited for (used in logs and errors)
        give_up_on: Exception types that end the wait immediately

    Returns:
        The value returned by the successful probe call

    Raises:
        TimeoutExceeded: With the last probe error once the budget is spent
    """
    description = description or getattr(probe, "__name__", "condition")
    deadline = time.monotonic() + timeout
    attempts = 0
    last_error: BaseException | None = None

    while True:
        attempts += 1
        try:
            value = probe()
        except give_up_on:
            raise
        except Exception as e:
            last_error = e
            log.debug("%s not met (attempt %d): %s", description, attempts, e)
        else:
            if attempts > 1:
                log.info("%s met after %d attempts", description, attempts)
            return value

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            log.error("Gave up waiting for %s after %ss: %s", description, timeout, last_error)
            raise TimeoutExceeded(description, timeout, attempts, last_error) from last_error
        time.sleep(min(interval, remaining))


@dataclass(frozen=True)
class Poller:
    """wait_until() with default budgets taken from the harness config."""

    timeout: float = 180.0
    interval: float = 1.0
    give_up_on: tuple[type[BaseException], ...] = ()

    def wait(
        self,
        probe: Callable[[], T],
        description: str | None = None,
        timeout: float | None = None,
    ) -> T:
        return wait_until(
            probe,
            timeout=self.timeout if timeout is None else timeout,
            interval=self.interval,
            description=description,
            give_up_on=self.give_up_on,
        )
