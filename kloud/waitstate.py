"""Bounded polling until a machine reaches a desired state.

A :class:`WaitState` repeatedly calls a probe with an interpolated
percentage, sleeping between attempts, until the probe reports the desired
state, raises, or the attempt/time budget runs out. Lifecycle operations
chain several waits with disjoint ``[start, finish]`` windows so that one
0-100 progress bar covers the whole operation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)
from tenacity.stop import stop_base

from kloud.constants import DEFAULT_WAIT_ATTEMPTS, DEFAULT_WAIT_INTERVAL, DEFAULT_WAIT_TIMEOUT
from kloud.exceptions import ConfigurationError, ReconcileTimeoutError
from kloud.machinestate import MachineState
from kloud.observability.logger import logger

type StateFunc = Callable[[int], Awaitable[MachineState]]

log = logger.bind(component="waitstate")


def interpolate(start: int, finish: int, attempt: int, attempts: int) -> int:
    """Percentage reported on ``attempt`` (1-based) out of ``attempts``.

    Linear from ``start`` on the first attempt to ``finish`` on the last,
    never leaving ``[start, finish]``.
    """
    if attempts <= 1 or attempt <= 1:
        return start
    attempt = min(attempt, attempts)
    return start + (finish - start) * (attempt - 1) // (attempts - 1)


@dataclass(frozen=True, slots=True)
class WaitConfig:
    """Polling budget shared by every wait a provider performs.

    Attributes:
        attempts: Maximum number of probe calls per wait.
        interval: Seconds to sleep between probe calls.
        timeout: Optional wall-clock budget in seconds per wait.
    """

    attempts: int = DEFAULT_WAIT_ATTEMPTS
    interval: float = DEFAULT_WAIT_INTERVAL
    timeout: float | None = DEFAULT_WAIT_TIMEOUT

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ConfigurationError(f"wait attempts must be >= 1, got {self.attempts}")
        if self.interval < 0:
            raise ConfigurationError(f"wait interval must be >= 0, got {self.interval}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"wait timeout must be > 0, got {self.timeout}")


@dataclass(frozen=True, slots=True)
class WaitState:
    """Wait for ``state_func`` to report ``desired_state``.

    Example:
        async def probe(percentage: int) -> MachineState:
            server = await api.server(server_id)
            push(f"Server is {server.status}", percentage)
            return to_state(server.status, VOCABULARY)

        await WaitState(probe, MachineState.RUNNING, start=25, finish=60).wait()
    """

    state_func: StateFunc
    desired_state: MachineState
    start: int = 0
    finish: int = 100
    config: WaitConfig = field(default_factory=WaitConfig)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self) -> None:
        if not 0 <= self.start <= self.finish <= 100:
            raise ConfigurationError(
                f"invalid percentage window [{self.start}, {self.finish}], "
                "expected 0 <= start <= finish <= 100"
            )

    def _stop(self) -> stop_base:
        stop: stop_base = stop_after_attempt(self.config.attempts)
        if self.config.timeout is not None:
            stop = stop | stop_after_delay(self.config.timeout)
        return stop

    def _exhausted(self, retry_state: RetryCallState) -> MachineState:
        last_state = retry_state.outcome.result() if retry_state.outcome else None
        raise ReconcileTimeoutError(self.desired_state, last_state, retry_state.attempt_number)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        state = retry_state.outcome.result() if retry_state.outcome else None
        log.trace(
            "Attempt {n}: state={state}, waiting for {desired}",
            n=retry_state.attempt_number, state=state, desired=self.desired_state,
        )

    async def wait(self) -> int:
        """Poll until the desired state is reached and return ``finish``.

        Raises:
            ReconcileTimeoutError: The budget ran out first.
            Exception: Whatever the probe raised, on the attempt it raised.
        """
        attempt = 0

        async def probe() -> MachineState:
            nonlocal attempt
            attempt += 1
            percentage = interpolate(self.start, self.finish, attempt, self.config.attempts)
            return await self.state_func(percentage)

        retrying = AsyncRetrying(
            stop=self._stop(),
            wait=wait_fixed(self.config.interval),
            retry=retry_if_result(lambda state: state != self.desired_state),
            retry_error_callback=self._exhausted,
            before_sleep=self._before_sleep,
            sleep=self.sleep,
        )
        await retrying(probe)
        return self.finish


__all__ = ["StateFunc", "WaitConfig", "WaitState", "interpolate"]
