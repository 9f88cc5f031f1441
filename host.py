from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Callable, Optional

from interpreter import Execution, ExecutionState, Status, WaitSeconds, WaitUntil


DEFAULT_TICK = 1.0 / 60.0

# Absorbs float drift when a wait is consumed in tick-sized slices.
_WAIT_EPSILON = 1e-9


@dataclass
class HostStats:
    ticks: int = 0
    budget_pauses: int = 0
    waits: int = 0
    elapsed: float = 0.0


class HostLoop:
    """Drive an ``Execution`` the way a game frame loop would.

    Every tick either spends time on a pending wait or calls ``resume()``
    once. ``WaitSeconds`` is consumed in tick-sized slices of host time and
    ``WaitUntil`` predicates are polled once per tick, so a wait that never
    completes stalls the program but never the loop itself.
    """

    def __init__(
        self,
        execution: Execution,
        *,
        tick: float = DEFAULT_TICK,
        realtime: bool = False,
        sleeper: Optional[Callable[[float], None]] = None,
    ) -> None:
        if tick <= 0:
            raise ValueError("tick must be positive")
        self.execution = execution
        self.tick = tick
        self.realtime = realtime
        self.sleeper = sleeper or time.sleep
        self.stats = HostStats()
        self.last_status: Optional[Status] = None
        self._seconds_left = 0.0
        self._predicate: Optional[Callable[[], bool]] = None

    @property
    def waiting(self) -> bool:
        return self._seconds_left > _WAIT_EPSILON or self._predicate is not None

    def step(self) -> Status:
        """Advance one tick and return the latest execution status."""
        self.stats.ticks += 1
        self.stats.elapsed += self.tick
        if self.realtime:
            self.sleeper(self.tick)

        if self._seconds_left > _WAIT_EPSILON:
            self._seconds_left -= self.tick
            if self._seconds_left > _WAIT_EPSILON:
                assert self.last_status is not None
                return self.last_status
            self._seconds_left = 0.0
        if self._predicate is not None:
            if not self._predicate():
                assert self.last_status is not None
                return self.last_status
            self._predicate = None

        status = self.execution.resume()
        self.last_status = status
        if status.state is ExecutionState.RUNNING:
            self.stats.budget_pauses += 1
        elif status.state is ExecutionState.PAUSED:
            self.stats.waits += 1
            self._begin_wait(status.wait)
        return status

    def _begin_wait(self, wait: object) -> None:
        if isinstance(wait, WaitSeconds):
            self._seconds_left = max(0.0, float(wait.seconds))
        elif isinstance(wait, WaitUntil):
            self._predicate = wait.predicate
        else:
            raise TypeError(f"Unsupported wait descriptor: {wait!r}")

    def run(self, max_ticks: Optional[int] = None) -> Status:
        """Tick until the execution reaches a terminal state.

        With ``max_ticks`` the loop gives up after that many ticks and
        cancels the execution.
        """
        while True:
            if max_ticks is not None and self.stats.ticks >= max_ticks:
                self.last_status = self.execution.cancel()
                return self.last_status
            status = self.step()
            if status.terminal:
                return status
