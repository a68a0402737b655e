"""Per-instance solver state machine."""

from __future__ import annotations

import logging
import threading
from enum import Enum

from .errors import SolverStateError

logger = logging.getLogger("ssolver")


class SolverState(Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    SOLVING = "solving"
    SOLVED = "solved"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({SolverState.SOLVED, SolverState.FAILED, SolverState.ABORTED})

_ALLOWED: dict[SolverState, frozenset[SolverState]] = {
    SolverState.IDLE: frozenset(
        {SolverState.EXTRACTING, SolverState.SOLVING, SolverState.FAILED, SolverState.ABORTED}
    ),
    SolverState.EXTRACTING: frozenset(
        {SolverState.EXTRACTED, SolverState.FAILED, SolverState.ABORTED}
    ),
    SolverState.EXTRACTED: frozenset(
        {SolverState.SOLVING, SolverState.FAILED, SolverState.ABORTED}
    ),
    SolverState.SOLVING: frozenset(
        {SolverState.SOLVED, SolverState.FAILED, SolverState.ABORTED}
    ),
    SolverState.SOLVED: frozenset(),
    SolverState.FAILED: frozenset(),
    SolverState.ABORTED: frozenset(),
}


class StateMachine:
    """Thread-safe, one-directional state holder.

    Transitions race between the worker and ``abort()``; whichever call
    reaches a terminal state first wins and every later transition is
    refused.
    """

    def __init__(self, name: str = "solver"):
        self.name = name
        self._state = SolverState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> SolverState:
        with self._lock:
            return self._state

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def can_transition(self, target: SolverState) -> bool:
        with self._lock:
            return target in _ALLOWED[self._state]

    def transition(self, target: SolverState) -> bool:
        """Move to *target*; return False if the move is not allowed."""
        with self._lock:
            if target not in _ALLOWED[self._state]:
                return False
            previous = self._state
            self._state = target
        logger.debug("%s: %s -> %s", self.name, previous.value, target.value)
        return True

    def require(self, target: SolverState) -> None:
        """Like ``transition`` but raise ``SolverStateError`` when refused."""
        if not self.transition(target):
            raise SolverStateError(
                f"{self.name}: cannot move from {self.state.value} to {target.value}"
            )
