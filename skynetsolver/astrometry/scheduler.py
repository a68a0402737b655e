"""Race several depth-partitioned child solvers and keep the first success."""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

from ..core.errors import ProcessRuntimeError, SolveCancelled, SolverStateError
from ..core.result import Star
from ..core.state import SolverState
from .protocols import SolveResult

if TYPE_CHECKING:
    from .extractor_solver import ExtractorSolver

logger = logging.getLogger("ssolver")

# seconds allowed past the abort grace period for output draining and cleanup
_JOIN_MARGIN = 5.0


def partition_depths(lo: int, hi: int, n: int) -> list[tuple[int, int]]:
    """Split ``[lo, hi)`` into at most *n* contiguous half-open ranges.

    Ranges have equal size except the last, which takes the remainder.

    >>> partition_depths(0, 4000, 4)
    [(0, 1000), (1000, 2000), (2000, 3000), (3000, 4000)]
    """
    total = hi - lo
    if total <= 0:
        raise ValueError(f"Empty depth range [{lo}, {hi})")
    n = max(1, min(n, total))
    step = total // n
    ranges = [(lo + i * step, lo + (i + 1) * step) for i in range(n)]
    ranges[-1] = (ranges[-1][0], hi)
    return ranges


class DepthParallelScheduler:
    """Solve phase of a top-level solver that fans out over depth ranges.

    Each child gets a copy of the parent's star list, one depth range and
    its own temp-file namespace. The first child to claim success under
    the scheduler lock wins; every sibling is then aborted and the
    winner's solution and stars are handed back to the parent. Ties are
    decided by the order in which children reach the lock.

    Parameters
    ----------
    parent : ExtractorSolver
        The top-level instance whose solve step this replaces.
    parallelism : int, optional
        Number of children; defaults to ``config.effective_parallelism``.
    """

    def __init__(self, parent: ExtractorSolver, parallelism: int | None = None):
        self.parent = parent
        self.parallelism = parallelism or parent.config.effective_parallelism
        self.children: list[ExtractorSolver] = []
        self.winner: ExtractorSolver | None = None
        self._lock = threading.Lock()
        self._aborted = False
        self._n_finished = 0
        self._done = threading.Event()

    def depth_bounds(self, n_stars: int) -> tuple[int, int]:
        cfg = self.parent.config
        if cfg.uses_depth_range:
            return cfg.depth_low, cfg.depth_high
        hi = cfg.extraction_keep_num or max(n_stars, self.parallelism)
        return 0, hi

    def _spawn_children(self, stars: list[Star]) -> None:
        lo, hi = self.depth_bounds(len(stars))
        for index, (d_lo, d_hi) in enumerate(partition_depths(lo, hi, self.parallelism), start=1):
            child = self.parent.spawn_child_solver(index, d_lo, d_hi)
            child.use_stars(stars)
            child.solve_gate = self._claim
            child.on_finished(self._child_finished)
            self.children.append(child)
            logger.debug("%s: depth range [%d, %d)", child.name, d_lo, d_hi)

        stems = {child.backend.job.stem for child in self.children}
        if len(stems) != len(self.children):
            raise SolverStateError("Child solvers share a temp-file namespace")

    def run(self, stars: list[Star]) -> tuple[SolveResult, list[Star]]:
        """Start every child, block until one wins or all finish.

        Raises
        ------
        SolveCancelled
            If the scheduler was aborted.
        ProcessRuntimeError
            If no child solved.
        """
        with self._lock:
            if self._aborted:
                raise SolveCancelled(f"{self.parent.name}: aborted")
            self._spawn_children(stars)
            logger.info(
                "%s: racing %d depth partitions", self.parent.name, len(self.children)
            )
            for child in self.children:
                child.start()

        self._done.wait()
        self._join_children()

        with self._lock:
            winner = self.winner
            aborted = self._aborted
        if aborted:
            raise SolveCancelled(f"{self.parent.name}: aborted")
        if winner is None or winner.state is not SolverState.SOLVED:
            raise ProcessRuntimeError(
                f"{self.parent.name}: none of {len(self.children)} depth partitions solved"
            )
        logger.info("%s: adopted result of %s", self.parent.name, winner.name)
        result = SolveResult(solution=winner.solution, header=winner.solution_header)
        return result, winner.stars

    def _join_children(self) -> None:
        """Wait until every child has stopped its engine and removed its temp files."""
        deadline = time.monotonic() + self.parent.config.abort_grace_seconds + _JOIN_MARGIN
        for child in self.children:
            if not child.join(max(0.0, deadline - time.monotonic())):
                logger.warning("%s: still running after abort, temp files may remain", child.name)

    def _claim(self, child: ExtractorSolver) -> bool:
        """Atomic first-success decision; True only for the winner."""
        with self._lock:
            if self.winner is None and not self._aborted:
                self.winner = child
                return True
        return False

    def _child_finished(self, child: ExtractorSolver, success: bool) -> None:
        with self._lock:
            self._n_finished += 1
            is_winner = success and child is self.winner
            all_done = self._n_finished >= len(self.children)
        if is_winner:
            for sibling in self.children:
                if sibling is not child:
                    sibling.abort()
            self._done.set()
        elif all_done:
            self._done.set()

    def abort(self) -> None:
        """Forward the abort to every child and release ``run``."""
        with self._lock:
            self._aborted = True
            children = list(self.children)
        for child in children:
            child.abort()
        self._done.set()
