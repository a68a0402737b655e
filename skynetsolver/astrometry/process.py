"""Lifecycle of one external engine process."""

from __future__ import annotations

import logging
import subprocess
import threading

from ..core.errors import ProcessRuntimeError, ProcessSpawnError

logger = logging.getLogger("ssolver")


class ExternalProcess:
    """Spawn a program, forward its output to the log, and stop it on request.

    Parameters
    ----------
    args : list of str
        Full command line, program first.
    label : str
        Tag prepended to every forwarded output line.
    cwd : str, optional
        Working directory for the program.
    """

    def __init__(self, args: list[str], label: str, cwd: str | None = None):
        self.args = [str(a) for a in args]
        self.label = label
        self.cwd = cwd
        self.output: list[str] = []
        self._proc: subprocess.Popen | None = None
        self._reader: threading.Thread | None = None
        self._kill_timer: threading.Timer | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    def start(self) -> None:
        """Start the program.

        Raises
        ------
        ProcessSpawnError
            If the executable is missing or cannot be run.
        """
        logger.debug("[%s] %s", self.label, " ".join(self.args))
        try:
            self._proc = subprocess.Popen(
                self.args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=self.cwd,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Cannot start {self.args[0]}: {e}") from e

        self._reader = threading.Thread(
            target=self._forward_output, name=f"{self.label}-output", daemon=True
        )
        self._reader.start()

    def _forward_output(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        for raw_line in self._proc.stdout:
            line = raw_line.rstrip("\r\n")
            if line:
                self.output.append(line)
                logger.debug("[%s] %s", self.label, line)
        self._proc.stdout.close()

    def wait(self, timeout: float | None = None) -> int:
        """Block until the program exits and return its exit status.

        Raises
        ------
        ProcessRuntimeError
            If *timeout* elapses; the program is killed first.
        """
        if self._proc is None:
            raise ProcessRuntimeError(f"{self.label} was never started")
        try:
            returncode = self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("[%s] timed out after %ss, killing", self.label, timeout)
            self.kill()
            self._proc.wait()
            raise ProcessRuntimeError(f"{self.label} timed out after {timeout}s") from None
        finally:
            if self._reader is not None:
                self._reader.join(timeout=2.0)
            if self._kill_timer is not None:
                self._kill_timer.cancel()
        logger.debug("[%s] exited with status %s", self.label, returncode)
        return returncode

    def run(self, timeout: float | None = None) -> int:
        self.start()
        return self.wait(timeout)

    def terminate(self, grace_seconds: float = 2.0) -> None:
        """Ask the program to exit, then kill it if still alive after the grace period.

        Returns immediately; the kill happens on a timer thread.
        """
        if not self.running:
            return
        logger.debug("[%s] terminating pid %s", self.label, self.pid)
        self._proc.terminate()
        self._kill_timer = threading.Timer(grace_seconds, self._kill_if_running)
        self._kill_timer.daemon = True
        self._kill_timer.start()

    def _kill_if_running(self) -> None:
        if self.running:
            logger.warning("[%s] still running after grace period, killing", self.label)
            self.kill()

    def kill(self) -> None:
        if self.running:
            self._proc.kill()
