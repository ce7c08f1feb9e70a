"""
Supervise the node binary as a child process.

Crashes are restarted after a capped exponential backoff. The restart counter
resets once a launch has stayed up for `stable_after_s`; more than
`max_restarts` consecutive crashes raises `SupervisionError`, since a node
that keeps dying needs replacing rather than another restart.
"""

from __future__ import annotations

import subprocess
import threading
from typing import Callable, List, Optional

import bittensor as bt

from avalanched.errors import SupervisionError
from avalanched.events import EventLog
from avalanched.utils.retry import SYSTEM_CLOCK, Backoff, CancelToken, Clock


class NodeProcessSupervisor:
    def __init__(
        self,
        command: List[str],
        *,
        max_restarts: int = 5,
        backoff: Backoff = Backoff(initial_s=1.0, max_s=60.0),
        stable_after_s: float = 600.0,
        poll_interval_s: float = 1.0,
        stop_timeout_s: float = 30.0,
        clock: Clock = SYSTEM_CLOCK,
        cancel: Optional[CancelToken] = None,
        events: Optional[EventLog] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        if not command:
            raise ValueError("command must be non-empty")
        self.command = list(command)
        self.max_restarts = int(max_restarts)
        self.backoff = backoff
        self.stable_after_s = float(stable_after_s)
        self.poll_interval_s = float(poll_interval_s)
        self.stop_timeout_s = float(stop_timeout_s)
        self.clock = clock
        self.cancel = cancel if cancel is not None else CancelToken()
        self.events = events
        self._popen = popen

        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._started_at = 0.0
        self.restarts = 0
        self.launches = 0

    @property
    def pid(self) -> Optional[int]:
        with self._lock:
            return self._proc.pid if self._proc is not None else None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._proc is not None and self._proc.poll() is None

    def _launch(self) -> bool:
        try:
            proc = self._popen(self.command)
        except OSError as e:
            bt.logging.error(f"Could not launch {self.command[0]}: {e}")
            return False
        with self._lock:
            self._proc = proc
        self._started_at = self.clock.monotonic()
        self.launches += 1
        bt.logging.info(f"Launched {self.command[0]} (pid={proc.pid}, launch #{self.launches})")
        return True

    def _exit_code(self) -> Optional[int]:
        with self._lock:
            if self._proc is None:
                return -1
            return self._proc.poll()

    def run(self) -> None:
        """Block until cancelled; raises `SupervisionError` once the restart ceiling is exceeded."""
        launched = self._launch()
        while not self.cancel.cancelled:
            code = self._exit_code() if launched else -1
            if code is None:
                self.clock.sleep(self.poll_interval_s, self.cancel)
                continue
            if self.cancel.cancelled:
                break

            uptime = self.clock.monotonic() - self._started_at if launched else 0.0
            if uptime >= self.stable_after_s:
                self.restarts = 0
            self.restarts += 1
            bt.logging.warning(
                f"{self.command[0]} exited with code {code} after {uptime:.0f}s "
                f"(crash {self.restarts}/{self.max_restarts})"
            )
            if self.restarts > self.max_restarts:
                raise SupervisionError(
                    f"{self.command[0]} crashed {self.restarts} times in a row (last exit code {code})",
                    stage="supervise",
                )
            delay = self.backoff.delay(self.restarts)
            if not self.clock.sleep(delay, self.cancel):
                break
            launched = self._launch()
            if self.events is not None:
                self.events.emit("process-restarted", stage="supervise", exit_code=code, restarts=self.restarts)
        self.stop()

    def stop(self) -> None:
        with self._lock:
            proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        bt.logging.info(f"Stopping {self.command[0]} (pid={proc.pid})")
        proc.terminate()
        try:
            proc.wait(timeout=self.stop_timeout_s)
        except subprocess.TimeoutExpired:
            bt.logging.warning(f"{self.command[0]} ignored SIGTERM; killing")
            proc.kill()
            proc.wait()
