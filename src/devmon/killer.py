"""
Escalating termination of orphaned processes.

A kill runs SIGTERM, a bounded grace wait, at most one SIGKILL, and then
drops the pid from the orphan ledger::

    RUNNING -> GRACE_WAIT -> CONFIRMED_EXITED ------------> LEDGER_CLEANED
                          \\-> FORCE_SENT -> CONFIRMED_EXITED -/

Protected process names are checked before any signal is sent. Signal
delivery, liveness, name lookup and sleep are injected so the protocol can
be exercised without real processes.
"""

import logging
import math
import os
import signal
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

import psutil

from devmon.ledger import OrphanLedger

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1  # seconds between liveness checks
MAX_POLLS = 30  # single-pid grace window = POLL_INTERVAL * MAX_POLLS
BATCH_GRACE_SECONDS = 2.0


class KillState(Enum):
    """Stages of the termination protocol."""

    RUNNING = "running"
    GRACE_WAIT = "grace_wait"
    FORCE_SENT = "force_sent"
    CONFIRMED_EXITED = "confirmed_exited"
    LEDGER_CLEANED = "ledger_cleaned"


@dataclass(slots=True)
class KillResult:
    """Outcome of a kill request for one pid."""

    pid: int
    ok: bool
    reason: str = ""
    forced: bool = False
    transitions: list[KillState] = field(default_factory=list)

    @property
    def state(self) -> KillState | None:
        """Last state reached."""
        return self.transitions[-1] if self.transitions else None


@dataclass(slots=True)
class BatchKillResult:
    """Outcome of a batch kill; ``error`` is set when the batch could not start."""

    results: list[KillResult] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        """True when every requested pid ended up terminated."""
        return self.error is None and all(result.ok for result in self.results)

    @property
    def killed(self) -> list[int]:
        """Pids confirmed or presumed exited."""
        return [result.pid for result in self.results if result.ok]

    @property
    def reason(self) -> str:
        """Failure reasons joined for display."""
        reasons = [f"{r.pid}: {r.reason}" for r in self.results if not r.ok]
        if self.error is not None:
            reasons.insert(0, self.error)
        return "; ".join(reasons)


def default_is_alive(pid: int) -> bool:
    """Liveness via psutil; a zombie counts as exited."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def default_name_of(pid: int) -> str | None:
    """
    Process name via psutil, or None if the pid no longer exists.

    Raises:
        psutil.AccessDenied: If the name cannot be read.
    """
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None


class KillExecutor:
    """
    Runs the graceful-then-forced termination protocol.

    A pid that is already mid-protocol is not signalled again; the second
    request returns immediately with ``ok=False``.
    """

    def __init__(
        self,
        ledger: OrphanLedger,
        protected_names: Iterable[str],
        send_signal: Callable[[int, int], None] = os.kill,
        is_alive: Callable[[int], bool] = default_is_alive,
        name_of: Callable[[int], str | None] = default_name_of,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = POLL_INTERVAL,
        max_polls: int = MAX_POLLS,
        batch_grace_seconds: float = BATCH_GRACE_SECONDS,
    ) -> None:
        self._ledger = ledger
        self._protected = frozenset(protected_names)
        self._send_signal = send_signal
        self._is_alive = is_alive
        self._name_of = name_of
        self._sleep = sleep
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._batch_polls = max(1, math.ceil(batch_grace_seconds / poll_interval))
        self._in_flight: set[int] = set()
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> frozenset[int]:
        """Pids currently being terminated."""
        with self._lock:
            return frozenset(self._in_flight)

    def is_protected(self, name: str) -> bool:
        """Whether a process name is on the never-signal list."""
        return name in self._protected or os.path.basename(name) in self._protected

    def kill(self, pid: int) -> KillResult:
        """Terminate one pid and clear its ledger entry."""
        refusal = self._refusal(pid)
        if refusal is not None:
            return refusal
        if not self._claim([pid]):
            return KillResult(pid, ok=False, reason="kill already in progress")

        try:
            result = KillResult(pid, ok=True, transitions=[KillState.RUNNING])
            if not self._signal(result, signal.SIGTERM):
                return result
            result.transitions.append(KillState.GRACE_WAIT)

            for _ in range(self._max_polls):
                if not self._is_alive(pid):
                    break
                self._sleep(self._poll_interval)
            else:
                if self._is_alive(pid):
                    self._force(result)
                    if not result.ok:
                        return result

            result.transitions.append(KillState.CONFIRMED_EXITED)
            self._ledger.forget(pid)
            result.transitions.append(KillState.LEDGER_CLEANED)
            logger.info("Killed pid %d%s", pid, " (forced)" if result.forced else "")
            return result
        finally:
            self._release([pid])

    def kill_many(self, pids: Iterable[int]) -> BatchKillResult:
        """
        Terminate several pids sharing one grace window.

        Every eligible pid gets SIGTERM first, then the executor waits until
        all have exited or the window expires, then SIGKILLs the survivors
        once, and finally clears all their ledger entries in one write.
        """
        batch = BatchKillResult()
        candidates: list[int] = []
        for pid in dict.fromkeys(pids):
            refusal = self._refusal(pid)
            if refusal is not None:
                batch.results.append(refusal)
            elif not self._claim([pid]):
                batch.results.append(KillResult(pid, ok=False, reason="kill already in progress"))
            else:
                candidates.append(pid)

        try:
            pending: list[KillResult] = []
            for pid in candidates:
                result = KillResult(pid, ok=True, transitions=[KillState.RUNNING])
                batch.results.append(result)
                if self._signal(result, signal.SIGTERM):
                    result.transitions.append(KillState.GRACE_WAIT)
                    pending.append(result)

            for _ in range(self._batch_polls):
                if not any(self._is_alive(r.pid) for r in pending):
                    break
                self._sleep(self._poll_interval)

            for result in pending:
                if self._is_alive(result.pid):
                    self._force(result)

            exited = [r for r in pending if r.ok]
            for result in exited:
                result.transitions.append(KillState.CONFIRMED_EXITED)
            self._ledger.forget_many(r.pid for r in exited)
            for result in exited:
                result.transitions.append(KillState.LEDGER_CLEANED)

            if exited:
                logger.info("Batch killed %d process(es): %s", len(exited), [r.pid for r in exited])
            return batch
        finally:
            self._release(candidates)

    def _refusal(self, pid: int) -> KillResult | None:
        """Guardrail checks that run before any signal."""
        if pid <= 1 or pid == os.getpid():
            return KillResult(pid, ok=False, reason="refusing to signal system or own process")
        try:
            name = self._name_of(pid)
        except psutil.AccessDenied:
            return KillResult(pid, ok=False, reason="cannot read process name")
        if name is not None and self.is_protected(name):
            logger.warning("Refusing to kill protected process %s (pid %d)", name, pid)
            return KillResult(pid, ok=False, reason=f"protected process: {name}")
        return None

    def _signal(self, result: KillResult, sig: int) -> bool:
        """
        Deliver a signal. Returns False when the protocol should stop.

        A pid that no longer exists has reached the desired end state.
        """
        try:
            self._send_signal(result.pid, sig)
        except ProcessLookupError:
            if sig == signal.SIGTERM:
                result.transitions.append(KillState.CONFIRMED_EXITED)
                self._ledger.forget(result.pid)
                result.transitions.append(KillState.LEDGER_CLEANED)
                return False
            return True
        except PermissionError as e:
            result.ok = False
            result.reason = f"permission denied: {e}"
            logger.warning("Cannot signal pid %d: %s", result.pid, e)
            return False
        return True

    def _force(self, result: KillResult) -> None:
        result.forced = True
        result.transitions.append(KillState.FORCE_SENT)
        self._signal(result, signal.SIGKILL)

    def _claim(self, pids: list[int]) -> bool:
        with self._lock:
            if self._in_flight.intersection(pids):
                return False
            self._in_flight.update(pids)
            return True

    def _release(self, pids: Iterable[int]) -> None:
        with self._lock:
            self._in_flight.difference_update(pids)
