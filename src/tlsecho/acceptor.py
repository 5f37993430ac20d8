from __future__ import annotations

import threading
import time
from typing import Protocol

import structlog

from tlsecho.common import AcceptError, FailurePolicy, SessionLimits
from tlsecho.session import ErrorHandler, Session

log = structlog.get_logger(__name__)

RETRY_BACKOFF = 0.1


class Listener(Protocol):
    address: tuple[str, int]

    def accept(self): ...

    def secure(self, conn): ...

    def close(self) -> None: ...


class Acceptor:
    """Turn incoming connections into sessions, one daemon thread each.

    Under the fatal policy the first accept error ends the loop; under the
    isolated policy up to ``accept_retries`` consecutive errors are retried
    before the listener is declared dead. Either way a dead listener surfaces
    as :class:`AcceptError` from :meth:`run`.
    """

    def __init__(
        self,
        listener: Listener,
        limits: SessionLimits,
        *,
        policy: FailurePolicy = FailurePolicy.ISOLATED,
        accept_retries: int = 0,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self.listener = listener
        self.limits = limits
        self.policy = policy
        self.accept_retries = accept_retries if policy is FailurePolicy.ISOLATED else 0
        self._on_error = on_error
        self._slots = threading.BoundedSemaphore(limits.max_sessions) if limits.max_sessions else None
        self._sessions: set[Session] = set()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._stopping = threading.Event()

    @property
    def active_sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions)

    def run(self) -> None:
        failures = 0
        while not self._stopping.is_set():
            try:
                conn, peer = self.listener.accept()
            except OSError as exc:
                if self._stopping.is_set():
                    return
                failures += 1
                log.warning("accept_failed", error=str(exc), attempt=failures)
                if failures > self.accept_retries:
                    raise AcceptError(f"listener on {self.listener.address} failed: {exc}") from exc
                time.sleep(RETRY_BACKOFF * failures)
                continue
            failures = 0

            if self._stopping.is_set():
                conn.close()
                return
            if self._slots is not None and not self._slots.acquire(blocking=False):
                log.warning("session_rejected", peer=peer, max_sessions=self.limits.max_sessions)
                conn.close()
                continue
            self._spawn(Session(conn, self.listener.secure, self.limits, on_error=self._on_error, peer=peer))

    def _spawn(self, session: Session) -> None:
        with self._lock:
            self._sessions.add(session)
        try:
            threading.Thread(target=self._run_session, args=(session,), daemon=True).start()
        except RuntimeError as exc:
            log.warning("session_rejected", peer=session.peer, error=str(exc))
            session.close()
            self._release(session)

    def _release(self, session: Session) -> None:
        with self._lock:
            self._sessions.discard(session)
            self._idle.notify_all()
        if self._slots is not None:
            self._slots.release()

    def _run_session(self, session: Session) -> None:
        try:
            session.run()
        finally:
            self._release(session)

    def stop(self) -> None:
        """Make :meth:`run` return; the caller closes the listener to wake it."""
        self._stopping.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every session has finished, or ``timeout`` elapses."""
        with self._lock:
            return self._idle.wait_for(lambda: not self._sessions, timeout)

    def abort_all(self) -> None:
        for session in self.active_sessions:
            session.abort()
