from __future__ import annotations

import enum
import threading
from contextlib import ExitStack

import structlog

from tlsecho import ziti
from tlsecho.acceptor import Acceptor
from tlsecho.common import AcceptError, BindError, FailurePolicy, ListenerConfig, SessionError
from tlsecho.session import Session
from tlsecho.transport import TlsListener, bind_listener

log = structlog.get_logger(__name__)


class State(str, enum.Enum):
    UNSTARTED = "unstarted"
    BINDING = "binding"
    LISTENING = "listening"
    DRAINING = "draining"
    TERMINATED = "terminated"


class EchoServer:
    """Process lifecycle for one listener: bind, accept, and decide how failures end.

    ``serve`` returns the process exit code: 0 after :meth:`shutdown`, 1
    after :meth:`fail`. Under the fatal policy any session error calls
    :meth:`fail`, which tears down the listener and every live session.
    """

    def __init__(self, config: ListenerConfig) -> None:
        self.config = config
        self.state = State.UNSTARTED
        self.exit_code: int | None = None
        self.listener: TlsListener | None = None
        self.acceptor: Acceptor | None = None
        self._stack = ExitStack()
        self._lock = threading.Lock()
        self._terminated = threading.Event()

    @property
    def address(self) -> tuple[str, int] | None:
        return self.listener.address if self.listener else None

    def start(self) -> None:
        with self._lock:
            if self.state is not State.UNSTARTED:
                raise RuntimeError(f"server already {self.state.value}")
            self.state = State.BINDING

        try:
            if self.config.ziti is not None:
                self._stack.enter_context(ziti.hosted(self.config))
            self.listener = bind_listener(self.config)
        except BindError:
            self._terminate(1)
            raise
        except Exception as exc:
            self._terminate(1)
            raise BindError(str(exc)) from exc

        self.acceptor = Acceptor(
            self.listener,
            self.config.limits,
            policy=self.config.policy,
            accept_retries=self.config.accept_retries,
            on_error=self._session_failed,
        )
        with self._lock:
            self.state = State.LISTENING

        host, port = self.listener.address
        if self.config.ziti is not None:
            log.info("listening", service=self.config.ziti.service, host=host, port=port, policy=self.config.policy.value)
        else:
            log.info("listening", host=host, port=port, policy=self.config.policy.value)

    def serve(self) -> int:
        if self.state is State.UNSTARTED:
            self.start()
        assert self.acceptor is not None
        try:
            self.acceptor.run()
        except AcceptError as exc:
            self.fail(exc)
        # run() also returns when fail() or shutdown() closed the listener.
        with self._lock:
            still_listening = self.state is State.LISTENING
        if still_listening:
            self.shutdown()
        self._terminated.wait()
        log.info("stopped", exit_code=self.exit_code)
        return self.exit_code if self.exit_code is not None else 0

    def _session_failed(self, session: Session, error: SessionError) -> None:
        if self.config.policy is FailurePolicy.FATAL:
            self.fail(error)

    def fail(self, error: Exception) -> None:
        """Terminate the whole service with exit code 1."""
        with self._lock:
            if self.state is State.TERMINATED:
                return
            self.state = State.TERMINATED
            self.exit_code = 1
        log.error("fatal", error=str(error), policy=self.config.policy.value)
        self._close_listener()
        if self.acceptor is not None:
            self.acceptor.abort_all()
        self._stack.close()
        self._terminated.set()

    def shutdown(self) -> None:
        """Refuse new connections, let live sessions finish, then stop with exit code 0.

        Sessions still running after ``drain_timeout`` seconds are aborted.
        """
        with self._lock:
            if self.state in (State.DRAINING, State.TERMINATED):
                return
            self.state = State.DRAINING
        self._close_listener()
        if self.acceptor is not None:
            log.info("draining", sessions=len(self.acceptor.active_sessions))
            if not self.acceptor.wait_idle(self.config.drain_timeout):
                self.acceptor.abort_all()
        self._terminate(0)

    def _close_listener(self) -> None:
        if self.acceptor is not None:
            self.acceptor.stop()
        if self.listener is not None:
            self.listener.close()

    def _terminate(self, code: int) -> None:
        with self._lock:
            self.state = State.TERMINATED
            if self.exit_code is None:
                self.exit_code = code
        self._stack.close()
        self._terminated.set()

    def wait_terminated(self, timeout: float | None = None) -> bool:
        return self._terminated.wait(timeout)
