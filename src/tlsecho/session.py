from __future__ import annotations

import socket
import threading
from typing import Callable

import structlog

from tlsecho.common import SessionError, SessionLimits

log = structlog.get_logger(__name__)

Secure = Callable[[socket.socket], socket.socket]
ErrorHandler = Callable[["Session", SessionError], None]


class Session:
    """Echo newline-terminated lines back over one accepted connection.

    The session owns the connection: it performs the TLS handshake through
    ``secure``, echoes each line before reading the next one, and always
    closes the connection when ``run`` returns. Failures are wrapped in
    :class:`SessionError` and passed to ``on_error``; what happens next is the
    caller's failure policy.
    """

    def __init__(
        self,
        conn: socket.socket,
        secure: Secure,
        limits: SessionLimits,
        on_error: ErrorHandler | None = None,
        peer: tuple[str, int] | None = None,
    ) -> None:
        self._conn = conn
        self._secure = secure
        self.limits = limits
        self.peer = peer
        self._on_error = on_error
        self._lock = threading.Lock()
        self._aborted = False
        self.lines_echoed = 0
        self.error: SessionError | None = None

    @property
    def closed(self) -> bool:
        return self._conn.fileno() == -1

    def run(self) -> None:
        try:
            reason = self._serve()
        except SessionError as exc:
            self.error = exc
            log.warning("session_failed", peer=self.peer, error=str(exc), lines=self.lines_echoed)
            if self._on_error is not None:
                self._on_error(self, exc)
        else:
            log.info("session_closed", peer=self.peer, reason=reason, lines=self.lines_echoed)
        finally:
            self.close()

    def _serve(self) -> str:
        self._conn.settimeout(self.limits.idle_timeout)
        try:
            self._conn = self._secure(self._conn)
        except socket.timeout:
            return "idle"
        except OSError as exc:
            if self._aborted:
                return "aborted"
            raise SessionError(f"TLS handshake failed: {exc}") from exc

        version = getattr(self._conn, "version", None)
        log.info("session_opened", peer=self.peer, tls=version() if version else None)

        with self._conn.makefile("rb") as reader:
            while True:
                try:
                    raw = self._read_line(reader)
                except socket.timeout:
                    return "idle"
                except (OSError, ValueError) as exc:
                    # ValueError: the SSL object was torn down by abort().
                    if self._aborted:
                        return "aborted"
                    raise SessionError(f"read failed: {exc}") from exc

                if not raw:
                    return "eof"

                try:
                    raw.decode(self.limits.encoding)
                except UnicodeDecodeError as exc:
                    raise SessionError(f"malformed {self.limits.encoding} data: {exc}") from exc

                if not raw.endswith(b"\n"):
                    # Trailing fragment right before end of stream.
                    raw += b"\n"

                try:
                    self._conn.sendall(raw)
                except (OSError, ValueError) as exc:
                    if self._aborted:
                        return "aborted"
                    raise SessionError(f"write failed: {exc}") from exc
                self.lines_echoed += 1

    def _read_line(self, reader) -> bytes:
        max_length = self.limits.max_line_length
        if max_length is None:
            return reader.readline()

        # Room for the longest terminator, "\r\n".
        limit = max_length + 2
        raw = reader.readline(limit)
        if len(raw) == limit and not raw.endswith(b"\n"):
            raise SessionError(f"line exceeds {max_length} bytes")
        if len(raw.rstrip(b"\r\n")) > max_length:
            raise SessionError(f"line exceeds {max_length} bytes")
        return raw

    def abort(self) -> None:
        """Close the connection from another thread, waking a blocked read."""
        with self._lock:
            self._aborted = True
            try:
                self._conn.shutdown(socket.SHUT_RDWR)
            except (OSError, ValueError):
                pass

    def close(self) -> None:
        with self._lock:
            self._conn.close()
