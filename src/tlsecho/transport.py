from __future__ import annotations

import socket
import ssl

import structlog

from tlsecho.common import BindError, ListenerConfig, resolve_protocols

log = structlog.get_logger(__name__)


def server_context(config: ListenerConfig) -> ssl.SSLContext:
    minimum, maximum = resolve_protocols(config.protocols)
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        context.minimum_version = minimum
        context.maximum_version = maximum
    except (ValueError, ssl.SSLError) as exc:
        raise BindError(f"protocols {', '.join(config.protocols)} refused by the TLS library: {exc}") from exc
    try:
        context.load_cert_chain(certfile=config.certfile, keyfile=config.keyfile)
    except (OSError, ssl.SSLError) as exc:
        raise BindError(
            f"Failed to load TLS key material from {config.certfile!r} (key {config.keyfile!r}): {exc}. "
            "Ensure the certificate and key exist and are readable."
        ) from exc
    return context


class TlsListener:
    """A bound TCP listening socket plus the context that secures accepted connections.

    ``accept`` hands back the plain TCP connection; the handshake happens in
    ``secure`` so it runs on the session's thread, not the accept loop.
    """

    def __init__(self, sock: socket.socket, context: ssl.SSLContext, address: tuple[str, int]) -> None:
        self._sock = sock
        self.context = context
        self.address = address

    def accept(self) -> tuple[socket.socket, tuple[str, int]]:
        return self._sock.accept()

    def secure(self, conn: socket.socket) -> ssl.SSLSocket:
        return self.context.wrap_socket(conn, server_side=True)

    def close(self) -> None:
        # shutdown() wakes a thread blocked in accept(); close() alone may not.
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    @property
    def closed(self) -> bool:
        return self._sock.fileno() == -1


def bind_listener(config: ListenerConfig, backlog: int = 128) -> TlsListener:
    context = server_context(config)

    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        server.bind((config.host, config.port))
        server.listen(backlog)
    except OSError as exc:
        server.close()
        raise BindError(f"cannot listen on {config.host}:{config.port}: {exc}") from exc

    try:
        address = server.getsockname()[:2]
    except OSError:
        # Ziti-hosted sockets have no local IP address.
        address = (config.host, config.port)

    listener = TlsListener(server, context, address)
    log.debug("bound", address=listener.address, protocols=list(config.protocols))
    return listener
