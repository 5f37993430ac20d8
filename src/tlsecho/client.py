from __future__ import annotations

import socket
import ssl
from dataclasses import dataclass
from typing import Iterable

from tlsecho import ziti as ziti_transport
from tlsecho.common import ZitiBinding, resolve_protocols


@dataclass(frozen=True)
class EchoTarget:
    host: str
    port: int


def client_context(
    cafile: str | None = None,
    insecure: bool = False,
    protocols: tuple[str, ...] | None = None,
) -> ssl.SSLContext:
    context = ssl.create_default_context(cafile=cafile)
    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if protocols:
        context.minimum_version, context.maximum_version = resolve_protocols(protocols)
    return context


def open_connection(
    target: EchoTarget,
    context: ssl.SSLContext,
    timeout: float | None = 5,
    ziti: ZitiBinding | None = None,
) -> ssl.SSLSocket:
    """Connect and complete the TLS handshake, directly or through a Ziti service."""
    if ziti is not None:
        sock = ziti_transport.connect(ziti, timeout=timeout)
    else:
        sock = socket.create_connection((target.host, target.port), timeout=timeout)
    try:
        return context.wrap_socket(sock, server_hostname=target.host)
    except BaseException:
        sock.close()
        raise


def echo_lines(conn: socket.socket, lines: Iterable[str], encoding: str = "utf-8") -> list[str]:
    """Send each line and read back its echo, in order, terminator stripped."""
    replies: list[str] = []
    with conn.makefile("rb") as reader:
        for line in lines:
            conn.sendall(f"{line}\n".encode(encoding))
            reply = reader.readline()
            if not reply:
                raise ConnectionError("server closed the connection")
            replies.append(reply.decode(encoding).rstrip("\n"))
    return replies
