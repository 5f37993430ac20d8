from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
from typing import NoReturn

import structlog

from tlsecho import ziti
from tlsecho.client import EchoTarget, client_context, echo_lines, open_connection
from tlsecho.common import (
    DEFAULT_PROTOCOLS,
    PROTOCOL_VERSIONS,
    BindError,
    CapabilityUnavailable,
    ConfigError,
    FailurePolicy,
    ListenerConfig,
    SessionLimits,
    ZitiBinding,
    parse_port,
)
from tlsecho.logging import configure_logging
from tlsecho.supervisor import EchoServer

log = structlog.get_logger(__name__)


class _UsageParser(argparse.ArgumentParser):
    """Print usage on stdout and exit 1 on bad arguments, instead of argparse's stderr/2."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stdout)
        print(f"{self.prog}: error: {message}")
        raise SystemExit(1)


def _port(value: str) -> int:
    try:
        return parse_port(value, allow_ephemeral=False)
    except ConfigError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def _add_tls(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--protocol",
        dest="protocols",
        action="append",
        choices=list(PROTOCOL_VERSIONS),
        help=f"Enabled TLS version, repeatable (default: {', '.join(DEFAULT_PROTOCOLS)})",
    )


def _add_ziti(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--ziti-identity", help="Path to enrolled Ziti identity JSON")
    parser.add_argument("--ziti-service", help="Ziti service name (must exist on controller)")


def _add_logging(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--log-json", action="store_true", help="Log JSON lines instead of console output")


def _ziti_binding(parser: argparse.ArgumentParser, args: argparse.Namespace) -> ZitiBinding | None:
    if not args.ziti_identity and not args.ziti_service:
        return None
    if not (args.ziti_identity and args.ziti_service):
        parser.error("--ziti-identity and --ziti-service must be given together")
    capability = ziti.detect_capability()
    if not capability.available:
        parser.error(capability.reason)
    return ZitiBinding(args.ziti_identity, args.ziti_service)


def build_server_parser() -> argparse.ArgumentParser:
    parser = _UsageParser(
        prog="tlsecho",
        description="Echo newline-terminated lines back to every client over TLS.",
    )
    parser.add_argument("port", type=_port, help="TCP port to listen on (1-65535)")
    parser.add_argument("--bind", default="0.0.0.0")
    parser.add_argument(
        "--certfile",
        default=os.environ.get("TLSECHO_CERTFILE", "server.crt"),
        help="PEM certificate chain (default: $TLSECHO_CERTFILE or server.crt)",
    )
    parser.add_argument(
        "--keyfile",
        default=os.environ.get("TLSECHO_KEYFILE", "server.key"),
        help="PEM private key (default: $TLSECHO_KEYFILE or server.key)",
    )
    _add_tls(parser)
    parser.add_argument(
        "--policy",
        choices=[policy.value for policy in FailurePolicy],
        default=FailurePolicy.ISOLATED.value,
        help="isolated: a failing session only closes itself; fatal: any session or accept error stops the server",
    )
    parser.add_argument("--max-sessions", type=_positive_int, help="Reject connections beyond this many live sessions")
    parser.add_argument("--idle-timeout", type=float, help="Close sessions idle for this many seconds")
    parser.add_argument("--max-line-length", type=_positive_int, help="Fail sessions sending longer lines (bytes)")
    parser.add_argument("--encoding", default="utf-8")
    parser.add_argument("--accept-retries", type=int, default=5, help="Consecutive accept errors tolerated (isolated policy)")
    parser.add_argument("--drain-timeout", type=float, default=10.0, help="Seconds to let sessions finish on shutdown")
    _add_ziti(parser)
    _add_logging(parser)
    return parser


def build_config(parser: argparse.ArgumentParser, args: argparse.Namespace) -> ListenerConfig:
    try:
        return ListenerConfig(
            port=args.port,
            host=args.bind,
            protocols=tuple(args.protocols or DEFAULT_PROTOCOLS),
            certfile=args.certfile,
            keyfile=args.keyfile,
            policy=FailurePolicy(args.policy),
            limits=SessionLimits(
                max_sessions=args.max_sessions,
                idle_timeout=args.idle_timeout,
                max_line_length=args.max_line_length,
                encoding=args.encoding,
            ),
            accept_retries=args.accept_retries,
            drain_timeout=args.drain_timeout,
            ziti=_ziti_binding(parser, args),
        )
    except ConfigError as exc:
        parser.error(str(exc))


def _install_signal_handlers(server: EchoServer) -> None:
    def handle(signum: int, _frame) -> None:
        log.info("signal", signal=signal.Signals(signum).name)
        threading.Thread(target=server.shutdown, daemon=True).start()

    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, handle)


def main(argv: list[str] | None = None) -> int:
    parser = build_server_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, log_json=args.log_json)
    config = build_config(parser, args)

    server = EchoServer(config)
    try:
        server.start()
    except BindError as exc:
        log.error("bind_failed", error=str(exc))
        return 1

    if threading.current_thread() is threading.main_thread():
        _install_signal_handlers(server)
    return server.serve()


def build_client_parser() -> argparse.ArgumentParser:
    parser = _UsageParser(prog="tlsecho-client", description="Send lines to a tlsecho server and print the echoes.")
    parser.add_argument("messages", nargs="+", metavar="MESSAGE")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=_port, default=9443)
    parser.add_argument("--cafile", help="CA or self-signed certificate to trust")
    parser.add_argument("--insecure", action="store_true", help="Skip certificate verification")
    parser.add_argument("--timeout", type=float, default=5.0)
    parser.add_argument("--encoding", default="utf-8")
    _add_tls(parser)
    _add_ziti(parser)
    _add_logging(parser)
    return parser


def client_main(argv: list[str] | None = None) -> int:
    parser = build_client_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, log_json=args.log_json)

    try:
        context = client_context(args.cafile, args.insecure, tuple(args.protocols) if args.protocols else None)
    except ConfigError as exc:
        parser.error(str(exc))
    target = EchoTarget(args.host, args.port)
    try:
        with open_connection(target, context, args.timeout, ziti=_ziti_binding(parser, args)) as conn:
            replies = echo_lines(conn, args.messages, args.encoding)
    except (OSError, BindError, CapabilityUnavailable) as exc:
        log.error("echo_failed", host=args.host, port=args.port, error=str(exc))
        return 1

    for reply in replies:
        print(reply)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
