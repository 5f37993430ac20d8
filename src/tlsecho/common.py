from __future__ import annotations

import enum
import ssl
from dataclasses import dataclass, field

DEFAULT_PROTOCOLS = ("TLSv1.2",)

# Ordered oldest to newest; an SSLContext can only enable a contiguous range.
PROTOCOL_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


class EchoError(Exception):
    """Base class for every error the echo service reports."""


class ConfigError(EchoError):
    """Bad command-line or listener configuration, detected before binding."""


class BindError(EchoError):
    """The listener could not be constructed."""


class AcceptError(EchoError):
    """The listening socket itself failed."""


class SessionError(EchoError):
    """A single connection failed."""


class CapabilityUnavailable(EchoError):
    """An optional capability was requested but cannot be used here."""


class FailurePolicy(str, enum.Enum):
    ISOLATED = "isolated"
    FATAL = "fatal"


@dataclass(frozen=True)
class ZitiBinding:
    identity: str
    service: str


@dataclass(frozen=True)
class SessionLimits:
    max_sessions: int | None = None
    idle_timeout: float | None = None
    max_line_length: int | None = None
    encoding: str = "utf-8"

    def __post_init__(self) -> None:
        if self.max_sessions is not None and self.max_sessions < 1:
            raise ConfigError(f"max_sessions must be at least 1, got {self.max_sessions}")
        if self.idle_timeout is not None and self.idle_timeout <= 0:
            raise ConfigError(f"idle_timeout must be positive, got {self.idle_timeout}")
        if self.max_line_length is not None and self.max_line_length < 1:
            raise ConfigError(f"max_line_length must be at least 1, got {self.max_line_length}")
        try:
            newline = "\n".encode(self.encoding)
        except LookupError as exc:
            raise ConfigError(f"unknown encoding {self.encoding!r}") from exc
        # Lines are split on the byte b"\n"; wide or BOM-writing codecs would corrupt the echo.
        if newline != b"\n":
            raise ConfigError(f"encoding {self.encoding!r} must encode a newline as the single byte 0x0a")


@dataclass(frozen=True)
class ListenerConfig:
    port: int
    host: str = "0.0.0.0"
    protocols: tuple[str, ...] = DEFAULT_PROTOCOLS
    certfile: str = "server.crt"
    keyfile: str | None = "server.key"
    policy: FailurePolicy = FailurePolicy.ISOLATED
    limits: SessionLimits = field(default_factory=SessionLimits)
    accept_retries: int = 5
    drain_timeout: float = 10.0
    ziti: ZitiBinding | None = None

    def __post_init__(self) -> None:
        parse_port(self.port)
        resolve_protocols(self.protocols)
        if self.accept_retries < 0:
            raise ConfigError(f"accept_retries must not be negative, got {self.accept_retries}")
        if self.drain_timeout < 0:
            raise ConfigError(f"drain_timeout must not be negative, got {self.drain_timeout}")


def parse_port(value: str | int, *, allow_ephemeral: bool = True) -> int:
    """Parse a decimal TCP port.

    Port 0 (let the kernel pick) is accepted only where ``allow_ephemeral`` is
    set; the command line requires a real port.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid port: {value!r}")
    if isinstance(value, int):
        port = value
    else:
        text = value.strip()
        if not (text.isascii() and text.isdigit()):
            raise ConfigError(f"invalid port: {value!r}")
        port = int(text)
    low = 0 if allow_ephemeral else 1
    if not low <= port <= 65535:
        raise ConfigError(f"port out of range: {port}")
    return port


def resolve_protocols(names: tuple[str, ...] | list[str]) -> tuple[ssl.TLSVersion, ssl.TLSVersion]:
    """Map enabled protocol names to the (minimum, maximum) version range."""
    if not names:
        raise ConfigError("at least one protocol must be enabled")
    order = list(PROTOCOL_VERSIONS)
    indexes = []
    for name in names:
        if name not in PROTOCOL_VERSIONS:
            raise ConfigError(f"unsupported protocol {name!r} (choose from {', '.join(order)})")
        indexes.append(order.index(name))
    wanted = sorted(set(indexes))
    if wanted != list(range(wanted[0], wanted[-1] + 1)):
        raise ConfigError(f"enabled protocols must be contiguous: {', '.join(names)}")
    return PROTOCOL_VERSIONS[order[wanted[0]]], PROTOCOL_VERSIONS[order[wanted[-1]]]
