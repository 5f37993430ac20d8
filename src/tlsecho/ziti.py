"""Host and reach the echo service over OpenZiti instead of a public port.

OpenZiti ships a native runtime, so it is treated as an optional capability:
:func:`detect_capability` reports whether it can be loaded, and the other
helpers raise :class:`CapabilityUnavailable` when it cannot.
"""

from __future__ import annotations

import importlib
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from tlsecho.common import BindError, CapabilityUnavailable, ListenerConfig, ZitiBinding


@dataclass(frozen=True)
class Capability:
    available: bool
    reason: str = ""


def _load_openziti() -> Any:
    return importlib.import_module("openziti")


def detect_capability() -> Capability:
    try:
        _load_openziti()
    except (ImportError, OSError) as exc:
        return Capability(False, f"openziti cannot be loaded ({exc}); install it with 'pip install openziti'")
    return Capability(True)


def _require() -> Any:
    capability = detect_capability()
    if not capability.available:
        raise CapabilityUnavailable(capability.reason)
    return _load_openziti()


def bindings(config: ListenerConfig) -> dict[tuple[str, int], dict[str, str]]:
    """Map the listener's (host, port) to the Ziti service it is hosted on."""
    if config.ziti is None:
        return {}
    return {
        (config.host, config.port): {
            "ztx": config.ziti.identity,
            "service": config.ziti.service,
        }
    }


@contextmanager
def hosted(config: ListenerConfig) -> Iterator[None]:
    """Remap the listener's bind() into the Ziti overlay while active.

    The listener still binds to (host, port) in code, but
    ``openziti.monkeypatch`` turns that into a Ziti service binding, so no
    public TCP listener exists. TLS still runs on top.
    """
    openziti = _require()
    with openziti.monkeypatch(bindings=bindings(config)):
        yield


def load_context(identity_path: str) -> Any:
    openziti = _require()
    ctx, err = openziti.load(identity_path)
    if err != 0:
        raise BindError(
            f"Failed to load Ziti identity from {identity_path!r} (err={err}). "
            "Ensure the identity JSON exists and is readable."
        )
    return ctx


def connect(binding: ZitiBinding, timeout: float | None = None) -> socket.socket:
    """Dial a Ziti service; the caller wraps the returned socket in TLS."""
    ctx = load_context(binding.identity)
    sock = ctx.connect(binding.service)
    sock.settimeout(timeout)
    return sock
