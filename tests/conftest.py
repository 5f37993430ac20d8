"""Shared pytest fixtures for tlsecho tests.

- ``tls_files``: a throwaway CA plus a server certificate for 127.0.0.1/localhost
- ``make_config``: ListenerConfig bound to 127.0.0.1 on an ephemeral port
- ``start_server``: EchoServer running ``serve`` on a background thread
- ``connect``: TLS client connection trusting the throwaway CA
"""

from __future__ import annotations

import datetime
import ipaddress
import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from tlsecho.client import EchoTarget, client_context, open_connection
from tlsecho.common import ListenerConfig
from tlsecho.supervisor import EchoServer


@dataclass(frozen=True)
class TlsFiles:
    ca: Path
    cert: Path
    key: Path


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _write_key(key: rsa.RSAPrivateKey, path: Path) -> None:
    path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )


@pytest.fixture(scope="session")
def tls_files(tmp_path_factory: pytest.TempPathFactory) -> TlsFiles:
    """Generate a CA and a server certificate signed by it."""
    directory = tmp_path_factory.mktemp("tls")
    now = datetime.datetime.now(datetime.timezone.utc)
    start, end = now - datetime.timedelta(days=1), now + datetime.timedelta(days=30)

    ca_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ca_ski = x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key())
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(_name("tlsecho test CA"))
        .issuer_name(_name("tlsecho test CA"))
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(end)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(ca_ski, critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski), critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name("localhost"))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(end)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName("localhost"), x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]
            ),
            critical=False,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski), critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    files = TlsFiles(ca=directory / "ca.pem", cert=directory / "server.crt", key=directory / "server.key")
    files.ca.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    files.cert.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    _write_key(key, files.key)
    return files


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    """Restore root logger state after each test."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    echo = logging.getLogger("tlsecho")
    echo_level = echo.level
    yield
    root.handlers = original_handlers
    root.setLevel(original_level)
    echo.setLevel(echo_level)


@pytest.fixture
def make_config(tls_files: TlsFiles) -> Callable[..., ListenerConfig]:
    def _make(**overrides) -> ListenerConfig:
        values = {
            "port": 0,
            "host": "127.0.0.1",
            "certfile": str(tls_files.cert),
            "keyfile": str(tls_files.key),
            "drain_timeout": 1.0,
        }
        values.update(overrides)
        return ListenerConfig(**values)

    return _make


@pytest.fixture
def start_server(make_config: Callable[..., ListenerConfig]) -> Iterator[Callable[..., EchoServer]]:
    running: list[tuple[EchoServer, threading.Thread]] = []

    def _start(**overrides) -> EchoServer:
        server = EchoServer(make_config(**overrides))
        server.start()
        thread = threading.Thread(target=server.serve, daemon=True)
        thread.start()
        running.append((server, thread))
        return server

    yield _start

    for server, thread in running:
        server.shutdown()
        thread.join(timeout=5)


@pytest.fixture
def connect(tls_files: TlsFiles) -> Iterator[Callable[..., object]]:
    opened = []

    def _connect(server: EchoServer, **context_args):
        _host, port = server.address
        context = client_context(cafile=str(tls_files.ca), **context_args)
        conn = open_connection(EchoTarget("127.0.0.1", port), context, timeout=5)
        opened.append(conn)
        return conn

    yield _connect

    for conn in opened:
        conn.close()


def _read_line(conn) -> bytes:
    chunks = []
    while True:
        data = conn.recv(1)
        if not data:
            break
        chunks.append(data)
        if data == b"\n":
            break
    return b"".join(chunks)


@pytest.fixture
def read_line() -> Callable[..., bytes]:
    """Read one raw line, terminator included, a byte at a time."""
    return _read_line
