"""TLS settings for etcd clients and the client configuration built from them."""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field


@dataclass
class TLSConfig:
    """Certificate information, security settings and endpoints for etcd access."""

    cert: str = ""
    key: str = ""
    ca_cert: str = ""
    insecure_transport: bool = False
    skip_verify: bool = False
    endpoints: list[str] = field(default_factory=list)
    username: str = ""
    password: str = ""


@dataclass
class ClientConfig:
    """Settings an etcd client connects with."""

    endpoints: list[str]
    tls: ssl.SSLContext | None = None
    username: str = ""
    password: str = ""


def _load_tls_context(tls_config: TLSConfig) -> ssl.SSLContext:
    if bool(tls_config.cert) != bool(tls_config.key):
        raise ValueError(
            "key file and cert file must both be present "
            f"[key: {tls_config.key}, cert: {tls_config.cert}]"
        )
    context = ssl.create_default_context(
        ssl.Purpose.SERVER_AUTH, cafile=tls_config.ca_cert or None
    )
    if tls_config.cert:
        context.load_cert_chain(tls_config.cert, tls_config.key)
    return context


def build_client_config(tls_config: TLSConfig) -> ClientConfig:
    """Build the client configuration described by ``tls_config``.

    Raises ValueError when only one of cert and key is given, and OSError or
    ssl.SSLError when a certificate file cannot be loaded.
    """
    context: ssl.SSLContext | None = None
    if tls_config.cert or tls_config.key or tls_config.ca_cert:
        context = _load_tls_context(tls_config)

    # A secure connection without given certificates still needs a TLS setup.
    if context is None and not tls_config.insecure_transport:
        context = ssl.create_default_context()

    if tls_config.skip_verify and context is not None:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    username = ""
    password = ""
    if tls_config.username and tls_config.password:
        username = tls_config.username
        password = tls_config.password

    return ClientConfig(
        endpoints=list(tls_config.endpoints),
        tls=context,
        username=username,
        password=password,
    )