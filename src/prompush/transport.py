"""TLS transport for talking to the Pushgateway.

Builds one ``ssl.SSLContext`` from optional CA, certificate and key files and
hands out aiohttp sessions that use it.
"""

from __future__ import annotations

import logging
import re
import ssl
from dataclasses import dataclass
from pathlib import Path

import aiohttp

logger = logging.getLogger(__name__)

MINIMUM_TLS_VERSION = ssl.TLSVersion.TLSv1_2

# Connect timeout of the dialer; requests themselves have no deadline
DEFAULT_CONNECT_TIMEOUT = 30.0

_PEM_CERTIFICATE_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----\r?\n.+?-----END CERTIFICATE-----",
    re.DOTALL,
)


class TLSConfigError(Exception):
    """Raised when TLS material cannot be loaded."""


@dataclass(frozen=True)
class TLSSettings:
    """Paths to TLS material. Empty strings mean "not set"."""

    root_ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""

    @property
    def has_client_identity(self) -> bool:
        return bool(self.cert_file or self.key_file)


def load_root_certificates(context: ssl.SSLContext, path: str | Path) -> int:
    """Add PEM certificates from a file to the context's trust store.

    Blocks that fail to load are skipped. If nothing loads, a warning is
    logged and the trust store stays empty.

    Args:
        context: Context to add trust anchors to.
        path: PEM file with one or more certificates.

    Returns:
        Number of certificates loaded.

    Raises:
        TLSConfigError: If the file cannot be read.
    """
    try:
        content = Path(path).read_bytes()
    except OSError as e:
        raise TLSConfigError(f"CA certificate file: {e}") from e

    loaded = 0
    for block in _PEM_CERTIFICATE_RE.findall(content):
        try:
            context.load_verify_locations(cadata=block.decode("ascii"))
        except (ssl.SSLError, UnicodeDecodeError) as e:
            logger.debug(f"Skipping unparseable certificate in {path}: {e}")
            continue
        loaded += 1

    if loaded == 0:
        logger.warning(f"Failed to parse CA certificates read from {str(path)!r}.")

    return loaded


def _refuse_passphrase() -> bytes:
    raise TLSConfigError("client key is encrypted")


def build_ssl_context(settings: TLSSettings) -> ssl.SSLContext:
    """Create the client TLS context.

    Without a root CA file the platform trust store is used. With one, its
    certificates replace the platform trust store.

    Args:
        settings: Paths to TLS material.

    Returns:
        Configured client context.

    Raises:
        TLSConfigError: If the CA file is unreadable or the client
            certificate and key cannot be loaded as a pair.
    """
    if settings.root_ca_file:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        load_root_certificates(context, settings.root_ca_file)
    else:
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)

    context.minimum_version = MINIMUM_TLS_VERSION

    if settings.has_client_identity:
        cert_file, key_file = settings.cert_file, settings.key_file
        try:
            if not cert_file or not key_file:
                raise TLSConfigError("certificate and key must be given together")
            context.load_cert_chain(cert_file, key_file, password=_refuse_passphrase)
        except (OSError, TLSConfigError) as e:
            raise TLSConfigError(
                f"loading client certificate {cert_file!r}, key {key_file!r}: {e}"
            ) from e

    return context


@dataclass(frozen=True)
class Transport:
    """HTTP transport bound to a fixed TLS context."""

    ssl_context: ssl.SSLContext
    connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT

    def session(self) -> aiohttp.ClientSession:
        """Open a client session. Must be called with a running event loop."""
        connector = aiohttp.TCPConnector(ssl=self.ssl_context)
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout)
        return aiohttp.ClientSession(connector=connector, timeout=timeout)


def build_transport(settings: TLSSettings) -> Transport:
    """Build a transport from TLS settings."""
    return Transport(ssl_context=build_ssl_context(settings))
