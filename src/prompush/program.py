"""One-shot push program.

Wires validated options into a push operation and runs it under the retry
policy. Nothing here is re-entered: a program is built once and run once.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from urllib.parse import urlsplit

from prompush.config import ConfigError, ProgramOptions, format_duration
from prompush.pusher import PushOperation
from prompush.resilience import NotifyFunc, RetryPolicy
from prompush.snapshot import load_snapshot
from prompush.transport import TLSSettings, Transport, build_transport

logger = logging.getLogger(__name__)


class PushCancelledError(Exception):
    """Raised when the push deadline expires before a terminal outcome."""


def log_retry(error: Exception, delay: float) -> None:
    """Default retry observer: log the upcoming wait."""
    truncated = math.floor(delay * 10) / 10
    logger.warning(f"Retrying failed push in {format_duration(truncated)}: {error}")


def validate_options(options: ProgramOptions) -> str:
    """Check required options without touching the filesystem.

    Returns:
        The gateway URL.

    Raises:
        ConfigError: If an option is missing or invalid.
    """
    if not options.url:
        raise ConfigError("gateway URL is required")
    if not options.job:
        raise ConfigError("job name is required")
    if not options.metrics_file:
        raise ConfigError("metrics file is required")

    try:
        parts = urlsplit(options.url)
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"gateway URL: {e}") from e
    if parts.scheme not in ("http", "https") or not parts.hostname or port == 0:
        raise ConfigError(f"gateway URL: {options.url!r} is not an absolute http(s) URL")

    if options.retries < 0:
        raise ConfigError(f"retries must not be negative, got {options.retries}")
    if options.retry_delay < 0:
        raise ConfigError(f"retry delay must not be negative, got {options.retry_delay}")
    if options.timeout is not None and options.timeout <= 0:
        raise ConfigError(f"timeout must be positive, got {options.timeout}")

    return options.url


@dataclass(frozen=True)
class Program:
    """A ready-to-run push."""

    operation: PushOperation
    transport: Transport
    policy: RetryPolicy
    timeout: float | None = None
    notify: NotifyFunc = log_retry

    @classmethod
    def from_options(cls, options: ProgramOptions) -> Program:
        """Validate options and build everything the push needs.

        Order: validation, TLS setup, snapshot load, push operation. A
        failure at any step means nothing is pushed.

        Raises:
            ConfigError: Missing or invalid options.
            TLSConfigError: Unreadable CA file or bad client key pair.
            SnapshotError: Unreadable or malformed metrics file.
            GroupingKeyError: Snapshot clashes with the grouping key.
        """
        url = validate_options(options)

        transport = build_transport(
            TLSSettings(
                root_ca_file=options.root_ca_file,
                cert_file=options.cert_file,
                key_file=options.key_file,
            )
        )

        snapshot = load_snapshot(options.metrics_file)

        operation = PushOperation.create(
            gateway_url=url,
            job=options.job,
            snapshot=snapshot,
            instance=options.instance,
        )

        return cls(
            operation=operation,
            transport=transport,
            policy=RetryPolicy.exponential(options.retries, options.retry_delay),
            timeout=options.timeout,
        )

    async def run(self) -> None:
        """Push the snapshot, retrying transient failures.

        Raises:
            PushCancelledError: If the deadline expired.
            Exception: The last push error once retries are exhausted.
        """
        deadline = asyncio.timeout(self.timeout)
        try:
            async with deadline:
                async with self.transport.session() as session:
                    await self.policy.execute(
                        lambda: self.operation.push(session),
                        notify=self.notify,
                    )
        except TimeoutError as e:
            if not deadline.expired():
                raise
            raise PushCancelledError(
                f"push cancelled: deadline of {format_duration(self.timeout or 0)} exceeded"
            ) from e

        logger.info(
            f"Pushed {len(self.operation.snapshot)} metric families "
            f"to {self.operation.gateway_url} (job {self.operation.job!r})"
        )
