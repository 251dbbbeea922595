"""Pushing a snapshot to a Prometheus Pushgateway.

The request line and body come from prometheus_client's push protocol; the
request is sent over the transport's aiohttp session so that it can be
cancelled like any other coroutine.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any

import aiohttp
from prometheus_client.exposition import generate_latest, push_to_gateway
from prometheus_client.openmetrics.exposition import ALLOWUTF8

from prompush.snapshot import Snapshot

logger = logging.getLogger(__name__)

# Pushgateway answers PUT with 200 (older releases) or 202
ACCEPTED_STATUSES = frozenset({200, 202})

_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")

# Text format 1.0.0 with quoted names, understood by Pushgateway 1.10 and later
UTF8_CONTENT_TYPE = "text/plain; version=1.0.0; charset=utf-8; escaping=allow-utf-8"


class PushError(Exception):
    """Raised when a push attempt fails."""

    def __init__(self, message: str, url: str, status: int | None = None):
        super().__init__(message)
        self.url = url
        self.status = status


class GroupingKeyError(ValueError):
    """Raised when the grouping key is invalid or clashes with pushed labels."""


def has_utf8_names(snapshot: Snapshot) -> bool:
    """Whether any metric or label name falls outside the legacy character set."""
    for family in snapshot.gather():
        if not _METRIC_NAME_RE.match(family.name):
            return True
        for sample in family.samples:
            if not _METRIC_NAME_RE.match(sample.name):
                return True
            if any(not _LABEL_NAME_RE.match(name) for name in sample.labels):
                return True
    return False


@dataclass(frozen=True)
class PushRequest:
    """A fully built HTTP request for the Pushgateway."""

    method: str
    url: str
    headers: tuple[tuple[str, str], ...]
    body: bytes


@dataclass(frozen=True)
class PushOperation:
    """Push of a fixed snapshot to one grouping key.

    The grouping key is ``job`` plus the labels in ``grouping`` (for example
    ``instance``).
    """

    gateway_url: str
    job: str
    snapshot: Snapshot
    grouping: tuple[tuple[str, str], ...] = field(default=())

    def __post_init__(self) -> None:
        if not self.job:
            raise GroupingKeyError("job name is required")

        for name, _ in self.grouping:
            if not _LABEL_NAME_RE.match(name) or name.startswith("__"):
                raise GroupingKeyError(f"grouping label has invalid name: {name!r}")

        labels = {"job", *self.grouping_key}
        for family in self.snapshot.gather():
            for sample in family.samples:
                clash = sorted(labels.intersection(sample.labels))
                if clash:
                    raise GroupingKeyError(
                        f"pushed metric {family.name} ({sample.name}{sample.labels}) "
                        f"already contains grouping label {clash[0]}"
                    )

    @classmethod
    def create(
        cls,
        gateway_url: str,
        job: str,
        snapshot: Snapshot,
        instance: str = "",
        **kwargs: Any,
    ) -> PushOperation:
        """Build an operation, adding ``instance`` to the grouping key if set."""
        grouping = (("instance", instance),) if instance else ()
        return cls(
            gateway_url=gateway_url,
            job=job,
            snapshot=snapshot,
            grouping=grouping,
            **kwargs,
        )

    @property
    def grouping_key(self) -> dict[str, str]:
        """Grouping labels besides ``job``."""
        return dict(self.grouping)

    def prepare(self) -> PushRequest:
        """Build the request for the current snapshot.

        Metric and label names outside the legacy character set are sent
        quoted, in text format 1.0.0, instead of being rewritten with
        underscores.

        Returns:
            The request for this push.
        """
        captured: list[PushRequest] = []

        def _capture(
            url: str,
            method: str,
            timeout: float | None,
            headers: list[tuple[str, str]],
            data: bytes,
        ):
            captured.append(
                PushRequest(method=method, url=url, headers=tuple(headers), body=data)
            )
            return lambda: None

        push_to_gateway(
            self.gateway_url,
            job=self.job,
            registry=self.snapshot,
            grouping_key=self.grouping_key,
            timeout=None,
            handler=_capture,
        )
        request = captured[0]

        if has_utf8_names(self.snapshot):
            request = replace(
                request,
                headers=(("Content-Type", UTF8_CONTENT_TYPE),),
                body=generate_latest(self.snapshot, escaping=ALLOWUTF8),
            )
        return request

    async def push(self, session: aiohttp.ClientSession) -> None:
        """Send the snapshot once.

        Args:
            session: Session bound to the transport.

        Raises:
            PushError: If the request fails or the gateway rejects it.
        """
        request = self.prepare()
        logger.debug(f"Pushing {len(self.snapshot)} metric families to {request.url}")

        try:
            async with session.request(
                request.method,
                request.url,
                data=request.body,
                headers=dict(request.headers),
            ) as resp:
                if resp.status in ACCEPTED_STATUSES:
                    return
                body = (await resp.text(errors="replace")).strip()
        except aiohttp.ClientError as e:
            raise PushError(f"pushing to {request.url}: {e}", url=request.url) from e

        raise PushError(
            f"unexpected status code {resp.status} while pushing to {request.url}: {body}",
            url=request.url,
            status=resp.status,
        )

