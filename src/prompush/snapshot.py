"""Metrics snapshot loading.

A snapshot is read and parsed once. After that it is plain data: gathering it
returns the same families every time and cannot fail.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from prometheus_client.metrics_core import Metric
from prometheus_client.parser import text_string_to_metric_families

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    """Raised when a metrics file cannot be read or parsed."""


@dataclass(frozen=True)
class Snapshot:
    """Immutable collection of metric families, sorted by name.

    Implements the prometheus_client collector protocol through ``collect()``,
    so the snapshot can be handed to the push client as its registry.
    """

    families: tuple[Metric, ...] = ()
    source: str | None = None

    def gather(self) -> tuple[Metric, ...]:
        """Return every metric family in the snapshot."""
        return self.families

    def collect(self) -> Iterator[Metric]:
        return iter(self.families)

    @property
    def names(self) -> list[str]:
        return [family.name for family in self.families]

    def __len__(self) -> int:
        return len(self.families)


def parse_snapshot(text: str, source: str | None = None) -> Snapshot:
    """Parse text exposition format into a snapshot.

    Families with the same name are merged; the parser reports each untyped
    sample line as its own family.

    Args:
        text: Metrics in Prometheus text exposition format.
        source: Where the text came from, kept for diagnostics.

    Returns:
        Snapshot with one family per distinct metric name.

    Raises:
        SnapshotError: If the text is malformed.
    """
    merged: dict[str, Metric] = {}

    try:
        for family in text_string_to_metric_families(text):
            existing = merged.get(family.name)
            if existing is None:
                merged[family.name] = family
                continue

            if existing.type != family.type:
                raise SnapshotError(
                    f"parsing: metric family {family.name!r} has conflicting "
                    f"types {existing.type!r} and {family.type!r}"
                )
            existing.samples.extend(family.samples)
            if not existing.documentation:
                existing.documentation = family.documentation
    except (ValueError, IndexError) as e:
        raise SnapshotError(f"parsing: {str(e) or 'malformed input'}") from e

    families = []
    for name in sorted(merged):
        family = merged[name]
        family.samples = tuple(family.samples)  # type: ignore[assignment]
        families.append(family)

    return Snapshot(families=tuple(families), source=source)


def load_snapshot(path: str | Path) -> Snapshot:
    """Read and parse a metrics file.

    An empty file gives an empty snapshot.

    Args:
        path: Path to a file in text exposition format (UTF-8).

    Returns:
        Parsed snapshot.

    Raises:
        SnapshotError: If the file cannot be read, is not UTF-8 or is malformed.
    """
    try:
        content = Path(path).read_bytes()
    except OSError as e:
        raise SnapshotError(f"metrics from {str(path)!r}: {e}") from e

    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError as e:
        raise SnapshotError(f"metrics from {str(path)!r}: parsing: invalid UTF-8: {e}") from e

    try:
        snapshot = parse_snapshot(text, source=str(path))
    except SnapshotError as e:
        raise SnapshotError(f"metrics from {str(path)!r}: {e}") from e

    logger.debug(f"Loaded {len(snapshot)} metric families from {path}")
    return snapshot
