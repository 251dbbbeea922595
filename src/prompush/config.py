"""Prompush configuration.

Options come from ``PROMPUSH_*`` environment variables first; command-line
flags (see ``prompush.cli``) override them when given.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

ENV_PREFIX = "PROMPUSH_"

DEFAULT_RETRIES = 2
DEFAULT_RETRY_DELAY = 10.0  # seconds

# Maps ProgramOptions fields to environment variable names (without prefix)
ENV_NAMES: dict[str, str] = {
    "url": "URL",
    "root_ca_file": "CACERT_FILE",
    "cert_file": "CERT_FILE",
    "key_file": "KEY_FILE",
    "retries": "RETRIES",
    "retry_delay": "RETRY_DELAY",
    "job": "JOB_NAME",
    "instance": "INSTANCE_NAME",
    "metrics_file": "METRICS_FILE",
    "timeout": "TIMEOUT",
}

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class ConfigError(ValueError):
    """Raised when options are missing or malformed."""


@dataclass(frozen=True)
class ProgramOptions:
    """Resolved program options.

    Durations are in seconds. Empty strings mean "not set".
    """

    url: str = ""

    root_ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""

    retries: int = DEFAULT_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY

    job: str = ""
    instance: str = ""
    metrics_file: str = ""

    timeout: float | None = None  # Overall deadline, None for no deadline

    def to_default_map(self) -> dict[str, Any]:
        """Return the options as a click ``default_map``."""
        return {k: v for k, v in asdict(self).items() if v is not None}


def parse_duration(text: str) -> float:
    """Parse a Go-style duration such as ``10s``, ``1m30s`` or ``250ms``.

    A bare number is taken as seconds.

    Args:
        text: Duration string.

    Returns:
        Duration in seconds.

    Raises:
        ValueError: If the string is not a valid, non-negative duration.
    """
    value = text.strip()
    if not value:
        raise ValueError("empty duration")

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if seconds < 0 or not math.isfinite(seconds):
            raise ValueError(f"invalid duration {text!r}")
        return seconds

    if value.startswith("+"):
        value = value[1:]

    pos = 0
    seconds = 0.0
    for match in _DURATION_RE.finditer(value):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(value):
        raise ValueError(f"invalid duration {text!r}")

    return seconds


def format_duration(seconds: float) -> str:
    """Format seconds the way Go prints a ``time.Duration``.

    >>> format_duration(90.5)
    '1m30.5s'
    """
    if seconds == 0:
        return "0s"
    if seconds < 1:
        return f"{_trim(seconds * 1000)}ms"

    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)

    out = ""
    if hours:
        out += f"{int(hours)}h"
    if hours or minutes:
        out += f"{int(minutes)}m"
    return f"{out}{_trim(secs)}s"


def _trim(value: float) -> str:
    """Render a float without trailing zeros."""
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def options_from_environ(environ: Mapping[str, str]) -> ProgramOptions:
    """Build options from ``PROMPUSH_*`` environment variables.

    Unset or empty variables keep their defaults.

    Args:
        environ: Environment mapping, usually ``os.environ``.

    Returns:
        ProgramOptions seeded from the environment.

    Raises:
        ConfigError: If a variable holds a malformed value.
    """
    values: dict[str, Any] = {}

    for field_name, env_name in ENV_NAMES.items():
        key = ENV_PREFIX + env_name
        raw = environ.get(key, "")
        if not raw:
            continue

        try:
            if field_name == "retries":
                values[field_name] = _parse_retries(raw)
            elif field_name in ("retry_delay", "timeout"):
                values[field_name] = parse_duration(raw)
            else:
                values[field_name] = raw
        except ValueError as e:
            raise ConfigError(f"{key}: {e}") from e

    return ProgramOptions(**values)


def _parse_retries(raw: str) -> int:
    try:
        retries = int(raw.strip())
    except ValueError:
        raise ValueError(f"invalid retry count {raw!r}") from None
    if retries < 0:
        raise ValueError(f"retry count must not be negative, got {retries}")
    return retries
