"""Prompush command line interface.

Pushes a metrics file in Prometheus text exposition format to a Pushgateway.

Usage:
    prompush --gateway https://pushgateway.example.com:9091 \\
        --job backup --instance server01 --metrics /var/lib/backup/metrics.prom

Every flag falls back to a PROMPUSH_* environment variable:
    --gateway      PROMPUSH_URL
    --cacert       PROMPUSH_CACERT_FILE
    --cert         PROMPUSH_CERT_FILE
    --key          PROMPUSH_KEY_FILE
    --retries      PROMPUSH_RETRIES        (default 2)
    --retry_delay  PROMPUSH_RETRY_DELAY    (default 10s)
    --job          PROMPUSH_JOB_NAME
    --instance     PROMPUSH_INSTANCE_NAME
    --metrics      PROMPUSH_METRICS_FILE
    --timeout      PROMPUSH_TIMEOUT
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Mapping, Sequence
from typing import Any, NoReturn

import click

from prompush.config import ConfigError, ProgramOptions, options_from_environ, parse_duration
from prompush.program import Program

VERSION = "0.1.0"


# =============================================================================
# Parameter Types
# =============================================================================


class DurationType(click.ParamType):
    """Go-style duration (``10s``, ``1m30s``), converted to seconds."""

    name = "duration"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> float:
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return parse_duration(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


DURATION = DurationType()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y/%m/%d %H:%M:%S",
        stream=sys.stderr,
    )


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _options_from_params(params: Mapping[str, Any]) -> ProgramOptions:
    # Options without a flag or default_map entry arrive as None
    return ProgramOptions(**{k: v for k, v in params.items() if v is not None})


# =============================================================================
# Command
# =============================================================================


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--gateway", "url",
    help="Pushgateway URL (e.g. https://pushgateway.example.com:9091). Defaults to $PROMPUSH_URL.",
)
@click.option(
    "--cacert", "root_ca_file",
    help="Path to CA certificate file for server verification. Defaults to $PROMPUSH_CACERT_FILE.",
)
@click.option(
    "--cert", "cert_file",
    help="Path to client certificate file. Defaults to $PROMPUSH_CERT_FILE.",
)
@click.option(
    "--key", "key_file",
    help="Path to client private key file. Defaults to $PROMPUSH_KEY_FILE.",
)
@click.option(
    "--retries",
    type=click.IntRange(min=0),
    help="Number of retries for transient failures. Defaults to $PROMPUSH_RETRIES.",
)
@click.option(
    "--retry_delay", "--retry-delay", "retry_delay",
    type=DURATION,
    help="Initial delay between push retries. Defaults to $PROMPUSH_RETRY_DELAY.",
)
@click.option(
    "--job",
    help="Job label for the metrics. Defaults to $PROMPUSH_JOB_NAME.",
)
@click.option(
    "--instance",
    help="Instance label (e.g. server01). Defaults to $PROMPUSH_INSTANCE_NAME.",
)
@click.option(
    "--metrics", "metrics_file",
    help="Path to the file containing metrics in Prometheus text exposition format. "
    "Defaults to $PROMPUSH_METRICS_FILE.",
)
@click.option(
    "--timeout",
    type=DURATION,
    help="Give up on the push after this long, retries included. Defaults to $PROMPUSH_TIMEOUT.",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output",
)
@click.version_option(version=VERSION, prog_name="prompush")
def cli(verbose: bool, **params: Any) -> None:
    """Push a metrics snapshot to a Prometheus Pushgateway."""
    _configure_logging(verbose)

    options = _options_from_params(params)

    try:
        program = Program.from_options(options)
        asyncio.run(program.run())
    except KeyboardInterrupt:
        _fail("push cancelled")
    except Exception as e:
        _fail(str(e))


# =============================================================================
# Entry Points
# =============================================================================


def resolve_options(
    args: Sequence[str],
    environ: Mapping[str, str] | None = None,
) -> ProgramOptions:
    """Resolve options from the environment and command-line arguments.

    Flags win over environment variables, which win over built-in defaults.

    Args:
        args: Command-line arguments, without the program name.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        Resolved (not yet validated) options.

    Raises:
        ConfigError: If an environment variable is malformed.
        click.UsageError: If a flag is malformed.
    """
    defaults = options_from_environ(os.environ if environ is None else environ)

    ctx = cli.make_context("prompush", list(args), default_map=defaults.to_default_map())
    with ctx:
        params = dict(ctx.params)

    params.pop("verbose", None)
    return _options_from_params(params)


def main(args: Sequence[str] | None = None) -> None:
    """Console script entry point."""
    try:
        defaults = options_from_environ(os.environ)
    except ConfigError as e:
        _fail(str(e))

    cli.main(
        args=list(args) if args is not None else None,
        prog_name="prompush",
        default_map=defaults.to_default_map(),
    )
