"""Command line entry point: ``raft-bench``."""

import asyncio
import contextlib
import functools
import json
import logging
import sys
from typing import Dict, Optional, Tuple

import click

from ..core.config import BenchConfig, load_properties, parse_property
from ..core.errors import RaftBenchError
from ..core.rpc import RaftKVClient
from ..core.runner import BenchmarkRunner
from ..core.stats import RunReport, StatsCollector
from ..core.types import ReadMode


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # grpc's own loggers are noisy at debug level
    logging.getLogger("grpc").setLevel(logging.WARNING)


def build_config(config_file: Optional[str], properties_file: Optional[str],
                 props: Tuple[str, ...], overrides: Dict,
                 defaults: Optional[Dict] = None) -> BenchConfig:
    """Command defaults, then JSON config, then properties file, then ``-p``, then flags.

    Flags left unset (``None``, or ``False`` for on/off switches) do not
    override anything set earlier.
    """
    if config_file:
        config = BenchConfig.from_file(config_file, defaults)
    else:
        config = BenchConfig.from_dict(defaults or {})
    merged: Dict[str, str] = {}
    if properties_file:
        merged.update(load_properties(properties_file))
    for text in props:
        merged.update(parse_property(text))
    config.apply_properties(merged)
    for name, value in overrides.items():
        if value is None or value is False:
            continue
        setattr(config, name, value)
    config.__post_init__()
    return config


def common_options(f):
    """Options shared by every benchmark command."""
    options = [
        click.option("--endpoints", help="Comma separated raft node addresses"),
        click.option("--parallel", type=int, help="Number of concurrent workers"),
        click.option("--binding", type=click.Choice(["stream", "unary"]), help="Put path"),
        click.option("--dial-timeout", type=float, help="Seconds to wait for each connection"),
        click.option("--max-exec", "max_execution_time", type=float,
                     help="Stop the run after this many seconds (0 = no limit)"),
        click.option("--reset-cache-hits", is_flag=True,
                     help="Reset the server cache-hit counter before the run"),
        click.option("--seed", type=int, help="Random seed for keys and values"),
        click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False),
                     help="JSON config file"),
        click.option("-P", "properties_file", type=click.Path(exists=True, dir_okay=False),
                     help="Properties file with key=value lines"),
        click.option("-p", "props", multiple=True, help="Property override, key=value"),
        click.option("--output", "-o", type=click.Path(dir_okay=False),
                     help="Write the run report as JSON"),
        click.option("--verbose", "-v", is_flag=True, help="Debug logging"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def print_report(report: RunReport, output: Optional[str]) -> None:
    click.echo("")
    for line in report.summary_lines():
        click.echo(line)
    if output:
        report.save(output)
        click.echo(f"Report saved to {output}")


def handle_errors(f):
    """Turn benchmark failures into a message on stderr and exit status 1."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except RaftBenchError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    return wrapper


# ----------------------------------------------------------------------
# CLI Commands
# ----------------------------------------------------------------------
@click.group()
def cli():
    """Open-loop load generator for a raft-replicated key-value service."""
    pass


# ---------- put --------------------------------------------------------
@cli.command("put")
@common_options
@click.option("--total", "total_ops", type=int, help="Total number of puts")
@click.option("--key-size", type=int, help="Key size in bytes")
@click.option("--val-size", "value_size", type=int, help="Value size in bytes")
@click.option("--key-space-size", "key_space", type=int,
              help="Number of distinct keys (1 = single-key contention)")
@click.option("--progress/--no-progress", default=True, help="Show a progress bar")
@handle_errors
def put_cmd(config_file, properties_file, props, output, verbose, progress, **overrides):
    """Fire puts over per-worker streams without waiting for replies."""
    setup_logging(verbose)
    config = build_config(config_file, properties_file, props, overrides)
    runner = BenchmarkRunner(config)

    click.echo(f"Putting {config.total_ops} keys ({config.key_size}B key, "
               f"{config.value_size}B value, key space {config.key_space}) "
               f"with {config.parallel} {config.binding} workers → {', '.join(config.endpoints)}")

    if progress:
        bar_cm = click.progressbar(length=config.total_ops, label="Submitted")
    else:
        bar_cm = contextlib.nullcontext()
    with bar_cm as bar:
        report = asyncio.run(runner.run_put(progress=bar.update if bar is not None else None))
    print_report(report, output)


def trace_options(f):
    options = [
        click.option("--trace", "trace_file", type=click.Path(exists=True, dir_okay=False),
                     help="Twemcache trace file (.csv, .gz or .zst)"),
        click.option("--max-records", "trace_max_records", type=int,
                     help="Load at most this many records (0 = all)"),
        click.option("--read-mode", type=click.Choice([m.value for m in ReadMode]),
                     help="How get/gets records are replayed"),
        click.option("--write-value-size", type=int,
                     help="Value size for reads replayed as writes"),
        click.option("--loop", "loop_replay", is_flag=True,
                     help="Restart the trace from the beginning when exhausted"),
        click.option("--ops", "total_ops", type=int,
                     help="Stop after this many claimed records (0 = whole trace)"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


# ---------- trace-load -------------------------------------------------
@cli.command("trace-load")
@common_options
@trace_options
@handle_errors
def trace_load_cmd(config_file, properties_file, props, output, verbose, **overrides):
    """Insert every unique key of a trace once before replaying it."""
    setup_logging(verbose)
    config = build_config(config_file, properties_file, props, overrides)
    runner = BenchmarkRunner(config)
    report = asyncio.run(runner.run_trace_load())
    print_report(report, output)


# ---------- trace-run --------------------------------------------------
@cli.command("trace-run")
@common_options
@trace_options
@handle_errors
def trace_run_cmd(config_file, properties_file, props, output, verbose, **overrides):
    """Replay a twemcache trace against the cluster."""
    setup_logging(verbose)
    # without a count a trace run replays the whole trace once
    config = build_config(config_file, properties_file, props, overrides,
                          defaults={"total_ops": 0})
    runner = BenchmarkRunner(config)
    report = asyncio.run(runner.run_trace())
    print_report(report, output)


# ---------- cache-hits -------------------------------------------------
@cli.command("cache-hits")
@click.option("--addr", default="localhost:12380", help="Raft node address")
@click.option("--dial-timeout", type=float, default=2.0)
@click.option("--reset", is_flag=True, help="Reset the counter before reading it")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@handle_errors
def cache_hits_cmd(addr, dial_timeout, reset, as_json):
    """Print the server's cache-hit counter."""
    setup_logging(False)

    async def fetch():
        stats = StatsCollector()
        hits = await stats.snapshot(addr, "now", RaftKVClient.dial, dial_timeout, reset=reset)
        return hits, stats.errors

    hits, errors = asyncio.run(fetch())
    if errors:
        for err in errors:
            click.echo(f"Error: {err}", err=True)
        sys.exit(1)
    if as_json:
        click.echo(json.dumps({"address": addr, "cache_hits": hits}))
    else:
        click.echo(f"Cache hits: {hits}")


def main():
    cli()


if __name__ == "__main__":
    main()
