"""
Oatwalk CLI
============

Click-based command-line interface for the Oatwalk OAT image navigator.
Accepts raw OAT blobs and the ELF containers (``.oat``, ``.odex``) the
Android Runtime loads them from.

Usage::

    oatwalk info boot.oat
    oatwalk dex base.odex
    oatwalk method base.odex -c Lcom/example/Main; -m onCreate -s "(Landroid/os/Bundle;)V"
    oatwalk --json method boot.oat -c Ljava/lang/Object; -m hashCode -s "()I"
    oatwalk --base-address 0x70000000 --isa thumb2 info blob.oat

Exit codes:
    0    success (method found)
    1    invalid image, load error or decode failure
    2    dex file, class or method not found
    130  interrupted

References:
    - Click Documentation. https://click.palletsprojects.com/
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Optional

import click

from shared.config import ArtScopeConfig
from shared.console import ArtScopeConsole
from shared.logger import ArtScopeLogger

from oatwalk import __version__
from oatwalk.core.engine import OatwalkEngine
from oatwalk.core.errors import OatLoadError
from oatwalk.core.models import ImageReport, InstructionSet, LookupStatus
from oatwalk.output.console import OatwalkConsoleOutput


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_NOT_FOUND = 2
EXIT_INTERRUPTED = 130

_ISA_CHOICES = ["auto", "thumb"] + [isa.value for isa in InstructionSet]


# ===================================================================== #
#  Helpers
# ===================================================================== #

def _run_async(coro):
    """Run an async coroutine from synchronous Click handlers."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    else:
        return asyncio.run(coro)


def _parse_address(
    ctx: click.Context, param: click.Parameter, value: Optional[str]
) -> Optional[int]:
    """Accept decimal, ``0x`` hex or ``0o`` octal addresses."""
    if value is None:
        return None
    try:
        address = int(value, 0)
    except ValueError:
        raise click.BadParameter(f"{value!r} is not an integer address") from None
    if address < 0:
        raise click.BadParameter("address must not be negative")
    return address


def _run_engine(ctx: click.Context, coro):
    """Await *coro*, mapping load errors and interrupts to exit codes."""
    console: ArtScopeConsole = ctx.obj["console"]
    try:
        with console.status("Reading OAT image..."):
            return _run_async(coro)
    except KeyboardInterrupt:
        console.warning("Interrupted by user.")
        ctx.exit(EXIT_INTERRUPTED)
    except OatLoadError as exc:
        console.error(str(exc))
        ctx.exit(EXIT_FAILURE)


def _report_exit_code(report: ImageReport) -> int:
    if not report.header.valid or report.walk_error:
        return EXIT_FAILURE
    return EXIT_OK


# ===================================================================== #
#  CLI Group
# ===================================================================== #

@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to ArtScope configuration file (TOML).",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging.",
)
@click.option(
    "--json", "json_output",
    is_flag=True,
    default=False,
    help="Print results as JSON to stdout.",
)
@click.option(
    "--base-address",
    callback=_parse_address,
    default=None,
    help="Absolute address of the image start (default: 0, or oatdata for ELF).",
)
@click.option(
    "--isa",
    type=click.Choice(_ISA_CHOICES, case_sensitive=False),
    default=None,
    help="Instruction set override for code-pointer decoding.",
)
@click.version_option(__version__, prog_name="oatwalk")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[str],
    verbose: bool,
    json_output: bool,
    base_address: Optional[int],
    isa: Optional[str],
) -> None:
    """ArtScope Oatwalk -- Android Runtime OAT image navigator.

    Walk the dex files embedded in an OAT image and resolve methods to
    their ahead-of-time compiled code.
    """
    ctx.ensure_object(dict)

    config = ArtScopeConfig.load(config_path)
    if base_address is not None:
        config.oatwalk.base_address = base_address
    if isa is not None:
        config.oatwalk.instruction_set = isa
    if config.oatwalk.output_format == "json":
        json_output = True

    settings = config.global_settings
    log_level = "DEBUG" if verbose or settings.debug else settings.log_level
    logger = ArtScopeLogger(
        "oatwalk.cli",
        log_level=log_level,
        log_file=settings.log_file or None,
        json_logs=settings.log_json,
    )

    console = ArtScopeConsole(quiet=json_output)
    ctx.obj["config"] = config
    ctx.obj["json"] = json_output
    ctx.obj["console"] = console
    try:
        ctx.obj["engine"] = OatwalkEngine(config=config, logger=logger)
    except ValueError as exc:
        console.error(str(exc))
        ctx.exit(EXIT_FAILURE)
    ctx.obj["display"] = OatwalkConsoleOutput(console)

    if not json_output:
        console.banner("Oatwalk", version=__version__)


# ===================================================================== #
#  Subcommands
# ===================================================================== #

@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def info(ctx: click.Context, path: str) -> None:
    """Show the header, key-value store and dex files of an OAT image."""
    engine: OatwalkEngine = ctx.obj["engine"]
    display: OatwalkConsoleOutput = ctx.obj["display"]

    report: ImageReport = _run_engine(ctx, engine.inspect(path))

    if ctx.obj["json"]:
        click.echo(report.model_dump_json(indent=2))
    else:
        display.display(report)
    ctx.exit(_report_exit_code(report))


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def dex(ctx: click.Context, path: str) -> None:
    """List the dex-file records of an OAT image."""
    engine: OatwalkEngine = ctx.obj["engine"]
    display: OatwalkConsoleOutput = ctx.obj["display"]

    report: ImageReport = _run_engine(ctx, engine.inspect(path))

    if ctx.obj["json"]:
        click.echo(json.dumps(
            [d.model_dump(mode="json") for d in report.dex_files], indent=2
        ))
    else:
        display.display_dex_files(report.dex_files, report.header.dex_file_count)
        display.display_walk_error(report)
    ctx.exit(_report_exit_code(report))


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--class", "-c", "descriptor",
    required=True,
    help="Class descriptor, e.g. Ljava/lang/String;",
)
@click.option("--method", "-m", "name", required=True, help="Method name.")
@click.option(
    "--signature", "-s",
    required=True,
    help="Method signature, e.g. (I)V",
)
@click.option(
    "--dex", "dex_location",
    default=None,
    help="Only search the dex file with this exact location.",
)
@click.pass_context
def method(
    ctx: click.Context,
    path: str,
    descriptor: str,
    name: str,
    signature: str,
    dex_location: Optional[str],
) -> None:
    """Resolve a method to its compiled code."""
    engine: OatwalkEngine = ctx.obj["engine"]
    display: OatwalkConsoleOutput = ctx.obj["display"]

    lookup = _run_engine(
        ctx, engine.lookup(path, descriptor, name, signature, dex_location)
    )

    if ctx.obj["json"]:
        click.echo(lookup.model_dump_json(indent=2))
    else:
        display.display_method_lookup(lookup)

    if lookup.status is LookupStatus.FOUND:
        ctx.exit(EXIT_OK)
    if lookup.status is LookupStatus.NOT_FOUND:
        ctx.exit(EXIT_NOT_FOUND)
    ctx.exit(EXIT_FAILURE)


# ===================================================================== #
#  Entry Point
# ===================================================================== #

def main() -> None:
    """Main entry point for the Oatwalk CLI."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
