"""CLI entry point: spdk-sys.

Subcommands:
    spdk-sys build        # fetch, configure, build, link, bindings
    spdk-sys link         # aggregate already-built archives only
    spdk-sys archives     # list the archives the link stage would use
    spdk-sys bindings     # regenerate bindings from the built include tree
    spdk-sys directives   # print link directives for the host build
    spdk-sys filter       # print the effective declaration filter
"""

from __future__ import annotations

import functools
import json
import sys
from pathlib import Path
from typing import Callable, NoReturn

import click

from spdk_sys.bindings.filter import SPDK_FILTER, DeclarationFilter
from spdk_sys.bindings.generator import DEFAULT_HEADER, BindingGenerator
from spdk_sys.build.archives import ArchiveAggregator
from spdk_sys.build.native import NativeBuilder
from spdk_sys.build.source import SourceProvisioner
from spdk_sys.config import BuildEnvironment
from spdk_sys.exceptions import EnvironmentConfigError, FilterConflictError, StageError
from spdk_sys.links import LinkDirectiveSet, default_link_directives
from spdk_sys.logging.local import LocalLogStore
from spdk_sys.logging.setup import setup_logging
from spdk_sys.pipeline import BuildPipeline

_DIRECTIVE_FORMATS = ("cargo", "json", "none")


def _fail(error: StageError) -> NoReturn:
    """Report a failed stage and exit with the tool's status."""
    click.echo(f"stage '{error.stage}' failed: {error}", err=True)
    if error.diagnostic:
        click.echo(error.diagnostic.rstrip("\n"), err=True)
    rc = error.returncode
    sys.exit(rc if rc and rc > 0 else 1)


def _environment(
    out_dir: str | None,
    jobs: int | None,
    arch: str | None,
    source_dir: str | None,
) -> BuildEnvironment:
    try:
        return BuildEnvironment.from_env(
            out_dir=out_dir, jobs=jobs, target_arch=arch, source_root=source_dir
        )
    except EnvironmentConfigError as e:
        raise click.UsageError(str(e)) from None


def _load_filter(filter_file: str | None) -> DeclarationFilter:
    if filter_file is None:
        return SPDK_FILTER
    try:
        return DeclarationFilter.from_file(filter_file)
    except (FilterConflictError, ValueError) as e:
        raise click.ClickException(f"Invalid filter file {filter_file}: {e}") from None


def _print_directives(directives: LinkDirectiveSet, fmt: str) -> None:
    if fmt == "cargo":
        for line in directives.to_cargo():
            click.echo(line)
    elif fmt == "json":
        click.echo(json.dumps(directives.to_dict(), indent=2))


def environment_options(func: Callable) -> Callable:
    """Options shared by every command that needs a BuildEnvironment."""

    @click.option("--out-dir", default=None, help="Output directory (default: $OUT_DIR)")
    @click.option("-j", "--jobs", type=int, default=None, help="Parallel jobs (default: $NUM_JOBS)")
    @click.option("--arch", default=None, help="Target architecture (default: $CARGO_CFG_TARGET_ARCH)")
    @click.option(
        "--source-dir", default=None, help="SPDK source tree (default: $SPDK_SYS_SOURCE_DIR or ./spdk)"
    )
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


def binding_options(func: Callable) -> Callable:
    @click.option("--header", default=DEFAULT_HEADER, show_default=True, help="Umbrella header")
    @click.option("--filter-file", type=click.Path(exists=True), default=None, help="JSON filter rules")
    @click.option("--cc", "compiler", envvar="CC", default="cc", show_default=True, help="C compiler")
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
def main(verbose: bool) -> None:
    """spdk-sys: build SPDK into one shared library and generate ctypes bindings."""
    setup_logging("DEBUG" if verbose else None)


@main.command("build")
@environment_options
@binding_options
@click.option("--tolerate-fetch-failure", is_flag=True, help="Continue when the source fetch fails")
@click.option("--clean", is_flag=True, help="Run 'make clean' before building")
@click.option(
    "--directives",
    "directive_format",
    type=click.Choice(_DIRECTIVE_FORMATS),
    default="cargo",
    show_default=True,
    help="How to print link directives on success",
)
def build(
    out_dir: str | None,
    jobs: int | None,
    arch: str | None,
    source_dir: str | None,
    header: str,
    filter_file: str | None,
    compiler: str,
    tolerate_fetch_failure: bool,
    clean: bool,
    directive_format: str,
) -> None:
    """Run the whole pipeline: fetch, configure, build, link, bindings."""
    env = _environment(out_dir, jobs, arch, source_dir)
    pipeline = BuildPipeline(
        env,
        provisioner=SourceProvisioner(tolerate_failure=tolerate_fetch_failure),
        builder=NativeBuilder(clean_first=clean),
        aggregator=ArchiveAggregator(linker=compiler),
        generator=BindingGenerator(_load_filter(filter_file), compiler=compiler),
        log_store=LocalLogStore(env.log_dir),
        header=Path(header),
    )
    try:
        artifacts = pipeline.run()
    except StageError as e:
        _fail(e)
    finally:
        summary = pipeline.summary()
        click.echo(
            f"{len(summary['stages'])} stage(s) in {summary['total_duration']}s", err=True
        )

    _print_directives(artifacts.directives, directive_format)


@main.command("link")
@environment_options
@click.option("--cc", "compiler", envvar="CC", default="cc", show_default=True, help="Linker driver")
def link(
    out_dir: str | None,
    jobs: int | None,
    arch: str | None,
    source_dir: str | None,
    compiler: str,
) -> None:
    """Aggregate the already-built archives into the shared library."""
    env = _environment(out_dir, jobs, arch, source_dir)
    pipeline = BuildPipeline(
        env, aggregator=ArchiveAggregator(linker=compiler), log_store=LocalLogStore(env.log_dir)
    )
    try:
        artifacts = pipeline.run(stages=("link",))
    except StageError as e:
        _fail(e)
    click.echo(f"Linked {len(artifacts.archives)} archives into {artifacts.library_path}")


@main.command("archives")
@environment_options
def archives(
    out_dir: str | None,
    jobs: int | None,
    arch: str | None,
    source_dir: str | None,
) -> None:
    """List the archives the link stage would aggregate, in link order."""
    env = _environment(out_dir, jobs, arch, source_dir)
    try:
        found = ArchiveAggregator().discover(env)
    except StageError as e:
        _fail(e)
    for path in found:
        click.echo(str(path))
    for path in found.excluded:
        click.echo(f"excluded: {path}", err=True)


@main.command("bindings")
@environment_options
@binding_options
def bindings(
    out_dir: str | None,
    jobs: int | None,
    arch: str | None,
    source_dir: str | None,
    header: str,
    filter_file: str | None,
    compiler: str,
) -> None:
    """Regenerate the bindings module from the built include tree."""
    env = _environment(out_dir, jobs, arch, source_dir)
    pipeline = BuildPipeline(
        env,
        generator=BindingGenerator(_load_filter(filter_file), compiler=compiler),
        log_store=LocalLogStore(env.log_dir),
        header=Path(header),
    )
    try:
        artifacts = pipeline.run(stages=("bindings",))
    except StageError as e:
        _fail(e)
    click.echo(f"Bindings written to {artifacts.bindings_path}")


@main.command("directives")
@environment_options
@click.option("--header", default=DEFAULT_HEADER, show_default=True, help="Umbrella header")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(_DIRECTIVE_FORMATS[:2]),
    default="cargo",
    show_default=True,
)
def directives(
    out_dir: str | None,
    jobs: int | None,
    arch: str | None,
    source_dir: str | None,
    header: str,
    fmt: str,
) -> None:
    """Print the link directives for the host build."""
    env = _environment(out_dir, jobs, arch, source_dir)
    _print_directives(default_link_directives(env, Path(header)), fmt)


@main.command("filter")
@click.option("--filter-file", type=click.Path(exists=True), default=None, help="JSON filter rules")
def show_filter(filter_file: str | None) -> None:
    """Print the effective declaration filter as JSON."""
    click.echo(json.dumps(_load_filter(filter_file).to_dict(), indent=2))


if __name__ == "__main__":
    main()
