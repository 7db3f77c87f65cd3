"""Command line interface for fslc.

This module provides a command-line interface for translating portable
shader sources into native shader code, packing variant containers and
driving the hot-reload server.
"""

import os
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar, cast

import arrow
import typer
import watchdog.events
import watchdog.observers
from loguru import logger
from watchdog.events import FileSystemEventHandler

from fslc.build.driver import BuildContext, BuildDriver, BuildReport
from fslc.build.packer import enumerate_variants
from fslc.compiler import generate, parse_file
from fslc.compiler.errors import ShaderError
from fslc.compiler.models import NO_FEATURES, feature_names, parse_features
from fslc.config import Config, load_config, parse_platforms
from fslc.reload.client import ReloadClient
from fslc.reload.server import serve

# Define type variables for TypedCallable
F = TypeVar("F", bound=Callable[..., Any])

SOURCE_SUFFIXES = (".fsl", ".h")


# TypedCommand decorator helper
def typed_command(app_command: Any) -> Callable[[F], F]:
    """Wrap typer command with proper typing for mypy."""

    def decorator(func: F) -> F:
        return cast(F, app_command(func))

    return decorator


app = typer.Typer(
    name="fslc",
    help=(
        "Translate portable shader sources into HLSL, GLSL and MSL. "
        "Commands: build, generate, inspect, watch, serve, reload."
    ),
    add_completion=False,
)


def _configure_logging(verbose: bool) -> None:
    """Point loguru at stderr with the requested level."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _load_config(config_file: Path | None, **overrides: Any) -> Config:
    """Load the configuration file and apply command-line overrides."""
    try:
        return load_config(config_file).with_overrides(**overrides)
    except ShaderError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1) from e


def _run_build(config: Config, files: list[str], incremental: bool) -> BuildReport:
    context = BuildContext.create(
        config.build_options(incremental=incremental), compilers=config.compilers
    )
    return BuildDriver(context).build(files)


def _report(report: BuildReport) -> None:
    for failure in report.failures:
        logger.error(failure)
    logger.info(report.summary())


def _add_header_comments(
    code: str, source_file: str, platform: str, features: str
) -> str:
    """Prefix generated code with a provenance comment."""
    timestamp = arrow.utcnow().format("YYYY-MM-DD HH:mm:ss UTC")
    header = f"// Generated by fslc v{__import__('fslc').__version__}\n"
    header += f"// Generation time: {timestamp}\n"
    header += f"// Source file: {os.path.basename(source_file)}\n"
    header += f"// Platform: {platform}\n"
    if features:
        header += f"// Features: {features}\n"
    return header + "\n" + code


@typed_command(app.command("build"))
def build_files(
    files: list[str] = typer.Argument(..., help="Shader source files"),
    platform: list[str] = typer.Option(
        None, "--platform", "-p", help="Target platform (repeatable, or 'all')"
    ),
    out: Path = typer.Option(None, "--out", "-o", help="Generated source directory"),
    bin_dir: Path = typer.Option(None, "--bin", help="Compiled binary directory"),
    reflection: Path = typer.Option(
        None, "--reflection", help="Resource cross-reference directory"
    ),
    include: list[Path] = typer.Option(
        None, "--include", "-I", help="Include search directory (repeatable)"
    ),
    jobs: int = typer.Option(None, "--jobs", "-j", min=1, help="Parallel jobs"),
    incremental: bool = typer.Option(
        False, "--incremental", help="Skip files whose inputs did not change"
    ),
    compile_: bool = typer.Option(
        True, "--compile/--no-compile", help="Run the native compilers"
    ),
    debug: bool = typer.Option(False, "--debug", help="Keep debug information"),
    config_file: Path = typer.Option(None, "--config", "-c", help="Configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Translate and compile shader files for the selected platforms.

    Example: fslc build shaders/basic.fsl --platform VULKAN --out build/shaders
    """
    _configure_logging(verbose)
    config = _load_config(
        config_file,
        platforms=platform or None,
        output_dir=out,
        binary_dir=bin_dir,
        reflection_dir=reflection,
        include_dirs=include or None,
        jobs=jobs,
        compile=None if compile_ else False,
        debug=debug or None,
    )
    try:
        report = _run_build(config, files, incremental)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, stopping...")
        raise typer.Exit(130) from None
    _report(report)
    if not report.ok:
        raise typer.Exit(report.exit_code)


@typed_command(app.command("generate"))
def generate_code(
    shader_file: str = typer.Argument(..., help="Shader source file"),
    output: Path = typer.Argument(None, help="Output file (stdout when omitted)"),
    platform: str = typer.Option(..., "--platform", "-p", help="Target platform"),
    variant: str = typer.Option(
        "", "--variant", help="Comma-separated feature flags, e.g. FT_PRIM_ID,FT_VRS"
    ),
    binary_name: str = typer.Option(
        "", "--binary", "-b", help="Only generate this binary"
    ),
    include: list[Path] = typer.Option(
        None, "--include", "-I", help="Include search directory (repeatable)"
    ),
    commented: bool = typer.Option(
        False, "--commented", help="Prefix the code with a provenance comment"
    ),
    config_file: Path = typer.Option(None, "--config", "-c", help="Configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Print the generated code of every binary in a file for one platform.

    Example: fslc generate shaders/basic.fsl --platform DIRECT3D12
    """
    _configure_logging(verbose)
    config = _load_config(config_file, include_dirs=include or None)
    try:
        platforms = parse_platforms(platform)
        if len(platforms) != 1:
            raise ShaderError("generate needs exactly one platform")
        target_platform = platforms[0]
        requested = parse_features(variant.split(",")) if variant else NO_FEATURES
    except (ShaderError, ValueError) as e:
        logger.error(str(e))
        raise typer.Exit(1) from e

    try:
        module = parse_file(shader_file, config.include_dirs)
        binaries = [
            b for b in module.binaries if not binary_name or b.output_name == binary_name
        ]
        if not binaries:
            wanted = f"binary named '{binary_name}'" if binary_name else "binary"
            raise ShaderError(f"no {wanted} in {shader_file}")

        sections = []
        for binary in binaries:
            features = binary.features | requested
            generated = generate(
                module,
                binary,
                target_platform,
                features,
                root_signatures=config.root_signatures,
            )
            code = generated.source
            if commented:
                code = _add_header_comments(
                    code,
                    shader_file,
                    target_platform.name,
                    ", ".join(feature_names(features)),
                )
            sections.append(code)
    except ShaderError as e:
        logger.error(f"Generation error: {e}")
        raise typer.Exit(1) from e

    code = "\n".join(sections)
    if output is None:
        typer.echo(code, nl=False)
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(code, encoding="utf-8")
        logger.info(f"Wrote {output}")


@typed_command(app.command("inspect"))
def inspect_container(
    container: Path = typer.Argument(..., help="Variant container (.fslv)"),
) -> None:
    """List the variant directory of a container."""
    try:
        entries = enumerate_variants(container.read_bytes())
    except OSError as e:
        logger.error(f"Cannot read {container}: {e}")
        raise typer.Exit(1) from e
    except ShaderError as e:
        logger.error(f"Invalid container {container}: {e}")
        raise typer.Exit(1) from e

    typer.echo(f"{container.name}: {len(entries)} variants")
    for platform, features, size in entries:
        names = ", ".join(feature_names(features)) or "-"
        typer.echo(f"  {platform.name:<15} {names:<40} {size:>10} bytes")


class ShaderChangeHandler(FileSystemEventHandler):  # type: ignore
    """Event handler flagging shader source changes."""

    def __init__(self, suffixes: tuple[str, ...] = SOURCE_SUFFIXES):
        self.suffixes = suffixes
        self.needs_rebuild = False

    def on_modified(self, event: watchdog.events.FileSystemEvent) -> None:
        """Handle file modified event.

        Args:
            event: File system event
        """
        path = str(event.src_path)
        if not event.is_directory and path.endswith(self.suffixes):
            logger.info(f"Detected changes in {path}")
            self.needs_rebuild = True

    on_created = on_modified


@typed_command(app.command("watch"))
def watch_files(
    files: list[str] = typer.Argument(..., help="Shader source files"),
    platform: list[str] = typer.Option(
        None, "--platform", "-p", help="Target platform (repeatable, or 'all')"
    ),
    include: list[Path] = typer.Option(
        None, "--include", "-I", help="Include search directory (repeatable)"
    ),
    config_file: Path = typer.Option(None, "--config", "-c", help="Configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Rebuild shader files whenever they or their includes change.

    Example: fslc watch shaders/*.fsl --platform VULKAN
    """
    _configure_logging(verbose)
    config = _load_config(
        config_file, platforms=platform or None, include_dirs=include or None
    )

    handler = ShaderChangeHandler()
    observer = watchdog.observers.Observer()
    directories = {os.path.dirname(os.path.abspath(f)) for f in files}
    directories.update(os.path.abspath(d) for d in config.include_dirs)
    for directory in sorted(directories):
        if os.path.isdir(directory):
            observer.schedule(handler, path=directory, recursive=False)
    observer.start()

    try:
        _report(_run_build(config, files, incremental=True))
        logger.info("Watching for changes (press Ctrl+C to stop)...")
        while True:
            time.sleep(0.2)
            if handler.needs_rebuild:
                handler.needs_rebuild = False
                _report(_run_build(config, files, incremental=True))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, stopping...")
    finally:
        observer.stop()
        observer.join()


@typed_command(app.command("serve"))
def serve_reload(
    host: str = typer.Option(None, "--host", help="Address to listen on"),
    port: int = typer.Option(None, "--port", help="Port to listen on"),
    config_file: Path = typer.Option(None, "--config", "-c", help="Configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Run the hot-reload server for the configured projects."""
    _configure_logging(verbose)
    config = _load_config(config_file)
    address = (host or config.reload.host, port or config.reload.port)
    try:
        serve(config, address)
    except OSError as e:
        logger.error(f"Cannot listen on {address[0]}:{address[1]}: {e}")
        raise typer.Exit(1) from e


@typed_command(app.command("reload"))
def reload_project(
    project: str = typer.Argument(..., help="Project id from the server configuration"),
    paths: list[str] = typer.Argument(None, help="Files to rebuild (default: all)"),
    host: str = typer.Option(None, "--host", help="Reload server address"),
    port: int = typer.Option(None, "--port", help="Reload server port"),
    config_file: Path = typer.Option(None, "--config", "-c", help="Configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Ask a running reload server to rebuild files of a project."""
    _configure_logging(verbose)
    config = _load_config(config_file)
    client = ReloadClient(host or config.reload.host, port or config.reload.port)
    try:
        binaries = client.reload(project, paths or [])
    except ShaderError as e:
        logger.error(str(e))
        raise typer.Exit(1) from e

    for name, data in sorted(binaries.items()):
        typer.echo(f"{name}: {len(data)} bytes")


if __name__ == "__main__":
    app()
