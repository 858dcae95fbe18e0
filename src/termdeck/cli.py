"""
termdeck CLI Entry Point

Provides commands for inspecting layouts and configuration and for launching
the dashboard in static, live or interactive mode.
"""

import asyncio
import json
import logging
import shutil
import sys
from dataclasses import asdict, is_dataclass
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from textual.logging import TextualHandler

from termdeck.config import (
    LOG_LEVELS,
    RENDER_MODES,
    ConfigError,
    ConfigLoader,
    ConfigValidationError,
    TermdeckConfig,
    get_config_value,
    init_default_config,
)
from termdeck.engine import DashboardEngine
from termdeck.layout_manager import LayoutManager
from termdeck.presets import BUILTIN_PRESETS, PRESET_ORDER, recommend_preset
from termdeck.renderers import RenderMode, create_renderer

logger = logging.getLogger(__name__)


def configure_logging(config: TermdeckConfig, level: str | None = None, interactive: bool = False) -> None:
    """Install the log handler: Textual's while the TUI owns the screen, rich otherwise."""
    if level is None:
        level = "DEBUG" if config.debug_logging else config.log_level

    handler: logging.Handler
    if interactive:
        handler = TextualHandler()
    else:
        handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)

    logging.basicConfig(level=level.upper(), format="%(message)s", datefmt="[%X]", handlers=[handler], force=True)


def load_config(config: Path | None, workspace: Path | None) -> TermdeckConfig:
    try:
        return ConfigLoader(user_config_path=config, workspace_path=workspace).load()
    except ConfigValidationError as e:
        click.secho(f"✗ Configuration validation error: {e}", fg="red")
        sys.exit(1)
    except ConfigError as e:
        click.secho(f"✗ Configuration error: {e}", fg="red")
        sys.exit(1)


def terminal_size(width: int | None, height: int | None) -> tuple[int, int]:
    fallback = shutil.get_terminal_size()
    return width or fallback.columns, height or fallback.lines


config_option = click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to config file (defaults to ~/.termdeck/config.yaml)",
)
workspace_option = click.option(
    "--workspace",
    "-w",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Workspace path for override loading",
)


@click.group(invoke_without_command=True)
@click.version_option(version="0.1.0", prog_name="termdeck")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """termdeck - Dynamic Terminal Layout Engine

    Multi-pane terminal dashboard with layout presets, keyboard navigation
    and live updates from project state files.

    Run 'termdeck' to launch the dashboard.
    """
    # If no subcommand provided, launch dashboard
    if ctx.invoked_subcommand is None:
        ctx.invoke(dashboard)


@cli.command()
@click.option("--preset", "-p", type=click.Choice(PRESET_ORDER), help="Layout preset to start with")
@click.option("--mode", "-m", type=click.Choice(sorted(RENDER_MODES)), help="Render mode")
@click.option(
    "--root",
    "-r",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Project root to watch for state changes",
)
@click.option("--log-level", type=click.Choice(sorted(LOG_LEVELS), case_sensitive=False), help="Log level")
@config_option
@workspace_option
def dashboard(
    preset: str | None,
    mode: str | None,
    root: Path,
    log_level: str | None,
    config: Path | None,
    workspace: Path | None,
) -> None:
    """Launch the dashboard.

    A project without the expected state directories still opens; panes
    then only update on manual refresh.
    """
    app_config = load_config(config, workspace)
    render_mode = RenderMode(mode or app_config.dashboard.render_mode)
    configure_logging(app_config, log_level, interactive=render_mode is RenderMode.INTERACTIVE)

    engine = DashboardEngine(app_config, preset=preset)
    renderer = create_renderer(render_mode)

    try:
        asyncio.run(renderer.run(engine, root))
    except KeyboardInterrupt:
        click.echo()
    except Exception as e:
        logger.debug("Dashboard failed", exc_info=True)
        click.secho(f"✗ Dashboard failed: {e}", fg="red")
        sys.exit(1)


@cli.command()
@click.option("--preset", "-p", type=click.Choice(PRESET_ORDER), default="development", show_default=True)
@click.option("--width", type=click.IntRange(min=1), help="Terminal width (defaults to the current terminal)")
@click.option("--height", type=click.IntRange(min=1), help="Terminal height (defaults to the current terminal)")
@click.option("--json", "as_json", is_flag=True, help="Print the layout as JSON")
def layout(preset: str, width: int | None, height: int | None, as_json: bool) -> None:
    """Show the pane rectangles a preset produces.

    If the terminal is too small for the preset, the substituted preset is
    shown instead.
    """
    size = terminal_size(width, height)
    manager = LayoutManager(terminal_size=size, preset=preset)
    geometry = manager.calculate_layout()

    if as_json:
        click.echo(json.dumps(manager.get_layout_info(), indent=2))
        return

    console = Console()
    if manager.preset != preset:
        console.print(
            f"[yellow]Terminal {size[0]}x{size[1]} is too small for {preset} "
            f"(needs {BUILTIN_PRESETS[preset].min_size}), using {manager.preset}[/yellow]"
        )

    table = Table(title=f"{manager.current_preset.title} ({geometry.kind.value}, {size[0]}x{size[1]})")
    for column in ("Pane", "X", "Y", "Width", "Height", "Focused"):
        table.add_column(column, justify="left" if column == "Pane" else "right")
    for rect in geometry.panes:
        table.add_row(rect.id, str(rect.x), str(rect.y), str(rect.width), str(rect.height), "✓" if rect.focused else "")
    console.print(table)


@cli.command()
@click.option("--width", type=click.IntRange(min=1), help="Terminal width (defaults to the current terminal)")
@click.option("--height", type=click.IntRange(min=1), help="Terminal height (defaults to the current terminal)")
def presets(width: int | None, height: int | None) -> None:
    """List layout presets and whether they fit the terminal."""
    size = terminal_size(width, height)
    recommended = recommend_preset(*size)

    table = Table(title=f"Layout presets for {size[0]}x{size[1]}")
    table.add_column("Key")
    table.add_column("Name")
    table.add_column("Title")
    table.add_column("Panes")
    table.add_column("Min size", justify="right")
    table.add_column("Fits")

    for index, name in enumerate(PRESET_ORDER, start=1):
        preset = BUILTIN_PRESETS[name]
        fits = preset.fits(*size)
        table.add_row(
            str(index),
            f"{name} *" if name == recommended else name,
            preset.title,
            ", ".join(preset.panes),
            preset.min_size,
            "[green]✓[/green]" if fits else "[red]✗[/red]",
        )

    console = Console()
    console.print(table)
    console.print("* recommended")


@cli.command()
@config_option
@workspace_option
def validate(config: Path | None, workspace: Path | None) -> None:
    """Validate termdeck configuration.

    Checks that the configuration file is valid YAML and conforms to the schema.
    """
    loaded_config = load_config(config, workspace)
    click.secho("✓ Configuration is valid", fg="green")

    # Display some key settings
    click.echo("\nKey settings:")
    click.echo(f"  Default preset: {loaded_config.dashboard.default_preset}")
    click.echo(f"  Render mode: {loaded_config.dashboard.render_mode}")
    click.echo(f"  Refresh interval: {loaded_config.dashboard.refresh_interval_ms}ms")
    click.echo(f"  Update debounce: {loaded_config.updates.debounce_ms}ms")
    click.echo(f"  Log level: {loaded_config.log_level}")


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Output path for config file (defaults to ~/.termdeck/config.yaml)",
)
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing config file")
def init(output: Path | None, force: bool) -> None:
    """Write a default configuration file."""
    try:
        path = init_default_config(output, force=force)
    except ConfigError as e:
        click.secho(f"✗ {e}", fg="red")
        click.echo("To overwrite it, use:")
        click.echo("  termdeck init --force")
        sys.exit(1)
    click.secho(f"✓ Configuration written to: {path}", fg="green")


@cli.command()
@click.argument("path", type=str)
@config_option
@workspace_option
def get(path: str, config: Path | None, workspace: Path | None) -> None:
    """Get a configuration value by path.

    Examples: termdeck get updates.debounce_ms
    """
    loaded_config = load_config(config, workspace)
    try:
        value = get_config_value(path, loaded_config)
    except ConfigError as e:
        click.secho(f"✗ Error: {e}", fg="red")
        sys.exit(1)

    if is_dataclass(value):
        value = asdict(value)
    if isinstance(value, (dict, list)):
        click.echo(json.dumps(value, indent=2))
    else:
        click.echo(str(value))


def main() -> None:
    """Main entry point for the CLI"""
    cli()


if __name__ == "__main__":
    main()
