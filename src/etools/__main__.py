"""CLI entry point: plugin lifecycle commands with Rich output."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .core.config import load_config
from .core.errors import EtoolsError
from .core.logging import setup_logging
from .core.utils import human_size
from .plugins import BulkOperation, PluginLifecycleManager, PluginPage
from .plugins.models import BulkOperationStatus, PluginHealthStatus

console = Console()

_HEALTH_STYLE = {
    PluginHealthStatus.HEALTHY: "green",
    PluginHealthStatus.WARNING: "yellow",
    PluginHealthStatus.ERROR: "red",
    PluginHealthStatus.UNKNOWN: "dim",
}


# ── Rendering ───────────────────────────────────────────────────────


def _print_page(page: PluginPage) -> None:
    if not page.plugins:
        console.print("no plugins found", style="dim")
        return
    table = Table(box=None, pad_edge=False)
    table.add_column("id", style="bold")
    table.add_column("name")
    table.add_column("version")
    table.add_column("category", style="dim")
    table.add_column("")
    for p in page.plugins:
        if p.update_available:
            state = f"[yellow]update {p.installed_version} -> {p.latest_version}[/yellow]"
        elif p.installed:
            state = "[green]installed[/green]"
        else:
            state = ""
        table.add_row(p.id, p.name, p.version, p.category, state)
    console.print(table)
    more = f", page {page.page}" + (" (more available)" if page.has_more else "")
    console.print(f"{page.total} total{more}", style="dim")


def _print_bulk(op: BulkOperation) -> None:
    table = Table(box=None, pad_edge=False)
    table.add_column("plugin", style="bold")
    table.add_column("result")
    for r in op.results:
        table.add_row(r.plugin_id, "[green]ok[/green]" if r.success else f"[red]{r.error}[/red]")
    console.print(table)
    style = {
        BulkOperationStatus.COMPLETED: "green",
        BulkOperationStatus.PARTIAL_FAILURE: "yellow",
    }.get(op.status, "red")
    console.print(f"{op.operation_type.value}: [{style}]{op.status.value}[/{style}]")


def _run_single_or_bulk(ids: tuple[str, ...], single, bulk, verb: str) -> None:
    if len(ids) == 1:
        single(ids[0])
        console.print(f"{verb} [bold]{ids[0]}[/bold]")
        return
    op = bulk(list(ids))
    _print_bulk(op)
    if op.status != BulkOperationStatus.COMPLETED:
        sys.exit(1)


# ── Commands ────────────────────────────────────────────────────────


@click.group()
@click.option("--data-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def cli(ctx: click.Context, data_dir: Path | None, verbose: bool):
    """Manage etools plugins."""
    config = load_config(data_dir=data_dir, verbose=verbose)
    setup_logging(config.log_level)
    ctx.obj = PluginLifecycleManager(config)


@cli.command("list")
@click.pass_obj
def list_cmd(manager: PluginLifecycleManager):
    """List installed plugins."""
    plugins = manager.list_plugins()
    if not plugins:
        console.print("no plugins installed", style="dim")
        console.print("use `etools install` to add one", style="dim")
        return
    for p in plugins:
        status = "[green]on[/green]" if p.enabled else "[dim]off[/dim]"
        health = _HEALTH_STYLE[p.health.status]
        console.print(
            f"  [bold]{p.id}[/bold]  v{p.version}  {status}"
            f"  [{health}]{p.health.status.value}[/{health}]"
            f"  [dim]{p.description}[/dim]"
        )


@cli.command()
@click.argument("query")
@click.option("--category", default=None)
@click.option("--page", default=1, show_default=True)
@click.option("--page-size", default=20, show_default=True)
@click.pass_obj
def search(manager: PluginLifecycleManager, query: str, category, page: int, page_size: int):
    """Search the marketplace."""
    _print_page(manager.marketplace_search(query, category, page, page_size))


@cli.command()
@click.option("--category", default=None)
@click.option("--page", default=1, show_default=True)
@click.option("--page-size", default=20, show_default=True)
@click.pass_obj
def browse(manager: PluginLifecycleManager, category, page: int, page_size: int):
    """Browse all marketplace plugins."""
    _print_page(manager.marketplace_list(category, page, page_size))


@cli.command()
@click.argument("name")
@click.pass_obj
def install(manager: PluginLifecycleManager, name: str):
    """Install a plugin from the registry."""
    p = manager.install_plugin(name)
    console.print(f"installed [bold]{p.name}[/bold] v{p.version}")


@cli.command("install-file")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--enable", is_flag=True, help="Enable the plugin after installing")
@click.pass_obj
def install_file(manager: PluginLifecycleManager, path: Path, enable: bool):
    """Install a plugin from a local package file."""
    p = manager.install_from_package(path, auto_enable=enable)
    state = "enabled" if p.enabled else "disabled"
    console.print(f"installed [bold]{p.name}[/bold] v{p.version} from {path} ({state})")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def validate(manager: PluginLifecycleManager, path: Path):
    """Validate a package file without installing it."""
    result = manager.validate_package(path)
    for issue in result.errors:
        console.print(f"  [red]error:[/red] {issue.message}")
    for issue in result.warnings:
        console.print(f"  [yellow]warning:[/yellow] {issue.message}")
    if not result.is_valid:
        sys.exit(1)
    m = result.manifest
    console.print(
        f"[green]package is valid[/green]  [bold]{m.name}[/bold] v{m.version}"
        f"  [dim]{human_size(path.stat().st_size)}[/dim]"
    )


@cli.command()
@click.argument("ids", nargs=-1, required=True)
@click.pass_obj
def uninstall(manager: PluginLifecycleManager, ids: tuple[str, ...]):
    """Uninstall one or more plugins."""
    _run_single_or_bulk(ids, manager.uninstall_plugin, manager.bulk_uninstall, "uninstalled")


@cli.command()
@click.argument("ids", nargs=-1, required=True)
@click.pass_obj
def enable(manager: PluginLifecycleManager, ids: tuple[str, ...]):
    """Enable one or more plugins."""
    _run_single_or_bulk(ids, manager.enable_plugin, manager.bulk_enable, "enabled")


@cli.command()
@click.argument("ids", nargs=-1, required=True)
@click.pass_obj
def disable(manager: PluginLifecycleManager, ids: tuple[str, ...]):
    """Disable one or more plugins."""
    _run_single_or_bulk(ids, manager.disable_plugin, manager.bulk_disable, "disabled")


@cli.command()
@click.argument("ids", nargs=-1, required=True)
@click.pass_obj
def update(manager: PluginLifecycleManager, ids: tuple[str, ...]):
    """Update one or more plugins to the latest version."""
    _run_single_or_bulk(ids, manager.update_plugin, manager.bulk_update, "updated")


@cli.command()
@click.argument("plugin_id")
@click.pass_obj
def health(manager: PluginLifecycleManager, plugin_id: str):
    """Run a health check for a plugin."""
    h = manager.check_plugin_health(plugin_id)
    style = _HEALTH_STYLE[h.status]
    console.print(f"[bold]{plugin_id}[/bold]  [{style}]{h.status.value}[/{style}]  {h.message or ''}")
    for e in h.errors:
        console.print(f"  [red]{e.code}[/red] {e.message}")


@cli.command("check-updates")
@click.pass_obj
def check_updates(manager: PluginLifecycleManager):
    """Compare installed plugins against the registry."""
    updates = manager.check_updates()
    if not updates:
        console.print("all plugins are up to date", style="dim")
        return
    for u in updates:
        console.print(f"  [bold]{u.package_name}[/bold]  {u.current_version} -> {u.latest_version}")


def main():
    try:
        cli(standalone_mode=False)
    except click.exceptions.Abort:
        console.print("\ninterrupted", style="dim")
        sys.exit(130)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except EtoolsError as e:
        console.print(f"error: {e}", style="bold")
        sys.exit(1)


if __name__ == "__main__":
    main()
