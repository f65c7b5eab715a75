"""CLI commands for managing extensions

Usage:
    extensionos extension list [--kind plugin|theme|module]
    extensionos extension install <identifier>
    extensionos extension enable <identifier>
    extensionos extension disable <identifier>
    extensionos extension remove <identifier> [--force] [--no-rollback]
    extensionos extension update [<identifier>] [--migrations-only]
    extensionos extension rollback [<identifier>] [--to <version>]
    extensionos extension refresh [<identifier>]
    extensionos extension freeze <identifier>
    extensionos extension unfreeze <identifier>
"""

import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from extensionos.core.extensions.coordinator import ExtensionCoordinator
from extensionos.core.extensions.exceptions import ExtensionError
from extensionos.core.extensions.models import ExtensionKind, UpdateReport
from extensionos.core.extensions.system import SystemUpdater

console = Console()

KIND_CHOICE = click.Choice([kind.value for kind in ExtensionKind])


def _coordinator(kind: str) -> ExtensionCoordinator:
    return SystemUpdater().coordinator(ExtensionKind(kind))


def _fail(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")
    sys.exit(1)


def _print_report(report: UpdateReport) -> None:
    for code in report.updated:
        console.print(f"[green]✓[/green] {code} updated")
    for code, error in report.failures.items():
        console.print(f"[red]✗[/red] {code}: {error}")
    if not report.updated and not report.failures:
        console.print("[yellow]⚠[/yellow] Nothing to update")


def kind_option(func):
    return click.option(
        "--kind",
        type=KIND_CHOICE,
        default=ExtensionKind.PLUGIN.value,
        show_default=True,
        help="Kind of extension"
    )(func)


@click.group()
def extension():
    """Manage plugins, themes and modules"""
    pass


@extension.command(name="list")
@kind_option
def list_extensions(kind: str):
    """List discovered extensions"""
    try:
        coordinator = _coordinator(kind)
        extensions = coordinator.all()
    except ExtensionError as e:
        _fail(str(e))

    if not extensions:
        console.print(f"[yellow]⚠[/yellow] No {kind}s found")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Identifier", style="cyan", no_wrap=True)
    table.add_column("Version", style="green")
    table.add_column("Enabled", style="yellow")
    table.add_column("Frozen", style="white")

    for ext in extensions:
        record = coordinator.ledger.get_record(ext.identifier)
        table.add_row(
            ext.identifier,
            coordinator.ledger.get_version(ext.identifier),
            "No" if coordinator.is_disabled(ext) else "Yes",
            "Yes" if record and record.is_frozen else "No",
        )
    console.print(table)


@extension.command()
@click.argument("identifier")
@kind_option
def install(identifier: str, kind: str):
    """Install an extension and apply its migrations"""
    try:
        installed = _coordinator(kind).install(identifier)
    except ExtensionError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {kind.capitalize()} {installed.identifier} installed")


@extension.command()
@click.argument("identifier")
@kind_option
def enable(identifier: str, kind: str):
    """Enable an extension"""
    try:
        coordinator = _coordinator(kind)
        result = coordinator.enable(identifier)
    except ExtensionError as e:
        _fail(str(e))
    if result is None:
        _fail(f"Unable to find {kind} {identifier}")
    console.print(f"[green]✓[/green] {identifier}: enabled")
    if coordinator.is_disabled(identifier):
        console.print(f"[yellow]⚠[/yellow] {identifier} is still disabled by another flag")


@extension.command()
@click.argument("identifier")
@kind_option
def disable(identifier: str, kind: str):
    """Disable an extension"""
    try:
        result = _coordinator(kind).disable(identifier)
    except ExtensionError as e:
        _fail(str(e))
    if result is None:
        _fail(f"Unable to find {kind} {identifier}")
    console.print(f"[green]✓[/green] {identifier}: disabled")


@extension.command()
@click.argument("identifier")
@kind_option
@click.option("--force", "-f", is_flag=True, help="Do not ask for confirmation")
@click.option("--no-rollback", is_flag=True, help="Keep database changes and ledger state")
def remove(identifier: str, kind: str, force: bool, no_rollback: bool):
    """Roll back an extension and delete its files"""
    if not force and not click.confirm(f"This will remove the {kind} {identifier}. Continue?"):
        console.print("[yellow]⚠[/yellow] Aborted")
        sys.exit(1)

    try:
        _coordinator(kind).uninstall(identifier, no_rollback=no_rollback)
    except ExtensionError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Removed {kind} {identifier}")


@extension.command()
@click.argument("identifier", required=False)
@kind_option
@click.option("--migrations-only", is_flag=True, help="Only apply pending migrations")
def update(identifier: Optional[str], kind: str, migrations_only: bool):
    """Update one extension, or every active one"""
    try:
        report = _coordinator(kind).update(identifier, migrations_only=migrations_only)
    except ExtensionError as e:
        _fail(str(e))
    _print_report(report)
    if not report.ok:
        sys.exit(1)


@extension.command()
@click.argument("identifier", required=False)
@kind_option
@click.option("--to", "target_version", default=None, help="Version to keep applied")
def rollback(identifier: Optional[str], kind: str, target_version: Optional[str]):
    """Revert migrations of one extension, or of every extension"""
    if target_version and not identifier:
        _fail("--to requires an extension identifier")
    try:
        codes = _coordinator(kind).rollback(identifier, target_version)
    except ExtensionError as e:
        _fail(str(e))
    for code in codes:
        console.print(f"[green]✓[/green] {code} rolled back")


@extension.command()
@click.argument("identifier", required=False)
@kind_option
def refresh(identifier: Optional[str], kind: str):
    """Roll back and reapply migrations"""
    try:
        report = _coordinator(kind).refresh(identifier)
    except ExtensionError as e:
        _fail(str(e))
    _print_report(report)


@extension.command()
@click.argument("identifier")
@kind_option
def freeze(identifier: str, kind: str):
    """Stop remote updates of an extension"""
    try:
        _coordinator(kind).freeze(identifier)
    except ExtensionError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {identifier}: frozen")


@extension.command()
@click.argument("identifier")
@kind_option
def unfreeze(identifier: str, kind: str):
    """Allow remote updates of an extension again"""
    try:
        _coordinator(kind).unfreeze(identifier)
    except ExtensionError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {identifier}: unfrozen")
