from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from . import doctor as doctor_module
from . import importer as importer_module
from . import lock as lock_module
from . import sync as sync_module
from .config import (
    MANIFEST_FILENAME,
    ConfigError,
    MpmConfig,
    USER_CONFIG_PATH,
    load_config,
    load_user_config,
    save_user_config,
)
from .errors import PluginManagerError
from .http import HttpClient
from .manifest import load_lockfile
from .sources import SourceRegistry, default_registry
from .versions import ResolvedVersion

app = typer.Typer(help="Minecraft plugin manager (mpm)")
user_config_app = typer.Typer(help="Manage user-level defaults")

app.add_typer(user_config_app, name="config")

_rich_console = Console()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _fail(message: str, code: int = 1) -> None:
    typer.secho(message, err=True, fg="red")
    raise typer.Exit(code=code)


def _load_or_exit(root: Path | None = None) -> MpmConfig:
    try:
        return load_config(root=root)
    except ConfigError as exc:
        _fail(str(exc), code=2)


def _get_config(ctx: typer.Context) -> MpmConfig:
    if ctx.obj is None:
        ctx.obj = {}
    cfg = ctx.obj.get("config")
    if cfg is None:
        cfg = _load_or_exit()
        ctx.obj["config"] = cfg
    return cfg


def _http_client(cfg: MpmConfig) -> HttpClient:
    return HttpClient(user_agent=cfg.user_agent, timeout=cfg.http_timeout)


def _get_registry(ctx: typer.Context) -> SourceRegistry:
    cfg = _get_config(ctx)
    registry = ctx.obj.get("registry")
    if registry is None:
        registry = default_registry(_http_client(cfg), search_timeout=cfg.search_timeout)
        ctx.obj["registry"] = registry
    return registry


def _print_resolved(name: str, resolved: ResolvedVersion) -> None:
    _rich_console.print(f"  [green]✓[/green] {name} [dim]{resolved.version}[/dim]")


def _load_user_config_or_exit():
    try:
        return load_user_config()
    except ConfigError as exc:
        _fail(str(exc), code=2)


@user_config_app.command("show")
def user_config_show():
    """Display the user-level defaults stored under ~/.config."""
    cfg = _load_user_config_or_exit()
    table = Table(title="User config", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Root", str(cfg.root) if cfg.root else "(not set)")
    table.add_row("File", str(USER_CONFIG_PATH))
    _rich_console.print(table)


@user_config_app.command("set-root")
def user_config_set_root(
    path: Path = typer.Argument(..., help=f"Path to your server directory (contains {MANIFEST_FILENAME})"),
):
    resolved = path.expanduser().resolve()
    if not resolved.exists():
        _fail(f"{resolved} does not exist.")
    if not resolved.is_dir():
        _fail(f"{resolved} is not a directory.")
    manifest_file = resolved / MANIFEST_FILENAME
    if not manifest_file.exists():
        typer.secho(
            f"Warning: {manifest_file} does not exist yet. Run 'mpm init' there first.",
            fg="yellow",
        )
    cfg = _load_user_config_or_exit()
    cfg.root = resolved
    save_user_config(cfg)
    typer.secho(f"Default root set to {resolved}", fg="green")
    typer.secho(f"Saved to {USER_CONFIG_PATH}", fg="cyan")


@user_config_app.command("clear-root")
def user_config_clear_root():
    cfg = _load_user_config_or_exit()
    cfg.root = None
    save_user_config(cfg)
    typer.secho("Cleared stored root.", fg="yellow")


@app.callback()
def main(
    ctx: typer.Context,
    root: Path = typer.Option(None, "--root", help="Directory holding plugins.json, plugins.lock and plugins/"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    logging.basicConfig(level=logging.DEBUG if debug else logging.WARNING, format=LOG_FORMAT)
    ctx.obj = ctx.obj or {}
    if root is not None:
        ctx.obj["config"] = _load_or_exit(root=root)


@app.command("init")
def init_command(
    ctx: typer.Context,
    version: str = typer.Argument(None, help="Minecraft version (detected from a Paper JAR if omitted)"),
):
    """Create plugins.json for a server."""
    cfg = _get_config(ctx)
    try:
        outcome = lock_module.init_manifest(cfg, version)
    except PluginManagerError as exc:
        _fail(str(exc), code=2)
    if not outcome.created:
        typer.secho("Manifest detected. Skipping initialization.", fg="bright_black")
        return
    if outcome.detected:
        typer.secho(
            f"Auto-detected Minecraft version {outcome.manifest.minecraft_version} from Paper JAR", fg="cyan"
        )
    typer.secho(
        f"Initialized {cfg.manifest_path.name} with Minecraft version {outcome.manifest.minecraft_version}",
        fg="green",
    )


@app.command("add")
def add_command(
    ctx: typer.Context,
    spec: str = typer.Argument(..., help="Plugin as [source:]id[@version], e.g. modrinth:luckperms@5.4.0"),
    no_update: bool = typer.Option(False, "--no-update", help="Only edit plugins.json, do not re-lock"),
):
    """Add a plugin to the manifest and refresh the lockfile."""
    cfg = _get_config(ctx)
    registry = _get_registry(ctx)
    try:
        with _rich_console.status(f"Resolving {spec}..."):
            outcome = lock_module.add_plugin(cfg, registry, spec, no_update=no_update, on_resolved=_print_resolved)
    except PluginManagerError as exc:
        _fail(str(exc), code=2)
    typer.secho(
        f"Added plugin '{outcome.name}' from source '{outcome.spec.source}' ({outcome.resolved.version})",
        fg="green",
    )
    if outcome.lock is not None:
        typer.secho(f"Locked {len(outcome.lock.lockfile.plugins)} plugin(s)", fg="green")


@app.command("remove")
def remove_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Plugin name as listed in plugins.json"),
    no_update: bool = typer.Option(False, "--no-update", help="Only edit plugins.json, do not re-lock"),
):
    """Remove a plugin from the manifest and refresh the lockfile."""
    cfg = _get_config(ctx)
    registry = _get_registry(ctx)
    try:
        with _rich_console.status("Re-locking..."):
            outcome = lock_module.remove_plugin(
                cfg, registry, name, no_update=no_update, on_resolved=_print_resolved
            )
    except PluginManagerError as exc:
        _fail(str(exc), code=2)
    typer.secho(f"Removed plugin '{name}'", fg="yellow")
    if outcome is not None:
        typer.secho(f"Locked {len(outcome.lockfile.plugins)} plugin(s)", fg="green")


@app.command("lock")
def lock_command(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Resolve without writing; exit 1 if the lockfile would change"),
):
    """Resolve every manifest entry and write plugins.lock."""
    cfg = _get_config(ctx)
    registry = _get_registry(ctx)
    if dry_run:
        typer.secho("[DRY RUN] Previewing lock changes...", fg="cyan")
    try:
        with _rich_console.status("Resolving plugins..."):
            outcome = lock_module.lock(cfg, registry, dry_run=dry_run, on_resolved=_print_resolved)
    except PluginManagerError as exc:
        _fail(str(exc), code=2)

    count = len(outcome.lockfile.plugins)
    if dry_run:
        if outcome.changed:
            typer.secho(f"Would lock {count} plugin(s); lockfile would change", fg="yellow")
            raise typer.Exit(code=1)
        typer.secho(f"Would lock {count} plugin(s); lockfile is up to date", fg="green")
        return
    typer.secho(f"Locked {count} plugin(s)", fg="green")


_SYNC_EVENTS = {
    "skip": ("✓", "green", "already synced"),
    "download": ("→", "cyan", "downloading"),
    "verified": ("✓", "green", "verified"),
    "remove": ("→", "yellow", "removing unmanaged file"),
    "restore": ("!", "red", "restoring from backup"),
}


def _report_sync_event(event: str, subject: str) -> None:
    symbol, colour, label = _SYNC_EVENTS[event]
    _rich_console.print(f"  [{colour}]{symbol}[/{colour}] {subject} [dim]({label})[/dim]")


@app.command("sync")
def sync_command(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report; exit 1 if changes are pending"),
):
    """Make plugins/ match plugins.lock exactly."""
    cfg = _get_config(ctx)
    try:
        lockfile = load_lockfile(cfg.lockfile_path)
        result = sync_module.sync_plugins(
            lockfile,
            cfg.plugins_dir,
            _http_client(cfg),
            dry_run=dry_run,
            reporter=_report_sync_event,
        )
    except PluginManagerError as exc:
        _fail(str(exc), code=2)
    except OSError as exc:
        _fail(f"Sync failed: {exc}", code=2)

    if dry_run:
        if not result.has_changes:
            typer.secho("[DRY RUN] No changes needed", fg="green")
            return
        table = Table(title="[DRY RUN] Pending changes", box=box.MINIMAL_DOUBLE_HEAD)
        table.add_column("Action")
        table.add_column("Plugin / file")
        for name in result.downloaded:
            table.add_row(Text("download", style="cyan"), name)
        for filename in result.removed:
            table.add_row(Text("remove", style="yellow"), filename)
        _rich_console.print(table)
        raise typer.Exit(code=1)

    if not result.has_changes:
        typer.secho(f"All {len(result.skipped)} plugin(s) already in sync", fg="green")
        return
    typer.secho(
        f"Synced {len(lockfile.plugins)} plugin(s): {len(result.downloaded)} downloaded, "
        f"{len(result.removed)} removed",
        fg="green",
    )


_SEVERITY_STYLE = {"error": "bold red", "warning": "yellow"}
_STATUS_STYLE = {"ok": "bold green", "warning": "bold yellow", "error": "bold red"}


def _render_doctor(report: doctor_module.DoctorReport) -> None:
    table = Table(title="Plugin manager health", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Check", style="bold")
    table.add_column("Value")
    manifest_state = "ok" if report.manifest.valid else ("invalid" if report.manifest.present else "missing")
    lockfile_state = "ok" if report.lockfile.valid else ("invalid" if report.lockfile.present else "missing")
    table.add_row("Manifest", f"{manifest_state} ({report.manifest.path})")
    table.add_row("Lockfile", f"{lockfile_state} ({report.lockfile.path})")
    table.add_row("Installed", f"{report.summary.installed}/{report.summary.expected}")
    table.add_row("Unmanaged", str(len(report.plugins.unmanaged)))
    table.add_row("Status", Text(report.status, style=_STATUS_STYLE[report.status]))
    _rich_console.print(table)

    if report.issues:
        issues = Table(title="Issues", box=box.MINIMAL)
        issues.add_column("Severity")
        issues.add_column("Code")
        issues.add_column("Name", style="cyan")
        issues.add_column("Message")
        for issue in report.issues:
            issues.add_row(
                Text(issue.severity.value, style=_SEVERITY_STYLE[issue.severity.value]),
                issue.code.value,
                issue.name,
                issue.message,
            )
        _rich_console.print(issues)


@app.command("doctor")
def doctor_command(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
):
    """Audit manifest, lockfile and plugins/ without changing anything.

    Exit code 0 when healthy, 1 for warnings only, 2 when errors were found.
    """
    cfg = _get_config(ctx)
    report = doctor_module.run_doctor(cfg.manifest_path, cfg.lockfile_path, cfg.plugins_dir)
    if json_output:
        typer.echo(report.model_dump_json(indent=2))
    else:
        _render_doctor(report)
    raise typer.Exit(code=report.exit_code)


@app.command("import")
def import_command(
    ctx: typer.Context,
    version: str = typer.Option(None, "--version", help="Minecraft version (detected from a Paper JAR if omitted)"),
):
    """Build plugins.json and plugins.lock from the jars already in plugins/."""
    cfg = _get_config(ctx)
    registry = _get_registry(ctx)
    try:
        with _rich_console.status("Searching sources for installed plugins..."):
            result = importer_module.import_plugins(cfg, registry, version)
    except PluginManagerError as exc:
        _fail(str(exc), code=2)

    if result.detected_version:
        typer.secho(
            f"Auto-detected Minecraft version {result.manifest.minecraft_version} from Paper JAR", fg="cyan"
        )
    if result.imported:
        table = Table(title="Imported plugins", box=box.MINIMAL_DOUBLE_HEAD)
        table.add_column("Name", style="cyan")
        table.add_column("File")
        table.add_column("Source")
        for name, filename, source in result.imported:
            table.add_row(name, filename, source)
        _rich_console.print(table)
    typer.secho(f"Imported {len(result.imported)} plugin(s)", fg="green")
    if result.skipped:
        typer.secho(f"Skipped {len(result.skipped)} plugin(s) not found in any source:", fg="yellow")
        for name, filename in result.skipped:
            typer.secho(f"  {name} ({filename})", fg="yellow")
