"""CLI entry points for Mirra.

Commands:
    mirra init     Create .mirra/Mirra.toml and the node key pair
    mirra run      Serve and sync the configured modules until interrupted
    mirra share    Add a served module
    mirra sync     Add a module synced from a remote root
    mirra ls       List the files of a module
    mirra status   Show every module with its sync state
    mirra key      Print this node's public key
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

import mirra
from mirra.config import ConfigManager, MirraConfig, ModuleSection
from mirra.errors import MirraError
from mirra.identity import KNOWN_PEERS_FILE, IdentityManager, TrustStore
from mirra.logging import setup_logging
from mirra.registry import DEFAULT_PORT, ModuleRegistry, ModuleRole, PeerEndpoint
from mirra.store import ContentStore

console = Console()
app = typer.Typer(
    name="mirra",
    help="Peer-to-peer mirroring of directory trees.",
    no_args_is_help=True,
)

_SIZE_UNITS = ["KiB", "MiB", "GiB", "TiB", "PiB"]


def format_size(size: int) -> str:
    """Human-readable byte count, e.g. ``1.50KiB``."""
    if size < 1024:
        return f"{size}B"
    value = float(size)
    for unit in _SIZE_UNITS:
        value /= 1024
        if value < 1024 or unit == _SIZE_UNITS[-1]:
            return f"{value:.2f}{unit}"
    return f"{size}B"


def _manager(directory: Path | None) -> ConfigManager:
    return ConfigManager(directory)


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/red] {error}")
    raise typer.Exit(code=1)


def _dir_option():
    return typer.Option(None, "--dir", "-C", help="Directory holding .mirra (default: cwd)")


# ------------------------------------------------------------------
# mirra version
# ------------------------------------------------------------------


@app.command()
def version() -> None:
    """Print the Mirra version."""
    console.print(f"mirra {mirra.__version__}")


# ------------------------------------------------------------------
# mirra init
# ------------------------------------------------------------------


@app.command()
def init(
    name: str = typer.Option(None, "--name", "-n", help="Display name of this mirra"),
    port: int = typer.Option(None, "--port", "-p", help="Listen port"),
    directory: Path = _dir_option(),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config"),
) -> None:
    """Create the configuration and key pair of a new mirra."""
    manager = _manager(directory)
    if manager.exists() and not force:
        console.print(f"[yellow]Config already exists at {manager.get_config_path()}[/yellow]")
        raise typer.Exit(code=1)

    if name is None:
        name = typer.prompt("mirra name?")
    if port is None:
        port = typer.prompt("mirra port?", default=DEFAULT_PORT, type=int)

    try:
        config = manager.load() if manager.exists() else MirraConfig()
        config.node.name = name
        config.node.port = port
        manager.save(config)
        identity = IdentityManager(manager.data_dir, name).generate()
    except MirraError as e:
        _fail(e)

    console.print(f"[green]Initialized mirra '{name}' on port {port}[/green]")
    console.print(f"  Config: {manager.get_config_path()}")
    console.print(f"  Key id: {identity.key_id}")


# ------------------------------------------------------------------
# mirra run
# ------------------------------------------------------------------


@app.command()
def run(
    directory: Path = _dir_option(),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Serve and sync the configured modules until interrupted."""
    from mirra.runtime import MirraRuntime

    manager = _manager(directory)
    try:
        config = manager.load()
        setup_logging(
            log_file=manager.get_log_path(),
            level=config.logging.level,
            log_to_file=config.logging.log_to_file,
            console_level="DEBUG" if verbose else config.logging.console_level,
        )
        runtime = MirraRuntime(manager, config)
        console.print(
            f"[bold cyan]mirra {config.node.name}[/bold cyan] listening on port "
            f"{config.node.port} with {len(config.modules)} modules"
        )
        asyncio.run(runtime.run_forever())
    except MirraError as e:
        _fail(e)


# ------------------------------------------------------------------
# mirra share / mirra sync
# ------------------------------------------------------------------


@app.command()
def share(
    module: str = typer.Argument(..., help="Module name"),
    path: Path = typer.Argument(..., help="Directory to serve"),
    directory: Path = _dir_option(),
) -> None:
    """Serve a local directory as a module."""
    manager = _manager(directory)
    try:
        manager.add_module(module, ModuleSection(path=str(path)))
    except MirraError as e:
        _fail(e)
    console.print(f"[green]Sharing {path} as module '{module}'[/green]")


@app.command()
def sync(
    address: str = typer.Argument(..., help="Root address, host[:port]"),
    module: str = typer.Argument(..., help="Module name on the root"),
    path: str = typer.Option(None, "--path", help="Local directory (default: module name)"),
    key: str = typer.Option(None, "--key", help="Expected public key of the root"),
    reshare: bool = typer.Option(False, "--reshare", help="Serve the copy to other nodes"),
    once: bool = typer.Option(False, "--once", help="Run one full sync now and exit"),
    directory: Path = _dir_option(),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Replicate a module from a remote root."""
    manager = _manager(directory)
    try:
        endpoint = PeerEndpoint.parse(address, public_key=key)
        config = manager.add_module(
            module,
            ModuleSection(
                path=path,
                host=endpoint.host,
                port=endpoint.port,
                public_key=key,
                reshare=reshare,
            ),
        )
    except MirraError as e:
        _fail(e)
    console.print(f"[green]Syncing '{module}' from {endpoint.endpoint_id}[/green]")

    if once:
        setup_logging(
            log_file=manager.get_log_path(),
            log_to_file=config.logging.log_to_file,
            console_level="DEBUG" if verbose else "WARNING",
        )
        try:
            report = asyncio.run(_sync_once(manager, module))
        except MirraError as e:
            _fail(e)
        console.print(
            f"  fetched {len(report.fetched)}, copied {len(report.copied)}, "
            f"deleted {len(report.deleted)}, unchanged {report.unchanged} "
            f"in {report.duration_ms}ms"
        )
        for failed_path, reason in sorted(report.failed.items()):
            console.print(f"  [red]failed[/red] {failed_path}: {reason}")
        if report.failed:
            raise typer.Exit(code=1)


async def _sync_once(manager: ConfigManager, name: str):
    from mirra.sync.client import LinkPool, NodeSession

    config = manager.load()
    section = config.modules[name]
    module = manager.to_module(name, section)
    identity = IdentityManager(manager.data_dir, config.node.name).generate()
    trust = TrustStore(manager.data_dir / KNOWN_PEERS_FILE)
    registry = ModuleRegistry([module], state_file=manager.get_state_path())
    pool = LinkPool(
        identity,
        trust,
        handshake_timeout=config.sync.handshake_timeout,
        request_timeout=config.sync.request_timeout,
    )
    session = NodeSession(module, registry, ContentStore(name, module.path), pool)
    try:
        return await session.sync_once()
    finally:
        await pool.close()


# ------------------------------------------------------------------
# mirra ls
# ------------------------------------------------------------------


@app.command()
def ls(
    module: str = typer.Argument(..., help="Module name"),
    directory: Path = _dir_option(),
) -> None:
    """List the files of a module with their sizes."""
    manager = _manager(directory)
    try:
        config = manager.load()
        section = config.modules.get(module)
        if section is None:
            _fail(MirraError(f"module {module!r} is not configured"))
        target = manager.to_module(module, section)
    except MirraError as e:
        _fail(e)

    index = ContentStore(module, target.path).current_index()
    table = Table(title=f"{module} ({target.role.value})", border_style="cyan")
    table.add_column("Path", style="bold")
    table.add_column("Size", justify="right")
    table.add_column("Fingerprint", style="dim")
    for entry in index.entries:
        table.add_row(entry.path, format_size(entry.size), entry.fingerprint[:12])
    console.print(table)
    console.print(f"{len(index)} files, {format_size(index.total_size)}")


# ------------------------------------------------------------------
# mirra status
# ------------------------------------------------------------------


@app.command()
def status(directory: Path = _dir_option()) -> None:
    """Show every configured module with its last known sync state."""
    manager = _manager(directory)
    try:
        config = manager.load()
        modules = manager.to_modules(config)
    except MirraError as e:
        _fail(e)

    table = Table(title=f"mirra {config.node.name}", border_style="cyan")
    table.add_column("Module", style="bold")
    table.add_column("Role")
    table.add_column("Path", style="dim")
    table.add_column("Root")
    table.add_column("State")
    table.add_column("Seq", justify="right")
    table.add_column("Last synced", style="dim")
    table.add_column("Error", style="red")

    # Served paths are checked when a registry is built; report them instead
    registry = ModuleRegistry(
        [m for m in modules if m.role == ModuleRole.SYNCED], state_file=manager.get_state_path()
    )
    for module in modules:
        if module.role == ModuleRole.SERVED:
            present = module.path.is_dir()
            state = "[green]served[/green]" if present else "[red]missing[/red]"
            table.add_row(module.name, "served", str(module.path), "", state, "", "", "")
            continue

        entry = registry.status(module.name)
        assert module.peer is not None
        role = "synced+reshare" if module.reshare else "synced"
        synced_at = entry.last_synced.strftime("%Y-%m-%d %H:%M:%S") if entry.last_synced else ""
        table.add_row(
            module.name,
            role,
            str(module.path),
            module.peer.endpoint_id,
            "[red]error[/red]" if entry.last_error else "[green]ok[/green]",
            str(entry.last_sequence),
            synced_at,
            entry.last_error or "",
        )
    console.print(table)


# ------------------------------------------------------------------
# mirra key
# ------------------------------------------------------------------


@app.command()
def key(directory: Path = _dir_option()) -> None:
    """Print this node's public key and the pinned root keys."""
    manager = _manager(directory)
    try:
        identity = IdentityManager(manager.data_dir).generate()
    except MirraError as e:
        _fail(e)
    console.print(identity.public_key_b64)
    console.print(f"[dim]key id {identity.key_id}[/dim]")

    trust = TrustStore(manager.data_dir / KNOWN_PEERS_FILE)
    pins = trust.pins()
    if pins:
        table = Table(title="Pinned roots", border_style="cyan")
        table.add_column("Endpoint", style="bold")
        table.add_column("Public key")
        for endpoint, public_key in sorted(pins.items()):
            table.add_row(endpoint, public_key)
        console.print(table)


if __name__ == "__main__":
    app()
