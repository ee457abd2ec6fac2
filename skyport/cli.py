"""skyport command-line interface.

Every subcommand returns a process exit code; errors raised as
:class:`~skyport.errors.SkyportError` are reported with the step and the
responsible party, and exit with the error's category code.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path, PurePosixPath

from rich.console import Console
from rich.markup import escape

from skyport import __version__
from skyport.config import ConfigManager
from skyport.deploy import DeploymentOrchestrator, DeploySettings, DeployStep, open_control
from skyport.discovery import DiscoveryEngine
from skyport.errors import PathResolutionError, SkyportError
from skyport.game_paths import (
    ROM_PREFIX,
    SD_PREFIX,
    canonical_title_id,
    get_plugin_path,
    get_plugins_path,
    resolve_install_path,
)
from skyport.listener import relay_logs, restart_in_background, send_restart
from skyport.manifest import Manifest, load_manifest
from skyport.remote import RemoteFileOps
from skyport.utils.path_helpers import validate_remote_path

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)


def _configure_logging(verbosity: int) -> None:
    """Set up root logging to stderr; ``-v`` for INFO, ``-vv`` for DEBUG."""
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _manifest(args: argparse.Namespace) -> Manifest:
    """Load the manifest with its title id in canonical form."""
    manifest = load_manifest(args.manifest_dir, title_id=args.title_id)
    manifest.title_id = canonical_title_id(manifest.title_id)
    return manifest


def _connect(args: argparse.Namespace, config: ConfigManager, announce: bool = False) -> RemoteFileOps:
    ip = config.resolve_ip(args.ip)
    settings = DeploySettings.from_config(config)
    if announce:
        console.print(f"Connecting to ip '{ip}'...")
    control = open_control(ip, settings)
    if announce:
        console.print("[green]Connected![/green]")
    return RemoteFileOps(
        control,
        await_transfer_complete=settings.await_transfer_complete,
        post_write_delay=settings.post_write_delay,
    )


def _step_printer(ip: str):
    messages = {
        DeployStep.CONNECT: f"Connecting to ip '{ip}'...",
        DeployStep.ENSURE_BASE_DIRS: "[green]Connected![/green]\nEnsuring directory exists...",
        DeployStep.ENSURE_RUNTIME: "Checking skyline runtime...",
        DeployStep.ENSURE_MANIFEST_DESCRIPTOR: "Checking main.npdm...",
        DeployStep.ENSURE_DEPENDENCIES: "Checking plugin dependencies...",
        DeployStep.UPLOAD: "Transferring file...",
    }

    def _print(step: DeployStep) -> None:
        message = messages.get(step)
        if message:
            console.print(message)

    return _print


def _warn(message: str) -> None:
    err_console.print(f"[bold yellow]WARNING[/bold yellow]: {escape(message)}")


def _remote_file(name: str | None, args: argparse.Namespace) -> str:
    """Resolve an ``rm`` target: absolute, prefixed, or plugin-relative."""
    if name is not None and name.startswith("/"):
        if not validate_remote_path(name):
            raise PathResolutionError(f"Unsafe remote path {name!r}")
        return name

    manifest = _manifest(args)
    if name is None:
        name = manifest.default_filename
        if name is None:
            raise PathResolutionError("No filename given and no Cargo package to derive one from")

    if name.startswith((SD_PREFIX, ROM_PREFIX)):
        leaf = PurePosixPath(name).name
        location = resolve_install_path(
            manifest.title_id,
            default_filename=leaf,
            user_path=name,
            extension=leaf,
        )
        return location.path

    path = get_plugin_path(manifest.title_id, name)
    if not validate_remote_path(path):
        raise PathResolutionError(f"Unsafe remote path {name!r}")
    return path


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _install(args: argparse.Namespace, config: ConfigManager) -> tuple[str, Manifest]:
    ip = config.resolve_ip(args.ip)
    manifest = _manifest(args)
    orchestrator = DeploymentOrchestrator(
        host=ip,
        manifest=manifest,
        artifact_path=args.artifact,
        install_path=args.install_path,
        filename=args.filename,
        settings=DeploySettings.from_config(config),
        on_step=_step_printer(ip),
        on_warning=_warn,
    )
    result = orchestrator.run()
    for path in result.installed:
        console.print(f"Installed [cyan]{path}[/cyan]")
    console.print(f"[green]Installed to[/green] {result.install_path}")
    return ip, manifest


def cmd_install(args: argparse.Namespace, config: ConfigManager) -> int:
    _install(args, config)
    return 0


def cmd_run(args: argparse.Namespace, config: ConfigManager) -> int:
    ip, manifest = _install(args, config)
    if args.restart:
        restart_in_background(ip, manifest.title_id, port=int(config.get("restart_port")))
    console.print("-" * 63)
    relay_logs(ip, port=int(config.get("logger_port")))
    return 0


def cmd_listen(args: argparse.Namespace, config: ConfigManager) -> int:
    ip = config.resolve_ip(args.ip)
    console.print("-" * 63)
    relay_logs(ip, port=int(config.get("logger_port")))
    return 0


def cmd_restart(args: argparse.Namespace, config: ConfigManager) -> int:
    ip = config.resolve_ip(args.ip)
    manifest = _manifest(args)
    send_restart(ip, manifest.title_id, port=int(config.get("restart_port")))
    console.print(f"Restart signal sent for {manifest.title_id}")
    return 0


def cmd_list(args: argparse.Namespace, config: ConfigManager) -> int:
    directory = args.path
    if directory is None:
        directory = get_plugins_path(_manifest(args).title_id)
    ops = _connect(args, config)
    try:
        console.print(ops.list(directory), markup=False, end="")
    finally:
        ops.control.close()
    return 0


def cmd_rm(args: argparse.Namespace, config: ConfigManager) -> int:
    path = _remote_file(args.filename, args)
    ops = _connect(args, config)
    try:
        ops.remove(path)
    finally:
        ops.control.close()
    console.print(f"Removed {path}")
    return 0


def cmd_cp(args: argparse.Namespace, config: ConfigManager) -> int:
    src = Path(args.src)
    dest: str = args.dest
    if not dest.startswith((SD_PREFIX, ROM_PREFIX)):
        raise PathResolutionError(
            f"Destination {dest!r} must start with 'sd:/' or 'rom:/'"
        )
    title_id = _manifest(args).title_id if dest.startswith(ROM_PREFIX) else ""
    # Without a suffix, a destination ending in the source name is a file path.
    location = resolve_install_path(
        title_id,
        default_filename=src.name,
        user_path=dest,
        extension=src.suffix or src.name,
    )
    try:
        data = src.read_bytes()
    except OSError as exc:
        raise PathResolutionError(f"Cannot read {src}: {exc}") from exc

    ops = _connect(args, config, announce=True)
    try:
        for directory in location.directories():
            ops.ensure_dir(directory)
        console.print(f"Transferring file to {location.path}...")
        ops.put(location.path, data)
    finally:
        ops.control.close()
    return 0


def cmd_set_ip(args: argparse.Namespace, config: ConfigManager) -> int:
    ip = config.set_ip(args.addr)
    console.print(f"Stored IP address {ip}")
    return 0


def cmd_show_ip(args: argparse.Namespace, config: ConfigManager) -> int:
    console.print(config.resolve_ip(None))
    return 0


def cmd_discover(args: argparse.Namespace, config: ConfigManager) -> int:
    engine = DiscoveryEngine(
        port=int(config.get("scan_port")),
        on_error=lambda message: err_console.print(f"[red]{escape(message)}[/red]"),
    )
    with console.status("Scanning local network..."):
        devices = engine.scan(args.subnet)
    if not devices:
        console.print("No consoles found.")
        return 1
    for device in sorted(devices, key=lambda d: d.response_ms):
        console.print(
            f"[green]{device.ip}[/green]  {device.hostname}  "
            f"{device.response_ms:.1f} ms  {escape(device.greeting)}"
        )
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_target_args(parser: argparse.ArgumentParser, title: bool = True) -> None:
    parser.add_argument("-i", "--ip", help="Console IP address (overrides stored/$SWITCH_IP)")
    if title:
        parser.add_argument(
            "-t", "--title-id",
            help="Title ID of the game, overrides Cargo.toml [package.metadata.skyline]",
        )
        parser.add_argument(
            "--manifest-dir",
            help="Directory holding the plugin's Cargo.toml (default: current directory)",
        )


def _add_install_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("artifact", help="Path to the built plugin (.nro)")
    _add_target_args(parser)
    parser.add_argument(
        "--install-path",
        help="Destination as 'sd:/abs/path' or 'rom:/romfs/relative/path'",
    )
    parser.add_argument("--filename", help="Install under this file name")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="skyport",
        description="Install skyline plugins to a console over FTP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  skyport set-ip 192.168.1.20
  skyport install target/aarch64-skyline-switch/release/libplugin.nro
  skyport run libplugin.nro --restart
  skyport install libplugin.nro --install-path rom:/custom/dir
  skyport list
  skyport cp config.toml sd:/config/plugin/
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    parser.add_argument("--config-dir", type=Path, help=argparse.SUPPRESS)

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    p = subparsers.add_parser("install", help="Install a built plugin to the console")
    _add_install_args(p)
    p.set_defaults(func=cmd_install)

    p = subparsers.add_parser("run", help="Install, then listen for skyline logs")
    _add_install_args(p)
    p.add_argument("-r", "--restart", action="store_true", help="Restart the game after installing")
    p.set_defaults(func=cmd_run)

    p = subparsers.add_parser("listen", help="Listen for skyline logs from the console")
    _add_target_args(p, title=False)
    p.set_defaults(func=cmd_listen)

    p = subparsers.add_parser("restart", help="Restart the game using restart-plugin")
    _add_target_args(p)
    p.set_defaults(func=cmd_restart)

    p = subparsers.add_parser("list", help="List the plugin directory (or PATH)")
    p.add_argument("path", nargs="?")
    _add_target_args(p)
    p.set_defaults(func=cmd_list)

    p = subparsers.add_parser("rm", help="Delete a file from the plugin directory")
    p.add_argument("filename", nargs="?")
    _add_target_args(p)
    p.set_defaults(func=cmd_rm)

    p = subparsers.add_parser("cp", help="Copy a local file to the console")
    p.add_argument("src")
    p.add_argument("dest", help="'sd:/...' or 'rom:/...' destination")
    _add_target_args(p)
    p.set_defaults(func=cmd_cp)

    p = subparsers.add_parser("set-ip", help="Store the console IP address")
    p.add_argument("addr")
    p.set_defaults(func=cmd_set_ip)

    p = subparsers.add_parser("show-ip", help="Show the configured console IP address")
    p.set_defaults(func=cmd_show_ip)

    p = subparsers.add_parser("discover", help="Scan the local network for consoles")
    p.add_argument("--subnet", help="Subnet base to scan, e.g. 192.168.1")
    p.set_defaults(func=cmd_discover)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    _configure_logging(args.verbose)

    try:
        config = ConfigManager(base_dir=args.config_dir)
        return args.func(args, config)
    except KeyboardInterrupt:
        err_console.print("\nInterrupted by user")
        return 130
    except SkyportError as exc:
        where = f" during {exc.step.lower().replace('_', ' ')}" if exc.step else ""
        operation = f" ({exc.operation})" if exc.operation else ""
        detail = escape(f"{where}{operation} [{exc.category}]: {exc}")
        err_console.print(f"[bold red]ERROR[/bold red]{detail}")
        return exc.exit_code
