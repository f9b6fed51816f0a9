from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import Optional

import click

from routercap.config_loader import AppConfig, load_config
from routercap.env_loader import load_env_file
from routercap.errors import ConfigurationError, RouterUnavailableError
from routercap.logging_setup import setup_logging
from routercap.services.pcap_summary import summarize_pcap
from routercap.services.recorder import Recorder
from routercap.services.router_client import RouterClient
from routercap.units import size2text

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("routercap.yaml")

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG,
    show_default=True,
    help="YAML configuration file.",
)


def _load(config_path: Path) -> AppConfig:
    try:
        return load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _router_client(cfg: AppConfig) -> RouterClient:
    return RouterClient(cfg.router.address, timeout=cfg.router.request_timeout)


def _login(cfg: AppConfig) -> str:
    try:
        sid = _router_client(cfg).get_session_token(cfg.router.username, cfg.router.password)
    except RouterUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    if not sid:
        raise click.ClickException("Cannot login into router, wrong credentials or router not available")
    return sid


@click.group()
@click.option("--env-file", type=click.Path(path_type=Path), default=None, help="Optional .env file.")
def main(env_file: Optional[Path]) -> None:
    """routercap commands."""
    load_env_file(env_file)
    setup_logging()
    LOGGER.debug("CLI bootstrap completed", extra={"category": "CONFIG"})


@main.command()
@config_option
def run(config_path: Path) -> None:
    """Record device traffic and synchronize it until interrupted."""
    cfg = _load(config_path)
    recorder = Recorder(cfg)
    try:
        recorder.start()
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc

    stop = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, stopping", signum, extra={"category": "CONFIG"})
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    # SIGUSR1 flushes pending records and synchronizes.
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, lambda _s, _f: threading.Thread(target=recorder.trigger_write, daemon=True).start())
    while not stop.wait(1.0):
        pass
    recorder.shutdown()


@main.command()
@config_option
def sync(config_path: Path) -> None:
    """Upload pending files once and exit."""
    cfg = _load(config_path)
    recorder = Recorder(cfg)
    try:
        recorder.prepare()
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    report = recorder.sync_now()
    if report.revoked:
        raise click.ClickException("Installation was disabled by the collection endpoint")
    click.echo(
        f"uploaded={len(report.uploaded)} already_present={len(report.already_present)} "
        f"failed={len(report.failed)} deleted={len(report.deleted)}"
    )
    if report.failed:
        raise click.ClickException(f"{len(report.failed)} files could not be uploaded")


@main.command()
@config_option
def token(config_path: Path) -> None:
    """Check the router credentials."""
    cfg = _load(config_path)
    _login(cfg)
    click.echo(f"Login ok router={cfg.router.address} user={cfg.router.username}")


@main.command("router-info")
@config_option
def router_info(config_path: Path) -> None:
    """Show router users, capture interfaces and filter support."""
    cfg = _load(config_path)
    client = _router_client(cfg)
    try:
        users = client.list_users()
    except RouterUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"users: {', '.join(users) if users else '-'}")
    sid = _login(cfg)
    try:
        filter_ok = client.supports_filter(sid)
        interfaces = client.list_interfaces(sid)
    except RouterUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"filter supported: {'yes' if filter_ok else 'no'}")
    for iface in interfaces:
        click.echo(f"  {iface.value:<16} {iface.label}")


@main.command()
@click.argument("pcap_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def inspect(pcap_file: Path) -> None:
    """Summarize a recorded capture file."""
    summary = summarize_pcap(pcap_file)
    click.echo(f"packets: {summary.packets}")
    click.echo(f"stored: {size2text(summary.bytes)} on wire: {size2text(summary.wire_bytes)}")
    click.echo(f"duration: {summary.duration:.1f}s")
    for proto, count in summary.protocols.items():
        click.echo(f"  {proto:<10} {count}")


if __name__ == "__main__":
    main()
