"""
Rollcam CLI - provision the capture engine and record the screen.

Commands:
    rollcam install          - Download and configure the engine
    rollcam uninstall        - Remove the engine
    rollcam status           - Show installation and engine status
    rollcam sources          - List capture sources
    rollcam record           - Record until Ctrl-C or --duration elapses
    rollcam version          - Show version
    rollcam platform-info    - Show detected platform
"""

import sys
import threading
import time
from pathlib import Path
from typing import NoReturn, Optional

import click

from rollcam import __version__
from rollcam.backends import BACKENDS, DirectCaptureBackend, create_backend
from rollcam.catalog import StaticSourceCatalog
from rollcam.config import Settings
from rollcam.core.models import CaptureSource, RecordingConfiguration, Resolution
from rollcam.core.session import SessionState, StatusEvent
from rollcam.engine.provisioner import BundleProvisioner
from rollcam.engine.supervisor import ProcessSupervisor
from rollcam.errors import LaunchError, RollcamError
from rollcam.logging import get_rollcam_logger, setup_logging
from rollcam.platform import Platform

logger = get_rollcam_logger(__name__)


@click.group(invoke_without_command=True)
@click.option('--log-level', default='WARNING',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Log level (default: WARNING)')
@click.pass_context
def cli(ctx, log_level: str):
    """Rollcam - screen recording through a managed capture engine."""
    setup_logging(level=log_level)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        click.secho(f"Invalid configuration: {e}", fg="red")
        sys.exit(1)


def _fail(error: RollcamError) -> NoReturn:
    click.secho(f"[{error.kind}] {error.status}", fg="red")
    sys.exit(1)


@cli.command()
@click.option('--force', is_flag=True, help='Reinstall even if already installed')
def install(force: bool):
    """
    Download and configure the capture engine.

    Example:
        rollcam install
        rollcam install --force
    """
    provisioner = BundleProvisioner(_settings().engine)
    if provisioner.is_installed() and not force:
        click.secho(f"Engine already installed at {provisioner.root}", fg="green")
        return

    if force:
        provisioner.uninstall()

    try:
        installation = provisioner.install(progress=_download_progress())
    except RollcamError as e:
        _fail(e)

    click.echo()
    click.echo(f"Binary: {installation.binary}")
    click.echo(f"Size:   {provisioner.installed_size_mb():.1f} MB")


def _download_progress():
    """Progress callback printing whole percentages (or MB when size is unknown)."""
    last = {"mark": -1}

    def report(done: int, total: Optional[int]) -> None:
        if total:
            mark = done * 100 // total
            text = f"\r  {mark:3d}%"
        else:
            mark = done // (1024 * 1024)
            text = f"\r  {mark} MB"
        if mark != last["mark"]:
            last["mark"] = mark
            click.echo(text, nl=False, err=True)

    return report


@cli.command()
def uninstall():
    """Remove the capture engine installation."""
    settings = _settings()
    provisioner = BundleProvisioner(settings.engine)
    if not provisioner.root.exists():
        click.echo("Engine is not installed.")
        return

    supervisor = ProcessSupervisor(settings.engine)
    if supervisor.is_running():
        click.secho("Engine is running; stopping it first.", fg="yellow")
        supervisor.kill_stray_instances()

    if provisioner.uninstall():
        click.secho(f"Removed {provisioner.root}", fg="green")
    else:
        click.secho(f"Could not fully remove {provisioner.root}", fg="red")
        sys.exit(1)


@cli.command()
def status():
    """Show installation and engine status."""
    settings = _settings()
    provisioner = BundleProvisioner(settings.engine)
    supervisor = ProcessSupervisor(settings.engine)
    installation = provisioner.installation()

    widths = [12, 60]
    logger.table_row("Installed", "yes" if installation.ready else "no", widths=widths)
    logger.table_row("Location", installation.root, widths=widths)
    logger.table_row("Size", f"{provisioner.installed_size_mb():.1f} MB", widths=widths)
    logger.table_row("Running", "yes" if supervisor.is_running() else "no", widths=widths)
    logger.table_row("Control", settings.engine.control_uri, widths=widths)


@cli.command()
def sources():
    """List capture sources and audio devices."""
    catalog = StaticSourceCatalog(_settings().capture)
    widths = [14, 36, 30]

    logger.table_row("KIND", "NAME", "IDENTIFIER", widths=widths)
    for source in catalog.video_sources() + catalog.audio_sources():
        logger.table_row(source.kind.value, source.name, source.identifier, widths=widths)


def _parse_source(value: str) -> CaptureSource:
    if value == "full-screen":
        return CaptureSource.full_screen()
    if value.startswith("window:") and len(value) > len("window:"):
        return CaptureSource.window(value[len("window:"):])
    raise click.BadParameter("expected 'full-screen' or 'window:<title>'", param_hint="--source")


@cli.command()
@click.option('--backend', 'backend_kind', default='direct',
              type=click.Choice(sorted(BACKENDS)), help='Recording backend (default: direct)')
@click.option('--source', default='full-screen', help="'full-screen' or 'window:<title>'")
@click.option('--resolution', default='1080p', help='1080p, 2k, 4k or WxH (default: 1080p)')
@click.option('--output', '-o', type=click.Path(file_okay=False, path_type=Path),
              help='Output directory (default: ~/ScreenRecordings)')
@click.option('--system-audio/--no-system-audio', default=True, help='Record system audio')
@click.option('--microphone/--no-microphone', default=False, help='Record the microphone')
@click.option('--separate-audio', is_flag=True, help='Also write audio to its own file')
@click.option('--format', 'output_format', default='mp4', help='Container format (default: mp4)')
@click.option('--duration', type=float, help='Stop after this many seconds')
def record(backend_kind: str, source: str, resolution: str, output: Optional[Path],
           system_audio: bool, microphone: bool, separate_audio: bool,
           output_format: str, duration: Optional[float]):
    """
    Record the screen until Ctrl-C or --duration elapses.

    Example:
        rollcam record --duration 30
        rollcam record --backend managed --resolution 4k --microphone
    """
    try:
        parsed_resolution = Resolution.parse(resolution)
        config = RecordingConfiguration.default().replace(
            video_source=_parse_source(source),
            resolution=parsed_resolution,
            record_system_audio=system_audio,
            record_microphone=microphone,
            separate_audio_track=separate_audio,
            output_format=output_format,
        )
    except ValueError as e:
        raise click.BadParameter(str(e))
    if output is not None:
        config = config.replace(output_directory=output.expanduser())

    finished = threading.Event()

    def on_status(event: StatusEvent) -> None:
        if event.is_transition:
            logger.status(event.state.value, event.message)
            if event.state == SessionState.ERROR or (
                event.state == SessionState.IDLE and event.previous == SessionState.STOPPING
            ):
                finished.set()
        else:
            logger.debug("%s", event.message)

    settings = _settings()
    backend = create_backend(backend_kind, settings)
    if isinstance(backend, DirectCaptureBackend) and not backend.is_available():
        backend.close()
        _fail(LaunchError(f"{settings.capture.ffmpeg_binary} is not installed or does not run"))
    backend.add_listener(on_status)

    with backend:
        try:
            backend.start(config)
        except RollcamError as e:
            _fail(e)

        click.echo(f"Recording to {config.output_directory} (Ctrl-C to stop)")
        _wait(finished, duration)

        if backend.state in (SessionState.RECORDING, SessionState.PAUSED):
            try:
                result = backend.stop()
            except RollcamError as e:
                _fail(e)
            if isinstance(result, str):
                click.echo(f"Saved {result}")

        if backend.state == SessionState.ERROR:
            click.secho(f"[error] {backend.session.last_error}", fg="red")
            sys.exit(1)

    outputs = getattr(backend, "outputs", [])
    for path in outputs:
        click.echo(f"Saved {path}")
    logger.success("Recording finished")


def _wait(finished: threading.Event, duration: Optional[float]) -> None:
    """Block until the session ends, the duration elapses, or Ctrl-C."""
    deadline = None if duration is None else time.monotonic() + duration
    try:
        while not finished.is_set():
            if deadline is not None and time.monotonic() >= deadline:
                return
            finished.wait(0.5)
    except KeyboardInterrupt:
        click.echo("\nStopping...")


@cli.command()
def version():
    """Show Rollcam version."""
    click.echo(f"Rollcam version {__version__}")


def _ffmpeg_status(settings: Settings, platform: Platform) -> str:
    with DirectCaptureBackend(settings.capture, platform=platform) as backend:
        available = backend.is_available()
    return settings.capture.ffmpeg_binary if available else "not found"


@cli.command('platform-info')
def platform_info():
    """Show the detected platform and capture defaults."""
    settings = _settings()
    platform = Platform.detect()
    devices = settings.capture.audio_devices(platform)

    click.echo(f"Platform:     {platform}")
    click.echo(f"Screen input: {settings.capture.screen(platform)}")
    click.echo(f"System audio: {devices['system']}")
    click.echo(f"Microphone:   {devices['microphone']}")
    click.echo(f"ffmpeg:       {_ffmpeg_status(settings, platform)}")
    click.echo(f"Engine dir:   {settings.engine.install_dir}")


def main():
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
