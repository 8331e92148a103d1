"""CLI entry point for eblocks-companion."""

import asyncio
import json as jsonmod
import logging
import time
from pathlib import Path

import click

from eblocks_companion.boards import list_families
from eblocks_companion.companion import Companion
from eblocks_companion.config import list_config, load_config
from eblocks_companion.errors import (
    CompanionError,
    CompileFailed,
    NoPortResolved,
    ToolchainNotFound,
    UploadFailed,
)
from eblocks_companion.upload import AUTO, UploadRequest

POLL_INTERVAL = 0.1


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx, verbose):
    """Compile, flash and monitor E-Blocks and Arduino boards."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = load_config(Path.cwd())


def _fail(e: CompanionError):
    """Print an error with a prefix naming its class of failure, then exit."""
    if isinstance(e, CompileFailed):
        click.echo(f"Compile error: {e.message}", err=True)
        if e.output:
            click.echo(e.output, err=True)
    elif isinstance(e, UploadFailed):
        click.echo(f"Upload error: the sketch compiled but the board could not be flashed. {e.message}", err=True)
        if e.output:
            click.echo(e.output, err=True)
    elif isinstance(e, ToolchainNotFound):
        click.echo(f"Toolchain error: {e.message}", err=True)
    elif isinstance(e, NoPortResolved):
        click.echo(f"Error: {e.message} You can specify one with --port.", err=True)
    else:
        click.echo(f"Error: {e.message}", err=True)
    raise SystemExit(e.exit_code)


@main.command()
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
@click.pass_obj
def ports(config, use_json):
    """List serial ports and the boards detected on them."""
    descriptors = asyncio.run(Companion(config).list_ports())
    if use_json:
        click.echo(jsonmod.dumps([d.to_dict() for d in descriptors], indent=2))
        return
    if not descriptors:
        click.echo("No serial ports found.")
        return
    for d in descriptors:
        family = d.detected_family or "unknown"
        ids = f" [{d.usb_vendor_id}:{d.usb_product_id}]" if d.usb_vendor_id else ""
        click.echo(f"  {d.port:<20} {d.display_name} ({family}){ids}")


@main.command()
def boards():
    """List board families that can be targeted."""
    for f in list_families():
        target = f.fqbn or "(not programmable with arduino-cli)"
        click.echo(f"  {f.slug:<15} {f.name:<22} {target}")


@main.command()
@click.argument("sketch", type=click.Path(exists=True, dir_okay=False))
@click.option("--board", required=True, help="Board family (e.g. arduino-mega, esp32) or full FQBN.")
@click.option("--port", default=AUTO, show_default=True, help="Serial port, or 'auto' to detect.")
@click.option("--json", "use_json", is_flag=True, help="Output JSON.")
@click.pass_obj
def upload(config, sketch, board, port, use_json):
    """Compile SKETCH and flash it to the board."""
    request = UploadRequest(
        source_code=Path(sketch).read_text(encoding="utf-8"),
        target_family=board,
        port=port,
    )
    try:
        result = asyncio.run(Companion(config).upload(request))
    except ValueError as e:
        raise click.UsageError(str(e))
    except CompanionError as e:
        if use_json:
            click.echo(jsonmod.dumps(e.to_dict(), indent=2))
            raise SystemExit(e.exit_code)
        _fail(e)

    if use_json:
        click.echo(jsonmod.dumps(result.to_dict(), indent=2))
    else:
        click.echo(f"Uploaded to {result.port} ({result.fqbn}) in {result.duration_seconds:.1f}s")


async def _monitor(companion, port, baud, duration, output_callback):
    """Connect and poll the drain buffer until duration expires."""
    await companion.connect(port, baud)
    start = time.monotonic()
    try:
        while duration is None or time.monotonic() - start < duration:
            for line in companion.drain(port):
                output_callback(line)
            if not companion.connections.is_connected(port):
                raise CompanionError(f"Lost connection to {port}", exit_code=2)
            await asyncio.sleep(POLL_INTERVAL)
        for line in companion.drain(port):
            output_callback(line)
    finally:
        await companion.disconnect(port)


@main.command()
@click.option("--port", required=True, help="Serial port.")
@click.option("--baud", type=int, help="Baud rate.")
@click.option("--duration", type=float, help="Monitor duration in seconds.")
@click.pass_obj
def monitor(config, port, baud, duration):
    """Stream serial output from a board."""
    companion = Companion(config)
    try:
        asyncio.run(_monitor(companion, port, baud or config.serial.baud_rate, duration, click.echo))
    except KeyboardInterrupt:
        pass
    except CompanionError as e:
        _fail(e)


async def _send(companion, port, baud, data):
    await companion.connect(port, baud)
    try:
        return await companion.write(port, data)
    finally:
        await companion.disconnect(port)


@main.command()
@click.argument("data")
@click.option("--port", required=True, help="Serial port.")
@click.option("--baud", type=int, help="Baud rate.")
@click.option("--no-newline", is_flag=True, help="Don't append a newline.")
@click.pass_obj
def send(config, data, port, baud, no_newline):
    """Write DATA to a board."""
    if not no_newline:
        data += "\n"
    try:
        written = asyncio.run(_send(Companion(config), port, baud or config.serial.baud_rate, data))
    except CompanionError as e:
        _fail(e)
    click.echo(f"Sent {written} bytes to {port}")


@main.command()
@click.option("--host", help="Bind address.")
@click.option("--port", type=int, help="HTTP port.")
@click.pass_obj
def serve(config, host, port):
    """Run the HTTP API for the companion UI."""
    import uvicorn

    from eblocks_companion.api import create_app

    uvicorn.run(
        create_app(config),
        host=host or config.server.host,
        port=port or config.server.port,
    )


@main.command()
@click.pass_obj
def doctor(config):
    """Check that arduino-cli is installed."""
    status = asyncio.run(Companion(config).check_toolchain())
    if status["ok"]:
        click.echo(f"[OK] {status['message']}")
        if status.get("version"):
            click.echo(f"     {status['version']}")
    else:
        click.echo(f"[FAIL] {status['message']}")
        raise SystemExit(1)


@main.command("config")
@click.pass_obj
def config_cmd(config):
    """Show the effective configuration."""
    for k, v in sorted(list_config(config).items()):
        click.echo(f"  {k} = {v}")
