from __future__ import annotations

import json
import logging
from typing import Callable, Dict, List, Optional, TextIO

import click

from kasa_protocol import (
    BROADCAST_ADDRESS,
    DEFAULT_TIMEOUT_SECONDS,
    AddressError,
    KasaError,
    SystemInformation,
    discover,
    format_addr,
    parse_addr,
    query_device,
    set_relay_state,
)


def human(infos: List[SystemInformation], out: TextIO) -> None:
    if not infos:
        out.write("No devices detected on local network\n")
        return
    rows = [("Address", "Alias", "State")]
    for info in infos:
        rows.append((format_addr(info.remote_address), info.alias, "On" if info.is_on else "Off"))
    widths = [max(len(r[i]) for r in rows) for i in range(3)]
    for r in rows:
        out.write("  ".join(c.ljust(w) for c, w in zip(r, widths)).rstrip() + "\n")


def prom_file_sd(infos: List[SystemInformation], out: TextIO) -> None:
    groups = []
    for info in infos:
        host = info.remote_address[0] if info.remote_address else ""
        groups.append(
            {
                "targets": [host],
                "labels": {
                    "kasa_alias": info.alias,
                    "kasa_id": info.device_id,
                    "kasa_model": info.model,
                },
            }
        )
    json.dump(groups, out, indent=2)
    out.write("\n")


FORMATTERS: Dict[str, Callable[[List[SystemInformation], TextIO], None]] = {
    "human": human,
    "promsd": prom_file_sd,
}


def _addr(value: str, default_port: int) -> tuple:
    try:
        return parse_addr(value, default_port=default_port)
    except AddressError as e:
        raise click.BadParameter(str(e))


class Context:
    def __init__(self, timeout: float, local: Optional[tuple]) -> None:
        self.timeout = timeout
        self.local = local


@click.group()
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=DEFAULT_TIMEOUT_SECONDS, show_default=True, help="Seconds to wait for replies.")
@click.option("--local", "local", default=None, help="Local address to bind, e.g. 192.168.1.10 or :0.")
@click.option("--log-level", default="WARNING", help="Logging level.")
@click.pass_context
def main(ctx: click.Context, timeout: float, local: Optional[str], log_level: str) -> None:
    """Control Kasa devices on the local network."""
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.WARNING), format="%(asctime)s %(levelname)s %(message)s")
    ctx.obj = Context(timeout, _addr(local, 0) if local else None)


@main.command("list")
@click.option("--broadcast", default=format_addr(BROADCAST_ADDRESS), show_default=True, help="Broadcast address to query.")
@click.option("--format", "fmt", type=click.Choice(sorted(FORMATTERS)), default="human", show_default=True)
@click.option("--output", type=click.File("w"), default="-", help="Write output to this file.")
@click.pass_obj
def list_devices(obj: Context, broadcast: str, fmt: str, output: TextIO) -> None:
    """List kasa devices on the local network."""
    try:
        infos = discover(local=obj.local, broadcast=_addr(broadcast, BROADCAST_ADDRESS[1]), timeout=obj.timeout)
    except KasaError as e:
        raise click.ClickException(str(e))
    FORMATTERS[fmt](infos, output)


@main.command()
@click.argument("address")
@click.pass_obj
def info(obj: Context, address: str) -> None:
    """Show system information of one device."""
    try:
        si = query_device(_addr(address, BROADCAST_ADDRESS[1]), obj.local, timeout=obj.timeout)
        si.raise_for_error()
    except KasaError as e:
        raise click.ClickException(str(e))
    click.echo(f"Address: {format_addr(si.remote_address)}")
    click.echo(f"Alias:   {si.alias}")
    click.echo(f"Model:   {si.model}")
    click.echo(f"ID:      {si.device_id}")
    click.echo(f"SW:      {si.sw_ver}")
    click.echo(f"State:   {'On' if si.is_on else 'Off'}")
    click.echo(f"On time: {si.on_time}s")
    click.echo(f"RSSI:    {si.rssi}")


def _set_state(obj: Context, address: str, state: bool) -> None:
    try:
        set_relay_state(_addr(address, BROADCAST_ADDRESS[1]), state, obj.local)
    except KasaError as e:
        raise click.ClickException(str(e))


@main.command()
@click.argument("address")
@click.pass_obj
def on(obj: Context, address: str) -> None:
    """Set a kasa device to "on"."""
    _set_state(obj, address, True)


@main.command()
@click.argument("address")
@click.pass_obj
def off(obj: Context, address: str) -> None:
    """Set a kasa device to "off"."""
    _set_state(obj, address, False)


if __name__ == "__main__":
    main()
