import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from kvlens.config.loader import load_app_config
from kvlens.config.schema import AppCfg, DataSourceCfg, SshTunnelCfg
from kvlens.console.app import ConsoleApp
from kvlens.core.bus import RenderBus
from kvlens.core.dispatcher import Dispatcher
from kvlens.decode import DecoderChain
from kvlens.explorer.scanner import KeyScanner
from kvlens.store.connection import ConnectionManager
from kvlens.store.persist import DataSourceStore
from kvlens.util.errors import ConfigError
from kvlens.util.paths import config_home
from kvlens.util.types import Result

app = typer.Typer(add_completion=False, help="kvlens - explore and query Redis-compatible key-value stores")


def _setup_logging(log_level: Optional[str], log_file: Optional[Path] = None) -> None:
    if log_level:
        os.environ["KVLENS_LOG_LEVEL"] = log_level.upper()
    if log_file is not None and not os.environ.get("KVLENS_LOG_FILE"):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        os.environ["KVLENS_LOG_FILE"] = str(log_file)


def _resolve_source(url: Optional[str], source: Optional[str], mode: str, home: Path) -> DataSourceCfg:
    """--url wins, then --source, then the saved default, then localhost."""
    if url:
        return DataSourceCfg(url=url, mode=mode)
    default, sources = DataSourceStore(str(home / "datasources.yaml")).load()
    name = source or default
    if name is None:
        return DataSourceCfg(mode=mode)
    if name not in sources:
        raise ConfigError(f"unknown data source '{name}' (known: {', '.join(sorted(sources)) or 'none'})")
    return sources[name]


def _parse_ssh(spec: str, key_file: Optional[str]) -> SshTunnelCfg:
    """'[user@]host[:port]' as accepted by --ssh."""
    user, _, hostport = spec.rpartition("@")
    host, sep, port = hostport.partition(":")
    if not host or (sep and not port.isdigit()):
        raise ConfigError(f"bad --ssh value '{spec}' (expected [user@]host[:port])")
    return SshTunnelCfg(host=host, port=int(port) if port else 22, username=user or None, key_file=key_file)


def _fail(e: ConfigError) -> None:
    typer.echo(f"[error] config: {e}", err=True)
    raise typer.Exit(code=2)


@app.command()
def console(url: Optional[str] = typer.Option(None, "--url", help="Redis URL, e.g. redis://127.0.0.1:6379/0"),
            source: Optional[str] = typer.Option(None, "--source", "-s", help="Saved data source name"),
            mode: str = typer.Option("auto", "--mode", help="auto, standalone or cluster"),
            config: Optional[str] = typer.Option(None, "--config", help="Path to config.yaml"),
            log_level: Optional[str] = typer.Option(None, "--log-level")):
    """Run the interactive console with the key explorer."""
    home = config_home()
    _setup_logging(log_level, home / "kvlens.log")
    try:
        cfg = load_app_config(config)
        ds = _resolve_source(url, source, mode, home)
    except ConfigError as e:
        _fail(e)
    app_ = ConsoleApp(ds, cfg, home=home)
    try:
        code = app_.run()
    except KeyboardInterrupt:
        code = 0
    raise typer.Exit(code=code)


async def _scan(ds: DataSourceCfg, cfg: AppCfg, pattern: str, batch_size: Optional[int],
                delimiter: str) -> Result[KeyScanner]:
    conn = ConnectionManager(ds)
    opened = await conn.open()
    if not opened.ok:
        return Result(ok=False, error=opened.error)
    dispatcher = Dispatcher(conn, workers=1, retry_limit=cfg.retry_limit, retry_backoff_sec=cfg.retry_backoff_sec)
    bus = RenderBus(dispatcher)
    scanner = KeyScanner(dispatcher, bus, DecoderChain(), delimiter=delimiter, batch_size=cfg.scan_size)
    dispatcher.start()
    try:
        scanner.start_scan(pattern, batch_size)
        while scanner.scanning:
            bus.tick()
            await asyncio.sleep(1.0 / cfg.fps)
        if scanner.error is not None:
            return Result(ok=False, error=scanner.error)
        return Result(ok=True, value=scanner)
    finally:
        await dispatcher.shutdown()
        await conn.close()


@app.command()
def scan(url: Optional[str] = typer.Option(None, "--url"),
         source: Optional[str] = typer.Option(None, "--source", "-s"),
         mode: str = typer.Option("auto", "--mode"),
         pattern: str = typer.Option("*", "--pattern", "-p", help="Server-side MATCH pattern"),
         batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", min=1),
         delimiter: Optional[str] = typer.Option(None, "--delimiter", "-d"),
         filter_text: str = typer.Option("", "--filter", help="Client-side filter over the tree"),
         config: Optional[str] = typer.Option(None, "--config"),
         log_level: Optional[str] = typer.Option(None, "--log-level")):
    """Scan the keyspace once and print the key tree."""
    _setup_logging(log_level or os.environ.get("KVLENS_LOG_LEVEL", "WARN"))
    try:
        cfg = load_app_config(config)
        ds = _resolve_source(url, source, mode, config_home())
    except ConfigError as e:
        _fail(e)

    res = asyncio.run(_scan(ds, cfg, pattern, batch_size, delimiter or cfg.key_delimiter))
    if not res.ok:
        typer.echo(f"[error] {res.error}", err=True)
        raise typer.Exit(code=1)

    scanner = res.value
    if filter_text:
        scanner.set_filter(filter_text, "pattern" if any(c in filter_text for c in "*?[") else "fuzzy")
    snapshot = scanner.snapshot()
    for row in snapshot.rows:
        suffix = f"{delimiter or cfg.key_delimiter} ({row.leaf_count})" if row.is_dir else ""
        typer.echo(f"{'  ' * row.depth}{row.segment}{suffix}")
    typer.echo(f"{snapshot.keys_scanned} keys in {snapshot.batches} batches", err=True)


@app.command()
def decode(path: Optional[Path] = typer.Argument(None, help="File to decode; stdin when omitted"),
           hex_view: bool = typer.Option(False, "--hex", help="Show a hexdump instead")):
    """Run bytes through the decoder chain and print the rendering."""
    if path is None:
        data = sys.stdin.buffer.read()
    else:
        try:
            data = path.read_bytes()
        except OSError as e:
            typer.echo(f"[error] {e}", err=True)
            raise typer.Exit(code=1)
    chain = DecoderChain()
    value = chain.hexdump(data) if hex_view else chain.decode(data)
    typer.echo(f"kind: {value.kind.value}")
    typer.echo(value.rendered)


@app.command()
def sources(add: Optional[str] = typer.Option(None, "--add", help="Save a data source under this name"),
            url: Optional[str] = typer.Option(None, "--url", help="Redis URL for --add"),
            mode: str = typer.Option("auto", "--mode"),
            ssh: Optional[str] = typer.Option(None, "--ssh", help="Tunnel --add through [user@]host[:port]"),
            ssh_key: Optional[str] = typer.Option(None, "--ssh-key", help="Private key for --ssh"),
            remove: Optional[str] = typer.Option(None, "--remove", help="Delete a saved data source"),
            make_default: bool = typer.Option(False, "--default", help="Make the added source the default")):
    """List, add or remove saved data sources."""
    store = DataSourceStore(str(config_home() / "datasources.yaml"))
    try:
        default, saved = store.load()
        if add:
            tunnel = _parse_ssh(ssh, ssh_key) if ssh else None
            saved[add] = DataSourceCfg(name=add, url=url or DataSourceCfg().url, mode=mode, ssh=tunnel)
            if make_default or default is None:
                default = add
        if remove:
            if saved.pop(remove, None) is None:
                raise ConfigError(f"unknown data source '{remove}'")
            if default == remove:
                default = None
    except ConfigError as e:
        _fail(e)
    except ValidationError as e:
        _fail(ConfigError(str(e)))

    if add or remove:
        res = store.save(default, saved)
        if not res.ok:
            typer.echo(f"[error] {res.error}", err=True)
            raise typer.Exit(code=1)

    if not saved:
        typer.echo(f"No data sources saved in {store.path}")
        return
    for name in sorted(saved):
        ds = saved[name]
        marker = "*" if name == default else " "
        extras = "  tls" if ds.tls else ""
        if ds.ssh:
            extras += f"  ssh={ds.ssh.host}:{ds.ssh.port}"
        typer.echo(f"{marker} {name:<20} {ds.url}  mode={ds.mode}{extras}")


def main():
    app()


if __name__ == "__main__":
    main()
