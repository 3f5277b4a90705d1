"""keystash CLI: run the HTTP server and administer a storage root."""

import json
import logging
import sys
from pathlib import Path

import trio
import typer
from rich.console import Console
from rich.table import Table

from keystash.config import StoreConfig, init_storage, log_level_from_env, resolve_storage
from keystash.errors import KeystashError
from keystash.service import FileEntryService, open_service

app = typer.Typer(
    name="keystash",
    help="keystash — key-addressed file store",
    no_args_is_help=True,
)
console = Console()

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
) -> None:
    log_level = logging.DEBUG if debug else getattr(logging, log_level_from_env(), logging.WARNING)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)


def _fail(message: object) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def _load_config(storage_dir: str | None, force: bool | None = None) -> StoreConfig:
    storage_path = resolve_storage(storage_dir)
    if storage_path is None:
        _fail("Could not find storage directory. Use --storage or run init.")
    config = StoreConfig.from_env(storage_path)
    if force is not None:
        config.force_overwrite = force
    return config


def _open_service(storage_dir: str | None, force: bool | None = None) -> FileEntryService:
    return open_service(_load_config(storage_dir, force))


@app.command()
def init(
    storage_dir: str = typer.Argument(..., help="Storage root directory"),
) -> None:
    """Initialize a storage root."""
    storage_path = Path(storage_dir).resolve()
    try:
        created = init_storage(storage_path)
    except ValueError as e:
        _fail(e)
    if created:
        console.print(f"Initialized new keystash storage at [bold]{storage_path}[/bold]")
    else:
        console.print(f"keystash storage already present at [bold]{storage_path}[/bold]")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8080, "--port", "-p"),
    storage_dir: str = typer.Option(None, "--storage", "-s"),
) -> None:
    """Serve the storage root over HTTP."""
    import uvicorn

    from keystash.http_app import create_app

    config = _load_config(storage_dir)
    service = open_service(config)
    debug = logging.getLogger().getEffectiveLevel() <= logging.DEBUG
    level = "debug" if debug else config.log_level.lower()
    try:
        uvicorn.run(create_app(service), host=host, port=port, log_level=level)
    finally:
        service.close()


def _put_file(service: FileEntryService, path: Path, key: str | None) -> str:
    with open(path, "rb") as fp:
        return service.put(key, fp)


async def _put_all(
    service: FileEntryService, files: list[Path], key: str | None
) -> list[tuple[Path, str | None, str | None]]:
    """Upload files concurrently, one worker thread each."""
    results: list[tuple[Path, str | None, str | None]] = [(p, None, None) for p in files]

    async def _one(i: int, path: Path) -> None:
        try:
            stored = await trio.to_thread.run_sync(_put_file, service, path, key)
            results[i] = (path, stored, None)
        except (KeystashError, OSError) as e:
            results[i] = (path, None, str(e))

    async with trio.open_nursery() as nursery:
        for i, path in enumerate(files):
            nursery.start_soon(_one, i, path)
    return results


@app.command()
def put(
    files: list[Path] = typer.Argument(..., help="Files to store"),
    key: str = typer.Option(None, "--key", "-k", help="Key to store a single file under"),
    no_force: bool = typer.Option(False, "--no-force", help="Fail if the key already exists"),
    storage_dir: str = typer.Option(None, "--storage", "-s"),
    output_json: bool = typer.Option(False, "--json"),
) -> None:
    """Store one or more files and print their paths."""
    if key and len(files) > 1:
        _fail("--key can only be used with a single file")

    service = _open_service(storage_dir, force=False if no_force else None)
    try:
        results = trio.run(_put_all, service, files, key)
    finally:
        service.close()

    if output_json:
        data = [
            {"file": str(path), "key": stored, "error": error}
            for path, stored, error in results
        ]
        console.print_json(json.dumps(data))
    else:
        for path, stored, error in results:
            if error is None:
                console.print(f"{path} → /f/{stored}")
            else:
                console.print(f"[red]Error:[/red] {path}: {error}")

    if any(error is not None for _, _, error in results):
        raise typer.Exit(1)


@app.command()
def get(
    key: str = typer.Argument(..., help="Key to fetch"),
    output: Path = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
    storage_dir: str = typer.Option(None, "--storage", "-s"),
) -> None:
    """Write the content stored under KEY."""
    service = _open_service(storage_dir)
    try:
        download = service.get(key)
        if output is None:
            for chunk in download:
                sys.stdout.buffer.write(chunk)
            sys.stdout.buffer.flush()
        else:
            with open(output, "wb") as out:
                for chunk in download:
                    out.write(chunk)
    except KeystashError as e:
        _fail(e)
    finally:
        service.close()


@app.command()
def rm(
    key: str = typer.Argument(..., help="Key to delete"),
    storage_dir: str = typer.Option(None, "--storage", "-s"),
) -> None:
    """Delete the content and metadata for KEY."""
    service = _open_service(storage_dir)
    try:
        service.delete(key)
    except KeystashError as e:
        _fail(e)
    finally:
        service.close()
    console.print(f"[green]Deleted:[/green] {key}")


@app.command("ls")
def list_files(
    offset: int = typer.Option(0, "--offset", min=0),
    n: int = typer.Option(None, "--n", "-n", min=0, help="Page size"),
    q: str = typer.Option(None, "--q", "-q", help="Substring filter on key"),
    storage_dir: str = typer.Option(None, "--storage", "-s"),
    output_json: bool = typer.Option(False, "--json"),
) -> None:
    """List stored files, newest first."""
    service = _open_service(storage_dir)
    try:
        entries = service.list_entries(offset, n, q)
    except KeystashError as e:
        _fail(e)
    finally:
        service.close()

    if output_json:
        console.print_json(json.dumps([e.to_dict() for e in entries]))
        return

    table = Table(title="Files")
    table.add_column("Key", style="bold")
    table.add_column("Size", justify="right")
    table.add_column("Created")
    table.add_column("Last access")
    table.add_column("Downloads", justify="right")
    for e in entries:
        table.add_row(
            e.key,
            _human_size(e.size),
            e.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.last_access_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(e.download_count),
        )
    console.print(table)


@app.command()
def rebuild(
    key: str = typer.Argument(None, help="Key to rebuild; omit to index every unindexed file"),
    path: Path = typer.Option(None, "--path", help="File to import under KEY"),
    storage_dir: str = typer.Option(None, "--storage", "-s"),
) -> None:
    """Rebuild metadata from files on disk."""
    if key is None and path is not None:
        _fail("--path requires a KEY")

    service = _open_service(storage_dir)
    try:
        if key is None:
            rebuilt = service.rebuild_all()
            console.print(f"Indexed {len(rebuilt)} file(s)")
            for k in rebuilt:
                console.print(f"  {k}")
        else:
            entry = service.rebuild_index(key, path)
            console.print(f"Indexed [bold]{entry.key}[/bold] ({_human_size(entry.size)})")
    except KeystashError as e:
        _fail(e)
    finally:
        service.close()


@app.command()
def check(
    storage_dir: str = typer.Option(None, "--storage", "-s"),
    output_json: bool = typer.Option(False, "--json"),
) -> None:
    """Report divergence between the metadata index and the files."""
    service = _open_service(storage_dir)
    try:
        report = service.check()
    finally:
        service.close()

    if output_json:
        console.print_json(json.dumps(report.to_dict()))
    elif report.ok:
        console.print("[green]Index and content are consistent.[/green]")
    else:
        for key in report.missing_content:
            console.print(f"[red]missing content:[/red]  {key}")
        for key in report.orphaned_content:
            console.print(f"[yellow]orphaned content:[/yellow] {key}")
        for key, recorded, actual in report.size_mismatch:
            console.print(f"[yellow]size mismatch:[/yellow]   {key} ({recorded} != {actual})")

    if not report.ok:
        raise typer.Exit(1)


@app.command()
def stats(
    storage_dir: str = typer.Option(None, "--storage", "-s"),
    output_json: bool = typer.Option(False, "--json"),
) -> None:
    """Show storage statistics."""
    service = _open_service(storage_dir)
    try:
        s = service.metadata.get_stats()
    finally:
        service.close()

    if output_json:
        console.print_json(json.dumps(s))
    else:
        console.print("[bold]keystash Storage Statistics[/bold]")
        console.print(f"  Total files:      {s['total_files']}")
        console.print(f"  Total size:       {_human_size(s['total_bytes'])}")
        console.print(f"  Total downloads:  {s['total_downloads']}")


@app.command()
def log(
    limit: int = typer.Option(50, "--limit", min=1),
    storage_dir: str = typer.Option(None, "--storage", "-s"),
    output_json: bool = typer.Option(False, "--json"),
) -> None:
    """Show recent PUT/DELETE/REBUILD activity."""
    service = _open_service(storage_dir)
    try:
        rows = service.metadata.list_events(limit)
    finally:
        service.close()

    if output_json:
        data = [
            {"date": r["created_at"], "action": r["action"], "key": r["key"], "size": r["size"]}
            for r in rows
        ]
        console.print_json(json.dumps(data))
        return

    table = Table(title="Activity")
    table.add_column("Date")
    table.add_column("Action", style="bold")
    table.add_column("Key")
    table.add_column("Size", justify="right")
    for r in rows:
        size = "" if r["size"] is None else _human_size(r["size"])
        table.add_row(r["created_at"], r["action"], r["key"], size)
    console.print(table)


def _human_size(size_bytes: int) -> str:
    if size_bytes == 0:
        return "0 B"
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_bytes) < 1024:
            return f"{size_bytes:.1f} {unit}" if unit != "B" else f"{size_bytes} B"
        size_bytes /= 1024
    return f"{size_bytes:.1f} PB"


if __name__ == "__main__":
    app()
