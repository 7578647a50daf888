"""
CLI interface for clipkeep.

Usage:
    clipkeep watch
    clipkeep add "some text"
    clipkeep find "query text"
    clipkeep list -n 20
"""

import json
import os
import select
import shutil
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import ClipKeeper
from .errors import ClipkeepError, NotFoundError, SearchError, StoreError
from .events import ItemCaptured, ItemIndexed
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import Category, CapturedItem, Collection, SearchMatch


def _output_width() -> int:
    """Terminal width for title truncation. Use generous default when not a TTY."""
    if not sys.stdout.isatty():
        return 200
    return shutil.get_terminal_size((120, 24)).columns


def _has_stdin_data() -> bool:
    """Check if stdin has data available without blocking."""
    if sys.stdin.isatty():
        return False
    try:
        ready, _, _ = select.select([sys.stdin], [], [], 0)
        return bool(ready)
    except (ValueError, OSError):
        return False


# Configure quiet mode by default (suppress verbose library output)
# Set CLIPKEEP_VERBOSE=1 to enable debug mode via environment
if os.environ.get("CLIPKEEP_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"clipkeep {version('clipkeep')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="clipkeep",
    help="Clipboard history with semantic search.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _item_dict(item: CapturedItem, full: bool = False) -> dict:
    data = {
        "id": item.id,
        "title": item.title,
        "created_at": item.created_at,
        "category": item.category.value,
        "source_app": item.source_app,
        "favorite": item.favorite,
        "collection_id": item.collection_id,
        "tags": sorted(item.tags),
    }
    if full:
        data["content"] = item.content
        data["fingerprint"] = item.fingerprint
    return data


def _item_line(item: CapturedItem) -> str:
    star = "*" if item.favorite else " "
    date = item.created_at[:16].replace("T", " ")
    width = max(_output_width() - 50, 20)
    title = item.title.replace("\n", " ")
    if len(title) > width:
        title = title[:width - 3] + "..."
    return f"{item.id[:8]}{star} {date}  {item.category.value:<5}  {title}"


def _format_items(items: list[CapturedItem], as_json: bool = False) -> str:
    if as_json:
        return json.dumps([_item_dict(i) for i in items], indent=2)
    if not items:
        return "No items."
    return "\n".join(_item_line(i) for i in items)


def _format_matches(matches: list[SearchMatch], as_json: bool = False) -> str:
    if as_json:
        return json.dumps([
            {**_item_dict(m.item), "score": round(m.score, 4), "highlights": list(m.highlights)}
            for m in matches
        ], indent=2)
    if not matches:
        return "No matches."
    lines = []
    for m in matches:
        lines.append(f"{m.score:.3f}  {_item_line(m.item)}")
        for h in m.highlights:
            lines.append(f"         > {h}")
    return "\n".join(lines)


def _format_collection(c: Collection, members: int) -> str:
    color = f" {c.color}" if c.color else ""
    return f"{c.id[:8]}  {c.name}{color}  ({members} items)"


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="CLIPKEEP_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Clipboard history with semantic search."""


StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="CLIPKEEP_STORE_PATH",
        help="Path to the store directory (default: ~/.clipkeep/)"
    )
]


LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]


def _get_keeper(store: Optional[Path]) -> ClipKeeper:
    """Open the store, handling errors gracefully."""
    import atexit

    actual_store = store if store is not None else _get_store_override()
    try:
        ck = ClipKeeper(actual_store)
    except (ClipkeepError, ValueError, OSError, RuntimeError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(ck.close)
    return ck


def _resolve_id(ck: ClipKeeper, id: str) -> str:
    """Accept a full id or a unique prefix of one."""
    if ck.get(id) is not None:
        return id
    matches = [i.id for i in ck.list_items() if i.id.startswith(id)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        typer.echo(f"Error: No item matching '{id}'", err=True)
    else:
        typer.echo(f"Error: '{id}' is ambiguous ({len(matches)} items)", err=True)
    raise typer.Exit(1)


def _resolve_collection(ck: ClipKeeper, ref: str) -> Collection:
    """Collection by id, id prefix, or name."""
    collections = ck.list_collections()
    for c in collections:
        if c.id == ref or c.name.casefold() == ref.casefold():
            return c
    prefixed = [c for c in collections if c.id.startswith(ref)]
    if len(prefixed) == 1:
        return prefixed[0]
    typer.echo(f"Error: No collection matching '{ref}'", err=True)
    raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def watch(
    interval: Annotated[Optional[float], typer.Option(
        "--interval", "-i",
        help="Polling interval in seconds (0.1 - 5.0)",
    )] = None,
    store: StoreOption = None,
):
    """
    Watch the clipboard and capture everything copied. Runs until Ctrl+C.
    """
    ck = _get_keeper(store)
    if interval is not None:
        try:
            ck.watcher.interval = interval
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)

    subscription = ck.events.subscribe()
    ck.start()
    typer.echo(
        f"Watching clipboard every {ck.watcher.interval}s "
        f"(store: {ck.config.path}). Press Ctrl+C to stop.",
        err=True,
    )
    captured = 0
    try:
        while True:
            event = subscription.get(timeout=1.0)
            if isinstance(event, ItemCaptured):
                captured += 1
                if _get_json_output():
                    typer.echo(json.dumps(_item_dict(event.item)))
                else:
                    typer.echo(_item_line(event.item))
            elif isinstance(event, ItemIndexed) and event.collection_id:
                collection = ck.store.get_collection(event.collection_id)
                if collection is not None and not _get_json_output():
                    typer.echo(f"  -> {collection.name}")
    except KeyboardInterrupt:
        pass
    finally:
        subscription.close()
        ck.stop()
    typer.echo(f"\nStopped. {captured} items captured.", err=True)


@app.command()
def add(
    text: Annotated[Optional[str], typer.Argument(
        help="Text to capture (reads stdin if omitted)"
    )] = None,
    source_app: Annotated[Optional[str], typer.Option(
        "--app", "-a",
        help="Origin application identifier (e.g. com.apple.Safari)",
    )] = None,
    store: StoreOption = None,
):
    """Capture text as if it had been copied to the clipboard."""
    if text is None:
        if not _has_stdin_data():
            typer.echo("Error: Provide text or pipe it on stdin", err=True)
            raise typer.Exit(1)
        text = sys.stdin.read()

    ck = _get_keeper(store)
    outcome = ck.capture_text(text, source_app=source_app)
    if outcome.accepted:
        ck.process_pending()
        item = ck.get(outcome.item.id) or outcome.item
        if _get_json_output():
            typer.echo(json.dumps(_item_dict(item)))
        else:
            typer.echo(_item_line(item))
        return

    if _get_json_output():
        typer.echo(json.dumps({"status": outcome.status.value, "reason": outcome.reason}))
    else:
        typer.echo(f"Not captured ({outcome.status.value}): {outcome.reason}", err=True)
    raise typer.Exit(1)


@app.command()
def find(
    query: Annotated[str, typer.Argument(help="Search query text")],
    limit: LimitOption = 10,
    store: StoreOption = None,
):
    """Find items by meaning."""
    ck = _get_keeper(store)
    ck.backfill()
    try:
        matches = ck.search(query, limit=limit)
    except (SearchError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(_format_matches(matches, as_json=_get_json_output()))


@app.command()
def grep(
    text: Annotated[str, typer.Argument(help="Substring to search for")],
    limit: LimitOption = 20,
    store: StoreOption = None,
):
    """Find items containing text (case-insensitive)."""
    ck = _get_keeper(store)
    typer.echo(_format_items(ck.grep(text, limit), as_json=_get_json_output()))


@app.command("list")
def list_recent(
    limit: LimitOption = 20,
    collection: Annotated[Optional[str], typer.Option(
        "--collection", "-c",
        help="Only items in this collection (name or id)",
    )] = None,
    favorites: Annotated[bool, typer.Option(
        "--favorites", "-f",
        help="Only favorites",
    )] = False,
    category: Annotated[Optional[str], typer.Option(
        "--category",
        help="Only this category (text, code, url, file, image, other)",
    )] = None,
    store: StoreOption = None,
):
    """List recent items, newest first."""
    ck = _get_keeper(store)
    collection_id = _resolve_collection(ck, collection).id if collection else None
    if category is not None:
        try:
            cat: Optional[Category] = Category(category.lower())
        except ValueError:
            typer.echo(f"Error: Unknown category '{category}'", err=True)
            raise typer.Exit(1)
    else:
        cat = None
    items = ck.list_items(
        limit, collection_id=collection_id, favorites_only=favorites, category=cat,
    )
    typer.echo(_format_items(items, as_json=_get_json_output()))


@app.command()
def get(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    store: StoreOption = None,
):
    """Print an item's full content."""
    ck = _get_keeper(store)
    item = ck.get(_resolve_id(ck, id))
    if _get_json_output():
        typer.echo(json.dumps(_item_dict(item, full=True), indent=2))
        return
    typer.echo(item.content)


@app.command()
def delete(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    store: StoreOption = None,
):
    """Delete an item."""
    ck = _get_keeper(store)
    resolved = _resolve_id(ck, id)
    try:
        ck.delete(resolved)
    except StoreError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {resolved[:8]}")


@app.command()
def favorite(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    store: StoreOption = None,
):
    """Toggle an item's favorite flag."""
    ck = _get_keeper(store)
    item = ck.toggle_favorite(_resolve_id(ck, id))
    state = "favorite" if item.favorite else "not favorite"
    typer.echo(f"{item.id[:8]} is now {state}")


@app.command()
def collections(
    create: Annotated[Optional[str], typer.Option(
        "--create",
        help="Create a collection with this name",
    )] = None,
    color: Annotated[Optional[str], typer.Option(
        "--color",
        help="Color for --create, as #RRGGBB",
    )] = None,
    remove: Annotated[Optional[str], typer.Option(
        "--delete",
        help="Delete a collection (name or id); its items are kept",
    )] = None,
    store: StoreOption = None,
):
    """List, create or delete collections."""
    ck = _get_keeper(store)
    try:
        if create:
            c = ck.create_collection(create, color)
            typer.echo(f"Created {_format_collection(c, 0)}")
            return
        if remove:
            c = _resolve_collection(ck, remove)
            ck.delete_collection(c.id)
            typer.echo(f"Deleted collection {c.name}")
            return
    except StoreError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    rows = [(c, len(ck.store.collection_members(c.id))) for c in ck.list_collections()]
    if _get_json_output():
        typer.echo(json.dumps([
            {"id": c.id, "name": c.name, "color": c.color, "items": n} for c, n in rows
        ], indent=2))
    elif not rows:
        typer.echo("No collections.")
    else:
        typer.echo("\n".join(_format_collection(c, n) for c, n in rows))


@app.command()
def assign(
    id: Annotated[str, typer.Argument(help="Item id or unique prefix")],
    collection: Annotated[Optional[str], typer.Argument(
        help="Collection name or id (omit to remove from its collection)"
    )] = None,
    store: StoreOption = None,
):
    """Move an item into a collection."""
    ck = _get_keeper(store)
    resolved = _resolve_id(ck, id)
    target = _resolve_collection(ck, collection) if collection else None
    try:
        ck.assign(resolved, target.id if target else None)
    except NotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if target:
        typer.echo(f"{resolved[:8]} -> {target.name}")
    else:
        typer.echo(f"{resolved[:8]} removed from its collection")


@app.command()
def tags(
    store: StoreOption = None,
):
    """List tags with item counts."""
    ck = _get_keeper(store)
    all_tags = ck.list_tags()
    if _get_json_output():
        typer.echo(json.dumps({t.name: t.count for t in all_tags}, indent=2))
    elif not all_tags:
        typer.echo("No tags.")
    else:
        for t in all_tags:
            typer.echo(f"{t.count:5d}  {t.name}")


@app.command()
def prune(
    max_items: Annotated[Optional[int], typer.Option(
        "--max", "-m",
        help="Keep at most this many items (default: configured max_items)",
    )] = None,
    store: StoreOption = None,
):
    """Delete the oldest non-favorite items beyond the item limit."""
    ck = _get_keeper(store)
    try:
        removed = ck.prune(max_items)
    except (StoreError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Pruned {len(removed)} items")


@app.command()
def status(
    store: StoreOption = None,
):
    """Show store status."""
    ck = _get_keeper(store)
    info = ck.status()
    if _get_json_output():
        typer.echo(json.dumps(info, indent=2))
        return
    for key, value in info.items():
        typer.echo(f"{key}: {value}")


@app.command()
def config(
    key: Annotated[Optional[str], typer.Argument(
        help="Config key to get (e.g. 'polling_interval', 'embedding')"
    )] = None,
    store: StoreOption = None,
):
    """
    Show configuration, including environment overrides.

    \b
    Examples:
        clipkeep config                   # Show all config
        clipkeep config polling_interval  # One value
        clipkeep config file              # Config file location
    """
    from .config import get_store_path, load_or_create_config

    actual_store = store if store is not None else _get_store_override()
    path = Path(actual_store).expanduser().resolve() if actual_store else get_store_path()
    try:
        cfg = load_or_create_config(path)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    values = {
        "file": str(cfg.config_path),
        "store": str(cfg.path),
        "polling_interval": cfg.polling_interval,
        "max_items": cfg.max_items,
        "allow_duplicates": cfg.allow_duplicates,
        "rate_limit": cfg.rate_limit,
        "rate_window": cfg.rate_window,
        "save_attempts": cfg.save_attempts,
        "semantic_search": cfg.semantic_search,
        "auto_categorize": cfg.auto_categorize,
        "index_batch_size": cfg.index_batch_size,
        "embedding": cfg.embedding.name,
    }
    if key is not None:
        if key not in values:
            typer.echo(f"Error: Unknown config key '{key}'", err=True)
            raise typer.Exit(1)
        typer.echo(json.dumps(values[key]) if _get_json_output() else str(values[key]))
        return
    if _get_json_output():
        typer.echo(json.dumps(values, indent=2))
        return
    for k, v in values.items():
        typer.echo(f"{k}: {v}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="clipkeep CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
