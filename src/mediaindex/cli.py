import argparse
import json
import traceback
from pathlib import Path
from typing import Any, Optional

from mediaindex.lib.database import ensure_sqlite_parent, get_engine, get_sessionmaker, init_db, mask_db_url
from mediaindex.services.orchestrator import SyncConfig, SyncMode, SyncOrchestrator, default_concurrency
from mediaindex.services.repository import CURSOR_KEY, ITEM_COUNT_KEY, IndexStore, RelationKind

# Item errors listed after a run; the rest are only counted.
MAX_ERRORS_SHOWN = 20


def _load_config(path: str, verbose: bool = True) -> dict[str, Any]:
    p = Path(path)
    try:
        if not p.exists():
            if verbose:
                print(f"_load_config: path does not exist: {p}")
            return {}
        if verbose:
            print(f"Loading config from: {p}")
        try:
            with p.open("r", encoding="utf-8") as fh:
                text = fh.read()
        except OSError as e:
            if verbose:
                print(f"ERROR: failed to read config file {p}: {e}")
                traceback.print_exc()
            return {}

        try:
            data = json.loads(text)
        except ValueError as e:
            if verbose:
                print(f"ERROR: failed to parse JSON from {p}: {e}")
                traceback.print_exc()
            return {}
        if not isinstance(data, dict):
            if verbose:
                print(f"ERROR: config in {p} is not a JSON object")
            return {}
        if verbose:
            print(f"Config loaded successfully ({len(data)} keys)")
        return data
    except Exception as e:
        if verbose:
            print(f"ERROR: unexpected error when loading {p}: {e}")
            traceback.print_exc()
        return {}


def _positive_int(value: Any, default: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return n if n > 0 else default


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _validate_and_normalize_config(cfg: dict) -> dict:
    """Coerce raw config values; anything invalid falls back to its default."""
    out: dict = {}
    library = cfg.get("library_path") or cfg.get("libraryPath")
    out["library_path"] = str(library) if library else None
    database = cfg.get("database") or cfg.get("dbConn")
    out["database"] = str(database) if database else None

    for key, default in (
        ("items_dir", "images"),
        ("item_suffix", ".info"),
        ("sidecar_name", "metadata.json"),
        ("mtime_map_name", "mtime.json"),
    ):
        value = cfg.get(key)
        out[key] = value.strip() if isinstance(value, str) and value.strip() else default

    out["chunk_size"] = _positive_int(cfg.get("chunk_size"), 2000)
    out["concurrency"] = _positive_int(cfg.get("concurrency"), default_concurrency())
    out["batch_size"] = _positive_int(cfg.get("batch_size"), 1000)
    out["relationship_batch_size"] = _positive_int(cfg.get("relationship_batch_size"), 20000)
    out["lock_timeout"] = _positive_int(cfg.get("lock_timeout"), 3600)
    out["hash_comparison"] = _as_bool(cfg.get("hash_comparison"), True)
    out["deletion_detection"] = _as_bool(cfg.get("deletion_detection"), True)

    timeout = cfg.get("item_timeout", 30.0)
    try:
        out["item_timeout"] = float(timeout) if timeout is not None and float(timeout) > 0 else None
    except (TypeError, ValueError):
        out["item_timeout"] = 30.0
    return out


def _build_config(args) -> Optional[SyncConfig]:
    user_cfg = getattr(args, "config", None)
    cfg_path = user_cfg or ("config.json" if Path("config.json").exists() else None)
    raw_cfg = _load_config(cfg_path, verbose=bool(user_cfg)) if cfg_path else {}
    cfg = _validate_and_normalize_config(raw_cfg)

    # CLI overrides (if provided) take precedence over config file
    if getattr(args, "library", None):
        cfg["library_path"] = args.library
    if getattr(args, "db", None):
        cfg["database"] = args.db
    if getattr(args, "workers", None):
        cfg["concurrency"] = _positive_int(args.workers, cfg["concurrency"])
    if getattr(args, "chunk_size", None):
        cfg["chunk_size"] = _positive_int(args.chunk_size, cfg["chunk_size"])
    if getattr(args, "batch_size", None):
        cfg["batch_size"] = _positive_int(args.batch_size, cfg["batch_size"])
    if getattr(args, "no_hash", False):
        cfg["hash_comparison"] = False
    if getattr(args, "no_deletions", False):
        cfg["deletion_detection"] = False

    if not cfg["library_path"]:
        print("ERROR: no library path given (use --library or library_path in config.json)")
        return None
    return SyncConfig(**cfg)


def sync(args, session: Optional[object] = None):
    config = _build_config(args)
    if config is None:
        return 2
    mode = SyncMode(getattr(args, "mode", None) or SyncMode.INCREMENTAL.value)
    session = session if session is not None else getattr(args, "session", None)

    result = SyncOrchestrator(config, session=session, mode=mode).run()

    if result.errors:
        print(f"{len(result.errors)} item errors:")
        for err in result.errors[:MAX_ERRORS_SHOWN]:
            print(f"  - [{err.phase}] {err.item_id}: {err.message}")
        if len(result.errors) > MAX_ERRORS_SHOWN:
            print(f"  ... and {len(result.errors) - MAX_ERRORS_SHOWN} more")
    return 0 if result.ok else 1


def status(args, session: Optional[object] = None):
    """Print what the index knows about its last sync."""
    config = _build_config(args)
    if config is None:
        return 2
    session = session if session is not None else getattr(args, "session", None)
    owned = None
    if session is None:
        url = config.database_url()
        print(f"Index: {mask_db_url(url)}")
        ensure_sqlite_parent(url)
        engine = get_engine(url)
        init_db(engine)
        session = owned = get_sessionmaker(engine)()
    try:
        store = IndexStore(session)
        print(f"Last refresh:   {store.get_cache_info(CURSOR_KEY) or 'never'}")
        print(f"Cached items:   {store.get_cache_info(ITEM_COUNT_KEY) or '-'}")
        print(f"Indexed items:  {store.count_items():,}")
        print(f"Folders:        {store.count_distinct_labels(RelationKind.FOLDER):,}")
        print(f"Tags:           {store.count_distinct_labels(RelationKind.TAG):,}")
    finally:
        if owned is not None:
            owned.close()
    return 0


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", help="Path to JSON config file (default: ./config.json)")
    p.add_argument("--library", help="Override config: library root folder")
    p.add_argument("--db", help="Override config: database URL, SQLite path or MySQL DSN")


def main(argv=None):
    parser = argparse.ArgumentParser(prog="mediaindex")
    sub = parser.add_subparsers(dest="cmd")

    for name, mode, help_text in (
        ("sync", SyncMode.INCREMENTAL, "Index new, changed and deleted items"),
        ("force", SyncMode.FORCE, "Re-read and rewrite every item on disk"),
        ("rebuild", SyncMode.REBUILD, "Clear the index and rebuild it from disk"),
    ):
        p = sub.add_parser(name, help=help_text)
        _add_common_args(p)
        # CLI overrides (optional); when present they override values in config.json
        p.add_argument("--workers", type=int, help="Override config: max concurrent item reads")
        p.add_argument("--chunk-size", type=int, help="Override config: items per progress chunk")
        p.add_argument("--batch-size", type=int, help="Override config: rows per upsert batch")
        p.add_argument("--no-hash", action="store_true", help="Skip content-hash comparison")
        p.add_argument("--no-deletions", action="store_true", help="Do not remove items missing from disk")
        p.set_defaults(func=sync, mode=mode.value)

    p_status = sub.add_parser("status", help="Show the last sync time and index counts")
    _add_common_args(p_status)
    p_status.set_defaults(func=status)

    args = parser.parse_args(argv)
    if hasattr(args, "func"):
        return args.func(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
