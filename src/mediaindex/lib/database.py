from pathlib import Path
from urllib.parse import quote_plus, unquote_plus, urlparse, urlunparse
import os

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker

DEFAULT_DB_NAME = "media-index.db"


def default_database_url(library_path: str) -> str:
    """The index lives next to the library unless configured otherwise."""
    return f"sqlite:///{(Path(library_path) / DEFAULT_DB_NAME).as_posix()}"


def get_engine(url: str | None = None):
    """Create a SQLAlchemy engine. Defaults to in-memory SQLite when url is None."""
    url = normalize_db_url(url or "sqlite:///:memory:")
    engine = create_engine(url, echo=False, future=True, pool_pre_ping=True)
    if engine.dialect.name == "sqlite" and ":memory:" not in url:
        _configure_sqlite(engine)
    return engine


def _configure_sqlite(engine) -> None:
    # The sync writes large batches; WAL keeps readers (the browsing UI)
    # unblocked while it runs.
    @event.listens_for(engine, "connect")
    def _set_pragmas(dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA journal_mode = WAL")
        cur.execute("PRAGMA synchronous = NORMAL")
        cur.execute("PRAGMA temp_store = MEMORY")
        cur.close()


def normalize_db_url(value: str) -> str:
    """Normalize different DB connection representations into a SQLAlchemy URL.

    - A URL (contains '://') is returned as-is, except that credentials are
      percent-encoded.
    - A semicolon-separated MySQL-style string (key=val;...) becomes a
      mysql+pymysql URL.
    - Anything that looks like a filesystem path becomes a sqlite URL.
    """
    if not value:
        return value

    if "://" in value:
        parsed = urlparse(value)
        if not (parsed.username or parsed.password):
            return value
        # Unquote first so already-encoded credentials are not encoded twice.
        userinfo = quote_plus(unquote_plus(parsed.username or ""))
        if parsed.password is not None:
            userinfo = f"{userinfo}:{quote_plus(unquote_plus(parsed.password))}"
        hostport = parsed.hostname or ""
        if parsed.port:
            hostport = f"{hostport}:{parsed.port}"
        return urlunparse(parsed._replace(netloc=f"{userinfo}@{hostport}"))

    if "=" in value and ";" in value:
        kv = {}
        for part in (p.strip() for p in value.split(";")):
            if "=" in part:
                k, v = part.split("=", 1)
                kv[k.strip().lower()] = v.strip()

        host = kv.get("server") or kv.get("host")
        user = kv.get("user") or kv.get("uid") or kv.get("username")
        password = kv.get("password") or kv.get("pwd")
        port = kv.get("port")
        database = kv.get("database") or kv.get("initial catalog") or kv.get("dbname")
        if host and user and database:
            pwd_q = quote_plus(password) if password is not None else ""
            port_part = f":{port}" if port else ""
            return f"mysql+pymysql://{quote_plus(user)}:{pwd_q}@{host}{port_part}/{database}"

    v = value.replace("\\", "/")
    if os.path.exists(v) or "/" in v or v.endswith(".db"):
        return f"sqlite:///{v}"
    return value


def mask_db_url(url: str) -> str:
    """Hide the password of a DB URL for display."""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    host = parsed.hostname or ""
    port = f":{parsed.port}" if parsed.port else ""
    return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}{port}"))


def ensure_sqlite_parent(url: str) -> None:
    """Create the directory holding a sqlite database file if it is missing."""
    if url.startswith("sqlite:///") and ":memory:" not in url:
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)


def get_sessionmaker(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine):
    """Create all tables using metadata from the models package."""
    # Import models lazily to avoid circular imports at package import time
    from mediaindex.models import Base

    Base.metadata.create_all(engine)
    _apply_missing_columns(engine, Base)


def _sql_type_for(col) -> str:
    t = col.type
    if getattr(t, "length", None):
        return f"VARCHAR({t.length})"
    typename = type(t).__name__.lower()
    if "text" in typename:
        return "TEXT"
    if "int" in typename:
        return "BIGINT" if "big" in typename else "INTEGER"
    if "float" in typename or "numeric" in typename:
        return "FLOAT"
    if "datetime" in typename:
        return "DATETIME"
    return "TEXT"


def _apply_missing_columns(engine, base):
    """Add model-declared columns that an older index is missing.

    Only simple additive changes are handled (e.g. an index created before
    `content_hash` existed). Columns are always added as nullable; anything
    more involved is left to the Alembic migrations.
    """
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())
    for table in base.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue
        existing = {c["name"] for c in inspector.get_columns(table.name)}
        for col in table.columns:
            if col.name in existing or col.primary_key:
                continue
            alter_sql = f"ALTER TABLE {table.name} ADD COLUMN {col.name} {_sql_type_for(col)} NULL"
            with engine.begin() as conn:
                conn.execute(text(alter_sql))
            print(f"Added missing column {table.name}.{col.name}")


class InMemoryAdapter:
    """Lightweight in-memory DB adapter for tests.

    Usage:
        adapter = InMemoryAdapter()
        session = adapter.session()
    """

    def __init__(self):
        self.engine = get_engine("sqlite:///:memory:")
        self.Session = get_sessionmaker(self.engine)
        init_db(self.engine)

    def session(self):
        return self.Session()
