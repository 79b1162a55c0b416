import sqlite3
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .config import CLIENT_ID, CLIENT_SECRET, DB_PATH, MODEL_SCHEMA_VERSION
from .profile import PreferenceModel, TagStatistic

logger = logging.getLogger(__name__)


@contextmanager
def get_db(db_path: str | Path | None = None, read_only: bool = False):
    """
    Open the state database.

    Commits on clean exit (unless read_only), rolls back and re-raises on error.
    """
    path = Path(db_path) if db_path else DB_PATH
    path.parent.mkdir(exist_ok=True, parents=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row

    try:
        yield conn
        if not read_only:
            conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str | Path | None = None) -> None:
    with get_db(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            -- Last computed preference model
            CREATE TABLE IF NOT EXISTS tag_stats (
                tag TEXT PRIMARY KEY,
                sample_count INTEGER NOT NULL,
                mean REAL NOT NULL,
                stdev REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS seen (
                anime_id INTEGER PRIMARY KEY
            );
        """)


@dataclass
class RunContext:
    """
    Everything one invocation reads from and writes back to the state database.

    ``model`` is None when no model has been computed yet (or the stored one
    is from an older schema).
    """
    client_id: str | None = None
    client_secret: str | None = None
    user: str | None = None
    model: PreferenceModel | None = None
    model_updated_at: str | None = None
    # User whose history the stored model was built from
    model_user: str | None = None

    def replace_model(self, model: PreferenceModel, user: str | None = None) -> None:
        self.model = model
        self.model_user = user if user is not None else self.user
        self.model_updated_at = datetime.now().isoformat()


def _load_settings(conn) -> dict[str, str]:
    return {row['key']: row['value'] for row in conn.execute("SELECT key, value FROM settings")}


def load_context(db_path: str | Path | None = None) -> RunContext:
    """Load saved state; environment credentials fill in missing ones."""
    init_db(db_path)
    with get_db(db_path, read_only=True) as conn:
        settings = _load_settings(conn)

        ctx = RunContext(
            client_id=settings.get('client_id') or CLIENT_ID,
            client_secret=settings.get('client_secret') or CLIENT_SECRET,
            user=settings.get('user'),
        )

        updated_at = settings.get('model_updated_at')
        version = int(settings.get('schema_version') or 0)
        if not updated_at:
            return ctx
        if version != MODEL_SCHEMA_VERSION:
            logger.debug(f"Ignoring stored model - schema version mismatch ({version} != {MODEL_SCHEMA_VERSION})")
            return ctx

        model = PreferenceModel()
        for row in conn.execute("SELECT tag, sample_count, mean, stdev FROM tag_stats"):
            model.stats[row['tag']] = TagStatistic(
                row['tag'], row['sample_count'], row['mean'], row['stdev']
            )
        model.seen = {row['anime_id'] for row in conn.execute("SELECT anime_id FROM seen")}

    ctx.model = model
    ctx.model_updated_at = updated_at
    ctx.model_user = settings.get('model_user')
    return ctx


def save_context(ctx: RunContext, db_path: str | Path | None = None) -> None:
    """Write the context back, replacing the stored model when one is present."""
    init_db(db_path)
    with get_db(db_path) as conn:
        settings = {
            'client_id': ctx.client_id,
            'client_secret': ctx.client_secret,
            'user': ctx.user,
        }
        if ctx.model is not None:
            settings['model_updated_at'] = ctx.model_updated_at or datetime.now().isoformat()
            settings['schema_version'] = str(MODEL_SCHEMA_VERSION)
            settings['model_user'] = ctx.model_user

        conn.executemany(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
            [(k, v) for k, v in settings.items() if v is not None],
        )

        if ctx.model is None:
            return

        conn.execute("DELETE FROM tag_stats")
        conn.executemany(
            "INSERT INTO tag_stats (tag, sample_count, mean, stdev) VALUES (?, ?, ?, ?)",
            [stat.as_row() for stat in ctx.model.stats.values()],
        )
        conn.execute("DELETE FROM seen")
        conn.executemany(
            "INSERT INTO seen (anime_id) VALUES (?)",
            [(anime_id,) for anime_id in sorted(ctx.model.seen)],
        )
    logger.debug(f"Saved state to {db_path or DB_PATH}")


@contextmanager
def run_context(db_path: str | Path | None = None):
    """
    Yield the saved RunContext and persist it on the way out.

    The context is saved whether the body finishes or raises; the exception
    still propagates.
    """
    ctx = load_context(db_path)
    try:
        yield ctx
    finally:
        save_context(ctx, db_path)
