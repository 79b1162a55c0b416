import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from anilist_rec.tags import CatalogRecord, StaffCredit, StudioCredit  # noqa: E402


def anime_payload(anime_id, title="Title", genres=(), studios=(), staff=(), classification="PG-13",
                  title_english=None, average_score=70.0, total_episodes=12):
    """AniList-shaped page payload for HTTP fakes."""
    return {
        "id": anime_id,
        "title_romaji": title,
        "title_english": title_english or title,
        "genres": list(genres),
        "studio": [{"studio_name": name, "main_studio": int(main)} for name, main in studios],
        "staff": [
            {"name_last": last, "name_first": first, "role": role}
            for last, first, role in staff
        ],
        "classification": classification,
        "average_score": average_score,
        "total_episodes": total_episodes,
    }


@pytest.fixture
def make_record():
    def _make(anime_id=1, genres=(), studios=(), staff=(), classification="", **kwargs):
        return CatalogRecord(
            id=anime_id,
            genres=tuple(genres),
            studios=tuple(StudioCredit(name, main) for name, main in studios),
            staff=tuple(StaffCredit(last, first, role) for last, first, role in staff),
            classification=classification,
            **kwargs,
        )
    return _make


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("ANILIST_DB", str(db_path))
    import anilist_rec.config as config

    importlib.reload(config)
    yield config
    monkeypatch.delenv("ANILIST_DB")
    importlib.reload(config)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "state.db"
