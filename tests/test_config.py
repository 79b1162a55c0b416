import importlib

import pytest

from anilist_rec import config


@pytest.fixture(autouse=True)
def _restore_config():
    yield
    importlib.reload(config)


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("ANILIST_HTTP_TIMEOUT", "12.5")
    monkeypatch.setenv("ANILIST_MAX_CONCURRENT", "0")  # min clamp
    monkeypatch.setenv("ANILIST_TOP_PAGES", "5")

    cfg = importlib.reload(config)

    assert cfg.HTTP_TIMEOUT == 12.5
    assert cfg.DEFAULT_MAX_CONCURRENT == 1
    assert cfg.DEFAULT_TOP_PAGES == 5


def test_db_path_respects_env(fresh_config, tmp_path):
    assert fresh_config.DB_PATH == tmp_path / "test.db"


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("ANILIST_HTTP_TIMEOUT", "not-a-float")
    monkeypatch.setenv("ANILIST_MAX_CONCURRENT", "bad-int")
    monkeypatch.setenv("ANILIST_TOP_PAGES", "many")

    cfg = importlib.reload(config)

    assert cfg.HTTP_TIMEOUT == 30.0
    assert cfg.DEFAULT_MAX_CONCURRENT == 1
    assert cfg.DEFAULT_TOP_PAGES == 3


def test_credentials_from_env(monkeypatch):
    monkeypatch.setenv("ANILIST_CLIENT_ID", "abc")
    monkeypatch.setenv("ANILIST_CLIENT_SECRET", "")

    cfg = importlib.reload(config)

    assert cfg.CLIENT_ID == "abc"
    assert cfg.CLIENT_SECRET is None


def test_staff_role_priors_refine_generic_staff_prior():
    role_priors = {k: v for k, v in config.PREFIX_WEIGHTS.items() if k.startswith("Staff: ")}
    assert config.PREFIX_WEIGHTS["Staff"] == 0.1
    assert role_priors["Staff: Director"] == 1.0
    assert all(0 < v <= 1.0 for v in config.PREFIX_WEIGHTS.values())
