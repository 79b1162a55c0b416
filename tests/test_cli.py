import json
import logging
import sys

import httpx
import pytest

from anilist_rec import cli
from anilist_rec import client as client_module
from anilist_rec import mal
from anilist_rec.database import load_context

from conftest import anime_payload
from test_client import FakeAniList


@pytest.fixture
def fake_anilist(monkeypatch):
    fake = FakeAniList(
        pages={
            1: anime_payload(1, title="Seen One", genres=["Action"]),
            2: anime_payload(2, title="Seen Two", genres=["Action"]),
            10: anime_payload(10, title="Candidate", genres=["Action"]),
            11: anime_payload(11, title="Stranger", genres=["Horror"], classification="R"),
        },
        lists={"alice": [
            {"anime": {"id": 1}, "score": 8},
            {"anime": {"id": 2}, "score": 6},
        ]},
        browse={"0": [{"id": 11}, {"id": 10}, {"id": 1}]},
    )
    real_client = client_module.AniListClient

    def _factory(client_id, client_secret):
        return real_client(client_id, client_secret, transport=httpx.MockTransport(fake))

    monkeypatch.setattr(cli, "AniListClient", _factory)
    return fake


def _base_args(db_path):
    return ["--db", str(db_path), "--client-id", "id", "--client-secret", "secret", "--user", "alice"]


def _messages(caplog):
    return [r.getMessage() for r in caplog.records if r.name == "anilist_rec.cli"]


def test_main_dispatches_to_subcommand(monkeypatch):
    called = {}

    def fake_list(args):
        called["command"] = args.command

    monkeypatch.setattr(cli, "cmd_list", fake_list)
    monkeypatch.setattr(sys, "argv", ["prog", "list"])

    cli.main()

    assert called["command"] == "list"


def test_cli_parses_recommend_args(monkeypatch):
    captured = {}

    def fake_recommend(args):
        captured.update(vars(args))

    monkeypatch.setattr(cli, "cmd_recommend", fake_recommend)
    cli.main(["--user", "alice", "--refresh", "recommend", "spring", "2016",
              "--new", "--concurrency", "4", "--format", "json"])

    assert captured["user"] == "alice"
    assert captured["refresh"] is True
    assert captured["target"] == ["spring", "2016"]
    assert captured["new"] is True
    assert captured["concurrency"] == 4
    assert captured["format"] == "json"


def test_recommend_rejects_extra_arguments():
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["recommend", "a", "b", "c"])
    assert excinfo.value.code == 2


@pytest.mark.parametrize("target, expected", [
    (["Spring", "2016"], client_module.CandidateFilter.for_season("spring", 2016)),
    (["bob"], client_module.CandidateFilter.watched_by("bob")),
    ([], client_module.CandidateFilter.top(2)),
])
def test_candidate_filter_from_arguments(target, expected):
    args = type("Args", (), {"target": target, "pages": 2})()
    assert cli._candidate_filter(args) == expected


def test_candidate_filter_rejects_bad_season():
    args = type("Args", (), {"target": ["monsoon", "2016"], "pages": 3})()
    with pytest.raises(client_module.ConfigurationError):
        cli._candidate_filter(args)


def test_missing_credentials_exit_with_error(db_path, caplog):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--db", str(db_path), "list"])

    assert excinfo.value.code == 1
    assert any("client credentials" in m for m in _messages(caplog))


def test_list_builds_and_prints_model(db_path, fake_anilist, caplog):
    caplog.set_level(logging.INFO)
    cli.main(_base_args(db_path) + ["list"])

    messages = _messages(caplog)
    assert "Genre: Action (2): 7.00 ±1.00" in messages
    assert load_context(db_path).model.seen == {1, 2}


def test_recommend_text_report(db_path, fake_anilist, caplog):
    caplog.set_level(logging.INFO)
    cli.main(_base_args(db_path) + ["recommend", "--pages", "1", "--new"])

    messages = _messages(caplog)
    assert "=== weight class 0+ ===" in messages
    candidate_lines = [m for m in messages if m.startswith("- C ")]
    assert candidate_lines[0].startswith("- C 7.00")
    assert "Candidate (10, 12 episodes)" in candidate_lines[0]
    assert candidate_lines[1].startswith("- C -inf (w 0.0)")
    # --new drops the already seen title
    assert not any("Seen One" in m for m in messages)


def test_recommend_json_report(db_path, fake_anilist, caplog):
    caplog.set_level(logging.INFO)
    cli.main(_base_args(db_path) + ["recommend", "--pages", "1", "--format", "json"])

    payload = next(json.loads(m) for m in _messages(caplog) if m.startswith("["))
    assert payload[0]["weight_class"] == 0
    ids = [c["id"] for c in payload[0]["candidates"]]
    assert ids[-1] == 11
    assert payload[0]["candidates"][-1]["calc_score"] is None


def test_stored_model_is_reused_until_refresh(db_path, fake_anilist):
    cli.main(_base_args(db_path) + ["list"])
    cli.main(_base_args(db_path) + ["list"])

    def history_fetches():
        return sum(1 for r in fake_anilist.requests if r.url.path.endswith("/animelist"))

    assert history_fetches() == 1

    cli.main(_base_args(db_path) + ["--refresh", "list"])
    assert history_fetches() == 2


def test_state_is_saved_when_candidate_fetch_fails(db_path, fake_anilist, caplog):
    fake_anilist.browse["0"].append({"id": 999})

    with pytest.raises(SystemExit) as excinfo:
        cli.main(_base_args(db_path) + ["recommend", "--pages", "1"])

    assert excinfo.value.code == 1
    assert any("HTTP 404" in m for m in _messages(caplog))

    ctx = load_context(db_path)
    assert ctx.user == "alice"
    assert ctx.model.seen == {1, 2}


def _history_fetches(fake):
    return sum(1 for r in fake.requests if r.url.path.endswith("/animelist"))


def test_failed_user_switch_rebuilds_on_retry(db_path, fake_anilist):
    cli.main(_base_args(db_path) + ["list"])
    fake_anilist.lists["bob"] = [
        {"anime": {"id": 10}, "score": 9},
        {"anime": {"id": 12}, "score": 5},
    ]
    bob_args = _base_args(db_path)[:-1] + ["bob", "list"]

    with pytest.raises(SystemExit) as excinfo:
        cli.main(bob_args)
    assert excinfo.value.code == 1

    ctx = load_context(db_path)
    assert ctx.user == "bob"
    assert ctx.model_user == "alice"

    fake_anilist.pages[12] = anime_payload(12, title="Late Page", genres=["Drama"])
    cli.main(bob_args)

    assert _history_fetches(fake_anilist) == 3
    ctx = load_context(db_path)
    assert ctx.model_user == "bob"
    assert ctx.model.seen == {10, 12}


MAL_EXPORT = """<?xml version="1.0" encoding="UTF-8" ?>
<myanimelist>
  <anime>
    <series_animedb_id>1</series_animedb_id>
    <series_title><![CDATA[Seen One]]></series_title>
    <my_score>9</my_score>
    <my_status>2</my_status>
  </anime>
  <anime>
    <series_animedb_id>2</series_animedb_id>
    <series_title>Seen Two</series_title>
    <my_score>5</my_score>
    <my_status>2</my_status>
  </anime>
  <anime>
    <series_animedb_id>10</series_animedb_id>
    <series_title>Candidate</series_title>
    <my_score>0</my_score>
    <my_status>1</my_status>
  </anime>
</myanimelist>
"""


def test_list_builds_model_from_mal_export(db_path, fake_anilist, monkeypatch, caplog):
    mal_requests = []

    def mal_handler(request):
        mal_requests.append(request)
        return httpx.Response(200, text=MAL_EXPORT)

    monkeypatch.setattr(
        cli, "fetch_mal_list",
        lambda user: mal.fetch_mal_list(user, transport=httpx.MockTransport(mal_handler)),
    )
    caplog.set_level(logging.INFO)

    cli.main(_base_args(db_path) + ["--mal", "list"])

    assert mal_requests[0].url.params["u"] == "alice"
    assert _history_fetches(fake_anilist) == 0
    assert "Genre: Action (2): 7.00 ±2.00" in _messages(caplog)
    assert load_context(db_path).model.seen == {1, 2}
