"""Tests for the schoolsync CLI."""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from schoolsync.cli import main
from schoolsync.cli.__main__ import build_parser
from schoolsync.storage import SQLiteStore
from schoolsync.types import NotificationKind, ReconcileOutcome, utc_now


@pytest.fixture
def db(tmp_path, isolated_logger):
    return tmp_path / "cli.db"


def run_cli(db, *argv):
    return main(["--db", str(db), *argv])


class TestParser:
    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_global_options(self, tmp_path):
        args = build_parser().parse_args(
            ["-p", "work", "--db", str(tmp_path / "x.db"), "queue", "list", "--kind", "message_draft"]
        )
        assert args.profile == "work"
        assert args.command == "queue"
        assert args.kind == "message_draft"

    def test_unknown_queue_kind_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["queue", "list", "--kind", "homework"])


class TestStatus:
    def test_json(self, db, capsys):
        assert run_cli(db, "status", "--json") == 0
        status = json.loads(capsys.readouterr().out)
        assert status["queue"]["total"] == 0
        assert status["connectivity"] == "online"
        assert status["store"]["db_path"] == str(db.resolve())

    def test_text(self, db, capsys):
        assert run_cli(db, "--profile", "work", "status") == 0
        out = capsys.readouterr().out
        assert "Sync Status (work)" in out
        assert "Cloud push:    up to date" in out


class TestFlush:
    def test_replays_queued_patch(self, db, capsys):
        SQLiteStore(db).queue_add("settings_patch", json.dumps({"theme": "dark"}))
        assert run_cli(db, "flush") == 0
        out = capsys.readouterr().out
        assert "✓ Synced 1 offline item(s)" in out
        assert SQLiteStore(db).get_all_settings() == {"theme": "dark"}

    def test_empty_queue(self, db, capsys):
        assert run_cli(db, "flush") == 0
        assert "✓ Synced 0 offline item(s)" in capsys.readouterr().out


class TestReconcile:
    def test_without_credentials(self, db, capsys):
        assert run_cli(db, "reconcile") == 0
        assert "Reconcile: no_identity" in capsys.readouterr().out


class TestCache:
    def test_get_hit_and_miss(self, db, capsys):
        SQLiteStore(db).cache_set("lesson_colours", json.dumps({"MATH": "#f00"}), ttl_minutes=10)
        assert run_cli(db, "cache", "get", "lesson_colours") == 0
        assert json.loads(capsys.readouterr().out) == {"MATH": "#f00"}

        assert run_cli(db, "cache", "get", "forums_list") == 1
        assert "(miss) forums_list" in capsys.readouterr().out

    def test_clear_and_purge(self, db, capsys):
        SQLiteStore(db).cache_set("a", "1")
        assert run_cli(db, "cache", "purge") == 0
        assert "Purged 0 expired entries" in capsys.readouterr().out
        assert run_cli(db, "cache", "clear") == 0
        assert SQLiteStore(db).cache_get("a") is None


class TestQueue:
    def test_list_and_clear(self, db, capsys):
        store = SQLiteStore(db)
        store.queue_add("settings_patch", json.dumps({"theme": "dark"}))
        store.queue_add("message_draft", json.dumps({"subject": "s", "contents": "c", "recipients": []}))

        assert run_cli(db, "queue", "list", "--json") == 0
        items = json.loads(capsys.readouterr().out)
        assert [item["kind"] for item in items] == ["settings_patch", "message_draft"]

        assert run_cli(db, "queue", "list", "--kind", "settings_patch") == 0
        out = capsys.readouterr().out
        assert "[settings_patch]" in out
        assert "[message_draft]" not in out

        assert run_cli(db, "queue", "clear", "--kind", "message_draft") == 0
        assert "Removed 1 queued item(s)" in capsys.readouterr().out
        assert [i.kind for i in SQLiteStore(db).queue_all()] == ["settings_patch"]

    def test_empty(self, db, capsys):
        assert run_cli(db, "queue", "list") == 0
        assert "Queue is empty." in capsys.readouterr().out


class TestNotifications:
    def test_sweep_and_list(self, db, capsys):
        SQLiteStore(db).schedule_notification(9, NotificationKind.OVERDUE, utc_now() - timedelta(minutes=1))

        assert run_cli(db, "notifications", "list", "--json") == 0
        rows = json.loads(capsys.readouterr().out)
        assert [(r["subject_entity_id"], r["kind"]) for r in rows] == [(9, "overdue")]

        assert run_cli(db, "sweep") == 0
        assert "Due: 1  Sent: 1  Failed: 0" in capsys.readouterr().out

        assert run_cli(db, "notifications", "list") == 0
        assert "No notifications scheduled." in capsys.readouterr().out

        assert run_cli(db, "notifications", "list", "--all") == 0
        assert "sent " in capsys.readouterr().out

    def test_cleanup(self, db, capsys):
        assert run_cli(db, "notifications", "cleanup", "--days", "0") == 0
        assert "Removed 0 old notification(s)" in capsys.readouterr().out


class TestErrors:
    def test_command_failure_returns_one(self, db):
        broken = AsyncMock(side_effect=RuntimeError("boom"))
        with patch.dict("schoolsync.cli.__main__.COMMANDS", {"status": broken}):
            assert run_cli(db, "status") == 1
        broken.assert_awaited_once()

    def test_runtime_is_stopped_after_command(self, db):
        with patch("schoolsync.cli.__main__.SyncRuntime") as runtime_cls:
            rt = runtime_cls.return_value
            rt.coordinator.reconcile_with_remote = AsyncMock(return_value=ReconcileOutcome.FAILED)
            rt.stop = AsyncMock()
            assert run_cli(db, "reconcile") == 1
        rt.stop.assert_awaited_once()
