from contextlib import contextmanager

import requests

from src.liquidator.core.engine.reporter import OutcomeReporter
from src.liquidator.core.models.candidate import SubmissionResult
from src.liquidator.core.models.enums import Outcome
from src.liquidator.data.storage.postgres.storage import PostgreSQLStorage, outcome_row
from src.liquidator.notifications import telegram as tg


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def executemany(self, query, rows):
        self.conn.executed.append((query, list(rows)))

    def execute(self, query, params=()):
        self.conn.executed.append((query, params))


class FakeConn:
    def __init__(self):
        self.executed = []
        self.commits = 0

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1


class FakePool:
    def __init__(self, fail=False):
        self.conn = FakeConn()
        self.fail = fail

    @contextmanager
    def connection(self):
        if self.fail:
            raise RuntimeError("database is down")
        yield self.conn


class FakePost:
    def __init__(self, status_code=200, exc=None):
        self.status_code = status_code
        self.exc = exc
        self.calls = []
        self.text = "nope"

    def __call__(self, url, json=None, timeout=None):
        self.calls.append((url, json))
        if self.exc is not None:
            raise self.exc
        return self


def _result(outcome=Outcome.CONFIRMED, **kw):
    params = dict(account_key="B", outcome=outcome, attempts=1, margin_ratio=454, slot=77, signature="sig1", finished_at=0)
    params.update(kw)
    return SubmissionResult(**params)


def _target(n=1):
    return tg.TelegramTarget(name=f"t{n}", bot_token=f"tok{n}", chat_id=f"chat{n}")


def test_outcome_row():
    row = outcome_row(_result(Outcome.ABANDONED, error="x" * 3000), liquidator="me")

    assert row["outcome"] == "ABANDONED"
    assert row["liquidator"] == "me"
    assert len(row["error"]) == 2000
    assert row["finished_at"].year == 1970
    assert outcome_row(_result())["error"] is None


def test_storage_inserts_and_commits():
    pool = FakePool()
    store = PostgreSQLStorage(pool)

    assert store.insert_liquidation_outcome(outcome_row(_result())) == 1

    query, rows = pool.conn.executed[0]
    assert "INSERT INTO liquidation_outcomes" in query
    assert "ON CONFLICT DO NOTHING" in query
    assert rows[0]["account_key"] == "B"
    assert pool.conn.commits == 1


def test_split_long_message_respects_limit():
    text = "\n\n".join(["a" * 30] * 10)
    parts = tg.split_long_message(text, max_len=70)

    assert all(len(p) <= 70 for p in parts)
    assert "".join(parts).count("a") == 300
    assert tg.split_long_message("   ") == []


def test_targets_from_env(monkeypatch):
    for i in (1, 4, 5):
        monkeypatch.delenv(f"TELEGRAM_CHAT_ID_{i}", raising=False)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "tok")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "c0")
    monkeypatch.setenv("TELEGRAM_CHAT_ID_2", "c2")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN_2", "tok2")
    monkeypatch.setenv("TELEGRAM_CHAT_ID_3", "c3")

    targets = tg.resolve_targets_from_env()

    assert [(t.name, t.bot_token, t.chat_id) for t in targets] == [
        ("primary", "tok", "c0"),
        ("extra_2", "tok2", "c2"),
        ("extra_3", "tok", "c3"),
    ]


def test_send_message_posts_to_bot_api(monkeypatch):
    post = FakePost()
    monkeypatch.setattr(tg.requests, "post", post)

    assert tg.send_telegram_message("hello", target=_target())

    url, payload = post.calls[0]
    assert url == "https://api.telegram.org/bottok1/sendMessage"
    assert payload["chat_id"] == "chat1"
    assert payload["text"] == "hello"


def test_send_failures_return_false(monkeypatch):
    monkeypatch.setattr(tg.requests, "post", FakePost(status_code=500))
    assert not tg.send_telegram_message("hello", target=_target())

    monkeypatch.setattr(tg.requests, "post", FakePost(exc=requests.ConnectionError("down")))
    assert not tg.send_telegram_message("hello", target=_target())
    assert tg.broadcast_telegram_message("hello", targets=[_target(1), _target(2)]) == 0


def test_format_outcome_message():
    text = tg.format_outcome_message(_result(), liquidator="me")
    assert text.startswith("✅ LIQUIDATED")
    assert "margin ratio: 4.54%" in text
    assert "https://explorer.solana.com/tx/sig1" in text

    text = tg.format_outcome_message(_result(Outcome.ABANDONED, error="retry budget exhausted"))
    assert "ABANDONED" in text
    assert "error: retry budget exhausted" in text


def test_reporter_journals_every_outcome_and_notifies_selected(monkeypatch):
    post = FakePost()
    monkeypatch.setattr(tg.requests, "post", post)
    pool = FakePool()
    reporter = OutcomeReporter(storage=PostgreSQLStorage(pool), telegram_targets=[_target()], liquidator="me")

    reporter.report(_result(Outcome.CONFIRMED))
    reporter.report(_result(Outcome.LOST_RACE))
    reporter.report(_result(Outcome.ABANDONED))

    assert len(pool.conn.executed) == 3
    assert len(post.calls) == 2
    assert reporter.summary() == {"CONFIRMED": 1, "LOST_RACE": 1, "ABANDONED": 1}


def test_reporter_survives_journal_failure():
    reporter = OutcomeReporter(storage=PostgreSQLStorage(FakePool(fail=True)))

    reporter.report(_result())

    assert reporter.summary() == {"CONFIRMED": 1}
