"""Tests for the disk-backed chat store and fire-and-forget helpers."""

from __future__ import annotations

import logging

import pytest

from agent import events, persistence
from agent.persistence import BestEffortResult
from agent.session import ChatStore


@pytest.fixture
def store(tmp_path) -> ChatStore:
    return ChatStore(tmp_path / "sessions")


def test_ensure_session_is_an_upsert(store) -> None:
    first = store.ensure_session("s1")
    second = store.ensure_session("s1")

    assert first["id"] == "s1"
    assert second["created_at"] == first["created_at"]
    assert second["updated_at"] >= first["updated_at"]
    assert store.get_metadata("s1")["id"] == "s1"


def test_messages_are_appended_in_order(store) -> None:
    assert persistence.ensure_session(store, "s1") == BestEffortResult(ok=True)
    persistence.save_user_message(store, "s1", "spinel", "relax this structure")
    persistence.save_assistant_message(
        store, "s1", "spinel", "Done.", [{"type": "text", "content": "Done."}]
    )

    records = store.list_messages("s1")

    assert [(r["role"], r["mode"], r["content"]) for r in records] == [
        ("user", "spinel", "relax this structure"),
        ("assistant", "spinel", "Done."),
    ]
    assert records[0]["blocks"] is None
    assert records[1]["blocks"] == [{"type": "text", "content": "Done."}]


def test_uploaded_file_is_stored_with_metadata(store) -> None:
    result = persistence.save_uploaded_file(store, "s1", "POSCAR", b"Si\n1.0\n")

    assert result.ok
    uploads = store.list_uploads("s1")
    assert len(uploads) == 1
    assert uploads[0]["original_name"] == "POSCAR"
    assert uploads[0]["size"] == 8
    assert uploads[0]["filename"].endswith("-POSCAR")
    stored = store.session_dir("s1") / "uploads" / uploads[0]["filename"]
    assert stored.read_bytes() == b"Si\n1.0\n"


def test_failures_are_logged_not_raised(store, monkeypatch, caplog) -> None:
    def broken(*args, **kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr(store, "append_message", broken)

    with caplog.at_level(logging.WARNING, logger="spinel"):
        result = persistence.save_user_message(store, "s1", "vanilla", "hi")

    assert result == BestEffortResult(ok=False, error="read-only file system")
    assert "save_user_message failed" in caplog.text


def test_invalid_session_id_is_a_soft_failure(store) -> None:
    result = persistence.ensure_session(store, "../escape")

    assert not result.ok
    assert "Invalid session id" in result.error


def test_fire_and_forget_runs_on_a_worker_thread(store) -> None:
    future = persistence.fire_and_forget(persistence.ensure_session, store, "s2")

    assert future.result(timeout=5) == BestEffortResult(ok=True)
    assert store.get_metadata("s2") is not None


def test_list_messages_for_missing_session(store) -> None:
    with pytest.raises(FileNotFoundError):
        store.list_messages("ghost")


@pytest.mark.parametrize("messages, expected", [
    ([{"role": "user", "content": "plain"}], "plain"),
    ([{"role": "user", "content": [
        {"type": "text", "text": "line one"},
        {"type": "image", "source": {}},
        {"type": "text", "text": "line two"},
    ]}], "line one\nline two"),
    ([{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}], ""),
    ([], ""),
])
def test_last_user_text(messages, expected) -> None:
    assert persistence.last_user_text(messages) == expected


def test_transcript_blocks_hide_image_payloads() -> None:
    streamed = [
        events.text("Here is the plot."),
        events.code("plt.plot()"),
        events.image("iVBORw0KGgo="),
        events.cap_reached(10),
    ]

    blocks = persistence.transcript_blocks(streamed + [events.done()])

    assert blocks == [
        {"type": "text", "content": "Here is the plot."},
        {"type": "code", "content": "plt.plot()"},
        {"type": "image", "content": "[base64]"},
        {"type": "cap_reached", "content": "10"},
    ]
    assert persistence.transcript_text(streamed) == "Here is the plot."


def test_transcript_blocks_keep_execution_errors() -> None:
    streamed = [
        events.code("1/0"),
        events.error("ZeroDivisionError: division by zero"),
        events.text("Division by zero; using 1 instead."),
    ]

    blocks = persistence.transcript_blocks(streamed + [events.done()])

    assert blocks == [
        {"type": "code", "content": "1/0"},
        {"type": "error", "content": "ZeroDivisionError: division by zero"},
        {"type": "text", "content": "Division by zero; using 1 instead."},
    ]
