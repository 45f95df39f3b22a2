from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from forkline.storage import ChromaStore

from conftest import StubClient


def test_record_and_fetch_events(store: ChromaStore) -> None:
    event = store.record_event(
        stream_id="stream-1",
        event_type="log",
        body={"message": "started"},
        metadata={"level": "INFO"},
    )

    assert event.stream_id == "stream-1"
    assert event.metadata["sequence"] == 1

    events = store.fetch_stream_events("stream-1")
    assert len(events) == 1
    assert events[0].metadata["level"] == "INFO"
    assert events[0].document == '{"message": "started"}'


def test_sequence_increments(store: ChromaStore) -> None:
    store.record_event(stream_id="stream-2", event_type="a", body="A")
    store.record_event(stream_id="stream-2", event_type="b", body="B")

    events = store.fetch_stream_events("stream-2")
    sequences = [event.metadata["sequence"] for event in events]
    assert sequences == [1, 2]


def test_sequence_continues_after_restart(tmp_path: Path, stub_client: StubClient) -> None:
    first = ChromaStore(tmp_path, client_factory=lambda: stub_client)
    first.record_event(stream_id="stream-3", event_type="a", body="A")
    first.record_event(stream_id="stream-3", event_type="b", body="B")

    second = ChromaStore(tmp_path, client_factory=lambda: stub_client)
    event = second.record_event(stream_id="stream-3", event_type="c", body="C")

    assert event.metadata["sequence"] == 3


def test_search_filters(store: ChromaStore) -> None:
    store.record_event(stream_id="s", event_type="note", body="Investigate auth", metadata={"area": "auth"})
    store.record_event(stream_id="s", event_type="note", body="Fix logging", metadata={})
    store.record_event(stream_id="s", event_type="other", body="auth again")

    results = store.search_events("auth", filters={"event_type": "note"})
    assert len(results) == 1
    assert "auth" in results[0].document


def test_search_applies_limit_after_query(store: ChromaStore) -> None:
    for idx in range(3):
        store.record_event(stream_id="s", event_type="note", body=f"noise {idx}")
    store.record_event(stream_id="s", event_type="note", body="merge conflict in app.py")

    results = store.search_events("conflict", limit=1)

    assert [event.document for event in results] == ["merge conflict in app.py"]
    assert len(store.search_events(limit=2)) == 2


def test_worktree_lifecycle(store: ChromaStore, clock) -> None:
    created = store.create_worktree(
        session_id="sess-1",
        requirement_id="req-1",
        branch_name="feature/req-1-login",
        worktree_path=Path("/tmp/work/req-1"),
    )
    assert created.status == "active"
    assert created.merged_at is None
    assert created.created_at == clock()

    merged_at = datetime.fromisoformat("2025-01-02T00:00:00+00:00")
    updated = store.update_worktree(created.id, status="merged", merged_at=merged_at)
    assert updated.status == "merged"

    fetched = store.get_worktree(created.id)
    assert fetched is not None
    assert fetched.status == "merged"
    assert fetched.merged_at == merged_at
    assert fetched.worktree_path == Path("/tmp/work/req-1")
    assert fetched.created_at == created.created_at


def test_update_unknown_worktree_raises(store: ChromaStore) -> None:
    with pytest.raises(KeyError):
        store.update_worktree("missing", status="abandoned")


def test_list_worktrees_replays_latest_state(store: ChromaStore, clock) -> None:
    first = store.create_worktree(
        session_id="sess-1", requirement_id="req-1", branch_name="feature/a", worktree_path=Path("/tmp/a")
    )
    clock.advance(1)
    second = store.create_worktree(
        session_id="sess-1", requirement_id="req-2", branch_name="feature/b", worktree_path=Path("/tmp/b")
    )
    store.create_worktree(
        session_id="sess-2", requirement_id="req-3", branch_name="feature/c", worktree_path=Path("/tmp/c")
    )
    store.update_worktree(first.id, status="abandoned")

    listed = store.list_worktrees("sess-1")
    assert [worktree.id for worktree in listed] == [first.id, second.id]
    assert listed[0].status == "abandoned"

    active = store.list_active_worktrees("sess-1")
    assert [worktree.id for worktree in active] == [second.id]

    assert len(store.list_worktrees()) == 3


def test_worktree_metadata_has_no_none_values(store: ChromaStore, stub_client: StubClient) -> None:
    store.create_worktree(
        session_id="sess-1", requirement_id="req-1", branch_name="feature/a", worktree_path=Path("/tmp/a")
    )

    records = stub_client.collections["forkline_state"].records
    assert records
    assert all(value is not None for value in records[0].metadata.values())
