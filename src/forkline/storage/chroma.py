"""Worktree state persisted as an append-only event log in ChromaDB."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import Worktree, WorktreeStatus


class ChromaUnavailableError(RuntimeError):
    """Raised when chromadb is missing or the collection cannot be opened."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Forkline."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Forkline."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """One appended record: JSON document plus flat, filterable metadata."""

    id: str
    stream_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


WORKTREE_EVENT = "worktree_update"


def _worktree_stream(worktree_id: str) -> str:
    return f"worktree::{worktree_id}"


class ChromaStore:
    """Event-log state store backed by ChromaDB.

    Every change to a worktree record is appended as a ``worktree_update``
    event on the stream ``worktree::<id>``; reads replay the latest event.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "forkline_state",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = {}

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install forkline with its storage dependencies"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is not None:
            return self._collection
        if self._client is None:
            self._client = self._client_factory()
        self._collection = self._client.get_or_create_collection(self._collection_name)
        return self._collection

    def _parse_timestamp(self, raw: Any) -> datetime:
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        return self._clock()

    def _events_from(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        rows = zip(result.get("ids") or [], result.get("documents") or [], result.get("metadatas") or [])
        events = [
            ChromaEvent(
                id=row_id,
                stream_id=(meta or {}).get("stream_id", ""),
                event_type=(meta or {}).get("event_type", ""),
                document=document,
                metadata=meta or {},
                timestamp=self._parse_timestamp((meta or {}).get("timestamp")),
            )
            for row_id, document, meta in rows
        ]
        # Chroma does not preserve insertion order.
        return sorted(events, key=lambda event: (event.metadata.get("sequence", 0), event.timestamp))

    def _next_sequence(self, collection: CollectionProtocol, stream_id: str) -> int:
        if stream_id not in self._counters:
            # Continue numbering after events written by an earlier process.
            existing = collection.get(where={"stream_id": stream_id})
            sequences = [
                int((metadata or {}).get("sequence", 0))
                for metadata in existing.get("metadatas") or []
            ]
            self._counters[stream_id] = max(sequences, default=0)
        self._counters[stream_id] += 1
        return self._counters[stream_id]

    def ping(self) -> bool:
        """Open the collection, raising ``ChromaUnavailableError`` if chromadb is missing."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        stream_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        """Append one event to ``stream_id`` and return it as stored."""

        collection = self._ensure_collection()
        recorded_at = self._clock()
        event = ChromaEvent(
            id=f"{stream_id}:{uuid.uuid4().hex}",
            stream_id=stream_id,
            event_type=event_type,
            document=body if isinstance(body, str) else json.dumps(body),
            metadata={
                **(metadata or {}),
                "stream_id": stream_id,
                "event_type": event_type,
                "timestamp": recorded_at.isoformat(),
                "sequence": self._next_sequence(collection, stream_id),
            },
            timestamp=recorded_at,
        )
        collection.add(documents=[event.document], metadatas=[event.metadata], ids=[event.id])
        return event

    def fetch_stream_events(self, stream_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        return self._events_from(self._ensure_collection().get(where={"stream_id": stream_id}, limit=limit))

    @staticmethod
    def _mentions(event: ChromaEvent, needle: str) -> bool:
        if needle in event.document.lower():
            return True
        return any(needle in str(value).lower() for value in event.metadata.values())

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        """Return events matching ``filters`` whose document or metadata mentions ``query``.

        Matching is a case-insensitive substring test, not a similarity search.
        """

        result = self._ensure_collection().get(where=filters or None, limit=None if query else limit)
        events = self._events_from(result)
        if query:
            needle = query.lower()
            events = [event for event in events if self._mentions(event, needle)]
        return events[:limit] if limit else events

    # Worktree records

    def _write_worktree(self, worktree: Worktree) -> Worktree:
        payload = {
            "id": worktree.id,
            "session_id": worktree.session_id,
            "requirement_id": worktree.requirement_id,
            "branch_name": worktree.branch_name,
            "worktree_path": str(worktree.worktree_path),
            "status": worktree.status,
            "created_at": worktree.created_at.isoformat(),
            "merged_at": worktree.merged_at.isoformat() if worktree.merged_at else None,
        }
        self.record_event(
            stream_id=_worktree_stream(worktree.id),
            event_type=WORKTREE_EVENT,
            body=payload,
            metadata={
                "worktree_id": worktree.id,
                "owner_session": worktree.session_id,
                "requirement_id": worktree.requirement_id,
                "status": worktree.status,
            },
        )
        return worktree

    @staticmethod
    def _worktree_from_event(event: ChromaEvent) -> Worktree:
        doc = json.loads(event.document)
        merged_raw = doc.get("merged_at")
        return Worktree(
            id=doc["id"],
            session_id=doc["session_id"],
            requirement_id=doc["requirement_id"],
            branch_name=doc["branch_name"],
            worktree_path=Path(doc["worktree_path"]),
            status=doc.get("status", "active"),
            created_at=datetime.fromisoformat(doc["created_at"]),
            merged_at=datetime.fromisoformat(merged_raw) if merged_raw else None,
        )

    def create_worktree(
        self,
        *,
        session_id: str,
        requirement_id: str,
        branch_name: str,
        worktree_path: Path,
    ) -> Worktree:
        worktree = Worktree(
            id=uuid.uuid4().hex,
            session_id=session_id,
            requirement_id=requirement_id,
            branch_name=branch_name,
            worktree_path=Path(worktree_path),
            status="active",
            created_at=self._clock(),
        )
        return self._write_worktree(worktree)

    def get_worktree(self, worktree_id: str) -> Worktree | None:
        events = [
            event
            for event in self.fetch_stream_events(_worktree_stream(worktree_id))
            if event.event_type == WORKTREE_EVENT
        ]
        if not events:
            return None
        return self._worktree_from_event(events[-1])

    def update_worktree(
        self,
        worktree_id: str,
        *,
        status: WorktreeStatus | None = None,
        merged_at: datetime | None = None,
    ) -> Worktree:
        current = self.get_worktree(worktree_id)
        if current is None:
            raise KeyError(f"Worktree '{worktree_id}' not found")
        updated = replace(
            current,
            status=status or current.status,
            merged_at=merged_at or current.merged_at,
        )
        return self._write_worktree(updated)

    def list_worktrees(self, session_id: str | None = None) -> list[Worktree]:
        filters = {"owner_session": session_id} if session_id else {"event_type": WORKTREE_EVENT}
        latest: dict[str, ChromaEvent] = {}
        for event in self.search_events(filters=filters):
            if event.event_type != WORKTREE_EVENT:
                continue
            latest[event.metadata.get("worktree_id", event.stream_id)] = event
        worktrees = [self._worktree_from_event(event) for event in latest.values()]
        worktrees.sort(key=lambda worktree: worktree.created_at)
        return worktrees

    def list_active_worktrees(self, session_id: str) -> list[Worktree]:
        return [worktree for worktree in self.list_worktrees(session_id) if worktree.status == "active"]


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError", "WORKTREE_EVENT"]
