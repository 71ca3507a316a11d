"""
persistence.py - Polyglot Engine · Persistence Sink boundary
=============================================================
The orchestrator only appends: it opens a discussion, appends sealed turns
in order, ends the discussion and may attach feedback afterwards.  It never
reads a discussion back mid-session.

JsonFileSink
    Local JSON store (one file, every discussion), rewritten atomically on
    each call.

SupabaseSink
    PostgREST over httpx against ``chat_conversations`` / ``chat_messages``
    and ``reviews``.

Every failure is raised as PersistenceError; the caller decides it is not
fatal.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx
from pydantic import TypeAdapter

from .config import PersistenceConfig
from .errors import PersistenceError
from .models import (
    Discussion,
    DiscussionRef,
    DiscussionSummary,
    Feedback,
    Speaker,
    TurnRecord,
    new_turn_id,
    utc_now,
)

log = logging.getLogger("polyglot.persistence")


class PersistenceSink(ABC):
    @abstractmethod
    async def create_discussion(self, name: str) -> DiscussionRef: ...

    @abstractmethod
    async def append_turn(self, discussion_id: str, speaker: Speaker, text: str) -> None: ...

    @abstractmethod
    async def end_discussion(self, discussion_id: str) -> DiscussionSummary: ...

    @abstractmethod
    async def attach_feedback(self, discussion_id: str, rating: int, notes: str = "") -> None: ...

    async def aclose(self) -> None:
        return None


def summarize(discussion: Discussion) -> DiscussionSummary:
    return DiscussionSummary(
        id=discussion.id,
        name=discussion.name,
        start_time=discussion.start_time,
        end_time=discussion.end_time,
        turn_count=len(discussion.turns),
        user_turns=sum(1 for t in discussion.turns if t.speaker is Speaker.USER),
        assistant_turns=sum(1 for t in discussion.turns if t.speaker is Speaker.ASSISTANT),
    )


# ---------------------------------------------------------------------------
# Local JSON store
# ---------------------------------------------------------------------------

_DISCUSSIONS = TypeAdapter(list[Discussion])


class JsonFileSink(PersistenceSink):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._discussions: dict[str, Discussion] = {d.id: d for d in self._load()}

    def _load(self) -> list[Discussion]:
        if not self.path.exists():
            return []
        try:
            return _DISCUSSIONS.validate_json(self.path.read_bytes())
        except Exception as exc:
            raise PersistenceError(f"cannot read {self.path}: {exc}") from exc

    def _write(self) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        data = _DISCUSSIONS.dump_json(list(self._discussions.values()), indent=2)
        tmp.write_bytes(data)
        os.replace(tmp, self.path)

    async def _flush(self) -> None:
        try:
            await asyncio.to_thread(self._write)
        except OSError as exc:
            raise PersistenceError(f"cannot write {self.path}: {exc}") from exc

    def _get(self, discussion_id: str) -> Discussion:
        try:
            return self._discussions[discussion_id]
        except KeyError:
            raise PersistenceError(f"unknown discussion {discussion_id}") from None

    def discussions(self) -> list[Discussion]:
        return list(self._discussions.values())

    async def create_discussion(self, name: str) -> DiscussionRef:
        async with self._lock:
            discussion = Discussion(id=uuid.uuid4().hex, name=name)
            self._discussions[discussion.id] = discussion
            try:
                await self._flush()
            except PersistenceError:
                del self._discussions[discussion.id]
                raise
        log.info("event=discussion_created id=%s backend=json", discussion.id)
        return DiscussionRef(id=discussion.id, name=name)

    async def append_turn(self, discussion_id: str, speaker: Speaker, text: str) -> None:
        async with self._lock:
            discussion = self._get(discussion_id)
            discussion.turns.append(TurnRecord(id=new_turn_id(), speaker=speaker, text=text))
            try:
                await self._flush()
            except PersistenceError:
                # Memory must not run ahead of the file.
                discussion.turns.pop()
                raise

    async def end_discussion(self, discussion_id: str) -> DiscussionSummary:
        async with self._lock:
            discussion = self._get(discussion_id)
            previous, discussion.end_time = discussion.end_time, utc_now()
            try:
                await self._flush()
            except PersistenceError:
                discussion.end_time = previous
                raise
        log.info("event=discussion_ended id=%s turns=%d backend=json", discussion_id, len(discussion.turns))
        return summarize(discussion)

    async def attach_feedback(self, discussion_id: str, rating: int, notes: str = "") -> None:
        async with self._lock:
            discussion = self._get(discussion_id)
            previous, discussion.feedback = discussion.feedback, Feedback(rating=rating, notes=notes)
            try:
                await self._flush()
            except PersistenceError:
                discussion.feedback = previous
                raise


# ---------------------------------------------------------------------------
# Supabase (PostgREST)
# ---------------------------------------------------------------------------

class SupabaseSink(PersistenceSink):
    CONVERSATIONS = "chat_conversations"
    MESSAGES = "chat_messages"
    REVIEWS = "reviews"

    def __init__(
        self,
        url: str,
        key: str,
        user_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        if not url or not key:
            raise PersistenceError("Supabase URL and key are required")
        self.user_id = user_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base = f"{url.rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    async def _request(self, method: str, table: str, **kwargs) -> list[dict]:
        try:
            resp = await self._client.request(method, f"{self._base}/{table}", headers=self._headers, **kwargs)
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Supabase {method} {table}: {exc}") from exc
        if not resp.is_success:
            raise PersistenceError(f"Supabase HTTP {resp.status_code} on {table}: {resp.text[:200]}")
        if not resp.content:
            return []
        return resp.json()

    async def create_discussion(self, name: str) -> DiscussionRef:
        row: dict = {"title": name or "New Conversation"}
        if self.user_id:
            row["user_id"] = self.user_id
        created = await self._request("POST", self.CONVERSATIONS, json=row)
        if not created:
            raise PersistenceError("Supabase returned no conversation row")
        log.info("event=discussion_created id=%s backend=supabase", created[0]["id"])
        return DiscussionRef(id=str(created[0]["id"]), name=name)

    async def append_turn(self, discussion_id: str, speaker: Speaker, text: str) -> None:
        await self._request(
            "POST", self.MESSAGES,
            json={"conversation_id": discussion_id, "role": speaker.value, "content": text},
        )
        await self._request(
            "PATCH", self.CONVERSATIONS,
            params={"id": f"eq.{discussion_id}"},
            json={"updated_at": utc_now().isoformat()},
        )

    async def end_discussion(self, discussion_id: str) -> DiscussionSummary:
        rows = await self._request(
            "PATCH", self.CONVERSATIONS,
            params={"id": f"eq.{discussion_id}"},
            json={"updated_at": utc_now().isoformat()},
        )
        messages = await self._request(
            "GET", self.MESSAGES,
            params={"conversation_id": f"eq.{discussion_id}", "select": "role"},
        )
        conversation = rows[0] if rows else {}
        roles = [m.get("role") for m in messages]
        log.info("event=discussion_ended id=%s turns=%d backend=supabase", discussion_id, len(roles))
        return DiscussionSummary(
            id=discussion_id,
            name=conversation.get("title", ""),
            start_time=conversation.get("created_at"),
            end_time=conversation.get("updated_at"),
            turn_count=len(roles),
            user_turns=roles.count(Speaker.USER.value),
            assistant_turns=roles.count(Speaker.ASSISTANT.value),
        )

    async def attach_feedback(self, discussion_id: str, rating: int, notes: str = "") -> None:
        feedback = Feedback(rating=rating, notes=notes)
        await self._request(
            "POST", self.REVIEWS,
            json={
                "conversation_id": discussion_id,
                "rating": feedback.rating,
                "comment": feedback.notes,
                "created_at": feedback.created_at.isoformat(),
            },
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def open_sink(config: PersistenceConfig) -> PersistenceSink:
    if config.backend == "supabase":
        return SupabaseSink(config.supabase_url, config.supabase_key, user_id=config.user_id)
    return JsonFileSink(config.path)
