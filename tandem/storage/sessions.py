"""Session store: durable transcripts keyed by session id.

Two implementations of the same async protocol:
- InMemorySessionStore: process-local, for tests and ephemeral use
- SqlSessionStore: SQLAlchemy async, any async database URL

Sessions are listed newest first. A new session becomes the active
one. The last remaining session can never be deleted.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy import select, update

from tandem.agent.models import Message, Role, Session, SessionSummary
from tandem.storage.database import Database
from tandem.storage.models import SessionRecord

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
_TITLE_MAX_LENGTH = 42


def new_session_id() -> str:
    return f"session-{int(datetime.now(UTC).timestamp() * 1000)}-{secrets.token_hex(3)}"


def derive_title(messages: Sequence[Message]) -> str | None:
    """Title from the first non-blank user turn, else the first assistant turn."""
    source = next(
        (m.content for m in messages if m.role == Role.USER and m.content.strip()),
        None,
    )
    if source is None:
        source = next(
            (m.content for m in messages if m.role == Role.ASSISTANT and m.content.strip()),
            "",
        )
    sanitized = " ".join(source.split())
    if not sanitized:
        return None
    if len(sanitized) > _TITLE_MAX_LENGTH:
        return sanitized[:_TITLE_MAX_LENGTH].rstrip() + "…"
    return sanitized


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionStore(Protocol):
    async def create(self, title: str | None = None, system_prompt: str | None = None) -> Session: ...

    async def get(self, session_id: str) -> Session | None: ...

    async def list_summaries(self) -> list[SessionSummary]: ...

    async def update_messages(self, session_id: str, messages: Sequence[Message]) -> Session | None: ...

    async def rename(self, session_id: str, title: str) -> Session | None: ...

    async def delete(self, session_id: str) -> bool: ...

    async def set_active(self, session_id: str) -> bool: ...

    async def get_active(self) -> Session | None: ...

    async def ensure_bootstrapped(self) -> Session: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemorySessionStore:
    def __init__(self, default_system_prompt: str = "") -> None:
        self.default_system_prompt = default_system_prompt
        self._sessions: list[Session] = []
        self._active_id: str | None = None

    def _find(self, session_id: str) -> int | None:
        return next((i for i, s in enumerate(self._sessions) if s.id == session_id), None)

    async def create(self, title: str | None = None, system_prompt: str | None = None) -> Session:
        now = _utcnow()
        prompt = self.default_system_prompt if system_prompt is None else system_prompt
        session = Session(
            id=new_session_id(),
            title=title or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
            messages=(Message.system(prompt),),
        )
        self._sessions.insert(0, session)
        self._active_id = session.id
        return session

    async def get(self, session_id: str) -> Session | None:
        index = self._find(session_id)
        return None if index is None else self._sessions[index]

    async def list_summaries(self) -> list[SessionSummary]:
        return [s.summary() for s in self._sessions]

    async def update_messages(self, session_id: str, messages: Sequence[Message]) -> Session | None:
        index = self._find(session_id)
        if index is None:
            return None
        current = self._sessions[index]
        title = current.title
        if title == DEFAULT_TITLE:
            title = derive_title(messages) or title
        updated = current.model_copy(
            update={"messages": tuple(messages), "title": title, "updated_at": _utcnow()}
        )
        self._sessions[index] = updated
        return updated

    async def rename(self, session_id: str, title: str) -> Session | None:
        index = self._find(session_id)
        if index is None:
            return None
        current = self._sessions[index]
        updated = current.model_copy(
            update={"title": title.strip() or current.title, "updated_at": _utcnow()}
        )
        self._sessions[index] = updated
        return updated

    async def delete(self, session_id: str) -> bool:
        index = self._find(session_id)
        if index is None or len(self._sessions) <= 1:
            return False
        del self._sessions[index]
        if self._active_id == session_id:
            self._active_id = self._sessions[0].id
        return True

    async def set_active(self, session_id: str) -> bool:
        if self._find(session_id) is None:
            return False
        self._active_id = session_id
        return True

    async def get_active(self) -> Session | None:
        if self._active_id is None:
            return None
        return await self.get(self._active_id)

    async def ensure_bootstrapped(self) -> Session:
        if not self._sessions:
            return await self.create()
        active = await self.get_active()
        if active is None:
            active = self._sessions[0]
            self._active_id = active.id
        return active


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _dump_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    return [m.model_dump(mode="json", exclude_none=True, exclude_defaults=True) for m in messages]


def _load_messages(session_id: str, raw: Any) -> tuple[Message, ...]:
    """Decode stored messages; anything undecodable yields an empty transcript."""
    try:
        return tuple(Message.model_validate(item) for item in raw or ())
    except (ValidationError, TypeError) as e:
        logger.warning("Stored transcript for %s is malformed: %s", session_id, e)
        return ()


def _to_session(record: SessionRecord) -> Session:
    return Session(
        id=record.id,
        title=record.title,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
        messages=_load_messages(record.id, record.messages),
    )


def _to_summary(record: SessionRecord) -> SessionSummary:
    return SessionSummary(
        id=record.id,
        title=record.title,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


class SqlSessionStore:
    def __init__(self, database: Database, default_system_prompt: str = "") -> None:
        self._db = database
        self.default_system_prompt = default_system_prompt

    async def create(self, title: str | None = None, system_prompt: str | None = None) -> Session:
        now = _utcnow()
        prompt = self.default_system_prompt if system_prompt is None else system_prompt
        record = SessionRecord(
            id=new_session_id(),
            title=title or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
            messages=_dump_messages([Message.system(prompt)]),
            is_active=True,
        )
        async with self._db.session() as session:
            await session.execute(update(SessionRecord).values(is_active=False))
            session.add(record)
            await session.commit()
            logger.debug("Created session %s", record.id)
            return _to_session(record)

    async def get(self, session_id: str) -> Session | None:
        async with self._db.session() as session:
            record = await session.get(SessionRecord, session_id)
            return None if record is None else _to_session(record)

    async def list_summaries(self) -> list[SessionSummary]:
        async with self._db.session() as session:
            result = await session.execute(
                select(SessionRecord).order_by(SessionRecord.created_at.desc(), SessionRecord.id.desc())
            )
            return [_to_summary(r) for r in result.scalars()]

    async def update_messages(self, session_id: str, messages: Sequence[Message]) -> Session | None:
        async with self._db.session() as session:
            record = await session.get(SessionRecord, session_id)
            if record is None:
                return None
            record.messages = _dump_messages(messages)
            record.updated_at = _utcnow()
            if record.title == DEFAULT_TITLE:
                record.title = derive_title(messages) or record.title
            await session.commit()
            return _to_session(record)

    async def rename(self, session_id: str, title: str) -> Session | None:
        async with self._db.session() as session:
            record = await session.get(SessionRecord, session_id)
            if record is None:
                return None
            record.title = title.strip() or record.title
            record.updated_at = _utcnow()
            await session.commit()
            return _to_session(record)

    async def delete(self, session_id: str) -> bool:
        async with self._db.session() as session:
            ids = (await session.execute(
                select(SessionRecord.id).order_by(SessionRecord.created_at.desc(), SessionRecord.id.desc())
            )).scalars().all()
            if session_id not in ids or len(ids) <= 1:
                return False

            record = await session.get(SessionRecord, session_id)
            was_active = record.is_active
            await session.delete(record)
            if was_active:
                successor = next(i for i in ids if i != session_id)
                await session.execute(
                    update(SessionRecord).where(SessionRecord.id == successor).values(is_active=True)
                )
            await session.commit()
            return True

    async def set_active(self, session_id: str) -> bool:
        async with self._db.session() as session:
            if await session.get(SessionRecord, session_id) is None:
                return False
            await session.execute(update(SessionRecord).values(is_active=False))
            await session.execute(
                update(SessionRecord).where(SessionRecord.id == session_id).values(is_active=True)
            )
            await session.commit()
            return True

    async def get_active(self) -> Session | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(SessionRecord).where(SessionRecord.is_active.is_(True)).limit(1)
            )
            record = result.scalars().first()
            return None if record is None else _to_session(record)

    async def ensure_bootstrapped(self) -> Session:
        active = await self.get_active()
        if active is not None:
            return active
        summaries = await self.list_summaries()
        if not summaries:
            return await self.create()
        await self.set_active(summaries[0].id)
        return await self.get(summaries[0].id)
