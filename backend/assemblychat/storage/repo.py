"""ChatRepository: the narrow persistence interface used by the pipeline and routes.

Every public method opens its own session from the injected factory, so a
pipeline run never shares a session (or an open transaction) with another
request.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assemblychat.models.contracts import (
    AssemblyStep,
    AssemblyStepRecord,
    ChatMetadata,
    ChatSummary,
    MessageRecord,
    PersistedChat,
)
from assemblychat.models.db import AssemblyStepRow, Chat, Document, Message

logger = structlog.get_logger()


class ChatNotFoundError(LookupError):
    """Raised when a chat id does not exist (or is not a valid id)."""


def _parse_id(chat_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(chat_id))
    except ValueError as exc:
        raise ChatNotFoundError(chat_id) from exc


def truncate_summary(summary: str, max_chars: int) -> str:
    """Cut the summary to ``max_chars`` and mark the cut with "..."."""
    if len(summary) > max_chars:
        return f"{summary[:max_chars]}..."
    return summary


class ChatRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_chat_with_steps(
        self,
        metadata: ChatMetadata,
        summary: str,
        steps: Sequence[AssemblyStep],
    ) -> PersistedChat:
        """Insert document, chat and step rows in one transaction.

        Any failure rolls back the whole unit: no document, chat or step from
        this call is visible afterwards.
        """
        async with self._session_factory() as session, session.begin():
            document = Document(user_id=metadata.user_id, name=metadata.file_name, summary=summary)
            session.add(document)
            await session.flush()

            chat = Chat(title=metadata.title, document_id=document.id)
            session.add(chat)
            await session.flush()

            for step in steps:
                session.add(
                    AssemblyStepRow(
                        chat_id=chat.id,
                        step_index=step.step_index,
                        title=step.title,
                        description=step.description,
                        image_base64=step.image_base64,
                        parts=[
                            part.model_dump(by_alias=True, exclude_none=True)
                            for part in step.parts
                        ],
                    )
                )
            await session.flush()
            persisted = PersistedChat(
                chat_id=str(chat.id),
                title=chat.title,
                file_name=document.name,
                created_at=chat.created_at,
                updated_at=chat.updated_at,
                assembly_steps=list(steps),
            )

        logger.info(
            "chat_persisted",
            chat_id=persisted.chat_id,
            document_id=str(document.id),
            steps=len(steps),
        )
        return persisted

    async def list_chats(self, user_id: str | None = None) -> list[ChatSummary]:
        """Chats newest first, with file name and step count."""
        step_count = (
            select(AssemblyStepRow.chat_id, func.count(AssemblyStepRow.id).label("n"))
            .group_by(AssemblyStepRow.chat_id)
            .subquery()
        )
        stmt = (
            select(Chat, Document.name, func.coalesce(step_count.c.n, 0))
            .outerjoin(Document, Chat.document_id == Document.id)
            .outerjoin(step_count, step_count.c.chat_id == Chat.id)
            .order_by(Chat.created_at.desc())
        )
        if user_id is not None:
            stmt = stmt.where(Document.user_id == user_id)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [
            ChatSummary(
                id=str(chat.id),
                title=chat.title,
                file_name=file_name or "",
                created_at=chat.created_at,
                updated_at=chat.updated_at,
                assembly_step_count=count,
            )
            for chat, file_name, count in rows
        ]

    async def list_steps(self, chat_id: str) -> list[AssemblyStepRecord]:
        chat_uuid = _parse_id(chat_id)
        stmt = (
            select(AssemblyStepRow)
            .where(AssemblyStepRow.chat_id == chat_uuid)
            .order_by(AssemblyStepRow.step_index.asc())
        )
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [
            AssemblyStepRecord(
                id=str(row.id),
                chat_id=str(row.chat_id),
                step_index=row.step_index,
                title=row.title,
                description=row.description,
                image_base64=row.image_base64,
                parts=row.parts or [],
                created_at=row.created_at,
                updated_at=row.updated_at,
            )
            for row in rows
        ]

    async def delete_chat(self, chat_id: str) -> None:
        """Delete a chat (steps and messages cascade) and its orphaned document."""
        chat_uuid = _parse_id(chat_id)
        async with self._session_factory() as session, session.begin():
            chat = await session.get(Chat, chat_uuid)
            if chat is None:
                raise ChatNotFoundError(chat_id)
            document_id = chat.document_id
            await session.delete(chat)
            await session.flush()

            if document_id is not None:
                remaining = await session.scalar(
                    select(func.count(Chat.id)).where(Chat.document_id == document_id)
                )
                if remaining == 0:
                    document = await session.get(Document, document_id)
                    if document is not None:
                        await session.delete(document)

        logger.info("chat_deleted", chat_id=chat_id, document_id=str(document_id))

    async def list_messages(self, chat_id: str) -> list[MessageRecord]:
        chat_uuid = _parse_id(chat_id)
        stmt = select(Message).where(Message.chat_id == chat_uuid).order_by(Message.created_at)
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [_message_record(row) for row in rows]

    async def add_message(self, chat_id: str, content: str, role: str = "user") -> MessageRecord:
        chat_uuid = _parse_id(chat_id)
        async with self._session_factory() as session, session.begin():
            if await session.get(Chat, chat_uuid) is None:
                raise ChatNotFoundError(chat_id)
            message = Message(chat_id=chat_uuid, role=role, content=content)
            session.add(message)
            await session.flush()
            record = _message_record(message)
        return record


def _message_record(row: Message) -> MessageRecord:
    return MessageRecord(
        id=str(row.id),
        chat_id=str(row.chat_id),
        role=row.role,  # type: ignore[arg-type]
        content=row.content,
        created_at=row.created_at,
    )
