"""
SQLAlchemy repositories.

Async ORM implementations of 'MessageDatabase' and 'ConversationDatabase'. Any
SQLAlchemy async driver works ('sqlite+aiosqlite', 'postgresql+asyncpg'). The
tree linkage is stored as a plain 'parent_id' column; children are recovered at
query time by the path builder, never stored.

Unlike the in-memory store, 'SQLMessageDatabase.set_active_flags' runs both
flag updates inside one transaction, so readers never observe a half-switched
path.
"""

from collections.abc import Sequence
from typing import Any

from loguru import logger
from sqlalchemy import JSON, BigInteger, Boolean, Column, Index, Integer, String, Text, delete, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from conversation_tree.conversation_database.data_models.conversation import Conversation, ConversationDatabase
from conversation_tree.conversation_database.data_models.message import (
    Attachment,
    Message,
    MessageDatabase,
    MessageVersion,
    apply_content_edit,
    apply_content_overwrite,
    apply_version_selection,
    prepare_new_message,
)
from conversation_tree.errors import ConversationNotFoundError, MessageNotFoundError
from conversation_tree.llms.base import Roles
from conversation_tree.utils.time import get_current_timestamp


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ConversationRecord(Base):
    __tablename__ = "conversations"

    __table_args__ = (Index("ix_conversations_user_updated", "user_id", "update_timestamp"),)

    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False)
    title = Column(String(200), nullable=False)
    active_path = Column(JSON, nullable=False, default=list)
    create_timestamp = Column(BigInteger, nullable=False)
    update_timestamp = Column(BigInteger, nullable=False)


class MessageRecord(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True)
    conversation_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(255), nullable=True, index=True)
    role = Column(String(20), nullable=False)  # "user", "assistant", "system"
    content = Column(Text, nullable=False)
    create_timestamp = Column(BigInteger, nullable=False, index=True)

    # Tree linkage
    parent_id = Column(String(64), nullable=True, index=True)
    branch_index = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=False)

    # Content history
    edited = Column(Boolean, nullable=False, default=False)
    versions = Column(JSON, nullable=False, default=list)
    current_version_index = Column(Integer, nullable=False, default=0)

    files = Column(JSON, nullable=False, default=list)
    meta = Column("metadata", JSON, nullable=False, default=dict)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo, future=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create the tables if they do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _message_from_record(record: MessageRecord) -> Message:
    return Message(
        id=record.id,
        user_id=record.user_id,
        conversation_id=record.conversation_id,
        content=record.content,
        role=Roles(record.role),
        create_timestamp=record.create_timestamp,
        parent_id=record.parent_id,
        branch_index=record.branch_index,
        is_active=record.is_active,
        edited=record.edited,
        versions=[MessageVersion.model_validate(version) for version in record.versions or []],
        current_version_index=record.current_version_index,
        files=[Attachment.model_validate(file) for file in record.files or []],
        metadata=dict(record.meta or {}),
    )


def _write_message(record: MessageRecord, message: Message) -> None:
    record.content = message.content
    record.edited = message.edited
    record.versions = [version.model_dump() for version in message.versions]
    record.current_version_index = message.current_version_index
    record.files = [file.model_dump() for file in message.files]
    record.meta = dict(message.metadata)


def _conversation_from_record(record: ConversationRecord) -> Conversation:
    return Conversation(
        id=record.id,
        user_id=record.user_id,
        title=record.title,
        active_path=list(record.active_path or []),
        create_timestamp=record.create_timestamp,
        update_timestamp=record.update_timestamp,
    )


class SQLMessageDatabase(MessageDatabase):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    @staticmethod
    async def _get_record(session: AsyncSession, message_id: str) -> MessageRecord:
        record = await session.get(MessageRecord, message_id)
        if record is None:
            raise MessageNotFoundError(message_id)
        return record

    async def create_message(self, message: Message) -> Message:
        async with self.session_factory.begin() as session:
            parent_record = await session.get(MessageRecord, message.parent_id) if message.parent_id else None
            parent = _message_from_record(parent_record) if parent_record is not None else None
            stored = prepare_new_message(message, parent)
            record = MessageRecord(
                id=stored.id,
                conversation_id=stored.conversation_id,
                user_id=stored.user_id,
                role=str(stored.role),
                create_timestamp=stored.create_timestamp,
                parent_id=stored.parent_id,
                branch_index=stored.branch_index,
                is_active=stored.is_active,
            )
            _write_message(record, stored)
            session.add(record)
        return stored

    async def get_messages_by_conversation_id(self, conversation_id: str) -> list[Message]:
        async with self.session_factory() as session:
            result = await session.execute(select(MessageRecord).filter(MessageRecord.conversation_id == conversation_id))
            return [_message_from_record(record) for record in result.scalars().all()]

    async def get_message_by_id(self, message_id: str) -> Message:
        async with self.session_factory() as session:
            return _message_from_record(await self._get_record(session, message_id))

    async def update_message(
        self,
        message_id: str,
        content: str | None = None,
        files: list[Attachment] | None = None,
        metadata: dict[str, Any] | None = None,
        track_version: bool = True,
    ) -> Message:
        async with self.session_factory.begin() as session:
            record = await self._get_record(session, message_id)
            message = _message_from_record(record)
            if content is not None:
                if track_version:
                    message = apply_content_edit(message, content)
                else:
                    message = apply_content_overwrite(message, content)
            if files is not None:
                message = message.model_copy(update={"files": list(files)})
            if metadata is not None:
                message = message.model_copy(update={"metadata": {**message.metadata, **metadata}})
            _write_message(record, message)
        return message

    async def select_version(self, message_id: str, index: int) -> Message:
        async with self.session_factory.begin() as session:
            record = await self._get_record(session, message_id)
            message = apply_version_selection(_message_from_record(record), index)
            _write_message(record, message)
        return message

    async def delete_message(self, message_id: str) -> bool:
        async with self.session_factory.begin() as session:
            result = await session.execute(delete(MessageRecord).where(MessageRecord.id == message_id))
        return result.rowcount > 0

    async def activate_messages(self, conversation_id: str, message_ids: Sequence[str]) -> None:
        async with self.session_factory.begin() as session:
            await self._activate(session, conversation_id, message_ids)

    async def deactivate_messages_except(self, conversation_id: str, message_ids: Sequence[str]) -> None:
        async with self.session_factory.begin() as session:
            await self._deactivate_except(session, conversation_id, message_ids)

    async def set_active_flags(self, conversation_id: str, active_ids: Sequence[str]) -> None:
        async with self.session_factory.begin() as session:
            await self._activate(session, conversation_id, active_ids)
            await self._deactivate_except(session, conversation_id, active_ids)
        logger.debug(f"Active flags of conversation {conversation_id} set on {len(active_ids)} messages (atomic)")

    @staticmethod
    async def _activate(session: AsyncSession, conversation_id: str, message_ids: Sequence[str]) -> None:
        await session.execute(
            update(MessageRecord)
            .where(MessageRecord.conversation_id == conversation_id, MessageRecord.id.in_(list(message_ids)))
            .values(is_active=True)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def _deactivate_except(session: AsyncSession, conversation_id: str, message_ids: Sequence[str]) -> None:
        await session.execute(
            update(MessageRecord)
            .where(MessageRecord.conversation_id == conversation_id, MessageRecord.id.not_in(list(message_ids)))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )


class SQLConversationDatabase(ConversationDatabase):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    @staticmethod
    async def _get_record(session: AsyncSession, conversation_id: str) -> ConversationRecord:
        record = await session.get(ConversationRecord, conversation_id)
        if record is None:
            raise ConversationNotFoundError(conversation_id)
        return record

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self.session_factory.begin() as session:
            session.add(
                ConversationRecord(
                    id=conversation.id,
                    user_id=conversation.user_id,
                    title=conversation.title,
                    active_path=list(conversation.active_path),
                    create_timestamp=conversation.create_timestamp,
                    update_timestamp=conversation.update_timestamp,
                )
            )
        return conversation

    async def get_conversations_by_user_id(self, user_id: str) -> list[Conversation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ConversationRecord)
                .filter(ConversationRecord.user_id == user_id)
                .order_by(ConversationRecord.update_timestamp.desc())
            )
            return [_conversation_from_record(record) for record in result.scalars().all()]

    async def get_conversation_by_id(self, conversation_id: str) -> Conversation:
        async with self.session_factory() as session:
            return _conversation_from_record(await self._get_record(session, conversation_id))

    async def update_title(self, conversation_id: str, title: str) -> Conversation:
        async with self.session_factory.begin() as session:
            record = await self._get_record(session, conversation_id)
            record.title = title
            record.update_timestamp = get_current_timestamp()
            return _conversation_from_record(record)

    async def update_active_path(self, conversation_id: str, active_path: list[str]) -> Conversation:
        async with self.session_factory.begin() as session:
            record = await self._get_record(session, conversation_id)
            record.active_path = list(active_path)
            record.update_timestamp = get_current_timestamp()
            return _conversation_from_record(record)

    async def touch(self, conversation_id: str) -> Conversation:
        async with self.session_factory.begin() as session:
            record = await self._get_record(session, conversation_id)
            record.update_timestamp = get_current_timestamp()
            return _conversation_from_record(record)

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self.session_factory.begin() as session:
            result = await session.execute(delete(ConversationRecord).where(ConversationRecord.id == conversation_id))
        return result.rowcount > 0
