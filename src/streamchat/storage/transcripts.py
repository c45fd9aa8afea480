"""Conversation repository: each conversation is stored as one JSON document."""

from __future__ import annotations

from streamchat.conversation.models import Conversation, ConversationSummary
from streamchat.log import get_logger
from streamchat.storage.database import Database

logger = get_logger(__name__)


class TranscriptRepository:
    def __init__(self, db: Database):
        self._db = db

    async def save(self, conversation: Conversation) -> None:
        """Insert or replace the whole conversation document."""
        await self._db.conn.execute(
            """INSERT INTO conversations (id, title, mode, document_json, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   title = excluded.title,
                   mode = excluded.mode,
                   document_json = excluded.document_json,
                   updated_at = excluded.updated_at""",
            (
                conversation.id,
                conversation.title,
                conversation.mode,
                conversation.model_dump_json(by_alias=True),
                conversation.created_at,
                conversation.updated_at,
            ),
        )
        await self._db.conn.commit()

    async def get(self, conversation_id: str) -> Conversation | None:
        cursor = await self._db.conn.execute(
            "SELECT document_json FROM conversations WHERE id = ?", (conversation_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Conversation.model_validate_json(row["document_json"])

    async def list_summaries(self, limit: int = 100) -> list[ConversationSummary]:
        """Most recently updated first."""
        cursor = await self._db.conn.execute(
            """SELECT id, title, mode, created_at, updated_at FROM conversations
               ORDER BY updated_at DESC LIMIT ?""",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            ConversationSummary(
                id=row["id"],
                title=row["title"],
                mode=row["mode"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    async def delete(self, conversation_id: str) -> bool:
        cursor = await self._db.conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        await self._db.conn.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("conversation_deleted", conversation_id=conversation_id)
        return deleted
