"""Message versions and branching.

A message key is stable for the life of the conversation. Retrying an answer
appends a sibling version under the same key; earlier versions are never
touched, only the ``selected`` index moves.
"""

from __future__ import annotations

from streamchat.conversation.models import (
    Conversation,
    Message,
    MessageVersion,
    TextBlock,
    new_id,
)
from streamchat.core.errors import Conflict, NotFound
from streamchat.core.types import Role, VersionStatus
from streamchat.log import get_logger

logger = get_logger(__name__)


class VersionManager:
    def add_user_message(self, conversation: Conversation, content: str) -> Message:
        """Append a user message whose single version is already completed."""
        message = Message(
            key=new_id("msg_"),
            role=Role.USER,
            versions=[
                MessageVersion(
                    id=new_id("ver_"),
                    status=VersionStatus.COMPLETED,
                    blocks=[TextBlock(index=0, text=content)],
                )
            ],
        )
        conversation.messages.append(message)
        if conversation.title == "New conversation" and content.strip():
            conversation.title = _title_from(content)
        conversation.touch()
        return message

    def add_assistant_message(self, conversation: Conversation) -> tuple[Message, MessageVersion]:
        """Append an assistant placeholder with one streaming version."""
        message = Message(key=new_id("msg_"), role=Role.ASSISTANT)
        conversation.messages.append(message)
        version_id = self.create_version(conversation, message.key)
        return message, self._version(message, version_id)

    def create_version(self, conversation: Conversation, message_key: str) -> str:
        """Append a streaming version to a message and select it."""
        message = self._message(conversation, message_key)
        streaming = message.streaming_version
        if streaming is not None:
            raise Conflict(f"message {message_key} already has a streaming version ({streaming.id})")
        version = MessageVersion(id=new_id("ver_"))
        message.versions.append(version)
        message.selected = len(message.versions) - 1
        conversation.touch()
        logger.debug(
            "version_created",
            conversation_id=conversation.id,
            message_key=message_key,
            version_id=version.id,
            count=len(message.versions),
        )
        return version.id

    def retry(self, conversation: Conversation, message_key: str) -> tuple[str, str]:
        """Create a new version of an assistant message.

        Returns the new version id and the user input that the message answers.
        """
        message = self._message(conversation, message_key)
        if message.role is not Role.ASSISTANT:
            raise Conflict(f"only assistant messages can be retried, {message_key} is {message.role}")
        user_input = self.prior_user_input(conversation, message_key)
        if user_input is None:
            raise NotFound(f"no user input precedes message {message_key}")
        version_id = self.create_version(conversation, message_key)
        logger.info(
            "version_retry",
            conversation_id=conversation.id,
            message_key=message_key,
            version_id=version_id,
        )
        return version_id, user_input

    def prior_user_input(self, conversation: Conversation, message_key: str) -> str | None:
        position = self._position(conversation, message_key)
        for message in reversed(conversation.messages[:position]):
            if message.role is Role.USER:
                return message.current.text
        return None

    def select_version(self, conversation: Conversation, message_key: str, index: int) -> MessageVersion:
        """Change which version is displayed. Nothing else changes."""
        message = self._message(conversation, message_key)
        if not 0 <= index < len(message.versions):
            raise NotFound(f"message {message_key} has no version {index}")
        message.selected = index
        return message.versions[index]

    def apply_version(self, conversation: Conversation, message_key: str, version: MessageVersion) -> bool:
        """Store the reduced state of a version while it is still streaming.

        Once the stored version is terminal it is never overwritten, so a late
        writer cannot resurrect or alter a finished answer.
        """
        message = self._message(conversation, message_key)
        for position, stored in enumerate(message.versions):
            if stored.id != version.id:
                continue
            if stored.status.terminal:
                logger.warning(
                    "terminal_version_write_ignored",
                    conversation_id=conversation.id,
                    version_id=version.id,
                    status=str(stored.status),
                )
                return False
            message.versions[position] = version.model_copy(deep=True)
            conversation.touch()
            return True
        raise NotFound(f"message {message_key} has no version {version.id}")

    def find_version(
        self, conversation: Conversation, version_id: str
    ) -> tuple[Message, MessageVersion] | None:
        for message in conversation.messages:
            for version in message.versions:
                if version.id == version_id:
                    return message, version
        return None

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _message(conversation: Conversation, message_key: str) -> Message:
        message = conversation.message(message_key)
        if message is None:
            raise NotFound(f"conversation {conversation.id} has no message {message_key}")
        return message

    @staticmethod
    def _version(message: Message, version_id: str) -> MessageVersion:
        for version in message.versions:
            if version.id == version_id:
                return version
        raise NotFound(f"message {message.key} has no version {version_id}")

    @staticmethod
    def _position(conversation: Conversation, message_key: str) -> int:
        for position, message in enumerate(conversation.messages):
            if message.key == message_key:
                return position
        raise NotFound(f"conversation {conversation.id} has no message {message_key}")


def _title_from(content: str, limit: int = 60) -> str:
    line = content.strip().splitlines()[0]
    return line if len(line) <= limit else line[: limit - 1].rstrip() + "…"
