"""Convert a conversation transcript into provider messages."""

from __future__ import annotations

from typing import Any

from streamchat.conversation.models import Conversation


def build_messages(conversation: Conversation, until_key: str | None = None) -> list[dict[str, Any]]:
    """Build Anthropic-format messages from the messages before *until_key*.

    Each message contributes the text of its selected version. Streaming
    versions and versions without text are skipped, and consecutive messages
    of the same role are merged so the result always alternates.
    """
    messages: list[dict[str, Any]] = []
    for message in conversation.messages:
        if message.key == until_key:
            break
        if not message.versions:
            continue
        version = message.current
        if not version.status.terminal:
            continue
        text = version.text.strip()
        if not text:
            continue

        role = str(message.role)
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + text
        else:
            messages.append({"role": role, "content": text})

    # the provider expects the conversation to open with a user turn
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    return messages
