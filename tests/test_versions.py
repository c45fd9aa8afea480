from __future__ import annotations

import pytest

from streamchat.client.reducer import StreamReducer
from streamchat.conversation.models import Conversation, TextBlock
from streamchat.conversation.versions import VersionManager
from streamchat.core.errors import Conflict, NotFound
from streamchat.core.types import BlockKind, EndReason, Role, VersionStatus
from streamchat.protocol.events import BlockDelta, BlockStart, MessageComplete, SessionEnd


def _answer(version_id: str, text: str):
    reducer = StreamReducer.for_version_id(version_id)
    for event in (
        BlockStart(index=0, kind=BlockKind.TEXT),
        BlockDelta(index=0, text=text),
        MessageComplete(),
        SessionEnd(reason=EndReason.DONE),
    ):
        reducer.apply(event)
    return reducer.version


def _answered_conversation() -> tuple[VersionManager, Conversation, str, str]:
    manager = VersionManager()
    conversation = Conversation(id="conv-1")
    manager.add_user_message(conversation, "hello")
    message, version = manager.add_assistant_message(conversation)
    manager.apply_version(conversation, message.key, _answer(version.id, "Hi there"))
    return manager, conversation, message.key, version.id


def test_user_message_is_completed_immediately_and_titles_the_conversation() -> None:
    manager = VersionManager()
    conversation = Conversation(id="conv-1")

    message = manager.add_user_message(conversation, "What is the weather like?\nIn Seoul")

    assert message.role is Role.USER
    assert message.current.status is VersionStatus.COMPLETED
    assert message.current.blocks == [TextBlock(index=0, text="What is the weather like?\nIn Seoul")]
    assert conversation.title == "What is the weather like?"


def test_retry_appends_a_sibling_version_under_the_same_key() -> None:
    manager, conversation, key, first_id = _answered_conversation()

    new_id, user_input = manager.retry(conversation, key)
    message = conversation.message(key)

    assert user_input == "hello"
    assert new_id != first_id
    assert [v.id for v in message.versions] == [first_id, new_id]
    assert message.versions[0].status is VersionStatus.COMPLETED
    assert message.versions[0].text == "Hi there"
    assert message.versions[1].status is VersionStatus.STREAMING
    assert message.selected == 1


def test_selection_toggles_between_versions_without_touching_them() -> None:
    manager, conversation, key, first_id = _answered_conversation()
    new_id, _ = manager.retry(conversation, key)
    manager.apply_version(conversation, key, _answer(new_id, "Hello!"))
    before = conversation.message(key).model_dump()["versions"]

    assert manager.select_version(conversation, key, 0).id == first_id
    assert manager.select_version(conversation, key, 1).id == new_id
    assert conversation.message(key).model_dump()["versions"] == before


def test_selecting_a_missing_version_is_not_found() -> None:
    manager, conversation, key, _ = _answered_conversation()

    with pytest.raises(NotFound):
        manager.select_version(conversation, key, 5)


def test_at_most_one_streaming_version_per_message() -> None:
    manager = VersionManager()
    conversation = Conversation(id="conv-1")
    manager.add_user_message(conversation, "hello")
    message, _ = manager.add_assistant_message(conversation)

    with pytest.raises(Conflict):
        manager.create_version(conversation, message.key)


def test_terminal_versions_are_never_overwritten() -> None:
    manager, conversation, key, version_id = _answered_conversation()

    applied = manager.apply_version(conversation, key, _answer(version_id, "rewritten"))

    assert applied is False
    assert conversation.message(key).current.text == "Hi there"


def test_user_messages_cannot_be_retried() -> None:
    manager, conversation, _, _ = _answered_conversation()
    user_key = conversation.messages[0].key

    with pytest.raises(Conflict):
        manager.retry(conversation, user_key)


def test_find_version_and_unknown_keys() -> None:
    manager, conversation, key, version_id = _answered_conversation()

    message, version = manager.find_version(conversation, version_id)

    assert message.key == key
    assert version.id == version_id
    assert manager.find_version(conversation, "nope") is None
    with pytest.raises(NotFound):
        manager.create_version(conversation, "missing")
