"""HTTP API tests against the full application with a scripted provider."""

from __future__ import annotations

import time
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient

from conftest import Hang, ScriptedProvider, text_round
from streamchat.app import create_app
from streamchat.config import AppConfig, StorageConfig


def _client(provider: ScriptedProvider) -> TestClient:
    config = AppConfig(storage=StorageConfig(db_path=":memory:"))
    return TestClient(create_app(config, provider=provider))


@pytest.fixture
def client() -> Iterator[TestClient]:
    with _client(ScriptedProvider(text_round("Hello", " world"))) as client:
        yield client


@pytest.fixture
def hanging_client() -> Iterator[TestClient]:
    with _client(ScriptedProvider(text_round("partial")[:2] + [Hang()])) as client:
        yield client


def _current(client: TestClient, conversation_id: str, message_key: str) -> dict[str, Any]:
    conversation = client.get(f"/api/conversations/{conversation_id}").json()
    message = next(m for m in conversation["messages"] if m["key"] == message_key)
    return message["versions"][message["selected"]]


def _wait_for(client: TestClient, conversation_id: str, message_key: str, status: str) -> dict[str, Any]:
    for _ in range(500):
        version = _current(client, conversation_id, message_key)
        if version["status"] == status:
            return version
        time.sleep(0.01)
    raise AssertionError(f"version never reached {status}")


def _submit(client: TestClient, content: str = "hi") -> dict[str, Any]:
    conversation = client.post("/api/conversations", json={"title": "test"}).json()["conversation"]
    response = client.post(f"/api/conversations/{conversation['id']}/messages", json={"content": content})
    assert response.status_code == 202
    return response.json()


def test_health(client: TestClient) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert set(body["services"]) == {"chat", "maintenance"}


def test_submit_returns_ids_and_urls(client: TestClient) -> None:
    request = _submit(client)

    conversation_id = request["conversationId"]
    assert request["streamUrl"] == f"/api/conversations/{conversation_id}/events"
    assert request["abortUrl"].endswith(f"/stream/{request['requestId']}/abort")

    version = _wait_for(client, conversation_id, request["messageKey"], "completed")
    assert version["id"] == request["versionId"]
    assert version["blocks"] == [{"kind": "text", "index": 0, "text": "Hello world"}]


def test_create_with_content_starts_a_request(client: TestClient) -> None:
    response = client.post("/api/conversations", json={"content": "first question"})

    assert response.status_code == 201
    body = response.json()
    assert body["conversation"]["title"] == "New conversation"
    assert body["request"]["conversationId"] == body["conversation"]["id"]

    listing = client.get("/api/conversations").json()
    assert [c["id"] for c in listing] == [body["conversation"]["id"]]


def test_empty_content_is_rejected(client: TestClient) -> None:
    conversation = client.post("/api/conversations", json={}).json()["conversation"]

    response = client.post(f"/api/conversations/{conversation['id']}/messages", json={"content": ""})

    assert response.status_code == 422


def test_unknown_conversation_is_404(client: TestClient) -> None:
    response = client.get("/api/conversations/conv_missing")

    assert response.status_code == 404
    assert "conv_missing" in response.json()["error"]


def test_abort_then_abort_again(hanging_client: TestClient) -> None:
    request = _submit(hanging_client)
    conversation_id = request["conversationId"]
    abort_url = request["abortUrl"]

    first = hanging_client.post(abort_url)
    assert first.status_code == 200
    assert first.json() == {"success": True, "message": "request canceled"}

    version = _wait_for(hanging_client, conversation_id, request["messageKey"], "aborted")
    assert version["error"] == "request canceled"

    second = hanging_client.post(abort_url)
    assert second.status_code == 409
    assert second.json()["success"] is False


def test_abort_unknown_request_is_404(client: TestClient) -> None:
    conversation = client.post("/api/conversations", json={}).json()["conversation"]

    response = client.post(f"/api/conversations/{conversation['id']}/stream/req_nope/abort")

    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "stream not found"}


def test_second_submit_conflicts_unless_replacing(hanging_client: TestClient) -> None:
    request = _submit(hanging_client)
    url = f"/api/conversations/{request['conversationId']}/messages"

    conflict = hanging_client.post(url, json={"content": "again"})
    assert conflict.status_code == 409

    replaced = hanging_client.post(url, json={"content": "again", "replace": True})
    assert replaced.status_code == 202
    old = _current(hanging_client, request["conversationId"], request["messageKey"])
    assert old["status"] == "aborted"


def test_retry_and_select_version(client: TestClient) -> None:
    request = _submit(client)
    conversation_id = request["conversationId"]
    key = request["messageKey"]
    _wait_for(client, conversation_id, key, "completed")

    retry = client.post(f"/api/conversations/{conversation_id}/messages/{key}/retry")
    assert retry.status_code == 202
    assert retry.json()["messageKey"] == key
    _wait_for(client, conversation_id, key, "completed")

    selection = client.put(f"/api/conversations/{conversation_id}/messages/{key}/selection", json={"index": 0})
    assert selection.status_code == 200
    assert selection.json()["selected"] == 0
    assert len(selection.json()["versions"]) == 2

    missing = client.put(f"/api/conversations/{conversation_id}/messages/{key}/selection", json={"index": 5})
    assert missing.status_code == 404


def test_retry_of_a_user_message_conflicts(client: TestClient) -> None:
    request = _submit(client)
    conversation_id = request["conversationId"]
    _wait_for(client, conversation_id, request["messageKey"], "completed")

    response = client.post(
        f"/api/conversations/{conversation_id}/messages/{request['userMessageKey']}/retry", json={}
    )

    assert response.status_code == 409


def test_update_and_delete_conversation(client: TestClient) -> None:
    conversation = client.post("/api/conversations", json={"title": "before"}).json()["conversation"]
    url = f"/api/conversations/{conversation['id']}"

    updated = client.patch(url, json={"title": "after", "mode": "concise"})
    assert updated.status_code == 200
    assert updated.json()["title"] == "after"
    assert updated.json()["mode"] == "concise"

    assert client.delete(url).status_code == 204
    assert client.get(url).status_code == 404
    assert client.delete(url).status_code == 404
