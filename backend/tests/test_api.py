"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from convosync.api import app
from convosync.errors import StoreUnavailable
from convosync.services.conversations import get_conversation_service

USER = {"X-User-ID": "user-1"}


@pytest.fixture
def client(service):
    app.dependency_overrides[get_conversation_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def create(client, **body):
    payload = {"agentId": "agent-a", "agentType": "email", "initialMessage": "Plan the newsletter"}
    payload.update(body)
    response = client.post("/conversations", json=payload, headers=USER)
    assert response.status_code == 201
    return response.json()


class TestConversationRoutes:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "remote": True}

    def test_create_uses_header_identity(self, client):
        conversation = create(client)

        assert conversation["userId"] == "user-1"
        assert conversation["agentType"] == "email"
        assert [m["content"] for m in conversation["messages"]] == ["Plan the newsletter"]

    def test_missing_header_uses_dev_user(self, client):
        response = client.post("/conversations", json={"agentId": "agent-a"})

        assert response.status_code == 201
        assert response.json()["userId"] == "local-dev-user"

    def test_append_and_get(self, client):
        conversation = create(client)
        path = f"/agents/agent-a/conversations/{conversation['id']}"

        response = client.post(f"{path}/messages", json={"role": "assistant", "content": "Sure"}, headers=USER)
        assert response.status_code == 201
        assert response.json()["message"]["content"] == "Sure"

        fetched = client.get(path, headers=USER).json()
        assert [m["content"] for m in fetched["messages"]] == ["Plan the newsletter", "Sure"]

    def test_find_by_id(self, client):
        conversation = create(client)

        response = client.get(f"/conversations/{conversation['id']}", headers=USER)

        assert response.status_code == 200
        assert response.json()["agentId"] == "agent-a"

    def test_other_user_gets_404(self, client):
        conversation = create(client)

        response = client.get(f"/conversations/{conversation['id']}", headers={"X-User-ID": "user-2"})

        assert response.status_code == 404

    def test_other_user_cannot_append(self, client):
        conversation = create(client)

        response = client.post(
            f"/agents/agent-a/conversations/{conversation['id']}/messages",
            json={"content": "hijack"},
            headers={"X-User-ID": "user-2"},
        )

        assert response.status_code == 403

    def test_list_with_filter(self, client):
        email = create(client)
        create(client, agentId="agent-b", agentType="seo")

        listed = client.get("/conversations", headers=USER).json()
        filtered = client.get("/conversations", params={"agent_type": "email"}, headers=USER).json()

        assert listed["total"] == 2
        assert [c["id"] for c in filtered["conversations"]] == [email["id"]]

    def test_patch(self, client):
        conversation = create(client)
        path = f"/agents/agent-a/conversations/{conversation['id']}"

        response = client.patch(path, json={"title": "Newsletter", "metadata": {"pinned": True}}, headers=USER)

        assert response.status_code == 200
        assert response.json()["title"] == "Newsletter"
        assert response.json()["metadata"] == {"pinned": True}
        assert client.patch(path, json={}, headers=USER).status_code == 422

    def test_unavailable_store_maps_to_503(self, client, flaky_store):
        conversation = create(client)
        flaky_store.fail_always("get", StoreUnavailable("down"))

        response = client.get(f"/agents/agent-a/conversations/{conversation['id']}", headers=USER)

        assert response.status_code == 503

    def test_sync(self, client, flaky_store):
        flaky_store.fail_always("create", StoreUnavailable("down"))
        local = create(client)
        assert local["id"].startswith("local_")
        flaky_store.clear()

        response = client.post("/sync", headers=USER)

        assert response.status_code == 200
        assert local["id"] in response.json()["migrated"]
