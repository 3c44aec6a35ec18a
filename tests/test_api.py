"""HTTP-level tests for the FastAPI app (in-memory store, no outbound network)."""
import pytest
from fastapi.testclient import TestClient

from api.main import app
from conftest import edge, node


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


def builder_flow():
    return {
        "nodes": [
            node("start", "start"),
            node("ask", "question", content="Sales or support?", options=["Sales", "Support"]),
            node("sales", "message", content="Sales will call you."),
            node("human", "human_handoff", content="Connecting you to a person."),
            node("after", "message", content="Back with the bot."),
        ],
        "edges": [
            edge("start", "ask"),
            edge("ask", "sales", "Sales"),
            edge("ask", "human", "Support"),
            edge("human", "after"),
        ],
    }


def save_bot(client, chatbot_id, **overrides):
    body = {"name": f"Bot {chatbot_id}", "flow": builder_flow(), "is_published": True,
            "closing_message": "Goodbye!"}
    body.update(overrides)
    resp = client.put(f"/api/chatbots/{chatbot_id}", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestChatbotEndpoints:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert set(resp.json()["channels"]) == {"web", "whatsapp", "facebook"}

    def test_save_and_get(self, client):
        saved = save_bot(client, "api_bot_1")
        assert saved["version"] == 1
        assert saved["warnings"] == []
        assert save_bot(client, "api_bot_1")["version"] == 2

        resp = client.get("/api/chatbots/api_bot_1")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Bot api_bot_1"
        assert "channels" not in resp.json()

    def test_broken_flow_rejected(self, client):
        resp = client.put("/api/chatbots/api_bad", json={
            "name": "Bad", "flow": {"nodes": [node("m", "message")], "edges": []},
        })
        assert resp.status_code == 422
        assert resp.json()["error_type"] == "MissingStartNodeError"
        assert client.get("/api/chatbots/api_bad").status_code == 404

    def test_malformed_node_entry_rejected(self, client):
        resp = client.put("/api/chatbots/api_malformed", json={
            "name": "Bad", "flow": {"nodes": [node("s", "start"), "oops"], "edges": []},
        })
        assert resp.status_code == 422
        assert resp.json()["error_type"] == "FlowDefinitionError"

    def test_validate_dry_run(self, client):
        ok = client.post("/api/chatbots/validate", json=builder_flow()).json()
        assert ok["valid"]
        bad = client.post("/api/chatbots/validate",
                          json={"nodes": [node("s", "start")], "edges": [edge("s", "nowhere")]}).json()
        assert not bad["valid"]
        assert "nowhere" in bad["errors"][0]


class TestWidgetEndpoints:
    def test_config_requires_published(self, client):
        save_bot(client, "api_draft", is_published=False)
        assert client.get("/api/widget/api_draft/config").status_code == 404

    def test_config(self, client):
        save_bot(client, "api_widget", description="Ask away")
        config = client.get("/api/widget/api_widget/config", params={"session_id": "ws_abc"}).json()
        assert config["sessionId"] == "ws_abc"
        assert config["subtitle"] == "Ask away"

    def test_chat_session(self, client):
        save_bot(client, "api_chat")

        opened = client.post("/api/widget/api_chat/chat", json={"session_id": "ws_chat"}).json()
        assert [m["content"] for m in opened["messages"]] == ["Sales or support?"]
        assert opened["messages"][0]["options"] == ["Sales", "Support"]
        assert opened["status"] == "active"

        reply = client.post("/api/widget/api_chat/chat",
                            json={"session_id": "ws_chat", "message": "sales"}).json()
        assert reply["conversationId"] == opened["conversationId"]
        assert [m["content"] for m in reply["messages"]] == ["Sales will call you.", "Goodbye!"]
        assert reply["status"] == "ended"

        conv = client.get(f"/api/conversations/{opened['conversationId']}").json()
        assert conv["channel"] == "web"
        assert conv["user_identifier"] == "ws_chat"

    def test_unknown_chatbot(self, client):
        resp = client.post("/api/widget/api_missing/chat", json={"session_id": "ws_x", "message": "hi"})
        assert resp.status_code == 404


class TestConversationEndpoints:
    def test_turn_handoff_and_resume(self, client):
        save_bot(client, "api_handoff")

        first = client.post("/api/conversations/conv_api_1/turn", json={"chatbot_id": "api_handoff"})
        assert first.json()["messages"][0]["content"] == "Sales or support?"

        second = client.post("/api/conversations/conv_api_1/turn",
                             json={"chatbot_id": "api_handoff", "message": "support"}).json()
        assert [m["content"] for m in second["messages"]] == ["Connecting you to a person."]
        assert client.get("/api/conversations/conv_api_1").json()["status"] == "handoff"

        resumed = client.post("/api/conversations/conv_api_1/resume", json={}).json()
        assert [m["content"] for m in resumed["messages"]] == ["Back with the bot.", "Goodbye!"]

        events = client.get("/api/conversations/conv_api_1/events").json()
        assert "handoff_requested" in [e["event_type"] for e in events]

    def test_missing_conversation(self, client):
        assert client.get("/api/conversations/nope").status_code == 404
        assert client.post("/api/conversations/nope/resume", json={}).status_code == 404

    def test_list_conversations(self, client):
        save_bot(client, "api_list")
        client.post("/api/conversations/conv_list_1/turn", json={"chatbot_id": "api_list"})
        rows = client.get("/api/conversations", params={"chatbot_id": "api_list"}).json()
        assert [r["conversation_id"] for r in rows] == ["conv_list_1"]
        assert "history" not in rows[0]


class TestChannelWebhooks:
    def test_whatsapp_verification(self, client):
        save_bot(client, "api_wa", channels={"whatsapp": {"verify_token": "vt-123"}})
        params = {"hub.mode": "subscribe", "hub.verify_token": "vt-123", "hub.challenge": "987"}

        ok = client.get("/webhooks/whatsapp/api_wa", params=params)
        assert ok.status_code == 200
        assert ok.text == "987"

        bad = client.get("/webhooks/whatsapp/api_wa", params={**params, "hub.verify_token": "no"})
        assert bad.status_code == 403

    def test_whatsapp_message_runs_turn(self, client):
        save_bot(client, "api_wa_msg")
        payload = {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {
            "messages": [{"from": "15550002222", "id": "wamid.api.1", "type": "text",
                          "text": {"body": "hi"}}],
        }}]}]}

        resp = client.post("/webhooks/whatsapp/api_wa_msg", json=payload)

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "processed": 1}
        rows = client.get("/api/conversations", params={"chatbot_id": "api_wa_msg"}).json()
        assert rows[0]["channel"] == "whatsapp"
        assert rows[0]["active_node_id"] == "ask"

    def test_facebook_message_runs_turn(self, client):
        save_bot(client, "api_fb")
        payload = {"object": "page", "entry": [{"messaging": [
            {"sender": {"id": "psid_9"}, "message": {"mid": "mid.api.1", "text": "hello"}},
        ]}]}

        assert client.post("/webhooks/facebook/api_fb", json=payload).json()["processed"] == 1

    def test_invalid_json(self, client):
        resp = client.post("/webhooks/facebook/api_fb", content=b"not json",
                           headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
