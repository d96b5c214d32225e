"""
HTTP API tests: routes, response envelope and error mapping.

The app runs against an in-memory store and fake providers; nothing
leaves the process.
"""
import httpx
import pytest
from starlette.testclient import TestClient

from dashboard.app import create_app
from fakes import COMFY_URL, OLLAMA_URL, png_bytes

CHAT = {"provider": "ollama", "model": "llama3", "messages": [{"role": "user", "content": "hi"}]}

COMFY_DONE = {
    "p-1": {
        "status": {"status_str": "success", "completed": True},
        "outputs": {"9": {"images": [{"filename": "fox.png", "subfolder": "", "type": "output"}]}},
    }
}


@pytest.fixture
def client(ctx):
    with TestClient(create_app(ctx)) as c:
        yield c


@pytest.fixture
def ollama_up(upstream):
    upstream.json("POST", f"{OLLAMA_URL}/api/chat", {
        "model": "llama3",
        "message": {"role": "assistant", "content": "Hello!"},
        "done": True,
        "done_reason": "stop",
        "eval_count": 3,
    })
    return upstream


@pytest.fixture
def comfy_up(upstream):
    upstream.json("POST", f"{COMFY_URL}/prompt", {"prompt_id": "p-1"})
    upstream.json("GET", f"{COMFY_URL}/history/p-1", COMFY_DONE)
    upstream.add("GET", f"{COMFY_URL}/view", httpx.Response(200, content=png_bytes(), headers={"content-type": "image/png"}))
    return upstream


def assert_error(resp, status):
    assert resp.status_code == status, resp.text
    body = resp.json()
    assert body["success"] is False
    assert body["error"]
    return body


class TestHealthAndModels:
    def test_health(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        data = r.json()["data"]
        assert r.json()["success"] is True
        assert data["database"] is True
        assert data["ollama"] is False
        assert data["dev_encryption_key"] is False
        assert data["background_pollers"] == 0

    def test_models_listing(self, client, upstream):
        upstream.json("GET", f"{OLLAMA_URL}/api/tags", {"models": [{"name": "llama3", "size": 2048}]})
        upstream.json("GET", f"{OLLAMA_URL}/api/ps", {"models": []})
        r = client.get("/api/models")
        assert r.status_code == 200
        assert r.json()["data"] == [{
            "name": "llama3",
            "size": "2 KB",
            "loaded": False,
            "capabilities": ["chat"],
            "description": "Unknown",
            "parameters": "Unknown",
        }]

    def test_ollama_down_is_503(self, client, upstream):
        upstream.add("GET", f"{OLLAMA_URL}/api/tags", httpx.ConnectError("refused"))
        body = assert_error(client.get("/api/models"), 503)
        assert "Is Ollama running?" in body["error"]


class TestSettings:
    def test_put_returns_masked_key_only(self, client):
        r = client.put("/api/settings/openai", json={"apiKey": "sk-12345678", "defaultModel": "gpt-4o"})
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["api_key_masked"] == "*******5678"
        assert data["default_model"] == "gpt-4o"
        assert "sk-1234" not in client.get("/api/settings").text
        assert client.get("/api/settings/openai").json()["data"]["api_key_masked"].endswith("5678")

    def test_unknown_provider_is_400(self, client):
        assert_error(client.put("/api/settings/ollama", json={"apiKey": "x"}), 400)

    def test_missing_api_key_is_400(self, client):
        assert_error(client.put("/api/settings/openai", json={}), 400)

    def test_missing_settings_is_404(self, client):
        assert_error(client.get("/api/settings/claude"), 404)
        assert_error(client.delete("/api/settings/claude"), 404)

    def test_connection_test(self, client, upstream):
        client.put("/api/settings/claude", json={"apiKey": "sk-ant-key-1234"})
        upstream.json("GET", "https://api.anthropic.com/v1/models", {"data": []})
        r = client.post("/api/settings/claude/test")
        assert r.json()["data"] == {"provider": "claude", "connected": True, "error": None}
        assert client.get("/api/settings/claude").json()["data"]["status"] == "connected"


class TestChat:
    def test_chat_round_trip(self, client, ollama_up):
        r = client.post("/api/chat", json=CHAT)
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["role"] == "assistant"
        assert data["content"] == "Hello!"
        assert data["finish_reason"] == "stop"

        task = client.get(f"/api/tasks/{data['job_id']}").json()["data"]
        assert task["status"] == "completed"
        assert task["result"]["content"] == "Hello!"

    def test_empty_messages_is_400(self, client, upstream):
        assert_error(client.post("/api/chat", json=dict(CHAT, messages=[])), 400)
        assert upstream.calls == []

    def test_last_turn_must_be_user(self, client):
        messages = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
        assert_error(client.post("/api/chat", json=dict(CHAT, messages=messages)), 400)

    def test_missing_credential_is_503_with_job(self, client, upstream):
        body = assert_error(client.post("/api/chat", json=dict(CHAT, provider="gemini", model="")), 503)
        assert "not configured" in body["error"]
        task = client.get(f"/api/tasks/{body['job_id']}").json()["data"]
        assert task["status"] == "failed"
        assert upstream.calls == []

    def test_chat_appends_to_conversation(self, client, ollama_up):
        conv = client.post("/api/conversations", json={"provider": "ollama", "model": "llama3"}).json()["data"]
        client.post("/api/chat", json=dict(CHAT, conversationId=conv["id"]))
        messages = client.get(f"/api/conversations/{conv['id']}").json()["data"]["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]

    def test_sources(self, client):
        sources = client.get("/api/chat/sources").json()["data"]
        assert {s["id"] for s in sources} == {"ollama", "comfyui", "openai", "gemini", "claude"}


class TestProfiles:
    def test_crud_never_returns_plaintext_key(self, client):
        r = client.post("/api/profiles", json={
            "name": "Team OpenAI",
            "type": "text",
            "provider": "openai",
            "apiKey": "sk-team-key-4321",
            "promptTemplate": "Answer briefly: {prompt}",
        })
        assert r.status_code == 201
        profile = r.json()["data"]
        assert profile["api_key_masked"].endswith("4321")
        assert profile["prompt_template"] == "Answer briefly: {prompt}"
        assert "sk-team" not in client.get("/api/profiles").text

        updated = client.put(f"/api/profiles/{profile['id']}", json={"model": "gpt-4.1"}).json()["data"]
        assert updated["model"] == "gpt-4.1"
        assert updated["name"] == "Team OpenAI"
        assert updated["has_api_key"] is True

        assert client.delete(f"/api/profiles/{profile['id']}").status_code == 200
        assert_error(client.get(f"/api/profiles/{profile['id']}"), 404)

    def test_invalid_profile_is_400(self, client):
        assert_error(client.post("/api/profiles", json={"name": "x", "type": "text", "provider": "mistral"}), 400)
        assert_error(client.post("/api/profiles", json={"type": "text", "provider": "openai"}), 400)

    def test_chat_with_profile_id(self, client, upstream):
        profile = client.post("/api/profiles", json={
            "name": "Research", "type": "text", "provider": "claude", "apiKey": "sk-ant-research-1111",
        }).json()["data"]
        upstream.json("POST", "https://api.anthropic.com/v1/messages", {
            "content": [{"type": "text", "text": "hi"}],
            "stop_reason": "end_turn",
        })

        body = dict(CHAT, provider="claude", model="claude-3-haiku", profileId=profile["id"])
        r = client.post("/api/chat", json=body)

        assert r.status_code == 200, r.text
        assert r.json()["data"]["content"] == "hi"
        assert upstream.calls[0].headers["x-api-key"] == "sk-ant-research-1111"
        sources = {s["id"] for s in client.get("/api/chat/sources").json()["data"]}
        assert f"profile:{profile['id']}" in sources

    def test_chat_with_unknown_profile_is_404(self, client, upstream):
        assert_error(client.post("/api/chat", json=dict(CHAT, profileId="missing")), 404)
        assert upstream.calls == []

    def test_profile_connection_test(self, client, upstream):
        profile = client.post("/api/profiles", json={
            "name": "Research", "type": "text", "provider": "claude", "apiKey": "sk-ant-research-1111",
        }).json()["data"]
        upstream.json("GET", "https://api.anthropic.com/v1/models", {"data": []})
        outcome = client.post(f"/api/profiles/{profile['id']}/test").json()["data"]
        assert outcome == {"provider": "claude", "connected": True, "error": None}


class TestTasks:
    def test_unknown_task_is_404(self, client):
        assert_error(client.get("/api/tasks/nope"), 404)
        assert_error(client.get("/api/tasks/nope/status"), 404)

    def test_create_then_dispatch(self, client, ollama_up):
        r = client.post("/api/tasks", json={"type": "text", "provider": "ollama", "model": "llama3", "prompt": "hello"})
        assert r.status_code == 201
        job = r.json()["data"]
        assert job["status"] == "pending"
        assert ollama_up.calls == []

        done = client.post(f"/api/tasks/{job['id']}/dispatch").json()["data"]
        assert done["status"] == "completed"

        assert_error(client.post(f"/api/tasks/{job['id']}/dispatch"), 409)
        assert_error(client.post(f"/api/tasks/{job['id']}/retry"), 409)

    def test_create_rejects_unknown_type(self, client):
        assert_error(client.post("/api/tasks", json={"type": "video", "provider": "ollama", "prompt": "x"}), 400)

    def test_create_image_task_validates_parameters(self, client):
        body = {"type": "image", "provider": "comfyui", "prompt": "x", "options": {"parameters": {"width": 500}}}
        assert_error(client.post("/api/tasks", json=body), 400)
        assert client.get("/api/tasks").json()["data"]["total"] == 0

    def test_failed_task_retry(self, client, upstream):
        upstream.add("POST", f"{OLLAMA_URL}/api/chat", httpx.ConnectError("refused"))
        body = assert_error(client.post("/api/chat", json=CHAT), 503)
        job_id = body["job_id"]

        r = client.post(f"/api/tasks/{job_id}/retry")
        assert r.status_code == 200
        assert r.json()["data"]["status"] == "pending"
        assert r.json()["data"]["error"] is None

    def test_list_and_history(self, client, ollama_up):
        client.post("/api/chat", json=CHAT)
        client.post("/api/tasks", json={"type": "text", "provider": "ollama", "model": "llama3", "prompt": "later"})

        listing = client.get("/api/tasks").json()["data"]
        assert listing["total"] == 2
        assert client.get("/api/tasks", params={"status": "pending"}).json()["data"]["total"] == 1

        history = client.get("/api/tasks/history").json()["data"]
        assert history["total"] == 1
        assert history["items"][0]["status"] == "completed"
        future = client.get("/api/tasks/history", params={"startDate": "2999-01-01T00:00:00"}).json()["data"]
        assert future["total"] == 0

    def test_history_filters_by_provider_and_type(self, client, ollama_up):
        client.post("/api/chat", json=CHAT)
        assert client.get("/api/tasks/history", params={"provider": "ollama", "type": "text"}).json()["data"]["total"] == 1
        assert client.get("/api/tasks/history", params={"provider": "claude"}).json()["data"]["total"] == 0
        r = client.get("/api/tasks/history/export", params={"format": "csv", "type": "image"})
        assert len(r.text.strip().splitlines()) == 1

    def test_export_csv(self, client, ollama_up):
        client.post("/api/chat", json=CHAT)
        r = client.get("/api/tasks/history/export", params={"format": "csv"})
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")
        assert "attachment" in r.headers["content-disposition"]
        lines = r.text.strip().splitlines()
        assert lines[0].startswith("id,name,kind,provider")
        assert len(lines) == 2

    def test_export_unknown_format_is_400(self, client):
        assert_error(client.get("/api/tasks/history/export", params={"format": "xml"}), 400)


class TestImagesAndResults:
    def test_image_job_through_results(self, client, comfy_up):
        r = client.post("/api/images", json={"prompt": "a fox", "parameters": {"seed": 1}})
        assert r.status_code == 202
        job = r.json()["data"]
        assert job["status"] == "running"
        assert job["remote_token"] == "p-1"

        job = client.get(f"/api/tasks/{job['id']}/status").json()["data"]
        assert job["status"] == "completed"
        result_id = job["result"]["id"]

        results = client.get("/api/results", params={"type": "image"}).json()["data"]
        assert results["total"] == 1
        assert results["items"][0]["task_name"] == "a fox"

        download = client.get(f"/api/results/{result_id}/download")
        assert download.status_code == 200
        assert download.headers["content-type"] == "image/png"
        assert download.content == png_bytes()

        assert client.delete(f"/api/results/{result_id}").status_code == 200
        assert_error(client.get(f"/api/results/{result_id}"), 404)
        assert_error(client.get(f"/api/results/{result_id}/download"), 404)

    def test_running_task_delete_refused(self, client, upstream):
        upstream.json("POST", f"{COMFY_URL}/prompt", {"prompt_id": "p-1"})
        job = client.post("/api/images", json={"prompt": "a fox"}).json()["data"]
        assert_error(client.delete(f"/api/tasks/{job['id']}"), 400)

    def test_invalid_dimensions_are_400(self, client, upstream):
        assert_error(client.post("/api/images", json={"prompt": "a fox", "parameters": {"width": 500}}), 400)
        assert_error(client.post("/api/images", json={"prompt": "   "}), 400)
        assert upstream.calls == []

    def test_text_result_download(self, client, ollama_up):
        job_id = client.post("/api/chat", json=CHAT).json()["data"]["job_id"]
        result_id = client.get(f"/api/tasks/{job_id}").json()["data"]["result"]["id"]
        r = client.get(f"/api/results/{result_id}/download")
        assert r.text == "Hello!"
        assert r.headers["content-type"].startswith("text/plain")

    def test_comfy_options_when_down(self, client, upstream):
        upstream.add("GET", f"{COMFY_URL}/object_info", httpx.ConnectError("refused"))
        data = client.get("/api/comfyui/options").json()["data"]
        assert data["available"] is False
        assert "euler" in data["samplers"]

    def test_comfy_image_proxy(self, client, comfy_up):
        r = client.get("/api/comfyui/image/fox.png")
        assert r.status_code == 200
        assert r.content == png_bytes()
        assert comfy_up.calls[-1].url.params["filename"] == "fox.png"

    def test_comfy_image_missing_is_404(self, client):
        assert_error(client.get("/api/comfyui/image/ghost.png"), 404)


class TestConversations:
    def test_crud(self, client):
        r = client.post("/api/conversations", json={"provider": "ollama", "model": "llama3"})
        assert r.status_code == 201
        conv = r.json()["data"]
        assert conv["title"] == "New Conversation"

        r = client.post(f"/api/conversations/{conv['id']}/messages", json={"role": "user", "content": "hey"})
        assert r.status_code == 201

        renamed = client.put(f"/api/conversations/{conv['id']}", json={"title": "Greetings"}).json()["data"]
        assert renamed["title"] == "Greetings"
        assert [c["id"] for c in client.get("/api/conversations").json()["data"]] == [conv["id"]]
        assert client.get(f"/api/conversations/{conv['id']}").json()["data"]["messages"][0]["content"] == "hey"

        assert client.delete(f"/api/conversations/{conv['id']}").status_code == 200
        assert_error(client.get(f"/api/conversations/{conv['id']}"), 404)

    def test_invalid_role_is_400(self, client):
        conv = client.post("/api/conversations", json={"provider": "ollama", "model": "llama3"}).json()["data"]
        assert_error(client.post(f"/api/conversations/{conv['id']}/messages", json={"role": "tool", "content": "x"}), 400)


class TestEventsAndErrors:
    def test_websocket_receives_job_events(self, client, ollama_up):
        with client.websocket_connect("/ws") as ws:
            client.post("/api/chat", json=CHAT)
            events = [ws.receive_json() for _ in range(4)]

        assert [e["type"] for e in events] == ["task:pending", "task:running", "task:completed", "notification"]
        assert events[2]["payload"]["status"] == "completed"
        assert events[3]["payload"]["title"] == "Task Complete"
        assert events[0]["job_id"] == events[2]["job_id"]

    def test_unexpected_error_is_generic_500(self, ctx, monkeypatch):
        def boom(**_kwargs):
            raise RuntimeError("secret internals")

        monkeypatch.setattr(ctx.tracker, "list", boom)
        with TestClient(create_app(ctx), raise_server_exceptions=False) as c:
            body = assert_error(c.get("/api/tasks"), 500)
        assert body["error"] == "Internal server error"

    def test_unknown_route_uses_envelope(self, client):
        assert_error(client.get("/api/nope"), 404)
