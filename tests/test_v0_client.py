"""Contract tests for V0Client and DeploymentClient — verify HTTP request shapes."""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from loom.deploy_client import DeploymentClient
from loom.v0_client import V0Client

BASE = "https://api.v0.dev/v1"


@pytest.fixture
async def v0():
    client = V0Client(api_key="v0_fake_key")
    await client.start()
    yield client
    await client.close()


@pytest.fixture
async def deployer():
    client = DeploymentClient(api_key="v0_fake_key")
    await client.start()
    yield client
    await client.close()


def _chat_json(chat_id: str = "chat-1", **extra) -> dict:
    return {
        "id": chat_id,
        "webUrl": f"https://v0.dev/chat/{chat_id}",
        "projectId": "proj-1",
        "latestVersion": {"id": "ver-1", "demoUrl": "https://demo.vusercontent.net/1"},
        **extra,
    }


class TestCreateChat:
    @respx.mock
    async def test_request_shape(self, v0):
        route = respx.post(f"{BASE}/chats").mock(
            return_value=httpx.Response(200, json=_chat_json())
        )

        chat = await v0.create_chat(
            prompt="# Component Request: Login",
            system="Use shadcn/ui",
            project_id="proj-1",
            response_mode="async",
            model_id="v0-1.5-lg",
            thinking=True,
        )

        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer v0_fake_key"
        assert json.loads(request.content) == {
            "message": "# Component Request: Login",
            "responseMode": "async",
            "system": "Use shadcn/ui",
            "projectId": "proj-1",
            "modelConfiguration": {"modelId": "v0-1.5-lg", "thinking": True},
        }
        assert chat.chat_id == "chat-1"
        assert chat.chat_url == "https://v0.dev/chat/chat-1"
        assert chat.version_id == "ver-1"
        assert chat.demo_url == "https://demo.vusercontent.net/1"

    @respx.mock
    async def test_missing_web_url_falls_back(self, v0):
        respx.post(f"{BASE}/chats").mock(
            return_value=httpx.Response(200, json={"id": "chat-9"})
        )
        chat = await v0.create_chat(prompt="x")
        assert chat.chat_url == "https://v0.dev/chat/chat-9"
        assert chat.version_id is None

    async def test_missing_key(self):
        client = V0Client()
        await client.start()
        try:
            with pytest.raises(RuntimeError, match="V0_API_KEY"):
                await client.create_chat(prompt="x")
        finally:
            await client.close()


class TestInitFromRepo:
    @respx.mock
    async def test_request_shape(self, v0):
        route = respx.post(f"{BASE}/chats/init").mock(
            return_value=httpx.Response(200, json=_chat_json("chat-2"))
        )
        chat = await v0.init_from_repo(repo_url="https://github.com/acme/web", project_id="p")
        assert json.loads(route.calls[0].request.content) == {
            "type": "repo",
            "repo": {"url": "https://github.com/acme/web"},
            "projectId": "p",
        }
        assert chat.chat_id == "chat-2"


class TestSendMessage:
    @respx.mock
    async def test_request_shape(self, v0):
        route = respx.post(f"{BASE}/chats/chat-1/messages").mock(
            return_value=httpx.Response(
                200, json={"chatId": "chat-1", "latestVersion": {"id": "ver-2"}}
            )
        )
        chat = await v0.send_message("chat-1", "make it blue")
        assert json.loads(route.calls[0].request.content) == {"message": "make it blue"}
        assert chat.chat_id == "chat-1"
        assert chat.version_id == "ver-2"

    @respx.mock
    async def test_http_error_raises(self, v0):
        respx.post(f"{BASE}/chats/chat-1/messages").mock(return_value=httpx.Response(404))
        with pytest.raises(httpx.HTTPStatusError):
            await v0.send_message("chat-1", "x")


class TestProjects:
    @respx.mock
    async def test_finds_existing(self, v0):
        respx.get(f"{BASE}/projects").mock(
            return_value=httpx.Response(
                200, json={"data": [{"id": "p-1", "name": "linear-abc-1"}]}
            )
        )
        create = respx.post(f"{BASE}/projects")
        assert await v0.find_or_create_project("linear-abc-1") == "p-1"
        assert not create.called

    @respx.mock
    async def test_creates_missing(self, v0):
        respx.get(f"{BASE}/projects").mock(return_value=httpx.Response(200, json={"data": []}))
        create = respx.post(f"{BASE}/projects").mock(
            return_value=httpx.Response(200, json={"id": "p-new"})
        )
        assert await v0.find_or_create_project("linear-abc-1", "Login form") == "p-new"
        assert json.loads(create.calls[0].request.content) == {
            "name": "linear-abc-1",
            "description": "Login form",
        }


class TestDeploymentClient:
    @respx.mock
    async def test_request_shape(self, deployer):
        route = respx.post(f"{BASE}/deployments").mock(
            return_value=httpx.Response(
                200,
                json={
                    "id": "dep-1",
                    "webUrl": "https://acme.vercel.app",
                    "inspectorUrl": "https://vercel.com/i/1",
                },
            )
        )

        deployment = await deployer.create_deployment(
            project_id="proj-1", chat_id="chat-1", version_id="ver-1"
        )

        assert json.loads(route.calls[0].request.content) == {
            "projectId": "proj-1",
            "chatId": "chat-1",
            "versionId": "ver-1",
        }
        assert route.calls[0].request.headers["Authorization"] == "Bearer v0_fake_key"
        assert deployment.url == "https://acme.vercel.app"
        assert deployment.inspector_url == "https://vercel.com/i/1"

    async def test_not_started(self):
        client = DeploymentClient(api_key="k")
        with pytest.raises(RuntimeError, match="not started"):
            await client.create_deployment(project_id="p", chat_id="c", version_id="v")
