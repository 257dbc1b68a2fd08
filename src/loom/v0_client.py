"""v0 Platform API client.

Creates and continues v0 chats (UI generation sessions) and manages the v0
projects they belong to. Responses are normalized into ``GenerationChat``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from loom.models import GenerationChat

logger = logging.getLogger(__name__)

V0_API = "https://api.v0.dev/v1"


class V0Client:
    """Async v0 Platform API client."""

    def __init__(self, *, api_key: str | None = None, api_url: str = V0_API):
        self.api_key = api_key
        self.api_url = api_url
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={"User-Agent": "Loom/0.1.0"},
            # Sync generations can take minutes
            timeout=httpx.Timeout(300.0, connect=10.0),
        )
        logger.info("v0 client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("v0 client not started")
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self.api_key:
            raise RuntimeError("v0 API key not configured. Set V0_API_KEY")
        headers = {"Authorization": f"Bearer {self.api_key}"}
        headers.update(kwargs.pop("headers", {}))
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        resp.raise_for_status()
        return resp

    @staticmethod
    def _to_chat(data: dict[str, Any]) -> GenerationChat:
        latest = data.get("latestVersion") or {}
        chat_id = data["id"]
        return GenerationChat(
            chat_id=chat_id,
            chat_url=data.get("webUrl") or f"https://v0.dev/chat/{chat_id}",
            project_id=data.get("projectId"),
            version_id=latest.get("id"),
            demo_url=latest.get("demoUrl") or data.get("demo"),
        )

    # ── Chats ────────────────────────────────────────────────────────────

    async def create_chat(
        self,
        *,
        prompt: str,
        system: str | None = None,
        project_id: str | None = None,
        response_mode: str = "async",
        model_id: str | None = None,
        thinking: bool = False,
    ) -> GenerationChat:
        """Start a new chat from a prompt."""
        body: dict[str, Any] = {"message": prompt, "responseMode": response_mode}
        if system:
            body["system"] = system
        if project_id:
            body["projectId"] = project_id
        if model_id:
            body["modelConfiguration"] = {"modelId": model_id, "thinking": thinking}
        resp = await self._request("POST", "/chats", json=body)
        chat = self._to_chat(resp.json())
        logger.info("Created v0 chat %s (model=%s)", chat.chat_id, model_id)
        return chat

    async def init_from_repo(
        self, *, repo_url: str, project_id: str | None = None
    ) -> GenerationChat:
        """Start a new chat seeded with the contents of a Git repository."""
        body: dict[str, Any] = {"type": "repo", "repo": {"url": repo_url}}
        if project_id:
            body["projectId"] = project_id
        resp = await self._request("POST", "/chats/init", json=body)
        chat = self._to_chat(resp.json())
        logger.info("Initialized v0 chat %s from %s", chat.chat_id, repo_url)
        return chat

    async def send_message(self, chat_id: str, message: str) -> GenerationChat:
        """Continue an existing chat with refinement feedback."""
        resp = await self._request("POST", f"/chats/{chat_id}/messages", json={"message": message})
        data = resp.json()
        # Message responses carry the chat under chatId rather than id
        data.setdefault("id", data.get("chatId") or chat_id)
        return self._to_chat(data)

    async def get_chat(self, chat_id: str) -> GenerationChat:
        resp = await self._request("GET", f"/chats/{chat_id}")
        return self._to_chat(resp.json())

    # ── Projects ─────────────────────────────────────────────────────────

    async def find_or_create_project(self, name: str, description: str | None = None) -> str:
        """Return the ID of the project named ``name``, creating it if needed."""
        resp = await self._request("GET", "/projects")
        for project in resp.json().get("data", []):
            if project.get("name") == name:
                return project["id"]

        body: dict[str, Any] = {"name": name}
        if description:
            body["description"] = description
        resp = await self._request("POST", "/projects", json=body)
        project_id = resp.json()["id"]
        logger.info("Created v0 project %s (%s)", name, project_id)
        return project_id
