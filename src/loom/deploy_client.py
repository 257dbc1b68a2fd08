"""Deployment client — publishes a v0 chat version as a Vercel preview."""

from __future__ import annotations

import logging

import httpx

from loom.models import Deployment

logger = logging.getLogger(__name__)

DEPLOY_API = "https://api.v0.dev/v1"


class DeploymentClient:
    def __init__(self, *, api_key: str | None = None, api_url: str = DEPLOY_API):
        self.api_key = api_key
        self.api_url = api_url
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={"User-Agent": "Loom/0.1.0"},
            timeout=120.0,
        )
        logger.info("Deployment client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Deployment client not started")
        return self._client

    async def create_deployment(
        self, *, project_id: str, chat_id: str, version_id: str
    ) -> Deployment:
        if not self.api_key:
            raise RuntimeError("Deployment API key not configured. Set V0_API_KEY")
        resp = await self.client.post(
            "/deployments",
            json={"projectId": project_id, "chatId": chat_id, "versionId": version_id},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        resp.raise_for_status()
        data = resp.json()
        deployment = Deployment(
            deployment_id=data["id"],
            url=data.get("webUrl") or data["url"],
            inspector_url=data.get("inspectorUrl"),
        )
        logger.info("Deployed chat %s version %s → %s", chat_id, version_id, deployment.url)
        return deployment
