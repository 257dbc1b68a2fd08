"""Linear API client for Loom.

Talks to Linear's GraphQL API with the workspace agent token (OAuth
``actor=app``) to emit agent activities and update agent session metadata.
Also verifies webhook signatures.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

import httpx

from loom.models import ExternalLink, PlanStep, PlanStepStatus

logger = logging.getLogger(__name__)

LINEAR_API = "https://api.linear.app/graphql"

# Linear's plan item statuses
PLAN_STATUS_WIRE: dict[PlanStepStatus, str] = {
    PlanStepStatus.PENDING: "pending",
    PlanStepStatus.CURRENT: "inProgress",
    PlanStepStatus.COMPLETED: "completed",
    PlanStepStatus.FAILED: "canceled",
}

_ACTIVITY_CREATE = """
mutation AgentActivityCreate($input: AgentActivityCreateInput!) {
  agentActivityCreate(input: $input) {
    success
    agentActivity { id }
  }
}
"""

_SESSION_UPDATE = """
mutation AgentSessionUpdate($id: String!, $input: AgentSessionUpdateInput!) {
  agentSessionUpdate(id: $id, input: $input) {
    success
  }
}
"""


class LinearAPIError(Exception):
    """GraphQL-level failure (``errors`` array or ``success: false``)."""


class LinearClient:
    """Async Linear GraphQL client."""

    def __init__(
        self,
        *,
        access_token: str | None = None,
        webhook_secret: str | None = None,
        api_url: str = LINEAR_API,
    ):
        self.access_token = access_token
        self.webhook_secret = webhook_secret
        self.api_url = api_url

        # Rate limit tracking (requests per hour)
        self._rate_limit_remaining: int | None = None

        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json", "User-Agent": "Loom/0.1.0"},
            timeout=30.0,
        )
        logger.info("Linear client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Linear client not started")
        return self._client

    # ── Webhook Verification ─────────────────────────────────────────────

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify the ``linear-signature`` header (hex HMAC-SHA256 of the raw body)."""
        if not self.webhook_secret:
            logger.warning("No webhook secret configured — skipping signature verification")
            return True
        if not signature:
            return False

        expected = hmac.new(
            self.webhook_secret.encode(),
            payload,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature)

    # ── GraphQL ──────────────────────────────────────────────────────────

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict:
        if not self.access_token:
            raise RuntimeError(
                "Linear access token not configured. Set LINEAR_ACCESS_TOKEN "
                "(install the agent via OAuth with actor=app)"
            )
        resp = await self.client.post(
            self.api_url,
            json={"query": query, "variables": variables},
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        self._update_rate_limit(resp)
        resp.raise_for_status()
        body = resp.json()
        if body.get("errors"):
            messages = "; ".join(e.get("message", "unknown error") for e in body["errors"])
            raise LinearAPIError(messages)
        return body.get("data") or {}

    def _update_rate_limit(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Requests-Remaining")
        if remaining:
            self._rate_limit_remaining = int(remaining)
            if self._rate_limit_remaining < 100:
                logger.warning(
                    "Linear API rate limit low: %d requests remaining",
                    self._rate_limit_remaining,
                )

    # ── Agent Activities ─────────────────────────────────────────────────

    async def create_activity(self, session_id: str, content: dict[str, Any]) -> str | None:
        """Emit an agent activity into the session's timeline. Returns the activity ID."""
        data = await self._graphql(
            _ACTIVITY_CREATE,
            {"input": {"agentSessionId": session_id, "content": content}},
        )
        result = data.get("agentActivityCreate") or {}
        if not result.get("success"):
            raise LinearAPIError(f"agentActivityCreate failed for session {session_id}")
        logger.debug("Emitted %s activity for session %s", content.get("type"), session_id)
        return (result.get("agentActivity") or {}).get("id")

    # ── Agent Session Metadata ───────────────────────────────────────────

    async def _update_session(self, session_id: str, update: dict[str, Any]) -> None:
        data = await self._graphql(_SESSION_UPDATE, {"id": session_id, "input": update})
        if not (data.get("agentSessionUpdate") or {}).get("success"):
            raise LinearAPIError(f"agentSessionUpdate failed for session {session_id}")

    async def update_plan(self, session_id: str, steps: list[PlanStep]) -> None:
        """Replace the session's plan with the full ``steps`` list."""
        plan = [{"content": s.label, "status": PLAN_STATUS_WIRE[s.status]} for s in steps]
        await self._update_session(session_id, {"plan": plan})

    async def update_external_urls(self, session_id: str, links: list[ExternalLink]) -> None:
        """Set the session's external links. Callers pass the full merged list."""
        await self._update_session(
            session_id,
            {"externalUrls": [{"label": link.label, "url": link.url} for link in links]},
        )
