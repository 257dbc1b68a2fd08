"""Session Event Router — drives Linear agent sessions through v0 generation.

Consumes Linear webhook events from a queue and, per event:

1. Classifies it into a lane (created / prompted / ignored / malformed)
2. Acknowledges with a ``thought`` activity before any other network call
   (Linear expects a response within 10 seconds)
3. Picks one protocol branch and runs it:
   create-new, await-selection, resolve-selection, deploy or refine
4. Reports progress as agent activities, plan updates and external links

The router is the fault boundary: ``handle()`` never raises. Failures are
reported as an ``error`` activity (best effort) and a failed ``RouteResult``.

Events for the same agent session are serialized; events for different
sessions run concurrently so a slow generation never delays another
session's acknowledgment.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loom import repo_detection
from loom.config import GenerationConfig
from loom.models import (
    ActivityType,
    DetectionResult,
    ExternalLink,
    GenerationChat,
    LinearEvent,
    RouteResult,
    SessionRecord,
)
from loom.plans import (
    STEP_DEPLOY,
    STEP_REVIEW,
    build_initial_plan,
    mark_completed,
    mark_current,
    mark_failed,
    step_index,
)
from loom.prompts import (
    complexity_from_labels,
    format_issue_prompt,
    project_name_for,
    select_model,
)

if TYPE_CHECKING:
    from loom.deploy_client import DeploymentClient
    from loom.linear_client import LinearClient
    from loom.session_store import SessionStore
    from loom.v0_client import V0Client

logger = logging.getLogger(__name__)

CHAT_LINK_LABEL = "View in v0"
DEPLOY_LINK_LABEL = "Preview deployment"

# Known weakness: "don't deploy yet" also matches
_DEPLOY_RE = re.compile(r"\bdeploy\b", re.IGNORECASE)


class EventLane(str, enum.Enum):
    CREATED = "created"
    PROMPTED = "prompted"
    IGNORED = "ignored"
    MALFORMED = "malformed"


class Branch(str, enum.Enum):
    """Protocol branches, one per event after acknowledgment."""

    CREATE_NEW = "create_new"
    AWAIT_SELECTION = "await_selection"
    RESOLVE_SELECTION = "resolve_selection"
    DEPLOY = "deploy"
    REFINE = "refine"


class PromptIntent(str, enum.Enum):
    DEPLOY = "deploy"
    REFINE = "refine"


LANES: dict[str, EventLane] = {
    "AgentSessionEvent.created": EventLane.CREATED,
    "AgentSessionEvent.prompted": EventLane.PROMPTED,
}


def classify_event(event: LinearEvent) -> EventLane:
    """Pick the lane for an event from its type/action and payload shape."""
    lane = LANES.get(event.full_type)
    if lane is None:
        return EventLane.IGNORED
    if not event.session_id:
        return EventLane.MALFORMED
    return lane


def classify_prompt(text: str) -> PromptIntent:
    """Whole-word, case-insensitive "deploy" means deploy; anything else is feedback."""
    return PromptIntent.DEPLOY if _DEPLOY_RE.search(text or "") else PromptIntent.REFINE


def merge_links(existing: list[ExternalLink], new: list[ExternalLink]) -> list[ExternalLink]:
    """Union of two link lists by URL, keeping first-seen order."""
    merged: list[ExternalLink] = []
    seen: set[str] = set()
    for link in [*existing, *new]:
        if link.url not in seen:
            seen.add(link.url)
            merged.append(link)
    return merged


@dataclass
class _Context:
    """Per-event state handed to a branch handler."""

    event: LinearEvent
    session_id: str
    detection: DetectionResult | None = None
    record: SessionRecord | None = None
    selected_repo: str | None = None

    @property
    def agent_session(self) -> dict:
        return self.event.agent_session or {}

    def require_detection(self) -> DetectionResult:
        if self.detection is None:
            raise RuntimeError(f"No repository detection for session {self.session_id}")
        return self.detection

    def require_selected_repo(self) -> str:
        if not self.selected_repo:
            raise RuntimeError(f"No selected repository for session {self.session_id}")
        return self.selected_repo

    def require_chat(self) -> tuple[SessionRecord, str]:
        """Return the stored session and its generation chat id."""
        if self.record is None or not self.record.generation_chat_id:
            raise RuntimeError(f"Session {self.session_id} has no generation chat")
        return self.record, self.record.generation_chat_id


class SessionEventRouter:
    """Async consumer loop and state-transition authority for agent sessions."""

    def __init__(
        self,
        *,
        store: SessionStore,
        linear: LinearClient,
        v0: V0Client,
        deployer: DeploymentClient,
        generation: GenerationConfig | None = None,
        event_queue: asyncio.Queue[LinearEvent] | None = None,
    ):
        self.store = store
        self.linear = linear
        self.v0 = v0
        self.deployer = deployer
        self.generation = generation or GenerationConfig()
        self.event_queue = event_queue

        self._branches: dict[Branch, Callable[[_Context], Awaitable[RouteResult]]] = {
            Branch.CREATE_NEW: self._create_new,
            Branch.AWAIT_SELECTION: self._await_selection,
            Branch.RESOLVE_SELECTION: self._resolve_selection,
            Branch.DEPLOY: self._deploy,
            Branch.REFINE: self._refine,
        }

        # Per-session serialization; a lock lives only while a task needs it
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

        self._running = False
        self._task: asyncio.Task | None = None
        self.last_event_time: str | None = None

    # ── Consumer Loop ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the event consumer loop."""
        if self.event_queue is None:
            raise RuntimeError("Event queue not configured")
        self._running = True
        self._task = asyncio.create_task(self._consumer_loop(), name="session-event-router")
        logger.info("Session event router started")

    async def stop(self) -> None:
        """Stop consuming and wait for in-flight events to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Session event router stopped")

    async def _consumer_loop(self) -> None:
        """Main consumer loop — dequeue events and hand each to its own task."""
        queue = self.event_queue
        if queue is None:
            raise RuntimeError("Event queue not configured")
        while self._running:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            self.last_event_time = datetime.now(timezone.utc).isoformat()
            try:
                if event.delivery_id and not await self.store.mark_delivery_seen(
                    event.delivery_id
                ):
                    logger.debug("Duplicate delivery filtered: %s", event.delivery_id)
                    continue
            except Exception:
                logger.exception("Delivery dedup failed for %s", event.delivery_id)

            task = asyncio.create_task(
                self.handle_serialized(event),
                name=f"event-{event.delivery_id or event.session_id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def handle_serialized(self, event: LinearEvent) -> RouteResult:
        """Handle an event once no other event for the same session is running."""
        key = event.session_id
        if key is None:
            return await self.handle(event)

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                return await self.handle(event)
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                self._locks.pop(key, None)

    # ── Entry Point ──────────────────────────────────────────────────────

    async def handle(self, event: LinearEvent) -> RouteResult:
        """Route one event. Never raises."""
        try:
            return await self._route(event)
        except Exception as exc:
            logger.exception("Unhandled error routing %s", event.full_type)
            return RouteResult(success=False, message=str(exc), session_id=event.session_id)

    async def _route(self, event: LinearEvent) -> RouteResult:
        lane = classify_event(event)
        logger.info(
            "Routing %s (session=%s, issue=%s) → %s",
            event.full_type,
            event.session_id,
            event.issue.get("identifier"),
            lane.value,
        )

        if lane == EventLane.IGNORED:
            return RouteResult(success=True, message="Event ignored", ignored=True)
        session_id = event.session_id
        if lane == EventLane.MALFORMED or not session_id:
            logger.error("%s received without agentSession data", event.full_type)
            return RouteResult(success=False, message="Missing agentSession data")
        if lane == EventLane.CREATED:
            return await self._on_created(event, session_id)
        return await self._on_prompted(event, session_id)

    # ── Lanes ────────────────────────────────────────────────────────────

    async def _on_created(self, event: LinearEvent, session_id: str) -> RouteResult:
        try:
            await self._emit(
                session_id,
                ActivityType.THOUGHT,
                body="Analyzing UI requirements and detecting repository...",
            )

            existing = await self.store.get(session_id)
            if existing is not None:
                return self._duplicate(existing)

            detection = repo_detection.detect(event.agent_session or {})
            logger.info(
                "Repository detection for %s: source=%s, url=%s",
                session_id,
                detection.source.value,
                detection.repo_url,
            )

            if repo_detection.needs_selection(event.agent_session or {}):
                branch = Branch.AWAIT_SELECTION
            else:
                branch = Branch.CREATE_NEW

            ctx = _Context(event=event, session_id=session_id, detection=detection)
            return await self._branches[branch](ctx)
        except Exception as exc:
            return await self._fail(session_id, f"Failed to create v0 session: {exc}", exc)

    async def _on_prompted(self, event: LinearEvent, session_id: str) -> RouteResult:
        try:
            await self._emit(session_id, ActivityType.THOUGHT, body="Processing your feedback...")

            selected_repo = event.repository_signal
            record = await self.store.get(session_id)

            if selected_repo and record is None:
                branch = Branch.RESOLVE_SELECTION
            elif record is None:
                await self._emit(
                    session_id,
                    ActivityType.ERROR,
                    body=(
                        "No active session found for this issue. "
                        "Please re-delegate the issue to me to start a new one."
                    ),
                )
                return RouteResult(
                    success=False, message="No active session", session_id=session_id
                )
            elif not record.generation_chat_id:
                await self._emit(
                    session_id,
                    ActivityType.ERROR,
                    body="This session is still being set up. Please try again in a moment.",
                )
                return RouteResult(
                    success=False, message="Session not ready", session_id=session_id
                )
            elif classify_prompt(event.prompt_text) == PromptIntent.DEPLOY:
                branch = Branch.DEPLOY
            else:
                branch = Branch.REFINE

            ctx = _Context(
                event=event,
                session_id=session_id,
                record=record,
                selected_repo=selected_repo,
            )
            return await self._branches[branch](ctx)
        except Exception as exc:
            return await self._fail(session_id, f"Failed to process your request: {exc}", exc)

    # ── Branches ─────────────────────────────────────────────────────────

    async def _await_selection(self, ctx: _Context) -> RouteResult:
        options = repo_detection.format_for_selection(ctx.require_detection().suggestions)
        await self._emit(
            ctx.session_id,
            ActivityType.ELICITATION,
            body="This issue is linked to several repositories. Which one should I use?",
            signals=[
                {
                    "type": "select",
                    "key": "repository",
                    "label": "Select a repository for this issue",
                    "options": [o.model_dump() for o in options],
                }
            ],
        )
        await self.linear.update_plan(
            ctx.session_id, build_initial_plan(has_repo=False, needs_selection=True)
        )
        return RouteResult(
            success=True,
            message="Waiting for repository selection",
            session_id=ctx.session_id,
            branch=Branch.AWAIT_SELECTION.value,
            awaiting_selection=True,
            repo_detected=True,
        )

    async def _create_new(self, ctx: _Context) -> RouteResult:
        repo_url = ctx.require_detection().repo_url
        if not await self.store.insert_if_absent(SessionRecord(tracker_session_id=ctx.session_id)):
            return self._duplicate(await self.store.get(ctx.session_id))

        issue = ctx.event.issue
        try:
            project_id = await self.v0.find_or_create_project(
                project_name_for(issue), issue.get("title")
            )
            if repo_url:
                chat = await self._import_repo(ctx.session_id, repo_url, project_id)
            else:
                labels = ctx.event.label_names
                prompt = format_issue_prompt(
                    title=issue.get("title", ""),
                    description=ctx.agent_session.get("promptContext") or issue.get("description"),
                    labels=labels,
                )
                model = select_model(complexity_from_labels(labels), self.generation.models)
                chat = await self.v0.create_chat(
                    prompt=prompt,
                    system=self.generation.system_prompt,
                    project_id=project_id,
                    response_mode=self.generation.response_mode,
                    model_id=model.model_id,
                    thinking=model.thinking,
                )
        except Exception:
            await self._release_claim(ctx.session_id)
            raise

        return await self._finish_setup(
            ctx,
            chat,
            project_id,
            repo_url=repo_url,
            message=(
                f"🎨 UI generation started!\n\n[View in v0]({chat.chat_url})\n\n"
                "@mention me with feedback to iterate, or ask me to deploy a preview."
            ),
        )

    async def _resolve_selection(self, ctx: _Context) -> RouteResult:
        repo_url = ctx.require_selected_repo()
        claimed = await self.store.insert_if_absent(
            SessionRecord(tracker_session_id=ctx.session_id, source_repo_url=repo_url)
        )
        if not claimed:
            return self._duplicate(await self.store.get(ctx.session_id))

        issue = ctx.event.issue
        try:
            project_id = await self.v0.find_or_create_project(
                project_name_for(issue), issue.get("title")
            )
            chat = await self._import_repo(ctx.session_id, repo_url, project_id)
        except Exception:
            await self._release_claim(ctx.session_id)
            raise

        return await self._finish_setup(
            ctx,
            chat,
            project_id,
            repo_url=repo_url,
            needs_selection=True,
            message=f"🎨 Initialized with {repo_url}\n\n[View in v0]({chat.chat_url})",
        )

    async def _refine(self, ctx: _Context) -> RouteResult:
        record, chat_id = ctx.require_chat()
        feedback = ctx.event.prompt_text.strip()
        if not feedback:
            await self._emit(
                ctx.session_id,
                ActivityType.ERROR,
                body="I didn't find any feedback in your message. What should I change?",
            )
            return RouteResult(success=False, message="Empty prompt", session_id=ctx.session_id)

        chat = await self.v0.send_message(chat_id, feedback)
        chat_url = chat.chat_url
        await self.store.update(
            ctx.session_id,
            latest_version_id=chat.version_id or record.latest_version_id,
            chat_url=chat_url,
        )

        preview = f"\n\n[Preview]({chat.demo_url})" if chat.demo_url else ""
        await self._emit(
            ctx.session_id,
            ActivityType.MESSAGE,
            body=(
                f"🔄 Applied your feedback.\n\n[View in v0]({chat_url}){preview}\n\n"
                "Ask me to deploy when you're happy with it."
            ),
        )
        return RouteResult(
            success=True,
            message="Feedback sent to v0",
            session_id=ctx.session_id,
            branch=Branch.REFINE.value,
            chat_id=chat_id,
            chat_url=chat_url,
        )

    async def _deploy(self, ctx: _Context) -> RouteResult:
        record, chat_id = ctx.require_chat()

        await self._emit(
            ctx.session_id, ActivityType.ACTION, action="Deploying...", parameter=chat_id
        )

        plan = record.plan or build_initial_plan(has_repo=bool(record.source_repo_url))
        deploy_step = step_index(plan, STEP_DEPLOY)
        plan = mark_current(plan, deploy_step)
        await self.linear.update_plan(ctx.session_id, plan)

        try:
            if not record.project_id:
                raise ValueError("Session has no v0 project to deploy from")
            version_id = record.latest_version_id or (await self.v0.get_chat(chat_id)).version_id
            if not version_id:
                raise ValueError("No generated version is ready to deploy yet")
            deployment = await self.deployer.create_deployment(
                project_id=record.project_id, chat_id=chat_id, version_id=version_id
            )
        except Exception:
            failed = mark_failed(plan, deploy_step)
            await self._best_effort(
                "record failed deploy plan", self.store.update(ctx.session_id, plan=failed)
            )
            await self._best_effort(
                "publish failed deploy plan", self.linear.update_plan(ctx.session_id, failed)
            )
            raise

        new_links = [ExternalLink(label=DEPLOY_LINK_LABEL, url=deployment.url)]
        if record.chat_url:
            new_links.insert(0, ExternalLink(label=CHAT_LINK_LABEL, url=record.chat_url))
        links = merge_links(record.external_links, new_links)
        plan = mark_completed(plan, deploy_step)
        await self.store.update(
            ctx.session_id,
            deployment_url=deployment.url,
            latest_version_id=version_id,
            external_links=links,
            plan=plan,
        )
        await self.linear.update_external_urls(ctx.session_id, links)
        await self.linear.update_plan(ctx.session_id, plan)
        await self._emit(
            ctx.session_id,
            ActivityType.MESSAGE,
            body=f"🚀 Deployed!\n\n[Open preview]({deployment.url})",
        )
        return RouteResult(
            success=True,
            message="Deployed",
            session_id=ctx.session_id,
            branch=Branch.DEPLOY.value,
            chat_id=chat_id,
            chat_url=record.chat_url,
            deployment_url=deployment.url,
        )

    # ── Shared Steps ─────────────────────────────────────────────────────

    async def _import_repo(self, session_id: str, repo_url: str, project_id: str) -> GenerationChat:
        await self._emit(
            session_id, ActivityType.ACTION, action="Importing repository", parameter=repo_url
        )
        return await self.v0.init_from_repo(repo_url=repo_url, project_id=project_id)

    async def _finish_setup(
        self,
        ctx: _Context,
        chat: GenerationChat,
        project_id: str,
        *,
        repo_url: str | None,
        message: str,
        needs_selection: bool = False,
    ) -> RouteResult:
        """Persist a freshly created chat and announce it on the session."""
        plan = build_initial_plan(has_repo=bool(repo_url), needs_selection=needs_selection)
        plan = mark_current(plan, step_index(plan, STEP_REVIEW))
        links = [ExternalLink(label=CHAT_LINK_LABEL, url=chat.chat_url)]

        await self.store.update(
            ctx.session_id,
            generation_chat_id=chat.chat_id,
            project_id=chat.project_id or project_id,
            chat_url=chat.chat_url,
            source_repo_url=repo_url,
            latest_version_id=chat.version_id,
            plan=plan,
            external_links=links,
        )
        logger.info("Session stored: %s -> %s", ctx.session_id, chat.chat_id)

        await self.linear.update_external_urls(ctx.session_id, links)
        await self._emit(
            ctx.session_id,
            ActivityType.TOOL,
            body="Created v0 session for UI generation",
            toolName="v0_create_chat",
            toolOutput=f"Chat ID: {chat.chat_id}\nPreview: {chat.demo_url or 'pending'}",
        )
        await self.linear.update_plan(ctx.session_id, plan)
        await self._emit(ctx.session_id, ActivityType.MESSAGE, body=message)

        branch = Branch.RESOLVE_SELECTION if needs_selection else Branch.CREATE_NEW
        return RouteResult(
            success=True,
            message="Agent session started",
            session_id=ctx.session_id,
            branch=branch.value,
            chat_id=chat.chat_id,
            chat_url=chat.chat_url,
            repo_detected=bool(repo_url),
        )

    def _duplicate(self, existing: SessionRecord | None) -> RouteResult:
        session_id = existing.tracker_session_id if existing else None
        logger.info("Session %s already exists — skipping duplicate creation", session_id)
        return RouteResult(
            success=True,
            message="Session already exists",
            session_id=session_id,
            duplicate=True,
            chat_id=existing.generation_chat_id if existing else None,
            chat_url=existing.chat_url if existing else None,
        )

    async def _release_claim(self, session_id: str) -> None:
        """Drop a claimed session that never got a chat, so a redelivery can retry."""
        record = await self.store.get(session_id)
        if record is not None and not record.generation_chat_id:
            await self._best_effort("release session claim", self.store.delete(session_id))

    async def _emit(self, session_id: str, activity_type: ActivityType, **content: Any) -> None:
        await self.linear.create_activity(session_id, {"type": activity_type.value, **content})

    async def _best_effort(self, what: str, operation: Awaitable[Any]) -> None:
        try:
            await operation
        except Exception:
            logger.exception("Failed to %s", what)

    async def _fail(self, session_id: str, text: str, exc: Exception) -> RouteResult:
        """Shared error path: report once on the session, never raise."""
        logger.error("%s (session=%s)", text, session_id, exc_info=exc)
        try:
            await self._emit(session_id, ActivityType.ERROR, body=text)
        except Exception:
            logger.exception("Failed to emit error activity for session %s", session_id)
        return RouteResult(success=False, message=str(exc), session_id=session_id)
