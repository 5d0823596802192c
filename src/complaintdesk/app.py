"""FastAPI application setup for the complaint desk."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .assistant_relay import AssistantRelay
from .channels import ConversationHub
from .complaints import ANONYMOUS_SUBMITTER_ID, ComplaintDraft, ComplaintStateMachine
from .config import Settings
from .delivery import PresenceAndDeliveryCoordinator
from .errors import (
    AssistantBusy,
    NotFound,
    PermissionDenied,
    TransportFailed,
    ValidationFailed,
)
from .identity import ProfileDirectory, load_directory
from .models import Actor, Message
from .notifications import NotificationDispatcher
from .observability import MetricsRecorder
from .storage import ChangeFeed, ComplaintStore, MessageStore

logger = logging.getLogger(__name__)


_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    package_logger = logging.getLogger("complaintdesk")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        package_logger.handlers = []
        for handler in handlers:
            package_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        package_logger.addHandler(handler)

    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    package_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        directory: ProfileDirectory,
        feed: ChangeFeed,
        complaint_store: ComplaintStore,
        message_store: MessageStore,
        complaints: ComplaintStateMachine,
        coordinator: PresenceAndDeliveryCoordinator,
        hub: ConversationHub,
        relay: AssistantRelay,
        dispatcher: NotificationDispatcher,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.feed = feed
        self.complaint_store = complaint_store
        self.message_store = message_store
        self.complaints = complaints
        self.coordinator = coordinator
        self.hub = hub
        self.relay = relay
        self.dispatcher = dispatcher
        self.metrics = metrics


def create_app(
    *,
    settings: Settings | None = None,
    directory: ProfileDirectory | None = None,
    metrics: MetricsRecorder | None = None,
    relay: AssistantRelay | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    directory = directory or load_directory(settings.directory_path)

    feed = ChangeFeed()
    complaint_store = ComplaintStore(settings.complaints_root(), feed=feed)
    message_store = MessageStore(settings.messages_root(), feed=feed)
    complaints = ComplaintStateMachine(
        complaint_store,
        directory,
        messages=message_store,
        anonymous_name=settings.anonymous_display_name,
        metrics=metrics,
    )
    coordinator = PresenceAndDeliveryCoordinator(
        feed,
        message_store,
        buffer_size=settings.subscription_buffer_size,
        metrics=metrics,
    )
    hub = ConversationHub(
        complaints=complaint_store,
        messages=message_store,
        directory=directory,
        coordinator=coordinator,
        max_length=settings.message_max_length,
        anonymous_name=settings.anonymous_display_name,
        metrics=metrics,
    )
    relay = relay or AssistantRelay(settings, metrics=metrics)
    dispatcher = dispatcher or NotificationDispatcher(settings, metrics=metrics)
    logger.info(
        "app.start settings_loaded data_dir=%s profiles=%s email_enabled=%s",
        settings.complaints_root(),
        len(directory),
        settings.email_enabled,
    )

    app = FastAPI()
    app.state.services = ApplicationState(
        settings=settings,
        directory=directory,
        feed=feed,
        complaint_store=complaint_store,
        message_store=message_store,
        complaints=complaints,
        coordinator=coordinator,
        hub=hub,
        relay=relay,
        dispatcher=dispatcher,
        metrics=metrics,
    )

    @app.on_event("shutdown")
    async def _close_subscriptions() -> None:
        coordinator.close_all()

    _install_error_handlers(app)

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_settings_dependency(request: Request) -> Settings:
        return get_state(request).settings

    def get_directory(request: Request) -> ProfileDirectory:
        return get_state(request).directory

    def get_complaints(request: Request) -> ComplaintStateMachine:
        return get_state(request).complaints

    def get_hub(request: Request) -> ConversationHub:
        return get_state(request).hub

    def get_relay(request: Request) -> AssistantRelay:
        return get_state(request).relay

    def get_dispatcher(request: Request) -> NotificationDispatcher:
        return get_state(request).dispatcher

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    def get_actor(
        request: Request,
        x_actor_id: str | None = Header(default=None),
    ) -> Actor:
        actor_id = (x_actor_id or "").strip()
        if not actor_id:
            raise HTTPException(status_code=401, detail="X-Actor-Id header is required.")
        try:
            return get_directory(request).actor(actor_id)
        except NotFound as exc:
            raise HTTPException(status_code=401, detail="Unknown actor.") from exc

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/complaints", status_code=201)
    async def submit_complaint(
        request: Request,
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> JSONResponse:
        payload = await _json_body(request)
        draft = ComplaintDraft(
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            category=payload.get("category") or "",
            urgency=payload.get("urgency") or "Normal",
            hub_id=payload.get("hub_id"),
            is_anonymous=bool(payload.get("is_anonymous", False)),
            attachment_url=payload.get("attachment_url"),
        )
        complaint = machine.submit(actor, draft)
        return JSONResponse(machine.view(actor, complaint).to_dict(), status_code=201)

    @app.get("/complaints")
    async def list_complaints(
        status: str | None = Query(None),
        category: str | None = Query(None),
        hub_id: str | None = Query(None),
        starred: bool | None = Query(None),
        submitter_id: str | None = Query(None),
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> dict[str, Any]:
        views = machine.list_for(
            actor,
            status=status,
            category=category,
            hub_id=hub_id,
            starred=starred,
            submitter_id=submitter_id,
        )
        return {"complaints": [view.to_dict() for view in views]}

    @app.get("/complaints/summary")
    async def complaint_summary(
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> dict[str, Any]:
        counts = machine.status_counts(actor)
        return {"total": sum(counts.values()), "by_status": counts}

    @app.get("/complaints/{complaint_id}")
    async def get_complaint(
        complaint_id: str,
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> dict[str, Any]:
        return machine.view(actor, machine.get(actor, complaint_id)).to_dict()

    @app.patch("/complaints/{complaint_id}")
    async def edit_complaint(
        complaint_id: str,
        request: Request,
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> dict[str, Any]:
        payload = await _json_body(request)
        editable = {"title", "description", "hub_id", "attachment_url", "category", "urgency", "is_anonymous"}
        changes = {key: value for key, value in payload.items() if key in editable}
        complaint = machine.edit_details(actor, complaint_id, **changes)
        return machine.view(actor, complaint).to_dict()

    @app.delete("/complaints/{complaint_id}", status_code=204)
    async def delete_complaint(
        complaint_id: str,
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> Response:
        machine.delete(actor, complaint_id)
        return Response(status_code=204)

    @app.post("/complaints/{complaint_id}/status")
    async def update_status(
        complaint_id: str,
        request: Request,
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> dict[str, Any]:
        payload = await _json_body(request)
        complaint = machine.update_status(actor, complaint_id, payload.get("status") or "")
        return machine.view(actor, complaint).to_dict()

    @app.post("/complaints/{complaint_id}/resolve")
    async def resolve_complaint(
        complaint_id: str,
        request: Request,
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> dict[str, Any]:
        payload = await _json_body(request)
        complaint = machine.resolve(actor, complaint_id, str(payload.get("note") or ""))
        return machine.view(actor, complaint).to_dict()

    @app.post("/complaints/{complaint_id}/review")
    async def review_complaint(
        complaint_id: str,
        request: Request,
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> dict[str, Any]:
        payload = await _json_body(request)
        complaint = machine.review(
            actor,
            complaint_id,
            payload.get("status") or "",
            payload.get("resolution_note"),
        )
        return machine.view(actor, complaint).to_dict()

    @app.post("/complaints/{complaint_id}/star")
    async def star_complaint(
        complaint_id: str,
        request: Request,
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
    ) -> dict[str, Any]:
        payload = await _json_body(request)
        complaint = machine.set_starred(actor, complaint_id, bool(payload.get("starred", True)))
        return machine.view(actor, complaint).to_dict()

    @app.post("/complaints/{complaint_id}/forward", status_code=202)
    async def forward_complaint(
        complaint_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        actor: Actor = Depends(get_actor),
        machine: ComplaintStateMachine = Depends(get_complaints),
        directory: ProfileDirectory = Depends(get_directory),
        dispatcher: NotificationDispatcher = Depends(get_dispatcher),
        settings_inst: Settings = Depends(get_settings_dependency),
    ) -> JSONResponse:
        if not machine.can_moderate(actor):
            raise PermissionDenied(f"{actor.role.value} may not forward complaints")
        payload = await _json_body(request)
        complaint = machine.get(actor, complaint_id)
        recipient = directory.get(str(payload.get("recipient_id") or ""))
        if recipient is None or not recipient.as_actor().is_staff:
            raise ValidationFailed("Recipient must be a reviewer or administrator")
        view = machine.view(actor, complaint)
        background_tasks.add_task(
            dispatcher.forward,
            complaint,
            recipient,
            submitter_name=view.submitter_name,
            complaint_url=settings_inst.complaint_url(complaint.id),
        )
        logger.info("complaint.forward.queued id=%s actor=%s recipient=%s", complaint.id, actor.id, recipient.id)
        return JSONResponse({"status": "queued", "recipient_id": recipient.id}, status_code=202)

    @app.get("/complaints/{complaint_id}/messages")
    async def list_messages(
        complaint_id: str,
        actor: Actor = Depends(get_actor),
        hub: ConversationHub = Depends(get_hub),
    ) -> dict[str, Any]:
        return hub.replay(complaint_id, actor).to_dict()

    @app.post("/complaints/{complaint_id}/messages", status_code=201)
    async def post_message(
        complaint_id: str,
        request: Request,
        actor: Actor = Depends(get_actor),
        hub: ConversationHub = Depends(get_hub),
    ) -> JSONResponse:
        payload = await _json_body(request)
        message = hub.append(complaint_id, actor, str(payload.get("content") or ""))
        return JSONResponse(message.to_dict(), status_code=201)

    @app.get("/complaints/{complaint_id}/messages/stream", response_class=StreamingResponse)
    async def stream_messages(
        complaint_id: str,
        request: Request,
        actor: Actor = Depends(get_actor),
        hub: ConversationHub = Depends(get_hub),
        directory: ProfileDirectory = Depends(get_directory),
        settings_inst: Settings = Depends(get_settings_dependency),
    ) -> StreamingResponse:
        subscription = hub.subscribe(complaint_id, actor)
        heartbeat = max(settings_inst.stream_heartbeat_seconds, 0.1)

        def _encode(message: Message) -> str:
            if message.sender_id == ANONYMOUS_SUBMITTER_ID:
                name = settings_inst.anonymous_display_name
            else:
                name = directory.display_names([message.sender_id]).get(message.sender_id, "Unknown")
            data = {**message.to_dict(), "sender_name": name}
            return f"data: {json.dumps(data)}\n\n"

        async def _event_iterator() -> AsyncIterator[str]:
            try:
                while not subscription.closed:
                    if await request.is_disconnected():
                        break
                    message = await subscription.wait(timeout=heartbeat)
                    if message is None:
                        yield ": heartbeat\n\n"
                        continue
                    yield _encode(message)
            finally:
                subscription.close()

        return StreamingResponse(_event_iterator(), media_type="text/event-stream")

    @app.post("/assistant/chat", response_class=StreamingResponse)
    async def assistant_chat(
        request: Request,
        relay_inst: AssistantRelay = Depends(get_relay),
    ) -> StreamingResponse:
        payload = await _json_body(request)
        messages = payload.get("messages")
        if not isinstance(messages, list):
            raise ValidationFailed("messages must be a list")
        stream = relay_inst.stream(item for item in messages if isinstance(item, dict))
        return StreamingResponse(stream, media_type="text/event-stream")

    @app.get("/metrics")
    async def metrics_endpoint(metrics_inst: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics_inst is None or not metrics_inst.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        try:
            payload = metrics_inst.render_prometheus()
        except RuntimeError as exc:  # pragma: no cover - defensive guard
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return Response(content=payload, media_type=metrics_inst.prometheus_content_type)

    return app


_ERROR_STATUS = (
    (PermissionDenied, 403),
    (ValidationFailed, 400),
    (NotFound, 404),
    (TransportFailed, 502),
    (AssistantBusy, 409),
)


def _install_error_handlers(app: FastAPI) -> None:
    for exc_type, status_code in _ERROR_STATUS:

        async def _handler(request: Request, exc: Exception, status_code: int = status_code) -> JSONResponse:
            logger.info(
                "api.error path=%s status=%s error=%s",
                request.url.path,
                status_code,
                exc,
            )
            return JSONResponse({"detail": str(exc)}, status_code=status_code)

        app.add_exception_handler(exc_type, _handler)


async def _json_body(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not body.strip():
        return {}
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationFailed("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return payload


__all__ = ["ApplicationState", "create_app"]
