from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from backend.app.auth import (
    ROLE_ADMIN,
    ROLE_AGENT,
    ROLE_SERVICE,
    AuthContext,
    require_queue_trigger,
    require_roles,
)
from backend.app.models import (
    AutoReplyRuleCreateRequest,
    AutoReplyRuleRecord,
    CampaignCreateRequest,
    CampaignDispatchResponse,
    CampaignRecord,
    ContactCreateRequest,
    ContactRecord,
    ConversationCreateRequest,
    ConversationDetails,
    ConversationRecord,
    ConversationTransferRequest,
    InboxAssignRequest,
    InboxItemRecord,
    InstanceCreateRequest,
    InstanceItem,
    InstanceStatus,
    InstanceStatusResponse,
    JobType,
    MessageSendRequest,
    MessageSendResponse,
    ParticipantAddRequest,
    ParticipantRecord,
    QueueProcessResponse,
    TransferRecord,
    WebhookAckResponse,
    WhatsAppInstanceRecord,
    utc_now,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import Database
from backend.app.services.campaigns import CampaignDispatcher, EmptyContactListError
from backend.app.services.gateway import GatewayError, GatewayFactory, build_gateway_factory, client_for
from backend.app.services.ingestion import (
    WebhookIngestor,
    WebhookPayloadError,
    process_webhook_job,
)
from backend.app.services.job_queue import JobQueue
from backend.app.services.messaging import (
    InstanceUnavailableError,
    MessageSender,
    send_message_job,
)
from backend.app.services.rate_limit import FixedWindowRateLimiter
from backend.app.services.routing import ConversationRouter
from backend.app.services.sanitize import (
    redact_sensitive_data,
    sanitize_email,
    sanitize_input,
    sanitize_phone,
)
from backend.app.services.webhooks import (
    SignatureVerificationError,
    verify_webhook_secret,
    verify_whatsapp_signature,
)
from backend.app.settings import Settings, load_settings
from backend.app.store import (
    DataStore,
    InboxItemAlreadyClaimedError,
    StoreConflictError,
    StoreNotFoundError,
)

logger = logging.getLogger("whatsapp_inbox.api")


def create_app(gateway_factory: Optional[GatewayFactory] = None) -> FastAPI:
    app = FastAPI(title="WhatsApp Inbox API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    database = Database(settings.database_url)
    store = DataStore(database)
    metrics = MetricsRegistry()
    factory = gateway_factory or build_gateway_factory(settings.gateway_timeout_seconds)

    queue = JobQueue(
        store,
        batch_size=settings.queue_batch_size,
        default_max_attempts=settings.job_max_attempts,
        backoff_seconds=settings.job_retry_backoff_seconds,
        backoff_max_seconds=settings.job_retry_backoff_max_seconds,
        claim_timeout_seconds=settings.job_claim_timeout_seconds,
        metrics=metrics,
    )
    dispatcher = CampaignDispatcher(
        store,
        queue,
        factory,
        send_delay_seconds=settings.campaign_send_delay_seconds,
        failure_threshold=settings.campaign_failure_threshold,
    )
    ingestor = WebhookIngestor(store, factory, default_priority=settings.inbox_default_priority)
    queue.register(JobType.send_message, send_message_job(store, factory))
    queue.register(JobType.send_campaign, dispatcher.run_job, on_exhausted=dispatcher.abandon)
    queue.register(JobType.process_webhook, process_webhook_job(ingestor))

    app.state.settings = settings
    app.state.database = database
    app.state.store = store
    app.state.metrics = metrics
    app.state.gateway_factory = factory
    app.state.queue = queue
    app.state.dispatcher = dispatcher
    app.state.ingestor = ingestor
    app.state.router = ConversationRouter(store, default_priority=settings.inbox_default_priority)
    app.state.rate_limiter = FixedWindowRateLimiter(settings.message_rate_limit_per_minute)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> DataStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_router(request: Request) -> ConversationRouter:
    return request.app.state.router


def get_gateway_factory(request: Request) -> GatewayFactory:
    return request.app.state.gateway_factory


def to_instance_item(record: WhatsAppInstanceRecord) -> InstanceItem:
    return InstanceItem.model_validate(record.model_dump(exclude={"api_key"}))


def conversation_access(
    request: Request, context: AuthContext, conversation_id: str
) -> tuple[ConversationRecord, bool]:
    """Load a conversation for the caller and report whether they may manage it.

    Callers outside the contact's tenant who hold no active participant row get
    ``StoreNotFoundError``. Admins, the owner and the contact's tenant may manage.
    """
    store = get_store(request)
    conversation = store.get_conversation(conversation_id)
    if context.is_admin or conversation.owner_id == context.user_id:
        return conversation, True
    if store.lookup_contact(conversation.contact_id).user_id == context.user_id:
        return conversation, True
    active = get_router(request).list_participants(conversation_id)
    if any(item.user_id == context.user_id for item in active):
        return conversation, False
    raise StoreNotFoundError(f"conversation not found: {conversation_id}")


def build_router() -> APIRouter:
    router = APIRouter()
    any_agent = require_roles(ROLE_AGENT, ROLE_ADMIN)
    admin_only = require_roles(ROLE_ADMIN)
    message_senders = require_roles(ROLE_AGENT, ROLE_ADMIN, ROLE_SERVICE)

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not get_store(request).ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        queue_depth = get_store(request).count_jobs_by_status()
        return PlainTextResponse(registry.to_prometheus(queue_depth=queue_depth))

    # webhooks

    @router.get("/webhooks/whatsapp", response_model=WebhookAckResponse)
    def verify_whatsapp_webhook(request: Request, secret: Optional[str] = None) -> WebhookAckResponse:
        if not verify_webhook_secret(secret, get_settings(request).webhook_verify_secret):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
        return WebhookAckResponse(success=True, detail="webhook verified")

    @router.post("/webhooks/whatsapp", response_model=WebhookAckResponse)
    async def whatsapp_webhook(request: Request) -> WebhookAckResponse:
        settings = get_settings(request)
        ingestor: WebhookIngestor = request.app.state.ingestor
        raw_body = await request.body()
        try:
            verify_whatsapp_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.whatsapp_webhook_secret,
            )
        except SignatureVerificationError as exc:
            await run_in_threadpool(
                ingestor.reject, raw_body.decode("utf-8", errors="replace"), str(exc)
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            result = await run_in_threadpool(ingestor.receive, raw_body)
        except WebhookPayloadError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"message": str(exc), "errors": exc.errors},
            ) from exc
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("webhook_processing_failed")
            queue: JobQueue = request.app.state.queue
            await run_in_threadpool(
                queue.add_job,
                JobType.process_webhook,
                {"raw": raw_body.decode("utf-8", errors="replace")},
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="webhook processing failed; queued for retry",
            ) from exc
        return WebhookAckResponse(success=True, detail=result.detail)

    # queue

    @router.post(
        "/queue/process",
        response_model=QueueProcessResponse,
        dependencies=[Depends(require_queue_trigger)],
    )
    def process_queue(request: Request) -> QueueProcessResponse:
        queue: JobQueue = request.app.state.queue
        try:
            summary = queue.process_queue()
        except SQLAlchemyError as exc:
            logger.exception("queue_run_failed")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="queue processing failed",
            ) from exc
        return QueueProcessResponse(success=True, summary=summary)

    # contacts and auto-reply rules

    @router.post("/contacts", response_model=ContactRecord, status_code=status.HTTP_201_CREATED)
    def create_contact(
        payload: ContactCreateRequest,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> ContactRecord:
        phone = sanitize_phone(payload.phone)
        if len(phone) < 10:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="phone must contain at least 10 digits",
            )
        store = get_store(request).scoped(context.user_id)
        try:
            return store.create_contact(
                name=sanitize_input(payload.name),
                phone=phone,
                email=sanitize_email(payload.email) if payload.email else None,
                company=sanitize_input(payload.company) if payload.company else None,
                notes=sanitize_input(payload.notes) if payload.notes else None,
                tags=payload.tags,
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.get("/contacts", response_model=list[ContactRecord])
    def list_contacts(
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> list[ContactRecord]:
        return get_store(request).scoped(context.user_id).list_contacts()

    @router.post(
        "/auto-replies", response_model=AutoReplyRuleRecord, status_code=status.HTTP_201_CREATED
    )
    def create_auto_reply(
        payload: AutoReplyRuleCreateRequest,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> AutoReplyRuleRecord:
        store = get_store(request).scoped(context.user_id)
        return store.create_auto_reply_rule(
            trigger=sanitize_input(payload.trigger),
            reply=sanitize_input(payload.reply),
            is_active=payload.is_active,
        )

    @router.get("/auto-replies", response_model=list[AutoReplyRuleRecord])
    def list_auto_replies(
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> list[AutoReplyRuleRecord]:
        return get_store(request).scoped(context.user_id).list_auto_reply_rules()

    # conversations

    @router.get("/conversations", response_model=list[ConversationDetails])
    def list_conversations(
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> list[ConversationDetails]:
        return get_router(request).get_user_conversations(context.user_id)

    @router.post(
        "/conversations", response_model=ConversationRecord, status_code=status.HTTP_201_CREATED
    )
    def create_conversation(
        payload: ConversationCreateRequest,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> ConversationRecord:
        owner_id = payload.owner_id or context.user_id
        if owner_id != context.user_id and not context.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="only admins can open conversations for other users",
            )
        try:
            get_store(request).scoped(context.user_id).get_contact(payload.contact_id)
            return get_router(request).create_conversation(
                payload.contact_id, owner_id, notes=payload.notes
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.post("/conversations/{conversation_id}/transfer", response_model=TransferRecord)
    def transfer_conversation(
        conversation_id: str,
        payload: ConversationTransferRequest,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> TransferRecord:
        try:
            conversation_access(request, context, conversation_id)
            return get_router(request).transfer_conversation(
                conversation_id,
                from_user_id=context.user_id,
                to_user_id=payload.to_user_id.strip(),
                reason=payload.reason,
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.post("/conversations/{conversation_id}/archive", response_model=ConversationRecord)
    def archive_conversation(
        conversation_id: str,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> ConversationRecord:
        try:
            conversation, _ = conversation_access(request, context, conversation_id)
            if conversation.owner_id != context.user_id and not context.is_admin:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="only the owner can archive this conversation",
                )
            return get_router(request).archive_conversation(conversation_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.get(
        "/conversations/{conversation_id}/participants", response_model=list[ParticipantRecord]
    )
    def list_participants(
        conversation_id: str,
        request: Request,
        include_inactive: bool = False,
        context: AuthContext = Depends(any_agent),
    ) -> list[ParticipantRecord]:
        try:
            conversation_access(request, context, conversation_id)
            return get_router(request).list_participants(
                conversation_id, include_inactive=include_inactive
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @router.post(
        "/conversations/{conversation_id}/participants",
        response_model=ParticipantRecord,
        status_code=status.HTTP_201_CREATED,
    )
    def add_participant(
        conversation_id: str,
        payload: ParticipantAddRequest,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> ParticipantRecord:
        conversation_router = get_router(request)
        try:
            _, can_manage = conversation_access(request, context, conversation_id)
            if not can_manage:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="only the owner can add participants",
                )
            active = conversation_router.list_participants(conversation_id)
            if any(item.user_id == payload.user_id for item in active):
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f"user is already a participant: {payload.user_id}",
                )
            return conversation_router.add_participant(
                conversation_id, payload.user_id, payload.type, added_by=context.user_id
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.delete("/conversations/{conversation_id}/participants/{user_id}")
    def remove_participant(
        conversation_id: str,
        user_id: str,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> dict[str, Any]:
        try:
            conversation, can_manage = conversation_access(request, context, conversation_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if not can_manage and user_id != context.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="participants can only remove themselves",
            )
        if conversation.owner_id == user_id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="the owner cannot be removed; transfer the conversation first",
            )
        removed = get_router(request).remove_participant(conversation_id, user_id)
        return {"conversation_id": conversation_id, "user_id": user_id, "removed": removed}

    @router.get("/conversations/{conversation_id}/transfers", response_model=list[TransferRecord])
    def list_transfers(
        conversation_id: str,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> list[TransferRecord]:
        try:
            conversation_access(request, context, conversation_id)
            return get_router(request).list_transfers(conversation_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    # inbox

    @router.get("/inbox", response_model=list[InboxItemRecord])
    def list_inbox(
        request: Request,
        _: AuthContext = Depends(any_agent),
    ) -> list[InboxItemRecord]:
        return get_router(request).get_inbox_items()

    @router.post("/inbox/{item_id}/assign", response_model=ConversationRecord)
    def assign_inbox_item(
        item_id: int,
        request: Request,
        payload: Optional[InboxAssignRequest] = None,
        context: AuthContext = Depends(any_agent),
    ) -> ConversationRecord:
        assignee = (payload.user_id if payload else None) or context.user_id
        if assignee != context.user_id and not context.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="only admins can assign inbox items to other users",
            )
        try:
            return get_router(request).assign_inbox_item(item_id, assignee)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InboxItemAlreadyClaimedError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "already_claimed", "message": str(exc)},
            ) from exc
        except StoreConflictError as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "open_conversation_exists", "message": str(exc)},
            ) from exc

    # messages

    @router.post(
        "/messages/send", response_model=MessageSendResponse, status_code=status.HTTP_201_CREATED
    )
    def send_message(
        payload: MessageSendRequest,
        request: Request,
        response: Response,
        context: AuthContext = Depends(message_senders),
    ) -> MessageSendResponse:
        settings = get_settings(request)
        limiter: FixedWindowRateLimiter = request.app.state.rate_limiter
        allowance = limiter.check(context.user_id)
        if not allowance.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="message rate limit exceeded",
            )
        body = sanitize_input(payload.body)
        if not body:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="message body is empty after sanitization",
            )
        store = get_store(request).scoped(context.user_id)
        try:
            contact = store.get_contact(payload.contact_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

        if payload.scheduled_for and payload.scheduled_for > utc_now():
            queue: JobQueue = request.app.state.queue
            job = queue.add_job(
                JobType.send_message,
                {
                    "user_id": context.user_id,
                    "contact_id": contact.id,
                    "body": body,
                    "has_media": payload.has_media,
                    "media_url": payload.media_url,
                    "media_type": payload.media_type,
                    "instance_id": payload.instance_id,
                },
                next_eligible_at=payload.scheduled_for,
            )
            response.status_code = status.HTTP_202_ACCEPTED
            return MessageSendResponse(
                status="scheduled", job_id=job.id, remaining=allowance.remaining
            )

        sender = MessageSender(
            store,
            get_gateway_factory(request),
            retry_attempts=settings.send_retry_attempts,
            retry_initial_delay=settings.send_retry_initial_delay_seconds,
        )
        try:
            message = sender.send(
                contact_id=contact.id,
                body=body,
                has_media=payload.has_media,
                media_url=payload.media_url,
                media_type=payload.media_type,
                instance_id=payload.instance_id,
                contact=contact,
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InstanceUnavailableError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except GatewayError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        return MessageSendResponse(
            status="sent",
            message_id=message.id,
            whatsapp_message_id=message.whatsapp_message_id,
            remaining=allowance.remaining,
        )

    # campaigns

    @router.post("/campaigns", response_model=CampaignRecord, status_code=status.HTTP_201_CREATED)
    def create_campaign(
        payload: CampaignCreateRequest,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> CampaignRecord:
        store = get_store(request).scoped(context.user_id)
        try:
            store.list_active_list_contacts(payload.contact_list_id)
            if payload.instance_id:
                store.get_instance(payload.instance_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return store.create_campaign(
            name=sanitize_input(payload.name),
            message=sanitize_input(payload.message),
            contact_list_id=payload.contact_list_id,
            instance_id=payload.instance_id,
            scheduled_for=payload.scheduled_for,
            media_url=payload.media_url,
            media_type=payload.media_type,
        )

    @router.get("/campaigns/{campaign_id}", response_model=CampaignRecord)
    def get_campaign(
        campaign_id: str,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> CampaignRecord:
        try:
            return get_store(request).scoped(context.user_id).get_campaign(campaign_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    @router.post(
        "/campaigns/{campaign_id}/send",
        response_model=CampaignDispatchResponse,
        status_code=status.HTTP_202_ACCEPTED,
    )
    def send_campaign(
        campaign_id: str,
        request: Request,
        context: AuthContext = Depends(any_agent),
    ) -> CampaignDispatchResponse:
        dispatcher: CampaignDispatcher = request.app.state.dispatcher
        try:
            campaign, job = dispatcher.dispatch(context.user_id, campaign_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except (EmptyContactListError, InstanceUnavailableError) as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return CampaignDispatchResponse(
            campaign_id=campaign.id, job_id=job.id, status=campaign.status, total=campaign.total
        )

    # whatsapp instances

    @router.post("/instances", response_model=InstanceItem, status_code=status.HTTP_201_CREATED)
    def create_instance(
        payload: InstanceCreateRequest,
        request: Request,
        context: AuthContext = Depends(admin_only),
    ) -> InstanceItem:
        factory = get_gateway_factory(request)
        with factory(payload.api_url, payload.api_key, payload.instance_id) as client:
            check = client.test_connection()
            if not check.success:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=check.message)
            try:
                state = client.get_instance_status()
                initial_status, phone = state.status, state.phone
            except GatewayError as exc:
                logger.warning(
                    "instance_status_unavailable instance_id=%s error=%s", payload.instance_id, exc
                )
                initial_status, phone = InstanceStatus.pending, None
        record = get_store(request).scoped(context.user_id).create_instance(
            instance_name=payload.instance_name,
            instance_id=payload.instance_id,
            api_url=payload.api_url,
            api_key=payload.api_key,
            webhook_url=payload.webhook_url,
            status=initial_status,
            phone_number=phone,
        )
        logger.info(
            "instance_created record_id=%s status=%s request=%s",
            record.id,
            record.status.value,
            redact_sensitive_data(payload.model_dump()),
        )
        return to_instance_item(record)

    @router.get("/instances", response_model=list[InstanceItem])
    def list_instances(
        request: Request,
        context: AuthContext = Depends(admin_only),
    ) -> list[InstanceItem]:
        records = get_store(request).scoped(context.user_id).list_instances()
        return [to_instance_item(record) for record in records]

    @router.get("/instances/{record_id}/qr")
    def instance_qr_code(
        record_id: str,
        request: Request,
        context: AuthContext = Depends(admin_only),
    ) -> dict[str, Optional[str]]:
        store = get_store(request).scoped(context.user_id)
        try:
            instance = store.get_instance(record_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        try:
            with client_for(get_gateway_factory(request), instance) as client:
                qr_code = client.get_qr_code()
        except GatewayError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
        if qr_code:
            store.update_instance(instance.id, qr_code=qr_code)
        return {"instance_id": instance.id, "qr_code": qr_code}

    @router.get("/instances/{record_id}/status", response_model=InstanceStatusResponse)
    def instance_status(
        record_id: str,
        request: Request,
        context: AuthContext = Depends(admin_only),
    ) -> InstanceStatusResponse:
        store = get_store(request).scoped(context.user_id)
        try:
            instance = store.get_instance(record_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        try:
            with client_for(get_gateway_factory(request), instance) as client:
                state = client.get_instance_status()
        except GatewayError as exc:
            logger.warning("instance_status_failed instance_id=%s error=%s", instance.id, exc)
            updated = store.update_instance(instance.id, status=InstanceStatus.error)
            return InstanceStatusResponse(
                instance_id=updated.id, status=updated.status, phone_number=updated.phone_number
            )
        values: dict[str, object] = {"status": state.status}
        if state.phone:
            values["phone_number"] = state.phone
        if state.status == InstanceStatus.connected:
            values["last_connected_at"] = utc_now()
        updated = store.update_instance(instance.id, **values)
        return InstanceStatusResponse(
            instance_id=updated.id, status=updated.status, phone_number=updated.phone_number
        )

    @router.post("/instances/{record_id}/logout")
    def instance_logout(
        record_id: str,
        request: Request,
        context: AuthContext = Depends(admin_only),
    ) -> dict[str, bool]:
        store = get_store(request).scoped(context.user_id)
        try:
            instance = store.get_instance(record_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        with client_for(get_gateway_factory(request), instance) as client:
            success = client.logout()
        if success:
            store.update_instance(instance.id, status=InstanceStatus.disconnected)
        return {"success": success}

    @router.post("/instances/{record_id}/restart")
    def instance_restart(
        record_id: str,
        request: Request,
        context: AuthContext = Depends(admin_only),
    ) -> dict[str, bool]:
        store = get_store(request).scoped(context.user_id)
        try:
            instance = store.get_instance(record_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        with client_for(get_gateway_factory(request), instance) as client:
            success = client.restart()
        return {"success": success}

    return router


app = create_app()
