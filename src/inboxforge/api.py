"""Summary: FastAPI application for InboxForge.

Importance: Exposes tenant, conversation, messaging, OAuth, and webhook endpoints over HTTP.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from inboxforge.app import AppContext, build_context
from inboxforge.config import AppConfig
from inboxforge.errors import (
    InvalidStateError,
    NotFoundError,
    QuotaExceeded,
    ReconnectRequired,
    SendFailed,
    UpstreamTransientError,
)
from inboxforge.models import CredentialRecord
from inboxforge.rate_limit import client_key
from inboxforge.storage.sqlite_store import StoredConversation, StoredMessage, StoredTenant
from inboxforge.webhooks import verify_subscription


logger = logging.getLogger(__name__)


class TenantCreateRequest(BaseModel):
    """Summary: Request payload for tenant creation.

    Importance: The email doubles as the inbound address for the email channel.
    Alternatives: Generate inbound addresses separately.
    """

    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    tier: str = "free"


class TierUpdateRequest(BaseModel):
    tier: str


class ArchiveRequest(BaseModel):
    archive_type: str = "archived"


class NotesRequest(BaseModel):
    notes: str


class MessageCreateRequest(BaseModel):
    """Summary: Request payload for an outbound reply.

    Importance: The conversation decides the channel and recipient.
    Alternatives: Let clients pick the channel explicitly.
    """

    tenant_id: int
    conversation_id: int
    content: str = Field(min_length=1)
    sender_name: str | None = None


def create_app(config: AppConfig, context: AppContext | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to InboxForge services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    app = FastAPI(title="InboxForge API", version="0.1.0")
    context = context or build_context(config)
    app.state.context = context

    @app.exception_handler(QuotaExceeded)
    async def quota_exceeded(request: Request, exc: QuotaExceeded) -> JSONResponse:
        return JSONResponse(status_code=429, content={"detail": exc.detail()})

    @app.exception_handler(ReconnectRequired)
    async def reconnect_required(request: Request, exc: ReconnectRequired) -> JSONResponse:
        return JSONResponse(
            status_code=409, content={"detail": str(exc), "platform": exc.platform}
        )

    @app.exception_handler(SendFailed)
    async def send_failed(request: Request, exc: SendFailed) -> JSONResponse:
        return JSONResponse(
            status_code=502, content={"detail": exc.reason, "message_id": exc.message_id}
        )

    @app.exception_handler(UpstreamTransientError)
    async def upstream_error(request: Request, exc: UpstreamTransientError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": exc.detail})

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateError)
    async def invalid_state(request: Request, exc: InvalidStateError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def invalid_value(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal security layer for local and private deployments.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    def rate_limited(request: Request) -> None:
        """Summary: Apply the caller-IP rate limit.

        Importance: Webhooks and AI suggestions are the expensive, publicly reachable routes.
        Alternatives: Rate limit at a reverse proxy.
        """

        peer = request.client.host if request.client else None
        decision = context.rate_limiter.hit(client_key(dict(request.headers), peer))
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail="Too many requests",
                headers={"Retry-After": str(decision.retry_after)},
            )

    @app.get("/health")
    def health() -> dict[str, str]:
        """Summary: Health check endpoint.

        Importance: Supports uptime checks in local and cloud deployments.
        Alternatives: Use a metrics endpoint only.
        """

        return {"status": "ok"}

    @app.post("/tenants", dependencies=[Depends(require_api_key)])
    def create_tenant(payload: TenantCreateRequest) -> dict[str, Any]:
        tenant = context.tenants.create_tenant(payload.name, payload.email, payload.tier)
        return _tenant_dict(tenant)

    @app.get("/tenants/{tenant_id}/usage", dependencies=[Depends(require_api_key)])
    def tenant_usage(tenant_id: int) -> dict[str, Any]:
        return context.tenants.usage_status(tenant_id).to_dict()

    @app.post("/tenants/{tenant_id}/tier", dependencies=[Depends(require_api_key)])
    def set_tier(tenant_id: int, payload: TierUpdateRequest) -> dict[str, Any]:
        return _tenant_dict(context.tenants.set_tier(tenant_id, payload.tier))

    @app.post(
        "/tenants/{tenant_id}/usage/ai-suggestions",
        dependencies=[Depends(require_api_key), Depends(rate_limited)],
    )
    def consume_ai_suggestion(tenant_id: int) -> dict[str, Any]:
        """Summary: Consume one daily AI suggestion.

        Importance: The AI provider is called only after this succeeds.
        Alternatives: Meter suggestions after generation.
        """

        return context.tenants.consume_ai_suggestion(tenant_id).to_dict()

    @app.get("/tenants/{tenant_id}/conversations", dependencies=[Depends(require_api_key)])
    def list_conversations(
        tenant_id: int, archived: bool = False, limit: int = 50
    ) -> list[dict[str, Any]]:
        return [
            _conversation_dict(conversation)
            for conversation in context.conversations.list_conversations(
                tenant_id, archived=archived, limit=limit
            )
        ]

    @app.get("/conversations/{conversation_id}/messages", dependencies=[Depends(require_api_key)])
    def list_messages(conversation_id: int) -> list[dict[str, Any]]:
        return [
            _message_dict(message)
            for message in context.conversations.list_messages(conversation_id)
        ]

    @app.post("/conversations/{conversation_id}/archive", dependencies=[Depends(require_api_key)])
    def archive_conversation(conversation_id: int, payload: ArchiveRequest) -> dict[str, Any]:
        conversation = context.conversations.archive(conversation_id, payload.archive_type)
        return _conversation_dict(conversation)

    @app.post("/conversations/{conversation_id}/reopen", dependencies=[Depends(require_api_key)])
    def reopen_conversation(conversation_id: int) -> dict[str, Any]:
        return _conversation_dict(context.conversations.reopen(conversation_id))

    @app.post("/conversations/{conversation_id}/read", dependencies=[Depends(require_api_key)])
    def mark_read(conversation_id: int) -> dict[str, Any]:
        return _conversation_dict(context.conversations.mark_read(conversation_id))

    @app.post("/conversations/{conversation_id}/notes", dependencies=[Depends(require_api_key)])
    def update_notes(conversation_id: int, payload: NotesRequest) -> dict[str, Any]:
        conversation = context.conversations.update_notes(conversation_id, payload.notes)
        return _conversation_dict(conversation)

    @app.delete("/conversations/{conversation_id}", dependencies=[Depends(require_api_key)])
    def delete_conversation(conversation_id: int) -> dict[str, str]:
        context.conversations.delete(conversation_id)
        return {"status": "deleted"}

    @app.post("/messages", dependencies=[Depends(require_api_key)])
    def send_message(payload: MessageCreateRequest) -> dict[str, Any]:
        """Summary: Compose and deliver a reply.

        Importance: A failed delivery answers 502 but the message stays stored for retry.
        Alternatives: Return 200 with a failed status in the body.
        """

        message = context.dispatcher.send(
            payload.tenant_id, payload.conversation_id, payload.content, payload.sender_name
        )
        return _message_dict(message)

    @app.post("/messages/{message_id}/retry", dependencies=[Depends(require_api_key)])
    def retry_message(message_id: int) -> dict[str, Any]:
        return _message_dict(context.dispatcher.retry(message_id))

    @app.get("/oauth/{platform}/start", dependencies=[Depends(require_api_key)])
    def oauth_start(platform: str, tenant_id: int) -> dict[str, str]:
        return context.connections.start(tenant_id, platform)

    @app.get("/oauth/{platform}/callback", response_class=HTMLResponse)
    def oauth_callback(
        platform: str,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> str:
        """Summary: Complete the OAuth flow started by /oauth/{platform}/start.

        Importance: Exchanges the code and stores the channel credential.
        Alternatives: Complete the exchange in the frontend.
        """

        if error:
            logger.warning("%s authorization failed: %s", platform, error_description or error)
            raise HTTPException(status_code=400, detail=error_description or error)
        if not code or not state:
            raise HTTPException(status_code=400, detail="Missing code or state")
        credential = context.connections.complete(platform, code, state)
        name = credential.username or credential.external_account_id
        return f"<h1>InboxForge connected {platform}</h1><p>{name} is ready. You can close this window.</p>"

    @app.delete(
        "/tenants/{tenant_id}/connections/{platform}", dependencies=[Depends(require_api_key)]
    )
    def disconnect(tenant_id: int, platform: str) -> dict[str, int]:
        return {"deactivated": context.connections.disconnect(tenant_id, platform)}

    @app.post(
        "/tenants/{tenant_id}/connections/{platform}/refresh",
        dependencies=[Depends(require_api_key)],
    )
    def refresh_connection(tenant_id: int, platform: str) -> dict[str, Any]:
        return _credential_dict(context.connections.refresh(tenant_id, platform))

    @app.get("/webhooks/instagram", response_class=PlainTextResponse)
    @app.get("/webhooks/whatsapp", response_class=PlainTextResponse)
    def verify_webhook(request: Request) -> str:
        """Summary: Answer the Meta subscription handshake.

        Importance: Meta only delivers events after the challenge is echoed back.
        Alternatives: Subscribe webhooks manually in the dashboard only.
        """

        challenge = verify_subscription(dict(request.query_params), config.webhook_verify_token)
        if challenge is None:
            raise HTTPException(status_code=403, detail="Verification failed")
        return challenge

    @app.post("/webhooks/email", dependencies=[Depends(rate_limited)])
    async def email_webhook(request: Request) -> dict[str, Any]:
        body = await _json_body(request)
        result = await run_in_threadpool(context.webhooks.handle_email, body)
        if result is None:
            return {"status": "ignored"}
        return {"status": "ok", "conversation_id": result.conversation_id, "duplicate": result.duplicate}

    @app.post("/webhooks/instagram", dependencies=[Depends(rate_limited)])
    async def instagram_webhook(request: Request) -> dict[str, Any]:
        body = await _signed_body(request, "instagram", "x-hub-signature-256")
        return {"success": True, **await run_in_threadpool(context.webhooks.handle_instagram, body)}

    @app.post("/webhooks/whatsapp", dependencies=[Depends(rate_limited)])
    async def whatsapp_webhook(request: Request) -> dict[str, Any]:
        body = await _signed_body(request, "whatsapp", "x-hub-signature-256")
        return {"success": True, **await run_in_threadpool(context.webhooks.handle_whatsapp, body)}

    @app.post("/webhooks/tiktok", dependencies=[Depends(rate_limited)])
    async def tiktok_webhook(request: Request) -> dict[str, Any]:
        body = await _signed_body(request, "tiktok", "x-tiktok-signature")
        return {"success": True, **await run_in_threadpool(context.webhooks.handle_tiktok, body)}

    async def _signed_body(request: Request, platform: str, header: str) -> dict[str, Any]:
        raw = await request.body()
        if not context.webhooks.signature_ok(platform, raw, request.headers.get(header)):
            logger.error("Invalid %s webhook signature; rejecting delivery.", platform)
            raise HTTPException(status_code=403, detail="Invalid signature")
        return _parse_json(raw)

    return app


def build_default_app() -> FastAPI:
    """Summary: Build the app from the environment.

    Importance: Used by uvicorn's factory mode so importing this module has no side effects.
    Alternatives: Create a module-level app at import time.
    """

    return create_app(AppConfig.from_env())


async def _json_body(request: Request) -> dict[str, Any]:
    return _parse_json(await request.body())


def _parse_json(raw: bytes) -> dict[str, Any]:
    try:
        body = json.loads(raw or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return body


def _tenant_dict(tenant: StoredTenant) -> dict[str, Any]:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "email": tenant.email,
        "subscription_tier": tenant.subscription_tier,
        "created_at": tenant.created_at,
    }


def _message_dict(message: StoredMessage) -> dict[str, Any]:
    data = asdict(message)
    data["metadata"] = json.loads(message.metadata or "{}")
    return data


def _credential_dict(credential: CredentialRecord) -> dict[str, Any]:
    return {
        "id": credential.id,
        "platform": credential.platform,
        "external_account_id": credential.external_account_id,
        "username": credential.username,
        "token_expires_at": (
            credential.token_expires_at.isoformat() if credential.token_expires_at else None
        ),
        "is_active": credential.is_active,
    }


def _conversation_dict(conversation: StoredConversation) -> dict[str, Any]:
    return asdict(conversation)
