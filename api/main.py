"""
FastAPI Application — daemon control surface + channel webhooks.

Provides:
- Instance management: create, list, inspect, transcript, transitions
- Operator controls: pause, resume, cancel, manual send
- Ad-hoc outbound voice calls
- Webhook endpoints for WhatsApp and Telegram
- Daemon status (uptime, counts, live timers, channel health)

Error mapping:
  unknown instance          → 404
  rejected state transition → 409 {"error": "Invalid state transition", "details": ...}
  malformed request         → 400
  channel not connected     → 503
  channel / provider failed → 502
"""
from __future__ import annotations

import json
import os
import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config.log_setup import setup_logging
from config.settings import get_settings
from channels.base import ChannelError, ChannelUnavailableError
from channels.telegram_adapter import TelegramAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from core.orchestrator import Coordinator, build_coordinator
from lifecycle.errors import InstanceNotFoundError
from lifecycle.state_machine import TransitionResult
from models.schemas import (
    CallRequest, ChannelType, CreateInstanceRequest, InstanceState, SendMessageRequest,
)

logger = structlog.get_logger()


def _instance_not_found(instance_id: str) -> HTTPException:
    return HTTPException(404, f"Instance {instance_id} not found")


def _transition_response(instance_id: str, result: TransitionResult):
    if result.not_found:
        raise _instance_not_found(instance_id)
    if not result:
        return JSONResponse(
            status_code=409,
            content={"error": "Invalid state transition", "details": str(result.error)},
        )
    return result.instance.model_dump(mode="json")


def create_app(coordinator: Optional[Coordinator] = None) -> FastAPI:
    """
    Build the daemon app.

    With no coordinator one is built from settings at startup; tests inject
    a coordinator wired to in-memory stores and fake channels.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        coord = coordinator
        if coord is None:
            settings = get_settings()
            setup_logging(settings.logging.level, settings.logging.format)
            coord = await build_coordinator(settings)
        app.state.coordinator = coord

        await coord.start()
        logger.info("relay_agent_started", pid=os.getpid(), app=coord.settings.app_name)
        yield

        await coord.shutdown()
        logger.info("relay_agent_stopped")

    app = FastAPI(
        title="Relay Agent",
        description="Conversation-instance lifecycle daemon",
        version="1.0.0",
        lifespan=lifespan,
    )

    def _coord(request: Request) -> Coordinator:
        return request.app.state.coordinator

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_errors(exc)},
        )

    # ══════════════════════════════════════════════════════════
    #  STATUS
    # ══════════════════════════════════════════════════════════

    @app.get("/status")
    async def status(request: Request):
        return await _coord(request).get_status()

    # ══════════════════════════════════════════════════════════
    #  INSTANCES
    # ══════════════════════════════════════════════════════════

    @app.post("/instances", status_code=201)
    async def create_instance(body: CreateInstanceRequest, request: Request):
        try:
            instance = await _coord(request).create_instance(body)
        except ChannelUnavailableError as e:
            raise HTTPException(503, str(e))
        except ChannelError as e:
            raise HTTPException(502, str(e))
        return {"id": instance.id, "state": instance.state.value}

    @app.get("/instances")
    async def list_instances(request: Request, state: Optional[str] = None):
        filter_state = None
        if state:
            try:
                filter_state = InstanceState(state.upper())
            except ValueError:
                raise HTTPException(400, f"Unknown state '{state}'")
        instances = await _coord(request).list_instances(filter_state)
        return [i.model_dump(mode="json") for i in instances]

    @app.get("/instances/{instance_id}")
    async def get_instance(instance_id: str, request: Request):
        try:
            instance = await _coord(request).get_instance(instance_id)
        except InstanceNotFoundError:
            raise _instance_not_found(instance_id)
        return instance.model_dump(mode="json")

    @app.get("/instances/{instance_id}/transcript")
    async def get_transcript(instance_id: str, request: Request):
        try:
            messages = await _coord(request).get_transcript(instance_id)
        except InstanceNotFoundError:
            raise _instance_not_found(instance_id)
        return [m.model_dump(mode="json") for m in messages]

    @app.get("/instances/{instance_id}/transitions")
    async def get_transitions(instance_id: str, request: Request):
        try:
            return await _coord(request).get_transitions(instance_id)
        except InstanceNotFoundError:
            raise _instance_not_found(instance_id)

    # ── Operator controls ─────────────────────────────────────

    @app.post("/instances/{instance_id}/cancel")
    async def cancel_instance(instance_id: str, request: Request):
        return _transition_response(instance_id, await _coord(request).cancel(instance_id))

    @app.post("/instances/{instance_id}/pause")
    async def pause_instance(instance_id: str, request: Request):
        return _transition_response(instance_id, await _coord(request).pause(instance_id))

    @app.post("/instances/{instance_id}/resume")
    async def resume_instance(instance_id: str, request: Request):
        return _transition_response(instance_id, await _coord(request).resume(instance_id))

    @app.post("/instances/{instance_id}/send")
    async def send_manual(instance_id: str, body: SendMessageRequest, request: Request):
        try:
            saved = await _coord(request).send_manual(instance_id, body.message)
        except InstanceNotFoundError:
            raise _instance_not_found(instance_id)
        except ValueError as e:
            raise HTTPException(400, str(e))
        except ChannelUnavailableError as e:
            raise HTTPException(503, str(e))
        except ChannelError as e:
            logger.error("manual_send_failed", instance_id=instance_id, error=str(e))
            raise HTTPException(500, f"Send failed: {e}")
        return saved.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  VOICE
    # ══════════════════════════════════════════════════════════

    @app.post("/call")
    async def place_call(body: CallRequest, request: Request):
        options = body.model_dump(exclude_none=True, exclude={"to_number", "prompt", "first_message"})
        try:
            return await _coord(request).place_call(body.to_number, body.prompt, body.first_message, **options)
        except ChannelUnavailableError as e:
            raise HTTPException(503, str(e))
        except ChannelError as e:
            raise HTTPException(502, f"Call initiation failed: {e}")

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS
    # ══════════════════════════════════════════════════════════

    def _whatsapp(request: Request) -> WhatsAppAdapter:
        adapter = _coord(request).channels.get(ChannelType.WHATSAPP)
        if not isinstance(adapter, WhatsAppAdapter):
            raise HTTPException(404, "WhatsApp channel is not enabled")
        return adapter

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        challenge = _whatsapp(request).verify_webhook(dict(request.query_params))
        if challenge:
            try:
                return JSONResponse(content=int(challenge))
            except ValueError:
                return JSONResponse(content=challenge)
        raise HTTPException(403, "Verification failed")

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        """Receive WhatsApp messages with signature verification."""
        adapter = _whatsapp(request)
        body_bytes = await request.body()

        signature = request.headers.get("X-Hub-Signature-256", "")
        if not adapter.verify_webhook_signature(body_bytes, signature):
            logger.warning("whatsapp_webhook_signature_invalid")
            raise HTTPException(403, "Invalid signature")

        try:
            body = json.loads(body_bytes or b"{}")
        except ValueError:
            raise HTTPException(400, "Invalid JSON body")
        dispatched = await adapter.handle_webhook(body)
        return {"status": "ok", "dispatched": dispatched}

    @app.post("/webhooks/telegram")
    async def telegram_webhook(request: Request):
        adapter = _coord(request).channels.get(ChannelType.TELEGRAM)
        if not isinstance(adapter, TelegramAdapter):
            raise HTTPException(404, "Telegram channel is not enabled")
        try:
            update = await request.json()
        except ValueError:
            raise HTTPException(400, "Invalid JSON body")
        dispatched = await adapter.handle_update(update)
        return {"status": "ok", "dispatched": dispatched}

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors trimmed to what a client can act on."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.daemon.host, port=settings.daemon.port)


if __name__ == "__main__":
    run()
