"""FastAPI entrypoint for Twilio voice webhooks driving state-machine call flows.

This module performs four primary responsibilities:
1. Validate Twilio webhook signatures.
2. Hand each voice/status webhook to the call processor and return its TwiML.
3. Wire the rule engine, session store, event bus and observability
   subscribers for the process.
4. Manage process-lifecycle resources (event consumers, session sweeper and
   the optional observability DB pool).
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from .config import settings
from .flow import (
    CallFlowError,
    CallProcessor,
    CallSessionStore,
    EventBus,
    InvalidInputError,
    MachineRegistry,
    RuleEngine,
    State,
)
from .flows import build_registry
from .observability.db import close_pool, init_pool
from .observability.event_logger import EventLogger
from .observability.recorder import DbEventRecorder
from .twilio.signature import SIGNATURE_HEADER, SignatureVerifier, SignedRequest
from .twilio.twiml import Hangup, Say, render_twiml

_LOGGER = logging.getLogger(__name__)

FAILURE_TWIML = render_twiml(
    [Say("We're sorry, an application error has occurred. Goodbye."), Hangup()]
)


def _configure_logging() -> None:
    """Configures runtime log level for gateway lifecycle tracing."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    observability_level = getattr(
        logging,
        settings.OBSERVABILITY_LOG_LEVEL.upper(),
        logging.INFO,
    )
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(level)

    _LOGGER.setLevel(level)
    logging.getLogger("ivr_gateway").setLevel(level)
    logging.getLogger("ivr_gateway.app.observability").setLevel(observability_level)
    _LOGGER.debug(
        "Logging configured for IVR gateway.",
        extra={
            "log_level": settings.LOG_LEVEL,
            "observability_log_level": settings.OBSERVABILITY_LOG_LEVEL,
            "validate_twilio_signatures": settings.VALIDATE_TWILIO_SIGNATURES,
        },
    )


async def _request_params(request: Request) -> list[tuple[str, str]]:
    """Returns the Twilio parameters of a webhook (form fields for POST)."""
    if request.method.upper() == "POST":
        form = await request.form()
        return [(key, str(value)) for key, value in form.multi_items()]
    return list(request.query_params.multi_items())


async def _is_trusted_webhook(request: Request) -> bool:
    """Returns whether the webhook is signed by Twilio (or checks are disabled)."""
    if not settings.VALIDATE_TWILIO_SIGNATURES:
        _LOGGER.debug("Twilio HTTP signature validation disabled by config.")
        return True

    signed = SignedRequest(
        observed_url=str(request.url),
        path=request.url.path,
        query=request.url.query,
        params=tuple(await _request_params(request)),
        signature=request.headers.get(SIGNATURE_HEADER, ""),
    )
    verifier = SignatureVerifier(settings.TWILIO_AUTH_TOKEN, settings.public_voice_url)
    return verifier.verify(signed)


@dataclass(slots=True)
class GatewayRuntime:
    """Process-scoped call-flow components shared by all webhook requests."""

    registry: MachineRegistry
    engine: RuleEngine
    store: CallSessionStore
    events: EventBus
    processor: CallProcessor
    pending: set[asyncio.Task[State]] = field(default_factory=set)

    async def process(self, machine: str, params: dict[str, Any]) -> State:
        """Runs the processor in its own task and waits a bounded time for it.

        The task is shielded: a transport timeout or client disconnect never
        interrupts a half-applied transition.

        Raises:
            asyncio.TimeoutError: If `REQUEST_TIMEOUT_SECONDS` elapses first.
        """
        task = asyncio.create_task(self.processor.process(machine, params))
        self.pending.add(task)
        task.add_done_callback(self._forget)
        return await asyncio.wait_for(asyncio.shield(task), timeout=settings.REQUEST_TIMEOUT_SECONDS)

    def _forget(self, task: asyncio.Task[State]) -> None:
        self.pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _LOGGER.debug("Call processor task finished with an error.", exc_info=task.exception())

    async def wait_for_pending(self, timeout: float) -> None:
        """Lets in-flight processor tasks finish before shutdown."""
        if not self.pending:
            return
        _, still_running = await asyncio.wait(set(self.pending), timeout=timeout)
        if still_running:
            _LOGGER.warning(
                "Shutting down with call processor tasks still running.",
                extra={"task_count": len(still_running)},
            )


def build_runtime(registry: MachineRegistry | None = None) -> GatewayRuntime:
    """Wires the call-flow components for one application instance."""
    registry = registry or build_registry()
    engine = RuleEngine(registry)
    store = CallSessionStore(ttl_seconds=settings.SESSION_TTL_SECONDS)
    events = EventBus(queue_size=settings.EVENT_BUS_QUEUE_SIZE)
    events.subscribe(EventLogger(), name="event_logger")
    processor = CallProcessor(
        engine=engine,
        store=store,
        events=events,
        completed_statuses=settings.COMPLETED_CALL_STATUSES,
    )
    _LOGGER.debug(
        "Gateway runtime built.",
        extra={"machines": registry.names(), "entry_machine": settings.ENTRY_MACHINE},
    )
    return GatewayRuntime(
        registry=registry,
        engine=engine,
        store=store,
        events=events,
        processor=processor,
    )


def create_app(registry: MachineRegistry | None = None) -> FastAPI:
    """Builds the FastAPI application with a fresh call-flow runtime."""

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        """Starts and stops process-scoped resources."""
        runtime = build_runtime(registry)
        app.state.runtime = runtime
        # Boot-time observability init is optional and should not block call flow.
        if settings.DB_CONNECTION_STRING:
            try:
                await init_pool()
                runtime.events.subscribe(DbEventRecorder(), name="db_event_recorder")
            except Exception:
                _LOGGER.exception("Failed to initialize observability DB pool.")
        await runtime.events.start()
        runtime.store.start_sweeper(settings.SESSION_SWEEP_INTERVAL_SECONDS)
        try:
            yield
        finally:
            _LOGGER.debug("IVR gateway lifespan shutdown beginning.")
            await runtime.wait_for_pending(timeout=settings.REQUEST_TIMEOUT_SECONDS)
            await runtime.store.stop_sweeper()
            await runtime.events.close()
            try:
                await close_pool()
            except Exception:
                _LOGGER.exception("Failed to close observability DB pool.")

    app = FastAPI(lifespan=_lifespan)
    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route("/twilio/voice", voice, methods=["GET", "POST"])
    app.add_api_route("/twilio/status", call_status, methods=["POST"])
    return app


async def health(request: Request) -> dict[str, Any]:
    """Returns a minimal liveness response for probes."""
    runtime: GatewayRuntime = request.app.state.runtime
    return {"status": "ok", "service": "ivr_gateway", "active_calls": len(runtime.store)}


async def voice(request: Request) -> PlainTextResponse:
    """Returns the TwiML for the next step of the call.

    Raises:
        HTTPException: If signature validation fails (403) or the request
            does not identify a call (400).
    """
    return await _handle_call_webhook(request)


async def call_status(request: Request) -> PlainTextResponse:
    """Handles Twilio call status callbacks (final statuses end the session)."""
    return await _handle_call_webhook(request)


async def _handle_call_webhook(request: Request) -> PlainTextResponse:
    """Runs one webhook through the call processor and renders the result."""
    # Reject untrusted webhook traffic before touching any call session.
    if not await _is_trusted_webhook(request):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid Twilio request signature.",
        )

    params = dict(await _request_params(request))
    runtime: GatewayRuntime = request.app.state.runtime
    _LOGGER.debug(
        "Twilio webhook received.",
        extra={
            "path": request.url.path,
            "call_id": params.get("CallSid"),
            "call_status": params.get("CallStatus"),
        },
    )
    try:
        state = await runtime.process(settings.ENTRY_MACHINE, params)
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except asyncio.TimeoutError:
        _LOGGER.error(
            "Call processor timed out; answering with generic failure.",
            extra={"call_id": params.get("CallSid")},
        )
        return _failure_response()
    except CallFlowError:
        _LOGGER.exception("Call flow failed.", extra={"call_id": params.get("CallSid")})
        return _failure_response()

    return PlainTextResponse(content=state.rendered, media_type="text/xml")


def _failure_response() -> PlainTextResponse:
    return PlainTextResponse(
        content=FAILURE_TWIML,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="text/xml",
    )


_configure_logging()
app = create_app()
