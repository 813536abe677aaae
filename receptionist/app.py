"""FastAPI application — telephony webhooks, agent bridge, tool + debug APIs.

Endpoints:

  POST /voice/answer            call start: greet + gather, or connect a Media Stream
  POST /voice/handle-input      one caller utterance → intent → next action
  POST /voice/schedule-time     date/time answer while scheduling (never re-classified)
  POST /voice/transfer          dial the operator
  POST /voice/dial-result       operator dial finished; unanswered → voicemail
  POST /voice/voicemail         record a message
  POST /voice/voicemail-result  recording finished → hang up
  POST /voice/status            call status callback; ends the session
  WS   /twilio/stream           Twilio Media Stream ⇄ conversational agent bridge
  POST /tools/book-appointment  book_appointment over HTTP
  GET  /health                  Health check
  /debug/*                      admin-only inspection endpoints

The gather flow (VOICE_MODE=gather):
  1. /voice/answer creates the session and gathers speech
  2. /voice/handle-input classifies it; a schedule intent books straight
     away when a time was given, otherwise asks for one
  3. /voice/schedule-time treats every answer as a date/time until booked

The bridge flow (VOICE_MODE=bridge):
  1. /voice/answer returns <Connect><Stream> pointing at /twilio/stream
  2. CallBridge relays audio both ways and routes the agent's tool calls
"""

from __future__ import annotations

# Load .env into os.environ early, before settings and SDK clients read it
from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable, Optional

# Configure root logger early so every receptionist.* logger is visible
# when run via `uvicorn receptionist.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Form, Request, WebSocket
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from receptionist.agent import AgentConnection
from receptionist.auth import require_admin_token, verify_twilio_signature
from receptionist.booking import BookingOrchestrator, BookingOutcome
from receptionist.bridge import CallBridge
from receptionist.business_hours import BusinessHoursPolicy, describe, load_policy
from receptionist.calendar_providers.base import CalendarProvider
from receptionist.calendar_providers.google import GoogleCalendarProvider
from receptionist.channels.twilio_stream import TwilioMediaStream
from receptionist.config import Settings, settings
from receptionist.datetime_resolver import (
    Clock,
    DateTimeResolver,
    clock_for,
    parse_explicit_timestamp,
)
from receptionist.errors import UpstreamFailure, ValidationError
from receptionist.intent import IntentClassifier
from receptionist.models.booking import AppointmentRequest, BookingFailureKind, BookingResult
from receptionist.models.call import CallSession, CallState
from receptionist.notify import SmsConfirmer, spoken_time
from receptionist.session import SessionStore, redact_pii
from receptionist.tools.booking import TOOL_NAME, book_appointment_tool, request_from_params
from receptionist.tools.router import ToolCallRouter, ToolRegistry
from receptionist.twiml import TwiML

log = logging.getLogger("receptionist.app")

_START_TIME = time.time()

FINISHED_CALL_STATUSES = {"completed", "busy", "failed", "no-answer", "canceled"}

FAILURE_STATUS = {
    BookingFailureKind.AMBIGUOUS: 422,
    BookingFailureKind.OUTSIDE_HOURS: 422,
    BookingFailureKind.UPSTREAM_FAILURE: 502,
    BookingFailureKind.UPSTREAM_TIMEOUT: 504,
}


# ── Service wiring ───────────────────────────────────────────────

@dataclass
class Services:
    """Everything the endpoints need, built once per app."""

    store: SessionStore
    policy: BusinessHoursPolicy
    clock: Clock
    orchestrator: BookingOrchestrator
    registry: ToolRegistry
    router: ToolCallRouter
    classifier: IntentClassifier
    connect_agent: Callable[[], Awaitable[AgentConnection]]
    calendar: Optional[CalendarProvider] = None


def build_services(config: Settings) -> Services:
    policy = load_policy(config.business_days, config.business_hours, config.business_timezone)
    clock = clock_for(policy.timezone)
    store = SessionStore(ttl_seconds=config.session_ttl_seconds)

    calendar: Optional[CalendarProvider] = None
    if config.calendar_configured:
        try:
            calendar = GoogleCalendarProvider.from_settings(config)
        except (ValueError, OSError) as e:
            log.error("Google Calendar unavailable: %s", e)

    confirmer = None
    if config.sms_confirmations and config.twilio_account_sid and config.twilio_phone_number:
        confirmer = SmsConfirmer.from_settings(config)

    orchestrator = BookingOrchestrator(
        calendar,
        policy,
        resolver=DateTimeResolver(),
        clock=clock,
        confirmer=confirmer,
        timeout=config.upstream_timeout_seconds,
    )
    registry = ToolRegistry([
        book_appointment_tool(
            orchestrator,
            store,
            default_timezone=policy.timezone,
            duration_minutes=config.appointment_duration_minutes,
        ),
    ])
    return Services(
        store=store,
        policy=policy,
        clock=clock,
        orchestrator=orchestrator,
        registry=registry,
        # Leave headroom for the calendar call's own timeout
        router=ToolCallRouter(registry, timeout=config.upstream_timeout_seconds + 2),
        classifier=IntentClassifier.from_settings(config),
        connect_agent=partial(
            AgentConnection.connect,
            config.agent_ws_url,
            config.hume_api_key,
            config.hume_config_id,
            timeout=config.upstream_timeout_seconds,
            linear16=config.agent_transcode_audio,
        ),
        calendar=calendar,
    )


# ── Request models ───────────────────────────────────────────────

class ClassifyRequest(BaseModel):
    text: str = Field(min_length=1)


class DebugCreateRequest(BaseModel):
    summary: str = ""
    description: str = ""
    start_iso: str = Field(alias="startISO")
    duration_minutes: int = Field(30, alias="durationMinutes", ge=5, le=480)

    model_config = {"populate_by_name": True}


# ── Helpers ──────────────────────────────────────────────────────

def _base_url(request: Request) -> str:
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "localhost")
    return f"{proto}://{host}"


def _end_call(session: Optional[CallSession]) -> None:
    if session is not None and session.can_advance(CallState.END):
        session.advance(CallState.END)


def _enter_listening(session: CallSession) -> None:
    if session.state is not CallState.LISTENING and session.can_advance(CallState.LISTENING):
        session.advance(CallState.LISTENING)


MIN_UPSTREAM_TIMEOUT = 0.5


class WebhookBudget:
    """Wall-clock allowance shared by the upstream calls of one webhook."""

    def __init__(
        self,
        total: float,
        per_call: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._deadline = clock() + total
        self._per_call = per_call

    def next_timeout(self, calls_left: int = 1) -> float:
        """Timeout for the next call, leaving an even share for ``calls_left - 1`` more."""
        remaining = max(self._deadline - self._clock(), MIN_UPSTREAM_TIMEOUT)
        return min(self._per_call, remaining / calls_left)


def create_app(services: Optional[Services] = None, config: Settings = settings) -> FastAPI:
    """Create and configure the FastAPI application."""
    services = services or build_services(config)
    store = services.store

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for warning in config.validate_startup():
            log.warning(warning)
        sweeper = asyncio.create_task(store.run_sweeper())
        log.info(
            "Receptionist ready: mode=%s tz=%s hours=%s",
            config.voice_mode, services.policy.timezone, describe(services.policy),
        )
        try:
            yield
        finally:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)

    app = FastAPI(
        title="AI Receptionist",
        description="Answers calls, books appointments inside business hours",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # ── Shared call-flow pieces ────────────────────────────────

    def gather_input(base: str, prompt: str = "") -> TwiML:
        return TwiML().gather(f"{base}/voice/handle-input", prompt)

    def appointment_request(session: CallSession, speech: str, explicit=None) -> AppointmentRequest:
        return AppointmentRequest(
            reference=services.clock(),
            timezone=services.policy.timezone,
            utterance=speech,
            phrase=speech,
            explicit_start=explicit,
            duration_minutes=config.appointment_duration_minutes,
            calendar_id=config.google_calendar_id,
            summary=f"Call with {config.business_name}",
            caller=session.caller,
        )

    def booking_twiml(session: CallSession, outcome: BookingOutcome, base: str) -> TwiML:
        """Speak the outcome and move the session on."""
        schedule_action = f"{base}/voice/schedule-time"

        if isinstance(outcome, BookingResult):
            session.advance(CallState.BOOKED)
            return (
                TwiML()
                .say(f"Great, I booked you for {spoken_time(outcome.start)}.")
                .gather(f"{base}/voice/handle-input", "Is there anything else I can help with?")
            )

        if outcome.kind is BookingFailureKind.OUTSIDE_HOURS:
            session.advance(CallState.OUT_OF_HOURS)
        elif outcome.kind is not BookingFailureKind.AMBIGUOUS:
            session.advance(CallState.BOOKING_FAILED)
        return TwiML().gather(schedule_action, outcome.message)

    async def transfer_twiml(session: CallSession, base: str) -> TwiML:
        if config.operator_number:
            session.advance(CallState.TRANSFERRED)
            log.info("Transferring %s to operator", session.call_sid)
            return (
                TwiML()
                .say("Please hold while I transfer you.")
                .dial(config.operator_number, f"{base}/voice/dial-result")
            )
        session.advance(CallState.VOICEMAIL)
        return voicemail_twiml(base, "Nobody is available to take your call right now.")

    def voicemail_twiml(base: str, lead_in: str = "") -> TwiML:
        twiml = TwiML()
        if lead_in:
            twiml.say(lead_in)
        return (
            twiml.say("Please leave a message after the tone.")
            .record(f"{base}/voice/voicemail-result", config.voicemail_max_seconds)
            .say("I did not receive a recording. Goodbye.")
            .hangup()
        )

    def webhook_budget() -> WebhookBudget:
        return WebhookBudget(config.webhook_budget_seconds, config.upstream_timeout_seconds)

    async def schedule_from_speech(session: CallSession, speech: str, base: str) -> TwiML:
        if session.state in (CallState.OUT_OF_HOURS, CallState.BOOKING_FAILED):
            session.advance(CallState.SCHEDULING)
        outcome = await services.orchestrator.book(
            appointment_request(session, speech),
            session=session,
            timeout=webhook_budget().next_timeout(),
        )
        return booking_twiml(session, outcome, base)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check — confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({
            "status": "ok",
            "uptime": uptime,
            "active_calls": len(store),
            "voice_mode": config.voice_mode,
        })

    # ── Voice webhooks ─────────────────────────────────────────

    @app.post("/voice/answer", dependencies=[Depends(verify_twilio_signature)])
    async def voice_answer(
        request: Request,
        CallSid: str = Form(""),
        From: str = Form(""),
        To: str = Form(""),
    ) -> Response:
        base = _base_url(request)
        call_sid = CallSid or "TEST"
        log.info("Call answered: %s from=%s", call_sid, redact_pii(From))

        async with store.transaction(call_sid, create=True, caller=From, business=To) as session:
            if session.state is CallState.START:
                session.advance(CallState.LISTENING)

        if config.voice_mode == "bridge":
            host = base.split("://", 1)[1]
            twiml = TwiML().connect_stream(
                f"wss://{host}/twilio/stream",
                {"callSid": call_sid, "from": From},
            )
            # Reached only when the stream ends
            twiml.say(f"Thank you for calling {config.business_name}. Goodbye.")
            return twiml.response()

        greeting = f"Hello, you've reached {config.business_name}. How can I help you today?"
        return (
            gather_input(base, greeting)
            .say("Sorry, I did not hear you.")
            .redirect(f"{base}/voice/answer")
            .response()
        )

    @app.post("/voice/handle-input", dependencies=[Depends(verify_twilio_signature)])
    async def voice_handle_input(
        request: Request,
        CallSid: str = Form(""),
        From: str = Form(""),
        SpeechResult: str = Form(""),
    ) -> Response:
        base = _base_url(request)
        call_sid = CallSid or "TEST"
        speech = SpeechResult.strip()
        budget = webhook_budget()

        if not speech:
            return gather_input(base, "I did not catch that. Please tell me how I can help.").response()

        async with store.transaction(call_sid, create=True, caller=From) as session:
            if session.is_scheduling:
                # A date/time answer that arrived on the wrong webhook
                return (await schedule_from_speech(session, speech, base)).response()

            _enter_listening(session)
            if not session.can_advance(CallState.INTENT_RESOLVED):
                # Transferred or in voicemail; nothing left to converse about
                _end_call(session)
                return TwiML().say("Goodbye.").hangup().response()

            intent = await services.classifier.classify(
                speech, timeout=budget.next_timeout(calls_left=2),
            )
            session.advance(CallState.INTENT_RESOLVED)
            log.info("Call %s intent=%s", call_sid, intent.intent)

            if intent.intent == "schedule":
                session.advance(CallState.SCHEDULING)
                explicit = parse_explicit_timestamp(intent.datetime_iso)
                outcome = await services.orchestrator.book(
                    appointment_request(session, speech, explicit),
                    session=session,
                    timeout=budget.next_timeout(),
                )
                if (
                    not isinstance(outcome, BookingResult)
                    and outcome.kind is BookingFailureKind.AMBIGUOUS
                ):
                    return TwiML().gather(
                        f"{base}/voice/schedule-time", "What day and time would you like?",
                    ).response()
                return booking_twiml(session, outcome, base).response()

            if intent.intent == "transfer":
                return (await transfer_twiml(session, base)).response()

            session.advance(CallState.LISTENING)
            if intent.intent == "hours":
                reply = f"We're open {describe(services.policy)}. How else can I help?"
            else:
                reply = intent.reply
            return TwiML().say(reply).gather(f"{base}/voice/handle-input").response()

    @app.post("/voice/schedule-time", dependencies=[Depends(verify_twilio_signature)])
    async def voice_schedule_time(
        request: Request,
        CallSid: str = Form(""),
        SpeechResult: str = Form(""),
    ) -> Response:
        base = _base_url(request)
        call_sid = CallSid or "TEST"
        speech = SpeechResult.strip()

        async with store.transaction(call_sid) as session:
            if session is None or not session.is_scheduling:
                return TwiML().redirect(f"{base}/voice/answer").response()
            if not speech:
                return TwiML().gather(f"{base}/voice/schedule-time", "Sorry, what date and time?").response()
            return (await schedule_from_speech(session, speech, base)).response()

    @app.post("/voice/transfer", dependencies=[Depends(verify_twilio_signature)])
    async def voice_transfer(
        request: Request,
        CallSid: str = Form(""),
        From: str = Form(""),
    ) -> Response:
        base = _base_url(request)
        async with store.transaction(CallSid or "TEST", create=True, caller=From) as session:
            _enter_listening(session)
            if session.can_advance(CallState.INTENT_RESOLVED):
                session.advance(CallState.INTENT_RESOLVED)
            if session.state is not CallState.INTENT_RESOLVED:
                return gather_input(base, "How can I help you?").response()
            return (await transfer_twiml(session, base)).response()

    @app.post("/voice/dial-result", dependencies=[Depends(verify_twilio_signature)])
    async def voice_dial_result(
        request: Request,
        CallSid: str = Form(""),
        DialCallStatus: str = Form(""),
    ) -> Response:
        base = _base_url(request)
        async with store.transaction(CallSid or "TEST") as session:
            if DialCallStatus == "completed":
                _end_call(session)
                return TwiML().hangup().response()
            log.info("Operator dial for %s ended: %s", CallSid, DialCallStatus or "unknown")
            if session is not None and session.can_advance(CallState.VOICEMAIL):
                session.advance(CallState.VOICEMAIL)
        return voicemail_twiml(base, "Sorry, nobody could pick up.").response()

    @app.post("/voice/voicemail", dependencies=[Depends(verify_twilio_signature)])
    async def voice_voicemail(
        request: Request,
        CallSid: str = Form(""),
        From: str = Form(""),
    ) -> Response:
        base = _base_url(request)
        async with store.transaction(CallSid or "TEST", create=True, caller=From) as session:
            _enter_listening(session)
            if session.can_advance(CallState.INTENT_RESOLVED):
                session.advance(CallState.INTENT_RESOLVED)
            if session.can_advance(CallState.VOICEMAIL):
                session.advance(CallState.VOICEMAIL)
        return voicemail_twiml(base).response()

    @app.post("/voice/voicemail-result", dependencies=[Depends(verify_twilio_signature)])
    async def voice_voicemail_result(
        CallSid: str = Form(""),
        RecordingUrl: str = Form(""),
        RecordingDuration: str = Form(""),
    ) -> Response:
        log.info(
            "Voicemail for %s: %ss at %s", CallSid, RecordingDuration or "?", RecordingUrl or "-",
        )
        async with store.transaction(CallSid or "TEST") as session:
            _end_call(session)
        return TwiML().say("Thank you. Your message has been recorded. Goodbye.").hangup().response()

    @app.post("/voice/status", dependencies=[Depends(verify_twilio_signature)])
    async def voice_status(
        CallSid: str = Form(""),
        CallStatus: str = Form(""),
    ) -> Response:
        log.info("Call status %s: %s", CallSid, CallStatus)
        if CallSid and CallStatus in FINISHED_CALL_STATUSES:
            async with store.transaction(CallSid) as session:
                _end_call(session)
        return Response(status_code=204)

    # ── Twilio Media Stream ⇄ agent bridge ─────────────────────

    @app.websocket("/twilio/stream")
    async def twilio_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        stream = TwilioMediaStream(websocket)
        if not await stream.initialize():
            await stream.close()
            return

        try:
            agent = await services.connect_agent()
        except UpstreamFailure as e:
            log.error("Agent unavailable for %s: %s", stream.call_sid, e)
            await stream.close()
            return

        bridge = CallBridge(
            stream, agent, services.router, transcode=config.agent_transcode_audio,
        )
        await bridge.run()

    # ── Tool endpoint ──────────────────────────────────────────

    @app.post("/tools/book-appointment", dependencies=[Depends(require_admin_token)])
    async def tools_book_appointment(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"ok": False, "error": "Body must be JSON"}, status_code=400)

        definition = services.registry.get(TOOL_NAME)
        try:
            params = definition.parse(body)
        except ValidationError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)

        booking = request_from_params(
            params,
            services.orchestrator.now(),
            services.policy.timezone,
            config.appointment_duration_minutes,
        )
        outcome = await services.orchestrator.book(booking)
        if isinstance(outcome, BookingResult):
            return JSONResponse({"ok": True, "event": outcome.to_event()})
        return JSONResponse(
            {"ok": False, "error": outcome.message, "code": outcome.kind.value},
            status_code=FAILURE_STATUS[outcome.kind],
        )

    # ── Debug API ──────────────────────────────────────────────

    @app.get("/debug/sessions", dependencies=[Depends(require_admin_token)])
    async def debug_sessions() -> JSONResponse:
        sessions = [
            s.model_dump(mode="json") | {"caller": redact_pii(s.caller)}
            for s in store.active()
        ]
        return JSONResponse({"sessions": sessions, "count": len(sessions)})

    @app.post("/debug/ai", dependencies=[Depends(require_admin_token)])
    async def debug_ai(body: ClassifyRequest) -> JSONResponse:
        intent = await services.classifier.classify(body.text)
        return JSONResponse({"ok": True, "intent": intent.model_dump(by_alias=True)})

    def calendar_or_503() -> Optional[JSONResponse]:
        if services.calendar is None:
            return JSONResponse({"ok": False, "error": "Calendar not configured"}, status_code=503)
        return None

    @app.get("/debug/calendar/list", dependencies=[Depends(require_admin_token)])
    async def debug_calendar_list(limit: int = 10) -> JSONResponse:
        if (unavailable := calendar_or_503()) is not None:
            return unavailable
        try:
            events = await services.calendar.list_events(
                config.google_calendar_id, max_results=max(1, min(limit, 50)),
            )
        except Exception as e:
            log.exception("Calendar list failed")
            return JSONResponse({"ok": False, "error": str(e)}, status_code=502)
        return JSONResponse({"ok": True, "events": events})

    @app.get("/debug/calendar/get", dependencies=[Depends(require_admin_token)])
    async def debug_calendar_get(id: str = "") -> JSONResponse:
        if not id:
            return JSONResponse({"ok": False, "error": "id required"}, status_code=400)
        if (unavailable := calendar_or_503()) is not None:
            return unavailable
        try:
            event = await services.calendar.get_event(config.google_calendar_id, id)
        except Exception as e:
            log.exception("Calendar get failed")
            return JSONResponse({"ok": False, "error": str(e)}, status_code=502)
        if event is None:
            return JSONResponse({"ok": False, "error": "not found"}, status_code=404)
        return JSONResponse({"ok": True, "event": event})

    @app.post("/debug/calendar/create", dependencies=[Depends(require_admin_token)])
    async def debug_calendar_create(body: DebugCreateRequest) -> JSONResponse:
        start = parse_explicit_timestamp(body.start_iso)
        if start is None:
            return JSONResponse({"ok": False, "error": "startISO must be ISO 8601"}, status_code=400)
        outcome = await services.orchestrator.book(AppointmentRequest(
            reference=services.clock(),
            timezone=services.policy.timezone,
            explicit_start=start,
            duration_minutes=body.duration_minutes,
            calendar_id=config.google_calendar_id,
            summary=body.summary,
            description=body.description,
        ))
        if isinstance(outcome, BookingResult):
            return JSONResponse({"ok": True, "event": outcome.to_event()})
        return JSONResponse(
            {"ok": False, "error": outcome.message, "code": outcome.kind.value},
            status_code=FAILURE_STATUS[outcome.kind],
        )

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "receptionist.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
