"""
HTTP surface for the shift coverage service.

Routes:
- POST /shift-coverage-handler    action-multiplexed workflow entry point
- POST /send-nudge-whatsapp       nudge broadcasts
- POST /shift-reminder-scheduler  periodic sweep trigger
- GET  /health
"""

import logging
from enum import Enum
from typing import Optional, List, Dict, Any, Callable

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from .database import CoverageDatabase
from .engine import ShiftCoverageEngine
from .message_router import InboundMessageRouter
from .nudge_service import NudgeService, NudgeRequestError
from .reminder_scheduler import ReminderScheduler
from .whatsapp_service import WhatsAppService, build_whatsapp_service

logger = logging.getLogger(__name__)

CORS_ALLOWED_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


class CoverageAction(str, Enum):
    NOTIFY_FAMILY_REQUEST = "notify_family_request"
    BROADCAST_AVAILABLE_SHIFT = "broadcast_available_shift"
    NOTIFY_FAMILY_CLAIM = "notify_family_claim"
    PROCESS_WHATSAPP_MESSAGE = "process_whatsapp_message"
    SEND_REMINDERS = "send_reminders"
    SUBMIT_COVERAGE_REQUEST = "submit_coverage_request"
    EXPIRE_REQUESTS = "expire_requests"


REQUIRED_FIELDS = {
    CoverageAction.NOTIFY_FAMILY_REQUEST: ("request_id",),
    CoverageAction.BROADCAST_AVAILABLE_SHIFT: ("request_id",),
    CoverageAction.NOTIFY_FAMILY_CLAIM: ("claim_id",),
    CoverageAction.PROCESS_WHATSAPP_MESSAGE: ("phone_number", "message_content"),
    CoverageAction.SEND_REMINDERS: (),
    CoverageAction.SUBMIT_COVERAGE_REQUEST: ("shift_id", "caregiver_id", "reason"),
    CoverageAction.EXPIRE_REQUESTS: (),
}

# Blank text is still an inbound message and gets logged
MAY_BE_EMPTY = {"message_content"}


class NudgeRequest(BaseModel):
    """Body of POST /send-nudge-whatsapp"""
    target_users: Optional[List[str]] = None
    message_type: str = "general"
    custom_message: Optional[str] = None
    care_plan_id: Optional[str] = None
    shift_details: Optional[Dict[str, Any]] = None
    schedule_period: Optional[str] = None


class CoverageServices:
    """Wires the database, transport and workflow components together."""

    def __init__(
        self,
        db: CoverageDatabase = None,
        transport: WhatsAppService = None,
        on_shift_reassigned: Callable = None
    ):
        self.db = db or CoverageDatabase()
        self.transport = transport or build_whatsapp_service()
        self.engine = ShiftCoverageEngine(self.db, self.transport, on_shift_reassigned=on_shift_reassigned)
        self.router = InboundMessageRouter(self.db, self.engine)
        self.scheduler = ReminderScheduler(self.db, self.transport)
        self.nudges = NudgeService(self.db, self.transport)

    def dispatch(self, action: CoverageAction, body: Dict[str, Any]) -> Dict[str, Any]:
        if action == CoverageAction.NOTIFY_FAMILY_REQUEST:
            return self.engine.notify_family_of_request(body["request_id"])
        if action == CoverageAction.BROADCAST_AVAILABLE_SHIFT:
            return self.engine.broadcast_open_shift(body["request_id"])
        if action == CoverageAction.NOTIFY_FAMILY_CLAIM:
            return self.engine.notify_family_of_claim(body["claim_id"])
        if action == CoverageAction.PROCESS_WHATSAPP_MESSAGE:
            return self.router.route(body["phone_number"], body["message_content"])
        if action == CoverageAction.SEND_REMINDERS:
            return {"reminders": self.scheduler.send_reminders()}
        if action == CoverageAction.SUBMIT_COVERAGE_REQUEST:
            return self.engine.submit_coverage_request(
                body["shift_id"], body["caregiver_id"], body["reason"], body.get("request_message")
            )
        if action == CoverageAction.EXPIRE_REQUESTS:
            return {"expired": self.scheduler.expire_stale_requests()}
        raise ValueError(f"Unhandled action: {action}")


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    content = {"error": message}
    content.update(extra)
    return JSONResponse(content, status_code=status_code)


def create_app(services: CoverageServices = None) -> FastAPI:
    app = FastAPI(title="Shift Coverage Service", version="1.0.0")
    app.state.services = services or CoverageServices()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=CORS_ALLOWED_HEADERS,
    )

    @app.post("/shift-coverage-handler")
    async def shift_coverage_handler(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Invalid JSON body")
        if not isinstance(body, dict):
            return _error(400, "Invalid JSON body")

        logger.info(f"Shift coverage handler called with action: {body.get('action')}")

        try:
            action = CoverageAction(body.get("action"))
        except ValueError:
            logger.info(f"Unknown action: {body.get('action')}")
            return _error(400, "Unknown action")

        for field in REQUIRED_FIELDS[action]:
            value = body.get(field)
            if value is None or (not value and field not in MAY_BE_EMPTY):
                return _error(400, f"Missing required field: {field}")

        try:
            result = await run_in_threadpool(app.state.services.dispatch, action, body)
        except Exception as e:
            logger.exception(f"Error in shift coverage handler: {e}")
            sentry_sdk.capture_exception(e)
            return _error(500, str(e))

        return {"success": True, "result": result}

    @app.post("/send-nudge-whatsapp")
    async def send_nudge_whatsapp(payload: NudgeRequest):
        try:
            result = await run_in_threadpool(
                app.state.services.nudges.send_nudges,
                target_users=payload.target_users,
                message_type=payload.message_type,
                custom_message=payload.custom_message,
                care_plan_id=payload.care_plan_id,
                shift_details=payload.shift_details,
                schedule_period=payload.schedule_period
            )
        except NudgeRequestError as e:
            return JSONResponse({"success": False, "error": str(e)}, status_code=400)
        except Exception as e:
            logger.exception(f"Error in WhatsApp nudge: {e}")
            sentry_sdk.capture_exception(e)
            return JSONResponse({"success": False, "error": str(e)}, status_code=500)

        if not result.get("success"):
            return JSONResponse(result, status_code=400)
        return result

    @app.post("/shift-reminder-scheduler")
    async def shift_reminder_scheduler():
        try:
            summary = await run_in_threadpool(app.state.services.scheduler.run)
        except Exception as e:
            logger.exception(f"Error in shift reminder scheduler: {e}")
            sentry_sdk.capture_exception(e)
            return _error(500, str(e))

        return {"success": True, "message": "Reminders processed", "summary": summary}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "shift-coverage"}

    return app
