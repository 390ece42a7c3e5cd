"""
HTTP handlers for the ByteSteps service functions.

Routes:
  POST /ai-coach          coaching text from the LLM
  POST /text-to-speech    mp3 speech from the TTS API
  POST /assessment-submit assessment answers intake
  POST /help-requests     human help request intake
  GET  /health            circuit breaker states
  POST /debug/circuits/reset

Run with: uvicorn --factory bytesteps_guard.api.app:create_app
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..config.loader import ResilienceConfig, load_config_from_env
from ..core.audit import HELP_REQUESTED
from ..core.exceptions import CircuitOpenError, RateLimitExceeded, RetriesExhaustedError
from ..core.pipeline import ResilientCaller, build_abuse_limiter, build_caller
from ..core.rate_limiter import RateLimiter, resolve_client_identity
from ..log import configure_logging, get_logger
from ..sdk.openai_client import CoachClient, SpeechClient
from ..sdk.safety import UnsafeInputError, UnsafeOutputError, sanitize_description
from .responses import (
    circuit_open_handler,
    error_response,
    rate_limit_exceeded_handler,
    rate_limit_response,
    retries_exhausted_handler,
)

logger = get_logger(__name__)

ANONYMOUS_ENDPOINT = "anonymous"


class CoachRequest(BaseModel):
    assessment_data: Optional[Dict[str, Any]] = Field(default=None, alias="assessmentData")
    user_context: Optional[str] = Field(default=None, alias="userContext")
    request_type: str = Field(default="guidance", alias="requestType")
    current_progress: Optional[Dict[str, Any]] = Field(default=None, alias="currentProgress")


class SpeechRequest(BaseModel):
    text: str = ""
    voice: str = "alloy"
    speed: float = 1.0


class AssessmentSubmission(BaseModel):
    # Shape is validated by the handler
    responses: Any = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class HelpRequest(BaseModel):
    description: str = ""
    urgency: Optional[str] = None
    contact_method: Optional[str] = Field(default=None, alias="contactMethod")
    contact_details: Optional[str] = Field(default=None, alias="contactDetails")


@dataclass
class Services:
    """Everything the handlers need, built once per app."""
    config: ResilienceConfig
    caller: ResilientCaller
    abuse_limiter: RateLimiter
    coach: CoachClient
    speech: SpeechClient


def build_services(config: Optional[ResilienceConfig] = None, persistent: bool = True) -> Services:
    """Build the pipeline and guarded clients from configuration."""
    config = config or load_config_from_env()
    caller = build_caller(config, persistent=persistent)
    return Services(
        config=config,
        caller=caller,
        abuse_limiter=build_abuse_limiter(caller),
        coach=CoachClient(caller, limit=config.get_rate_limit("ai-coach")),
        speech=SpeechClient(caller, limit=config.get_rate_limit("text-to-speech")),
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        services: Prebuilt services; built from $BYTESTEPS_CONFIG if omitted
    """
    if services is None:
        configure_logging(
            level=os.environ.get("BYTESTEPS_LOG_LEVEL", "INFO"),
            json_output=True,
        )
        services = build_services()

    app = FastAPI(title="ByteSteps Guard")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(CircuitOpenError, circuit_open_handler)
    app.add_exception_handler(RetriesExhaustedError, retries_exhausted_handler)

    @app.post("/ai-coach")
    async def ai_coach(body: CoachRequest, request: Request):
        identity = resolve_client_identity(request.headers)
        try:
            result = await services.coach.get_guidance(
                request_type=body.request_type,
                assessment_data=body.assessment_data,
                current_progress=body.current_progress,
                user_context=body.user_context,
                identity=identity,
            )
        except UnsafeInputError as e:
            return error_response(400, str(e))
        except UnsafeOutputError:
            return error_response(502, "Failed to generate guidance")

        return {
            "guidance": result.guidance,
            "requestType": result.request_type,
            "generatedAt": result.generated_at.isoformat(),
        }

    @app.post("/text-to-speech")
    async def text_to_speech(body: SpeechRequest, request: Request):
        identity = resolve_client_identity(request.headers)
        try:
            result = await services.speech.synthesize(
                body.text, voice=body.voice, speed=body.speed, identity=identity
            )
        except ValueError as e:
            return error_response(400, str(e))

        return {
            "audioContent": result.audio_content,
            "voice": result.voice,
            "generatedAt": result.generated_at.isoformat(),
        }

    async def enforce_limit(endpoint: str, identity: str) -> None:
        """Apply the endpoint's configured limit (fails open on store errors)."""
        rule = services.config.get_rate_limit(endpoint)
        limiter = services.caller.rate_limiter
        if rule is not None and not await limiter.allow(
            identity, endpoint, rule.max_requests, rule.window_seconds
        ):
            raise RateLimitExceeded(identity, endpoint, limiter.retry_after(rule.window_seconds))

    @app.post("/assessment-submit")
    async def assessment_submit(body: AssessmentSubmission, request: Request):
        identity = resolve_client_identity(request.headers)
        await enforce_limit("assessment-submit", identity)

        responses = body.responses
        if not isinstance(responses, list):
            return error_response(400, "Invalid assessment responses format")
        for item in responses:
            if not isinstance(item, dict) or not item.get("question_id") or not item.get("response"):
                return error_response(400, "Each response must have question_id and response")

        logger.info("assessment_submitted", response_count=len(responses))
        return {
            "success": True,
            "message": "Assessment submitted successfully",
            "submittedAt": _now_iso(),
            "responseCount": len(responses),
        }

    @app.post("/help-requests")
    async def help_requests(body: HelpRequest, request: Request):
        identity = resolve_client_identity(request.headers)

        if not request.headers.get("authorization"):
            rule = services.config.anonymous
            # Abuse limiter fails closed: a store error denies the request
            if not await services.abuse_limiter.allow(
                identity, ANONYMOUS_ENDPOINT, rule.max_requests, rule.window_seconds
            ):
                logger.warning("anonymous_rate_limited", identity=identity)
                return rate_limit_response()
        else:
            await enforce_limit("help-requests", identity)

        description = body.description or ""
        if len(description) < 10 or len(description) > 1000:
            return error_response(400, "Description must be between 10 and 1000 characters")

        sanitized = sanitize_description(description)
        await services.caller.audit.record(HELP_REQUESTED, {
            "urgency": body.urgency,
            "contact_method": body.contact_method,
            "description_length": len(sanitized),
        })

        return {
            "success": True,
            "message": "Help request submitted successfully",
            "submittedAt": _now_iso(),
        }

    @app.get("/health")
    async def health():
        return {"status": "ok", "circuits": services.caller.breakers.to_dict()}

    @app.post("/debug/circuits/reset")
    async def reset_circuits():
        services.caller.breakers.reset_all()
        logger.info("circuits_reset_via_api")
        return {"status": "reset", "circuits": services.caller.breakers.to_dict()}

    return app
