"""
Guarded OpenAI clients.

The AI coach (chat completions) and text-to-speech calls, each routed
through the ResilientCaller so they are rate limited, protected by a
circuit breaker, retried with backoff and audited.
"""

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from ..core.pipeline import ResilientCaller
from ..log import get_logger
from .safety import sanitize_input, validate_output

logger = get_logger(__name__)

LLM_DEPENDENCY = "llm-service"
TTS_DEPENDENCY = "tts-service"

COACH_MODEL = "gpt-4o-mini"
SPEECH_MODEL = "tts-1"
MAX_GUIDANCE_LENGTH = 1000

REQUEST_TYPES = ("guidance", "encouragement", "explanation", "next-steps")
VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")

SYSTEM_PROMPT = """You are a supportive AI coach for ByteSteps, a digital skills platform designed specifically for older adults. Your role is to provide:

1. **Encouraging and patient guidance** - Always be supportive, never condescending
2. **Simple, clear explanations** - Break down digital concepts into easy steps
3. **Accessibility-focused advice** - Consider visual, motor, and cognitive accessibility needs
4. **Practical, real-world applications** - Connect digital skills to daily life benefits
5. **Confidence building** - Celebrate small wins and progress

Key principles:
- Use clear, simple language without technical jargon
- Provide step-by-step instructions
- Acknowledge that learning technology can be challenging
- Focus on practical benefits (staying connected with family, accessing services, etc.)
- Be patient and encouraging
- Suggest breaking tasks into smaller, manageable steps

Assessment context: {assessment}
User progress: {progress}"""

USER_PROMPTS = {
    "guidance": (
        "Based on the user's assessment results, provide personalized guidance for improving "
        "their digital skills. Focus on their weakest areas while building on their strengths. "
        "Suggest 3-5 specific, actionable next steps."
    ),
    "encouragement": (
        "The user seems to be struggling or losing confidence. Provide encouraging words and "
        "remind them of their progress. Suggest easier steps they can take to build confidence."
    ),
    "explanation": (
        'The user needs help understanding: "{context}". Explain this concept in simple terms '
        "suitable for someone new to technology."
    ),
    "next-steps": (
        "Based on their current progress, suggest what the user should learn or practice next. "
        "Make recommendations that build logically on what they already know."
    ),
}


@dataclass(frozen=True)
class CoachGuidance:
    """Coaching text returned to the learner."""
    guidance: str
    request_type: str
    generated_at: datetime


@dataclass(frozen=True)
class SpeechResult:
    """Synthesized speech as base64-encoded mp3."""
    audio_content: str
    voice: str
    generated_at: datetime


def build_coach_messages(
    request_type: str,
    assessment_data: Optional[Dict[str, Any]] = None,
    current_progress: Optional[Dict[str, Any]] = None,
    user_context: str = ""
) -> List[Dict[str, str]]:
    """Build the system and user messages for a coaching request."""
    system_prompt = SYSTEM_PROMPT.format(
        assessment=json.dumps(assessment_data),
        progress=json.dumps(current_progress),
    )
    user_prompt = USER_PROMPTS[request_type].format(context=user_context)
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


class CoachClient:
    """AI coach backed by OpenAI chat completions.

    Calls go through the caller under the "llm-service" breaker and the
    "ai-coach" rate limit.
    """

    def __init__(
        self,
        caller: ResilientCaller,
        limit=None,
        model: str = COACH_MODEL,
        client: Optional[AsyncOpenAI] = None
    ):
        """Initialize the coach client.

        Args:
            caller: Pipeline the completion calls run through
            limit: RateLimitRule for "ai-coach", None for no limit
            model: OpenAI chat model name
            client: Preconfigured AsyncOpenAI client (defaults to one from env)

        Raises:
            ValueError: If model is empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.caller = caller
        self.limit = limit
        self.model = model
        self.client = client or AsyncOpenAI()

    async def get_guidance(
        self,
        request_type: str = "guidance",
        assessment_data: Optional[Dict[str, Any]] = None,
        current_progress: Optional[Dict[str, Any]] = None,
        user_context: Optional[str] = None,
        identity: Optional[str] = None
    ) -> CoachGuidance:
        """Generate coaching text for a learner.

        Unknown request types fall back to "guidance".

        Raises:
            UnsafeInputError: If user_context looks like a prompt injection
            UnsafeOutputError: If the model response fails validation
            RateLimitExceeded, CircuitOpenError, RetriesExhaustedError:
                Propagated from the pipeline
        """
        safe_context = sanitize_input(user_context) if user_context else ""
        if request_type not in REQUEST_TYPES:
            request_type = "guidance"

        messages = build_coach_messages(
            request_type, assessment_data, current_progress, safe_context
        )

        async def complete() -> str:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.7,
                max_tokens=400,
            )
            return response.choices[0].message.content or ""

        content = await self.caller.call(
            complete,
            dependency=LLM_DEPENDENCY,
            operation_name="ai-coach",
            identity=identity,
            limit=self.limit,
        )
        validate_output(content)
        logger.info("guidance_generated", request_type=request_type, length=len(content))

        return CoachGuidance(
            guidance=content[:MAX_GUIDANCE_LENGTH],
            request_type=request_type,
            generated_at=datetime.now(timezone.utc),
        )


class SpeechClient:
    """Text-to-speech backed by the OpenAI audio API."""

    def __init__(
        self,
        caller: ResilientCaller,
        limit=None,
        model: str = SPEECH_MODEL,
        client: Optional[AsyncOpenAI] = None
    ):
        self.caller = caller
        self.limit = limit
        self.model = model
        self.client = client or AsyncOpenAI()

    async def synthesize(
        self,
        text: str,
        voice: str = "alloy",
        speed: float = 1.0,
        identity: Optional[str] = None
    ) -> SpeechResult:
        """Turn text into base64-encoded mp3 audio.

        Raises:
            ValueError: If text is empty, voice is unknown or speed is out of range
            RateLimitExceeded, CircuitOpenError, RetriesExhaustedError:
                Propagated from the pipeline
        """
        if not text or not text.strip():
            raise ValueError("Text is required")
        if voice not in VOICES:
            raise ValueError(f"voice must be one of: {list(VOICES)}")
        if not 0.25 <= speed <= 4.0:
            raise ValueError("speed must be between 0.25 and 4.0")

        async def speak() -> bytes:
            response = await self.client.audio.speech.create(
                model=self.model,
                input=text,
                voice=voice,
                response_format="mp3",
                speed=speed,
            )
            return response.content

        audio = await self.caller.call(
            speak,
            dependency=TTS_DEPENDENCY,
            operation_name="text-to-speech",
            identity=identity,
            limit=self.limit,
        )
        logger.info("speech_generated", text_length=len(text), voice=voice)

        return SpeechResult(
            audio_content=base64.b64encode(audio).decode("ascii"),
            voice=voice,
            generated_at=datetime.now(timezone.utc),
        )
