"""
SDK for ByteSteps Guard.

Guarded clients for the external services the ByteSteps handlers call.
"""

from .openai_client import CoachClient, SpeechClient

__all__ = ["CoachClient", "SpeechClient"]
