"""Gemini-backed image generation and judgment."""

from .adapter import GeminiImageEngine, GeminiJudge, build_contents, create_client, interpret_response
from .interfaces import GenerationOutcome, ImageBlob, ImageGenerationProtocol, JudgeProtocol

__all__ = [
    "GeminiImageEngine",
    "GeminiJudge",
    "GenerationOutcome",
    "ImageBlob",
    "ImageGenerationProtocol",
    "JudgeProtocol",
    "build_contents",
    "create_client",
    "interpret_response",
]
