from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Sequence

from google import genai
from google.genai import types

from .interfaces import GenerationOutcome, ImageBlob, ImageGenerationProtocol, JudgeProtocol

# finish reasons that mean the model refused on policy grounds
BLOCKING_FINISH_REASONS = frozenset(
    {"SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}
)


def _enum_name(value: Any) -> str | None:
    if value is None:
        return None
    name = getattr(value, "name", None)
    if isinstance(name, str):
        return name
    text = str(value).strip()
    if "." in text:
        text = text.rsplit(".", 1)[-1]
    return text or None


def _coerce_bytes(blob: Any) -> bytes | None:
    if isinstance(blob, (bytes, bytearray)):
        return bytes(blob)
    if isinstance(blob, str):
        try:
            return base64.b64decode(blob)
        except (ValueError, binascii.Error):
            return None
    return None


def build_contents(instructions: str, images: Sequence[ImageBlob]) -> list[types.Part]:
    """Lay out labels and images in order, with the instructions last."""

    parts: list[types.Part] = []
    for image in images:
        if image.label:
            parts.append(types.Part.from_text(text=image.label))
        parts.append(types.Part.from_bytes(data=image.data, mime_type=image.mime_type))
    parts.append(types.Part.from_text(text=instructions))
    return parts


def interpret_response(response: Any) -> GenerationOutcome:
    """Map a raw ``generate_content`` response to image, blocked or no-image."""

    feedback = getattr(response, "prompt_feedback", None)
    block_reason = _enum_name(getattr(feedback, "block_reason", None)) if feedback else None
    if block_reason and block_reason != "BLOCKED_REASON_UNSPECIFIED":
        return GenerationOutcome(status="blocked", reason=block_reason)

    candidates = list(getattr(response, "candidates", None) or [])
    if not candidates:
        return GenerationOutcome(status="no_image", text="no candidates returned")

    candidate = candidates[0]
    finish_reason = _enum_name(getattr(candidate, "finish_reason", None))
    content = getattr(candidate, "content", None)
    texts: list[str] = []
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        if inline is not None:
            data = _coerce_bytes(getattr(inline, "data", None))
            if data:
                return GenerationOutcome(
                    status="image",
                    image=data,
                    mime_type=getattr(inline, "mime_type", None) or "image/png",
                    finish_reason=finish_reason,
                )
        text = getattr(part, "text", None)
        if isinstance(text, str) and text.strip():
            texts.append(text.strip())

    text = " ".join(texts) or None
    if finish_reason in BLOCKING_FINISH_REASONS:
        return GenerationOutcome(status="blocked", reason=finish_reason, finish_reason=finish_reason, text=text)
    if finish_reason and finish_reason not in {"STOP", "FINISH_REASON_UNSPECIFIED"}:
        return GenerationOutcome(status="no_image", reason=finish_reason, finish_reason=finish_reason, text=text)
    return GenerationOutcome(status="no_image", finish_reason=finish_reason, text=text)


def response_text(response: Any) -> str:
    text = getattr(response, "text", None)
    if isinstance(text, str):
        return text
    chunks: list[str] = []
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            value = getattr(part, "text", None)
            if isinstance(value, str):
                chunks.append(value)
    return "".join(chunks)


@dataclass
class GeminiImageEngine(ImageGenerationProtocol):
    client: genai.Client
    model: str = "gemini-2.5-flash-image"

    async def generate(
        self,
        instructions: str,
        images: Sequence[ImageBlob],
        *,
        model: str | None = None,
    ) -> GenerationOutcome:
        response = await self.client.aio.models.generate_content(
            model=model or self.model,
            contents=build_contents(instructions, images),
            config=types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
        )
        return interpret_response(response)


@dataclass
class GeminiJudge(JudgeProtocol):
    client: genai.Client
    model: str = "gemini-2.5-flash"

    async def judge(self, before: ImageBlob, after: ImageBlob, instructions: str) -> str:
        contents = [
            types.Part.from_text(text=instructions),
            types.Part.from_bytes(data=before.data, mime_type=before.mime_type),
            types.Part.from_bytes(data=after.data, mime_type=after.mime_type),
        ]
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(response_mime_type="text/plain"),
        )
        return response_text(response)


def create_client(api_key: str | None) -> genai.Client:
    if not api_key:
        raise ValueError("GEMINI_API_KEY is not set")
    return genai.Client(api_key=api_key)
