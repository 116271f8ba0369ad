from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Sequence


@dataclass(frozen=True)
class ImageBlob:
    """Raw image payload with an optional text label sent before it."""

    data: bytes
    mime_type: str = "image/jpeg"
    label: Optional[str] = None


@dataclass(frozen=True)
class GenerationOutcome:
    """Interpreted generation response.

    ``status`` is one of ``image``, ``blocked`` or ``no_image``. ``reason``
    carries the block reason or the non-STOP finish reason; ``text`` keeps any
    prose the model returned instead of an image.
    """

    status: str
    image: Optional[bytes] = None
    mime_type: Optional[str] = None
    reason: Optional[str] = None
    finish_reason: Optional[str] = None
    text: Optional[str] = None


class ImageGenerationProtocol(Protocol):
    async def generate(
        self,
        instructions: str,
        images: Sequence[ImageBlob],
        *,
        model: str | None = None,
    ) -> GenerationOutcome:
        """Send the labelled images plus instructions and interpret the reply."""


class JudgeProtocol(Protocol):
    async def judge(self, before: ImageBlob, after: ImageBlob, instructions: str) -> str:
        """Return the judge model's raw text answer."""
