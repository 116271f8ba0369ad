from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from hairstyle_lab.image.gemini.interfaces import GenerationOutcome, ImageBlob, ImageGenerationProtocol
from hairstyle_lab.logging_utils import RunLogger

IMAGE_ONLY_SUFFIX = "\n\nIMPORTANT: You must generate an image. Return ONLY the transformed image, no text."
USER_PHOTO_LABEL = "USER PHOTO:"
REFERENCE_PHOTO_LABEL = "REFERENCE PHOTO:"


class GenerationError(RuntimeError):
    """Base class for failures of a single transformation."""


class NoImageError(GenerationError):
    """The model answered without an image."""


class ContentBlockedError(GenerationError):
    """The request or the output was blocked by content policy."""


class UnexpectedFinishError(GenerationError):
    """The model stopped for a reason other than a normal finish."""


class GenerationTimeoutError(GenerationError):
    """The generation call did not answer within the configured timeout."""


@dataclass(frozen=True)
class ExecutionResult:
    image: Optional[bytes]
    mime_type: Optional[str]
    generation_time_ms: int
    error: Optional[GenerationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.image)

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


def build_instructions(template: str) -> str:
    return template.rstrip() + IMAGE_ONLY_SUFFIX


def outcome_to_error(outcome: GenerationOutcome) -> Optional[GenerationError]:
    """Return the error matching a non-image outcome, or ``None`` for an image."""

    if outcome.status == "image" and outcome.image:
        return None
    if outcome.status == "blocked":
        return ContentBlockedError(f"Blocked: {outcome.reason or 'unspecified'}")
    if outcome.reason:
        return UnexpectedFinishError(f"Stopped: {outcome.reason}")
    if outcome.text:
        return NoImageError(f"No image returned: {outcome.text[:200]}")
    return NoImageError("No image returned")


@dataclass
class TransformationExecutor:
    """Run one instruction template against the image generation capability."""

    engine: ImageGenerationProtocol
    timeout_s: float = 60.0
    max_retries: int = 2
    backoff_s: float = 1.0
    logger: Optional[RunLogger] = None
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    async def execute(
        self,
        user_image: ImageBlob,
        reference_image: ImageBlob,
        template: str,
        *,
        model: str | None = None,
    ) -> ExecutionResult:
        images = [
            ImageBlob(data=user_image.data, mime_type=user_image.mime_type, label=USER_PHOTO_LABEL),
            ImageBlob(data=reference_image.data, mime_type=reference_image.mime_type, label=REFERENCE_PHOTO_LABEL),
        ]
        start = time.perf_counter()
        error: Optional[GenerationError] = None
        outcome: Optional[GenerationOutcome] = None
        try:
            outcome = await asyncio.wait_for(
                self.engine.generate(build_instructions(template), images, model=model),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            error = GenerationTimeoutError(f"generation timed out after {self.timeout_s:.0f}s")
        except GenerationError as exc:
            error = exc
        except Exception as exc:
            error = GenerationError(str(exc) or exc.__class__.__name__)
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        if error is None and outcome is not None:
            error = outcome_to_error(outcome)
        if error is not None:
            if self.logger:
                self.logger.log("EXEC", f"failed: {error}", level="WARN", elapsed_ms=elapsed_ms)
            return ExecutionResult(image=None, mime_type=None, generation_time_ms=elapsed_ms, error=error)

        assert outcome is not None
        if self.logger:
            self.logger.log("EXEC", f"image returned ({len(outcome.image or b'')} bytes)", elapsed_ms=elapsed_ms)
        return ExecutionResult(
            image=outcome.image,
            mime_type=outcome.mime_type or "image/png",
            generation_time_ms=elapsed_ms,
        )

    async def execute_with_retry(
        self,
        user_image: ImageBlob,
        reference_image: ImageBlob,
        template: str,
        *,
        model: str | None = None,
    ) -> ExecutionResult:
        """Retry transient failures with exponential backoff; blocks are final."""

        total_ms = 0
        result: Optional[ExecutionResult] = None
        for attempt in range(self.max_retries + 1):
            result = await self.execute(user_image, reference_image, template, model=model)
            total_ms += result.generation_time_ms
            if result.ok or isinstance(result.error, ContentBlockedError):
                break
            if attempt < self.max_retries:
                wait = self.backoff_s * (2 ** attempt)
                if self.logger:
                    self.logger.log(
                        "EXEC",
                        f"retry {attempt + 1}/{self.max_retries} after {wait:.1f}s: {result.error_message}",
                        level="WARN",
                    )
                await self.sleep(wait)
        assert result is not None
        return ExecutionResult(
            image=result.image,
            mime_type=result.mime_type,
            generation_time_ms=total_ms,
            error=result.error,
        )


__all__ = [
    "ContentBlockedError",
    "ExecutionResult",
    "GenerationError",
    "GenerationTimeoutError",
    "IMAGE_ONLY_SUFFIX",
    "NoImageError",
    "TransformationExecutor",
    "UnexpectedFinishError",
    "build_instructions",
    "outcome_to_error",
]
