"""Strategy engine: fan a request out over several strategies, judge each
output, record every attempt and feed user selections back into scoring and
evolution."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Sequence

from hairstyle_lab.config import GenerationConfig
from hairstyle_lab.db.repo.interfaces import GenerationAttempt, StoreUnavailableError, Strategy, new_id
from hairstyle_lab.evaluation.evaluator import EvaluationResult, OutcomeEvaluator
from hairstyle_lab.generation.executor import TransformationExecutor
from hairstyle_lab.image.fetch import ReferenceFetcher
from hairstyle_lab.image.gemini.interfaces import ImageBlob
from hairstyle_lab.image.payload import decode_data_url, encode_data_url, is_data_url
from hairstyle_lab.image.store import ImageArtifactStore
from hairstyle_lab.learning.evolution import EvolutionReport, EvolutionScheduler
from hairstyle_lab.learning.ledger import AttemptLedger
from hairstyle_lab.learning.scoring import ScoreUpdater
from hairstyle_lab.logging_utils import RunLogger, create_logger
from hairstyle_lab.strategies.registry import StrategyRegistry, UnknownStrategyError
from hairstyle_lab.strategies.templates import (
    DEFAULT_REFERENCE_DESCRIPTION,
    default_strategies,
    dynamic_strategies,
)

ALL_FAILED_MESSAGE = "All generations failed"


class InvalidRequestError(ValueError):
    """Caller supplied missing or malformed input."""


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class GenerationRequest:
    user_image: str
    reference_image: str
    session_id: Optional[str] = None
    strategy_ids: Optional[Sequence[str]] = None
    use_dynamic_strategies: bool = False
    reference_description: Optional[str] = None
    max_variations: Optional[int] = None


@dataclass(frozen=True)
class VariationResult:
    index: int
    strategy: Strategy
    attempt_id: str
    generation_time_ms: int
    image: Optional[bytes] = None
    mime_type: Optional[str] = None
    image_ref: Optional[str] = None
    evaluation: Optional[EvaluationResult] = None
    error: Optional[str] = None
    recorded: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.image is not None

    @property
    def passed(self) -> bool:
        return bool(self.ok and self.evaluation is not None and self.evaluation.passed)

    def as_dict(self, *, include_image: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.attempt_id,
            "attemptId": self.attempt_id,
            "index": self.index,
            "strategyName": self.strategy.name,
            "strategyId": self.strategy.id,
            "generationTimeMs": self.generation_time_ms,
            "recorded": self.recorded,
        }
        if not self.ok:
            payload["error"] = self.error
            return payload
        if include_image and self.image is not None:
            payload["image"] = encode_data_url(self.image, self.mime_type or "image/png")
        payload["imageRef"] = self.image_ref
        if self.evaluation is not None:
            payload["passed"] = self.evaluation.passed
            payload["confidence"] = self.evaluation.confidence
            payload["reason"] = self.evaluation.reason
            payload["details"] = self.evaluation.details.as_dict()
        return payload


@dataclass(frozen=True)
class BatchResult:
    session_id: str
    variations: list[VariationResult]

    @property
    def successful(self) -> list[VariationResult]:
        return [variation for variation in self.variations if variation.ok]

    @property
    def total_generated(self) -> int:
        return len(self.successful)

    @property
    def total_passed(self) -> int:
        return sum(1 for variation in self.variations if variation.passed)

    @property
    def total_generation_time_ms(self) -> int:
        return sum(variation.generation_time_ms for variation in self.variations)

    @property
    def all_failed(self) -> bool:
        return not self.successful

    def as_dict(self, *, include_image: bool = True) -> dict[str, Any]:
        if self.all_failed:
            return {
                "success": False,
                "sessionId": self.session_id,
                "error": ALL_FAILED_MESSAGE,
                "details": [
                    {"strategy": variation.strategy.name, "error": variation.error}
                    for variation in self.variations
                ],
            }
        return {
            "success": True,
            "sessionId": self.session_id,
            "variations": [variation.as_dict(include_image=include_image) for variation in self.successful],
            "failures": [variation.as_dict() for variation in self.variations if not variation.ok],
            "totalGenerated": self.total_generated,
            "totalPassed": self.total_passed,
            "totalGenerationTimeMs": self.total_generation_time_ms,
        }


@dataclass
class StrategyEngine:
    executor: TransformationExecutor
    evaluator: OutcomeEvaluator
    registry: StrategyRegistry
    ledger: AttemptLedger
    scorer: ScoreUpdater
    scheduler: EvolutionScheduler
    fetcher: ReferenceFetcher = field(default_factory=ReferenceFetcher)
    artifacts: Optional[ImageArtifactStore] = None
    config: GenerationConfig = field(default_factory=GenerationConfig)
    logger: RunLogger = field(default_factory=create_logger)

    # ------------------------------------------------------------------
    # Inputs
    async def load_images(self, request: GenerationRequest) -> tuple[ImageBlob, ImageBlob]:
        user = await self._load_image(request.user_image, "userImage")
        reference = await self._load_image(request.reference_image, "referenceImage")
        return user, reference

    async def _load_image(self, value: str, field_name: str) -> ImageBlob:
        if not value or not str(value).strip():
            raise InvalidRequestError(f"{field_name} is required")
        if is_data_url(value):
            try:
                return decode_data_url(value)
            except ValueError as exc:
                raise InvalidRequestError(f"{field_name} is not a valid image: {exc}") from exc
        if not value.startswith(("http://", "https://")):
            raise InvalidRequestError(f"{field_name} must be a data URL or an http(s) URL")
        return await self.fetcher.fetch(value)

    async def select_strategies(self, request: GenerationRequest, session_id: str) -> list[Strategy]:
        limit = self.config.max_variations
        if request.max_variations is not None:
            limit = min(request.max_variations, limit)
        if limit < 1:
            raise InvalidRequestError("maxVariations must be at least 1")
        if request.strategy_ids:
            try:
                strategies = await asyncio.to_thread(self.registry.get_by_ids, list(request.strategy_ids))
            except UnknownStrategyError as exc:
                raise InvalidRequestError(str(exc)) from exc
        elif request.use_dynamic_strategies:
            strategies = dynamic_strategies(
                session_id,
                min(self.config.dynamic_count, limit),
                reference_description=request.reference_description or DEFAULT_REFERENCE_DESCRIPTION,
            )
            try:
                await asyncio.to_thread(self.registry.create_batch, strategies)
            except StoreUnavailableError as exc:
                self.logger.log("BATCH", f"dynamic strategies not persisted: {exc}", level="WARN")
        else:
            strategies = await asyncio.to_thread(self.registry.get_active)
        strategies = list(strategies)[:limit]
        if not strategies:
            strategies = default_strategies()[:limit]
        return strategies

    # ------------------------------------------------------------------
    # Attempts
    async def run_attempt(
        self,
        index: int,
        strategy: Strategy,
        user_image: ImageBlob,
        reference_image: ImageBlob,
        session_id: str,
        reference_ref: str,
        *,
        retry: bool = False,
    ) -> VariationResult:
        """Execute, evaluate, persist and record one strategy, in that order."""

        attempt_id = new_id()
        run = self.executor.execute_with_retry if retry else self.executor.execute
        execution = await run(
            user_image,
            reference_image,
            strategy.instruction_template,
            model=strategy.model,
        )
        if not execution.ok:
            attempt = GenerationAttempt(
                id=attempt_id,
                session_id=session_id,
                strategy_id=strategy.id,
                strategy_name=strategy.name,
                reference_image_ref=reference_ref,
                generation_time_ms=execution.generation_time_ms,
                error_message=execution.error_message or "No image returned",
            )
            recorded = await asyncio.to_thread(self.ledger.append, attempt)
            return VariationResult(
                index=index,
                strategy=strategy,
                attempt_id=attempt_id,
                generation_time_ms=execution.generation_time_ms,
                error=attempt.error_message,
                recorded=recorded is not None,
            )

        mime_type = execution.mime_type or "image/png"
        output = ImageBlob(data=execution.image or b"", mime_type=mime_type)
        evaluation = await self.evaluator.evaluate(user_image, output)
        image_ref = await asyncio.to_thread(
            self._persist_image, session_id, attempt_id, strategy, output, evaluation
        )
        details = evaluation.details.as_dict()
        details["reason"] = evaluation.reason
        attempt = GenerationAttempt(
            id=attempt_id,
            session_id=session_id,
            strategy_id=strategy.id,
            strategy_name=strategy.name,
            reference_image_ref=reference_ref,
            output_image_ref=image_ref,
            evaluation_passed=evaluation.passed,
            evaluation_confidence=evaluation.confidence,
            evaluation_details=details,
            generation_time_ms=execution.generation_time_ms,
        )
        recorded = await asyncio.to_thread(self.ledger.append, attempt)
        return VariationResult(
            index=index,
            strategy=strategy,
            attempt_id=attempt_id,
            generation_time_ms=execution.generation_time_ms,
            image=output.data,
            mime_type=mime_type,
            image_ref=image_ref,
            evaluation=evaluation,
            recorded=recorded is not None,
        )

    def _persist_image(
        self,
        session_id: str,
        attempt_id: str,
        strategy: Strategy,
        image: ImageBlob,
        evaluation: EvaluationResult,
    ) -> str:
        if self.artifacts is None:
            return f"memory://{attempt_id}"
        try:
            return self.artifacts.save(
                session_id=session_id,
                attempt_id=attempt_id,
                strategy_name=strategy.name,
                data=image.data,
                mime_type=image.mime_type,
                metadata={
                    "strategy_id": strategy.id,
                    "instruction_template": strategy.instruction_template,
                    "evaluation": evaluation.as_dict(),
                },
            )
        except OSError as exc:
            self.logger.log("BATCH", f"could not write artifact for {attempt_id}: {exc}", level="WARN")
            return f"memory://{attempt_id}"

    def _failed_variation(self, index: int, strategy: Strategy, exc: BaseException) -> VariationResult:
        self.logger.log("BATCH", f"strategy {strategy.name} crashed: {exc!r}", level="ERROR")
        return VariationResult(
            index=index,
            strategy=strategy,
            attempt_id=new_id(),
            generation_time_ms=0,
            error=str(exc) or exc.__class__.__name__,
        )

    # ------------------------------------------------------------------
    # Generation flows
    async def _prepare(self, request: GenerationRequest) -> tuple[str, ImageBlob, ImageBlob, list[Strategy], str]:
        session_id = request.session_id or new_session_id()
        user, reference = await self.load_images(request)
        strategies = await self.select_strategies(request, session_id)
        reference_ref = request.reference_image if not is_data_url(request.reference_image) else "inline"
        return session_id, user, reference, strategies, reference_ref

    async def generate_batch(self, request: GenerationRequest) -> BatchResult:
        session_id, user, reference, strategies, reference_ref = await self._prepare(request)
        self.logger.log(
            "BATCH",
            f"session {session_id}: {len(strategies)} strategies ({', '.join(s.name for s in strategies)})",
        )
        with self.logger.span("BATCH", f"session {session_id}: all strategies settled", level="DEBUG"):
            outcomes = await asyncio.gather(
                *(
                    self.run_attempt(index, strategy, user, reference, session_id, reference_ref)
                    for index, strategy in enumerate(strategies)
                ),
                return_exceptions=True,
            )
        variations = [
            outcome if isinstance(outcome, VariationResult) else self._failed_variation(index, strategies[index], outcome)
            for index, outcome in enumerate(outcomes)
        ]
        batch = BatchResult(session_id=session_id, variations=variations)
        level = "ERROR" if batch.all_failed else "INFO"
        self.logger.log(
            "BATCH",
            f"session {session_id}: {batch.total_generated}/{len(variations)} generated, {batch.total_passed} passed",
            level=level,
            elapsed_ms=batch.total_generation_time_ms,
        )
        return batch

    async def generate_single(self, request: GenerationRequest) -> tuple[str, VariationResult]:
        """Run only the best-ranked (or first requested) strategy, retrying transient failures."""

        session_id, user, reference, strategies, reference_ref = await self._prepare(request)
        strategy = strategies[0]
        variation = await self.run_attempt(0, strategy, user, reference, session_id, reference_ref, retry=True)
        level = "INFO" if variation.ok else "ERROR"
        outcome = "generated" if variation.ok else f"failed: {variation.error}"
        self.logger.log(
            "SINGLE",
            f"session {session_id}: {strategy.name} {outcome}",
            level=level,
            elapsed_ms=variation.generation_time_ms,
        )
        return session_id, variation

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[dict[str, Any]]:
        """Yield progress events; variations arrive in completion order tagged by index."""

        session_id = request.session_id or new_session_id()
        yield {"type": "start", "sessionId": session_id}
        try:
            user, reference = await self.load_images(request)
            strategies = await self.select_strategies(request, session_id)
        except Exception as exc:
            self.logger.log("STREAM", f"session {session_id} aborted: {exc}", level="ERROR")
            yield {"type": "error", "fatal": True, "error": str(exc)}
            yield {"type": "done", "sessionId": session_id, "totalGenerated": 0, "totalPassed": 0}
            return

        reference_ref = request.reference_image if not is_data_url(request.reference_image) else "inline"
        yield {
            "type": "strategies",
            "strategies": [
                {"index": index, "id": strategy.id, "name": strategy.name}
                for index, strategy in enumerate(strategies)
            ],
        }
        yield {"type": "generating", "total": len(strategies)}

        async def guarded(index: int, strategy: Strategy) -> VariationResult:
            try:
                return await self.run_attempt(index, strategy, user, reference, session_id, reference_ref)
            except Exception as exc:
                return self._failed_variation(index, strategy, exc)

        tasks = [asyncio.ensure_future(guarded(index, strategy)) for index, strategy in enumerate(strategies)]
        variations: list[VariationResult] = []
        try:
            for next_done in asyncio.as_completed(tasks):
                variation = await next_done
                variations.append(variation)
                if variation.ok:
                    yield {"type": "complete", "index": variation.index, "variation": variation.as_dict()}
                else:
                    yield {
                        "type": "error",
                        "index": variation.index,
                        "strategyName": variation.strategy.name,
                        "error": variation.error,
                    }
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        batch = BatchResult(session_id=session_id, variations=sorted(variations, key=lambda v: v.index))
        self.logger.log(
            "STREAM",
            f"session {session_id}: {batch.total_generated}/{len(strategies)} generated, {batch.total_passed} passed",
        )
        done: dict[str, Any] = {
            "type": "done",
            "sessionId": session_id,
            "totalGenerated": batch.total_generated,
            "totalPassed": batch.total_passed,
            "totalGenerationTimeMs": batch.total_generation_time_ms,
        }
        if batch.all_failed:
            done["error"] = ALL_FAILED_MESSAGE
        yield done

    # ------------------------------------------------------------------
    # Learning
    async def record_selection(self, attempt_id: str, session_id: str) -> bool:
        if not attempt_id:
            raise InvalidRequestError("attemptId is required")
        if not session_id:
            raise InvalidRequestError("sessionId is required")
        return await asyncio.to_thread(self.scorer.record_selection, attempt_id, session_id)

    async def evolve_safely(self) -> EvolutionReport:
        """Run an evolution check; any failure is logged and reported, never raised."""

        try:
            return await asyncio.to_thread(self.scheduler.maybe_evolve)
        except Exception as exc:
            self.logger.log("EVOLVE", f"evolution check failed: {exc!r}", level="ERROR")
            return EvolutionReport(evolved=False, reason=f"evolution check failed: {exc}")

    def load_artifact(self, ref: str) -> tuple[bytes, str]:
        """Return the bytes and MIME type of a saved variation.

        Raises ``FileNotFoundError`` for unknown references and ``ValueError``
        for references outside the output directory.
        """

        if self.artifacts is None:
            raise FileNotFoundError(f"artifacts are not persisted: {ref}")
        data = self.artifacts.load(ref)
        try:
            mime_type = str(self.artifacts.metadata(ref).get("mime_type") or "image/png")
        except FileNotFoundError:
            mime_type = "image/png"
        return data, mime_type

    def evolution_status(self) -> dict[str, Any]:
        try:
            status = self.scheduler.status()
            strategies = self.registry.list_all()
        except StoreUnavailableError as exc:
            return {"configured": False, "message": f"evolution disabled: {exc}"}
        payload: dict[str, Any] = {"configured": True}
        payload.update(status.as_dict())
        payload["strategies"] = [
            {
                "name": strategy.name,
                "score": round(strategy.score, 4),
                "active": strategy.is_active,
                "origin": strategy.origin,
                "winRate": _percent(strategy) if strategy.usage_count else "N/A",
            }
            for strategy in strategies
        ]
        return payload

    def strategy_stats(self) -> dict[str, Any]:
        try:
            strategies = self.registry.list_all()
            total_attempts: Optional[int] = self.ledger.count_all()
            configured = True
            message = None
        except StoreUnavailableError as exc:
            strategies = default_strategies()
            total_attempts = None
            configured = False
            message = f"Database not configured - showing defaults ({exc})"
        rows = [
            {
                "id": strategy.id,
                "name": strategy.name,
                "score": round(strategy.score, 4),
                "usageCount": strategy.usage_count,
                "winCount": strategy.win_count,
                "successRate": _percent(strategy),
                "isActive": strategy.is_active,
                "origin": strategy.origin,
            }
            for strategy in strategies
        ]
        payload: dict[str, Any] = {
            "configured": configured,
            "strategies": rows,
            "totalStrategies": len(rows),
            "activeStrategies": sum(1 for strategy in strategies if strategy.is_active),
            "totalAttempts": total_attempts,
        }
        if message:
            payload["message"] = message
        return payload


def _percent(strategy: Strategy) -> str:
    return f"{strategy.win_rate * 100:.1f}%"


__all__ = [
    "ALL_FAILED_MESSAGE",
    "BatchResult",
    "GenerationRequest",
    "InvalidRequestError",
    "StrategyEngine",
    "VariationResult",
    "new_session_id",
]
