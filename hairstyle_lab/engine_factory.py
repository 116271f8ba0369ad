from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from google import genai

from hairstyle_lab.config import EngineConfig
from hairstyle_lab.db.repo.interfaces import StoreProtocol, StoreUnavailableError
from hairstyle_lab.db.repo.sqlite import SQLiteStore
from hairstyle_lab.engine import StrategyEngine
from hairstyle_lab.evaluation.evaluator import OutcomeEvaluator
from hairstyle_lab.generation.executor import TransformationExecutor
from hairstyle_lab.image.fetch import ReferenceFetcher
from hairstyle_lab.image.gemini.adapter import GeminiImageEngine, GeminiJudge, create_client
from hairstyle_lab.image.gemini.interfaces import ImageGenerationProtocol, JudgeProtocol
from hairstyle_lab.image.store import ImageArtifactStore
from hairstyle_lab.learning.evolution import EvolutionScheduler
from hairstyle_lab.learning.ledger import AttemptLedger
from hairstyle_lab.learning.scoring import ScoreUpdater
from hairstyle_lab.logging_utils import RunLogger, create_logger
from hairstyle_lab.strategies.registry import StrategyRegistry


@dataclass
class EngineContainer:
    engine: StrategyEngine
    store: StoreProtocol | None
    client: genai.Client | None
    logger: RunLogger

    def close(self) -> None:
        if self.store is not None:
            self.store.close()
        self.logger.close()


def open_store(config: EngineConfig, logger: RunLogger) -> StoreProtocol | None:
    """Open the SQLite store, or return ``None`` when persistence is off or broken."""

    database = config.storage.database
    if database is None:
        logger.log("REGISTRY", "persistence disabled; learning loop is off", level="WARN")
        return None
    try:
        return SQLiteStore(Path(database))
    except (StoreUnavailableError, OSError) as exc:
        logger.log("REGISTRY", f"store unavailable, running without history: {exc}", level="WARN")
        return None


def create_engine_container(
    config: EngineConfig,
    *,
    image_engine: Optional[ImageGenerationProtocol] = None,
    judge: Optional[JudgeProtocol] = None,
    fetcher: Optional[ReferenceFetcher] = None,
    store: Optional[StoreProtocol] = None,
    logger: Optional[RunLogger] = None,
    output_dir: Optional[Path] = None,
) -> EngineContainer:
    logger = logger or create_logger(config.logging.level, config.logging.logfile)
    if store is None:
        store = open_store(config, logger)

    client: genai.Client | None = None
    if image_engine is None or judge is None:
        client = create_client(config.gemini.resolve_api_key())
    if image_engine is None:
        image_engine = GeminiImageEngine(client=client, model=config.gemini.generation_model)
    if judge is None:
        judge = GeminiJudge(client=client, model=config.gemini.judge_model)

    executor = TransformationExecutor(
        engine=image_engine,
        timeout_s=config.gemini.timeout_s,
        max_retries=config.gemini.max_retries,
        backoff_s=config.gemini.backoff_s,
        logger=logger,
    )
    evaluator = OutcomeEvaluator(judge=judge, timeout_s=config.gemini.timeout_s, logger=logger)
    registry = StrategyRegistry(store=store, logger=logger)
    with logger.span("REGISTRY", "strategy pool ready", level="DEBUG"):
        registry.bootstrap_defaults()

    ledger = AttemptLedger(store=store, logger=logger)
    engine = StrategyEngine(
        executor=executor,
        evaluator=evaluator,
        registry=registry,
        ledger=ledger,
        scorer=ScoreUpdater(store=store, config=config.scoring, logger=logger, ledger=ledger),
        scheduler=EvolutionScheduler(store=store, config=config.evolution, logger=logger),
        fetcher=fetcher or ReferenceFetcher(logger=logger),
        artifacts=ImageArtifactStore(output_dir or config.storage.artifacts_dir),
        config=config.generation,
        logger=logger,
    )
    return EngineContainer(engine=engine, store=store, client=client, logger=logger)


__all__ = ["EngineContainer", "create_engine_container", "open_store"]
