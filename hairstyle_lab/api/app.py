"""
Hairstyle Lab HTTP server

Endpoints:
  POST /api/generate-variations         → batch generation over several strategies
  POST /api/generate-variations-stream  → batch generation streamed as server-sent events
  POST /api/generate-from-reference     → one strategy, retried on transient failures
  POST /api/record-selection            → reward the chosen variation, then check evolution
  GET  /api/record-selection/stats      → per-strategy scores and success rates
  GET  /api/artifacts/{ref}             → a saved variation image
  GET  /api/evolve-strategies           → evolution status (read-only)
  POST /api/evolve-strategies           → run an evolution check now
  GET  /health                          → health check
"""

from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from hairstyle_lab import __version__
from hairstyle_lab.config import EngineConfig, load_config
from hairstyle_lab.engine import GenerationRequest, InvalidRequestError, StrategyEngine
from hairstyle_lab.engine_factory import EngineContainer, create_engine_container
from hairstyle_lab.image.fetch import ReferenceFetchError

CONFIG_ENV = "HAIRSTYLE_LAB_CONFIG"


class GenerateVariationsBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_image: Optional[str] = Field(default=None, alias="userImage")
    reference_image: Optional[str] = Field(default=None, alias="referenceImage")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    strategy_ids: Optional[List[str]] = Field(default=None, alias="strategyIds")
    use_dynamic_strategies: bool = Field(default=False, alias="useDynamicStrategies")
    reference_description: Optional[str] = Field(default=None, alias="referenceDescription")
    max_variations: Optional[int] = Field(default=None, alias="maxVariations")

    def to_request(self) -> GenerationRequest:
        return GenerationRequest(
            user_image=self.user_image or "",
            reference_image=self.reference_image or "",
            session_id=self.session_id or None,
            strategy_ids=self.strategy_ids or None,
            use_dynamic_strategies=self.use_dynamic_strategies,
            reference_description=self.reference_description,
            max_variations=self.max_variations,
        )


class RecordSelectionBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attempt_id: Optional[str] = Field(default=None, alias="attemptId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")


def _engine(request: Request) -> StrategyEngine:
    container: EngineContainer = request.app.state.container
    return container.engine


def _sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def create_app(
    container: EngineContainer | None = None,
    *,
    config: EngineConfig | None = None,
) -> FastAPI:
    """Build the FastAPI app; a passed-in container is used as-is and not closed."""

    config = config or load_config(Path(os.getenv(CONFIG_ENV, "config.yaml")))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = False
        if getattr(app.state, "container", None) is None:
            app.state.container = create_engine_container(config)
            owned = True
        app.state.container.logger.log("API", f"hairstyle lab {__version__} ready")
        yield
        if owned:
            app.state.container.close()

    app = FastAPI(
        title="Hairstyle Lab",
        description="Multi-strategy hairstyle transformation with selection-driven strategy evolution",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        container: EngineContainer | None = request.app.state.container
        return {
            "status": "ok",
            "version": __version__,
            "persistence": bool(container and container.store is not None),
        }

    @app.post("/api/generate-variations")
    async def generate_variations(body: GenerateVariationsBody, request: Request):
        engine = _engine(request)
        try:
            batch = await engine.generate_batch(body.to_request())
        except InvalidRequestError as exc:
            return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})
        except ReferenceFetchError as exc:
            return JSONResponse(status_code=502, content={"success": False, "error": str(exc)})
        if batch.all_failed:
            return JSONResponse(status_code=502, content=batch.as_dict())
        return batch.as_dict()

    @app.post("/api/generate-from-reference")
    async def generate_from_reference(body: GenerateVariationsBody, request: Request):
        engine = _engine(request)
        try:
            session_id, variation = await engine.generate_single(body.to_request())
        except InvalidRequestError as exc:
            return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})
        except ReferenceFetchError as exc:
            return JSONResponse(status_code=502, content={"success": False, "error": str(exc)})
        if not variation.ok:
            return JSONResponse(
                status_code=502,
                content={"success": False, "sessionId": session_id, "error": variation.error},
            )
        return {"success": True, "sessionId": session_id, "variation": variation.as_dict()}

    @app.post("/api/generate-variations-stream")
    async def generate_variations_stream(body: GenerateVariationsBody, request: Request):
        engine = _engine(request)

        async def events() -> AsyncIterator[str]:
            async for event in engine.generate_stream(body.to_request()):
                yield _sse(event)

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/api/record-selection")
    async def record_selection(body: RecordSelectionBody, request: Request, background: BackgroundTasks):
        engine = _engine(request)
        try:
            success = await engine.record_selection(body.attempt_id or "", body.session_id or "")
        except InvalidRequestError as exc:
            return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})
        if not success:
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Failed to record selection"},
            )
        background.add_task(engine.evolve_safely)
        return {"success": True, "message": "Selection recorded and scores updated"}

    @app.get("/api/record-selection/stats")
    def selection_stats(request: Request) -> dict[str, Any]:
        return _engine(request).strategy_stats()

    @app.get("/api/artifacts/{ref}")
    def artifact(ref: str, request: Request):
        try:
            data, mime_type = _engine(request).load_artifact(ref)
        except (FileNotFoundError, ValueError):
            return JSONResponse(status_code=404, content={"success": False, "error": "Artifact not found"})
        return Response(content=data, media_type=mime_type)

    @app.get("/api/evolve-strategies")
    def evolution_status(request: Request) -> dict[str, Any]:
        return _engine(request).evolution_status()

    @app.post("/api/evolve-strategies")
    async def evolve_strategies(request: Request) -> dict[str, Any]:
        report = await _engine(request).evolve_safely()
        payload = {"success": True}
        payload.update(report.as_dict())
        return payload

    return app


__all__ = ["create_app"]
