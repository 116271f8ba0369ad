from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv


@dataclass
class StorageConfig:
    database: Optional[Path] = Path("data/hairstyle_lab.sqlite")
    artifacts_dir: Path = Path("output/variations")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "StorageConfig":
        if not raw:
            return cls()
        database = raw.get("database", "data/hairstyle_lab.sqlite")
        return cls(
            database=_optional_path(database),
            artifacts_dir=Path(str(raw.get("artifacts_dir", "output/variations"))),
        )


@dataclass
class GeminiConfig:
    api_key: Optional[str] = None
    generation_model: str = "gemini-2.5-flash-image"
    judge_model: str = "gemini-2.5-flash"
    timeout_s: float = 60.0
    max_retries: int = 2
    backoff_s: float = 1.0

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "GeminiConfig":
        raw = raw or {}
        return cls(
            api_key=_optional_str(raw.get("api_key")),
            generation_model=str(raw.get("generation_model", "gemini-2.5-flash-image")),
            judge_model=str(raw.get("judge_model", "gemini-2.5-flash")),
            timeout_s=float(raw.get("timeout_s", 60.0)),
            max_retries=int(raw.get("max_retries", 2)),
            backoff_s=float(raw.get("backoff_s", 1.0)),
        )

    def resolve_api_key(self) -> Optional[str]:
        load_dotenv()
        return self.api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")


@dataclass
class ScoringConfig:
    win_step: float = 0.05
    loss_step: float = 0.05

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "ScoringConfig":
        raw = raw or {}
        return cls(
            win_step=float(raw.get("win_step", 0.05)),
            loss_step=float(raw.get("loss_step", 0.05)),
        )

    def __post_init__(self) -> None:
        if self.win_step <= 0 or self.loss_step <= 0:
            raise ValueError("scoring steps must be positive")


@dataclass
class EvolutionConfig:
    attempts_per_session: int = 4
    sessions_per_cycle: int = 5
    retire_count: int = 2
    mutation_rate: float = 0.35
    seed: Optional[int] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "EvolutionConfig":
        raw = raw or {}
        seed = raw.get("seed")
        return cls(
            attempts_per_session=int(raw.get("attempts_per_session", 4)),
            sessions_per_cycle=int(raw.get("sessions_per_cycle", 5)),
            retire_count=int(raw.get("retire_count", 2)),
            mutation_rate=float(raw.get("mutation_rate", 0.35)),
            seed=int(seed) if seed is not None else None,
        )

    def __post_init__(self) -> None:
        if self.attempts_per_session < 1 or self.sessions_per_cycle < 1:
            raise ValueError("attempts_per_session and sessions_per_cycle must be >= 1")
        self.retire_count = max(0, int(self.retire_count))
        self.mutation_rate = max(0.0, min(1.0, float(self.mutation_rate)))


@dataclass
class GenerationConfig:
    max_variations: int = 8
    dynamic_count: int = 8

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "GenerationConfig":
        raw = raw or {}
        return cls(
            max_variations=int(raw.get("max_variations", 8)),
            dynamic_count=int(raw.get("dynamic_count", 8)),
        )


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8001
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "ServerConfig":
        raw = raw or {}
        origins = raw.get("cors_origins", ["*"])
        if isinstance(origins, str):
            origins = [item.strip() for item in origins.split(",") if item.strip()]
        return cls(
            host=str(raw.get("host", "0.0.0.0")),
            port=int(raw.get("port", 8001)),
            cors_origins=list(origins),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    logfile: Optional[Path] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "LoggingConfig":
        raw = raw or {}
        return cls(
            level=str(raw.get("level", "INFO")),
            logfile=_optional_path(raw.get("logfile")),
        )


@dataclass
class EngineConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    evolution: EvolutionConfig = field(default_factory=EvolutionConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "EngineConfig":
        return cls(
            storage=StorageConfig.from_mapping(_section(raw, "storage")),
            gemini=GeminiConfig.from_mapping(_section(raw, "gemini")),
            scoring=ScoringConfig.from_mapping(_section(raw, "scoring")),
            evolution=EvolutionConfig.from_mapping(_section(raw, "evolution")),
            generation=GenerationConfig.from_mapping(_section(raw, "generation")),
            server=ServerConfig.from_mapping(_section(raw, "server")),
            logging=LoggingConfig.from_mapping(_section(raw, "logging")),
        )


def load_config(path: Path | None) -> EngineConfig:
    """Read a YAML or JSON config file; a missing path yields the defaults."""

    if path is None or not Path(path).exists():
        return EngineConfig()
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")
    return EngineConfig.from_dict(data)


def _section(raw: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key, {})
    return dict(value) if isinstance(value, Mapping) else {}


def _optional_path(value: Any) -> Path | None:
    if value in (None, "", False):
        return None
    return Path(str(value))


def _optional_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


__all__ = [
    "EngineConfig",
    "EvolutionConfig",
    "GeminiConfig",
    "GenerationConfig",
    "LoggingConfig",
    "ScoringConfig",
    "ServerConfig",
    "StorageConfig",
    "load_config",
]
