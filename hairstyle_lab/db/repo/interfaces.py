from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

NEUTRAL_SCORE = 0.5
DEFAULT_MODEL = "gemini-2.5-flash-image"


class StoreUnavailableError(RuntimeError):
    """Raised when the persistent store cannot be reached or is not configured."""


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Strategy:
    """A named instruction template with a persistent fitness score."""

    id: str
    name: str
    instruction_template: str
    score: float = NEUTRAL_SCORE
    usage_count: int = 0
    win_count: int = 0
    is_active: bool = True
    model: str = DEFAULT_MODEL
    origin: str = "seed"
    genes: Optional[Mapping[str, str]] = None
    reference_description: Optional[str] = None
    created_for_session: Optional[str] = None
    created_at: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.id or not self.name:
            raise ValueError("strategy requires a non-empty id and name")
        if not self.instruction_template or not self.instruction_template.strip():
            raise ValueError(f"strategy {self.name!r} has an empty instruction template")
        if not math.isfinite(float(self.score)):
            raise ValueError(f"strategy {self.name!r} has a non-finite score")
        if self.usage_count < 0 or self.win_count < 0:
            raise ValueError(f"strategy {self.name!r} has negative counters")
        if self.origin not in {"seed", "dynamic", "evolved"}:
            raise ValueError(f"unknown strategy origin {self.origin!r}")

    @property
    def win_rate(self) -> float:
        if self.usage_count <= 0:
            return 0.0
        return self.win_count / float(self.usage_count)


@dataclass(frozen=True)
class GenerationAttempt:
    """One execution of one strategy inside a session."""

    session_id: str
    strategy_id: str
    strategy_name: str
    reference_image_ref: str
    output_image_ref: Optional[str] = None
    evaluation_passed: Optional[bool] = None
    evaluation_confidence: Optional[float] = None
    evaluation_details: Optional[Mapping[str, Any]] = None
    user_selected: bool = False
    generation_time_ms: int = 0
    error_message: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.session_id:
            raise ValueError("attempt requires a session id")
        has_output = bool(self.output_image_ref)
        has_error = bool(self.error_message)
        if has_output == has_error:
            raise ValueError("attempt must carry exactly one of output_image_ref or error_message")
        if not has_output and self.evaluation_passed is not None:
            raise ValueError("attempt without an output image cannot carry an evaluation verdict")
        if self.evaluation_confidence is not None and not 0.0 <= self.evaluation_confidence <= 1.0:
            raise ValueError("evaluation confidence must lie in [0, 1]")


class StoreProtocol(Protocol):
    def insert_strategies(self, records: Iterable[Strategy]) -> list[str]:
        ...

    def select_strategies(
        self,
        *,
        active: bool | None = None,
        ids: Sequence[str] | None = None,
    ) -> list[Strategy]:
        ...

    def count_strategies(self) -> int:
        ...

    def insert_attempt(self, record: GenerationAttempt) -> str:
        ...

    def select_attempts(self, session_id: str) -> list[GenerationAttempt]:
        ...

    def count_attempts(self) -> int:
        ...

    def apply_selection_outcome(
        self,
        *,
        attempt_id: str,
        winner_strategy_id: str,
        loser_strategy_ids: Sequence[str],
        win_step: float,
        loss_step: float,
    ) -> None:
        ...

    def get_evolution_cycle(self) -> int:
        ...

    def apply_evolution(
        self,
        *,
        expected_cycle: int,
        new_cycle: int,
        retire_ids: Sequence[str],
        replacements: Sequence[Strategy],
    ) -> bool:
        ...

    def close(self) -> None:
        ...


def now_ts() -> int:
    return int(time.time())


__all__ = [
    "DEFAULT_MODEL",
    "GenerationAttempt",
    "NEUTRAL_SCORE",
    "StoreProtocol",
    "StoreUnavailableError",
    "Strategy",
    "new_id",
    "now_ts",
]
