from __future__ import annotations

"""Strategy evolution engine for AI hairstyle previews."""

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - type checking helper
    from .config import EngineConfig, load_config
    from .engine import GenerationRequest, StrategyEngine
    from .engine_factory import create_engine_container

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "GenerationRequest",
    "StrategyEngine",
    "create_engine_container",
    "load_config",
]


def __getattr__(name: str) -> Any:  # pragma: no cover - dispatch helper
    if name in {"EngineConfig", "load_config"}:
        module = import_module(".config", __name__)
    elif name in {"GenerationRequest", "StrategyEngine"}:
        module = import_module(".engine", __name__)
    elif name == "create_engine_container":
        module = import_module(".engine_factory", __name__)
    else:
        raise AttributeError(name)

    value = getattr(module, name)
    globals()[name] = value
    return value
