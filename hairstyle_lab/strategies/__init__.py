from .registry import StrategyRegistry, UnknownStrategyError
from .templates import default_strategies, dynamic_strategies

__all__ = ["StrategyRegistry", "UnknownStrategyError", "default_strategies", "dynamic_strategies"]
