from .executor import (
    ContentBlockedError,
    ExecutionResult,
    GenerationError,
    GenerationTimeoutError,
    NoImageError,
    TransformationExecutor,
    UnexpectedFinishError,
)

__all__ = [
    "ContentBlockedError",
    "ExecutionResult",
    "GenerationError",
    "GenerationTimeoutError",
    "NoImageError",
    "TransformationExecutor",
    "UnexpectedFinishError",
]
