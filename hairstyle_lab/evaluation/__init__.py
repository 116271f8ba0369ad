from .evaluator import EvaluationDetails, EvaluationResult, OutcomeEvaluator, parse_verdict

__all__ = ["EvaluationDetails", "EvaluationResult", "OutcomeEvaluator", "parse_verdict"]
