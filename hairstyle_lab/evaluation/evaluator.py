from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from hairstyle_lab.image.gemini.interfaces import ImageBlob, JudgeProtocol
from hairstyle_lab.logging_utils import RunLogger

JUDGE_PROMPT = """You are an image comparison expert. Compare these two images of the same person.

Image 1: Original photo
Image 2: Generated transformation

Your task: Determine if a meaningful HAIRSTYLE transformation occurred between image 1 and image 2.

Analyze:
1. Hair color: Did it change? (Yes/No)
2. Hair length: Did it change significantly? (Yes/No)
3. Hair texture: Did it change (straight vs wavy vs curly)? (Yes/No)
4. Hair style: Did the styling change (volume, direction, cut)? (Yes/No)
5. Overall similarity: Rate how similar the images are (0-100%, where 100% = completely identical)

A transformation PASSES if:
- At least 2 of the 4 hair attributes changed, OR
- Overall similarity is less than 85%

A transformation FAILS if:
- Images look nearly identical (similarity > 90%), OR
- Only minor/imperceptible changes occurred

Return your analysis in this EXACT JSON format:
{
  "hairColorChanged": true/false,
  "hairLengthChanged": true/false,
  "hairTextureChanged": true/false,
  "hairStyleChanged": true/false,
  "overallSimilarity": 0.XX (as decimal, e.g., 0.92 for 92%),
  "passed": true/false,
  "reason": "Brief explanation of your decision"
}

Return ONLY the JSON, no other text."""

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_CHANGE_KEYS = ("hairColorChanged", "hairLengthChanged", "hairTextureChanged", "hairStyleChanged")
_REQUIRED_KEYS = _CHANGE_KEYS + ("overallSimilarity", "passed")


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class EvaluationDetails:
    hair_color_changed: bool
    hair_length_changed: bool
    hair_texture_changed: bool
    hair_style_changed: bool
    overall_similarity: float

    @property
    def changes_count(self) -> int:
        return sum(
            (
                self.hair_color_changed,
                self.hair_length_changed,
                self.hair_texture_changed,
                self.hair_style_changed,
            )
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "hairColorChanged": self.hair_color_changed,
            "hairLengthChanged": self.hair_length_changed,
            "hairTextureChanged": self.hair_texture_changed,
            "hairStyleChanged": self.hair_style_changed,
            "overallSimilarity": self.overall_similarity,
        }


@dataclass(frozen=True)
class EvaluationResult:
    passed: bool
    confidence: float
    reason: str
    details: EvaluationDetails

    def as_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "confidence": self.confidence,
            "reason": self.reason,
            "details": self.details.as_dict(),
        }


def derive_confidence(passed: bool, details: EvaluationDetails) -> float:
    """0.5 + 0.125 per changed attribute when passed; 0.3 + 0.5 * dissimilarity otherwise."""

    if passed:
        confidence = 0.5 + details.changes_count * 0.125
    else:
        confidence = 0.3 + (1.0 - details.overall_similarity) * 0.5
    return _clamp(min(1.0, confidence))


def parse_failure_result(reason: str = "Evaluation failed - no JSON response") -> EvaluationResult:
    """Conservative verdict used when the judge answer cannot be interpreted."""

    return EvaluationResult(
        passed=False,
        confidence=0.5,
        reason=reason,
        details=EvaluationDetails(
            hair_color_changed=False,
            hair_length_changed=False,
            hair_texture_changed=False,
            hair_style_changed=False,
            overall_similarity=1.0,
        ),
    )


def judge_error_result(exc: BaseException) -> EvaluationResult:
    """Optimistic verdict used when the judge call itself fails.

    The user still gets to see the image and decide; a payload-too-large
    rejection is reported separately from other judge errors.
    """

    cause = "image too large" if "413" in str(exc) else "evaluation error"
    return EvaluationResult(
        passed=True,
        confidence=0.6,
        reason=f"Auto-evaluation skipped ({cause})",
        details=EvaluationDetails(
            hair_color_changed=True,
            hair_length_changed=False,
            hair_texture_changed=False,
            hair_style_changed=True,
            overall_similarity=0.75,
        ),
    )


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    if isinstance(value, (int, float)):
        return value != 0
    raise ValueError(f"expected a boolean, got {value!r}")


def _as_similarity(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("similarity must be numeric")
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    number = float(value)
    # a judge answering in percent instead of a fraction
    if number > 1.0:
        number = number / 100.0
    return _clamp(number)


def parse_verdict(text: str) -> EvaluationResult:
    """Turn the judge's raw answer into a result, falling back conservatively."""

    match = _JSON_OBJECT_RE.search(text or "")
    if match is None:
        return parse_failure_result("Evaluation failed - no JSON found in judge response")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError:
        return parse_failure_result("Evaluation failed - malformed JSON in judge response")
    if not isinstance(payload, Mapping):
        return parse_failure_result("Evaluation failed - judge response is not a JSON object")
    missing = [key for key in _REQUIRED_KEYS if key not in payload]
    if missing:
        return parse_failure_result(f"Evaluation failed - judge response missing {', '.join(missing)}")
    try:
        details = EvaluationDetails(
            hair_color_changed=_as_bool(payload["hairColorChanged"]),
            hair_length_changed=_as_bool(payload["hairLengthChanged"]),
            hair_texture_changed=_as_bool(payload["hairTextureChanged"]),
            hair_style_changed=_as_bool(payload["hairStyleChanged"]),
            overall_similarity=_as_similarity(payload["overallSimilarity"]),
        )
        passed = _as_bool(payload["passed"])
    except (TypeError, ValueError) as exc:
        return parse_failure_result(f"Evaluation failed - invalid judge fields ({exc})")
    reason = payload.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        reason = "passed" if passed else "failed"
    return EvaluationResult(
        passed=passed,
        confidence=derive_confidence(passed, details),
        reason=reason.strip(),
        details=details,
    )


@dataclass
class OutcomeEvaluator:
    """Judge whether a generated image differs meaningfully from the original."""

    judge: JudgeProtocol
    timeout_s: float = 60.0
    logger: Optional[RunLogger] = None

    async def evaluate(self, before: ImageBlob, after: ImageBlob) -> EvaluationResult:
        try:
            raw = await asyncio.wait_for(self.judge.judge(before, after, JUDGE_PROMPT), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            result = judge_error_result(TimeoutError(f"judge timed out after {self.timeout_s:.0f}s"))
            self._log(result, level="WARN")
            return result
        except Exception as exc:
            if self.logger:
                self.logger.log("EVAL", f"judge error: {exc}", level="WARN")
            result = judge_error_result(exc)
            self._log(result)
            return result
        result = parse_verdict(raw)
        self._log(result)
        return result

    def _log(self, result: EvaluationResult, level: str = "INFO") -> None:
        if self.logger:
            verdict = "pass" if result.passed else "fail"
            self.logger.log(
                "EVAL",
                f"{verdict} confidence={result.confidence:.2f} similarity={result.details.overall_similarity:.2f} "
                f"reason={result.reason}",
                level=level,
            )


__all__ = [
    "EvaluationDetails",
    "EvaluationResult",
    "JUDGE_PROMPT",
    "OutcomeEvaluator",
    "derive_confidence",
    "judge_error_result",
    "parse_failure_result",
    "parse_verdict",
]
