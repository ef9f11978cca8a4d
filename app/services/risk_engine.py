from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Mapping

from app.core.errors import ValidationError
from app.utils.identifiers import is_email

LOW_THRESHOLD = 30.0
HIGH_THRESHOLD = 70.0
BORDERLINE_LOW_SCORE = 20.0
FACTOR_TRUST_THRESHOLD = 50.0
BASE_CONFIDENCE = 0.85
MIN_CONFIDENCE = 0.5
SCORE_PRECISION = 6

AFFIRMATION_ADJUSTMENT = -10.0
DENIAL_ADJUSTMENT = 20.0
FREE_TEXT_ADJUSTMENT = -5.0
DEVICE_CHOICE_ADJUSTMENT = -5.0
MIN_FREE_TEXT_LENGTH = 2


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class QuestionKind(str, Enum):
    TEXT = "text"
    CHOICE = "choice"
    VERIFICATION = "verification"


class QuestionId(str, Enum):
    LOCATION = "location"
    DEVICE = "device"
    RECENT_ACTIVITY = "recent_activity"
    SECURITY = "security_question"
    ACCOUNT_CREATION = "account_creation"
    VERIFICATION = "verification"


DEVICE_OPTIONS = ("Desktop/Laptop", "Mobile Phone", "Tablet", "Other")
RECENT_ACTIVITY_OPTIONS = (
    "Yes, just now",
    "Yes, earlier today",
    "No, this is my first attempt",
    "I don't remember",
)


@dataclass(frozen=True)
class RiskFactors:
    """Externally sourced trust sub-scores in [0, 100]; higher is more trustworthy."""

    ip_reputation: float
    device_fingerprint: float
    velocity: float
    location_anomaly: float
    request_pattern: float
    time_pattern: float

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
                raise ValidationError(f"Risk factor {item.name} must be a number")
            if not 0 <= value <= 100:
                raise ValidationError(f"Risk factor {item.name} must be within [0, 100]")

    @classmethod
    def uniform(cls, value: float) -> "RiskFactors":
        return cls(*(value for _ in fields(cls)))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RiskFactors":
        return cls(**{item.name: data[item.name] for item in fields(cls)})

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class RiskWeights:
    ip_reputation: float = 0.25
    device_fingerprint: float = 0.20
    velocity: float = 0.20
    location_anomaly: float = 0.15
    request_pattern: float = 0.10
    time_pattern: float = 0.10

    def __post_init__(self) -> None:
        total = sum(getattr(self, item.name) for item in fields(self))
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ValueError(f"Risk weights must sum to 1.0, got {total}")


@dataclass(frozen=True)
class AdaptiveQuestion:
    id: str
    prompt: str
    kind: QuestionKind
    required: bool
    options: tuple[str, ...] = ()
    hint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "kind": self.kind.value,
            "required": self.required,
            "options": list(self.options),
            "hint": self.hint,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AdaptiveQuestion":
        return cls(
            id=data["id"],
            prompt=data["prompt"],
            kind=QuestionKind(data["kind"]),
            required=bool(data["required"]),
            options=tuple(data.get("options") or ()),
            hint=data.get("hint"),
        )


@dataclass(frozen=True)
class RiskAssessment:
    score: float
    level: RiskLevel
    confidence: float
    needs_questions: bool = False
    pending_questions: tuple[AdaptiveQuestion, ...] = ()
    recommendations: tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return self.level is RiskLevel.HIGH

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level.value,
            "confidence": self.confidence,
            "blocked": self.blocked,
            "needs_questions": self.needs_questions,
            "pending_questions": [q.to_dict() for q in self.pending_questions],
            "recommendations": list(self.recommendations),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RiskAssessment":
        return cls(
            score=float(data["score"]),
            level=RiskLevel(data["level"]),
            confidence=float(data["confidence"]),
            needs_questions=bool(data.get("needs_questions")),
            pending_questions=tuple(AdaptiveQuestion.from_dict(q) for q in data.get("pending_questions") or ()),
            recommendations=tuple(data.get("recommendations") or ()),
        )


def classify(score: float) -> RiskLevel:
    if score < LOW_THRESHOLD:
        return RiskLevel.LOW
    if score < HIGH_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def needs_questions(level: RiskLevel, score: float) -> bool:
    # Borderline-low scores are re-verified as well.
    return level is RiskLevel.MEDIUM or (level is RiskLevel.LOW and score > BORDERLINE_LOW_SCORE)


def _clamp_score(value: float) -> float:
    return round(min(100.0, max(0.0, value)), SCORE_PRECISION)


def _is_affirmative(answer: str) -> bool:
    lowered = answer.strip().lower()
    return "yes" in lowered or lowered == "true"


class RiskEngine:
    """Deterministic weighted scoring and adaptive questioning.

    Holds no mutable state; one instance is shared by every session.
    """

    def __init__(self, weights: RiskWeights | None = None, trust_threshold: float = FACTOR_TRUST_THRESHOLD) -> None:
        self.weights = weights or RiskWeights()
        self.trust_threshold = trust_threshold

    def score(self, factors: RiskFactors) -> float:
        total = sum(
            (100.0 - getattr(factors, item.name)) * getattr(self.weights, item.name)
            for item in fields(RiskWeights)
        )
        # Rounding cancels float noise so 30.000000000000004 classifies as 30.
        return _clamp_score(total)

    def classify(self, score: float) -> RiskLevel:
        return classify(score)

    def needs_questions(self, level: RiskLevel, score: float) -> bool:
        return needs_questions(level, score)

    def generate_questions(self, factors: RiskFactors, identifier: str) -> list[AdaptiveQuestion]:
        threshold = self.trust_threshold
        questions: list[AdaptiveQuestion] = []

        if factors.ip_reputation < threshold:
            questions.append(
                AdaptiveQuestion(
                    id=QuestionId.LOCATION.value,
                    prompt="What city did you create your account in?",
                    kind=QuestionKind.TEXT,
                    required=True,
                    hint="This helps verify your identity",
                )
            )
        if factors.device_fingerprint < threshold:
            questions.append(
                AdaptiveQuestion(
                    id=QuestionId.DEVICE.value,
                    prompt="What type of device are you using to recover your account?",
                    kind=QuestionKind.CHOICE,
                    required=True,
                    options=DEVICE_OPTIONS,
                )
            )
        if factors.velocity < threshold:
            questions.append(
                AdaptiveQuestion(
                    id=QuestionId.RECENT_ACTIVITY.value,
                    prompt="Did you attempt to recover your account recently?",
                    kind=QuestionKind.CHOICE,
                    required=True,
                    options=RECENT_ACTIVITY_OPTIONS,
                )
            )
        if factors.location_anomaly < threshold:
            questions.append(
                AdaptiveQuestion(
                    id=QuestionId.SECURITY.value,
                    prompt="What was the approximate date when you last successfully logged into your account?",
                    kind=QuestionKind.TEXT,
                    required=False,
                    hint='Approximate date is fine (e.g., "Last week", "2 weeks ago")',
                )
            )
        if factors.request_pattern < threshold and is_email(identifier):
            questions.append(
                AdaptiveQuestion(
                    id=QuestionId.ACCOUNT_CREATION.value,
                    prompt="What month and year did you create this account?",
                    kind=QuestionKind.TEXT,
                    required=False,
                    hint='Approximate is fine (e.g., "January 2024")',
                )
            )
        if not questions:
            questions.append(
                AdaptiveQuestion(
                    id=QuestionId.VERIFICATION.value,
                    prompt="To help verify your identity, please confirm: This recovery request is for your own account.",
                    kind=QuestionKind.VERIFICATION,
                    required=True,
                )
            )
        return questions

    def recommendations(self, factors: RiskFactors) -> tuple[str, ...]:
        hints = []
        if factors.ip_reputation < self.trust_threshold:
            hints.append("Request from a trusted network")
        if factors.device_fingerprint < self.trust_threshold:
            hints.append("Use a device you've used before")
        if factors.velocity < self.trust_threshold:
            hints.append("Wait before attempting recovery again")
        return tuple(hints)

    def assess(self, factors: RiskFactors, identifier: str) -> RiskAssessment:
        score = self.score(factors)
        level = self.classify(score)
        ask = self.needs_questions(level, score)
        return RiskAssessment(
            score=score,
            level=level,
            confidence=BASE_CONFIDENCE,
            needs_questions=ask,
            pending_questions=tuple(self.generate_questions(factors, identifier)) if ask else (),
            recommendations=self.recommendations(factors),
        )

    def reassess(
        self,
        original: RiskAssessment,
        questions: list[AdaptiveQuestion] | tuple[AdaptiveQuestion, ...],
        answers: Mapping[str, Any],
    ) -> RiskAssessment:
        """Apply bounded score adjustments for answers to the questions that were asked.

        Answers keyed by an id that is not among ``questions`` are ignored.
        """
        asked = {question.id: question for question in questions}
        adjustment = 0.0
        correct = 0
        total = 0

        for question_id, raw in answers.items():
            question = asked.get(question_id)
            if question is None or raw is None:
                continue
            answer = str(raw).strip()
            if not answer:
                continue

            if question_id == QuestionId.VERIFICATION.value:
                total += 1
                if _is_affirmative(answer):
                    adjustment += AFFIRMATION_ADJUSTMENT
                    correct += 1
                else:
                    adjustment += DENIAL_ADJUSTMENT
            elif question_id == QuestionId.LOCATION.value:
                if len(answer) > MIN_FREE_TEXT_LENGTH:
                    adjustment += FREE_TEXT_ADJUSTMENT
                    correct += 1
                    total += 1
            elif question_id == QuestionId.DEVICE.value:
                options = {option.lower() for option in question.options}
                if not options or answer.lower() in options:
                    adjustment += DEVICE_CHOICE_ADJUSTMENT
                    correct += 1
                    total += 1

        score = _clamp_score(original.score + adjustment)
        confidence = correct / total if total else MIN_CONFIDENCE
        return RiskAssessment(
            score=score,
            level=self.classify(score),
            confidence=max(MIN_CONFIDENCE, min(1.0, confidence)),
            needs_questions=False,
            pending_questions=(),
            recommendations=original.recommendations,
        )
