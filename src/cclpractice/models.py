"""Data models for cclpractice."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import BackendError, ScoringServiceError

DIFFICULTY_TIERS = ("Beginner", "Intermediate", "Advanced")

SCORE_DIMENSIONS = (
    "accuracy",
    "language_quality",
    "fluency_pronunciation",
    "delivery_coherence",
    "cultural_context",
    "response_management",
)


@dataclass(frozen=True)
class Domain:
    id: Optional[str]
    title: str
    color: Optional[str] = None


@dataclass(frozen=True)
class Dialogue:
    id: str
    title: str
    description: Optional[str] = None
    duration: Optional[str] = None
    difficulty: Optional[str] = None
    participants: Optional[str] = None
    domain: Optional[Domain] = None
    language_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Dialogue":
        if not isinstance(row, dict) or not row.get("id"):
            raise BackendError(f"Malformed dialogue row: {row!r}")
        domain_row = row.get("domains") or None
        domain = None
        if isinstance(domain_row, dict):
            domain = Domain(
                id=row.get("domain_id"),
                title=domain_row.get("title") or "",
                color=domain_row.get("color"),
            )
        difficulty = row.get("difficulty")
        if difficulty not in DIFFICULTY_TIERS:
            difficulty = None
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "Untitled",
            description=row.get("description"),
            duration=row.get("duration"),
            difficulty=difficulty,
            participants=row.get("participants"),
            domain=domain,
            language_id=row.get("language_id"),
        )


@dataclass(frozen=True)
class DialogueSegment:
    id: str
    dialogue_id: str
    segment_order: int
    text_content: str
    translation: Optional[str] = None
    audio_url: Optional[str] = None
    speaker: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DialogueSegment":
        if not isinstance(row, dict) or not row.get("id"):
            raise BackendError(f"Malformed segment row: {row!r}")
        try:
            order = int(row.get("segment_order", 0))
        except (TypeError, ValueError) as exc:
            raise BackendError(f"Bad segment_order in {row.get('id')}") from exc
        return cls(
            id=str(row["id"]),
            dialogue_id=str(row.get("dialogue_id", "")),
            segment_order=order,
            text_content=row.get("text_content") or "",
            translation=row.get("translation"),
            audio_url=row.get("audio_url") or None,
            speaker=row.get("speaker"),
            start_time=row.get("start_time"),
            end_time=row.get("end_time"),
        )


@dataclass(frozen=True)
class AudioBlob:
    data: bytes
    mime_type: str = "audio/wav"
    duration_seconds: float = 0.0

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class Recording:
    blob: AudioBlob
    url: str
    repeat_count: int = 0


@dataclass(frozen=True)
class DimensionScore:
    score: float
    feedback: Optional[str] = None


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ScoringServiceError(f"Score field {name} is not numeric: {value!r}")
    return float(value)


@dataclass(frozen=True)
class SegmentScores:
    dimensions: Dict[str, DimensionScore]
    total_raw_score: Optional[float] = None
    final_score: Optional[float] = None

    @classmethod
    def from_payload(cls, scores: Dict[str, Any]) -> "SegmentScores":
        if not isinstance(scores, dict):
            raise ScoringServiceError("Scoring response has no scores object.")
        dimensions = {}
        for name in SCORE_DIMENSIONS:
            raw = scores.get(f"{name}_score")
            if raw is None:
                continue
            dimensions[name] = DimensionScore(
                score=_number(raw, f"{name}_score"),
                feedback=scores.get(f"{name}_feedback"),
            )
        total = scores.get("total_raw_score")
        final = scores.get("final_score")
        return cls(
            dimensions=dimensions,
            total_raw_score=_number(total, "total_raw_score") if total is not None else None,
            final_score=_number(final, "final_score") if final is not None else None,
        )

    @property
    def total(self) -> float:
        if self.final_score is not None:
            return self.final_score
        if self.total_raw_score is not None:
            return self.total_raw_score
        return sum(d.score for d in self.dimensions.values())


@dataclass(frozen=True)
class ScoringResult:
    segment_index: int
    segment_id: str
    answer_id: Optional[str]
    scores: SegmentScores
    feedback: str = ""
    repeat_count: int = 0


@dataclass(frozen=True)
class SessionResult:
    score: Optional[float]
    overall_feedback: str = ""
    answer_ids: List[str] = field(default_factory=list)
    degraded: bool = False
    dialogue_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_payload(
        cls,
        data: Dict[str, Any],
        answer_ids: Optional[List[str]] = None,
        degraded: bool = False,
    ) -> "SessionResult":
        if not isinstance(data, dict):
            raise ScoringServiceError("Result response is not an object.")
        raw = data.get("combined_score")
        if raw is None:
            raw = data.get("total_score")
        score = _number(raw, "combined_score") if raw is not None else None
        ids = answer_ids
        if ids is None:
            ids = [str(a) for a in (data.get("answer_ids") or [])]
        return cls(
            score=score,
            overall_feedback=data.get("overall_feedback") or "",
            answer_ids=list(ids),
            degraded=degraded,
            dialogue_id=data.get("dialogue_id") or data.get("mock_test_id"),
            created_at=data.get("created_at"),
        )
