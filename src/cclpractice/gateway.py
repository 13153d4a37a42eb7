"""Scoring gateway: request building and response validation."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .backend import BackendClient
from .errors import BackendError, ScoringServiceError
from .models import ScoringResult, SegmentScores, SessionResult

logger = logging.getLogger(__name__)

LANGUAGE_CODES = {
    "english": "en",
    "hindi": "hi",
    "punjabi": "pa",
    "spanish": "es",
    "nepali": "ne",
}


def language_code(language: Optional[str]) -> Optional[str]:
    if not language:
        return None
    return LANGUAGE_CODES.get(language.strip().lower())


def encode_audio(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@dataclass(frozen=True)
class ScoreRequest:
    user_id: str
    dialogue_id: str
    segment_id: str
    segment_index: int
    reference_text: str
    reference_audio: bytes
    student_audio: bytes
    language: Optional[str] = None
    repeat_count: int = 0
    audio_format: str = "audio/wav"


class ScoringGateway:
    def __init__(
        self,
        backend: BackendClient,
        score_function: str = "score-mock-test",
        result_function: str = "compute-dialogue-result",
        history_function: str = "get-user-exam-results",
    ):
        self.backend = backend
        self.score_function = score_function
        self.result_function = result_function
        self.history_function = history_function

    def build_payload(self, request: ScoreRequest) -> Dict[str, Any]:
        return {
            "userId": request.user_id,
            "mockTestId": request.dialogue_id,
            "audioFormat": request.audio_format,
            "dialogues": [
                {
                    "dialogueIndex": request.segment_index + 1,
                    "segmentId": request.segment_id,
                    "language": language_code(request.language),
                    "referenceText": request.reference_text,
                    "repeatCount": request.repeat_count,
                    "segments": [
                        {
                            "referenceAudio": encode_audio(request.reference_audio),
                            "studentAudio": encode_audio(request.student_audio),
                        }
                    ],
                }
            ],
        }

    def _call(self, function: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = self.backend.invoke(function, body)
        except BackendError as exc:
            raise ScoringServiceError(str(exc)) from exc
        if not data.get("success"):
            message = data.get("error") or f"{function} reported failure"
            raise ScoringServiceError(str(message))
        return data

    def score_segment(self, request: ScoreRequest) -> ScoringResult:
        logger.info(
            "Scoring segment %s (index %s, repeat %s)",
            request.segment_id,
            request.segment_index,
            request.repeat_count,
        )
        data = self._call(self.score_function, self.build_payload(request))
        dialogues = data.get("dialogues")
        if not isinstance(dialogues, list) or not dialogues:
            raise ScoringServiceError("Scoring failed - no results returned")
        entry = dialogues[0]
        if not isinstance(entry, dict):
            raise ScoringServiceError("Scoring result entry is not an object.")
        scores = SegmentScores.from_payload(entry.get("scores"))
        feedback = entry.get("one_line_feedback")
        if feedback is None:
            feedback = (entry.get("scores") or {}).get("one_line_feedback", "")
        answer_id = entry.get("answerId") or entry.get("answer_id")
        return ScoringResult(
            segment_index=request.segment_index,
            segment_id=request.segment_id,
            answer_id=str(answer_id) if answer_id else None,
            scores=scores,
            feedback=feedback or "",
            repeat_count=request.repeat_count,
        )

    def compute_session_result(
        self,
        user_id: str,
        answer_ids: List[str],
        degraded: bool = False,
    ) -> SessionResult:
        if not answer_ids:
            raise ScoringServiceError("No submitted answers found.")
        logger.info("Computing session result from %s answers", len(answer_ids))
        data = self._call(
            self.result_function, {"userId": user_id, "answerIds": list(answer_ids)}
        )
        return SessionResult.from_payload(data, answer_ids=answer_ids, degraded=degraded)

    def fetch_exam_results(self, user_id: str) -> List[SessionResult]:
        data = self._call(self.history_function, {"userId": user_id})
        rows = data.get("results") or []
        if not isinstance(rows, list):
            raise ScoringServiceError("Exam history is not a list.")
        return [SessionResult.from_payload(row) for row in rows]
