"""Practice time tracking rows."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .backend import BackendClient
from .errors import BackendError

logger = logging.getLogger(__name__)

TABLE = "practice_sessions"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PracticeTracker:
    """Opens a practice_sessions row on start and stamps ended_at on end.

    Tracking is best effort: backend failures are logged and never interrupt
    practice.
    """

    def __init__(
        self,
        backend: BackendClient,
        user_id: str,
        activity_type: str = "dialogue_practice",
        clock: Callable[[], str] = _utc_now,
    ):
        self.backend = backend
        self.user_id = user_id
        self.activity_type = activity_type
        self.clock = clock
        self.session_id: Optional[str] = None
        self.started_at: Optional[str] = None

    def start(self) -> Optional[str]:
        if self.session_id:
            return self.session_id
        started = self.clock()
        try:
            row = self.backend.insert_row(
                TABLE,
                {
                    "student_id": self.user_id,
                    "started_at": started,
                    "activity_type": self.activity_type,
                },
            )
        except BackendError as exc:
            logger.warning("Error starting practice session: %s", exc)
            return None
        self.session_id = row.get("id")
        self.started_at = started if self.session_id else None
        logger.info("Practice session started: %s", self.session_id)
        return self.session_id

    def end(self) -> None:
        if not self.session_id:
            return
        try:
            self.backend.update_row(TABLE, self.session_id, {"ended_at": self.clock()})
            logger.info("Practice session ended: %s", self.session_id)
        except BackendError as exc:
            logger.warning("Error ending practice session: %s", exc)
        finally:
            self.session_id = None
            self.started_at = None

    def __enter__(self) -> "PracticeTracker":
        self.start()
        return self

    def __exit__(self, *_exc) -> None:
        self.end()
