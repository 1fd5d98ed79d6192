"""Read-only access to submissions for polling clients."""

from __future__ import annotations

from typing import Dict, Optional

from .models import Submission
from .store import SubmissionStore


class SubmissionQuery:
    """Reads straight from the store on every call; there is no cache to go stale."""

    def __init__(self, store: SubmissionStore) -> None:
        self._store = store

    def get(self, submission_id: str) -> Optional[Submission]:
        if not submission_id or not isinstance(submission_id, str):
            return None
        return self._store.get(submission_id)

    def payload(self, submission_id: str) -> Optional[Dict[str, object]]:
        """Client-facing JSON for ``submission_id``, or None when it is unknown."""

        submission = self.get(submission_id)
        if submission is None:
            return None
        return submission.dict()
