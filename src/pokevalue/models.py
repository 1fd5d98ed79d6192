"""Data models used across the service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .schemas import CardIdentity, MarketplaceEstimate


class SubmissionStatus(str, Enum):
    PROCESSING_IDENTIFICATION = "PROCESSING_IDENTIFICATION"
    PROCESSING_VALUATION = "PROCESSING_VALUATION"
    COMPLETED = "COMPLETED"
    ERROR_IDENTIFICATION = "ERROR_IDENTIFICATION"
    ERROR_VALUATION = "ERROR_VALUATION"

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]

    @property
    def is_error(self) -> bool:
        return self in (SubmissionStatus.ERROR_IDENTIFICATION, SubmissionStatus.ERROR_VALUATION)

    def can_transition_to(self, other: "SubmissionStatus") -> bool:
        return other in _TRANSITIONS[self]


_TRANSITIONS: Dict[SubmissionStatus, FrozenSet[SubmissionStatus]] = {
    SubmissionStatus.PROCESSING_IDENTIFICATION: frozenset(
        {SubmissionStatus.PROCESSING_VALUATION, SubmissionStatus.ERROR_IDENTIFICATION}
    ),
    SubmissionStatus.PROCESSING_VALUATION: frozenset(
        {SubmissionStatus.COMPLETED, SubmissionStatus.ERROR_VALUATION}
    ),
    SubmissionStatus.COMPLETED: frozenset(),
    SubmissionStatus.ERROR_IDENTIFICATION: frozenset(),
    SubmissionStatus.ERROR_VALUATION: frozenset(),
}


@dataclass(slots=True)
class Submission:
    """One card-scan request and the state accumulated while processing it."""

    id: str
    image_reference: str
    status: SubmissionStatus
    created_at: datetime
    updated_at: datetime
    card_identity: Optional[CardIdentity] = None
    valuation: Optional[List[MarketplaceEstimate]] = None
    error_detail: Optional[str] = None

    def dict(self) -> Dict[str, object]:
        """Render the submission with the field names polling clients expect."""

        identity = self.card_identity
        return {
            "id": self.id,
            "imageDataUri": self.image_reference,
            "cardName": identity.name if identity else None,
            "cardNumber": identity.number if identity else None,
            "deckIdLetter": identity.deck_letter if identity else None,
            "illustratorName": identity.illustrator if identity else None,
            "estimations": [estimate.as_payload() for estimate in self.valuation]
            if self.valuation is not None
            else None,
            "status": self.status.value,
            "errorMessage": self.error_detail,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


def utcnow() -> datetime:
    """Current UTC time truncated to the millisecond precision stored on disk."""

    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def isoformat(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(text: str) -> datetime:
    value = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value
