"""Exception types raised across the service."""

from __future__ import annotations


class PokeValueError(Exception):
    """Base class for all service errors."""


class InvalidImage(PokeValueError, ValueError):
    """Raised when an uploaded payload is not an acceptable card image."""


class ImageTooLarge(InvalidImage):
    """Raised when the decoded image exceeds the configured size limit."""


class StoreError(PokeValueError):
    """Raised when the submission store cannot complete a read or write."""


class SubmissionNotFound(StoreError, KeyError):
    """Raised when a write targets a submission id that does not exist."""

    def __init__(self, submission_id: str) -> None:
        super().__init__(submission_id)
        self.submission_id = submission_id

    def __str__(self) -> str:
        return f"Submission {self.submission_id} does not exist"


class SubmissionExists(StoreError):
    """Raised when a submission id is created twice."""


class InvalidTransition(StoreError):
    """Raised when a write would move a submission along an undefined edge."""


class SubmissionNotProcessable(PokeValueError):
    """Raised when processing is requested for a submission that already started."""


class MissingAPIKey(RuntimeError):
    """Raised when the OpenAI API key cannot be located."""


class CollaboratorError(PokeValueError):
    """Raised when an identification or valuation call fails."""


class CollaboratorResponseError(CollaboratorError):
    """Raised when a model response does not match the expected schema."""


class CollaboratorTimeout(CollaboratorError):
    """Raised when a collaborator does not answer in time."""
