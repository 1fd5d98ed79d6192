"""Drives a card submission from identification through valuation."""

from __future__ import annotations

import concurrent.futures
import logging
import uuid
from typing import Callable, List, Optional, TypeVar

from .collaborators import CardIdentifier, CardValuer, build_client, search_query
from .config import AppConfig
from .errors import (
    CollaboratorTimeout,
    StoreError,
    SubmissionNotFound,
    SubmissionNotProcessable,
)
from .events import EventLog
from .models import Submission, SubmissionStatus
from .schemas import CardIdentity, MarketplaceEstimate
from .store import SubmissionStore, build_store

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MISSING_DETAILS_MESSAGE = "AI failed to identify key card details (name or number)."
NO_VALUATION_MESSAGE = "AI valuation process failed to return data."


def new_submission_id() -> str:
    return str(uuid.uuid4())


class LifecycleManager:
    """Coordinates the submission store with the identification and valuation collaborators.

    ``submit`` persists a new submission and returns its id; ``process`` runs
    the two collaborator calls in order and records every outcome, so a
    polling client always ends up seeing ``COMPLETED`` or an error status.
    Collaborator calls are attempted once and never retried.
    """

    def __init__(
        self,
        store: SubmissionStore,
        identifier: CardIdentifier,
        valuer: CardValuer,
        *,
        timeout: Optional[float] = None,
        events: Optional[EventLog] = None,
        id_factory: Callable[[], str] = new_submission_id,
    ) -> None:
        self.store = store
        self._identifier = identifier
        self._valuer = valuer
        self._timeout = timeout
        self._events = events or EventLog()
        self._id_factory = id_factory

    def submit(self, image_reference: str) -> str:
        """Create a submission in ``PROCESSING_IDENTIFICATION`` and return its id.

        Store failures propagate; nothing is processed for a submission that
        could not be created.
        """

        submission_id = self._id_factory()
        self.store.create(submission_id, image_reference)
        LOGGER.info("Accepted submission %s", submission_id)
        self._events.event("create", submission_id, status=SubmissionStatus.PROCESSING_IDENTIFICATION.value)
        return submission_id

    def submit_and_process(self, image_reference: str) -> Submission:
        """Synchronous variant: create the submission and drive it to a terminal state."""

        return self.process(self.submit(image_reference))

    def process(self, submission_id: str) -> Submission:
        """Run identification then valuation for a freshly created submission."""

        submission = self.store.get(submission_id)
        if submission is None:
            raise SubmissionNotFound(submission_id)
        if submission.status is not SubmissionStatus.PROCESSING_IDENTIFICATION:
            raise SubmissionNotProcessable(
                f"Submission {submission_id} is {submission.status.value}; only new submissions can be processed"
            )

        identity = self._identify(submission)
        if identity is None:
            return self._current(submission_id)
        self._value(submission_id, identity)
        return self._current(submission_id)

    def _identify(self, submission: Submission) -> Optional[CardIdentity]:
        submission_id = submission.id
        try:
            result = self._call(self._identifier.identify, submission.image_reference)
        except CollaboratorTimeout as exc:
            self._fail(submission_id, SubmissionStatus.ERROR_IDENTIFICATION, str(exc))
            return None
        except Exception as exc:
            LOGGER.exception("Identification failed for submission %s", submission_id)
            self._fail(submission_id, SubmissionStatus.ERROR_IDENTIFICATION, _processing_error(exc))
            return None

        if result is None or not result.is_complete:
            LOGGER.warning("Identification for submission %s is missing name or number", submission_id)
            self._fail(submission_id, SubmissionStatus.ERROR_IDENTIFICATION, MISSING_DETAILS_MESSAGE)
            return None

        identity = result.to_identity()
        try:
            self.store.record_identification(submission_id, identity, SubmissionStatus.PROCESSING_VALUATION)
        except StoreError as exc:
            LOGGER.exception("Could not record identification for submission %s", submission_id)
            self._fail(submission_id, SubmissionStatus.ERROR_IDENTIFICATION, _processing_error(exc))
            return None
        LOGGER.info("Identified submission %s as %s", submission_id, search_query(identity))
        self._events.event(
            "identify",
            submission_id,
            status=SubmissionStatus.PROCESSING_VALUATION.value,
            card=search_query(identity),
        )
        return identity

    def _value(self, submission_id: str, identity: CardIdentity) -> None:
        try:
            estimates: Optional[List[MarketplaceEstimate]] = self._call(self._valuer.estimate, identity)
        except CollaboratorTimeout as exc:
            self._fail(submission_id, SubmissionStatus.ERROR_VALUATION, str(exc))
            return
        except Exception as exc:
            LOGGER.exception("Valuation failed for submission %s", submission_id)
            self._fail(submission_id, SubmissionStatus.ERROR_VALUATION, _processing_error(exc))
            return

        if estimates is None:
            self._fail(submission_id, SubmissionStatus.ERROR_VALUATION, NO_VALUATION_MESSAGE)
            return
        if not estimates:
            LOGGER.warning(
                "Valuation for submission %s (%s) returned no estimations",
                submission_id,
                search_query(identity),
            )

        try:
            self.store.record_valuation(submission_id, estimates, SubmissionStatus.COMPLETED)
        except StoreError as exc:
            LOGGER.exception("Could not record valuation for submission %s", submission_id)
            self._fail(submission_id, SubmissionStatus.ERROR_VALUATION, _processing_error(exc))
            return
        LOGGER.info("Completed submission %s with %d estimate(s)", submission_id, len(estimates))
        self._events.event("value", submission_id, status=SubmissionStatus.COMPLETED.value, estimates=len(estimates))

    def _fail(self, submission_id: str, status: SubmissionStatus, detail: str) -> None:
        # A failure here is a store failure and propagates to the caller.
        self.store.record_error(submission_id, status, detail)
        LOGGER.info("Submission %s ended in %s: %s", submission_id, status.value, detail)
        self._events.event("error", submission_id, status=status.value, message=detail)

    def _current(self, submission_id: str) -> Submission:
        submission = self.store.get(submission_id)
        if submission is None:
            raise SubmissionNotFound(submission_id)
        return submission

    def _call(self, func: Callable[..., T], *args: object) -> T:
        if self._timeout is None:
            return func(*args)
        try:
            return run_with_timeout(func, self._timeout, *args)
        except concurrent.futures.TimeoutError as exc:
            name = getattr(func, "__name__", "collaborator")
            raise CollaboratorTimeout(f"Failed during AI processing: {name} timed out after {self._timeout:g}s") from exc


def run_with_timeout(func: Callable[..., T], timeout: float, *args: object, **kwargs: object) -> T:
    """Run ``func`` in a worker thread and give up waiting after ``timeout`` seconds."""

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    future = executor.submit(func, *args, **kwargs)
    shutdown_early = False
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        executor.shutdown(wait=False, cancel_futures=True)
        shutdown_early = True
        raise
    finally:
        if not shutdown_early:
            executor.shutdown(wait=True, cancel_futures=True)


def _processing_error(exc: BaseException) -> str:
    message = str(exc).strip() or type(exc).__name__
    return f"Failed during AI processing: {message}"


def build_manager(config: AppConfig) -> LifecycleManager:
    """Wire a manager to the configured store backend and the OpenAI collaborators."""

    client = build_client(config)
    return LifecycleManager(
        build_store(config),
        client,
        client,
        timeout=config.collaborator_timeout,
        events=EventLog(config.event_log_path),
    )
