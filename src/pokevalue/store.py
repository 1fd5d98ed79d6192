"""Durable keyed storage of submissions and their processing state."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from pydantic import ValidationError

from .config import AppConfig
from .errors import InvalidTransition, StoreError, SubmissionExists, SubmissionNotFound
from .models import Submission, SubmissionStatus, isoformat, parse_timestamp, utcnow
from .schemas import CardIdentity, MarketplaceEstimate

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]

TERMINAL_STATUSES = tuple(status for status in SubmissionStatus if status.is_terminal)


class SubmissionStore(ABC):
    """Keyed record of submissions.

    Every write refreshes ``updated_at`` and is checked against the lifecycle
    state diagram, so a write can never move a submission out of a terminal
    state or skip a phase. Writes to an unknown id raise ``SubmissionNotFound``.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock

    @abstractmethod
    def create(self, submission_id: str, image_reference: str) -> Submission:
        """Insert a new submission in ``PROCESSING_IDENTIFICATION``."""

    @abstractmethod
    def record_identification(
        self,
        submission_id: str,
        identity: CardIdentity,
        new_status: SubmissionStatus = SubmissionStatus.PROCESSING_VALUATION,
    ) -> Submission:
        """Store the card identity and clear any previous error detail."""

    @abstractmethod
    def record_valuation(
        self,
        submission_id: str,
        valuation: Sequence[MarketplaceEstimate],
        new_status: SubmissionStatus = SubmissionStatus.COMPLETED,
    ) -> Submission:
        """Store the marketplace estimates (possibly none) and clear any previous error detail."""

    @abstractmethod
    def record_error(self, submission_id: str, new_status: SubmissionStatus, error_detail: str) -> Submission:
        """Move to an error status; identity and valuation already written are kept."""

    @abstractmethod
    def get(self, submission_id: str) -> Optional[Submission]:
        """Return the current submission or None when the id is unknown."""

    @abstractmethod
    def purge_expired(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """Delete terminal submissions not updated within ``max_age``; return how many."""

    @staticmethod
    def _check_write(
        submission_id: str,
        current: SubmissionStatus,
        new_status: SubmissionStatus,
        expected: Sequence[SubmissionStatus],
    ) -> None:
        if new_status not in expected:
            raise InvalidTransition(
                f"{new_status.value} cannot be recorded by this write for submission {submission_id}"
            )
        if not current.can_transition_to(new_status):
            raise InvalidTransition(
                f"Submission {submission_id} cannot move from {current.value} to {new_status.value}"
            )


_ERROR_STATUSES = (SubmissionStatus.ERROR_IDENTIFICATION, SubmissionStatus.ERROR_VALUATION)


def _require_detail(error_detail: str) -> str:
    detail = (error_detail or "").strip()
    if not detail:
        raise ValueError("error_detail must be a non-empty description")
    return detail


class InMemorySubmissionStore(SubmissionStore):
    """Process-local store used by tests and dry runs."""

    def __init__(self, clock: Clock = utcnow) -> None:
        super().__init__(clock)
        self._rows: Dict[str, Submission] = {}
        self._lock = threading.Lock()

    def create(self, submission_id: str, image_reference: str) -> Submission:
        now = self._clock()
        with self._lock:
            if submission_id in self._rows:
                raise SubmissionExists(f"Submission {submission_id} already exists")
            row = Submission(
                id=submission_id,
                image_reference=image_reference,
                status=SubmissionStatus.PROCESSING_IDENTIFICATION,
                created_at=now,
                updated_at=now,
            )
            self._rows[submission_id] = row
            return replace(row)

    def record_identification(
        self,
        submission_id: str,
        identity: CardIdentity,
        new_status: SubmissionStatus = SubmissionStatus.PROCESSING_VALUATION,
    ) -> Submission:
        return self._update(
            submission_id,
            new_status,
            (SubmissionStatus.PROCESSING_VALUATION,),
            card_identity=identity,
            error_detail=None,
        )

    def record_valuation(
        self,
        submission_id: str,
        valuation: Sequence[MarketplaceEstimate],
        new_status: SubmissionStatus = SubmissionStatus.COMPLETED,
    ) -> Submission:
        return self._update(
            submission_id,
            new_status,
            (SubmissionStatus.COMPLETED,),
            valuation=list(valuation),
            error_detail=None,
        )

    def record_error(self, submission_id: str, new_status: SubmissionStatus, error_detail: str) -> Submission:
        return self._update(
            submission_id,
            new_status,
            _ERROR_STATUSES,
            error_detail=_require_detail(error_detail),
        )

    def get(self, submission_id: str) -> Optional[Submission]:
        with self._lock:
            row = self._rows.get(submission_id)
            if row is None:
                return None
            return _copy(row)

    def purge_expired(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - max_age
        with self._lock:
            expired = [
                key
                for key, row in self._rows.items()
                if row.status.is_terminal and row.updated_at < cutoff
            ]
            for key in expired:
                del self._rows[key]
        return len(expired)

    def _update(
        self,
        submission_id: str,
        new_status: SubmissionStatus,
        expected: Sequence[SubmissionStatus],
        **changes: object,
    ) -> Submission:
        with self._lock:
            row = self._rows.get(submission_id)
            if row is None:
                raise SubmissionNotFound(submission_id)
            self._check_write(submission_id, row.status, new_status, expected)
            updated = replace(row, status=new_status, updated_at=self._clock(), **changes)
            self._rows[submission_id] = updated
            return _copy(updated)


def _copy(row: Submission) -> Submission:
    valuation = list(row.valuation) if row.valuation is not None else None
    return replace(row, valuation=valuation)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS card_submissions (
    id TEXT PRIMARY KEY,
    imageDataUri TEXT NOT NULL,
    cardName TEXT,
    cardNumber TEXT,
    deckIdLetter TEXT,
    illustratorName TEXT,
    estimationsJson TEXT,
    status TEXT NOT NULL,
    errorMessage TEXT,
    createdAt TEXT NOT NULL,
    updatedAt TEXT NOT NULL
)
"""


class SqliteSubmissionStore(SubmissionStore):
    """One ``card_submissions`` row per submission in a SQLite file.

    Each operation opens its own connection. Updates are conditional on the
    status read in the same transaction, so concurrent writers for one id
    cannot both advance it.
    """

    def __init__(self, db_path: Path, clock: Clock = utcnow, timeout: float = 10.0) -> None:
        super().__init__(clock)
        self._db_path = Path(db_path)
        self._timeout = timeout
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(_SCHEMA)

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            con = sqlite3.connect(self._db_path, timeout=self._timeout)
        except sqlite3.Error as exc:
            raise StoreError(f"Could not open {self._db_path}: {exc}") from exc
        con.row_factory = sqlite3.Row
        try:
            yield con
            con.commit()
        except sqlite3.Error as exc:
            con.rollback()
            raise StoreError(str(exc)) from exc
        except BaseException:
            con.rollback()
            raise
        finally:
            con.close()

    def create(self, submission_id: str, image_reference: str) -> Submission:
        now = isoformat(self._clock())
        try:
            with self._connect() as con:
                con.execute(
                    "INSERT INTO card_submissions (id, imageDataUri, status, createdAt, updatedAt) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        submission_id,
                        image_reference,
                        SubmissionStatus.PROCESSING_IDENTIFICATION.value,
                        now,
                        now,
                    ),
                )
        except StoreError as exc:
            if isinstance(exc.__cause__, sqlite3.IntegrityError):
                raise SubmissionExists(f"Submission {submission_id} already exists") from exc
            raise
        return self._require(submission_id)

    def record_identification(
        self,
        submission_id: str,
        identity: CardIdentity,
        new_status: SubmissionStatus = SubmissionStatus.PROCESSING_VALUATION,
    ) -> Submission:
        return self._update(
            submission_id,
            new_status,
            (SubmissionStatus.PROCESSING_VALUATION,),
            "cardName = ?, cardNumber = ?, deckIdLetter = ?, illustratorName = ?, errorMessage = NULL",
            (identity.name, identity.number, identity.deck_letter, identity.illustrator),
        )

    def record_valuation(
        self,
        submission_id: str,
        valuation: Sequence[MarketplaceEstimate],
        new_status: SubmissionStatus = SubmissionStatus.COMPLETED,
    ) -> Submission:
        blob = json.dumps([estimate.as_payload() for estimate in valuation])
        return self._update(
            submission_id,
            new_status,
            (SubmissionStatus.COMPLETED,),
            "estimationsJson = ?, errorMessage = NULL",
            (blob,),
        )

    def record_error(self, submission_id: str, new_status: SubmissionStatus, error_detail: str) -> Submission:
        return self._update(
            submission_id,
            new_status,
            _ERROR_STATUSES,
            "errorMessage = ?",
            (_require_detail(error_detail),),
        )

    def get(self, submission_id: str) -> Optional[Submission]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM card_submissions WHERE id = ?", (submission_id,)).fetchone()
        if row is None:
            return None
        return _row_to_submission(row)

    def purge_expired(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = isoformat((now or self._clock()) - max_age)
        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        with self._connect() as con:
            cur = con.execute(
                f"DELETE FROM card_submissions WHERE status IN ({placeholders}) AND updatedAt < ?",
                (*(status.value for status in TERMINAL_STATUSES), cutoff),
            )
            count = cur.rowcount
        if count:
            LOGGER.info("Purged %d expired submission(s) last updated before %s", count, cutoff)
        return count

    def _update(
        self,
        submission_id: str,
        new_status: SubmissionStatus,
        expected: Sequence[SubmissionStatus],
        assignments: str,
        params: Sequence[object],
    ) -> Submission:
        with self._connect() as con:
            row = con.execute("SELECT status FROM card_submissions WHERE id = ?", (submission_id,)).fetchone()
            if row is None:
                raise SubmissionNotFound(submission_id)
            current = SubmissionStatus(row["status"])
            self._check_write(submission_id, current, new_status, expected)
            cur = con.execute(
                f"UPDATE card_submissions SET {assignments}, status = ?, updatedAt = ? "
                "WHERE id = ? AND status = ?",
                (*params, new_status.value, isoformat(self._clock()), submission_id, current.value),
            )
            if cur.rowcount != 1:
                raise InvalidTransition(f"Submission {submission_id} changed status during the update")
        return self._require(submission_id)

    def _require(self, submission_id: str) -> Submission:
        submission = self.get(submission_id)
        if submission is None:
            raise SubmissionNotFound(submission_id)
        return submission


def _row_to_submission(row: sqlite3.Row) -> Submission:
    identity = None
    if row["cardName"] is not None and row["cardNumber"] is not None:
        identity = CardIdentity(
            name=row["cardName"],
            number=row["cardNumber"],
            deck_letter=row["deckIdLetter"],
            illustrator=row["illustratorName"],
        )
    return Submission(
        id=row["id"],
        image_reference=row["imageDataUri"],
        status=SubmissionStatus(row["status"]),
        created_at=parse_timestamp(row["createdAt"]),
        updated_at=parse_timestamp(row["updatedAt"]),
        card_identity=identity,
        valuation=_decode_valuation(row["id"], row["estimationsJson"]),
        error_detail=row["errorMessage"],
    )


def _decode_valuation(submission_id: str, blob: Optional[str]) -> Optional[List[MarketplaceEstimate]]:
    if blob is None:
        return None
    try:
        entries = json.loads(blob)
        if not isinstance(entries, list):
            raise ValueError("stored estimations are not a list")
        return [MarketplaceEstimate.model_validate(entry) for entry in entries]
    except (ValueError, ValidationError):
        LOGGER.exception("Stored estimations for submission %s could not be parsed", submission_id)
        return None


def build_store(config: AppConfig, clock: Clock = utcnow) -> SubmissionStore:
    if config.store_backend == "memory":
        return InMemorySubmissionStore(clock=clock)
    return SqliteSubmissionStore(config.database_path, clock=clock)
