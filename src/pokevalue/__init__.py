"""Trading card identification and valuation service."""

from .config import AppConfig
from .lifecycle import LifecycleManager
from .models import Submission, SubmissionStatus
from .query import SubmissionQuery
from .schemas import CardIdentity, MarketplaceEstimate
from .store import InMemorySubmissionStore, SqliteSubmissionStore, SubmissionStore

__all__ = [
    "AppConfig",
    "LifecycleManager",
    "Submission",
    "SubmissionStatus",
    "SubmissionQuery",
    "CardIdentity",
    "MarketplaceEstimate",
    "InMemorySubmissionStore",
    "SqliteSubmissionStore",
    "SubmissionStore",
]
