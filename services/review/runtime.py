from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, ContextManager, Optional

from sqlalchemy.orm import Session, sessionmaker

from core.config import Settings, settings as default_settings
from core.errors import ErrorKind
from domain.value_objects import FileMetadata
from services.notifications.batcher import RejectionNotificationBatcher, make_batcher
from services.notifications.sink import AuditSink, NotificationSink
from services.persistence.models import utcnow
from services.persistence.postgres import make_engine, make_session_factory, transaction
from services.policy.categories import CategoryPolicyLookup
from services.review.aggregator import ApplicationStatusAggregator
from services.review.applications import ApplicationService
from services.review.documents import DocumentReviewMachine
from services.review.finalizer import PermanentRejectionFinalizer
from services.review.ledger import AttemptLedger
from services.review.orientation import OrientationTracker
from services.review.payments import PaymentReviewMachine
from services.storage.blob import BlobStorage, LocalBlobStorage, fetch_metadata

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Shared collaborators for every state machine."""

    session_factory: sessionmaker
    settings: Settings
    storage: BlobStorage
    ledger: AttemptLedger = field(default_factory=AttemptLedger)
    notifications: NotificationSink = field(default_factory=NotificationSink)
    audit: AuditSink = field(default_factory=AuditSink)
    policies: CategoryPolicyLookup = field(default_factory=CategoryPolicyLookup)
    clock: Callable[[], datetime] = utcnow

    def transaction(self, conflict: ErrorKind = ErrorKind.ALREADY_REVIEWED) -> ContextManager[Session]:
        return transaction(self.session_factory, conflict)

    def file_metadata(self, file_ref: str) -> FileMetadata:
        return fetch_metadata(self.storage, file_ref, self.settings.STORAGE_TIMEOUT_S)


def build_runtime(cfg: Optional[Settings] = None) -> Runtime:
    cfg = cfg or default_settings
    engine = make_engine(cfg.DATABASE_URL)
    return Runtime(
        session_factory=make_session_factory(engine),
        settings=cfg,
        storage=LocalBlobStorage(cfg.STORAGE_ROOT),
    )


class ReviewEngine:
    """The state machines wired around one runtime."""

    def __init__(self, runtime: Runtime, batcher: Optional[RejectionNotificationBatcher] = None):
        self.runtime = runtime
        self.batcher = batcher or make_batcher(runtime)
        self.aggregator = ApplicationStatusAggregator(runtime)
        self.finalizer = PermanentRejectionFinalizer(runtime, self.aggregator)
        self.applications = ApplicationService(runtime, self.aggregator, self.finalizer)
        self.documents = DocumentReviewMachine(runtime, self.aggregator, self.finalizer, self.batcher)
        self.payments = PaymentReviewMachine(runtime, self.aggregator, self.finalizer)
        self.orientation = OrientationTracker(runtime, self.aggregator)

    def shutdown(self) -> None:
        sent = self.batcher.drain()
        if sent:
            logger.info("flushed %d pending document notifications on shutdown", sent)
