import datetime as dt

import pytest

from core.config import Settings
from core.security import Actor, Role
from domain.models import ApplicationType
from domain.value_objects import FileMetadata
from services.notifications.batcher import make_batcher
from services.persistence.models import JobCategory, Notification, Staff
from services.persistence.postgres import init_db, make_engine, make_session_factory
from services.review.runtime import ReviewEngine, Runtime

OFFICE = "office-worker"  # no orientation required
FOOD = "food-handler"  # orientation required


class FakeStorage:
    """In-memory blob metadata; ``fail`` makes every lookup raise it."""

    def __init__(self):
        self.files = {}
        self.fail = None

    def add(self, file_ref, size=2048, content_type="application/pdf"):
        self.files[file_ref] = FileMetadata(file_ref, size, content_type)
        return file_ref

    def stat(self, file_ref):
        if self.fail is not None:
            raise self.fail
        if file_ref not in self.files:
            raise FileNotFoundError(file_ref)
        return self.files[file_ref]


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += dt.timedelta(**kw)


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        STORAGE_TIMEOUT_S=0.5,
        MAX_DOCUMENT_ATTEMPTS=3,
        MAX_PAYMENT_ATTEMPTS=3,
        WARNING_THRESHOLD=2,
        AUTO_LOCK_ON_MAX_ATTEMPTS=True,
        GRACE_PERIOD_HOURS=72,
        ORIENTATION_MIN_DURATION_MIN=20,
    )


@pytest.fixture
def session_factory(settings):
    db = make_engine(settings.DATABASE_URL)
    init_db(db)
    factory = make_session_factory(db)
    with factory() as s:
        s.add_all(
            [
                JobCategory(id=OFFICE, name="Office Worker", require_orientation=False),
                JobCategory(id=FOOD, name="Food Handler", require_orientation=True),
                Staff(id="admin-1", full_name="Ana Admin", role=Role.ADMIN.value, managed_categories=[]),
                Staff(id="admin-2", full_name="Ben Admin", role=Role.ADMIN.value, managed_categories=[OFFICE]),
                Staff(id="admin-food", full_name="Cora Admin", role=Role.ADMIN.value, managed_categories=[FOOD]),
                Staff(id="inspector-1", full_name="Ivan Inspector", role=Role.INSPECTOR.value),
            ]
        )
        s.commit()
    yield factory
    db.dispose()


@pytest.fixture
def storage():
    fs = FakeStorage()
    for ref in ("ids/front.pdf", "ids/front-v2.pdf", "ids/front-v3.pdf", "xray/chest.png", "xray/chest-v2.png"):
        fs.add(ref)
    for ref in ("receipts/r1.jpg", "receipts/r2.jpg", "receipts/r3.jpg", "receipts/r4.jpg"):
        fs.add(ref, content_type="image/jpeg")
    return fs


@pytest.fixture
def clock():
    return Clock(dt.datetime(2025, 3, 10, 9, 0))


@pytest.fixture
def runtime(session_factory, settings, storage, clock):
    return Runtime(session_factory=session_factory, settings=settings, storage=storage, clock=clock)


@pytest.fixture
def engine(runtime):
    return ReviewEngine(runtime, batcher=make_batcher(runtime, autostart=False))


@pytest.fixture
def applicant():
    return Actor("applicant-1", Role.APPLICANT)


@pytest.fixture
def other_applicant():
    return Actor("applicant-2", Role.APPLICANT)


@pytest.fixture
def admin():
    return Actor("admin-1", Role.ADMIN)


@pytest.fixture
def inspector():
    return Actor("inspector-1", Role.INSPECTOR)


@pytest.fixture
def system_admin():
    return Actor("root-1", Role.SYSTEM_ADMIN)


def new_application(engine, applicant, category=OFFICE):
    res = engine.applications.create(category, applicant, ApplicationType.NEW)
    assert res.ok, res
    return res.value.id


def upload(engine, app_id, applicant, doc_type, file_ref):
    res = engine.documents.submit(app_id, doc_type, file_ref, file_ref.split("/")[-1], applicant)
    assert res.ok, res
    return res.value.id


def app_status(engine, app_id, actor):
    res = engine.applications.get(app_id, actor)
    assert res.ok, res
    return res.value.status


def notifications_for(session_factory, recipient_id, type=None):
    with session_factory() as s:
        q = s.query(Notification).filter(Notification.recipient_id == recipient_id)
        if type is not None:
            q = q.filter(Notification.type == type)
        return q.order_by(Notification.created_at).all()
