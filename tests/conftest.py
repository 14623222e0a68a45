import pytest
from fastapi.testclient import TestClient

from accounts import AccountService
from authorization import Caller
from consistency import ConsistencyEngine
from database import MemoryDocumentStore
from grading import GradingEngine
from records import RecordsService
from repository import Repository
from schemas import USERS
from settings import Settings

ADMIN = Caller(uid="admin1", role="Admin", email="admin@school.test")
TEACHER_1 = Caller(uid="t1", role="Teacher", email="t1@school.test")
TEACHER_2 = Caller(uid="t2", role="Teacher", email="t2@school.test")
SECRETARY = Caller(uid="sec1", role="Secretary", email="sec@school.test")
PENDING = Caller(uid="new1", role=None, email="new@school.test")


@pytest.fixture()
def store():
    store = MemoryDocumentStore(lock_timeout=1.0)
    repo = Repository(store)
    for caller in (ADMIN, TEACHER_1, TEACHER_2, SECRETARY, PENDING):
        repo.create(USERS, {"email": caller.email, "role": caller.role}, doc_id=caller.uid)
    return store


@pytest.fixture()
def repo(store):
    return Repository(store)


@pytest.fixture()
def engine(store):
    return ConsistencyEngine(store, retries=2, backoff=0)


@pytest.fixture()
def grading(store):
    return GradingEngine(store, pass_mark=40, retries=2, backoff=0)


@pytest.fixture()
def accounts(store):
    return AccountService(store, retries=2, backoff=0)


@pytest.fixture()
def records(store):
    return RecordsService(store, retries=2, backoff=0)


@pytest.fixture()
def school(engine):
    """Two courses (Math taught by t1, English by t2), class C1 with two students and class C2."""
    math = engine.create_course(ADMIN, {"name": "Math", "code": "MATH101", "teacher_id": "t1"})
    english = engine.create_course(ADMIN, {"name": "English", "code": "ENG101", "teacher_id": "t2"})
    c1 = engine.create_class(SECRETARY, {"name": "Grade 10A", "academic_year": "2024-2025"})
    c2 = engine.create_class(SECRETARY, {"name": "Grade 10B", "academic_year": "2024-2025"})
    s1 = engine.create_student(SECRETARY, {"full_name": "Ada Obi", "class_id": c1.id})
    s2 = engine.create_student(SECRETARY, {"full_name": "Ben Uche", "class_id": c1.id})
    return {"math": math, "english": english, "c1": c1, "c2": c2, "s1": s1, "s2": s2}


@pytest.fixture()
def client(store):
    from main import app, build_services, get_services

    config = Settings(store_backend="memory", pass_mark=40, retry_backoff_seconds=0)
    services = build_services(config, store=store)
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(caller):
    headers = {"X-User-Id": caller.uid}
    if caller.email:
        headers["X-User-Email"] = caller.email
    return headers


def run_after_read(monkeypatch, store, collection, doc_id, action):
    """Run action once, right after the next store read of (collection, doc_id)."""
    original = store.read
    pending = [action]

    def read(coll, did):
        doc = original(coll, did)
        if pending and (coll, did) == (collection, doc_id):
            pending.pop()()
        return doc

    monkeypatch.setattr(store, "read", read)
