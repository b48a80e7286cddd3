import threading

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine

from alerting import GpaAlertingService
from batch import BatchScheduler
from database import get_session
from dispatcher import AlertDispatcher
from main import app, get_alerting, get_identity_verifier, get_scheduler
from models import Course, Enrollment, EnrollmentStatus, Student
from notifications import NotificationChannel, PublishResult
from store import RecordStore


class RecordingChannel(NotificationChannel):
    """Channel that keeps every published event"""

    def __init__(self, result=PublishResult.ACK):
        self.result = result
        self.events = []
        self._lock = threading.Lock()

    def publish(self, event):
        with self._lock:
            self.events.append(event)
        return self.result


class StubVerifier:
    def __init__(self):
        self.calls = []

    def verify(self, name, email):
        self.calls.append(email)
        return True


# File-backed SQLite so dispatcher and batch threads get their own connections
@pytest.fixture(name="engine")
def engine_fixture(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="store")
def store_fixture(engine):
    return RecordStore(engine)


@pytest.fixture(name="channel")
def channel_fixture():
    return RecordingChannel()


@pytest.fixture(name="dispatcher")
def dispatcher_fixture(store, channel):
    dispatcher = AlertDispatcher(store, channel, max_workers=2)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture(name="alerting")
def alerting_fixture(store, dispatcher):
    return GpaAlertingService(store, dispatcher, threshold=2.0)


@pytest.fixture(name="scheduler")
def scheduler_fixture(store, alerting, channel):
    return BatchScheduler(store, alerting, channel=channel, chunk_size=2, chunk_pause=0)


@pytest.fixture(name="verifier")
def verifier_fixture():
    return StubVerifier()


@pytest.fixture(name="client")
def client_fixture(engine, alerting, scheduler, verifier):
    """Create a test client with dependency overrides"""
    def get_session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_alerting] = lambda: alerting
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_identity_verifier] = lambda: verifier
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


# ============= RECORD FACTORIES =============

def make_student(session, name="Ada Lovelace", email=None, **kwargs):
    student = Student(name=name, email=email or f"{name.lower().replace(' ', '.')}@example.com", **kwargs)
    session.add(student)
    session.commit()
    session.refresh(student)
    return student


def make_course(session, code, credits=3, capacity=30):
    course = Course(code=code, title=f"Course {code}", credits=credits, capacity=capacity, instructor="Dr. Smith")
    session.add(course)
    session.commit()
    session.refresh(course)
    return course


def make_enrollment(session, student, course, grade=None, status=None, term="2026-FA"):
    if status is None:
        if grade is None:
            status = EnrollmentStatus.ENROLLED
        elif grade == "F":
            status = EnrollmentStatus.FAILED
        else:
            status = EnrollmentStatus.COMPLETED
    enrollment = Enrollment(student_id=student.id, course_id=course.id, term=term, grade=grade, status=status)
    session.add(enrollment)
    session.commit()
    session.refresh(enrollment)
    return enrollment
