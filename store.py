"""
Record store backed by SQLModel.

Every method opens its own short session, so a write commits on its own and
never waits on notification delivery. Per-student locks serialize the GPA
read-compute-write of one student without blocking the others.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from errors import DataError, RecordStoreUnavailable
from events import AlertEvent
from gpa import GradeRecord
from models import (
    AcademicStatus, AdvisorTask, AlertRecord, Course, Enrollment, Student,
    RECOMPUTED_STATUSES,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StudentState:
    id: int
    gpa: Optional[float]
    status: AcademicStatus
    advisor_id: Optional[int]
    archived: bool


class RecordStore:
    def __init__(self, engine):
        self.engine = engine
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @contextmanager
    def _session(self):
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as e:
            logger.error(f"Record store unavailable: {str(e)}", exc_info=True)
            raise RecordStoreUnavailable(str(e)) from e

    @contextmanager
    def student_lock(self, student_id: int):
        """Serialize updates to a single student record"""
        with self._locks_guard:
            lock = self._locks.get(student_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[student_id] = lock
        with lock:
            yield

    # ============= STUDENTS =============

    def get_active_student_ids(self) -> List[int]:
        """Snapshot of the ids of every student the batch should recompute"""
        with self._session() as session:
            statement = (
                select(Student.id)
                .where(Student.archived == False)  # noqa: E712
                .where(Student.status.in_(RECOMPUTED_STATUSES))
                .order_by(Student.id)
            )
            return list(session.exec(statement).all())

    def get_active_students(self) -> List[Student]:
        with self._session() as session:
            statement = (
                select(Student)
                .where(Student.archived == False)  # noqa: E712
                .where(Student.status.in_(RECOMPUTED_STATUSES))
                .order_by(Student.id)
            )
            return list(session.exec(statement).all())

    def get_student_state(self, student_id: int) -> StudentState:
        with self._session() as session:
            student = session.get(Student, student_id)
            if not student:
                raise DataError(f"Student {student_id} not found", student_id=student_id)
            return StudentState(
                id=student.id,
                gpa=student.gpa,
                status=student.status,
                advisor_id=student.advisor_id,
                archived=student.archived,
            )

    def update_gpa(self, student_id: int, new_gpa: Optional[float], status: Optional[AcademicStatus] = None):
        with self._session() as session:
            student = session.get(Student, student_id)
            if not student:
                raise DataError(f"Student {student_id} not found", student_id=student_id)
            student.gpa = new_gpa
            if status is not None:
                student.status = status
            student.updated_at = datetime.utcnow()
            session.add(student)
            session.commit()

    # ============= ENROLLMENTS =============

    def get_enrollments(self, student_id: int) -> List[GradeRecord]:
        """Grade records of a student, joined with course credits"""
        with self._session() as session:
            statement = (
                select(Enrollment, Course.credits)
                .join(Course, Enrollment.course_id == Course.id)
                .where(Enrollment.student_id == student_id)
                .order_by(Enrollment.id)
            )
            return [
                GradeRecord(
                    enrollment_id=enrollment.id,
                    status=enrollment.status,
                    grade=enrollment.grade,
                    credits=credits,
                )
                for enrollment, credits in session.exec(statement).all()
            ]

    # ============= ALERTS =============

    def append_alert(self, event: AlertEvent) -> AlertRecord:
        with self._session() as session:
            record = AlertRecord(
                event_id=event.event_id,
                student_id=event.student_id,
                previous_gpa=event.previous_gpa,
                new_gpa=event.new_gpa,
                source=event.source,
                created_at=event.timestamp,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def create_advisor_task(self, event: AlertEvent, subject: str) -> AdvisorTask:
        with self._session() as session:
            student = session.get(Student, event.student_id)
            task = AdvisorTask(
                event_id=event.event_id,
                student_id=event.student_id,
                advisor_id=student.advisor_id if student else None,
                subject=subject,
            )
            session.add(task)
            session.commit()
            session.refresh(task)
            return task
