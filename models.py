from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from typing import Optional
from datetime import datetime
from enum import Enum


class AcademicStatus(str, Enum):
    ACTIVE = "Active"
    PROBATION = "Probation"
    SUSPENDED = "Suspended"
    GRADUATED = "Graduated"


class EnrollmentStatus(str, Enum):
    ENROLLED = "Enrolled"
    COMPLETED = "Completed"
    WITHDRAWN = "Withdrawn"
    FAILED = "Failed"


class RequestState(str, Enum):
    SUBMITTED = "Submitted"
    PENDING_APPROVAL = "PendingApproval"
    APPROVED = "Approved"
    REJECTED = "Rejected"


# Statuses whose students are walked by the recomputation batch
RECOMPUTED_STATUSES = (AcademicStatus.ACTIVE, AcademicStatus.PROBATION)
GRADED_STATUSES = (EnrollmentStatus.COMPLETED, EnrollmentStatus.FAILED)


class Student(SQLModel, table=True):
    """Student model for database"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, min_length=1, max_length=100)
    email: str = Field(unique=True, index=True)
    gpa: Optional[float] = Field(default=None, ge=0.0, le=4.0)
    status: AcademicStatus = Field(default=AcademicStatus.ACTIVE, index=True)
    advisor_id: Optional[int] = Field(default=None)
    archived: bool = Field(default=False, index=True)
    identity_verified: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Course(SQLModel, table=True):
    """Course model for database"""
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(unique=True, index=True, min_length=1, max_length=20)
    title: str = Field(index=True, min_length=1, max_length=200)
    credits: int = Field(ge=0, le=10)
    capacity: int = Field(ge=1)
    enrolled_count: int = Field(default=0, ge=0)
    instructor: str = Field(min_length=1, max_length=100)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Enrollment(SQLModel, table=True):
    """Enrollment model linking students and courses for one term"""
    __table_args__ = (UniqueConstraint("student_id", "course_id", "term"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    course_id: int = Field(foreign_key="course.id", index=True)
    term: str = Field(max_length=20)
    status: EnrollmentStatus = Field(default=EnrollmentStatus.ENROLLED)
    grade: Optional[str] = Field(default=None, max_length=2)
    graded_at: Optional[datetime] = Field(default=None)
    enrollment_date: datetime = Field(default_factory=datetime.utcnow)


class EnrollmentRequest(SQLModel, table=True):
    """A request to enroll, tracked through the approval state machine"""
    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    course_id: int = Field(foreign_key="course.id")
    term: str = Field(max_length=20)
    state: RequestState = Field(default=RequestState.SUBMITTED)
    decision_reason: Optional[str] = Field(default=None, max_length=500)
    enrollment_id: Optional[int] = Field(default=None, foreign_key="enrollment.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AlertRecord(SQLModel, table=True):
    """Append-only log of low GPA alerts. Rows are never updated."""
    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True, index=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    previous_gpa: Optional[float] = None
    new_gpa: float
    source: str = Field(max_length=20)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AdvisorTask(SQLModel, table=True):
    """Follow-up task raised for a student's advisor"""
    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(index=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    advisor_id: Optional[int] = Field(default=None)
    subject: str = Field(max_length=200)
    created_at: datetime = Field(default_factory=datetime.utcnow)
