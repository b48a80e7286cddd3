from pydantic import BaseModel, EmailStr, Field
from typing import List, Optional
from datetime import datetime

from models import AcademicStatus, EnrollmentStatus, RequestState


# Student Schemas
class StudentBase(BaseModel):
    """Base schema for student with common attributes"""
    name: str = Field(..., min_length=1, max_length=100, description="Student's full name")
    email: EmailStr = Field(..., description="Student's email address")
    advisor_id: Optional[int] = Field(None, description="Faculty id of the student's advisor")


class StudentCreate(StudentBase):
    """Schema for admitting a new student"""
    pass


class StudentUpdate(BaseModel):
    """Schema for updating a student (all fields optional)"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    advisor_id: Optional[int] = None
    status: Optional[AcademicStatus] = None


class StudentResponse(StudentBase):
    """Schema for student response"""
    id: int
    gpa: Optional[float]
    status: AcademicStatus
    archived: bool
    identity_verified: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RecomputeResponse(BaseModel):
    """Outcome of a GPA recomputation"""
    student_id: int
    previous_gpa: Optional[float]
    new_gpa: Optional[float]
    crossing: str
    status: AcademicStatus
    alert_id: Optional[str] = None


# Course Schemas
class CourseBase(BaseModel):
    """Base schema for course with common attributes"""
    code: str = Field(..., min_length=1, max_length=20, description="Course code e.g., CS101")
    title: str = Field(..., min_length=1, max_length=200, description="Course title")
    credits: int = Field(..., ge=0, le=10, description="Number of credits")
    capacity: int = Field(..., ge=1, description="Maximum number of enrolled students")
    instructor: str = Field(..., min_length=1, max_length=100, description="Instructor name")


class CourseCreate(CourseBase):
    """Schema for creating a new course"""
    pass


class CourseUpdate(BaseModel):
    """Schema for updating a course (all fields optional)"""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    credits: Optional[int] = Field(None, ge=0, le=10)
    capacity: Optional[int] = Field(None, ge=1)
    instructor: Optional[str] = Field(None, min_length=1, max_length=100)


class CourseResponse(CourseBase):
    """Schema for course response"""
    id: int
    enrolled_count: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Enrollment Request Schemas
class EnrollmentRequestCreate(BaseModel):
    """Schema for requesting enrollment in a course"""
    student_id: int = Field(..., description="Student ID")
    course_id: int = Field(..., description="Course ID")
    term: str = Field(..., min_length=1, max_length=20, description="Academic term e.g., 2026-FA")


class EnrollmentDecision(BaseModel):
    """Schema for approving or rejecting a request"""
    reason: Optional[str] = Field(None, max_length=500)


class EnrollmentRequestResponse(EnrollmentRequestCreate):
    """Schema for enrollment request response"""
    id: int
    state: RequestState
    decision_reason: Optional[str]
    enrollment_id: Optional[int]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Enrollment Schemas
class GradeUpdate(BaseModel):
    """Schema for recording a grade"""
    grade: str = Field(..., min_length=1, max_length=2, description="Grade (e.g., A, B+, C)")
    correction: bool = Field(False, description="Administrative correction of an existing grade")


class EnrollmentResponse(BaseModel):
    """Schema for enrollment response"""
    id: int
    student_id: int
    course_id: int
    term: str
    status: EnrollmentStatus
    grade: Optional[str]
    graded_at: Optional[datetime]
    enrollment_date: datetime

    class Config:
        from_attributes = True


class GradedEnrollmentResponse(BaseModel):
    """Enrollment after a grade change, with the resulting GPA"""
    enrollment: EnrollmentResponse
    gpa: Optional[RecomputeResponse]


# Alert Schemas
class AlertResponse(BaseModel):
    """Schema for a logged low GPA alert"""
    id: int
    event_id: str
    student_id: int
    previous_gpa: Optional[float]
    new_gpa: float
    source: str
    created_at: datetime

    class Config:
        from_attributes = True


# Batch Schemas
class StudentFailureResponse(BaseModel):
    student_id: int
    stage: str
    error: str
    timestamp: datetime


class BatchResultResponse(BaseModel):
    run_id: str
    state: str
    started_at: datetime
    finished_at: Optional[datetime]
    snapshot_size: int
    processed: int
    alerts: int
    cancelled: bool
    error: Optional[str]
    failures: List[StudentFailureResponse]


class BatchStatusResponse(BaseModel):
    state: str
    last_result: Optional[BatchResultResponse]
