"""
Enrollment validation rules and the approval state machine.

All functions work on the caller's session and never commit, so a rule
violation leaves nothing behind once the caller rolls back.

Approval flow:

    Submitted -> Approved                      (student in good standing)
    Submitted -> PendingApproval -> Approved   (student on probation)
                                 -> Rejected
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlmodel import Session, select

from errors import EnrollmentRuleViolation, InvalidTransition
from gpa import is_valid_grade
from models import (
    AcademicStatus, Course, Enrollment, EnrollmentRequest, EnrollmentStatus,
    RequestState, Student,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    RequestState.SUBMITTED: {RequestState.PENDING_APPROVAL, RequestState.APPROVED, RequestState.REJECTED},
    RequestState.PENDING_APPROVAL: {RequestState.APPROVED, RequestState.REJECTED},
    RequestState.APPROVED: set(),
    RequestState.REJECTED: set(),
}

OPEN_REQUEST_STATES = (RequestState.SUBMITTED, RequestState.PENDING_APPROVAL)


# ============= VALIDATION =============

def validate_student_can_enroll(student: Student):
    if student.archived:
        raise EnrollmentRuleViolation(f"Student {student.id} is archived")
    if student.status in (AcademicStatus.SUSPENDED, AcademicStatus.GRADUATED):
        raise EnrollmentRuleViolation(f"Student {student.id} is {student.status.value} and cannot enroll")


def validate_not_duplicate(session: Session, student_id: int, course_id: int, term: str):
    existing = session.exec(
        select(Enrollment).where(
            Enrollment.student_id == student_id,
            Enrollment.course_id == course_id,
            Enrollment.term == term,
        )
    ).first()
    if existing:
        raise EnrollmentRuleViolation("Student already enrolled in this course for this term")

    open_request = session.exec(
        select(EnrollmentRequest).where(
            EnrollmentRequest.student_id == student_id,
            EnrollmentRequest.course_id == course_id,
            EnrollmentRequest.term == term,
            EnrollmentRequest.state.in_(OPEN_REQUEST_STATES),
        )
    ).first()
    if open_request:
        raise EnrollmentRuleViolation(f"Enrollment request {open_request.id} is already open for this course")


def count_active_enrollments(session: Session, course_id: int) -> int:
    """Enrollments holding a seat: everything except withdrawals"""
    statement = (
        select(func.count())
        .select_from(Enrollment)
        .where(Enrollment.course_id == course_id)
        .where(Enrollment.status != EnrollmentStatus.WITHDRAWN)
    )
    return session.exec(statement).one()


def validate_capacity(session: Session, course: Course):
    if count_active_enrollments(session, course.id) >= course.capacity:
        raise EnrollmentRuleViolation(f"Course {course.code} is full", status_code=409)


def refresh_enrollment_count(session: Session, course_id: int) -> Course:
    """Recompute the derived seat count of a course inside the caller's transaction"""
    course = session.get(Course, course_id)
    course.enrolled_count = count_active_enrollments(session, course_id)
    course.updated_at = datetime.utcnow()
    session.add(course)
    return course


def requires_approval(student: Student) -> bool:
    return student.status == AcademicStatus.PROBATION


# ============= APPROVAL STATE MACHINE =============

def transition(request: EnrollmentRequest, new_state: RequestState, reason: Optional[str] = None):
    if new_state not in ALLOWED_TRANSITIONS[request.state]:
        raise InvalidTransition(
            f"Enrollment request {request.id} cannot move from {request.state.value} to {new_state.value}"
        )
    logger.info(f"Enrollment request {request.id}: {request.state.value} -> {new_state.value}")
    request.state = new_state
    request.decision_reason = reason
    request.updated_at = datetime.utcnow()


def submit_request(session: Session, student: Student, course: Course, term: str) -> EnrollmentRequest:
    validate_student_can_enroll(student)
    validate_not_duplicate(session, student.id, course.id, term)

    request = EnrollmentRequest(student_id=student.id, course_id=course.id, term=term)
    session.add(request)
    session.flush()

    if requires_approval(student):
        transition(request, RequestState.PENDING_APPROVAL, "Advisor approval required for students on probation")
    else:
        approve_request(session, request, reason="Approved automatically")
    return request


def approve_request(session: Session, request: EnrollmentRequest, reason: Optional[str] = None) -> Enrollment:
    if RequestState.APPROVED not in ALLOWED_TRANSITIONS[request.state]:
        raise InvalidTransition(f"Enrollment request {request.id} is already {request.state.value}")

    student = session.get(Student, request.student_id)
    course = session.get(Course, request.course_id)
    validate_student_can_enroll(student)
    validate_capacity(session, course)

    enrollment = Enrollment(student_id=request.student_id, course_id=request.course_id, term=request.term)
    session.add(enrollment)
    session.flush()

    transition(request, RequestState.APPROVED, reason)
    request.enrollment_id = enrollment.id
    session.add(request)
    refresh_enrollment_count(session, course.id)
    return enrollment


def reject_request(request: EnrollmentRequest, reason: Optional[str] = None):
    transition(request, RequestState.REJECTED, reason or "Rejected by advisor")


# ============= GRADING =============

def apply_grade(enrollment: Enrollment, grade: str, correction: bool = False):
    """Set the grade at term close. Changing an existing grade needs ``correction``."""
    if not is_valid_grade(grade):
        raise EnrollmentRuleViolation(f"Unknown grade: {grade}", status_code=422)
    if enrollment.status == EnrollmentStatus.WITHDRAWN:
        raise EnrollmentRuleViolation("Cannot grade a withdrawn enrollment")
    if enrollment.grade is not None and not correction:
        raise EnrollmentRuleViolation(
            "Grade already recorded; submit an administrative correction to change it", status_code=409
        )

    grade = grade.strip().upper()
    if enrollment.grade is not None:
        logger.info(f"Correcting grade of enrollment {enrollment.id}: {enrollment.grade} -> {grade}")
    enrollment.grade = grade
    enrollment.status = EnrollmentStatus.FAILED if grade == "F" else EnrollmentStatus.COMPLETED
    enrollment.graded_at = datetime.utcnow()


def withdraw(enrollment: Enrollment):
    if enrollment.status != EnrollmentStatus.ENROLLED:
        raise EnrollmentRuleViolation(f"Cannot withdraw an enrollment that is {enrollment.status.value}")
    enrollment.status = EnrollmentStatus.WITHDRAWN
