from fastapi import FastAPI, HTTPException, Depends, status, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, select
from typing import List, Optional
from datetime import datetime
import logging
import sys
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

import config
from alerting import GpaAlertingService, RecomputeResult
from batch import BatchResult, BatchScheduler
from database import create_db_and_tables, engine, get_session
from dispatcher import AlertDispatcher
from enrollment_rules import (
    apply_grade, approve_request, refresh_enrollment_count, reject_request,
    submit_request, withdraw,
)
from errors import (
    DataError, EnrollmentRuleViolation, IdentityVerificationError, RecordStoreUnavailable,
)
from identity import IdentityVerifier
from models import AlertRecord, Course, Enrollment, EnrollmentRequest, GRADED_STATUSES, Student
from notifications import build_channel
from schemas import (
    StudentCreate, StudentUpdate, StudentResponse, RecomputeResponse,
    CourseCreate, CourseUpdate, CourseResponse,
    EnrollmentRequestCreate, EnrollmentRequestResponse, EnrollmentDecision,
    EnrollmentResponse, GradeUpdate, GradedEnrollmentResponse,
    AlertResponse, BatchResultResponse, BatchStatusResponse, StudentFailureResponse,
)
from store import RecordStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(config.LOG_FILE)
    ]
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Academic Alert API",
    description="Student, course and enrollment records with GPA-triggered academic alerting",
    version="1.0.0"
)

record_store = RecordStore(engine)
notification_channel = build_channel(record_store)
alert_dispatcher = AlertDispatcher(record_store, notification_channel)
alerting_service = GpaAlertingService(record_store, alert_dispatcher)
batch_scheduler = BatchScheduler(record_store, alerting_service, channel=notification_channel)
identity_verifier = IdentityVerifier()


def get_alerting() -> GpaAlertingService:
    return alerting_service


def get_scheduler() -> BatchScheduler:
    return batch_scheduler


def get_identity_verifier() -> IdentityVerifier:
    return identity_verifier


# Global exception handlers
@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    """Handle database-related errors"""
    logger.error(f"Database error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "A database error occurred. Please try again later."}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all uncaught exceptions"""
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred. Please contact support."}
    )


@app.on_event("startup")
def on_startup():
    """Create database tables and start background work"""
    try:
        logger.info("Starting application...")
        create_db_and_tables()
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create database tables: {str(e)}", exc_info=True)
        raise
    if config.BATCH_INTERVAL_SECONDS > 0:
        batch_scheduler.start_timer(config.BATCH_INTERVAL_SECONDS)
    if config.REDELIVERY_INTERVAL_SECONDS > 0:
        alert_dispatcher.start_redelivery(config.REDELIVERY_INTERVAL_SECONDS)


@app.on_event("shutdown")
def on_shutdown():
    """Stop background work and drain pending notifications"""
    logger.info("Shutting down...")
    batch_scheduler.stop_timer()
    batch_scheduler.cancel()
    batch_scheduler.wait(timeout=30)
    alert_dispatcher.flush(timeout=10)
    alert_dispatcher.redeliver()
    alert_dispatcher.shutdown()


@app.get("/", tags=["Root"])
async def read_root():
    """Root endpoint"""
    logger.info("Root endpoint accessed")
    return {
        "message": "Welcome to Academic Alert API",
        "docs": "/docs",
        "redoc": "/redoc"
    }


def to_recompute_response(result: RecomputeResult) -> RecomputeResponse:
    return RecomputeResponse(
        student_id=result.student_id,
        previous_gpa=result.previous_gpa,
        new_gpa=result.new_gpa,
        crossing=result.crossing.value,
        status=result.status,
        alert_id=result.alert.event_id if result.alert else None,
    )


def run_trigger_path(alerting: GpaAlertingService, student_id: int) -> Optional[RecomputeResponse]:
    """Recompute GPA after a committed record write. Never fails the write."""
    try:
        with alerting.dispatcher.operation():
            result = alerting.recompute(student_id, source="trigger")
    except DataError as e:
        logger.error(f"GPA recompute failed for student {student_id} at stage {e.stage}: {str(e)}")
        return None
    except RecordStoreUnavailable as e:
        logger.error(f"GPA recompute skipped for student {student_id}: {str(e)}")
        return None
    return to_recompute_response(result)


# ============= STUDENT ENDPOINTS =============

@app.post("/students/", response_model=StudentResponse, status_code=status.HTTP_201_CREATED, tags=["Students"])
async def create_student(student: StudentCreate, session: Session = Depends(get_session),
                         verifier: IdentityVerifier = Depends(get_identity_verifier)):
    """Admit a new student"""
    try:
        logger.info(f"Admitting student with email: {student.email}")

        # Check if email already exists
        existing_student = session.exec(select(Student).where(Student.email == student.email)).first()
        if existing_student:
            logger.warning(f"Attempted to create student with existing email: {student.email}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Email already registered"
            )

        verifier.verify(student.name, student.email)

        db_student = Student(**student.model_dump(), identity_verified=True)
        session.add(db_student)
        session.commit()
        session.refresh(db_student)

        logger.info(f"Student admitted successfully with ID: {db_student.id}")
        return db_student
    except HTTPException:
        raise
    except IdentityVerificationError as e:
        logger.warning(f"Admission blocked for {student.email}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN if e.rejected else status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Identity verification failed: {str(e)}"
        )
    except IntegrityError as e:
        logger.error(f"Integrity error creating student: {str(e)}")
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Failed to create student. Email may already exist."
        )
    except Exception as e:
        logger.error(f"Error creating student: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while creating the student"
        )


@app.get("/students/", response_model=List[StudentResponse], tags=["Students"])
async def read_students(skip: int = 0, limit: int = 100, include_archived: bool = False,
                        session: Session = Depends(get_session)):
    """Get students with pagination"""
    try:
        logger.info(f"Fetching students with skip={skip}, limit={limit}")
        statement = select(Student)
        if not include_archived:
            statement = statement.where(Student.archived == False)  # noqa: E712
        students = session.exec(statement.order_by(Student.id).offset(skip).limit(limit)).all()
        logger.info(f"Retrieved {len(students)} students")
        return students
    except Exception as e:
        logger.error(f"Error fetching students: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while fetching students"
        )


@app.get("/students/{student_id}", response_model=StudentResponse, tags=["Students"])
async def read_student(student_id: int, session: Session = Depends(get_session)):
    """Get a specific student by ID"""
    try:
        logger.info(f"Fetching student with ID: {student_id}")
        student = session.get(Student, student_id)
        if not student:
            logger.warning(f"Student not found with ID: {student_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Student not found"
            )
        return student
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching student {student_id}: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while fetching the student"
        )


@app.put("/students/{student_id}", response_model=StudentResponse, tags=["Students"])
async def update_student(student_id: int, student_update: StudentUpdate, session: Session = Depends(get_session)):
    """Update a student's information"""
    try:
        logger.info(f"Updating student with ID: {student_id}")
        db_student = session.get(Student, student_id)
        if not db_student:
            logger.warning(f"Student not found for update with ID: {student_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Student not found"
            )
        if db_student.archived:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Archived students cannot be updated"
            )

        # Check email uniqueness if email is being updated
        if student_update.email and student_update.email != db_student.email:
            existing_student = session.exec(select(Student).where(Student.email == student_update.email)).first()
            if existing_student:
                logger.warning(f"Attempted to update with existing email: {student_update.email}")
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Email already registered"
                )

        # Update only provided fields
        update_data = student_update.model_dump(exclude_unset=True)
        for key, value in update_data.items():
            setattr(db_student, key, value)

        db_student.updated_at = datetime.utcnow()
        session.add(db_student)
        session.commit()
        session.refresh(db_student)

        logger.info(f"Student updated successfully: {db_student.id}")
        return db_student
    except HTTPException:
        raise
    except IntegrityError as e:
        logger.error(f"Integrity error updating student: {str(e)}")
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Failed to update student. Email may already exist."
        )
    except Exception as e:
        logger.error(f"Error updating student {student_id}: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while updating the student"
        )


@app.post("/students/{student_id}/archive", response_model=StudentResponse, tags=["Students"])
async def archive_student(student_id: int, session: Session = Depends(get_session)):
    """Archive a student. Student records are never deleted."""
    try:
        logger.info(f"Archiving student with ID: {student_id}")
        student = session.get(Student, student_id)
        if not student:
            logger.warning(f"Student not found for archiving with ID: {student_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Student not found"
            )

        student.archived = True
        student.updated_at = datetime.utcnow()
        session.add(student)
        session.commit()
        session.refresh(student)
        logger.info(f"Student archived successfully: {student_id}")
        return student
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error archiving student {student_id}: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while archiving the student"
        )


@app.post("/students/{student_id}/recompute", response_model=RecomputeResponse, tags=["Students"])
async def recompute_student_gpa(student_id: int, session: Session = Depends(get_session),
                                alerting: GpaAlertingService = Depends(get_alerting)):
    """Recompute a student's GPA now, alerting on a downward crossing"""
    student = session.get(Student, student_id)
    if not student:
        logger.warning(f"Student not found for recompute: {student_id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Student not found"
        )
    try:
        with alerting.dispatcher.operation():
            result = alerting.recompute(student_id, source="trigger")
        return to_recompute_response(result)
    except DataError as e:
        logger.error(f"GPA recompute failed for student {student_id} at stage {e.stage}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Enrollment data is invalid: {str(e)}"
        )
    except RecordStoreUnavailable as e:
        logger.error(f"Record store unavailable during recompute of {student_id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Record store unavailable"
        )


@app.get("/students/{student_id}/alerts", response_model=List[AlertResponse], tags=["Alerts"])
async def read_student_alerts(student_id: int, session: Session = Depends(get_session)):
    """Get the alert history of a student"""
    student = session.get(Student, student_id)
    if not student:
        logger.warning(f"Student not found: {student_id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Student not found"
        )
    return session.exec(
        select(AlertRecord).where(AlertRecord.student_id == student_id).order_by(AlertRecord.id)
    ).all()


# ============= COURSE ENDPOINTS =============

@app.post("/courses/", response_model=CourseResponse, status_code=status.HTTP_201_CREATED, tags=["Courses"])
async def create_course(course: CourseCreate, session: Session = Depends(get_session)):
    """Create a new course"""
    try:
        logger.info(f"Creating course: {course.code}")
        existing_course = session.exec(select(Course).where(Course.code == course.code)).first()
        if existing_course:
            logger.warning(f"Attempted to create course with existing code: {course.code}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Course code already exists"
            )
        db_course = Course(**course.model_dump())
        session.add(db_course)
        session.commit()
        session.refresh(db_course)
        logger.info(f"Course created successfully with ID: {db_course.id}")
        return db_course
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating course: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while creating the course"
        )


@app.get("/courses/", response_model=List[CourseResponse], tags=["Courses"])
async def read_courses(skip: int = 0, limit: int = 100, session: Session = Depends(get_session)):
    """Get all courses with pagination"""
    try:
        logger.info(f"Fetching courses with skip={skip}, limit={limit}")
        courses = session.exec(select(Course).order_by(Course.id).offset(skip).limit(limit)).all()
        logger.info(f"Retrieved {len(courses)} courses")
        return courses
    except Exception as e:
        logger.error(f"Error fetching courses: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while fetching courses"
        )


@app.get("/courses/{course_id}", response_model=CourseResponse, tags=["Courses"])
async def read_course(course_id: int, session: Session = Depends(get_session)):
    """Get a specific course by ID"""
    try:
        logger.info(f"Fetching course with ID: {course_id}")
        course = session.get(Course, course_id)
        if not course:
            logger.warning(f"Course not found with ID: {course_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Course not found"
            )
        return course
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching course {course_id}: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while fetching the course"
        )


@app.put("/courses/{course_id}", response_model=CourseResponse, tags=["Courses"])
async def update_course(course_id: int, course_update: CourseUpdate, session: Session = Depends(get_session),
                        alerting: GpaAlertingService = Depends(get_alerting)):
    """Update a course; a credit change recomputes the GPA of every graded student"""
    try:
        logger.info(f"Updating course with ID: {course_id}")
        db_course = session.get(Course, course_id)
        if not db_course:
            logger.warning(f"Course not found for update with ID: {course_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Course not found"
            )

        update_data = course_update.model_dump(exclude_unset=True)
        if "capacity" in update_data and update_data["capacity"] < db_course.enrolled_count:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Capacity cannot be lower than the current enrollment count"
            )
        credits_changed = "credits" in update_data and update_data["credits"] != db_course.credits

        for key, value in update_data.items():
            setattr(db_course, key, value)

        db_course.updated_at = datetime.utcnow()
        session.add(db_course)
        session.commit()
        session.refresh(db_course)
        logger.info(f"Course updated successfully: {db_course.id}")

        graded_students = []
        if credits_changed:
            graded_students = session.exec(
                select(Enrollment.student_id)
                .where(Enrollment.course_id == course_id)
                .where(Enrollment.status.in_(GRADED_STATUSES))
                .distinct()
            ).all()
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating course {course_id}: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while updating the course"
        )

    if graded_students:
        logger.info(f"Credits of course {course_id} changed; recomputing {len(graded_students)} students")
    for student_id in graded_students:
        run_trigger_path(alerting, student_id)
    return db_course


@app.delete("/courses/{course_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Courses"])
async def delete_course(course_id: int, session: Session = Depends(get_session)):
    """Delete a course that has no enrollments"""
    try:
        logger.info(f"Deleting course with ID: {course_id}")
        course = session.get(Course, course_id)
        if not course:
            logger.warning(f"Course not found for deletion with ID: {course_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Course not found"
            )

        has_enrollments = session.exec(select(Enrollment).where(Enrollment.course_id == course_id)).first()
        if has_enrollments:
            logger.warning(f"Refusing to delete course {course_id} with enrollments")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Course has enrollments and cannot be deleted"
            )

        session.delete(course)
        session.commit()
        logger.info(f"Course deleted successfully: {course_id}")
        return None
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error deleting course {course_id}: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while deleting the course"
        )


# ============= ENROLLMENT REQUEST ENDPOINTS =============

@app.post("/enrollment-requests/", response_model=EnrollmentRequestResponse,
          status_code=status.HTTP_201_CREATED, tags=["Enrollment Requests"])
async def create_enrollment_request(payload: EnrollmentRequestCreate, session: Session = Depends(get_session)):
    """Request enrollment of a student in a course for a term"""
    try:
        logger.info(
            f"Enrollment request for student {payload.student_id} in course {payload.course_id} ({payload.term})"
        )

        # Verify student exists
        student = session.get(Student, payload.student_id)
        if not student:
            logger.warning(f"Student not found: {payload.student_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Student not found"
            )

        # Verify course exists
        course = session.get(Course, payload.course_id)
        if not course:
            logger.warning(f"Course not found: {payload.course_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Course not found"
            )

        request = submit_request(session, student, course, payload.term)
        session.commit()
        session.refresh(request)

        logger.info(f"Enrollment request {request.id} is {request.state.value}")
        return request
    except HTTPException:
        raise
    except EnrollmentRuleViolation as e:
        logger.warning(f"Enrollment request rejected: {str(e)}")
        session.rollback()
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except IntegrityError as e:
        logger.error(f"Integrity error creating enrollment request: {str(e)}")
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Student already enrolled in this course"
        )
    except Exception as e:
        logger.error(f"Error creating enrollment request: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while creating the enrollment request"
        )


@app.get("/enrollment-requests/{request_id}", response_model=EnrollmentRequestResponse,
         tags=["Enrollment Requests"])
async def read_enrollment_request(request_id: int, session: Session = Depends(get_session)):
    """Get a specific enrollment request by ID"""
    request = session.get(EnrollmentRequest, request_id)
    if not request:
        logger.warning(f"Enrollment request not found with ID: {request_id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Enrollment request not found"
        )
    return request


@app.post("/enrollment-requests/{request_id}/approve", response_model=EnrollmentRequestResponse,
          tags=["Enrollment Requests"])
async def approve_enrollment_request(request_id: int, decision: Optional[EnrollmentDecision] = None,
                                     session: Session = Depends(get_session)):
    """Approve a pending enrollment request"""
    try:
        request = session.get(EnrollmentRequest, request_id)
        if not request:
            logger.warning(f"Enrollment request not found for approval: {request_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Enrollment request not found"
            )
        approve_request(session, request, reason=decision.reason if decision else None)
        session.commit()
        session.refresh(request)
        logger.info(f"Enrollment request {request_id} approved")
        return request
    except HTTPException:
        raise
    except EnrollmentRuleViolation as e:
        logger.warning(f"Approval of request {request_id} refused: {str(e)}")
        session.rollback()
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.error(f"Error approving enrollment request {request_id}: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while approving the enrollment request"
        )


@app.post("/enrollment-requests/{request_id}/reject", response_model=EnrollmentRequestResponse,
          tags=["Enrollment Requests"])
async def reject_enrollment_request(request_id: int, decision: Optional[EnrollmentDecision] = None,
                                    session: Session = Depends(get_session)):
    """Reject a pending enrollment request"""
    try:
        request = session.get(EnrollmentRequest, request_id)
        if not request:
            logger.warning(f"Enrollment request not found for rejection: {request_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Enrollment request not found"
            )
        reject_request(request, reason=decision.reason if decision else None)
        session.add(request)
        session.commit()
        session.refresh(request)
        logger.info(f"Enrollment request {request_id} rejected")
        return request
    except HTTPException:
        raise
    except EnrollmentRuleViolation as e:
        logger.warning(f"Rejection of request {request_id} refused: {str(e)}")
        session.rollback()
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.error(f"Error rejecting enrollment request {request_id}: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while rejecting the enrollment request"
        )


# ============= ENROLLMENT ENDPOINTS =============

@app.get("/enrollments/", response_model=List[EnrollmentResponse], tags=["Enrollments"])
async def read_enrollments(skip: int = 0, limit: int = 100, session: Session = Depends(get_session)):
    """Get all enrollments with pagination"""
    try:
        logger.info(f"Fetching enrollments with skip={skip}, limit={limit}")
        enrollments = session.exec(select(Enrollment).order_by(Enrollment.id).offset(skip).limit(limit)).all()
        logger.info(f"Retrieved {len(enrollments)} enrollments")
        return enrollments
    except Exception as e:
        logger.error(f"Error fetching enrollments: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while fetching enrollments"
        )


@app.get("/enrollments/{enrollment_id}", response_model=EnrollmentResponse, tags=["Enrollments"])
async def read_enrollment(enrollment_id: int, session: Session = Depends(get_session)):
    """Get a specific enrollment by ID"""
    try:
        logger.info(f"Fetching enrollment with ID: {enrollment_id}")
        enrollment = session.get(Enrollment, enrollment_id)
        if not enrollment:
            logger.warning(f"Enrollment not found with ID: {enrollment_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Enrollment not found"
            )
        return enrollment
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching enrollment {enrollment_id}: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while fetching the enrollment"
        )


@app.get("/students/{student_id}/enrollments", response_model=List[EnrollmentResponse], tags=["Enrollments"])
async def read_student_enrollments(student_id: int, session: Session = Depends(get_session)):
    """Get all enrollments for a specific student"""
    try:
        logger.info(f"Fetching enrollments for student: {student_id}")
        student = session.get(Student, student_id)
        if not student:
            logger.warning(f"Student not found: {student_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Student not found"
            )

        enrollments = session.exec(select(Enrollment).where(Enrollment.student_id == student_id)).all()
        logger.info(f"Retrieved {len(enrollments)} enrollments for student {student_id}")
        return enrollments
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching student enrollments: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while fetching student enrollments"
        )


@app.get("/courses/{course_id}/enrollments", response_model=List[EnrollmentResponse], tags=["Enrollments"])
async def read_course_enrollments(course_id: int, session: Session = Depends(get_session)):
    """Get all enrollments for a specific course"""
    try:
        logger.info(f"Fetching enrollments for course: {course_id}")
        course = session.get(Course, course_id)
        if not course:
            logger.warning(f"Course not found: {course_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Course not found"
            )

        enrollments = session.exec(select(Enrollment).where(Enrollment.course_id == course_id)).all()
        logger.info(f"Retrieved {len(enrollments)} enrollments for course {course_id}")
        return enrollments
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching course enrollments: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while fetching course enrollments"
        )


@app.put("/enrollments/{enrollment_id}/grade", response_model=GradedEnrollmentResponse, tags=["Enrollments"])
async def grade_enrollment(enrollment_id: int, grade_update: GradeUpdate, session: Session = Depends(get_session),
                           alerting: GpaAlertingService = Depends(get_alerting)):
    """Record a grade (or an administrative correction) and recompute GPA"""
    try:
        logger.info(f"Grading enrollment {enrollment_id} with {grade_update.grade}")
        db_enrollment = session.get(Enrollment, enrollment_id)
        if not db_enrollment:
            logger.warning(f"Enrollment not found for grading with ID: {enrollment_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Enrollment not found"
            )

        apply_grade(db_enrollment, grade_update.grade, correction=grade_update.correction)
        session.add(db_enrollment)
        refresh_enrollment_count(session, db_enrollment.course_id)
        session.commit()
        session.refresh(db_enrollment)
        logger.info(f"Enrollment graded successfully: {enrollment_id}")
    except HTTPException:
        raise
    except EnrollmentRuleViolation as e:
        logger.warning(f"Grade for enrollment {enrollment_id} refused: {str(e)}")
        session.rollback()
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.error(f"Error grading enrollment {enrollment_id}: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while grading the enrollment"
        )

    gpa = run_trigger_path(alerting, db_enrollment.student_id)
    return GradedEnrollmentResponse(enrollment=EnrollmentResponse.model_validate(db_enrollment), gpa=gpa)


@app.post("/enrollments/{enrollment_id}/withdraw", response_model=GradedEnrollmentResponse, tags=["Enrollments"])
async def withdraw_enrollment(enrollment_id: int, session: Session = Depends(get_session),
                              alerting: GpaAlertingService = Depends(get_alerting)):
    """Withdraw a student from a course, freeing the seat"""
    try:
        logger.info(f"Withdrawing enrollment with ID: {enrollment_id}")
        db_enrollment = session.get(Enrollment, enrollment_id)
        if not db_enrollment:
            logger.warning(f"Enrollment not found for withdrawal with ID: {enrollment_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Enrollment not found"
            )

        withdraw(db_enrollment)
        session.add(db_enrollment)
        refresh_enrollment_count(session, db_enrollment.course_id)
        session.commit()
        session.refresh(db_enrollment)
        logger.info(f"Enrollment withdrawn successfully: {enrollment_id}")
    except HTTPException:
        raise
    except EnrollmentRuleViolation as e:
        logger.warning(f"Withdrawal of enrollment {enrollment_id} refused: {str(e)}")
        session.rollback()
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.error(f"Error withdrawing enrollment {enrollment_id}: {str(e)}", exc_info=True)
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while withdrawing the enrollment"
        )

    gpa = run_trigger_path(alerting, db_enrollment.student_id)
    return GradedEnrollmentResponse(enrollment=EnrollmentResponse.model_validate(db_enrollment), gpa=gpa)


# ============= ALERT ENDPOINTS =============

@app.get("/alerts/", response_model=List[AlertResponse], tags=["Alerts"])
async def read_alerts(skip: int = 0, limit: int = 100, session: Session = Depends(get_session)):
    """Get the alert log with pagination"""
    try:
        logger.info(f"Fetching alerts with skip={skip}, limit={limit}")
        return session.exec(select(AlertRecord).order_by(AlertRecord.id).offset(skip).limit(limit)).all()
    except Exception as e:
        logger.error(f"Error fetching alerts: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An error occurred while fetching alerts"
        )


# ============= BATCH ENDPOINTS =============

def to_batch_response(result: BatchResult) -> BatchResultResponse:
    return BatchResultResponse(
        run_id=result.run_id,
        state=result.state.value,
        started_at=result.started_at,
        finished_at=result.finished_at,
        snapshot_size=result.snapshot_size,
        processed=result.processed,
        alerts=result.alerts,
        cancelled=result.cancelled,
        error=result.error,
        failures=[
            StudentFailureResponse(
                student_id=failure.student_id,
                stage=failure.stage,
                error=failure.error,
                timestamp=failure.timestamp,
            )
            for failure in result.failures
        ],
    )


def to_status_response(scheduler: BatchScheduler) -> BatchStatusResponse:
    last = scheduler.last_result
    return BatchStatusResponse(
        state=scheduler.state.value,
        last_result=to_batch_response(last) if last else None,
    )


@app.post("/batch/runs", response_model=BatchStatusResponse, status_code=status.HTTP_202_ACCEPTED, tags=["Batch"])
async def start_batch(scheduler: BatchScheduler = Depends(get_scheduler)):
    """Start a GPA recomputation batch in the background"""
    logger.info("Manual batch trigger requested")
    if not scheduler.trigger():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A recomputation batch is already running"
        )
    return to_status_response(scheduler)


@app.get("/batch/status", response_model=BatchStatusResponse, tags=["Batch"])
async def read_batch_status(scheduler: BatchScheduler = Depends(get_scheduler)):
    """Get the scheduler state and the result of the latest run"""
    return to_status_response(scheduler)


@app.post("/batch/cancel", response_model=BatchStatusResponse, tags=["Batch"])
async def cancel_batch(scheduler: BatchScheduler = Depends(get_scheduler)):
    """Stop the running batch after its current chunk"""
    if not scheduler.cancel():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No recomputation batch is running"
        )
    return to_status_response(scheduler)
