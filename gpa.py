"""
GPA engine.

GPA is the credit-weighted mean of grade points over a student's graded
enrollments, rounded half-up to two decimals. The computation is pure, so
it can run concurrently for different students.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from config import GRADE_POINTS
from errors import DataError
from models import EnrollmentStatus

TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class GradeRecord:
    """The parts of an enrollment that feed the GPA"""
    enrollment_id: Optional[int]
    status: EnrollmentStatus
    grade: Optional[str]
    credits: int


def grade_points(grade: str) -> Decimal:
    """Return the grade points of a letter grade as a Decimal"""
    try:
        return Decimal(str(GRADE_POINTS[grade.strip().upper()]))
    except (KeyError, AttributeError):
        raise DataError(f"Unknown grade: {grade!r}")


def is_valid_grade(grade: str) -> bool:
    return isinstance(grade, str) and grade.strip().upper() in GRADE_POINTS


def _counted_points(record: GradeRecord) -> Optional[Decimal]:
    """Grade points of a record, or None when it does not count toward GPA"""
    if record.status == EnrollmentStatus.WITHDRAWN:
        return None
    if record.status == EnrollmentStatus.ENROLLED:
        # In progress; a grade only counts once the term closes
        return None
    if record.status == EnrollmentStatus.FAILED and record.grade is None:
        return grade_points("F")
    if record.grade is None:
        raise DataError(f"Enrollment {record.enrollment_id} is {record.status.value} but has no grade")
    return grade_points(record.grade)


@dataclass(frozen=True)
class GpaSummary:
    gpa: float
    credits: int


def summarize_gpa(records: Iterable[GradeRecord], student_id: Optional[int] = None) -> GpaSummary:
    """
    Compute the GPA and the number of credits that count toward it.

    The GPA is 0.0 when no credits count. Raises DataError on malformed
    records, tagged with ``student_id`` when given.
    """
    total_points = Decimal(0)
    total_credits = 0

    for record in records:
        if record.credits is None or record.credits < 0:
            raise DataError(
                f"Enrollment {record.enrollment_id} has invalid credits: {record.credits!r}",
                student_id=student_id,
            )
        try:
            points = _counted_points(record)
        except DataError as e:
            raise DataError(str(e), student_id=student_id) from e
        if points is None:
            continue
        total_points += points * record.credits
        total_credits += record.credits

    if total_credits == 0:
        return GpaSummary(gpa=0.0, credits=0)

    gpa = (total_points / total_credits).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return GpaSummary(gpa=float(gpa), credits=total_credits)


def calculate_gpa(records: Iterable[GradeRecord], student_id: Optional[int] = None) -> float:
    """Compute the GPA for a sequence of grade records. Returns 0.0 when no credits count."""
    return summarize_gpa(records, student_id=student_id).gpa
