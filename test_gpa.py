import pytest

from config import GRADE_POINTS
from errors import DataError
from gpa import GradeRecord, calculate_gpa, grade_points, is_valid_grade, summarize_gpa
from models import EnrollmentStatus


def completed(grade, credits, enrollment_id=None):
    status = EnrollmentStatus.FAILED if grade == "F" else EnrollmentStatus.COMPLETED
    return GradeRecord(enrollment_id=enrollment_id, status=status, grade=grade, credits=credits)


def test_no_records_is_zero():
    assert calculate_gpa([]) == 0.0


def test_zero_credit_courses_are_zero():
    records = [completed("A", 0), completed("F", 0)]
    assert calculate_gpa(records) == 0.0


def test_only_withdrawn_and_in_progress_is_zero():
    records = [
        GradeRecord(1, EnrollmentStatus.WITHDRAWN, None, 3),
        GradeRecord(2, EnrollmentStatus.ENROLLED, None, 4),
    ]
    assert calculate_gpa(records) == 0.0


def test_summary_reports_counted_credits():
    records = [
        completed("A", 4),
        completed("F", 2),
        GradeRecord(3, EnrollmentStatus.ENROLLED, None, 3),
    ]
    summary = summarize_gpa(records)
    assert summary.credits == 6
    assert summary.gpa == 2.67
    assert summarize_gpa([completed("A", 0)]).credits == 0


def test_weighted_by_credits():
    # (4.0 * 4 + 2.0 * 1) / 5 = 3.6
    assert calculate_gpa([completed("A", 4), completed("C", 1)]) == 3.6


def test_withdrawn_enrollment_excluded():
    records = [
        completed("B", 3),
        GradeRecord(2, EnrollmentStatus.WITHDRAWN, "F", 3),
    ]
    assert calculate_gpa(records) == 3.0


def test_failed_without_grade_counts_as_f():
    records = [completed("A", 3), GradeRecord(2, EnrollmentStatus.FAILED, None, 3)]
    assert calculate_gpa(records) == 2.0


def test_rounds_half_up_to_two_places():
    # 10 / 3 = 3.333..., 3.7 + 3.0 + 3.0 = 9.7 / 3 = 3.2333...
    assert calculate_gpa([completed("A", 1), completed("B", 1), completed("B", 1)]) == 3.33
    assert calculate_gpa([completed("A-", 1), completed("B", 1), completed("B", 1)]) == 3.23
    # 2.7 + 4.0 = 6.7 / 2 = 3.35 exactly
    assert calculate_gpa([completed("B-", 1), completed("A", 1)]) == 3.35


def test_scenario_values_are_exact():
    base = [completed("B", 2), completed("C+", 2), completed("D", 2)]
    assert calculate_gpa(base) == 2.1
    assert calculate_gpa(base + [completed("F", 1)]) == 1.8


def test_grade_letters_are_case_insensitive():
    assert calculate_gpa([completed("b+", 3)]) == 3.3


def test_result_always_within_scale():
    for grade in GRADE_POINTS:
        for other in ("A", "F", "C"):
            for credits in (1, 3, 10):
                gpa = calculate_gpa([completed(grade, credits), completed(other, 4)])
                assert 0.0 <= gpa <= 4.0


def test_unknown_grade_raises_data_error_with_student():
    with pytest.raises(DataError) as exc:
        calculate_gpa([completed("Z", 3, enrollment_id=7)], student_id=42)
    assert exc.value.student_id == 42
    assert "Z" in str(exc.value)


def test_completed_without_grade_raises():
    with pytest.raises(DataError):
        calculate_gpa([GradeRecord(1, EnrollmentStatus.COMPLETED, None, 3)])


def test_negative_credits_raise():
    with pytest.raises(DataError):
        calculate_gpa([completed("A", -3)])


def test_grade_points_lookup():
    assert float(grade_points("A+")) == 4.0
    assert float(grade_points(" c- ")) == 1.7
    assert is_valid_grade("D+")
    assert not is_valid_grade("E")
    assert not is_valid_grade(None)
