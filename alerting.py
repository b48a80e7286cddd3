"""
The GPA alerting pipeline.

Interactive writes and the recomputation batch both call
``GpaAlertingService.recompute``, so a student is alerted the same way
whichever path noticed the change.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import config
from detector import Crossing, detect_crossing
from errors import DataError
from events import AlertEvent
from gpa import summarize_gpa
from models import AcademicStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecomputeResult:
    student_id: int
    previous_gpa: Optional[float]
    new_gpa: Optional[float]
    crossing: Crossing
    status: AcademicStatus
    alert: Optional[AlertEvent] = None


def next_status(status: AcademicStatus, crossing: Crossing) -> Optional[AcademicStatus]:
    """Academic standing after a threshold crossing, or None if unchanged"""
    if crossing is Crossing.DOWNWARD and status == AcademicStatus.ACTIVE:
        return AcademicStatus.PROBATION
    if crossing is Crossing.RECOVERY and status == AcademicStatus.PROBATION:
        return AcademicStatus.ACTIVE
    return None


class GpaAlertingService:
    def __init__(self, store, dispatcher, threshold: float = config.GPA_ALERT_THRESHOLD):
        self.store = store
        self.dispatcher = dispatcher
        self.threshold = threshold

    def recompute(self, student_id: int, source: str = "trigger") -> RecomputeResult:
        """
        Recompute a student's GPA, persist it and dispatch an alert on a
        downward crossing. The GPA stays None while no credits count.

        Raises DataError (with ``stage`` set) when the student's enrollment
        data is malformed; the stored GPA is left untouched in that case.
        """
        stage = "load"
        try:
            with self.store.student_lock(student_id):
                state = self.store.get_student_state(student_id)
                records = self.store.get_enrollments(student_id)

                stage = "compute"
                summary = summarize_gpa(records, student_id=student_id)
                # No counted credits yet: keep the "never graded" state
                new_gpa = summary.gpa if summary.credits else None
                crossing = detect_crossing(state.gpa, new_gpa, self.threshold)
                new_status = next_status(state.status, crossing)

                stage = "persist"
                if new_gpa != state.gpa or new_status is not None:
                    self.store.update_gpa(student_id, new_gpa, status=new_status)
        except DataError as e:
            e.stage = e.stage or stage
            if e.student_id is None:
                e.student_id = student_id
            raise

        status = new_status or state.status
        if new_status is not None:
            logger.info(f"Student {student_id} moved from {state.status.value} to {new_status.value}")

        alert = None
        if crossing is Crossing.DOWNWARD:
            alert = self.dispatcher.dispatch(student_id, state.gpa, new_gpa, source=source)

        logger.info(f"Recomputed GPA for student {student_id}: {state.gpa} -> {new_gpa} ({source})")
        return RecomputeResult(
            student_id=student_id,
            previous_gpa=state.gpa,
            new_gpa=new_gpa,
            crossing=crossing,
            status=status,
            alert=alert,
        )
