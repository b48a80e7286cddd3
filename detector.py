"""
Change detector for low GPA alerts.

Detection is edge-triggered: only a crossing of the threshold counts, never
the level itself. The stored GPA of a student is the trigger's memory, so a
student who stays below the threshold is not alerted again until a recovery
crossing re-arms the trigger.
"""

from enum import Enum
from typing import Optional

from config import GPA_ALERT_THRESHOLD

# Stands in for the missing GPA of a student who has never been graded
NO_PRIOR_GPA = 4.0


class Crossing(str, Enum):
    NONE = "none"
    DOWNWARD = "downward"
    RECOVERY = "recovery"


def detect_crossing(before: Optional[float], after: Optional[float],
                    threshold: float = GPA_ALERT_THRESHOLD) -> Crossing:
    """
    Classify the move from ``before`` to ``after`` against ``threshold``.

    A ``before`` of None is read as 4.0, so admission alone never alerts but
    a first graded term below the threshold does. An ``after`` of None means
    no credits count yet and is never a crossing.
    """
    if after is None:
        return Crossing.NONE
    if before is None:
        before = NO_PRIOR_GPA
    if before >= threshold and after < threshold:
        return Crossing.DOWNWARD
    if before < threshold and after >= threshold:
        return Crossing.RECOVERY
    return Crossing.NONE


def is_alert_worthy(before: Optional[float], after: Optional[float],
                    threshold: float = GPA_ALERT_THRESHOLD) -> bool:
    return detect_crossing(before, after, threshold) is Crossing.DOWNWARD
