from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional
import uuid

LOW_GPA_ALERT = "academic.gpa.low_alert"

class AlertEvent(BaseModel):
    """A student's GPA crossed below the alert threshold. Immutable."""
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = LOW_GPA_ALERT
    student_id: int
    previous_gpa: Optional[float] = Field(None, ge=0.0, le=4.0, description="None on a first graded term")
    new_gpa: float = Field(..., ge=0.0, le=4.0)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    source: str = Field("trigger", description="trigger or batch")

    def describe_change(self) -> str:
        if self.previous_gpa is None:
            return f"first GPA {self.new_gpa:.2f}"
        return f"{self.previous_gpa:.2f} -> {self.new_gpa:.2f}"
