"""
Pydantic schemas for the appointment reminder endpoints.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

class ReminderSweepSummary(BaseModel):
    """Counters from one reminder sweep."""
    total: int = Field(ge=0)
    sent: int = Field(ge=0)
    failed: int = Field(ge=0)
    skipped: int = Field(ge=0)
    errors: List[str] = Field(default_factory=list)

class PendingReminder(BaseModel):
    """An appointment the next sweep would remind."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    patient_name: Optional[str] = Field(None, alias="patientName")
    patient_email: Optional[str] = Field(None, alias="patientEmail")
    time: datetime
    type: str
    organization: str
