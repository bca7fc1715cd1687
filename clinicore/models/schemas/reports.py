"""
Pydantic schemas for clinic report triggers and status.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

class ReportTrigger(BaseModel):
    """
    Manual report trigger. With ``organizationId`` a single report is queued;
    without it the fan-out job is queued and picks every due organization.
    """
    model_config = ConfigDict(populate_by_name=True)

    organization_id: Optional[str] = Field(None, alias="organizationId", description="Organization to report on, or None for all due")
    period_days: Optional[int] = Field(None, alias="periodDays", ge=1, le=365, description="Report window; defaults to the configured interval")

class OrganizationReportStatus(BaseModel):
    """One organization in the report status listing."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    auto_reports_enabled: bool = Field(alias="autoReportsEnabled")
    last_report_generated_at: Optional[datetime] = Field(None, alias="lastReportGeneratedAt")
    needs_report: bool = Field(alias="needsReport")
