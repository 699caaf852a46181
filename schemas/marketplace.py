# Pydantic Schemas for the TrustWork marketplace
# Assignments, applications, gigs and milestones

from pydantic import BaseModel, Field, validator
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from config import app_config
from core.milestone_rules import MilestoneAction
from database.models import (
    ApplicationStatus, AssignmentStatus, BudgetType, GigStatus, MilestoneStatus,
)
from schemas.base import sanitize_url


# ============================================================================
# ENUMS
# ============================================================================

class ApplicationDecision(str, Enum):
    """Statuses an employer may move an application to."""
    SHORTLISTED = "shortlisted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# ============================================================================
# ASSIGNMENT SCHEMAS
# ============================================================================

class AssignmentCreate(BaseModel):
    """Schema for posting an assignment."""
    title: str = Field(..., min_length=3, max_length=200)
    description: str = Field(..., min_length=10)
    category: Optional[str] = Field(None, max_length=100)
    budget_min: Optional[Decimal] = Field(None, ge=0, le=app_config.PROPOSED_RATE_MAX)
    budget_max: Optional[Decimal] = Field(None, ge=0, le=app_config.PROPOSED_RATE_MAX)
    budget_type: BudgetType = BudgetType.FIXED
    required_skills: List[str] = []
    location: Optional[str] = Field(None, max_length=100)
    remote_allowed: bool = False
    job_type: Optional[str] = Field(None, max_length=50)
    experience_level: Optional[str] = Field(None, max_length=50)
    urgent: bool = False
    deadline: Optional[datetime] = None
    publish: bool = True

    @validator('budget_max')
    def validate_budget_range(cls, v, values):
        budget_min = values.get('budget_min')
        if v is not None and budget_min is not None and v < budget_min:
            raise ValueError('budget_max must not be lower than budget_min')
        return v

    @validator('required_skills')
    def dedupe_skills(cls, v):
        return list(dict.fromkeys(s.strip() for s in v if s and s.strip()))


class AssignmentResponse(BaseModel):
    """Schema for assignment response."""
    id: str
    employer_id: str
    title: str
    description: str
    category: Optional[str] = None
    budget_min: Optional[Decimal] = None
    budget_max: Optional[Decimal] = None
    budget_type: BudgetType
    required_skills: List[str] = []
    location: Optional[str] = None
    remote_allowed: bool = False
    job_type: Optional[str] = None
    experience_level: Optional[str] = None
    urgent: bool = False
    status: AssignmentStatus
    deadline: Optional[datetime] = None
    created_at: datetime
    version: int

    class Config:
        from_attributes = True


# ============================================================================
# APPLICATION SCHEMAS
# ============================================================================

class ApplicationCreate(BaseModel):
    """Schema for a freelancer applying to an assignment."""
    assignment_id: str
    cover_letter: str
    proposed_rate: Optional[Decimal] = Field(None, ge=0, le=app_config.PROPOSED_RATE_MAX)
    proposed_timeline: Optional[str] = Field(None, max_length=100)
    availability_start: Optional[date] = None
    portfolio_links: List[str] = []

    @validator('cover_letter')
    def validate_cover_letter(cls, v):
        v = (v or "").strip()
        if len(v) < app_config.COVER_LETTER_MIN:
            raise ValueError(f'Cover letter must be at least {app_config.COVER_LETTER_MIN} characters')
        if len(v) > app_config.COVER_LETTER_MAX:
            raise ValueError(f'Cover letter must be at most {app_config.COVER_LETTER_MAX} characters')
        return v

    @validator('availability_start')
    def validate_availability(cls, v):
        if v is not None and v < date.today():
            raise ValueError('Availability start date cannot be in the past')
        return v

    @validator('portfolio_links')
    def validate_portfolio_links(cls, v):
        return [sanitize_url(link) for link in v if link and link.strip()]


class ApplicationStatusUpdate(BaseModel):
    """Schema for an employer's decision on an application."""
    status: ApplicationDecision
    employer_message: Optional[str] = Field(None, max_length=2000)
    rejection_reason: Optional[str] = Field(None, max_length=500)
    expected_version: Optional[int] = None


class ApplicationWithdraw(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ApplicationResponse(BaseModel):
    """Schema for application response."""
    id: str
    assignment_id: str
    freelancer_id: str
    cover_letter: str
    proposed_rate: Optional[Decimal] = None
    proposed_timeline: Optional[str] = None
    availability_start: Optional[date] = None
    portfolio_links: List[str] = []
    status: ApplicationStatus
    employer_message: Optional[str] = None
    rejection_reason: Optional[str] = None
    withdrawal_reason: Optional[str] = None
    created_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    version: int

    class Config:
        from_attributes = True


class FreelancerSummary(BaseModel):
    """What an employer sees about an applicant."""
    id: str
    display_name: str
    skills: List[str] = []
    location: Optional[str] = None
    rating: float = 0.0
    review_count: int = 0

    class Config:
        from_attributes = True


class AssignmentSummary(BaseModel):
    """What a freelancer sees about the assignment they applied to."""
    id: str
    title: str
    description: str
    budget_min: Optional[Decimal] = None
    budget_max: Optional[Decimal] = None
    budget_type: BudgetType
    status: AssignmentStatus

    class Config:
        from_attributes = True


class EmployerApplicationView(BaseModel):
    application: ApplicationResponse
    freelancer: FreelancerSummary


class FreelancerApplicationView(BaseModel):
    application: ApplicationResponse
    assignment: AssignmentSummary


class ApplicationDecisionResponse(BaseModel):
    application: ApplicationResponse
    gig_id: Optional[str] = None


# ============================================================================
# GIG & MILESTONE SCHEMAS
# ============================================================================

class GigCreate(BaseModel):
    """Schema for opening a gig directly, without an application."""
    freelancer_id: str
    title: str = Field(..., min_length=3, max_length=200)
    category: Optional[str] = Field(None, max_length=100)
    budget: Decimal = Field(..., gt=0, le=app_config.PROPOSED_RATE_MAX)
    deadline: Optional[datetime] = None
    assignment_id: Optional[str] = None


class MilestoneDraft(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    amount: Decimal = Field(..., gt=0)
    percentage: Decimal = Field(..., gt=0, le=100)
    due_date: Optional[datetime] = None
    max_revisions: Optional[int] = Field(None, ge=0, le=10)


class MilestonesDefine(BaseModel):
    milestones: List[MilestoneDraft] = Field(..., min_length=1)


class MilestoneTransition(BaseModel):
    action: MilestoneAction
    expected_status: Optional[MilestoneStatus] = None
    notes: Optional[str] = Field(None, max_length=5000)


class MilestoneResponse(BaseModel):
    id: str
    gig_id: str
    ordinal: int
    title: str
    description: Optional[str] = None
    amount: Decimal
    percentage: Decimal
    due_date: Optional[datetime] = None
    status: MilestoneStatus
    revision_count: int
    max_revisions: int
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    client_notes: Optional[str] = None
    submission_notes: Optional[str] = None
    payment_released: bool = False
    updated_at: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True


class GigResponse(BaseModel):
    id: str
    assignment_id: Optional[str] = None
    application_id: Optional[str] = None
    client_id: str
    freelancer_id: str
    title: str
    category: Optional[str] = None
    budget: Decimal
    status: GigStatus
    started_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    version: int
    progress: int = 0
    milestones: List[MilestoneResponse] = []

    class Config:
        from_attributes = True
