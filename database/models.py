# Database Models for TrustWork Marketplace

from sqlalchemy import (
    Column, String, Integer, DateTime, Date, ForeignKey, Text, JSON, Enum, Boolean,
    Numeric, Float, Index, text,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from decimal import Decimal
import uuid
import enum

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum(enum_cls, name):
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x], name=name)


# ============================================================================
# ENUMS
# ============================================================================

class UserRole(str, enum.Enum):
    FREELANCER = "freelancer"
    EMPLOYER = "employer"
    ADMIN = "admin"


class AssignmentStatus(str, enum.Enum):
    DRAFT = "draft"
    OPEN = "open"
    CLOSED = "closed"
    FILLED = "filled"


class BudgetType(str, enum.Enum):
    FIXED = "fixed"
    HOURLY = "hourly"


class ApplicationStatus(str, enum.Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    SHORTLISTED = "shortlisted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class GigStatus(str, enum.Enum):
    DRAFT = "draft"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class MilestoneStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION_REQUESTED = "revision_requested"


class EscrowStatus(str, enum.Enum):
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    DISCARDED = "discarded"  # gateway reported the checkout as failed


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    EFT = "eft"
    CARD = "cc"


class NotificationType(str, enum.Enum):
    JOB_MATCH = "job_match"
    APPLICATION = "application"
    MESSAGE = "message"
    PAYMENT = "payment"
    SAFETY = "safety"
    SYSTEM = "system"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BankAccountType(str, enum.Enum):
    SAVINGS = "savings"
    CHEQUE = "cheque"
    CURRENT = "current"


class DisputeStatus(str, enum.Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class DisputeDecision(str, enum.Enum):
    RELEASE = "release"
    REFUND = "refund"


# Application statuses that still count as "active" for the one-per-assignment rule
ACTIVE_APPLICATION_STATUSES = (
    ApplicationStatus.PENDING,
    ApplicationStatus.REVIEWING,
    ApplicationStatus.SHORTLISTED,
    ApplicationStatus.ACCEPTED,
)

_ACTIVE_APPLICATION_SQL = text("status IN ('pending', 'reviewing', 'shortlisted', 'accepted')")


# ============================================================================
# PROFILE
# ============================================================================

class Profile(Base):
    """A platform user. Role lives here, not in the session token."""
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    role = Column(_enum(UserRole, "userrole"), nullable=False, default=UserRole.FREELANCER)
    display_name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, index=True)
    phone = Column(String(20))
    location = Column(String(100))
    skills = Column(JSON, default=list)
    verified = Column(Boolean, default=False, nullable=False)

    # Reputation (maintained by the reviews feature outside this core)
    rating = Column(Float, default=0.0)
    review_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    bank_account = relationship("BankAccount", back_populates="owner", uselist=False,
                                cascade="all, delete-orphan")


# ============================================================================
# BANK ACCOUNT
# ============================================================================

class BankAccount(Base):
    """Freelancer payout destination. One per owner."""
    __tablename__ = "bank_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), unique=True, nullable=False)

    bank_name = Column(String(100), nullable=False)
    account_number = Column(String(20), nullable=False)
    account_holder = Column(String(150), nullable=False)
    branch_code = Column(String(10))
    account_type = Column(_enum(BankAccountType, "bankaccounttype"), default=BankAccountType.CHEQUE)

    verified = Column(Boolean, default=False, nullable=False)
    verified_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    owner = relationship("Profile", back_populates="bank_account")


# ============================================================================
# ASSIGNMENT
# ============================================================================

class Assignment(Base):
    """A posted job or gig that freelancers apply to."""
    __tablename__ = "assignments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    employer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(100))

    budget_min = Column(Numeric(12, 2))
    budget_max = Column(Numeric(12, 2))
    budget_type = Column(_enum(BudgetType, "budgettype"), default=BudgetType.FIXED)

    required_skills = Column(JSON, default=list)
    location = Column(String(100))
    remote_allowed = Column(Boolean, default=False)
    job_type = Column(String(50))
    experience_level = Column(String(50))
    urgent = Column(Boolean, default=False)

    status = Column(_enum(AssignmentStatus, "assignmentstatus"), default=AssignmentStatus.DRAFT, nullable=False)

    deadline = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    employer = relationship("Profile")
    applications = relationship("Application", back_populates="assignment")

    @property
    def agreed_budget(self):
        """Budget carried into the gig when an application is accepted."""
        return self.budget_max if self.budget_max is not None else self.budget_min


# ============================================================================
# APPLICATION
# ============================================================================

class Application(Base):
    """A freelancer's proposal for an assignment."""
    __tablename__ = "applications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    assignment_id = Column(String(36), ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False)
    freelancer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    employer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)  # copied from the assignment

    cover_letter = Column(Text, nullable=False)
    proposed_rate = Column(Numeric(12, 2))
    proposed_timeline = Column(String(100))
    availability_start = Column(Date)
    portfolio_links = Column(JSON, default=list)

    status = Column(_enum(ApplicationStatus, "applicationstatus"), default=ApplicationStatus.PENDING, nullable=False)
    employer_message = Column(Text)
    rejection_reason = Column(Text)
    withdrawal_reason = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    reviewed_at = Column(DateTime)
    reviewed_by = Column(String(36), ForeignKey("profiles.id"))
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_applications_assignment_status", "assignment_id", "status"),
        Index("ix_applications_freelancer_status", "freelancer_id", "status"),
        Index(
            "uq_applications_active_per_freelancer", "assignment_id", "freelancer_id",
            unique=True,
            postgresql_where=_ACTIVE_APPLICATION_SQL,
            sqlite_where=_ACTIVE_APPLICATION_SQL,
        ),
    )

    assignment = relationship("Assignment", back_populates="applications")
    freelancer = relationship("Profile", foreign_keys=[freelancer_id])


# ============================================================================
# GIG & MILESTONES
# ============================================================================

class Gig(Base):
    """The executable engagement created when an application is accepted."""
    __tablename__ = "gigs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    assignment_id = Column(String(36), ForeignKey("assignments.id"), nullable=True)
    application_id = Column(String(36), ForeignKey("applications.id"), nullable=True)
    client_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    freelancer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    category = Column(String(100))
    budget = Column(Numeric(12, 2), nullable=False)

    status = Column(_enum(GigStatus, "gigstatus"), default=GigStatus.OPEN, nullable=False)

    started_at = Column(DateTime)
    deadline = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    milestones = relationship("Milestone", back_populates="gig", order_by="Milestone.ordinal",
                              cascade="all, delete-orphan")


class Milestone(Base):
    """A unit of deliverable work; the unit of escrow release."""
    __tablename__ = "milestones"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    gig_id = Column(String(36), ForeignKey("gigs.id", ondelete="CASCADE"), nullable=False)
    # Gig parties copied down so row access can be decided per row
    client_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    freelancer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)

    ordinal = Column(Integer, nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    amount = Column(Numeric(12, 2), nullable=False)
    percentage = Column(Numeric(5, 2), nullable=False)
    due_date = Column(DateTime)

    status = Column(_enum(MilestoneStatus, "milestonestatus"), default=MilestoneStatus.PENDING, nullable=False)
    revision_count = Column(Integer, default=0, nullable=False)
    max_revisions = Column(Integer, default=2, nullable=False)

    started_at = Column(DateTime)
    submitted_at = Column(DateTime)
    approved_at = Column(DateTime)
    client_notes = Column(Text)
    submission_notes = Column(Text)

    payment_released = Column(Boolean, default=False, nullable=False)
    payment_released_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_milestones_gig_ordinal", "gig_id", "ordinal", unique=True),
    )

    gig = relationship("Gig", back_populates="milestones")


# ============================================================================
# ESCROW
# ============================================================================

class EscrowPayment(Base):
    """Funds captured from a client through the gateway and held until release or refund."""
    __tablename__ = "escrow_payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    gig_id = Column(String(36), ForeignKey("gigs.id"), nullable=False)
    milestone_id = Column(String(36), ForeignKey("milestones.id"), nullable=True)
    application_id = Column(String(36), ForeignKey("applications.id"), nullable=True)
    payer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    recipient_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)        # gross gig amount
    platform_fee = Column(Numeric(12, 2), nullable=False)  # deducted from the freelancer's net
    payment_method = Column(_enum(PaymentMethod, "paymentmethod"), nullable=False)
    payment_fee = Column(Numeric(12, 2), nullable=False)   # gateway processing fee, charged on top

    status = Column(_enum(EscrowStatus, "escrowstatus"), default=EscrowStatus.PENDING, nullable=False)
    payout_status = Column(_enum(PayoutStatus, "payoutstatus"), nullable=True)

    gateway_ref = Column(String(100), index=True)
    payout_ref = Column(String(100))
    payout_attempts = Column(Integer, default=0, nullable=False)
    next_payout_attempt_at = Column(DateTime)
    payout_error = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    held_at = Column(DateTime)
    released_at = Column(DateTime)
    refunded_at = Column(DateTime)
    disputed_at = Column(DateTime)
    discarded_at = Column(DateTime)
    payout_started_at = Column(DateTime)
    payout_completed_at = Column(DateTime)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_escrow_payments_gig_status", "gig_id", "status"),
        Index("ix_escrow_payments_payout_queue", "status", "payout_status"),
    )

    @property
    def freelancer_net(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.platform_fee)

    @property
    def total_charge(self) -> Decimal:
        return Decimal(self.amount) + Decimal(self.payment_fee)


# ============================================================================
# DISPUTE
# ============================================================================

class Dispute(Base):
    """Dispute raised by a party on a held escrow payment."""
    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    gig_id = Column(String(36), ForeignKey("gigs.id", ondelete="CASCADE"), nullable=False)
    escrow_payment_id = Column(String(36), ForeignKey("escrow_payments.id"), nullable=False)
    initiated_by = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    respondent_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)

    reason = Column(String(100), nullable=False)
    description = Column(Text)
    response = Column(Text)

    status = Column(_enum(DisputeStatus, "disputestatus"), default=DisputeStatus.OPEN, nullable=False)
    decision = Column(_enum(DisputeDecision, "disputedecision"), nullable=True)
    resolution_notes = Column(Text)
    resolved_by = Column(String(36), ForeignKey("profiles.id"), nullable=True)

    response_deadline = Column(DateTime, nullable=False)
    responded_at = Column(DateTime)
    escalated_at = Column(DateTime)
    resolved_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


# ============================================================================
# NOTIFICATION
# ============================================================================

class Notification(Base):
    """Per-user inbox entry. Append-only except for the read flag."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)

    type = Column(_enum(NotificationType, "notificationtype"), nullable=False)
    priority = Column(_enum(NotificationPriority, "notificationpriority"), default=NotificationPriority.MEDIUM,
                      nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    action_url = Column(String(500))
    data = Column(JSON)  # Additional context (gig_id, amount, etc.)

    read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_notifications_user_read_created", "user_id", "read", created_at.desc()),
    )


# ============================================================================
# OUTBOX & AUDIT
# ============================================================================

class OutboxEvent(Base):
    """Domain event written in the same transaction as the change that caused it."""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(100), nullable=False)
    aggregate_type = Column(String(50), nullable=False)
    aggregate_id = Column(String(36), nullable=False, index=True)
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    claimed_at = Column(DateTime)
    dispatched_at = Column(DateTime, index=True)


class AuditLog(Base):
    """Audit sink for dispatched events and background failures."""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(50), nullable=False)  # event, subscriber_failure, gateway_failure
    event_type = Column(String(100))
    aggregate_id = Column(String(36))
    subscriber = Column(String(100))
    detail = Column(Text)
    payload = Column(JSON)

    created_at = Column(DateTime, default=utcnow)
