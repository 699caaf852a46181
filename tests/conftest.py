"""
Test configuration and fixtures.

Provides:
- A file-backed SQLite database per test with every table created
- A session factory wired to the realtime hub and an event bus bound to it
- Seeded profiles (two employers, two freelancers, an admin) and their principals
- A fake PaymentProcessor that records calls and signs callbacks like the gateway
- A FastAPI TestClient with the database, bus and processor overridden
"""
import os
from decimal import Decimal
from typing import Dict, List, Optional

# Configure before any application module reads the environment
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RUN_BACKGROUND_JOBS"] = "false"
os.environ["GATEWAY_SECRET"] = "test-secret"

import pytest
from sqlalchemy.orm import sessionmaker

from auth.dependencies import create_access_token
from auth.principal import Principal
from auth.roles import UserType
from core.fees import calculate_fees
from core.payment_processor import (
    CheckoutSession, GatewayClient, PaymentProcessor, PayoutReceipt, PayoutState, sign_payload,
)
from database.config import build_engine, init_db
from database.models import (
    Assignment, AssignmentStatus, BankAccount, EscrowPayment, EscrowStatus, Gig, GigStatus,
    Milestone, MilestoneStatus, PaymentMethod, Profile, UserRole, utcnow,
)
from services.event_bus import EventBus
from services.notification_service import NotificationFanout
from services.realtime import hub

TEST_SECRET = "test-secret"


# =============================================================================
# Fake gateway
# =============================================================================

class FakeProcessor(PaymentProcessor):
    """In-memory PaymentProcessor. Queue results or errors to script the gateway."""

    def __init__(self, secret: str = TEST_SECRET):
        self.secret = secret
        self.checkouts = []
        self.payouts = []
        self.queries = []
        self.refunds = []
        self.checkout_error: Optional[Exception] = None
        self.refund_errors: List[Exception] = []
        self.payout_results: List[object] = []
        self.payout_states: Dict[str, object] = {}

    def create_checkout(self, request, deadline=None):
        if self.checkout_error is not None:
            raise self.checkout_error
        self.checkouts.append(request)
        gateway_ref = f"GW-{len(self.checkouts)}"
        return CheckoutSession(redirect_url=f"https://pay.test/{gateway_ref}", gateway_ref=gateway_ref)

    def verify_callback(self, payload):
        return GatewayClient(secret=self.secret).verify_callback(payload)

    def execute_payout(self, recipient_bank, amount, reference, deadline=None):
        self.payouts.append((recipient_bank, amount, reference))
        if self.payout_results:
            result = self.payout_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return PayoutReceipt(payout_ref=f"PO-{reference}", state="accepted")

    def query_payout(self, payout_ref, deadline=None):
        self.queries.append(payout_ref)
        state = self.payout_states.get(payout_ref, PayoutState(state="completed"))
        if isinstance(state, Exception):
            raise state
        return state

    def refund(self, gateway_ref, amount, reference, deadline=None):
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        self.refunds.append((gateway_ref, amount, reference))

    def callback(self, payment, status="paid", gross_amount=None, gateway_ref=None):
        """Build a signed callback body for an escrow payment."""
        payload = {
            "reference": payment.id,
            "gatewayRef": gateway_ref or payment.gateway_ref,
            "status": status,
            "grossAmount": str(gross_amount if gross_amount is not None else payment.total_charge),
        }
        payload["signature"] = sign_payload(payload, self.secret)
        return payload


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'trustwork.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    hub.attach(factory)
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def bus(session_factory):
    bus = EventBus(session_factory)
    NotificationFanout.register(bus)
    return bus


@pytest.fixture
def processor():
    return FakeProcessor()


# =============================================================================
# Seed data
# =============================================================================

SEED_PROFILES = {
    "employer": (UserRole.EMPLOYER, "Thandi Employer"),
    "employer2": (UserRole.EMPLOYER, "Pieter Employer"),
    "freelancer": (UserRole.FREELANCER, "Sipho Freelancer"),
    "freelancer2": (UserRole.FREELANCER, "Lerato Freelancer"),
    "admin": (UserRole.ADMIN, "Platform Admin"),
}


@pytest.fixture
def profiles(db) -> Dict[str, Profile]:
    rows = {}
    for key, (role, name) in SEED_PROFILES.items():
        rows[key] = Profile(
            role=role,
            display_name=name,
            email=f"{key}@trustwork.test",
            skills=["python"] if role == UserRole.FREELANCER else [],
            verified=True,
        )
        db.add(rows[key])
    db.commit()
    return rows


@pytest.fixture
def principals(profiles) -> Dict[str, Principal]:
    return {
        key: Principal(user_id=profile.id, role=UserType(profile.role.value), verified=True)
        for key, profile in profiles.items()
    }


@pytest.fixture
def make_assignment(db, profiles):
    def _make(employer: str = "employer", budget_max=Decimal("10000.00"), status=AssignmentStatus.OPEN, **extra):
        assignment = Assignment(
            employer_id=profiles[employer].id,
            title=extra.pop("title", "Build a booking site"),
            description=extra.pop("description", "A small booking website for a guest house."),
            budget_min=extra.pop("budget_min", None),
            budget_max=budget_max,
            status=status,
            **extra,
        )
        db.add(assignment)
        db.commit()
        return assignment
    return _make


@pytest.fixture
def make_gig(db, profiles):
    """Gig between employer and freelancer, with milestones given as (percentage, amount) pairs."""
    def _make(budget=Decimal("10000.00"), splits=((50, "5000.00"), (50, "5000.00")), max_revisions=2,
              status=GigStatus.OPEN, client: str = "employer", freelancer: str = "freelancer"):
        gig = Gig(
            client_id=profiles[client].id,
            freelancer_id=profiles[freelancer].id,
            title="Booking site",
            budget=budget,
            status=status,
        )
        db.add(gig)
        db.flush()
        for ordinal, (percentage, amount) in enumerate(splits):
            db.add(Milestone(
                gig_id=gig.id,
                client_id=gig.client_id,
                freelancer_id=gig.freelancer_id,
                ordinal=ordinal,
                title=f"Milestone {ordinal + 1}",
                amount=Decimal(amount),
                percentage=Decimal(percentage),
                status=MilestoneStatus.PENDING,
                revision_count=0,
                max_revisions=max_revisions,
            ))
        db.commit()
        db.refresh(gig)
        return gig
    return _make


@pytest.fixture
def make_payment(db):
    """Escrow payment row for a gig, optionally tied to a milestone."""
    def _make(gig, amount="1000.00", status=EscrowStatus.HELD, milestone=None,
              method=PaymentMethod.EFT, gateway_ref="GW-SEED"):
        fees = calculate_fees(amount, method)
        payment = EscrowPayment(
            gig_id=gig.id,
            milestone_id=milestone.id if milestone is not None else None,
            payer_id=gig.client_id,
            recipient_id=gig.freelancer_id,
            amount=fees.gross_amount,
            platform_fee=fees.platform_fee,
            payment_method=method,
            payment_fee=fees.payment_fee,
            status=status,
            gateway_ref=gateway_ref,
            held_at=utcnow() if status == EscrowStatus.HELD else None,
        )
        db.add(payment)
        db.commit()
        return payment
    return _make


@pytest.fixture
def bank_account(db, profiles):
    def _make(owner: str = "freelancer", verified: bool = True):
        account = BankAccount(
            owner_id=profiles[owner].id,
            bank_name="First National Bank",
            account_number="62000012345",
            account_holder=SEED_PROFILES[owner][1],
            branch_code="250655",
            verified=verified,
            verified_at=utcnow() if verified else None,
        )
        db.add(account)
        db.commit()
        return account
    return _make


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture
def client(session_factory, bus, processor):
    from fastapi.testclient import TestClient

    from database.config import get_db
    from routers.deps import get_bus, get_processor
    from server import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_bus] = lambda: bus
    app.dependency_overrides[get_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(profiles):
    def _headers(key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(profiles[key].id)}"}
    return _headers
