"""
Shared fixtures: an in-memory SQLite database with the full schema and a small
plan catalog (free, basic, pro) priced for GLOBAL and INDIA.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.db.base import Base
from app.models.billing_details import UserBillingDetails
from app.models.enums import (
    BillingCycle,
    Currency,
    FeatureType,
    LimitType,
    ResetFrequency,
    TargetRegion,
)
from app.models.plan import Feature, Plan, PlanFeature, PlanPricing
from app.models.user import User
from app.repositories.subscription_repository import SubscriptionRepository
from app.services.payment_gateways import PaymentGateway
from app.services.subscription_service import SubscriptionService


@pytest.fixture
def now():
    return datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeGateway(PaymentGateway):
    name = "RAZORPAY"

    def __init__(self, valid: bool = True):
        self.valid = valid
        self.verified = []
        self.cancelled = []

    def verify_payment(self, payment_id, signature=None, gateway_subscription_id=None):
        self.verified.append(payment_id)
        return self.valid

    def cancel_subscription(self, reference, cancel_at_cycle_end=False):
        self.cancelled.append((reference, cancel_at_cycle_end))
        return {"id": reference, "status": "cancelled"}


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def _make_user(db, email: str, country: Optional[str] = None, is_admin: bool = False) -> User:
    user = User(name=email.split("@")[0], email=email, is_active=True, is_admin=is_admin)
    db.add(user)
    db.flush()
    if country is not None:
        db.add(UserBillingDetails(user_id=user.id, country=country))
    db.commit()
    return user


def _plan(db, name, price, cycle, is_freemium, usd, inr):
    plan = Plan(name=name, price=Decimal(price), billing_cycle=cycle, is_freemium=is_freemium, is_active=True)
    db.add(plan)
    db.flush()
    db.add(PlanPricing(plan_id=plan.id, target_region=TargetRegion.GLOBAL, currency=Currency.USD, price=Decimal(usd)))
    db.add(PlanPricing(plan_id=plan.id, target_region=TargetRegion.INDIA, currency=Currency.INR, price=Decimal(inr)))
    return plan


@pytest.fixture
def catalog(db_session):
    db = db_session
    free = _plan(db, "Free", "0", BillingCycle.MONTHLY, True, "0", "0")
    basic = _plan(db, "Basic", "10", BillingCycle.MONTHLY, False, "10", "499")
    pro = _plan(db, "Pro", "25", BillingCycle.MONTHLY, False, "25", "1499")

    projects = Feature(code="projects", name="Projects", feature_type=FeatureType.ADVANCED, is_countable=True)
    ai = Feature(code="ai_assistant", name="AI assistant", feature_type=FeatureType.PROFESSIONAL, is_token_based=True)
    exports = Feature(code="exports", name="Exports", feature_type=FeatureType.ADVANCED)
    dashboard = Feature(code="dashboard", name="Dashboard", feature_type=FeatureType.ESSENTIAL)
    db.add_all([projects, ai, exports, dashboard])
    db.flush()

    db.add_all([
        PlanFeature(plan_id=free.id, feature_id=projects.id, limit_type=LimitType.COUNT, limit_value=3,
                    reset_frequency=ResetFrequency.MONTHLY),
        PlanFeature(plan_id=basic.id, feature_id=projects.id, limit_type=LimitType.COUNT, limit_value=10,
                    reset_frequency=ResetFrequency.MONTHLY),
        PlanFeature(plan_id=basic.id, feature_id=ai.id, limit_type=LimitType.COUNT, limit_value=1000,
                    reset_frequency=ResetFrequency.DAILY),
        PlanFeature(plan_id=basic.id, feature_id=exports.id, limit_type=LimitType.BOOLEAN, is_enabled=False),
        PlanFeature(plan_id=pro.id, feature_id=projects.id, limit_type=LimitType.UNLIMITED),
        PlanFeature(plan_id=pro.id, feature_id=exports.id, limit_type=LimitType.BOOLEAN, is_enabled=True),
    ])
    db.commit()
    return {"free": free, "basic": basic, "pro": pro}


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatcher():
    return Mock()


@pytest.fixture
def service(db_session, gateway, dispatcher):
    return SubscriptionService(
        SubscriptionRepository(db_session),
        dispatcher=dispatcher,
        gateway_lookup=lambda name: gateway,
    )


@pytest.fixture
def make_user(db_session):
    return lambda email, country=None, is_admin=False: _make_user(db_session, email, country, is_admin)


@pytest.fixture
def dispatched(dispatcher):
    """All effects handed to the mocked dispatcher so far, in order."""
    return lambda: [effect for call in dispatcher.dispatch.call_args_list for effect in call.args[0]]
