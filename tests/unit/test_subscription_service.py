"""
Unit tests for the subscription lifecycle engine against an in-memory database.
Run: pytest tests/unit/test_subscription_service.py -v
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from app.core.errors import (
    InvalidDowngradeError,
    InvalidPlanChangeError,
    NoActiveSubscriptionError,
    PaymentVerificationError,
    PlanNotFreeError,
    SubscriptionIntegrityError,
    UnsupportedGatewayError,
    ValidationError,
)
from app.models.app_setting import AppSetting
from app.models.enums import (
    BillingCycle,
    Currency,
    PaymentGatewayName,
    PaymentStatus,
    PlanChangeType,
    SubscriptionStatus,
    TargetRegion,
)
from app.models.feature_usage import FeatureUsage
from app.models.payment_transaction import PaymentTransaction
from app.models.plan import Plan, PlanPricing
from app.models.subscription import Subscription
from app.repositories.subscription_repository import SubscriptionRepository
from app.services import lifecycle
from app.services.effects import (
    CancelRemoteSubscription,
    EffectDispatcher,
    NotifyAdmins,
    NotifyUser,
)
from app.services.payment_gateways import GatewayError, get_gateway
from app.services.subscription_service import SubscriptionService


def _rows(db, user_id):
    return db.query(Subscription).filter(Subscription.user_id == user_id).order_by(Subscription.id).all()


def _active(db, user_id):
    return [s for s in _rows(db, user_id) if s.status == SubscriptionStatus.ACTIVE]


def _of_type(effects, kind):
    return [e for e in effects if isinstance(e, kind)]


def _add_plan(db, name, usd, inr, is_freemium=False):
    plan = Plan(name=name, price=Decimal(usd), billing_cycle=BillingCycle.MONTHLY, is_freemium=is_freemium, is_active=True)
    db.add(plan)
    db.flush()
    db.add(PlanPricing(plan_id=plan.id, target_region=TargetRegion.GLOBAL, currency=Currency.USD, price=Decimal(usd)))
    db.add(PlanPricing(plan_id=plan.id, target_region=TargetRegion.INDIA, currency=Currency.INR, price=Decimal(inr)))
    db.commit()
    return plan


@pytest.fixture
def user(make_user):
    return make_user("ana@example.com")


@pytest.fixture
def pro_user(service, catalog, make_user, now):
    user = make_user("pro@example.com")
    service.upgrade_to_paid_plan(
        user.id, catalog["pro"].id, "pay_pro", "razorpay",
        signature="sig", gateway_subscription_id="sub_pro", now=now,
    )
    return user


# Free activation

def test_activate_free_plan(db_session, service, catalog, user, now, dispatched):
    subscription = service.activate_free_plan(user.id, catalog["free"].id, now=now)

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.payment_gateway == PaymentGatewayName.NONE
    assert subscription.auto_renew is True
    assert subscription.end_date == now.replace(month=4)
    assert subscription.payment_reference.startswith("free_")
    assert lifecycle.events_of(subscription)[0].type == "freemium_activation"

    transaction = db_session.query(PaymentTransaction).filter(PaymentTransaction.user_id == user.id).one()
    assert transaction.amount == Decimal("0.00")
    assert transaction.gateway_transaction_id.startswith("freemium_")

    notices = _of_type(dispatched(), NotifyUser)
    assert [n.type for n in notices] == ["subscription_activated"]


def test_activate_free_plan_rejects_paid_plan(service, catalog, user):
    with pytest.raises(PlanNotFreeError):
        service.activate_free_plan(user.id, catalog["pro"].id)


def test_plan_free_in_one_region_only_is_not_free(db_session, service, catalog, user, now):
    promo = _add_plan(db_session, "Promo", "29.99", "0")

    with pytest.raises(PlanNotFreeError):
        service.activate_free_plan(user.id, promo.id, now=now)

    assert _rows(db_session, user.id) == []


def test_activate_free_plan_reuses_previous_row(db_session, service, catalog, user, now):
    first = service.activate_free_plan(user.id, catalog["free"].id, now=now)
    first.status = SubscriptionStatus.EXPIRED
    db_session.commit()

    later = now + timedelta(days=60)
    second = service.activate_free_plan(user.id, catalog["free"].id, now=later)

    assert second.id == first.id
    assert second.status == SubscriptionStatus.ACTIVE
    assert second.start_date == later
    assert lifecycle.last_event(second, lifecycle.FreemiumActivation).reactivation is True
    assert len(_rows(db_session, user.id)) == 1


def test_activate_free_plan_rejected_while_on_paid_plan(service, catalog, pro_user):
    with pytest.raises(InvalidPlanChangeError):
        service.activate_free_plan(pro_user.id, catalog["free"].id)


def test_select_paid_plan_records_pending_payment(db_session, service, catalog, user):
    result = service.associate_user_with_plan(user.id, catalog["basic"].id)

    assert result["status"] == "pending_payment"
    assert result["subscription"] is None
    setting = db_session.query(AppSetting).filter(AppSetting.key == f"user_plan_selection_{user.id}").one()
    assert setting.category == "subscription_onboarding"
    assert setting.value["status"] == "pending_payment"
    assert setting.value["plan_id"] == catalog["basic"].id
    assert _rows(db_session, user.id) == []


def test_select_free_plan_activates(service, catalog, user):
    result = service.associate_user_with_plan(user.id, catalog["free"].id)
    assert result["status"] == "active"
    assert result["subscription"].status == SubscriptionStatus.ACTIVE


# Pricing

@pytest.mark.parametrize("current,new,amount,is_upgrade", [
    ("free", "pro", Decimal("25.00"), True),
    ("free", "basic", Decimal("10.00"), True),
    ("pro", "basic", Decimal("10.00"), False),
])
def test_no_proration(service, catalog, make_user, now, current, new, amount, is_upgrade):
    user = make_user("p@example.com")
    if current == "free":
        service.activate_free_plan(user.id, catalog["free"].id, now=now)
    else:
        service.upgrade_to_paid_plan(user.id, catalog[current].id, "pay_x", "razorpay", signature="s", now=now)

    result = service.calculate_proration(user.id, catalog[new].id)

    assert result["proration_amount"] == amount
    assert result["new_plan_price"] == amount
    assert result["proration_credit"] == Decimal("0.00")
    assert result["remaining_value"] == Decimal("0.00")
    assert result["requires_payment"] is True
    assert result["is_upgrade"] is is_upgrade
    assert result["no_proration_policy"] is True


def test_proration_uses_regional_price(service, catalog, make_user, now):
    user = make_user("in@example.com", country="IN")
    service.activate_free_plan(user.id, catalog["free"].id, now=now)

    result = service.calculate_proration(user.id, catalog["pro"].id)

    assert result["proration_amount"] == Decimal("1499.00")
    assert result["currency"] == "INR"


def test_proration_without_subscription(service, catalog, user):
    result = service.calculate_proration(user.id, catalog["basic"].id)
    assert result["is_upgrade"] is True
    assert result["requires_payment"] is True
    assert result["diagnostic_info"]["reason"] == "no_current_subscription"


# Paid paths

def test_freemium_to_paid_upgrade(db_session, service, catalog, user, now, dispatched):
    free = service.activate_free_plan(user.id, catalog["free"].id, now=now)

    result = service.process_upgrade(
        user.id, catalog["pro"].id, "pay_1", "razorpay", signature="sig", gateway_subscription_id="sub_1", now=now,
    )

    new = result["subscription"]
    assert result["freemium_conversion"] is True
    assert result["amount"] == Decimal("25.00")
    assert new.previous_plan_id == catalog["free"].id
    assert new.payment_gateway == PaymentGatewayName.RAZORPAY
    assert new.payment_reference == "sub_1"
    assert [s.id for s in _active(db_session, user.id)] == [new.id]

    db_session.refresh(free)
    assert free.status == SubscriptionStatus.CANCELLED
    cancellation = lifecycle.last_event(free, lifecycle.Cancellation)
    assert cancellation.replaced_by == new.id
    assert cancellation.converted_to_paid is True

    transaction = db_session.query(PaymentTransaction).filter(PaymentTransaction.gateway_transaction_id == "pay_1").one()
    assert transaction.amount == Decimal("25.00")
    assert transaction.currency == Currency.USD
    assert transaction.status == PaymentStatus.COMPLETED

    effects = dispatched()
    assert not _of_type(effects, CancelRemoteSubscription)
    assert "subscription_activated" in [n.type for n in _of_type(effects, NotifyUser)]
    assert [a.type for a in _of_type(effects, NotifyAdmins)] == ["new_subscription"]


def test_paid_upgrade_cancels_previous_remote_subscription(db_session, service, catalog, user, now, dispatched):
    service.upgrade_to_paid_plan(
        user.id, catalog["basic"].id, "pay_basic", "razorpay", signature="s", gateway_subscription_id="sub_basic", now=now,
    )

    result = service.process_upgrade(
        user.id, catalog["pro"].id, "pay_pro", "razorpay", signature="s", gateway_subscription_id="sub_pro", now=now,
    )

    assert result["is_upgrade"] is True
    cancels = _of_type(dispatched(), CancelRemoteSubscription)
    assert cancels == [CancelRemoteSubscription(
        gateway="RAZORPAY", reference="sub_basic", cancel_at_cycle_end=False, user_id=user.id,
    )]
    assert "subscription_upgraded" in [n.type for n in _of_type(dispatched(), NotifyUser)]
    assert len(_active(db_session, user.id)) == 1


def test_failed_verification_changes_nothing(db_session, service, catalog, user, gateway, now, dispatcher):
    service.activate_free_plan(user.id, catalog["free"].id, now=now)
    dispatcher.reset_mock()
    gateway.valid = False

    with pytest.raises(PaymentVerificationError):
        service.process_upgrade(user.id, catalog["pro"].id, "pay_bad", "razorpay", signature="nope", now=now)

    active = _active(db_session, user.id)
    assert [s.plan_id for s in active] == [catalog["free"].id]
    assert db_session.query(PaymentTransaction).filter(PaymentTransaction.gateway_transaction_id == "pay_bad").count() == 0
    dispatcher.dispatch.assert_not_called()


def test_duplicate_payment_is_idempotent(db_session, service, catalog, user, now):
    first = service.upgrade_to_paid_plan(user.id, catalog["basic"].id, "pay_dup", "razorpay", signature="s", now=now)
    second = service.upgrade_to_paid_plan(user.id, catalog["basic"].id, "pay_dup", "razorpay", signature="s", now=now)

    assert first["duplicate"] is False
    assert second["duplicate"] is True
    assert second["subscription"].id == first["subscription"].id
    assert db_session.query(PaymentTransaction).filter(PaymentTransaction.gateway_transaction_id == "pay_dup").count() == 1
    assert len(_rows(db_session, user.id)) == 1


def test_payment_reused_by_another_user(service, catalog, user, make_user, now):
    service.upgrade_to_paid_plan(user.id, catalog["basic"].id, "pay_shared", "razorpay", signature="s", now=now)
    other = make_user("other@example.com")
    with pytest.raises(ValidationError):
        service.upgrade_to_paid_plan(other.id, catalog["basic"].id, "pay_shared", "razorpay", signature="s", now=now)


def test_paid_purchase_supersedes_grace_period_row(db_session, service, catalog, user, now):
    free = service.activate_free_plan(user.id, catalog["free"].id, now=now)
    free.status = SubscriptionStatus.GRACE_PERIOD
    free.grace_period_end = now + timedelta(days=7)
    db_session.commit()

    result = service.upgrade_to_paid_plan(user.id, catalog["basic"].id, "pay_2", "razorpay", signature="s", now=now)

    db_session.refresh(free)
    assert free.status == SubscriptionStatus.CANCELLED
    assert lifecycle.last_event(free, lifecycle.Cancellation).replaced_by == result["subscription"].id


def test_pending_plan_selection_is_completed_by_payment(db_session, service, catalog, user, now):
    service.associate_user_with_plan(user.id, catalog["basic"].id)
    service.upgrade_to_paid_plan(user.id, catalog["basic"].id, "pay_3", "razorpay", signature="s", now=now)

    setting = db_session.query(AppSetting).filter(AppSetting.key == f"user_plan_selection_{user.id}").one()
    assert setting.value["status"] == "completed"


def test_unsupported_gateway(db_session, catalog, user):
    service = SubscriptionService(SubscriptionRepository(db_session), dispatcher=Mock(), gateway_lookup=get_gateway)
    with pytest.raises(UnsupportedGatewayError):
        service.process_upgrade(user.id, catalog["pro"].id, "pay_1", "stripe", signature="s")


def test_upgrade_to_same_plan_is_rejected(service, catalog, pro_user):
    with pytest.raises(InvalidPlanChangeError):
        service.process_upgrade(pro_user.id, catalog["pro"].id, "pay_again", "razorpay", signature="s")


def test_upgrade_to_free_plan_is_rejected(db_session, service, catalog, pro_user, now):
    with pytest.raises(InvalidPlanChangeError):
        service.process_upgrade(pro_user.id, catalog["free"].id, "pay_free", "razorpay", signature="s", now=now)

    active = _active(db_session, pro_user.id)
    assert [s.plan_id for s in active] == [catalog["pro"].id]


def test_paid_switch_to_cheaper_plan_applies_now(db_session, service, catalog, pro_user, now):
    result = service.process_upgrade(pro_user.id, catalog["basic"].id, "pay_basic", "razorpay", signature="s", now=now)

    assert result["subscription"].plan_id == catalog["basic"].id
    assert [s.plan_id for s in _active(db_session, pro_user.id)] == [catalog["basic"].id]


def test_remote_cancel_failure_does_not_undo_upgrade(db_session, catalog, user, now):
    class FlakyGateway:
        name = "RAZORPAY"

        def verify_payment(self, *args, **kwargs):
            return True

        def cancel_subscription(self, reference, cancel_at_cycle_end=False):
            raise GatewayError("Razorpay request timed out")

    flaky = FlakyGateway()
    dispatcher = EffectDispatcher(db_session, notifications=Mock(), gateway_lookup=lambda name: flaky)
    service = SubscriptionService(SubscriptionRepository(db_session), dispatcher=dispatcher, gateway_lookup=lambda name: flaky)

    service.upgrade_to_paid_plan(user.id, catalog["basic"].id, "pay_a", "razorpay", gateway_subscription_id="sub_a", now=now)
    result = service.process_upgrade(user.id, catalog["pro"].id, "pay_b", "razorpay", gateway_subscription_id="sub_b", now=now)

    active = _active(db_session, user.id)
    assert [s.id for s in active] == [result["subscription"].id]
    assert active[0].plan_id == catalog["pro"].id


# Downgrades

def test_schedule_downgrade_keeps_current_plan(db_session, service, catalog, pro_user, now, dispatched):
    result = service.schedule_downgrade(pro_user.id, catalog["basic"].id, now=now)

    subscription = result["subscription"]
    assert subscription.plan_id == catalog["pro"].id
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.pending_plan_change_to == catalog["basic"].id
    assert subscription.pending_plan_change_type == PlanChangeType.DOWNGRADE
    assert subscription.pending_plan_change_date == subscription.end_date
    assert "April 15, 2024" in result["message"]
    assert "continue to have access" in result["message"]

    cancels = _of_type(dispatched(), CancelRemoteSubscription)
    assert cancels[-1].reference == "sub_pro"
    assert cancels[-1].cancel_at_cycle_end is True


def test_schedule_downgrade_to_free_mentions_lost_features(service, catalog, pro_user, now):
    result = service.schedule_downgrade(pro_user.id, catalog["free"].id, now=now)
    assert "free Free plan" in result["message"]
    assert "premium features will no longer be available" in result["message"]


def test_downgrade_must_be_cheaper(service, catalog, make_user, now):
    user = make_user("b@example.com")
    service.upgrade_to_paid_plan(user.id, catalog["basic"].id, "pay_b1", "razorpay", signature="s", now=now)
    with pytest.raises(InvalidDowngradeError):
        service.schedule_downgrade(user.id, catalog["pro"].id, now=now)


def test_downgrade_without_subscription(service, catalog, user):
    with pytest.raises(NoActiveSubscriptionError):
        service.schedule_downgrade(user.id, catalog["free"].id)


def test_scheduled_freemium_downgrade_applies_at_period_end(db_session, service, catalog, pro_user, now):
    service.schedule_downgrade(pro_user.id, catalog["free"].id, now=now)

    results = service.process_subscription_cycle(now + timedelta(days=32))

    assert results["plan_changes"]["freemium_downgrades"] == {"processed": 1, "failed": 0}
    old, new = _rows(db_session, pro_user.id)
    assert old.status == SubscriptionStatus.CANCELLED
    assert new.status == SubscriptionStatus.ACTIVE
    assert new.plan_id == catalog["free"].id
    assert new.previous_plan_id == catalog["pro"].id
    assert new.start_date == old.end_date
    assert new.payment_gateway == PaymentGatewayName.NONE
    assert new.auto_renew is True
    assert new.payment_reference.startswith("free_plan_")
    assert db_session.query(FeatureUsage).filter(FeatureUsage.user_id == pro_user.id).count() == 1
    assert db_session.query(PaymentTransaction).filter(
        PaymentTransaction.gateway_transaction_id.like("freemium_downgrade_%")
    ).count() == 1


def test_scheduled_paid_downgrade_records_pending_transaction(db_session, service, catalog, pro_user, now):
    service.schedule_downgrade(pro_user.id, catalog["basic"].id, now=now)

    results = service.process_scheduled_changes(now + timedelta(days=32))

    assert results["downgrades"] == {"processed": 1, "failed": 0}
    new = _active(db_session, pro_user.id)[0]
    assert new.plan_id == catalog["basic"].id
    assert new.auto_renew is False
    assert new.payment_reference.startswith("scheduled_downgrade_")
    transaction = db_session.query(PaymentTransaction).filter(PaymentTransaction.subscription_id == new.id).one()
    assert transaction.status == PaymentStatus.PENDING
    assert transaction.amount == Decimal("10.00")


def test_scheduled_downgrade_deferred_to_live_end_date(db_session, service, catalog, pro_user, now):
    result = service.schedule_downgrade(pro_user.id, catalog["basic"].id, now=now)
    subscription = result["subscription"]
    extended = subscription.end_date + timedelta(days=30)
    subscription.end_date = extended
    db_session.commit()

    results = service.process_scheduled_changes(now + timedelta(days=32))

    assert results["deferred"] == 1
    assert results["downgrades"]["processed"] == 0
    db_session.refresh(subscription)
    assert subscription.plan_id == catalog["pro"].id
    assert subscription.pending_plan_change_date == extended
    assert subscription.pending_plan_change_to == catalog["basic"].id


def test_stray_scheduled_upgrade_is_cleared(db_session, service, catalog, pro_user, now):
    subscription = _active(db_session, pro_user.id)[0]
    subscription.pending_plan_change_to = catalog["basic"].id
    subscription.pending_plan_change_date = now
    subscription.pending_plan_change_type = PlanChangeType.UPGRADE
    db_session.commit()

    results = service.process_scheduled_changes(now + timedelta(hours=1))

    assert results["upgrades"] == {"processed": 1, "failed": 0}
    db_session.refresh(subscription)
    assert subscription.pending_plan_change_to is None
    assert subscription.plan_id == catalog["pro"].id


# Cancellation, grace and expiry

def test_cancel_then_grace_then_expire(db_session, service, catalog, pro_user, now, dispatched):
    cancelled = service.cancel_subscription(pro_user.id, now=now)
    assert cancelled.status == SubscriptionStatus.ACTIVE
    assert cancelled.auto_renew is False
    assert cancelled.cancel_date == now
    assert _of_type(dispatched(), CancelRemoteSubscription)[-1].cancel_at_cycle_end is True

    after_end = cancelled.end_date + timedelta(days=1)
    results = service.process_subscription_cycle(after_end)
    assert results["grace_periods"] == {"processed": 1, "failed": 0}
    db_session.refresh(cancelled)
    assert cancelled.status == SubscriptionStatus.GRACE_PERIOD
    assert cancelled.grace_period_end == after_end + timedelta(days=7)

    results = service.process_subscription_cycle(after_end + timedelta(days=8))
    assert results["expirations"] == {"processed": 1, "failed": 0}
    db_session.refresh(cancelled)
    assert cancelled.status == SubscriptionStatus.EXPIRED
    assert cancelled.auto_renew is False
    types = [n.type for n in _of_type(dispatched(), NotifyUser)]
    assert "subscription_grace_period" in types
    assert "subscription_expired" in types


def test_cancel_skips_remote_call_before_billing_starts(service, catalog, make_user, now, dispatcher, dispatched):
    user = make_user("future@example.com")
    service.upgrade_to_paid_plan(
        user.id, catalog["basic"].id, "pay_f", "razorpay", signature="s", gateway_subscription_id="sub_f",
        now=now + timedelta(days=10),
    )
    dispatcher.reset_mock()

    service.cancel_subscription(user.id, now=now)

    assert not _of_type(dispatched(), CancelRemoteSubscription)


def test_cancel_without_subscription(service, user):
    with pytest.raises(NoActiveSubscriptionError):
        service.cancel_subscription(user.id)


# Renewals and sweep

def test_freemium_renewal_extends_period_and_resets_usage(db_session, service, catalog, user, now):
    subscription = service.activate_free_plan(user.id, catalog["free"].id, now=now)
    usage = db_session.query(FeatureUsage).filter(FeatureUsage.user_id == user.id).one()
    usage.usage_count = 2
    db_session.commit()
    old_end = subscription.end_date

    results = service.process_subscription_cycle(old_end - timedelta(hours=12))

    assert results["renewals"]["succeeded"] == 1
    db_session.refresh(subscription)
    assert subscription.start_date == old_end
    assert subscription.end_date == old_end.replace(month=5)
    assert lifecycle.last_event(subscription, lifecycle.Renewal).previous_end_date == old_end
    db_session.refresh(usage)
    assert usage.usage_count == 0
    assert db_session.query(PaymentTransaction).filter(
        PaymentTransaction.gateway_transaction_id.like("freemium_renewal_%")
    ).count() == 1


def test_renewal_keeps_scheduled_change_between_free_plans(db_session, service, catalog, user, now):
    starter = _add_plan(db_session, "Starter", "0", "0", is_freemium=True)
    subscription = service.activate_free_plan(user.id, catalog["free"].id, now=now)
    service.schedule_downgrade(user.id, starter.id, now=now)
    end = subscription.end_date

    results = service.process_subscription_cycle(end - timedelta(hours=2))

    assert results["renewals"]["attempted"] == 0
    db_session.refresh(subscription)
    assert subscription.pending_plan_change_to == starter.id
    assert subscription.end_date == end

    results = service.process_subscription_cycle(end + timedelta(hours=1))

    assert results["plan_changes"]["freemium_downgrades"] == {"processed": 1, "failed": 0}
    assert [s.plan_id for s in _active(db_session, user.id)] == [starter.id]


def test_paid_plan_without_gateway_is_not_renewed(db_session, service, catalog, user, now):
    row = Subscription(
        user_id=user.id, plan_id=catalog["basic"].id, start_date=now, end_date=now + timedelta(hours=6),
        status=SubscriptionStatus.ACTIVE, auto_renew=True, payment_gateway=PaymentGatewayName.NONE,
        lifecycle_events=[],
    )
    db_session.add(row)
    db_session.commit()

    results = service.process_subscription_cycle(now)

    assert results["renewals"]["anomalies"] == 1
    assert results["renewals"]["succeeded"] == 0
    db_session.refresh(row)
    assert row.end_date == now + timedelta(hours=6)


def test_gateway_billed_rows_are_left_to_the_gateway(service, catalog, pro_user, now):
    results = service.process_subscription_cycle(now.replace(month=4) - timedelta(hours=1))
    assert results["renewals"]["attempted"] == 0


def test_two_active_rows_are_an_integrity_error(db_session, service, catalog, user, now):
    for plan in (catalog["free"], catalog["basic"]):
        db_session.add(Subscription(
            user_id=user.id, plan_id=plan.id, start_date=now, end_date=now + timedelta(days=30),
            status=SubscriptionStatus.ACTIVE, payment_gateway=PaymentGatewayName.NONE, lifecycle_events=[],
        ))
    db_session.commit()

    with pytest.raises(SubscriptionIntegrityError):
        service.get_active_subscription(user.id)


def test_sweep_isolates_item_failures(db_session, service, catalog, make_user, now):
    lapsed = []
    for email in ("a@example.com", "b@example.com"):
        user = make_user(email)
        subscription = service.activate_free_plan(user.id, catalog["free"].id, now=now)
        subscription.auto_renew = False
        lapsed.append(subscription.id)
    db_session.commit()

    original = service.repo.get_by_id

    def flaky(subscription_id):
        if subscription_id == lapsed[0]:
            raise RuntimeError("row locked")
        return original(subscription_id)

    service.repo.get_by_id = flaky
    results = service.process_subscription_cycle(now + timedelta(days=40))

    assert results["grace_periods"] == {"processed": 1, "failed": 1}
    assert results["plan_changes"] is not None


def test_reset_feature_usage(db_session, service, catalog, user, now):
    service.activate_free_plan(user.id, catalog["free"].id, now=now)
    assert service.reset_feature_usage(now + timedelta(days=32)) == 1


def test_history_lists_every_row(service, catalog, user, now):
    service.activate_free_plan(user.id, catalog["free"].id, now=now)
    service.process_upgrade(user.id, catalog["basic"].id, "pay_h", "razorpay", signature="s", now=now)

    history = service.get_subscription_history(user.id)
    assert [s.status for s in history] == [SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED]
