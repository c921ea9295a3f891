"""
Subscription lifecycle engine.

Owns activation, paid upgrades, scheduled downgrades, cancellation and the
periodic reconciliation sweep. Every mutation commits its database work in a
single transaction and only then dispatches notifications, analytics and
remote gateway cancellations (see ``app.services.effects``).
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from app.core.config import settings
from app.core.errors import (
    InvalidDowngradeError,
    InvalidPlanChangeError,
    NoActiveSubscriptionError,
    PaymentVerificationError,
    PlanNotFoundError,
    PlanNotFreeError,
    SubscriptionIntegrityError,
    ValidationError,
)
from app.models.enums import (
    Currency,
    PaymentGatewayName,
    PaymentStatus,
    PlanChangeType,
    SubscriptionStatus,
)
from app.models.payment_transaction import PaymentTransaction
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.repositories.app_setting_repository import AppSettingRepository
from app.repositories.billing_repository import BillingRepository
from app.repositories.feature_usage_repository import FeatureUsageRepository
from app.repositories.plan_repository import PlanRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.transaction_repository import TransactionRepository
from app.services import lifecycle
from app.services.effects import (
    CancelRemoteSubscription,
    EffectDispatcher,
    NotifyAdmins,
    NotifyUser,
    RecordAnalytics,
)
from app.services.feature_usage_service import FeatureUsageService
from app.services.lifecycle import LifecycleState
from app.services.payment_gateways import PaymentGateway, get_gateway
from app.services.pricing import (
    PlanPrice,
    ZERO,
    add_billing_cycle,
    currency_for_region,
    is_free_plan,
    plan_price,
    resolve_region,
)

logger = logging.getLogger(__name__)

ONBOARDING_CATEGORY = "subscription_onboarding"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _millis(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def _format_date(value: datetime) -> str:
    return f"{value.strftime('%B')} {value.day}, {value.year}"


class SubscriptionService:
    def __init__(
        self,
        repo: SubscriptionRepository,
        dispatcher: Optional[EffectDispatcher] = None,
        gateway_lookup: Callable[[str], PaymentGateway] = get_gateway,
    ):
        self.repo = repo
        self.db = repo.db
        self.plans = PlanRepository(self.db)
        self.transactions = TransactionRepository(self.db)
        self.billing = BillingRepository(self.db)
        self.app_settings = AppSettingRepository(self.db)
        self.usage = FeatureUsageService(self.plans, FeatureUsageRepository(self.db))
        self.gateway_lookup = gateway_lookup
        self.dispatcher = dispatcher or EffectDispatcher(self.db, gateway_lookup=gateway_lookup)

    # Reads

    def get_active_subscription(self, user_id: int) -> Optional[Subscription]:
        """The user's single ACTIVE row, with its plan loaded, or None."""
        active = self.repo.list_active_for_user(user_id)
        if len(active) > 1:
            ids = [s.id for s in active]
            logger.error(f"User {user_id} has {len(active)} ACTIVE subscriptions: {ids}")
            raise SubscriptionIntegrityError(
                "More than one active subscription found; manual reconciliation required",
                details={"user_id": user_id, "subscription_ids": ids},
            )
        return active[0] if active else None

    def get_subscription_history(self, user_id: int) -> List[Subscription]:
        return self.repo.list_by_user(user_id)

    def get_feature_usage(self, user_id: int):
        return self.usage.list_for_user(user_id)

    # Plan selection and free activation

    def associate_user_with_plan(self, user_id: int, plan_id: int) -> Dict[str, Any]:
        """Route a plan choice: freemium activates now, paid plans wait for payment."""
        plan = self._get_plan(plan_id)
        if plan.is_freemium:
            subscription = self.activate_free_plan(user_id, plan_id)
            return {"status": "active", "plan_id": plan.id, "subscription": subscription}

        now = _utcnow()
        try:
            self.app_settings.upsert(
                key=f"user_plan_selection_{user_id}",
                value={
                    "user_id": user_id,
                    "plan_id": plan.id,
                    "plan_name": plan.name,
                    "status": "pending_payment",
                    "selected_at": now.isoformat(),
                },
                category=ONBOARDING_CATEGORY,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"User {user_id} selected paid plan {plan.id}; waiting for payment")
        return {"status": "pending_payment", "plan_id": plan.id, "subscription": None}

    def activate_free_plan(self, user_id: int, plan_id: int, now: Optional[datetime] = None) -> Subscription:
        """
        Activate a free plan without payment.

        Reuses the user's previous row for the same plan when there is one,
        otherwise inserts a new row. A user already ACTIVE on a paid plan must
        go through ``schedule_downgrade``; an ACTIVE row on another free plan
        is cancelled in the same transaction.
        """
        now = now or _utcnow()
        plan = self._get_plan(plan_id)
        if not is_free_plan(plan):
            raise PlanNotFreeError(f"Plan {plan.name} is not a free plan", details={"plan_id": plan.id})

        effects: List[Any] = []
        try:
            current = self.get_active_subscription(user_id)
            superseded = None
            if current is not None and current.plan_id != plan.id:
                if not is_free_plan(current.plan):
                    raise InvalidPlanChangeError(
                        "You are on a paid plan; schedule a downgrade to switch to a free plan",
                        details={"current_plan_id": current.plan_id, "plan_id": plan.id},
                    )
                effects.append(RecordAnalytics(
                    "free_plan_switch",
                    user_id,
                    {"from_plan_id": current.plan_id, "to_plan_id": plan.id},
                ))
                lifecycle.transition(current, LifecycleState.CANCELLED)
                current.auto_renew = False
                current.cancel_date = now
                superseded = current
                self.db.flush()

            end_date = add_billing_cycle(now, plan.billing_cycle)
            subscription = self.repo.get_by_user_and_plan(user_id, plan.id)
            reactivation = subscription is not None
            if reactivation:
                lifecycle.transition(subscription, LifecycleState.ACTIVE)
                subscription.start_date = now
                subscription.end_date = end_date
                subscription.auto_renew = True
                subscription.payment_gateway = PaymentGatewayName.NONE
                subscription.payment_reference = subscription.payment_reference or f"free_{_millis(now)}"
                subscription.cancel_date = None
                subscription.grace_period_end = None
                self.db.flush()
            else:
                subscription = Subscription(
                    user_id=user_id,
                    plan_id=plan.id,
                    start_date=now,
                    end_date=end_date,
                    auto_renew=True,
                    payment_gateway=PaymentGatewayName.NONE,
                    payment_reference=f"free_{_millis(now)}",
                    lifecycle_events=[],
                )
                lifecycle.transition(subscription, LifecycleState.ACTIVE)
                self.repo.add(subscription)

            lifecycle.append_event(
                subscription,
                lifecycle.FreemiumActivation(at=now, plan_id=plan.id, reactivation=reactivation),
            )
            if superseded is not None:
                lifecycle.append_event(
                    superseded,
                    lifecycle.Cancellation(
                        at=now, reason="switched_free_plan", replaced_by=subscription.id, was_freemium=True,
                    ),
                )

            self.usage.initialize_usage(user_id, plan.id, now)
            self._record_zero_transaction(subscription, f"freemium_{subscription.id}_{_millis(now)}", "freemium_activation")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Free plan {plan.id} activated for user {user_id} (subscription {subscription.id}, reactivation={reactivation})")
        effects.append(NotifyUser(
            user_id,
            "subscription_activated",
            f"Your {plan.name} plan is now active.",
            data={"plan_id": plan.id, "subscription_id": subscription.id, "end_date": end_date.isoformat()},
        ))
        self.dispatcher.dispatch(effects)
        return subscription

    # Pricing

    def calculate_proration(self, user_id: int, new_plan_id: int) -> Dict[str, Any]:
        """
        Price a plan change. There is no proration: the amount due is always
        the full price of the new plan and the credit is always zero.
        """
        new_plan = self._get_plan(new_plan_id)
        region = self._region_for(user_id)
        new_price = plan_price(new_plan, region)
        current = self.get_active_subscription(user_id)

        if current is None:
            return {
                "proration_amount": new_price.amount,
                "proration_credit": ZERO,
                "requires_payment": new_price.amount > ZERO,
                "is_upgrade": True,
                "original_plan_price": ZERO,
                "new_plan_price": new_price.amount,
                "remaining_value": ZERO,
                "currency": new_price.currency.value,
                "no_proration_policy": True,
                "diagnostic_info": {
                    "reason": "no_current_subscription",
                    "region": region.value,
                    "new_plan_id": new_plan.id,
                },
            }

        current_price = plan_price(current.plan, region)
        now = _utcnow()
        days_remaining = max(0, (current.end_date - now).days)
        return {
            "proration_amount": new_price.amount,
            "proration_credit": ZERO,
            "requires_payment": new_price.amount > ZERO,
            "is_upgrade": new_price.amount > current_price.amount,
            "original_plan_price": current_price.amount,
            "new_plan_price": new_price.amount,
            "remaining_value": ZERO,
            "currency": new_price.currency.value,
            "no_proration_policy": True,
            "diagnostic_info": {
                "region": region.value,
                "current_plan_id": current.plan_id,
                "new_plan_id": new_plan.id,
                "days_remaining_in_cycle": days_remaining,
            },
        }

    # Paid paths

    def process_upgrade(
        self,
        user_id: int,
        new_plan_id: int,
        payment_id: str,
        gateway: str,
        signature: Optional[str] = None,
        gateway_subscription_id: Optional[str] = None,
        is_upgrade: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Replace the user's active subscription with a paid one on another plan.

        Payment verification is the only hard failure. The old row is
        cancelled and the new row inserted in the same transaction; the old
        remote subscription is cancelled immediately after commit, and a
        failure there is only logged.

        The change applies in either price direction, so a paid switch to a
        cheaper plan takes effect now. Two targets are refused with
        ``InvalidPlanChangeError``: the current plan, and free plans, which
        are never paid for and go through ``schedule_downgrade`` instead.
        """
        now = now or _utcnow()
        self._require_payment_fields(user_id, new_plan_id, payment_id)
        gateway_impl = self.gateway_lookup(gateway)

        self._verify_payment(gateway_impl, payment_id, signature, gateway_subscription_id)
        duplicate = self._find_duplicate(user_id, payment_id)
        if duplicate is not None:
            return duplicate

        current = self.get_active_subscription(user_id)
        if current is None:
            logger.info(f"User {user_id} has no active subscription; treating upgrade as first paid subscription")
            return self.upgrade_to_paid_plan(
                user_id, new_plan_id, payment_id, gateway,
                signature=signature, gateway_subscription_id=gateway_subscription_id,
                is_upgrade=False, now=now,
            )

        new_plan = self._get_plan(new_plan_id)
        if new_plan.id == current.plan_id:
            raise InvalidPlanChangeError("You are already subscribed to this plan", details={"plan_id": new_plan.id})
        if is_free_plan(new_plan):
            raise InvalidPlanChangeError(
                "Free plans are not purchased; schedule a downgrade instead",
                details={"plan_id": new_plan.id},
            )

        region = self._region_for(user_id)
        current_price = plan_price(current.plan, region)
        new_price = plan_price(new_plan, region)
        if is_upgrade is None:
            is_upgrade = new_price.amount > current_price.amount
        was_freemium = is_free_plan(current.plan)

        effects: List[Any] = [RecordAnalytics(
            "upgrade_attempt",
            user_id,
            {
                "from_plan_id": current.plan_id,
                "to_plan_id": new_plan.id,
                "is_upgrade": is_upgrade,
                "from_price": str(current_price.amount),
                "to_price": str(new_price.amount),
            },
        )]
        if was_freemium:
            effects.append(RecordAnalytics(
                "freemium_conversion",
                user_id,
                {"from_plan_id": current.plan_id, "to_plan_id": new_plan.id},
            ))

        old_gateway = PaymentGatewayName(current.payment_gateway)
        old_reference = current.payment_reference
        old_plan_name = current.plan.name
        try:
            lifecycle.transition(current, LifecycleState.CANCELLED)
            current.auto_renew = False
            current.cancel_date = now
            self.db.flush()

            subscription = Subscription(
                user_id=user_id,
                plan_id=new_plan.id,
                start_date=now,
                end_date=add_billing_cycle(now, new_plan.billing_cycle),
                auto_renew=True,
                payment_gateway=PaymentGatewayName(gateway_impl.name),
                payment_reference=gateway_subscription_id or payment_id,
                previous_plan_id=current.plan_id,
                upgrade_date=now,
                lifecycle_events=[],
            )
            lifecycle.transition(subscription, LifecycleState.ACTIVE)
            self.repo.add(subscription)

            lifecycle.append_event(subscription, lifecycle.Upgrade(
                at=now,
                from_plan_id=current.plan_id,
                to_plan_id=new_plan.id,
                payment_id=payment_id,
                amount=new_price.amount,
                currency=new_price.currency.value,
                is_upgrade=is_upgrade,
            ))
            if was_freemium:
                lifecycle.append_event(subscription, lifecycle.FreemiumConversion(
                    at=now, from_plan_id=current.plan_id, to_plan_id=new_plan.id,
                ))
            lifecycle.append_event(current, lifecycle.Cancellation(
                at=now,
                reason="freemium_conversion" if was_freemium else ("upgrade" if is_upgrade else "plan_change"),
                replaced_by=subscription.id,
                was_freemium=was_freemium,
                converted_to_paid=was_freemium,
            ))

            self.transactions.add(PaymentTransaction(
                user_id=user_id,
                subscription_id=subscription.id,
                amount=new_price.amount,
                currency=new_price.currency,
                gateway=PaymentGatewayName(gateway_impl.name),
                gateway_transaction_id=payment_id,
                status=PaymentStatus.COMPLETED,
                details={
                    "type": "freemium_conversion" if was_freemium else "plan_change",
                    "previous_plan_id": current.plan_id,
                    "previous_subscription_id": current.id,
                    "gateway_subscription_id": gateway_subscription_id,
                    "is_upgrade": is_upgrade,
                    "no_proration_policy": True,
                },
            ))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            duplicate = self._find_duplicate(user_id, payment_id)
            if duplicate is not None:
                return duplicate
            raise
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"User {user_id} moved from plan {current.plan_id} to {new_plan.id} "
            f"(subscription {current.id} -> {subscription.id}, {new_price.amount} {new_price.currency.value})"
        )

        if old_gateway != PaymentGatewayName.NONE and old_reference and old_reference != subscription.payment_reference:
            effects.append(CancelRemoteSubscription(
                gateway=old_gateway.value, reference=old_reference, cancel_at_cycle_end=False, user_id=user_id,
            ))
        if was_freemium:
            effects.append(NotifyUser(
                user_id,
                "subscription_activated",
                f"Welcome to {new_plan.name}! Your upgrade from the free plan is complete and all premium features are now unlocked.",
                data={"plan_id": new_plan.id, "subscription_id": subscription.id, "freemium_conversion": True},
            ))
        else:
            verb = "upgraded" if is_upgrade else "changed"
            effects.append(NotifyUser(
                user_id,
                "subscription_upgraded",
                f"Your plan has been {verb} from {old_plan_name} to {new_plan.name}. "
                f"You were charged {new_price.amount} {new_price.currency.value}.",
                data={"plan_id": new_plan.id, "subscription_id": subscription.id, "previous_plan_id": current.plan_id},
            ))
        effects.append(self._admin_new_subscription(user_id, new_plan, new_price, subscription))
        self.dispatcher.dispatch(effects)

        return {
            "subscription": subscription,
            "previous_subscription_id": current.id,
            "is_upgrade": is_upgrade,
            "freemium_conversion": was_freemium,
            "amount": new_price.amount,
            "currency": new_price.currency.value,
            "duplicate": False,
        }

    def upgrade_to_paid_plan(
        self,
        user_id: int,
        plan_id: int,
        payment_id: str,
        gateway: str,
        signature: Optional[str] = None,
        gateway_subscription_id: Optional[str] = None,
        is_upgrade: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        First paid subscription for a user with nothing ACTIVE.

        Re-submitting a payment id that was already recorded returns the
        subscription created the first time and writes nothing.
        """
        now = now or _utcnow()
        self._require_payment_fields(user_id, plan_id, payment_id)
        gateway_impl = self.gateway_lookup(gateway)

        if self.get_active_subscription(user_id) is not None:
            return self.process_upgrade(
                user_id, plan_id, payment_id, gateway,
                signature=signature, gateway_subscription_id=gateway_subscription_id, now=now,
            )

        self._verify_payment(gateway_impl, payment_id, signature, gateway_subscription_id)

        duplicate = self._find_duplicate(user_id, payment_id)
        if duplicate is not None:
            return duplicate

        plan = self._get_plan(plan_id)
        if plan.is_freemium:
            raise InvalidPlanChangeError("Freemium plans are activated without payment", details={"plan_id": plan.id})

        region = self._region_for(user_id)
        price = plan_price(plan, region)
        expected_currency = currency_for_region(region)
        if price.currency != expected_currency:
            logger.warning(
                f"Plan {plan.id} has no {expected_currency.value} price for region {region.value}; "
                f"charging {price.amount} {price.currency.value}"
            )

        try:
            subscription = Subscription(
                user_id=user_id,
                plan_id=plan.id,
                start_date=now,
                end_date=add_billing_cycle(now, plan.billing_cycle),
                auto_renew=True,
                payment_gateway=PaymentGatewayName(gateway_impl.name),
                payment_reference=gateway_subscription_id or payment_id,
                lifecycle_events=[],
            )
            lifecycle.transition(subscription, LifecycleState.ACTIVE)
            self.repo.add(subscription)
            lifecycle.append_event(subscription, lifecycle.PaidActivation(
                at=now,
                plan_id=plan.id,
                payment_id=payment_id,
                gateway=gateway_impl.name,
                amount=price.amount,
                currency=price.currency.value,
            ))

            # A lapsed row still in grace is superseded by the new purchase
            for lapsed in self.repo.list_in_status_for_user(user_id, SubscriptionStatus.GRACE_PERIOD):
                lifecycle.transition(lapsed, LifecycleState.CANCELLED)
                lapsed.auto_renew = False
                lapsed.cancel_date = now
                lifecycle.append_event(lapsed, lifecycle.Cancellation(
                    at=now, reason="repurchased", replaced_by=subscription.id,
                ))

            self.transactions.add(PaymentTransaction(
                user_id=user_id,
                subscription_id=subscription.id,
                amount=price.amount,
                currency=price.currency,
                gateway=PaymentGatewayName(gateway_impl.name),
                gateway_transaction_id=payment_id,
                status=PaymentStatus.COMPLETED,
                details={
                    "type": "initial_activation",
                    "gateway_subscription_id": gateway_subscription_id,
                    "is_upgrade": is_upgrade,
                },
            ))
            selection = self.app_settings.get(f"user_plan_selection_{user_id}")
            if selection is not None:
                selection.value = {**(selection.value or {}), "status": "completed", "subscription_id": subscription.id}
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            duplicate = self._find_duplicate(user_id, payment_id)
            if duplicate is not None:
                return duplicate
            raise
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Paid subscription {subscription.id} created for user {user_id} on plan {plan.id}")
        self.dispatcher.dispatch([
            RecordAnalytics("paid_activation", user_id, {"plan_id": plan.id, "amount": str(price.amount)}),
            NotifyUser(
                user_id,
                "subscription_activated",
                f"Your {plan.name} subscription is now active. Thank you for your payment of "
                f"{price.amount} {price.currency.value}.",
                data={"plan_id": plan.id, "subscription_id": subscription.id},
            ),
            self._admin_new_subscription(user_id, plan, price, subscription),
        ])
        return {
            "subscription": subscription,
            "previous_subscription_id": None,
            "is_upgrade": is_upgrade,
            "freemium_conversion": False,
            "amount": price.amount,
            "currency": price.currency.value,
            "duplicate": False,
        }

    # Downgrades and cancellation

    def schedule_downgrade(self, user_id: int, new_plan_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Mark the active subscription to move to a cheaper (or free) plan when
        its current period ends. The plan itself does not change now.
        """
        now = now or _utcnow()
        current = self.get_active_subscription(user_id)
        if current is None:
            raise NoActiveSubscriptionError("No active subscription to downgrade")

        new_plan = self._get_plan(new_plan_id)
        if new_plan.id == current.plan_id:
            raise InvalidDowngradeError("You are already subscribed to this plan", details={"plan_id": new_plan.id})

        region = self._region_for(user_id)
        current_price = plan_price(current.plan, region)
        new_price = plan_price(new_plan, region)
        if not new_plan.is_freemium and not new_price.amount < current_price.amount:
            raise InvalidDowngradeError(
                "A downgrade must be to a cheaper or free plan",
                details={
                    "current_price": str(current_price.amount),
                    "new_price": str(new_price.amount),
                    "currency": new_price.currency.value,
                },
            )

        effective_date = current.end_date
        to_freemium = bool(new_plan.is_freemium)
        try:
            lifecycle.transition(
                current,
                LifecycleState.ACTIVE_PENDING_DOWNGRADE,
                pending_plan_id=new_plan.id,
                pending_date=effective_date,
            )
            lifecycle.append_event(current, lifecycle.ScheduledDowngrade(
                at=now,
                from_plan_id=current.plan_id,
                to_plan_id=new_plan.id,
                effective_date=effective_date,
                to_freemium=to_freemium,
            ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        message = (
            f"Your subscription will be downgraded to the {'free ' if to_freemium else ''}{new_plan.name} plan "
            f"on {_format_date(effective_date)}. You will continue to have access to all features of your "
            f"current plan until then."
        )
        if to_freemium:
            message += " After that, premium features will no longer be available."

        effects: List[Any] = []
        if PaymentGatewayName(current.payment_gateway) != PaymentGatewayName.NONE and current.payment_reference:
            effects.append(CancelRemoteSubscription(
                gateway=PaymentGatewayName(current.payment_gateway).value,
                reference=current.payment_reference,
                cancel_at_cycle_end=True,
                user_id=user_id,
            ))
        effects.append(RecordAnalytics(
            "downgrade_scheduled",
            user_id,
            {"from_plan_id": current.plan_id, "to_plan_id": new_plan.id, "effective_date": effective_date.isoformat()},
        ))
        effects.append(NotifyUser(
            user_id,
            "subscription_downgrade_scheduled",
            message,
            data={"plan_id": new_plan.id, "effective_date": effective_date.isoformat()},
        ))
        self.dispatcher.dispatch(effects)

        logger.info(f"Downgrade of subscription {current.id} to plan {new_plan.id} scheduled for {effective_date.isoformat()}")
        return {
            "subscription": current,
            "message": message,
            "effective_date": effective_date,
            "pending_plan_id": new_plan.id,
        }

    def cancel_subscription(self, user_id: int, now: Optional[datetime] = None) -> Subscription:
        """
        Stop auto-renewal. The row stays ACTIVE until its end date; the sweep
        moves it to grace and then to expired.
        """
        now = now or _utcnow()
        subscription = self.get_active_subscription(user_id)
        if subscription is None:
            raise NoActiveSubscriptionError("No active subscription to cancel")

        effects: List[Any] = []
        gateway = PaymentGatewayName(subscription.payment_gateway)
        if gateway != PaymentGatewayName.NONE and subscription.payment_reference:
            if subscription.start_date > now:
                logger.info(f"Subscription {subscription.id} has not started billing yet; skipping remote cancellation")
            else:
                effects.append(CancelRemoteSubscription(
                    gateway=gateway.value,
                    reference=subscription.payment_reference,
                    cancel_at_cycle_end=True,
                    user_id=user_id,
                ))

        try:
            subscription.auto_renew = False
            subscription.cancel_date = now
            lifecycle.append_event(subscription, lifecycle.Cancellation(at=now, reason="user_requested"))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Subscription {subscription.id} of user {user_id} set to end on {subscription.end_date.isoformat()}")
        effects.append(NotifyUser(
            user_id,
            "subscription_cancelled",
            f"Your {subscription.plan.name} subscription has been cancelled. "
            f"You will keep access until {_format_date(subscription.end_date)}.",
            data={"subscription_id": subscription.id, "end_date": subscription.end_date.isoformat()},
        ))
        self.dispatcher.dispatch(effects)
        return subscription

    # Periodic processing

    def reset_feature_usage(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        try:
            count = self.usage.reset_due_usage(now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Reset {count} feature usage counters")
        return count

    def process_scheduled_changes(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Materialize due scheduled plan changes.

        A downgrade whose subscription is still inside its paid period is
        deferred to the live end date instead of being applied early.
        """
        now = now or _utcnow()
        results = {
            "upgrades": {"processed": 0, "failed": 0},
            "downgrades": {"processed": 0, "failed": 0},
            "freemium_downgrades": {"processed": 0, "failed": 0},
            "deferred": 0,
        }
        ids = [s.id for s in self.repo.list_due_plan_changes(now)]

        for subscription_id in ids:
            bucket = "downgrades"
            try:
                subscription = self.repo.get_by_id(subscription_id)
                change_type = PlanChangeType(subscription.pending_plan_change_type)

                if change_type == PlanChangeType.UPGRADE:
                    bucket = "upgrades"
                    logger.warning(
                        f"Unexpected scheduled UPGRADE on subscription {subscription.id}; "
                        f"upgrades are applied immediately. Clearing pending change."
                    )
                    subscription.clear_pending_change()
                    self.db.commit()
                    results["upgrades"]["processed"] += 1
                    continue

                target = self.plans.get_by_id(subscription.pending_plan_change_to)
                if target is not None and is_free_plan(target):
                    bucket = "freemium_downgrades"

                if subscription.end_date > now:
                    lifecycle.transition(
                        subscription,
                        LifecycleState.ACTIVE_PENDING_DOWNGRADE,
                        pending_plan_id=subscription.pending_plan_change_to,
                        pending_date=subscription.end_date,
                    )
                    self.db.commit()
                    results["deferred"] += 1
                    logger.info(
                        f"Deferred downgrade of subscription {subscription.id} to {subscription.end_date.isoformat()}"
                    )
                    continue

                effects = self._materialize_downgrade(subscription, target, now)
                self.db.commit()
                self.dispatcher.dispatch(effects)
                results[bucket]["processed"] += 1
            except Exception as e:
                self.db.rollback()
                results[bucket]["failed"] += 1
                logger.exception(f"Failed to process scheduled change for subscription {subscription_id}: {e}")

        return results

    def process_subscription_cycle(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Reconciliation sweep, in order: freemium renewals, grace periods,
        expirations, scheduled plan changes. Never raises; failures are
        counted per step.
        """
        now = now or _utcnow()
        results: Dict[str, Any] = {
            "renewals": {"attempted": 0, "succeeded": 0, "failed": 0, "anomalies": 0},
            "grace_periods": {"processed": 0, "failed": 0},
            "expirations": {"processed": 0, "failed": 0},
            "plan_changes": None,
        }

        steps = (
            ("renewals", self._process_renewals),
            ("grace_periods", self._process_grace_periods),
            ("expirations", self._process_expirations),
        )
        for name, step in steps:
            try:
                step(now, results[name])
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Subscription cycle step {name} aborted: {e}")

        try:
            results["plan_changes"] = self.process_scheduled_changes(now)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Subscription cycle step plan_changes aborted: {e}")

        logger.info(f"Subscription cycle finished: {results}")
        return results

    def _process_renewals(self, now: datetime, counters: Dict[str, int]) -> None:
        window_end = now + timedelta(hours=settings.RENEWAL_WINDOW_HOURS)
        candidates = [
            s.id for s in self.repo.list_renewal_candidates(now, window_end)
            if PaymentGatewayName(s.payment_gateway) == PaymentGatewayName.NONE
        ]
        for subscription_id in candidates:
            counters["attempted"] += 1
            try:
                subscription = self.repo.get_by_id(subscription_id)
                plan = subscription.plan
                if not is_free_plan(plan):
                    counters["anomalies"] += 1
                    logger.error(
                        f"Subscription {subscription.id} has no payment gateway but plan {plan.id} is not free; "
                        f"skipping renewal"
                    )
                    self.dispatcher.dispatch([RecordAnalytics(
                        "renewal_anomaly",
                        subscription.user_id,
                        {"subscription_id": subscription.id, "plan_id": plan.id},
                    )])
                    continue

                previous_end = subscription.end_date
                lifecycle.transition(subscription, LifecycleState.ACTIVE)
                subscription.start_date = previous_end
                subscription.end_date = add_billing_cycle(previous_end, plan.billing_cycle)
                lifecycle.append_event(subscription, lifecycle.Renewal(
                    at=now, previous_end_date=previous_end, new_end_date=subscription.end_date,
                ))
                self._record_zero_transaction(
                    subscription, f"freemium_renewal_{subscription.id}_{_millis(now)}", "freemium_renewal",
                )
                self.usage.reset_plan_usage(subscription.user_id, plan.id, now)
                self.db.commit()
                counters["succeeded"] += 1
                self.dispatcher.dispatch([NotifyUser(
                    subscription.user_id,
                    "subscription_renewed",
                    f"Your {plan.name} plan has been renewed until {_format_date(subscription.end_date)}.",
                    data={"subscription_id": subscription.id, "end_date": subscription.end_date.isoformat()},
                )])
            except Exception as e:
                self.db.rollback()
                counters["failed"] += 1
                logger.exception(f"Failed to renew subscription {subscription_id}: {e}")

    def _process_grace_periods(self, now: datetime, counters: Dict[str, int]) -> None:
        grace_end = now + timedelta(days=settings.GRACE_PERIOD_DAYS)
        for subscription_id in [s.id for s in self.repo.list_lapsed_active(now)]:
            try:
                subscription = self.repo.get_by_id(subscription_id)
                lifecycle.transition(subscription, LifecycleState.GRACE_PERIOD)
                subscription.grace_period_end = grace_end
                self.db.commit()
                counters["processed"] += 1
                self.dispatcher.dispatch([NotifyUser(
                    subscription.user_id,
                    "subscription_grace_period",
                    f"Your subscription has ended. You still have access until {_format_date(grace_end)}; "
                    f"renew before then to keep your features.",
                    data={"subscription_id": subscription.id, "grace_period_end": grace_end.isoformat()},
                )])
            except Exception as e:
                self.db.rollback()
                counters["failed"] += 1
                logger.exception(f"Failed to move subscription {subscription_id} to grace period: {e}")

    def _process_expirations(self, now: datetime, counters: Dict[str, int]) -> None:
        for subscription_id in [s.id for s in self.repo.list_grace_expired(now)]:
            try:
                subscription = self.repo.get_by_id(subscription_id)
                lifecycle.transition(subscription, LifecycleState.EXPIRED)
                self.db.commit()
                counters["processed"] += 1
                self.dispatcher.dispatch([NotifyUser(
                    subscription.user_id,
                    "subscription_expired",
                    "Your subscription has expired. Choose a plan to continue using premium features.",
                    data={"subscription_id": subscription.id},
                )])
            except Exception as e:
                self.db.rollback()
                counters["failed"] += 1
                logger.exception(f"Failed to expire subscription {subscription_id}: {e}")

    # Helpers

    def _materialize_downgrade(self, subscription: Subscription, target: Optional[Plan], now: datetime) -> List[Any]:
        if target is None:
            raise PlanNotFoundError(
                f"Scheduled plan {subscription.pending_plan_change_to} not found",
                details={"subscription_id": subscription.id},
            )
        if SubscriptionStatus(subscription.status) != SubscriptionStatus.ACTIVE:
            raise SubscriptionIntegrityError(
                f"Subscription {subscription.id} has a pending change but is {subscription.status}",
                details={"subscription_id": subscription.id},
            )

        to_free = is_free_plan(target)
        start = subscription.pending_plan_change_date
        old_plan_id = subscription.plan_id

        lifecycle.transition(subscription, LifecycleState.CANCELLED)
        subscription.auto_renew = False
        subscription.cancel_date = now
        self.db.flush()

        new_subscription = Subscription(
            user_id=subscription.user_id,
            plan_id=target.id,
            start_date=start,
            end_date=add_billing_cycle(start, target.billing_cycle),
            auto_renew=to_free,
            payment_gateway=PaymentGatewayName.NONE if to_free else PaymentGatewayName.RAZORPAY,
            payment_reference=f"free_plan_{_millis(now)}" if to_free else f"scheduled_downgrade_{_millis(now)}",
            previous_plan_id=old_plan_id,
            lifecycle_events=[],
        )
        lifecycle.transition(new_subscription, LifecycleState.ACTIVE)
        self.repo.add(new_subscription)

        lifecycle.append_event(subscription, lifecycle.Cancellation(
            at=now, reason="scheduled_downgrade", replaced_by=new_subscription.id,
        ))
        lifecycle.append_event(new_subscription, lifecycle.ScheduledChangeApplied(
            at=now, from_plan_id=old_plan_id, to_plan_id=target.id, change_type=PlanChangeType.DOWNGRADE,
        ))

        if to_free:
            self.usage.initialize_usage(new_subscription.user_id, target.id, now)
            self._record_zero_transaction(
                new_subscription, f"freemium_downgrade_{new_subscription.id}_{_millis(now)}", "freemium_downgrade",
            )
        else:
            # TODO: replace the placeholder with a Razorpay subscription created for the target plan
            price = plan_price(target, self._region_for(new_subscription.user_id))
            self.transactions.add(PaymentTransaction(
                user_id=new_subscription.user_id,
                subscription_id=new_subscription.id,
                amount=price.amount,
                currency=price.currency,
                gateway=PaymentGatewayName.RAZORPAY,
                gateway_transaction_id=f"scheduled_downgrade_{new_subscription.id}_{_millis(now)}",
                status=PaymentStatus.PENDING,
                details={"type": "scheduled_downgrade", "previous_plan_id": old_plan_id},
            ))

        logger.info(
            f"Applied scheduled downgrade for user {subscription.user_id}: "
            f"subscription {subscription.id} -> {new_subscription.id} (plan {target.id})"
        )
        return [NotifyUser(
            subscription.user_id,
            "subscription_plan_changed",
            f"Your plan has changed to {target.name}.",
            data={"subscription_id": new_subscription.id, "plan_id": target.id, "previous_plan_id": old_plan_id},
        )]

    def _record_zero_transaction(self, subscription: Subscription, gateway_transaction_id: str, kind: str) -> None:
        region = self._region_for(subscription.user_id)
        self.transactions.add(PaymentTransaction(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            amount=ZERO,
            currency=currency_for_region(region),
            gateway=PaymentGatewayName.NONE,
            gateway_transaction_id=gateway_transaction_id,
            status=PaymentStatus.COMPLETED,
            details={"type": kind, "plan_id": subscription.plan_id},
        ))

    def _find_duplicate(self, user_id: int, payment_id: str) -> Optional[Dict[str, Any]]:
        existing = self.transactions.get_by_gateway_transaction_id(payment_id)
        if existing is None:
            return None
        if existing.user_id != user_id:
            raise ValidationError("Payment already used by another account", details={"payment_id": payment_id})
        logger.info(f"Payment {payment_id} already processed for user {user_id}; skipping")
        subscription = self.repo.get_by_id(existing.subscription_id) if existing.subscription_id else None
        details = existing.details or {}
        return {
            "subscription": subscription,
            "previous_subscription_id": details.get("previous_subscription_id"),
            "is_upgrade": bool(details.get("is_upgrade")),
            "freemium_conversion": details.get("type") == "freemium_conversion",
            "amount": existing.amount,
            "currency": Currency(existing.currency).value,
            "duplicate": True,
        }

    def _verify_payment(
        self,
        gateway: PaymentGateway,
        payment_id: str,
        signature: Optional[str],
        gateway_subscription_id: Optional[str],
    ) -> None:
        if not gateway.verify_payment(payment_id, signature, gateway_subscription_id):
            logger.warning(f"Payment verification failed for payment {payment_id}")
            raise PaymentVerificationError("Payment verification failed", details={"payment_id": payment_id})

    @staticmethod
    def _require_payment_fields(user_id: int, plan_id: int, payment_id: str) -> None:
        missing = [
            name for name, value in (("user_id", user_id), ("plan_id", plan_id), ("payment_id", payment_id))
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    def _get_plan(self, plan_id: int) -> Plan:
        plan = self.plans.get_by_id(plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFoundError(f"Plan {plan_id} not found", details={"plan_id": plan_id})
        return plan

    def _region_for(self, user_id: int):
        return resolve_region(self.billing.get_country(user_id))

    def _admin_new_subscription(self, user_id: int, plan: Plan, price: PlanPrice, subscription: Subscription) -> NotifyAdmins:
        return NotifyAdmins(
            "new_subscription",
            f"User {user_id} subscribed to {plan.name} for {price.amount} {price.currency.value}.",
            data={
                "user_id": user_id,
                "plan_id": plan.id,
                "subscription_id": subscription.id,
                "amount": str(price.amount),
                "currency": price.currency.value,
            },
        )
