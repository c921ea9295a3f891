# Import all models so Base.metadata knows every table
from app.models.user import User
from app.models.plan import Plan, PlanPricing, Feature, PlanFeature
from app.models.subscription import Subscription
from app.models.payment_transaction import PaymentTransaction
from app.models.feature_usage import FeatureUsage
from app.models.billing_details import UserBillingDetails
from app.models.app_setting import AppSetting
from app.models.notification import Notification

__all__ = [
    "User",
    "Plan",
    "PlanPricing",
    "Feature",
    "PlanFeature",
    "Subscription",
    "PaymentTransaction",
    "FeatureUsage",
    "UserBillingDetails",
    "AppSetting",
    "Notification",
]
