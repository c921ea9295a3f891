import enum


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class TargetRegion(str, enum.Enum):
    GLOBAL = "GLOBAL"
    INDIA = "INDIA"


class Currency(str, enum.Enum):
    USD = "USD"
    INR = "INR"


class FeatureType(str, enum.Enum):
    ESSENTIAL = "ESSENTIAL"
    ADVANCED = "ADVANCED"
    PROFESSIONAL = "PROFESSIONAL"


class LimitType(str, enum.Enum):
    UNLIMITED = "UNLIMITED"
    COUNT = "COUNT"
    BOOLEAN = "BOOLEAN"


class ResetFrequency(str, enum.Enum):
    NEVER = "NEVER"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    GRACE_PERIOD = "GRACE_PERIOD"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class PlanChangeType(str, enum.Enum):
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"


class PaymentGatewayName(str, enum.Enum):
    RAZORPAY = "RAZORPAY"
    NONE = "NONE"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
