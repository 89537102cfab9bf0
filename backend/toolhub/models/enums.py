"""String enums shared by the billing models.

Values are stored as plain strings (``String`` columns), so members compare
equal to the raw values read back from the database.
"""

import enum


class SubscriptionStatus(str, enum.Enum):
    """Local subscription status, mirroring Stripe's vocabulary."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


ENTITLED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
PAYMENT_FAILED_STATUSES = (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID)


class WebhookEventStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class FeatureResetPeriod(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    NEVER = "never"


class PriceInterval(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONE_TIME = "one_time"


class CancellationReason(str, enum.Enum):
    DUPLICATE_CARD = "duplicate_card"
    AUTO_CANCEL_PAST_DUE = "auto_cancel_past_due"
