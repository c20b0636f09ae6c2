"""
Database Models Package
SQLAlchemy ORM models for PostgreSQL.
"""

from mentorsub.models.plan import Plan
from mentorsub.models.plan_override import PlanOverride
from mentorsub.models.billing_cycle import BillingCycle
from mentorsub.models.seat import Seat
from mentorsub.models.processed_notification import ProcessedNotification
from mentorsub.models.managed_course import ManagedCourse
from mentorsub.models.stripe_event import StripeEvent

__all__ = [
    "Plan",
    "PlanOverride",
    "BillingCycle",
    "Seat",
    "ProcessedNotification",
    "ManagedCourse",
    "StripeEvent",
]
