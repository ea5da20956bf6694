from sqlalchemy import Column, String, Float, Integer, DateTime
from datetime import datetime, timezone
from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """
    User model with the embedded subscription record.

    Users are created by the identity provider; billing code only fills in
    the customer id and the plan_* / subscription columns.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, nullable=True)
    stripe_customer_id = Column(String, unique=True, nullable=True, index=True)

    # Subscription record
    plan_id = Column(String, nullable=True)
    plan_name = Column(String, nullable=True)
    plan_price = Column(Float, nullable=True)
    plan_status = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    plan_start_date = Column(DateTime, nullable=True)
    plan_end_date = Column(DateTime, nullable=True)
    plan_canceled_at = Column(DateTime, nullable=True)
    # Processor timestamp (epoch seconds) of the last event applied to the record
    plan_last_event_at = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)
