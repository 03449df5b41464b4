"""
User model

Account state used by the auth layer: role, activity/blocked flags, e-mail
OTP verification, password reset tokens and login lockout counters. Order
statistics are updated inside the checkout transaction.
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, Index
from sqlalchemy.orm import relationship

from storefront.core.database import Base
from storefront.core.utils import as_utc


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    STAFF = "staff"


class User(Base):
    """Customer and staff accounts."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    email = Column(String(254), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False, default="")
    role = Column(String(20), nullable=False, default=UserRole.CUSTOMER.value)

    is_active = Column(Boolean, nullable=False, default=True)
    is_blocked = Column(Boolean, nullable=False, default=False)

    # E-mail verification (OTP stored hashed)
    email_verified = Column(Boolean, nullable=False, default=False)
    email_otp_hash = Column(String(64), nullable=True)
    email_otp_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Password reset (token stored hashed, single use)
    password_reset_hash = Column(String(64), nullable=True, index=True)
    password_reset_expires_at = Column(DateTime(timezone=True), nullable=True)
    password_changed_at = Column(DateTime(timezone=True), nullable=True)

    # Login lockout
    failed_login_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_login_ip = Column(String(64), nullable=True)

    # Order statistics
    total_orders = Column(Integer, nullable=False, default=0)
    total_spent = Column(Numeric(12, 2), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    orders = relationship("Order", back_populates="user")
    refresh_tokens = relationship("RefreshToken", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_users_role", "role"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"

    @property
    def is_locked(self) -> bool:
        locked_until = as_utc(self.locked_until)
        return locked_until is not None and locked_until > datetime.now(timezone.utc)

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.ADMIN.value, UserRole.STAFF.value)
