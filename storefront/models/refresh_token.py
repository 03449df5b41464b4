"""
Refresh token model

Opaque refresh tokens stored as SHA-256 digests. Tokens issued from one
login form a family (family_id); each rotation revokes the presented token
and links it to its successor through replaced_by, so a family is a linear
chain with at most one active link.

Rows are kept after revocation: a revoked or replaced token presented again
is the reuse signal that revokes the whole family.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from storefront.core.database import Base
from storefront.core.utils import utcnow


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    family_id = Column(String(32), nullable=False, index=True)
    device_id = Column(String(100), nullable=True)

    revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    replaced_by = Column(Integer, ForeignKey("refresh_tokens.id", ondelete="SET NULL"), nullable=True)

    user_agent = Column(String(500), nullable=True)
    ip_address = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_used_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    user = relationship("User", back_populates="refresh_tokens")

    __table_args__ = (
        Index("ix_refresh_tokens_user_active", "user_id", "revoked"),
    )

    def __repr__(self):
        return f"<RefreshToken(id={self.id}, user_id={self.user_id}, family='{self.family_id[:8]}...', revoked={self.revoked})>"
