from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from .organization import Base


class Membership(Base):
    """
    Organization members - role and status of a user inside a tenant.
    """
    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_member"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(
        String(36),
        ForeignKey("organizations.id"),
        index=True,
        nullable=False,
    )
    user_id = Column(String(100), index=True, nullable=False)
    role = Column(String(20), nullable=False, default="member")      # owner|admin|member|viewer
    status = Column(String(20), nullable=False, default="pending")   # active|pending|deactivated

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="members")
