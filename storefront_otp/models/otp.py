from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String

from storefront_otp.database import Base


class OtpEntry(Base):
    __tablename__ = "otp_codes"

    id = Column(Integer, primary_key=True)
    recipient = Column(String(255), nullable=False)
    purpose = Column(String(32), nullable=False)
    code = Column(String(10), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=0)
    context = Column(JSON, nullable=True)

    # Several rows per (recipient, purpose) are allowed while more than one
    # code is valid, so this index is not unique.
    __table_args__ = (
        Index("ix_otp_recipient_purpose", "recipient", "purpose"),
        Index("ix_otp_expires_at", "expires_at"),
    )
