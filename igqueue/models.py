import uuid
from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, Boolean, UniqueConstraint, Index
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

# post_queue.status values
STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_DLQ = "dlq"

def _new_id() -> str:
    return uuid.uuid4().hex

class QueuedAction(Base):
    """One row per attempted logical action against the Graph API."""
    __tablename__ = "post_queue"

    id = Column(String(32), primary_key=True, default=_new_id)
    business_account_id = Column(String, nullable=False, index=True)
    action_type = Column(String, nullable=False)  # publish_post, repost_ugc, reply_comment, reply_dm, send_dm

    # request params plus intermediate remote handles (creation_id)
    payload = Column(JSON, nullable=False, default=dict)
    idempotency_key = Column(String(64), nullable=False)

    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    error_category = Column(String, nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    result_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_post_queue_idempotency_key"),
        Index("ix_post_queue_status_next_retry", "status", "next_retry_at"),
    )

class BusinessAccount(Base):
    __tablename__ = "instagram_business_accounts"
    id = Column(String, primary_key=True, default=_new_id)
    instagram_business_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False, index=True)
    is_connected = Column(Boolean, nullable=False, default=True)
    connection_status = Column(String, nullable=False, default="active")  # active, disconnected
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    credentials = relationship("InstagramCredential", back_populates="business_account")

class InstagramCredential(Base):
    __tablename__ = "instagram_credentials"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    business_account_id = Column(String, ForeignKey("instagram_business_accounts.id"), nullable=False, index=True)
    token_type = Column(String, nullable=False, default="page")  # page, user
    access_token = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    issued_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=True)

    business_account = relationship("BusinessAccount", back_populates="credentials")

class ScheduledPost(Base):
    __tablename__ = "scheduled_posts"
    id = Column(String, primary_key=True, default=_new_id)
    business_account_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="approved")  # approved, publishing, published
    instagram_media_id = Column(String, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class InstagramMedia(Base):
    """Denormalized read model so readers see a post as soon as it is published."""
    __tablename__ = "instagram_media"
    id = Column(Integer, primary_key=True, index=True)
    instagram_media_id = Column(String, unique=True, nullable=False)
    business_account_id = Column(String, nullable=False, index=True)
    media_type = Column(String, nullable=True)
    caption = Column(Text, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    like_count = Column(Integer, nullable=False, default=0)
    comments_count = Column(Integer, nullable=False, default=0)
    reach = Column(Integer, nullable=False, default=0)

class UgcDiscovered(Base):
    __tablename__ = "ugc_discovered"
    id = Column(String, primary_key=True, default=_new_id)
    business_account_id = Column(String, nullable=False, index=True)
    media_url = Column(Text, nullable=True)
    caption = Column(Text, nullable=True)
    username = Column(String, nullable=True)

    permissions = relationship("UgcPermission", back_populates="ugc")

class UgcPermission(Base):
    __tablename__ = "ugc_permissions"
    id = Column(String, primary_key=True, default=_new_id)
    ugc_discovered_id = Column(String, ForeignKey("ugc_discovered.id"), nullable=False)
    status = Column(String, nullable=False, default="granted")  # pending, granted, reposted
    instagram_media_id = Column(String, nullable=True)
    reposted_at = Column(DateTime(timezone=True), nullable=True)

    ugc = relationship("UgcDiscovered", back_populates="permissions")

class AuditLog(Base):
    __tablename__ = "audit_log"
    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, nullable=False)
    action = Column(String, nullable=False)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    success = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
