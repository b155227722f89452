"""Domain models - the log entry aggregate and the users it references."""
from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from app.database import Base
from app.models.enums import (
    AppRole,
    Entity,
    EntryStatus,
    ProjectRole,
    ReviewParty,
    ReviewPolicyKind,
    ReviewTaskStatus,
    SignatureTaskStatus,
    UserStatus,
)


entry_assignees = Table(
    "log_entry_assignees",
    Base.metadata,
    Column("entry_id", Integer, ForeignKey("log_entries.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String, ForeignKey("users.id"), primary_key=True),
)

entry_signatories = Table(
    "log_entry_signatories",
    Base.metadata,
    Column("entry_id", Integer, ForeignKey("log_entries.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String, ForeignKey("users.id"), primary_key=True),
)


class User(Base):
    """
    Identity plus the three attributes authorization is derived from.

    entity is stored as the closed Entity enum; raw strings are parsed
    with Entity.parse before they reach this model.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    full_name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)
    project_role = Column(SQLEnum(ProjectRole), nullable=False)
    app_role = Column(SQLEnum(AppRole), nullable=False, default=AppRole.VIEWER)
    entity = Column(SQLEnum(Entity), nullable=True)
    password_hash = Column(String, nullable=True)
    status = Column(SQLEnum(UserStatus), nullable=False, default=UserStatus.ACTIVE)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class LogEntry(Base):
    """
    One daily construction log record: DRAFT → SUBMITTED → NEEDS_REVIEW → APPROVED → SIGNED.

    Invariants enforced by the service layer:
    - review_policy is set on first submission and never changes afterwards
    - review_tasks and pending_review_by are never populated together
    - one signature task per required signatory, never duplicated
    - version is bumped on every write and guards concurrent writers
    """
    __tablename__ = "log_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    folio_number = Column(Integer, nullable=False, unique=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    entry_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    status = Column(SQLEnum(EntryStatus), nullable=False, default=EntryStatus.DRAFT)
    is_confidential = Column(Boolean, nullable=False, default=False)

    author_id = Column(String, ForeignKey("users.id"), nullable=False)

    # Review policy (tagged variant)
    review_policy = Column(SQLEnum(ReviewPolicyKind), nullable=True)
    skip_author_review = Column(Boolean, nullable=False, default=False)
    pending_review_by = Column(SQLEnum(ReviewParty), nullable=True)
    review_completed_by = Column(SQLEnum(ReviewParty), nullable=True)
    review_completed_at = Column(DateTime, nullable=True)

    rejection_reason = Column(String, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    author = relationship("User", foreign_keys=[author_id])
    assignees = relationship("User", secondary=entry_assignees, order_by="User.id")
    required_signatories = relationship("User", secondary=entry_signatories, order_by="User.id")
    signature_tasks = relationship(
        "SignatureTask", back_populates="entry", cascade="all, delete-orphan", order_by="SignatureTask.id"
    )
    signatures = relationship(
        "Signature", back_populates="entry", cascade="all, delete-orphan", order_by="Signature.id"
    )
    review_tasks = relationship(
        "ReviewTask", back_populates="entry", cascade="all, delete-orphan", order_by="ReviewTask.id"
    )
    comments = relationship(
        "Comment", back_populates="entry", cascade="all, delete-orphan", order_by="Comment.id"
    )


class SignatureTask(Base):
    """
    One per required signatory per entry, created when the entry is approved.

    Invariants:
    - (entry_id, signer_id) is unique
    - signed_at is set exactly when status is SIGNED
    """
    __tablename__ = "signature_tasks"
    __table_args__ = (UniqueConstraint("entry_id", "signer_id", name="uq_signature_task_signer"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entry_id = Column(Integer, ForeignKey("log_entries.id"), nullable=False)
    signer_id = Column(String, ForeignKey("users.id"), nullable=False)
    status = Column(SQLEnum(SignatureTaskStatus), nullable=False, default=SignatureTaskStatus.PENDING)
    assigned_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    signed_at = Column(DateTime, nullable=True)

    entry = relationship("LogEntry", back_populates="signature_tasks")
    signer = relationship("User")


class Signature(Base):
    """
    Immutable record of a completed signature. Append-only.
    """
    __tablename__ = "signatures"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entry_id = Column(Integer, ForeignKey("log_entries.id"), nullable=False)
    signer_id = Column(String, ForeignKey("users.id"), nullable=False)
    signature_task_id = Column(Integer, ForeignKey("signature_tasks.id"), nullable=False, unique=True)
    signature_task_status = Column(SQLEnum(SignatureTaskStatus), nullable=False)
    consent_statement = Column(String, nullable=False)
    signed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    entry = relationship("LogEntry", back_populates="signatures")
    signer = relationship("User")
    signature_task = relationship("SignatureTask")


class ReviewTask(Base):
    """
    Reviewer obligation under the parallel review policy only.

    Invariants:
    - COMPLETED is final; comments after completion never reopen it
    """
    __tablename__ = "review_tasks"
    __table_args__ = (UniqueConstraint("entry_id", "reviewer_id", name="uq_review_task_reviewer"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entry_id = Column(Integer, ForeignKey("log_entries.id"), nullable=False)
    reviewer_id = Column(String, ForeignKey("users.id"), nullable=False)
    status = Column(SQLEnum(ReviewTaskStatus), nullable=False, default=ReviewTaskStatus.PENDING)
    assigned_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    entry = relationship("LogEntry", back_populates="review_tasks")
    reviewer = relationship("User")


class Comment(Base):
    __tablename__ = "log_entry_comments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entry_id = Column(Integer, ForeignKey("log_entries.id"), nullable=False)
    author_id = Column(String, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    entry = relationship("LogEntry", back_populates="comments")
    author = relationship("User")
