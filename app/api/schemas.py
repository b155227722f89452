"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator
from app.models.enums import (
    AppRole,
    Entity,
    EntryStatus,
    ProjectRole,
    ReviewParty,
    ReviewPolicyKind,
    ReviewTaskStatus,
    ReviewVerdict,
    SignatureTaskStatus,
)


# User schemas
class UserCreate(BaseModel):
    id: str = Field(..., min_length=1)
    full_name: str = Field(..., min_length=1)
    email: Optional[str] = None
    project_role: ProjectRole
    app_role: AppRole = AppRole.VIEWER
    entity: Optional[Entity] = None
    password: Optional[str] = None

    @field_validator("entity", mode="before")
    @classmethod
    def parse_entity(cls, value):
        # Free text like "Interventoría" or "Consorcio Contratista" is resolved here, once
        return Entity.parse(value)


class UserResponse(BaseModel):
    id: str
    full_name: str
    email: Optional[str]
    project_role: ProjectRole
    app_role: AppRole
    entity: Optional[Entity]

    class Config:
        from_attributes = True


class PermissionFlagsResponse(BaseModel):
    can_edit_content: bool
    can_sign: bool
    can_delete: bool
    is_contractor_user: bool
    is_admin: bool

    class Config:
        from_attributes = True


# Log entry schemas
class LogEntryCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    entry_date: Optional[datetime] = None
    is_confidential: bool = False
    assignee_ids: List[str] = []
    required_signatory_ids: List[str] = []
    skip_author_review: bool = False


class SignatureTaskResponse(BaseModel):
    id: int
    signer_id: str
    status: SignatureTaskStatus
    assigned_at: datetime
    signed_at: Optional[datetime]

    class Config:
        from_attributes = True


class SignatureResponse(BaseModel):
    id: int
    signer_id: str
    signature_task_id: int
    signature_task_status: SignatureTaskStatus
    signed_at: datetime

    class Config:
        from_attributes = True


class ReviewTaskResponse(BaseModel):
    id: int
    reviewer_id: str
    status: ReviewTaskStatus
    assigned_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class CommentResponse(BaseModel):
    id: int
    author_id: str
    content: str
    created_at: datetime

    class Config:
        from_attributes = True


class SignatureSummaryResponse(BaseModel):
    total: int
    signed: int
    pending: int
    completed: bool

    class Config:
        from_attributes = True


class LogEntryResponse(BaseModel):
    """
    A log entry as seen by one viewer.

    When content_redacted is set the body fields are empty and the client
    shows a placeholder instead.
    """
    id: int
    folio_number: int
    title: str
    status: EntryStatus
    is_confidential: bool
    content_redacted: bool
    description: Optional[str]
    entry_date: datetime
    author_id: str
    assignee_ids: List[str]
    required_signatory_ids: List[str]
    review_policy: Optional[ReviewPolicyKind]
    pending_review_by: Optional[ReviewParty]
    review_completed_by: Optional[ReviewParty]
    review_completed_at: Optional[datetime]
    rejection_reason: Optional[str]
    review_tasks: List[ReviewTaskResponse]
    signature_tasks: List[SignatureTaskResponse]
    signatures: List[SignatureResponse]
    comments: List[CommentResponse]
    signature_summary: SignatureSummaryResponse
    version: int
    created_at: datetime
    updated_at: datetime


# Workflow action schemas
class SendForReviewRequest(BaseModel):
    policy: ReviewPolicyKind = ReviewPolicyKind.PARALLEL
    target_party: Optional[ReviewParty] = None
    expected_version: Optional[int] = None


class ReviewActionRequest(BaseModel):
    verdict: ReviewVerdict
    comment: Optional[str] = Field(None, max_length=2000)
    expected_version: Optional[int] = None


class ApproveRequest(BaseModel):
    expected_version: Optional[int] = None


class SignRequest(BaseModel):
    consent: bool
    password: str
    consent_statement: str = Field(..., min_length=1)
    expected_version: Optional[int] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    close: bool = False
    expected_version: Optional[int] = None


class SignatoryAdd(BaseModel):
    user_id: str
    expected_version: Optional[int] = None


# Audit trail
class AuditEventResponse(BaseModel):
    id: int
    event_type: str
    user_id: Optional[str]
    created_at: datetime
    payload_json: Optional[dict]

    class Config:
        from_attributes = True


# Error response
class RefusalResponse(BaseModel):
    """Response when an action is refused."""
    code: str
    message: str
