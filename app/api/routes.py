"""API routes for the log entry review and signature workflow."""
from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session
from typing import List

from app.api.deps import get_current_user
from app.database import get_db
from app.models.domain import LogEntry, User
from app.services.credentials import get_password_hash
from app.services.errors import (
    Conflict,
    Forbidden,
    InvalidConsent,
    InvalidTransition,
    ReviewIncomplete,
    WorkflowError,
)
from app.services.signature_ledger import ConsentPayload
from app.services.state_machine import EntryStateMachine
from app.api.schemas import (
    ApproveRequest,
    AuditEventResponse,
    CommentResponse,
    LogEntryCreate,
    LogEntryResponse,
    PermissionFlagsResponse,
    RefusalResponse,
    RejectRequest,
    ReviewActionRequest,
    ReviewTaskResponse,
    SendForReviewRequest,
    SignatoryAdd,
    SignatureResponse,
    SignatureSummaryResponse,
    SignatureTaskResponse,
    SignRequest,
    UserCreate,
    UserResponse,
)

router = APIRouter()

_REFUSAL_STATUS = {
    Forbidden: status.HTTP_403_FORBIDDEN,
    InvalidConsent: status.HTTP_403_FORBIDDEN,
    InvalidTransition: status.HTTP_409_CONFLICT,
    ReviewIncomplete: status.HTTP_409_CONFLICT,
    Conflict: status.HTTP_409_CONFLICT,
}

_REFUSALS = {
    403: {"model": RefusalResponse, "description": "Refusal - actor not allowed or consent invalid"},
    409: {"model": RefusalResponse, "description": "Refusal - stale status or concurrent change"},
}


def _refusal(exc: WorkflowError) -> HTTPException:
    """Translate a workflow refusal into an HTTP error with code and message."""
    status_code = _REFUSAL_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail={"code": exc.code, "message": exc.message})


def _get_entry(db: Session, entry_id: int) -> LogEntry:
    entry = db.query(LogEntry).filter(LogEntry.id == entry_id).first()
    if not entry:
        raise HTTPException(status_code=404, detail="Log entry not found")
    return entry


def _get_user(db: Session, user_id: str) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return user


def _entry_response(sm: EntryStateMachine, entry: LogEntry, viewer: User) -> LogEntryResponse:
    """Project an entry for one viewer, redacting the body when confidentiality requires it."""
    visible = sm.can_view_content(entry, viewer)
    summary = sm.signature_summary(entry)
    return LogEntryResponse(
        id=entry.id,
        folio_number=entry.folio_number,
        title=entry.title,
        status=entry.status,
        is_confidential=entry.is_confidential,
        content_redacted=not visible,
        description=entry.description if visible else None,
        entry_date=entry.entry_date,
        author_id=entry.author_id,
        assignee_ids=[user.id for user in entry.assignees],
        required_signatory_ids=[user.id for user in entry.required_signatories],
        review_policy=entry.review_policy,
        pending_review_by=entry.pending_review_by,
        review_completed_by=entry.review_completed_by,
        review_completed_at=entry.review_completed_at,
        rejection_reason=entry.rejection_reason,
        review_tasks=[ReviewTaskResponse.model_validate(task) for task in entry.review_tasks],
        signature_tasks=[SignatureTaskResponse.model_validate(task) for task in entry.signature_tasks],
        signatures=[SignatureResponse.model_validate(signature) for signature in entry.signatures],
        comments=[CommentResponse.model_validate(comment) for comment in entry.comments] if visible else [],
        signature_summary=SignatureSummaryResponse(**asdict(summary)),
        version=entry.version,
        created_at=entry.created_at,
        updated_at=entry.updated_at,
    )


# User endpoints
@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(user_data: UserCreate, db: Session = Depends(get_db)):
    """Register a user. The entity is already resolved to its enum by the schema."""
    if db.query(User).filter(User.id == user_data.id).first():
        raise HTTPException(status_code=409, detail="User already exists")
    user = User(
        id=user_data.id,
        full_name=user_data.full_name,
        email=user_data.email,
        project_role=user_data.project_role,
        app_role=user_data.app_role,
        entity=user_data.entity,
        password_hash=get_password_hash(user_data.password) if user_data.password else None,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@router.get("/users/{user_id}/permissions", response_model=PermissionFlagsResponse)
def get_permissions(user_id: str, db: Session = Depends(get_db)):
    """Capability flags the client uses to decide what to enable."""
    user = _get_user(db, user_id)
    return EntryStateMachine(db).permissions(user)


# Log entry endpoints
@router.post("/log-entries", response_model=LogEntryResponse, status_code=status.HTTP_201_CREATED,
             responses=_REFUSALS)
def create_entry(
    entry_data: LogEntryCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Create a new log entry in DRAFT."""
    assignees = [_get_user(db, user_id) for user_id in entry_data.assignee_ids]
    signatories = [_get_user(db, user_id) for user_id in entry_data.required_signatory_ids]

    sm = EntryStateMachine(db)
    try:
        entry = sm.create_entry(
            current_user,
            title=entry_data.title,
            description=entry_data.description,
            entry_date=entry_data.entry_date,
            is_confidential=entry_data.is_confidential,
            assignees=assignees,
            required_signatories=signatories,
            skip_author_review=entry_data.skip_author_review,
        )
    except WorkflowError as e:
        raise _refusal(e)
    return _entry_response(sm, entry, current_user)


@router.get("/log-entries", response_model=List[LogEntryResponse])
def list_entries(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """List all log entries, newest folio first. Confidential bodies are redacted per viewer."""
    sm = EntryStateMachine(db)
    entries = db.query(LogEntry).order_by(LogEntry.folio_number.desc()).all()
    return [_entry_response(sm, entry, current_user) for entry in entries]


@router.get("/log-entries/{entry_id}", response_model=LogEntryResponse)
def get_entry(entry_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Get a specific log entry."""
    entry = _get_entry(db, entry_id)
    return _entry_response(EntryStateMachine(db), entry, current_user)


@router.delete("/log-entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT, responses=_REFUSALS)
def delete_entry(entry_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    entry = _get_entry(db, entry_id)
    try:
        EntryStateMachine(db).delete_entry(entry, current_user)
    except WorkflowError as e:
        raise _refusal(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/log-entries/{entry_id}/signature-summary", response_model=SignatureSummaryResponse)
def get_signature_summary(entry_id: int, db: Session = Depends(get_db)):
    """Summary recomputed from the signature tasks on every call."""
    entry = _get_entry(db, entry_id)
    return EntryStateMachine(db).signature_summary(entry)


@router.get("/log-entries/{entry_id}/audit-events", response_model=List[AuditEventResponse], responses=_REFUSALS)
def get_audit_events(entry_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Audit trail of one entry, oldest first. Admins only."""
    entry = _get_entry(db, entry_id)
    try:
        return EntryStateMachine(db).audit_trail(entry, current_user)
    except WorkflowError as e:
        raise _refusal(e)


# Workflow endpoints
@router.post("/log-entries/{entry_id}/send-for-review", response_model=LogEntryResponse, responses=_REFUSALS)
def send_for_review(
    entry_id: int,
    request: SendForReviewRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Send a DRAFT entry for review under the parallel or the sequential policy.

    WILL REFUSE if:
    - The caller is neither the author nor an admin
    - The entry is not a DRAFT or has no signatories
    - The policy differs from the one the entry was first sent with
    """
    entry = _get_entry(db, entry_id)
    sm = EntryStateMachine(db)
    try:
        sm.send_for_review(
            entry,
            current_user,
            policy=request.policy,
            target_party=request.target_party,
            expected_version=request.expected_version,
        )
    except WorkflowError as e:
        raise _refusal(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _entry_response(sm, entry, current_user)


@router.post("/log-entries/{entry_id}/review-actions", response_model=LogEntryResponse, responses=_REFUSALS)
def record_review_action(
    entry_id: int,
    request: ReviewActionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Comment, approve without comment, or forward to the other party."""
    entry = _get_entry(db, entry_id)
    sm = EntryStateMachine(db)
    try:
        sm.record_review_action(
            entry,
            current_user,
            request.verdict,
            comment=request.comment,
            expected_version=request.expected_version,
        )
    except WorkflowError as e:
        raise _refusal(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _entry_response(sm, entry, current_user)


@router.post("/log-entries/{entry_id}/approve", response_model=LogEntryResponse, responses=_REFUSALS)
def approve(
    entry_id: int,
    request: ApproveRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Final check passed: open signature tasks for every required signatory."""
    entry = _get_entry(db, entry_id)
    sm = EntryStateMachine(db)
    try:
        sm.approve(entry, current_user, expected_version=request.expected_version)
    except WorkflowError as e:
        raise _refusal(e)
    return _entry_response(sm, entry, current_user)


@router.post("/log-entries/{entry_id}/signatures", response_model=SignatureResponse, responses=_REFUSALS)
def sign(
    entry_id: int,
    request: SignRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Sign the entry as the current user.

    Retrying a signature that already went through returns the existing one.
    """
    entry = _get_entry(db, entry_id)
    sm = EntryStateMachine(db)
    consent = ConsentPayload(
        consent=request.consent,
        password=request.password,
        consent_statement=request.consent_statement,
    )
    try:
        signature = sm.sign(entry, current_user, consent, expected_version=request.expected_version)
    except WorkflowError as e:
        raise _refusal(e)
    return signature


@router.post("/log-entries/{entry_id}/reject", response_model=LogEntryResponse, responses=_REFUSALS)
def reject(
    entry_id: int,
    request: RejectRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Return an entry under review to DRAFT, or close it as REJECTED."""
    entry = _get_entry(db, entry_id)
    sm = EntryStateMachine(db)
    try:
        sm.reject(
            entry,
            current_user,
            request.reason,
            close=request.close,
            expected_version=request.expected_version,
        )
    except WorkflowError as e:
        raise _refusal(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _entry_response(sm, entry, current_user)


@router.post("/log-entries/{entry_id}/signatories", response_model=LogEntryResponse, responses=_REFUSALS)
def add_signatory(
    entry_id: int,
    request: SignatoryAdd,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    entry = _get_entry(db, entry_id)
    user = _get_user(db, request.user_id)
    sm = EntryStateMachine(db)
    try:
        sm.add_signatory(entry, current_user, user, expected_version=request.expected_version)
    except WorkflowError as e:
        raise _refusal(e)
    return _entry_response(sm, entry, current_user)


@router.delete("/log-entries/{entry_id}/signatories/{user_id}", response_model=LogEntryResponse,
               responses=_REFUSALS)
def remove_signatory(
    entry_id: int,
    user_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    entry = _get_entry(db, entry_id)
    user = _get_user(db, user_id)
    sm = EntryStateMachine(db)
    try:
        sm.remove_signatory(entry, current_user, user)
    except WorkflowError as e:
        raise _refusal(e)
    return _entry_response(sm, entry, current_user)
