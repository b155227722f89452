"""
State machine that enforces the log entry workflow.

This is the core enforcement mechanism - every status transition MUST go
through here. Each operation validates the current status and the actor's
capability, mutates the aggregate and commits it once. On refusal the
session is rolled back and the refusal is audited, so no partial state is
ever written.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.models.audit import AuditEvent, AuditEventType, trail_for
from app.models.domain import LogEntry, Signature, User
from app.models.enums import EntryStatus, ReviewParty, ReviewPolicyKind, ReviewVerdict
from app.services.errors import (
    AlreadyDone,
    AlreadySigned,
    Conflict,
    Forbidden,
    InvalidTransition,
    ReviewIncomplete,
    WorkflowError,
)
from app.services.permissions import PermissionFlags, can_be_signatory, flags_for
from app.services.review_policy import ReviewPolicyResolver
from app.services.signature_ledger import ConsentPayload, SignatureLedger, SignatureSummary
from app.services.visibility import can_view_content

logger = logging.getLogger(__name__)

_EDITABLE_SIGNATORIES = (
    EntryStatus.DRAFT,
    EntryStatus.SUBMITTED,
    EntryStatus.NEEDS_REVIEW,
    EntryStatus.APPROVED,
)


class EntryStateMachine:
    """Enforces status transitions, review gating and signature collection."""

    def __init__(
        self,
        db: Session,
        ledger: Optional[SignatureLedger] = None,
        resolver: Optional[ReviewPolicyResolver] = None,
    ):
        self.db = db
        self.ledger = ledger or SignatureLedger()
        self.resolver = resolver or ReviewPolicyResolver()

    # Read-only projections

    def signature_summary(self, entry: LogEntry) -> SignatureSummary:
        return self.ledger.summary(entry)

    def can_view_content(self, entry: LogEntry, viewer: User) -> bool:
        return can_view_content(entry, viewer)

    def permissions(self, user: User) -> PermissionFlags:
        return flags_for(user)

    def is_review_satisfied(self, entry: LogEntry) -> bool:
        return self.resolver.is_review_satisfied(entry)

    def audit_trail(self, entry: LogEntry, viewer: User) -> List[AuditEvent]:
        if not flags_for(viewer).is_admin:
            raise Forbidden(f"{viewer.full_name} cannot read the audit trail")
        return trail_for(self.db, entry.id)

    # Lifecycle

    def create_entry(
        self,
        author: User,
        title: str,
        description: Optional[str] = None,
        entry_date: Optional[datetime] = None,
        is_confidential: bool = False,
        assignees: Iterable[User] = (),
        required_signatories: Iterable[User] = (),
        skip_author_review: bool = False,
    ) -> LogEntry:
        """
        Create a DRAFT entry.

        Viewers can neither author entries nor be listed as signatories.
        """
        with self._operation("create_entry", None, author):
            if not flags_for(author).can_edit_content:
                raise Forbidden(f"{author.full_name} cannot create log entries")

            signatories = self._unique(required_signatories)
            for user in signatories:
                if not can_be_signatory(user):
                    raise Forbidden(f"{user.full_name} cannot be a signatory")

            last_folio = self.db.query(func.max(LogEntry.folio_number)).scalar() or 0
            entry = LogEntry(
                folio_number=last_folio + 1,
                title=title,
                description=description,
                entry_date=entry_date or datetime.utcnow(),
                status=EntryStatus.DRAFT,
                is_confidential=is_confidential,
                author=author,
                assignees=self._unique(assignees),
                required_signatories=signatories,
                skip_author_review=skip_author_review,
            )
            self.db.add(entry)
            self.db.flush()
            self._audit(AuditEventType.ENTRY_CREATED, entry, author, {
                "folio_number": entry.folio_number,
                "is_confidential": is_confidential,
                "required_signatories": [u.id for u in signatories],
            })
            self._commit()

        logger.info("Entry %s created by %s (folio %s)", entry.id, author.id, entry.folio_number)
        return entry

    def send_for_review(
        self,
        entry: LogEntry,
        actor: User,
        policy: ReviewPolicyKind = ReviewPolicyKind.PARALLEL,
        target_party: Optional[ReviewParty] = None,
        expected_version: Optional[int] = None,
    ) -> LogEntry:
        """
        DRAFT → SUBMITTED, creating the review obligations of the chosen policy.

        The policy chosen on first submission is kept for the life of the entry.
        """
        with self._operation("send_for_review", entry, actor):
            self._check_version(entry, expected_version)
            self._require_author_or_admin(entry, actor)
            self._require_status(entry, EntryStatus.DRAFT)
            if not entry.required_signatories:
                raise InvalidTransition("An entry needs at least one signatory before review")

            self.resolver.create_review_obligations(entry, actor, policy, target_party)
            entry.status = EntryStatus.SUBMITTED
            entry.rejection_reason = None
            self._audit(AuditEventType.ENTRY_SENT_FOR_REVIEW, entry, actor, {
                "policy": policy.value,
                "target_party": target_party.value if target_party else None,
            })

            # Nobody left to review (e.g. the author is the only signer and skipped)
            self._advance_if_review_satisfied(entry, actor)
            self._touch(entry)
            self._commit()

        logger.info("Entry %s sent for %s review by %s", entry.id, policy.value, actor.id)
        return entry

    def record_review_action(
        self,
        entry: LogEntry,
        actor: User,
        verdict: ReviewVerdict,
        comment: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> LogEntry:
        """
        Record a reviewer's action under whichever policy is active.

        SUBMITTED → NEEDS_REVIEW once the policy reports the review satisfied.
        Replays of an already applied action leave the entry unchanged.
        """
        with self._operation("record_review_action", entry, actor):
            self._check_version(entry, expected_version)
            self._require_status(entry, EntryStatus.SUBMITTED, EntryStatus.NEEDS_REVIEW)

            try:
                self.resolver.record_action(entry, actor, verdict, comment)
            except AlreadyDone as exc:
                logger.info("Ignoring replayed review action on entry %s: %s", entry.id, exc.message)
                return entry

            self._audit(AuditEventType.REVIEW_ACTION_RECORDED, entry, actor, {
                "verdict": verdict.value,
                "pending_review_by": entry.pending_review_by.value if entry.pending_review_by else None,
            })
            self._advance_if_review_satisfied(entry, actor)
            self._touch(entry)
            self._commit()

        return entry

    def approve(self, entry: LogEntry, actor: User, expected_version: Optional[int] = None) -> LogEntry:
        """
        NEEDS_REVIEW → APPROVED, opening one signature task per required signatory.
        """
        with self._operation("approve", entry, actor):
            self._check_version(entry, expected_version)
            if not flags_for(actor).can_edit_content:
                raise Forbidden(f"{actor.full_name} cannot approve entries")
            if entry.status == EntryStatus.SUBMITTED:
                raise ReviewIncomplete("Review obligations are still outstanding")
            self._require_status(entry, EntryStatus.NEEDS_REVIEW)
            if not self.resolver.is_review_satisfied(entry):
                raise ReviewIncomplete("Review obligations are still outstanding")

            opened = self.ledger.open_tasks(entry)
            entry.status = EntryStatus.APPROVED
            self._audit(AuditEventType.ENTRY_APPROVED, entry, actor, {
                "signature_tasks": [task.signer.id for task in opened],
            })
            self._touch(entry)
            self._commit()

        logger.info("Entry %s approved by %s", entry.id, actor.id)
        return entry

    def sign(
        self,
        entry: LogEntry,
        signer: User,
        consent: ConsentPayload,
        expected_version: Optional[int] = None,
    ) -> Signature:
        """
        Sign the entry as signer. APPROVED → SIGNED when the last pending task is signed.

        Signing twice returns the existing signature instead of creating another.
        """
        with self._operation("sign", entry, signer):
            self._check_version(entry, expected_version)
            self._require_status(entry, EntryStatus.APPROVED, EntryStatus.SIGNED)
            if not self.resolver.is_review_satisfied(entry):
                raise ReviewIncomplete("Signing is locked until the review is complete")
            if not flags_for(signer).can_sign:
                raise Forbidden(f"{signer.full_name} cannot sign entries")

            try:
                signature = self.ledger.sign(entry, signer, consent)
            except AlreadySigned:
                logger.info("Ignoring replayed signature of %s on entry %s", signer.id, entry.id)
                return self.ledger.existing_signature(entry, signer)

            summary = self.ledger.summary(entry)
            self._audit(AuditEventType.ENTRY_SIGNED, entry, signer, {
                "signed": summary.signed,
                "total": summary.total,
            })
            self._complete_if_signed(entry, signer, summary)
            self._touch(entry)
            self._commit()

        return signature

    def reject(
        self,
        entry: LogEntry,
        actor: User,
        reason: str,
        close: bool = False,
        expected_version: Optional[int] = None,
    ) -> LogEntry:
        """
        Send an entry under review back to DRAFT (or to REJECTED when close is set).

        Outstanding review and signature tasks are dropped; they are created
        again on the next submission.
        """
        with self._operation("reject", entry, actor):
            self._check_version(entry, expected_version)
            self._require_status(entry, EntryStatus.SUBMITTED, EntryStatus.NEEDS_REVIEW)
            flags = flags_for(actor)
            final_checker = entry.status == EntryStatus.NEEDS_REVIEW and flags.can_edit_content
            if not (flags.is_admin or final_checker or self.resolver.is_obligated(entry, actor)):
                raise Forbidden(f"{actor.full_name} cannot reject this entry")
            if not (reason or "").strip():
                raise ValueError("A rejection reason is required")

            self.resolver.clear_obligations(entry)
            self.ledger.discard_outstanding(entry)
            entry.status = EntryStatus.REJECTED if close else EntryStatus.DRAFT
            entry.rejection_reason = reason.strip()
            self._audit(AuditEventType.ENTRY_REJECTED, entry, actor, {
                "reason": entry.rejection_reason,
                "closed": close,
            })
            self._touch(entry)
            self._commit()

        logger.info("Entry %s rejected by %s (now %s)", entry.id, actor.id, entry.status.value)
        return entry

    def add_signatory(
        self, entry: LogEntry, actor: User, user: User, expected_version: Optional[int] = None
    ) -> LogEntry:
        """Add a required signatory. On an approved entry this opens a new pending task."""
        with self._operation("add_signatory", entry, actor):
            self._check_version(entry, expected_version)
            self._require_author_or_admin(entry, actor)
            self._require_status(entry, *_EDITABLE_SIGNATORIES)
            if not can_be_signatory(user):
                raise Forbidden(f"{user.full_name} cannot be a signatory")
            if any(existing.id == user.id for existing in entry.required_signatories):
                return entry

            entry.required_signatories.append(user)
            if entry.status == EntryStatus.SUBMITTED:
                self.resolver.add_reviewer(entry, user)
            elif entry.status == EntryStatus.APPROVED:
                self.ledger.open_tasks(entry)

            self._audit(AuditEventType.SIGNATORY_ADDED, entry, actor, {"user_id": user.id})
            self._touch(entry)
            self._commit()

        return entry

    def remove_signatory(
        self, entry: LogEntry, actor: User, user: User, expected_version: Optional[int] = None
    ) -> LogEntry:
        """Remove a required signatory who has not signed yet."""
        with self._operation("remove_signatory", entry, actor):
            self._check_version(entry, expected_version)
            self._require_author_or_admin(entry, actor)
            self._require_status(entry, *_EDITABLE_SIGNATORIES)
            listed = next((s for s in entry.required_signatories if s.id == user.id), None)
            if listed is None:
                return entry
            if entry.status != EntryStatus.DRAFT and len(entry.required_signatories) == 1:
                raise InvalidTransition("The last signatory of an entry under review cannot be removed")

            self.ledger.cancel_task(entry, user)
            entry.required_signatories.remove(listed)
            if entry.status == EntryStatus.SUBMITTED:
                self.resolver.drop_reviewer(entry, user)
                self._advance_if_review_satisfied(entry, actor)
            elif entry.status == EntryStatus.APPROVED:
                self._complete_if_signed(entry, actor, self.ledger.summary(entry))

            self._audit(AuditEventType.SIGNATORY_REMOVED, entry, actor, {"user_id": user.id})
            self._touch(entry)
            self._commit()

        return entry

    def delete_entry(self, entry: LogEntry, actor: User) -> None:
        """Explicit deletion; the only way an entry and its children go away."""
        entry_id = entry.id
        with self._operation("delete_entry", entry, actor):
            if not flags_for(actor).can_delete:
                raise Forbidden(f"{actor.full_name} cannot delete entries")
            if entry.status == EntryStatus.SIGNED:
                raise InvalidTransition("Signed entries cannot be deleted")

            self._audit(AuditEventType.ENTRY_DELETED, entry, actor, {"folio_number": entry.folio_number})
            self.db.delete(entry)
            self._commit()

        logger.info("Entry %s deleted by %s", entry_id, actor.id)

    # Internals

    def _advance_if_review_satisfied(self, entry: LogEntry, actor: User) -> None:
        if entry.status == EntryStatus.SUBMITTED and self.resolver.is_review_satisfied(entry):
            entry.status = EntryStatus.NEEDS_REVIEW
            self._audit(AuditEventType.ENTRY_REVIEW_SATISFIED, entry, actor, {
                "policy": entry.review_policy.value,
            })
            logger.info("Entry %s review satisfied, awaiting final check", entry.id)

    def _complete_if_signed(self, entry: LogEntry, actor: User, summary: SignatureSummary) -> None:
        if entry.status == EntryStatus.APPROVED and summary.completed:
            entry.status = EntryStatus.SIGNED
            self._audit(AuditEventType.ENTRY_SIGNATURE_COMPLETED, entry, actor, {"total": summary.total})
            logger.info("Entry %s fully signed", entry.id)

    def _require_status(self, entry: LogEntry, *allowed: EntryStatus) -> None:
        if entry.status not in allowed:
            expected = ", ".join(status.value for status in allowed)
            raise InvalidTransition(
                f"Entry {entry.id} is {entry.status.value}; this action needs {expected}"
            )

    def _require_author_or_admin(self, entry: LogEntry, actor: User) -> None:
        if actor.id != entry.author_id and not flags_for(actor).is_admin:
            raise Forbidden("Only the author or an admin can do this")

    def _check_version(self, entry: LogEntry, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != entry.version:
            raise Conflict(
                f"Entry {entry.id} changed (version {entry.version}, expected {expected_version})"
            )

    @staticmethod
    def _unique(users: Iterable[User]) -> list:
        seen = {}
        for user in users:
            seen.setdefault(user.id, user)
        return list(seen.values())

    def _touch(self, entry: LogEntry) -> None:
        # Forces an UPDATE of the entry row, which carries the version check
        entry.updated_at = datetime.utcnow()

    def _audit(self, event_type: str, entry: Optional[LogEntry], actor: Optional[User], payload: dict) -> None:
        self.db.add(AuditEvent(
            event_type=event_type,
            entity_type="LogEntry",
            entity_id=str(entry.id) if entry is not None else "-",
            user_id=actor.id if actor is not None else None,
            payload_json=payload,
        ))

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise Conflict("The entry was changed by someone else; reload and try again")

    @contextmanager
    def _operation(self, action: str, entry: Optional[LogEntry], actor: Optional[User]):
        entry_id = str(entry.id) if entry is not None else "-"
        actor_id = actor.id if actor is not None else None
        try:
            yield
        except (WorkflowError, ValueError) as exc:
            self.db.rollback()
            reason = exc.message if isinstance(exc, WorkflowError) else str(exc)
            code = exc.code if isinstance(exc, WorkflowError) else "invalid_input"
            logger.warning("Refused %s on entry %s by %s: %s", action, entry_id, actor_id, reason)
            self.db.add(AuditEvent(
                event_type=AuditEventType.ACTION_REFUSED,
                entity_type="LogEntry",
                entity_id=entry_id,
                user_id=actor_id,
                payload_json={"action": action, "code": code, "reason": reason},
            ))
            self.db.commit()
            raise
