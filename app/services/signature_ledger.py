"""
Signature ledger: signature tasks, signatures and the completion summary.

The ledger only mutates the in-memory aggregate. Committing is the job of
the state machine, so a signature and its task transition are always
written together or not at all.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from app.models.domain import LogEntry, Signature, SignatureTask, User
from app.models.enums import SignatureTaskStatus
from app.services.credentials import verify_credential
from app.services.errors import AlreadySigned, Forbidden, InvalidConsent, InvalidTransition

logger = logging.getLogger(__name__)

# Tasks in these states count towards the summary
_COUNTED = (SignatureTaskStatus.PENDING, SignatureTaskStatus.SIGNED)


@dataclass(frozen=True)
class SignatureSummary:
    total: int
    signed: int
    pending: int
    completed: bool


@dataclass(frozen=True)
class ConsentPayload:
    """The signer's explicit affirmation plus the credential that backs it."""
    consent: bool
    password: str
    consent_statement: str


class SignatureLedger:
    """Owns signature tasks and signatures of a log entry."""

    def __init__(self, verify: Callable[[User, str], bool] = verify_credential):
        self._verify = verify

    def summary(self, entry: LogEntry) -> SignatureSummary:
        """
        Recompute the summary from the current task list.

        Never cached: adding a signatory after the fact flips completed
        back to False.
        """
        counted = [task for task in entry.signature_tasks if task.status in _COUNTED]
        signed = sum(1 for task in counted if task.status == SignatureTaskStatus.SIGNED)
        pending = len(counted) - signed
        return SignatureSummary(
            total=len(counted),
            signed=signed,
            pending=pending,
            completed=pending == 0 and len(counted) > 0,
        )

    def task_for(self, entry: LogEntry, user: User) -> Optional[SignatureTask]:
        for task in entry.signature_tasks:
            if task.signer.id == user.id:
                return task
        return None

    def open_tasks(self, entry: LogEntry) -> List[SignatureTask]:
        """
        Ensure there is exactly one live task per required signatory.

        Existing tasks are left alone; a cancelled task for a signatory who
        was added back is reopened rather than duplicated.
        """
        opened = []
        now = datetime.utcnow()
        for user in entry.required_signatories:
            task = self.task_for(entry, user)
            if task is None:
                task = SignatureTask(signer=user, status=SignatureTaskStatus.PENDING, assigned_at=now)
                entry.signature_tasks.append(task)
                opened.append(task)
            elif task.status == SignatureTaskStatus.CANCELLED:
                task.status = SignatureTaskStatus.PENDING
                task.assigned_at = now
                opened.append(task)
        return opened

    def cancel_task(self, entry: LogEntry, user: User) -> Optional[SignatureTask]:
        """Cancel the pending task of user. Signed tasks are permanent."""
        task = self.task_for(entry, user)
        if task is None:
            return None
        if task.status == SignatureTaskStatus.SIGNED:
            raise InvalidTransition(f"{user.full_name} has already signed and cannot be removed")
        task.status = SignatureTaskStatus.CANCELLED
        return task

    def discard_outstanding(self, entry: LogEntry) -> int:
        """Drop every task that has not been signed. Returns how many were dropped."""
        outstanding = [task for task in entry.signature_tasks if task.status != SignatureTaskStatus.SIGNED]
        for task in outstanding:
            entry.signature_tasks.remove(task)
        return len(outstanding)

    def sign(self, entry: LogEntry, signer: User, consent: ConsentPayload) -> Signature:
        """
        Sign the signer's task on entry.

        Raises Forbidden if signer has no task, InvalidConsent if consent is
        missing or the credential is wrong, and AlreadySigned if the task is
        no longer pending.
        """
        task = self.task_for(entry, signer)
        if task is None or task.status == SignatureTaskStatus.CANCELLED:
            raise Forbidden(f"{signer.full_name} is not a signatory of this entry")

        if consent is None or consent.consent is not True:
            raise InvalidConsent("Explicit consent is required to sign")
        if not (consent.consent_statement or "").strip():
            raise InvalidConsent("A consent statement is required to sign")
        if not self._verify(signer, consent.password):
            raise InvalidConsent("Credential check failed")

        if task.status != SignatureTaskStatus.PENDING:
            raise AlreadySigned(f"{signer.full_name} has already signed this entry")

        now = datetime.utcnow()
        task.status = SignatureTaskStatus.SIGNED
        task.signed_at = now
        signature = Signature(
            signer=signer,
            signature_task=task,
            signature_task_status=SignatureTaskStatus.SIGNED,
            consent_statement=consent.consent_statement.strip(),
            signed_at=now,
        )
        entry.signatures.append(signature)
        logger.info("Entry %s signed by %s", entry.id, signer.id)
        return signature

    def existing_signature(self, entry: LogEntry, signer: User) -> Optional[Signature]:
        for signature in entry.signatures:
            if signature.signer.id == signer.id:
                return signature
        return None
