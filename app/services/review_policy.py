"""
Review policies that gate signing.

An entry uses exactly one of two policies for its whole life:

- PARALLEL: one review task per selected signer, completed in any order by
  commenting or approving without comment.
- SEQUENTIAL: a hand-off between contractor and interventoría, tracked by
  pending_review_by. Only the addressed party may act.

The state machine only talks to ReviewPolicyResolver and never looks at
the policy data itself.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union

from app.models.domain import Comment, LogEntry, ReviewTask, User
from app.models.enums import ReviewParty, ReviewPolicyKind, ReviewTaskStatus, ReviewVerdict
from app.services.errors import AlreadyReviewed, Forbidden, InvalidTransition
from app.services.permissions import flags_for, party_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParallelReview:
    tasks: Tuple[ReviewTask, ...]


@dataclass(frozen=True)
class SequentialHandoff:
    pending_party: Optional[ReviewParty]


ReviewPolicy = Union[ParallelReview, SequentialHandoff]


def review_policy_of(entry: LogEntry) -> Optional[ReviewPolicy]:
    """
    Read the tagged review policy of an entry, or None before first submission.

    Raises ValueError if the stored data contradicts the tag.
    """
    if entry.review_policy is None:
        if entry.review_tasks or entry.pending_review_by is not None:
            raise ValueError(f"Entry {entry.id} carries review data without a review policy")
        return None
    if entry.review_policy == ReviewPolicyKind.PARALLEL:
        if entry.pending_review_by is not None:
            raise ValueError(f"Entry {entry.id} mixes parallel review with a pending hand-off")
        return ParallelReview(tasks=tuple(entry.review_tasks))
    if entry.review_policy == ReviewPolicyKind.SEQUENTIAL:
        if entry.review_tasks:
            raise ValueError(f"Entry {entry.id} mixes a hand-off with parallel review tasks")
        return SequentialHandoff(pending_party=entry.pending_review_by)
    raise ValueError(f"Unknown review policy: {entry.review_policy}")


def _add_comment(entry: LogEntry, actor: User, comment: Optional[str]) -> None:
    text = (comment or "").strip()
    if not text:
        raise ValueError("Comment text is required")
    entry.comments.append(Comment(author=actor, content=text, created_at=datetime.utcnow()))


class ParallelReviewPolicy:
    kind = ReviewPolicyKind.PARALLEL

    def create_obligations(self, entry: LogEntry, actor: User, target_party: Optional[ReviewParty]) -> None:
        now = datetime.utcnow()
        for user in entry.required_signatories:
            if entry.skip_author_review and user.id == entry.author.id:
                continue
            entry.review_tasks.append(
                ReviewTask(reviewer=user, status=ReviewTaskStatus.PENDING, assigned_at=now)
            )

    def record_action(
        self, entry: LogEntry, actor: User, verdict: ReviewVerdict, comment: Optional[str]
    ) -> None:
        if verdict not in (ReviewVerdict.COMMENT, ReviewVerdict.APPROVE):
            raise InvalidTransition(f"{verdict.value} does not apply to parallel review")

        task = next((t for t in entry.review_tasks if t.reviewer.id == actor.id), None)
        if task is None:
            raise Forbidden(f"{actor.full_name} is not a reviewer of this entry")

        if verdict == ReviewVerdict.COMMENT:
            # Comments after completion are informational only
            _add_comment(entry, actor, comment)

        if task.status == ReviewTaskStatus.COMPLETED:
            if verdict == ReviewVerdict.COMMENT:
                return
            raise AlreadyReviewed(f"{actor.full_name} has already reviewed this entry")

        task.status = ReviewTaskStatus.COMPLETED
        task.completed_at = datetime.utcnow()
        logger.info("Review task %s of entry %s completed by %s", task.id, entry.id, actor.id)

    def is_satisfied(self, entry: LogEntry) -> bool:
        return all(task.status == ReviewTaskStatus.COMPLETED for task in entry.review_tasks)

    def clear(self, entry: LogEntry) -> None:
        entry.review_tasks.clear()


class SequentialHandoffPolicy:
    kind = ReviewPolicyKind.SEQUENTIAL

    def create_obligations(self, entry: LogEntry, actor: User, target_party: Optional[ReviewParty]) -> None:
        if target_party is None:
            raise ValueError("A target party is required for a sequential hand-off")

        if not flags_for(actor).is_admin:
            own = party_of(actor)
            allowed = own.other if own is not None else ReviewParty.CONTRACTOR
            if target_party != allowed:
                raise Forbidden(f"Entries can only be sent to {allowed.value} from this account")

        entry.pending_review_by = target_party
        entry.review_completed_by = None
        entry.review_completed_at = None

    def record_action(
        self, entry: LogEntry, actor: User, verdict: ReviewVerdict, comment: Optional[str]
    ) -> None:
        if not flags_for(actor).can_edit_content:
            raise Forbidden(f"{actor.full_name} cannot review entries")

        if verdict == ReviewVerdict.COMMENT:
            _add_comment(entry, actor, comment)
            return

        pending = entry.pending_review_by
        if pending is None:
            raise AlreadyReviewed("The hand-off review is already complete")
        if party_of(actor) != pending:
            raise Forbidden(f"This entry is waiting for {pending.value}")

        if verdict == ReviewVerdict.FORWARD:
            entry.pending_review_by = pending.other
            logger.info("Entry %s handed from %s to %s", entry.id, pending.value, pending.other.value)
        elif verdict == ReviewVerdict.APPROVE:
            entry.pending_review_by = None
            entry.review_completed_by = pending
            entry.review_completed_at = datetime.utcnow()
            logger.info("Entry %s hand-off review completed by %s", entry.id, pending.value)
        else:
            raise InvalidTransition(f"{verdict.value} does not apply to a sequential hand-off")

        if comment and comment.strip():
            _add_comment(entry, actor, comment)

    def is_satisfied(self, entry: LogEntry) -> bool:
        return entry.pending_review_by is None

    def clear(self, entry: LogEntry) -> None:
        entry.pending_review_by = None


_POLICIES = {
    ReviewPolicyKind.PARALLEL: ParallelReviewPolicy(),
    ReviewPolicyKind.SEQUENTIAL: SequentialHandoffPolicy(),
}


class ReviewPolicyResolver:
    """Single entry point to whichever policy is attached to an entry."""

    def _policy(self, entry: LogEntry):
        review_policy_of(entry)  # consistency check
        if entry.review_policy is None:
            raise InvalidTransition(f"Entry {entry.id} has not been sent for review")
        return _POLICIES[entry.review_policy]

    def create_review_obligations(
        self,
        entry: LogEntry,
        actor: User,
        kind: ReviewPolicyKind,
        target_party: Optional[ReviewParty] = None,
    ) -> None:
        """Attach (or re-attach) the review policy and create its obligations."""
        if entry.review_policy is not None and entry.review_policy != kind:
            raise InvalidTransition(
                f"Entry {entry.id} uses {entry.review_policy.value} review; it cannot switch to {kind.value}"
            )
        policy = _POLICIES[kind]
        policy.create_obligations(entry, actor, target_party)
        entry.review_policy = kind

    def record_action(
        self, entry: LogEntry, actor: User, verdict: ReviewVerdict, comment: Optional[str] = None
    ) -> None:
        self._policy(entry).record_action(entry, actor, verdict, comment)

    def is_review_satisfied(self, entry: LogEntry) -> bool:
        if entry.review_policy is None:
            return False
        return self._policy(entry).is_satisfied(entry)

    def clear_obligations(self, entry: LogEntry) -> None:
        """Drop outstanding obligations. The policy tag itself stays."""
        if entry.review_policy is not None:
            self._policy(entry).clear(entry)

    def add_reviewer(self, entry: LogEntry, user: User) -> None:
        """Give a late-added signatory a review task when parallel review is under way."""
        if entry.review_policy != ReviewPolicyKind.PARALLEL:
            return
        if entry.skip_author_review and user.id == entry.author.id:
            return
        if any(task.reviewer.id == user.id for task in entry.review_tasks):
            return
        entry.review_tasks.append(
            ReviewTask(reviewer=user, status=ReviewTaskStatus.PENDING, assigned_at=datetime.utcnow())
        )

    def drop_reviewer(self, entry: LogEntry, user: User) -> None:
        if entry.review_policy != ReviewPolicyKind.PARALLEL:
            return
        for task in list(entry.review_tasks):
            if task.reviewer.id == user.id and task.status == ReviewTaskStatus.PENDING:
                entry.review_tasks.remove(task)

    def is_obligated(self, entry: LogEntry, actor: User) -> bool:
        """Whether actor currently owes a review on entry."""
        if entry.review_policy == ReviewPolicyKind.PARALLEL:
            return any(
                task.reviewer.id == actor.id and task.status == ReviewTaskStatus.PENDING
                for task in entry.review_tasks
            )
        if entry.review_policy == ReviewPolicyKind.SEQUENTIAL:
            return entry.pending_review_by is not None and party_of(actor) == entry.pending_review_by
        return False
