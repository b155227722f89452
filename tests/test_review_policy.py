"""Tests for the two review policies behind the resolver."""
import pytest
from app.models.domain import Comment
from app.models.enums import (
    EntryStatus,
    ReviewParty,
    ReviewPolicyKind,
    ReviewTaskStatus,
    ReviewVerdict,
)
from app.services.errors import Forbidden, InvalidTransition
from app.services.review_policy import ParallelReview, SequentialHandoff, review_policy_of


class TestParallelReview:

    def test_skip_author_review_excludes_author(self, sm, author, supervisor, contractor):
        entry = sm.create_entry(
            author,
            title="Anotación",
            required_signatories=[author, supervisor, contractor],
            skip_author_review=True,
        )
        sm.send_for_review(entry, author)

        reviewers = sorted(task.reviewer_id for task in entry.review_tasks)
        assert reviewers == sorted([supervisor.id, contractor.id])

    def test_author_only_signatory_skipping_review_goes_straight_to_final_check(self, sm, author):
        entry = sm.create_entry(author, title="Anotación", required_signatories=[author], skip_author_review=True)
        sm.send_for_review(entry, author)

        assert entry.review_tasks == []
        assert entry.status == EntryStatus.NEEDS_REVIEW

    def test_reviewers_act_in_any_order(self, sm, author, supervisor, contractor):
        entry = sm.create_entry(author, title="Anotación", required_signatories=[author, supervisor, contractor])
        sm.send_for_review(entry, author)

        sm.record_review_action(entry, contractor, ReviewVerdict.APPROVE)
        sm.record_review_action(entry, author, ReviewVerdict.COMMENT, comment="Ok")
        assert entry.status == EntryStatus.SUBMITTED
        sm.record_review_action(entry, supervisor, ReviewVerdict.COMMENT, comment="Conforme")

        assert entry.status == EntryStatus.NEEDS_REVIEW

    def test_completing_twice_is_a_no_op(self, sm, draft_entry, author, supervisor):
        sm.send_for_review(draft_entry, author)
        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.APPROVE)
        version = draft_entry.version

        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.APPROVE)

        assert draft_entry.version == version
        task = next(t for t in draft_entry.review_tasks if t.reviewer_id == supervisor.id)
        assert task.status == ReviewTaskStatus.COMPLETED

    def test_comment_after_completion_is_informational(self, sm, draft_entry, author, supervisor):
        sm.send_for_review(draft_entry, author)
        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.APPROVE)
        task = next(t for t in draft_entry.review_tasks if t.reviewer_id == supervisor.id)
        completed_at = task.completed_at

        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.COMMENT, comment="Nota adicional")

        task = next(t for t in draft_entry.review_tasks if t.reviewer_id == supervisor.id)
        assert task.status == ReviewTaskStatus.COMPLETED
        assert task.completed_at == completed_at
        assert [c.content for c in draft_entry.comments] == ["Nota adicional"]

    def test_comment_requires_text(self, sm, db_session, draft_entry, author, supervisor):
        sm.send_for_review(draft_entry, author)

        with pytest.raises(ValueError):
            sm.record_review_action(draft_entry, supervisor, ReviewVerdict.COMMENT, comment="   ")

        assert db_session.query(Comment).count() == 0
        task = next(t for t in draft_entry.review_tasks if t.reviewer_id == supervisor.id)
        assert task.status == ReviewTaskStatus.PENDING

    def test_non_reviewer_is_forbidden(self, sm, draft_entry, author, outsider):
        sm.send_for_review(draft_entry, author)
        with pytest.raises(Forbidden):
            sm.record_review_action(draft_entry, outsider, ReviewVerdict.APPROVE)

    def test_forward_does_not_apply(self, sm, draft_entry, author, supervisor):
        sm.send_for_review(draft_entry, author)
        with pytest.raises(InvalidTransition):
            sm.record_review_action(draft_entry, supervisor, ReviewVerdict.FORWARD)

    def test_tagged_view(self, sm, draft_entry, author):
        assert review_policy_of(draft_entry) is None
        sm.send_for_review(draft_entry, author)
        policy = review_policy_of(draft_entry)
        assert isinstance(policy, ParallelReview)
        assert len(policy.tasks) == 2


class TestSequentialHandoff:

    def _send(self, sm, entry, actor, party):
        sm.send_for_review(entry, actor, policy=ReviewPolicyKind.SEQUENTIAL, target_party=party)

    def test_contractor_side_author_cannot_target_contractor(self, sm, draft_entry, author):
        with pytest.raises(Forbidden):
            self._send(sm, draft_entry, author, ReviewParty.CONTRACTOR)
        assert draft_entry.status == EntryStatus.DRAFT
        assert draft_entry.review_policy is None

    def test_interventoria_author_sends_to_contractor(self, sm, supervisor, contractor):
        entry = sm.create_entry(supervisor, title="Anotación", required_signatories=[supervisor, contractor])

        with pytest.raises(Forbidden):
            self._send(sm, entry, supervisor, ReviewParty.INTERVENTORIA)

        self._send(sm, entry, supervisor, ReviewParty.CONTRACTOR)
        assert entry.pending_review_by == ReviewParty.CONTRACTOR

    def test_admin_may_target_either_party(self, sm, draft_entry, admin):
        self._send(sm, draft_entry, admin, ReviewParty.CONTRACTOR)
        assert draft_entry.pending_review_by == ReviewParty.CONTRACTOR

    def test_target_party_required(self, sm, draft_entry, author):
        with pytest.raises(ValueError):
            sm.send_for_review(draft_entry, author, policy=ReviewPolicyKind.SEQUENTIAL)
        assert draft_entry.status == EntryStatus.DRAFT

    def test_forward_and_back(self, sm, draft_entry, author, contractor, supervisor):
        self._send(sm, draft_entry, author, ReviewParty.INTERVENTORIA)

        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.FORWARD, comment="Ajustar cantidades")
        assert draft_entry.pending_review_by == ReviewParty.CONTRACTOR
        assert draft_entry.status == EntryStatus.SUBMITTED

        with pytest.raises(Forbidden):
            sm.record_review_action(draft_entry, supervisor, ReviewVerdict.APPROVE)

        sm.record_review_action(draft_entry, contractor, ReviewVerdict.APPROVE)
        assert draft_entry.pending_review_by is None
        assert draft_entry.review_completed_by == ReviewParty.CONTRACTOR
        assert draft_entry.status == EntryStatus.NEEDS_REVIEW
        assert [c.content for c in draft_entry.comments] == ["Ajustar cantidades"]

    def test_replayed_approval_is_a_no_op(self, sm, draft_entry, author, supervisor):
        self._send(sm, draft_entry, author, ReviewParty.INTERVENTORIA)
        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.APPROVE)
        version = draft_entry.version

        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.APPROVE)

        assert draft_entry.version == version
        assert draft_entry.status == EntryStatus.NEEDS_REVIEW

    def test_viewer_cannot_act_for_their_party(self, sm, draft_entry, author, viewer):
        self._send(sm, draft_entry, author, ReviewParty.INTERVENTORIA)
        with pytest.raises(Forbidden):
            sm.record_review_action(draft_entry, viewer, ReviewVerdict.APPROVE)
        assert draft_entry.pending_review_by == ReviewParty.INTERVENTORIA

    def test_tagged_view(self, sm, draft_entry, author):
        self._send(sm, draft_entry, author, ReviewParty.INTERVENTORIA)
        assert review_policy_of(draft_entry) == SequentialHandoff(pending_party=ReviewParty.INTERVENTORIA)
