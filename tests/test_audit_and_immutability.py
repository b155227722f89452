"""
Tests for audit logging and optimistic concurrency.

These tests prove:
- Audit events are written for every transition
- Refusals are logged even though the refused change is rolled back
- Stale writers get Conflict instead of overwriting a newer entry
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from app.database import Base
from app.models.audit import AuditEvent, AuditEventType
from app.models.domain import LogEntry, Signature, User
from app.models.enums import AppRole, Entity, EntryStatus, ProjectRole, ReviewVerdict
from app.services.credentials import get_password_hash
from app.services.errors import Conflict, Forbidden
from app.services.state_machine import EntryStateMachine


def _events(db_session, event_type, entry_id=None):
    query = db_session.query(AuditEvent).filter(AuditEvent.event_type == event_type)
    if entry_id is not None:
        query = query.filter(AuditEvent.entity_id == str(entry_id))
    return query.all()


class TestAuditLogging:
    """Test that audit events are created for all workflow actions."""

    def test_entry_created_audit(self, db_session, draft_entry, author, supervisor):
        (audit,) = _events(db_session, AuditEventType.ENTRY_CREATED, draft_entry.id)

        assert audit.entity_type == "LogEntry"
        assert audit.user_id == author.id
        assert audit.payload_json["folio_number"] == draft_entry.folio_number
        assert sorted(audit.payload_json["required_signatories"]) == sorted([author.id, supervisor.id])

    def test_full_lifecycle_audit_trail(self, sm, db_session, draft_entry, author, supervisor, admin, consent):
        sm.send_for_review(draft_entry, author)
        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.APPROVE)
        sm.record_review_action(draft_entry, author, ReviewVerdict.APPROVE)
        sm.approve(draft_entry, admin)
        sm.sign(draft_entry, author, consent)
        sm.sign(draft_entry, supervisor, consent)

        trail = [
            event.event_type
            for event in db_session.query(AuditEvent)
            .filter(AuditEvent.entity_id == str(draft_entry.id))
            .order_by(AuditEvent.id)
        ]
        assert trail == [
            AuditEventType.ENTRY_CREATED,
            AuditEventType.ENTRY_SENT_FOR_REVIEW,
            AuditEventType.REVIEW_ACTION_RECORDED,
            AuditEventType.REVIEW_ACTION_RECORDED,
            AuditEventType.ENTRY_REVIEW_SATISFIED,
            AuditEventType.ENTRY_APPROVED,
            AuditEventType.ENTRY_SIGNED,
            AuditEventType.ENTRY_SIGNED,
            AuditEventType.ENTRY_SIGNATURE_COMPLETED,
        ]

    def test_refusal_is_audited_and_rolled_back(self, sm, db_session, draft_entry, supervisor):
        with pytest.raises(Forbidden):
            sm.send_for_review(draft_entry, supervisor)

        (audit,) = _events(db_session, AuditEventType.ACTION_REFUSED, draft_entry.id)
        assert audit.user_id == supervisor.id
        assert audit.payload_json["action"] == "send_for_review"
        assert audit.payload_json["code"] == "forbidden"

        assert draft_entry.status == EntryStatus.DRAFT
        assert draft_entry.review_tasks == []
        assert _events(db_session, AuditEventType.ENTRY_SENT_FOR_REVIEW) == []

    def test_replayed_signature_not_audited_twice(self, sm, db_session, draft_entry, author, supervisor, admin, consent):
        sm.send_for_review(draft_entry, author)
        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.APPROVE)
        sm.record_review_action(draft_entry, author, ReviewVerdict.APPROVE)
        sm.approve(draft_entry, admin)

        sm.sign(draft_entry, author, consent)
        sm.sign(draft_entry, author, consent)

        assert len(_events(db_session, AuditEventType.ENTRY_SIGNED, draft_entry.id)) == 1


class TestVersioning:
    """Every mutation bumps the version; stale expectations are refused."""

    def test_version_increments_on_each_transition(self, sm, draft_entry, author, supervisor):
        assert draft_entry.version == 1
        sm.send_for_review(draft_entry, author)
        assert draft_entry.version == 2
        sm.record_review_action(draft_entry, supervisor, ReviewVerdict.APPROVE)
        assert draft_entry.version == 3

    def test_stale_expected_version_conflicts(self, sm, draft_entry, author):
        with pytest.raises(Conflict):
            sm.send_for_review(draft_entry, author, expected_version=7)
        assert draft_entry.status == EntryStatus.DRAFT

        sm.send_for_review(draft_entry, author, expected_version=1)
        assert draft_entry.status == EntryStatus.SUBMITTED


class TestConcurrentWriters:
    """Two sessions racing on the same entry: the second writer gets Conflict."""

    @pytest.fixture
    def session_factory(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
        Base.metadata.create_all(engine)
        yield sessionmaker(bind=engine)
        engine.dispose()

    def _seed(self, session):
        password_hash = get_password_hash("obra-2024")
        author = User(id="resident", full_name="Resident", project_role=ProjectRole.RESIDENT,
                      app_role=AppRole.EDITOR, entity=Entity.CONTRATISTA, password_hash=password_hash)
        supervisor = User(id="supervisor", full_name="Supervisor", project_role=ProjectRole.SUPERVISOR,
                          app_role=AppRole.EDITOR, entity=Entity.INTERVENTORIA, password_hash=password_hash)
        session.add_all([author, supervisor])
        session.commit()
        sm = EntryStateMachine(session)
        entry = sm.create_entry(author, title="Carrera", required_signatories=[author, supervisor])
        sm.send_for_review(entry, author)
        return entry.id

    def test_second_reviewer_on_stale_read_gets_conflict(self, session_factory):
        seed = session_factory()
        entry_id = self._seed(seed)
        seed.close()

        first, second = session_factory(), session_factory()
        try:
            entry_a = first.get(LogEntry, entry_id)
            entry_b = second.get(LogEntry, entry_id)
            # Load everything the second writer needs before the first one commits
            list(entry_b.review_tasks)
            supervisor_b = second.get(User, "supervisor")

            EntryStateMachine(first).record_review_action(
                entry_a, first.get(User, "resident"), ReviewVerdict.APPROVE
            )

            with pytest.raises(Conflict):
                EntryStateMachine(second).record_review_action(entry_b, supervisor_b, ReviewVerdict.APPROVE)

            # After re-reading, the second reviewer succeeds
            second.expire_all()
            entry_b = second.get(LogEntry, entry_id)
            EntryStateMachine(second).record_review_action(entry_b, supervisor_b, ReviewVerdict.APPROVE)
            assert entry_b.status == EntryStatus.NEEDS_REVIEW
            assert entry_b.version == 4
        finally:
            first.close()
            second.close()

    def test_no_signature_left_behind_by_conflicting_writer(self, session_factory):
        seed = session_factory()
        entry_id = self._seed(seed)
        seed.close()

        first, second = session_factory(), session_factory()
        try:
            entry_a = first.get(LogEntry, entry_id)
            entry_b = second.get(LogEntry, entry_id)
            list(entry_b.review_tasks)

            EntryStateMachine(first).reject(entry_a, first.get(User, "supervisor"), "Falta información")

            with pytest.raises(Conflict):
                EntryStateMachine(second).record_review_action(
                    entry_b, second.get(User, "supervisor"), ReviewVerdict.APPROVE
                )

            check = session_factory()
            try:
                stored = check.get(LogEntry, entry_id)
                assert stored.status == EntryStatus.DRAFT
                assert stored.review_tasks == []
                assert check.query(Signature).count() == 0
            finally:
                check.close()
        finally:
            first.close()
            second.close()
