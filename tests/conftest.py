"""Pytest configuration and shared fixtures."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from app.database import Base
from app.models.domain import User, LogEntry, SignatureTask, Signature, ReviewTask, Comment
from app.models.audit import AuditEvent
from app.models.enums import AppRole, Entity, ProjectRole
from app.services.credentials import get_password_hash
from app.services.signature_ledger import ConsentPayload
from app.services.state_machine import EntryStateMachine

PASSWORD = "obra-2024"

_PASSWORD_HASH = get_password_hash(PASSWORD)


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def make_user(db_session):
    """Factory for persisted users sharing the same test password."""
    def _make_user(user_id, project_role, app_role=AppRole.EDITOR, entity=None, full_name=None):
        user = User(
            id=user_id,
            full_name=full_name or user_id.replace("_", " ").title(),
            project_role=project_role,
            app_role=app_role,
            entity=entity,
            password_hash=_PASSWORD_HASH,
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make_user


@pytest.fixture
def author(make_user):
    """Site resident on the contractor side; authors most entries."""
    return make_user("resident", ProjectRole.RESIDENT, AppRole.EDITOR, Entity.CONTRATISTA)


@pytest.fixture
def contractor(make_user):
    return make_user("contractor_rep", ProjectRole.CONTRACTOR_REP, AppRole.EDITOR, Entity.CONTRATISTA)


@pytest.fixture
def supervisor(make_user):
    """Interventoría supervisor."""
    return make_user("supervisor", ProjectRole.SUPERVISOR, AppRole.EDITOR, Entity.INTERVENTORIA)


@pytest.fixture
def admin(make_user):
    return make_user("idu_admin", ProjectRole.ADMIN, AppRole.ADMIN, Entity.IDU)


@pytest.fixture
def viewer(make_user):
    return make_user("read_only", ProjectRole.SUPERVISOR, AppRole.VIEWER, Entity.INTERVENTORIA)


@pytest.fixture
def outsider(make_user):
    """Editor with no relation to the entries under test."""
    return make_user("outsider", ProjectRole.RESIDENT, AppRole.EDITOR, Entity.IDU)


@pytest.fixture
def sm(db_session):
    return EntryStateMachine(db_session)


@pytest.fixture
def consent():
    return ConsentPayload(
        consent=True,
        password=PASSWORD,
        consent_statement="Firmo esta anotación en calidad de responsable.",
    )


@pytest.fixture
def draft_entry(sm, author, supervisor):
    """DRAFT entry by the resident, signed by the resident and the supervisor."""
    return sm.create_entry(
        author,
        title="Fundida de placa eje 3",
        description="Vaciado de concreto 3000 psi en placa de cimentación.",
        required_signatories=[author, supervisor],
    )
