"""Enums for the bitácora workflow - these define the valid values for states, roles and parties."""
from enum import Enum
from typing import Optional


class EntryStatus(str, Enum):
    """The six states a log entry can be in. DRAFT is initial; SIGNED and REJECTED are terminal."""
    DRAFT = "Borrador"
    SUBMITTED = "Revisión contratista"
    NEEDS_REVIEW = "Revisión final"
    APPROVED = "Listo para firmas"
    SIGNED = "Firmado"
    REJECTED = "Rechazado"


class ProjectRole(str, Enum):
    RESIDENT = "Residente de Obra"
    SUPERVISOR = "Supervisor"
    CONTRACTOR_REP = "Contratista"
    ADMIN = "IDU"


class AppRole(str, Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class Entity(str, Enum):
    """
    Organisation a user belongs to.

    Free-text entity values are resolved into this enum once, when a user
    enters the system. Nothing downstream matches on the raw text.
    """
    IDU = "IDU"
    INTERVENTORIA = "INTERVENTORIA"
    CONTRATISTA = "CONTRATISTA"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["Entity"]:
        if raw is None:
            return None
        if isinstance(raw, Entity):
            return raw
        normalized = raw.strip().upper()
        if not normalized:
            return None
        # "Interventoría" and friends
        normalized = normalized.replace("Í", "I")
        if "CONTRATISTA" in normalized:
            return cls.CONTRATISTA
        if "INTERVENTORIA" in normalized:
            return cls.INTERVENTORIA
        if normalized == "IDU":
            return cls.IDU
        raise ValueError(f"Unknown entity: {raw!r}")


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class SignatureTaskStatus(str, Enum):
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"


class ReviewTaskStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class ReviewPolicyKind(str, Enum):
    """Tag of the review policy attached to an entry. Fixed after first submission."""
    PARALLEL = "PARALLEL"
    SEQUENTIAL = "SEQUENTIAL"


class ReviewParty(str, Enum):
    """The two parties of the sequential hand-off."""
    CONTRACTOR = "CONTRACTOR"
    INTERVENTORIA = "INTERVENTORIA"

    @property
    def other(self) -> "ReviewParty":
        if self is ReviewParty.CONTRACTOR:
            return ReviewParty.INTERVENTORIA
        return ReviewParty.CONTRACTOR


class ReviewVerdict(str, Enum):
    """What a reviewer does with an entry under review."""
    COMMENT = "COMMENT"      # parallel: comment, completes the reviewer's task
    APPROVE = "APPROVE"      # parallel: approve without comment; sequential: clear the hand-off
    FORWARD = "FORWARD"      # sequential: hand the entry to the other party
