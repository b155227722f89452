"""
Workflow errors.

Every refusal of the engine is one of these. They are raised before any
mutation (or after a rollback), so the entry is always left in its prior,
valid state.
"""


class WorkflowError(Exception):
    """
    Raised when the workflow refuses an action.
    This is NOT a crash - it's the system working correctly.
    """
    code = "workflow_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class InvalidTransition(WorkflowError):
    """The entry's current status does not allow the action. Usually a stale client."""
    code = "invalid_transition"


class Forbidden(WorkflowError):
    """The actor lacks the capability, or is not the addressed party."""
    code = "forbidden"


class ReviewIncomplete(WorkflowError):
    """Review obligations are still outstanding."""
    code = "review_incomplete"


class InvalidConsent(WorkflowError):
    """Consent missing or false, or the credential check failed."""
    code = "invalid_consent"


class Conflict(WorkflowError):
    """Another writer changed the entry between read and write."""
    code = "conflict"


class AlreadyDone(WorkflowError):
    """
    The action was already applied. The controller absorbs these and
    reports success with unchanged state, so client retries are safe.
    """
    code = "already_done"


class AlreadySigned(AlreadyDone):
    code = "already_signed"


class AlreadyReviewed(AlreadyDone):
    code = "already_reviewed"
