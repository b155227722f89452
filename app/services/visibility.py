"""Confidentiality guard for log entry content."""
from app.services.permissions import flags_for


def can_view_content(entry, viewer) -> bool:
    """
    Whether viewer may see the body of entry.

    Only yields a boolean. Redaction of the body fields is up to the
    presentation layer. Status plays no part: a confidential draft is
    as protected as a signed entry.
    """
    if not entry.is_confidential:
        return True
    if viewer is None:
        return False
    if flags_for(viewer).is_admin:
        return True
    author_id = entry.author_id or (entry.author.id if entry.author is not None else None)
    if viewer.id == author_id:
        return True

    related = {user.id for user in entry.assignees}
    related.update(user.id for user in entry.required_signatories)
    related.update(task.signer_id for task in entry.signature_tasks)
    return viewer.id in related
