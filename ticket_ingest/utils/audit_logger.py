"""
Audit Logging Utility
Helper functions for writing ticket activity entries
"""
import structlog
from typing import Optional
from sqlalchemy.orm import Session

from ticket_ingest.database.models import Ticket, TicketActivity
from ticket_ingest.database.ticket_store import TicketStore

logger = structlog.get_logger(__name__)

CREATED_DETAILS = "Ticket created from email complaint (Analyzed by AI)"
REPLY_DETAILS = "Customer replied"


def log_ticket_action(
    db: Session,
    ticket: Ticket,
    activity_type: str,
    details: str,
    content: Optional[str] = None,
    user_id: Optional[int] = None,
    user_name: Optional[str] = None
) -> TicketActivity:
    """
    Append an activity entry to a ticket

    Args:
        db: Database session
        ticket: Ticket the activity belongs to
        activity_type: One of created, status_changed, assigned, note, comment, reply
        details: Human-readable description
        content: Optional free text (reply body, comment text)
        user_id: ID of user who performed the action (None for system actions)
        user_name: Display name of the actor

    Returns:
        The new TicketActivity row (not yet committed)
    """
    activity = TicketStore(db).append_activity(
        ticket,
        activity_type,
        details,
        content=content,
        user_id=user_id,
        user_name=user_name
    )

    logger.info(
        "Activity logged",
        ticket_number=ticket.ticket_number,
        activity_type=activity_type,
        user_id=user_id
    )
    return activity


def log_ticket_created(db: Session, ticket: Ticket) -> TicketActivity:
    """Log creation of a ticket from an inbound email"""
    return log_ticket_action(
        db=db,
        ticket=ticket,
        activity_type="created",
        details=CREATED_DETAILS,
        user_name="System"
    )


def log_customer_reply(
    db: Session,
    ticket: Ticket,
    author_name: str,
    content: str,
    escalated_to: Optional[str] = None,
    user_id: Optional[int] = None
) -> TicketActivity:
    """Log a customer reply, noting the new priority when it escalated"""
    details = REPLY_DETAILS
    if escalated_to:
        details += f" - Priority escalated to {escalated_to}"
    return log_ticket_action(
        db=db,
        ticket=ticket,
        activity_type="reply",
        details=details,
        content=content,
        user_id=user_id,
        user_name=author_name
    )


def log_status_change(
    db: Session,
    ticket: Ticket,
    old_status: str,
    new_status: str,
    user_id: Optional[int] = None,
    user_name: Optional[str] = None
) -> TicketActivity:
    """Log a ticket status change"""
    return log_ticket_action(
        db=db,
        ticket=ticket,
        activity_type="status_changed",
        details=f"changed status from '{old_status}' to '{new_status}'",
        user_id=user_id,
        user_name=user_name
    )


def log_comment_added(
    db: Session,
    ticket: Ticket,
    text: str,
    user_id: Optional[int] = None,
    user_name: Optional[str] = None
) -> TicketActivity:
    """Log a staff comment"""
    return log_ticket_action(
        db=db,
        ticket=ticket,
        activity_type="comment",
        details="added a comment",
        content=text,
        user_id=user_id,
        user_name=user_name
    )
