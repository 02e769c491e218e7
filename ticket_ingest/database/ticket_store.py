"""
Ticket Store
Session-bound repository shared by the ingestion pipeline and the web API
"""
from datetime import datetime
from typing import Optional, List
import structlog
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    Ticket,
    TicketActivity,
    TicketComment,
    TicketMessageRef,
    User,
    OPEN_STATUSES,
    ACTIVITY_TYPES,
)

logger = structlog.get_logger(__name__)


class TicketStore:
    """
    Reads and writes tickets for one database session

    Every query is scoped by company id. Appends to comments and processed
    message ids are row inserts, so two writers never overwrite each other.
    """

    def __init__(self, session: Session):
        self.session = session

    # ---- lookups -------------------------------------------------------

    def get_ticket(self, company_id: int, ticket_id: int) -> Optional[Ticket]:
        return self.session.query(Ticket).filter(
            Ticket.company_id == company_id,
            Ticket.id == ticket_id
        ).first()

    def get_by_number(self, company_id: int, ticket_number: str) -> Optional[Ticket]:
        return self.session.query(Ticket).filter(
            Ticket.company_id == company_id,
            Ticket.ticket_number == ticket_number.upper()
        ).first()

    def get_by_public_token(self, public_token: str) -> Optional[Ticket]:
        return self.session.query(Ticket).filter(Ticket.public_token == public_token).first()

    def find_by_content_hash(self, company_id: int, content_hash: str, since: datetime) -> Optional[Ticket]:
        """Most recent ticket with this digest created at or after `since`"""
        return self.session.query(Ticket).filter(
            Ticket.company_id == company_id,
            Ticket.content_hash == content_hash,
            Ticket.created_at >= since
        ).order_by(Ticket.created_at.desc()).first()

    def find_by_external_id(self, company_id: int, external_id: str) -> Optional[Ticket]:
        """Ticket that already folded in this external message id"""
        folded = self.session.query(TicketMessageRef.ticket_id).filter(
            TicketMessageRef.company_id == company_id,
            TicketMessageRef.external_id == external_id
        )
        return self.session.query(Ticket).filter(
            Ticket.company_id == company_id,
            or_(Ticket.gmail_message_id == external_id, Ticket.id.in_(folded))
        ).first()

    def find_open_from_sender(self, company_id: int, sender_email: str, since: datetime) -> Optional[Ticket]:
        """Most recent open ticket from a sender created at or after `since`"""
        return self.session.query(Ticket).filter(
            Ticket.company_id == company_id,
            Ticket.sender_email == sender_email.lower(),
            Ticket.created_at >= since,
            Ticket.status.in_(OPEN_STATUSES)
        ).order_by(Ticket.created_at.desc(), Ticket.id.desc()).first()

    def list_tickets(self, company_id: int, limit: int = 50, offset: int = 0) -> List[Ticket]:
        return self.session.query(Ticket).filter(
            Ticket.company_id == company_id
        ).order_by(Ticket.created_at.desc(), Ticket.id.desc()).offset(offset).limit(limit).all()

    def list_activities(self, ticket: Ticket) -> List[TicketActivity]:
        return ticket.activities.order_by(TicketActivity.created_at, TicketActivity.id).all()

    def count_tickets(self, company_id: int) -> int:
        return self.session.query(Ticket).filter(Ticket.company_id == company_id).count()

    def find_user_by_email(self, company_id: int, email: str) -> Optional[User]:
        return self.session.query(User).filter(
            User.company_id == company_id,
            User.email == email.lower()
        ).first()

    # ---- writes --------------------------------------------------------

    def insert_ticket(self, ticket: Ticket) -> Ticket:
        """
        Insert a ticket inside a SAVEPOINT

        Raises:
            IntegrityError: ticket number or public token already taken
        """
        with self.session.begin_nested():
            self.session.add(ticket)
            self.session.flush()
        return ticket

    def lock_ticket(self, ticket: Ticket) -> Ticket:
        """
        Re-read a ticket row from the database before mutating it

        Uses SELECT ... FOR UPDATE where the backend supports it, so a
        concurrent CRUD write is seen rather than overwritten.
        """
        locked = self.session.query(Ticket).filter(
            Ticket.id == ticket.id
        ).with_for_update().populate_existing().one()
        return locked

    def update_ticket(self, company_id: int, ticket_id: int, **fields) -> Optional[Ticket]:
        """Read-modify-write update of scalar ticket fields"""
        ticket = self.get_ticket(company_id, ticket_id)
        if not ticket:
            return None
        ticket = self.lock_ticket(ticket)
        for name, value in fields.items():
            if name in ('ticket_number', 'public_token', 'company_id', 'id'):
                raise ValueError(f"Ticket field '{name}' is immutable")
            setattr(ticket, name, value)
        ticket.updated_at = datetime.utcnow()
        self.session.flush()
        return ticket

    def append_activity(
        self,
        ticket: Ticket,
        activity_type: str,
        details: str,
        content: Optional[str] = None,
        user_id: Optional[int] = None,
        user_name: Optional[str] = None,
    ) -> TicketActivity:
        if activity_type not in ACTIVITY_TYPES:
            raise ValueError(f"Unknown activity type: {activity_type}")
        activity = TicketActivity(
            ticket_id=ticket.id,
            activity_type=activity_type,
            details=details,
            content=content,
            user_id=user_id,
            user_name=user_name,
            created_at=datetime.utcnow()
        )
        self.session.add(activity)
        self.session.flush()
        return activity

    def append_comment(
        self,
        ticket: Ticket,
        user_name: str,
        text: str,
        user_id: Optional[int] = None,
    ) -> TicketComment:
        comment = TicketComment(
            user_id=user_id,
            user_name=user_name,
            text=text,
            created_at=datetime.utcnow()
        )
        ticket.comments.append(comment)
        self.session.flush()
        return comment

    def append_message_ref(self, ticket: Ticket, external_id: str) -> bool:
        """
        Fold an external message id into a ticket

        Returns:
            True if the id was added, False if the ticket already had it
        """
        if external_id in ticket.processed_gmail_message_ids:
            return False
        ref = TicketMessageRef(company_id=ticket.company_id, external_id=external_id)
        try:
            with self.session.begin_nested():
                ticket.message_refs.append(ref)
                self.session.flush()
        except IntegrityError:
            logger.info(
                "Message id already folded into ticket",
                ticket_number=ticket.ticket_number,
                external_id=external_id
            )
            self.session.refresh(ticket, attribute_names=['message_refs'])
            return False
        return True
