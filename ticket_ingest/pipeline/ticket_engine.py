"""
Ticket Mutation Engine
Creates tickets, folds replies into them and records the ledger outcome
"""
import secrets
from datetime import datetime
from typing import Callable, Optional, Tuple
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_ingest.ai.classifier import Verdict
from ticket_ingest.ai.sentiment import SentimentPrioritizer
from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.database.models import Company, Ticket, User, TICKET_STATUSES
from ticket_ingest.database.ticket_store import TicketStore
from ticket_ingest.email.mailbox import RawMessage
from ticket_ingest.pipeline.ledger import IdempotencyLedger
from ticket_ingest.utils import audit_logger
from ticket_ingest.utils.email_utils import next_priority, parse_display_name
from ticket_ingest.utils.notification_service import NotificationService

logger = structlog.get_logger(__name__)


class TicketAllocationError(Exception):
    """No free ticket number was found within the retry budget"""
    pass


def format_ticket_number(sequence: int) -> str:
    return f"INC{sequence:06d}"


def generate_public_token(ticket_number: str) -> str:
    return f"{ticket_number}_{secrets.token_hex(16)}"


class TicketEngine:
    """
    Applies pipeline decisions to tickets within the caller's transaction

    Nothing here commits; the orchestrator commits once per message so the
    ticket change, its activity and the ledger entry land together.
    """

    def __init__(
        self,
        session: Session,
        config: Optional[Settings] = None,
        sentiment: Optional[SentimentPrioritizer] = None,
        notifications: Optional[NotificationService] = None,
        now: Callable[[], datetime] = datetime.utcnow
    ):
        self.session = session
        self.config = config or default_settings
        self.store = TicketStore(session)
        self.ledger = IdempotencyLedger(session)
        self._sentiment = sentiment
        self.notifications = notifications or NotificationService()
        self._now = now

    @staticmethod
    def is_self_mail(company: Company, sender_email: str) -> bool:
        connected = company.connected_email
        return bool(connected and sender_email and sender_email.strip().lower() == connected)

    def create(
        self,
        company: Company,
        message: RawMessage,
        sender_email: str,
        sender_name: str,
        content_hash: str
    ) -> Ticket:
        """
        Open a new ticket for a complaint

        Ticket numbers are tried from count+1 upward; each attempt runs in a
        savepoint and a unique-constraint collision moves on to the next one.

        Raises:
            TicketAllocationError: every candidate number was taken
        """
        body = message.body
        if self._sentiment is None:
            self._sentiment = SentimentPrioritizer(self.config)
        priority = self._sentiment.priority(message.subject, body)
        base = self.store.count_tickets(company.id)
        now = self._now()

        ticket = None
        for attempt in range(self.config.ticket_number_max_retries):
            ticket_number = format_ticket_number(base + 1 + attempt)
            candidate = Ticket(
                company_id=company.id,
                ticket_number=ticket_number,
                public_token=generate_public_token(ticket_number),
                subject=message.subject or '(no subject)',
                body=body,
                sender_email=sender_email,
                sender_name=sender_name,
                gmail_message_id=message.external_id,
                content_hash=content_hash,
                source='email',
                status='acknowledged',
                priority=priority,
                escalation_count=1,
                created_at=now,
                updated_at=now
            )
            try:
                ticket = self.store.insert_ticket(candidate)
                break
            except IntegrityError:
                logger.info(
                    "Ticket number taken, trying next",
                    company_id=company.id,
                    ticket_number=ticket_number,
                    attempt=attempt + 1
                )

        if ticket is None:
            raise TicketAllocationError(
                f"No free ticket number for company {company.id} after "
                f"{self.config.ticket_number_max_retries} attempts"
            )

        self.store.append_message_ref(ticket, message.external_id)
        audit_logger.log_ticket_created(self.session, ticket)
        self.ledger.record(
            company.id,
            message.external_id,
            message.message_id_header,
            'created',
            ticket_id=ticket.id,
            subject=message.subject,
            sender=sender_email
        )
        self.notifications.ticket_created(self.session, ticket)

        logger.info(
            "Ticket created",
            company_id=company.id,
            ticket_number=ticket.ticket_number,
            priority=ticket.priority,
            external_id=message.external_id
        )
        return ticket

    def append_reply(
        self,
        company: Company,
        ticket: Ticket,
        message: RawMessage,
        verdict: Verdict,
        sender_email: str
    ) -> Tuple[Ticket, bool]:
        """
        Fold a customer reply into a ticket

        The ticket row is re-read before mutation. Priority moves at most one
        step and only when the verdict asks for it.

        Returns:
            Tuple of (ticket, escalated)
        """
        ticket = self.store.lock_ticket(ticket)
        now = self._now()
        old_priority = ticket.priority
        escalated = False

        if verdict.should_escalate:
            new_priority = next_priority(old_priority)
            if new_priority != old_priority:
                ticket.priority = new_priority
                ticket.escalation_count = (ticket.escalation_count or 0) + 1
                ticket.escalated_at = now
                escalated = True
                logger.info(
                    "Priority escalated",
                    ticket_number=ticket.ticket_number,
                    old_priority=old_priority,
                    new_priority=new_priority
                )

        ticket.last_reply_at = now
        ticket.updated_at = now

        user: Optional[User] = self.store.find_user_by_email(company.id, sender_email)
        author_name = user.name if user else parse_display_name(message.from_header, 'Customer')
        body = message.body

        self.store.append_comment(ticket, author_name, body, user_id=user.id if user else None)
        self.store.append_message_ref(ticket, message.external_id)
        audit_logger.log_customer_reply(
            self.session,
            ticket,
            author_name,
            body,
            escalated_to=ticket.priority if escalated else None,
            user_id=user.id if user else None
        )
        self.ledger.record(
            company.id,
            message.external_id,
            message.message_id_header,
            'updated',
            ticket_id=ticket.id,
            subject=message.subject,
            sender=sender_email
        )

        if escalated:
            self.notifications.priority_increased(self.session, ticket, old_priority, ticket.priority)
        self.notifications.comment_added(self.session, ticket, author_name)

        return ticket, escalated

    def skip(self, company_id: int, message: RawMessage, sender_email: Optional[str], reason: str) -> None:
        """Record a message that changes no ticket"""
        self.ledger.record(
            company_id,
            message.external_id,
            message.message_id_header,
            'skipped',
            subject=message.subject,
            sender=sender_email,
            reason=reason
        )
        logger.info(
            "Message skipped",
            company_id=company_id,
            external_id=message.external_id,
            reason=reason
        )

    def update_status(
        self,
        company_id: int,
        ticket_id: int,
        new_status: str,
        user: Optional[User] = None
    ) -> Optional[Ticket]:
        """
        Change a ticket's status from the web surface

        Stamps resolved_at when moving to resolved and notifies the company.
        """
        if new_status not in TICKET_STATUSES:
            raise ValueError(f"Unknown status: {new_status}")
        ticket = self.store.get_ticket(company_id, ticket_id)
        if ticket is None:
            return None
        ticket = self.store.lock_ticket(ticket)
        old_status = ticket.status
        if old_status == new_status:
            return ticket

        fields = {'status': new_status}
        if new_status == 'resolved':
            fields['resolved_at'] = self._now()
        ticket = self.store.update_ticket(company_id, ticket_id, **fields)
        audit_logger.log_status_change(
            self.session,
            ticket,
            old_status,
            new_status,
            user_id=user.id if user else None,
            user_name=user.name if user else None
        )
        self.notifications.status_changed(self.session, ticket, old_status, new_status)
        return ticket

    def add_staff_comment(self, company_id: int, ticket_id: int, text: str, user: User) -> Optional[Ticket]:
        ticket = self.store.get_ticket(company_id, ticket_id)
        if ticket is None:
            return None
        self.store.append_comment(ticket, user.name, text, user_id=user.id)
        audit_logger.log_comment_added(self.session, ticket, text, user_id=user.id, user_name=user.name)
        self.notifications.comment_added(self.session, ticket, user.name)
        return ticket
