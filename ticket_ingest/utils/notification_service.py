"""
Notification Fan-out
Writes one notification row per company user for ticket events
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
import structlog
from sqlalchemy.orm import Session

from ticket_ingest.database.models import Notification, Ticket, User

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Fire-and-forget notifications

    Each fan-out runs inside a SAVEPOINT. A failure is logged and rolled back
    to the savepoint only, so the surrounding ticket transaction still commits.
    """

    def ticket_created(self, session: Session, ticket: Ticket) -> int:
        return self._fan_out(
            session,
            ticket,
            notification_type='ticket_created',
            title='New Ticket Created',
            message=f'Ticket #{ticket.ticket_number} "{ticket.subject}" has been created',
            priority='high' if ticket.priority == 'urgent' else 'medium',
            extra_data={'priority': ticket.priority}
        )

    def priority_increased(self, session: Session, ticket: Ticket, old_priority: str, new_priority: str) -> int:
        return self._fan_out(
            session,
            ticket,
            notification_type='ticket_priority_increased',
            title='Ticket Priority Increased',
            message=(
                f'Ticket #{ticket.ticket_number} "{ticket.subject}" priority changed '
                f'from {old_priority.capitalize()} to {new_priority.capitalize()}'
            ),
            priority='high' if new_priority in ('high', 'urgent') else 'medium',
            extra_data={'oldPriority': old_priority, 'newPriority': new_priority}
        )

    def comment_added(self, session: Session, ticket: Ticket, author_name: str) -> int:
        return self._fan_out(
            session,
            ticket,
            notification_type='comment_added',
            title='New Comment Added',
            message=f'{author_name} added a comment to ticket #{ticket.ticket_number}',
            priority='medium',
            extra_data={'author': author_name}
        )

    def status_changed(self, session: Session, ticket: Ticket, old_status: str, new_status: str) -> int:
        return self._fan_out(
            session,
            ticket,
            notification_type='ticket_updated',
            title='Ticket Status Updated',
            message=f'Ticket #{ticket.ticket_number} status changed from {old_status} to {new_status}',
            priority='medium',
            extra_data={'oldStatus': old_status, 'newStatus': new_status}
        )

    def list_for_user(self, session: Session, user_id: int, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        query = session.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    def _fan_out(
        self,
        session: Session,
        ticket: Ticket,
        notification_type: str,
        title: str,
        message: str,
        priority: str,
        extra_data: Optional[Dict[str, Any]] = None
    ) -> int:
        """Insert one notification per company user, returns the count written"""
        metadata = {'ticketNumber': ticket.ticket_number, 'subject': ticket.subject}
        metadata.update(extra_data or {})
        try:
            with session.begin_nested():
                users = session.query(User).filter(User.company_id == ticket.company_id).all()
                now = datetime.utcnow()
                for user in users:
                    session.add(Notification(
                        user_id=user.id,
                        company_id=ticket.company_id,
                        type=notification_type,
                        title=title,
                        message=message,
                        related_ticket_id=ticket.id,
                        priority=priority,
                        extra_data=metadata,
                        created_at=now
                    ))
                session.flush()
        except Exception as e:
            logger.error(
                "Failed to create notifications",
                ticket_number=ticket.ticket_number,
                notification_type=notification_type,
                error=str(e)
            )
            return 0

        logger.info(
            "Notifications created",
            ticket_number=ticket.ticket_number,
            notification_type=notification_type,
            count=len(users)
        )
        return len(users)
