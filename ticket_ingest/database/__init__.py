"""Database module"""
from .models import (
    Base,
    Company,
    User,
    Ticket,
    TicketComment,
    TicketMessageRef,
    TicketActivity,
    ProcessedEmail,
    Notification,
    TICKET_STATUSES,
    OPEN_STATUSES,
    PRIORITIES,
    init_database
)
from .ticket_store import TicketStore

__all__ = [
    'Base',
    'Company',
    'User',
    'Ticket',
    'TicketComment',
    'TicketMessageRef',
    'TicketActivity',
    'ProcessedEmail',
    'Notification',
    'TICKET_STATUSES',
    'OPEN_STATUSES',
    'PRIORITIES',
    'TicketStore',
    'init_database'
]
