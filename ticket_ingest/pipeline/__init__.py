"""Ingestion pipeline"""
from .ledger import IdempotencyLedger
from .resolver import ReplyResolver, Resolution
from .ticket_engine import TicketEngine, TicketAllocationError
from .acknowledgment import AcknowledgmentDispatcher

__all__ = [
    'IdempotencyLedger',
    'ReplyResolver',
    'Resolution',
    'TicketEngine',
    'TicketAllocationError',
    'AcknowledgmentDispatcher',
]
