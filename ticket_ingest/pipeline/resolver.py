"""
Dedup & Reply Resolver
Decides how an inbound message relates to existing tickets before any classifier call
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
import structlog

from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.database.models import ProcessedEmail, Ticket
from ticket_ingest.database.ticket_store import TicketStore
from ticket_ingest.pipeline.ledger import IdempotencyLedger
from ticket_ingest.utils.email_utils import (
    compute_content_hash,
    contains_reply_indicator,
    extract_ticket_number,
    has_reply_prefix,
)

logger = structlog.get_logger(__name__)

ALREADY_PROCESSED = 'already_processed'
EXPLICIT_REPLY = 'explicit_reply'
DUPLICATE = 'duplicate'
HEURISTIC_REPLY = 'heuristic_reply'
INDICATOR_REPLY = 'indicator_reply'
NEW = 'new'

REPLY_KINDS = (EXPLICIT_REPLY, HEURISTIC_REPLY, INDICATOR_REPLY)


@dataclass
class Resolution:
    kind: str
    content_hash: str
    ticket: Optional[Ticket] = None
    prior: Optional[ProcessedEmail] = None

    @property
    def is_reply(self) -> bool:
        return self.kind in REPLY_KINDS


class ReplyResolver:
    """
    First matching rule wins:

    1. external id already in the ledger, or already folded into a ticket
    2. explicit INC###### reference in the subject naming an existing ticket
    3. same content digest as a ticket inside the duplicate window
    4. Re:/Fwd: subject and an open ticket from the sender inside the prefix window
    5. continuation phrase in the body and an open ticket from the sender
       inside the indicator window
    6. new
    """

    def __init__(
        self,
        store: TicketStore,
        ledger: IdempotencyLedger,
        config: Optional[Settings] = None,
        now: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.ledger = ledger
        self.config = config or default_settings
        self._now = now

    def resolve(self, company_id: int, external_id: str, subject: str, body: str, sender_email: str) -> Resolution:
        content_hash = compute_content_hash(body, subject, sender_email)
        now = self._now()

        prior = self.ledger.lookup(company_id, external_id)
        if prior is not None:
            return self._result(ALREADY_PROCESSED, content_hash, external_id, prior=prior)

        folded = self.store.find_by_external_id(company_id, external_id)
        if folded is not None:
            return self._result(ALREADY_PROCESSED, content_hash, external_id, ticket=folded)

        ticket_number = extract_ticket_number(subject)
        if ticket_number:
            ticket = self.store.get_by_number(company_id, ticket_number)
            if ticket is not None:
                return self._result(EXPLICIT_REPLY, content_hash, external_id, ticket=ticket)
            logger.info("Referenced ticket not found", company_id=company_id, ticket_number=ticket_number)

        since = now - timedelta(days=self.config.duplicate_window_days)
        duplicate = self.store.find_by_content_hash(company_id, content_hash, since)
        if duplicate is not None:
            return self._result(DUPLICATE, content_hash, external_id, ticket=duplicate)

        if has_reply_prefix(subject):
            since = now - timedelta(days=self.config.reply_prefix_window_days)
            ticket = self.store.find_open_from_sender(company_id, sender_email, since)
            if ticket is not None:
                return self._result(HEURISTIC_REPLY, content_hash, external_id, ticket=ticket)

        if contains_reply_indicator(body, self.config.reply_indicator_phrases):
            since = now - timedelta(days=self.config.reply_indicator_window_days)
            ticket = self.store.find_open_from_sender(company_id, sender_email, since)
            if ticket is not None:
                return self._result(INDICATOR_REPLY, content_hash, external_id, ticket=ticket)

        return self._result(NEW, content_hash, external_id)

    def _result(
        self,
        kind: str,
        content_hash: str,
        external_id: str,
        ticket: Optional[Ticket] = None,
        prior: Optional[ProcessedEmail] = None
    ) -> Resolution:
        logger.info(
            "Message resolved",
            external_id=external_id,
            resolution=kind,
            ticket_number=ticket.ticket_number if ticket else None
        )
        return Resolution(kind=kind, content_hash=content_hash, ticket=ticket, prior=prior)
