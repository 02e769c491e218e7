"""
Idempotency Ledger
Records the outcome of every external message id once per tenant
"""
from datetime import datetime
from typing import Optional
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ticket_ingest.database.models import ProcessedEmail, LEDGER_ACTIONS

logger = structlog.get_logger(__name__)


class IdempotencyLedger:
    """
    Processed-email ledger bound to a session

    record() is meant to run in the same transaction as the ticket mutation,
    after it, so a crash before commit leaves neither behind.
    """

    def __init__(self, session: Session):
        self.session = session

    def lookup(self, company_id: int, external_id: str) -> Optional[ProcessedEmail]:
        return self.session.query(ProcessedEmail).filter(
            ProcessedEmail.company_id == company_id,
            ProcessedEmail.external_id == external_id
        ).first()

    def is_processed(self, company_id: int, external_id: str) -> bool:
        return self.lookup(company_id, external_id) is not None

    def record(
        self,
        company_id: int,
        external_id: str,
        message_id: Optional[str],
        outcome: str,
        ticket_id: Optional[int] = None,
        subject: Optional[str] = None,
        sender: Optional[str] = None,
        reason: Optional[str] = None
    ) -> ProcessedEmail:
        """
        Write the ledger entry for a message

        If another worker already recorded the same id, the unique constraint
        fires inside the savepoint and the existing row is returned instead.
        """
        if outcome not in LEDGER_ACTIONS:
            raise ValueError(f"Unknown ledger outcome: {outcome}")

        entry = ProcessedEmail(
            company_id=company_id,
            external_id=external_id,
            message_id=message_id,
            subject=(subject or '')[:998],
            sender_email=sender,
            ticket_id=ticket_id,
            action=outcome,
            reason=reason,
            processed_at=datetime.utcnow()
        )
        try:
            with self.session.begin_nested():
                self.session.add(entry)
                self.session.flush()
        except IntegrityError:
            existing = self.lookup(company_id, external_id)
            logger.info(
                "Message already recorded by another worker",
                company_id=company_id,
                external_id=external_id,
                existing_action=existing.action if existing else None
            )
            if existing is None:
                raise
            return existing

        logger.debug(
            "Ledger entry recorded",
            company_id=company_id,
            external_id=external_id,
            action=outcome,
            ticket_id=ticket_id
        )
        return entry
