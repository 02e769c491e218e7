"""
Main Orchestrator
Runs one poll cycle for a tenant: fetch, resolve, classify, mutate, acknowledge
"""
from collections import Counter
from datetime import datetime
from itertools import islice
from threading import Lock
from typing import Callable, Dict, Optional, Set, Tuple
import structlog
from sqlalchemy.orm import sessionmaker

from ticket_ingest.ai.classifier import ClassifierGateway
from ticket_ingest.ai.sentiment import SentimentPrioritizer
from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.database.models import Company
from ticket_ingest.email.credentials import CredentialError, CredentialManager
from ticket_ingest.email.mailbox import MailboxError, MailboxSource, MessageParseError, RawMessage
from ticket_ingest.pipeline.acknowledgment import AcknowledgmentDispatcher
from ticket_ingest.pipeline.resolver import ReplyResolver, ALREADY_PROCESSED, DUPLICATE
from ticket_ingest.pipeline.ticket_engine import TicketEngine
from ticket_ingest.utils.email_utils import parse_sender_info
from ticket_ingest.utils.notification_service import NotificationService

logger = structlog.get_logger(__name__)

CREATED = 'created'
UPDATED = 'updated'
SKIPPED = 'skipped'
FAILED = 'failed'


class TicketIngestOrchestrator:
    """
    Coordinates the ingestion pipeline for polled messages

    Each message gets its own session and transaction. A failure while
    handling one message rolls back that message only and the batch goes on.
    """

    def __init__(
        self,
        SessionMaker: sessionmaker,
        classifier: ClassifierGateway,
        config: Optional[Settings] = None,
        sentiment: Optional[SentimentPrioritizer] = None,
        notifications: Optional[NotificationService] = None,
        acknowledger: Optional[AcknowledgmentDispatcher] = None,
        credential_manager: Optional[CredentialManager] = None,
        now: Callable[[], datetime] = datetime.utcnow
    ):
        self.SessionMaker = SessionMaker
        self.classifier = classifier
        self.config = config or default_settings
        self.sentiment = sentiment or SentimentPrioritizer(self.config)
        self.notifications = notifications or NotificationService()
        self.acknowledger = acknowledger or AcknowledgmentDispatcher(self.config)
        self.credential_manager = credential_manager
        self._now = now
        # consecutive failures per (company_id, external_id) still in the inbox
        self._failures: Dict[Tuple[int, str], int] = {}
        self._failures_lock = Lock()

    def process_cycle(self, company_id: int, source: MailboxSource) -> Dict[str, int]:
        """
        Poll one mailbox and process a bounded batch in listing order

        Returns:
            Count of messages per outcome
        """
        stats: Counter = Counter()
        limit = self.config.max_messages_per_cycle
        seen: Set[str] = set()
        try:
            for message in islice(source.poll(), limit):
                seen.add(message.external_id)
                outcome = self.process_message(company_id, source, message)
                stats[outcome] += 1
        except MailboxError as e:
            logger.warning(
                "Poll cycle aborted",
                company_id=company_id,
                kind=e.kind,
                error=str(e)
            )
            stats['mailbox_error'] += 1
            if e.kind == 'auth-expired':
                self._refresh_credentials(company_id)

        self._prune_failures(company_id, seen)

        if stats:
            logger.info("Poll cycle complete", company_id=company_id, **dict(stats))
        return dict(stats)

    def _refresh_credentials(self, company_id: int) -> None:
        if self.credential_manager is None:
            return
        try:
            self.credential_manager.ensure_fresh(company_id, force=True)
            logger.info("Credentials refreshed after expiry", company_id=company_id)
        except CredentialError as e:
            logger.error("Credential refresh failed", company_id=company_id, error=str(e))

    def process_message(self, company_id: int, source: MailboxSource, message: RawMessage) -> str:
        """
        Run one message through the pipeline and commit its outcome

        Returns:
            One of created, updated, skipped, already_processed, failed
        """
        session = self.SessionMaker()
        ack = None
        try:
            company = session.get(Company, company_id)
            if company is None:
                raise ValueError(f"Company {company_id} not found")

            engine = TicketEngine(
                session,
                config=self.config,
                sentiment=self.sentiment,
                notifications=self.notifications,
                now=self._now
            )
            resolver = ReplyResolver(engine.store, engine.ledger, self.config, now=self._now)

            sender_name, sender_email = parse_sender_info(message.from_header)
            body = message.body
            subject = message.subject or ''

            logger.info(
                "Processing email",
                company_id=company_id,
                external_id=message.external_id,
                subject=subject[:100],
                from_addr=sender_email
            )

            resolution = resolver.resolve(company_id, message.external_id, subject, body, sender_email)

            if resolution.kind == ALREADY_PROCESSED:
                if resolution.prior is None and resolution.ticket is not None:
                    # folded into a ticket but never recorded
                    opened_it = resolution.ticket.gmail_message_id == message.external_id
                    engine.ledger.record(
                        company_id,
                        message.external_id,
                        message.message_id_header,
                        'created' if opened_it else 'updated',
                        ticket_id=resolution.ticket.id,
                        subject=subject,
                        sender=sender_email
                    )
                    session.commit()
                outcome = ALREADY_PROCESSED

            elif not sender_email or not (subject.strip() or body.strip()):
                raise MessageParseError("Message has no sender or no content")

            elif engine.is_self_mail(company, sender_email):
                engine.skip(company_id, message, sender_email, reason='self_sent')
                session.commit()
                outcome = SKIPPED

            elif resolution.kind == DUPLICATE:
                engine.skip(company_id, message, sender_email, reason='duplicate')
                session.commit()
                outcome = SKIPPED

            elif resolution.is_reply:
                verdict = self.classifier.classify(subject, body, is_reply_context=True)
                ticket, escalated = engine.append_reply(company, resolution.ticket, message, verdict, sender_email)
                session.commit()
                if escalated:
                    ack = (company, ticket, True)
                outcome = UPDATED

            else:
                verdict = self.classifier.classify(subject, body, is_reply_context=False)
                if verdict.is_complaint:
                    ticket = engine.create(company, message, sender_email, sender_name, resolution.content_hash)
                    session.commit()
                    ack = (company, ticket, False)
                    outcome = CREATED
                else:
                    engine.skip(company_id, message, sender_email, reason='not_complaint')
                    session.commit()
                    outcome = SKIPPED

        except MessageParseError as e:
            session.rollback()
            logger.warning("Skipping malformed email", company_id=company_id, external_id=message.external_id, error=str(e))
            outcome = self._record_skip(session, company_id, message, None, 'unparseable')
        except Exception as e:
            session.rollback()
            logger.error(
                "Failed to process email",
                company_id=company_id,
                external_id=message.external_id,
                error=str(e),
                exc_info=True
            )
            outcome = FAILED
        finally:
            session.close()

        if outcome == FAILED:
            return self._handle_failure(company_id, source, message)
        self._clear_failure(company_id, message.external_id)

        if ack is not None:
            company, ticket, escalation = ack
            self.acknowledger.dispatch(
                source,
                company,
                ticket,
                in_reply_to=message.message_id_header,
                thread_id=message.thread_id,
                escalation=escalation
            )
        self._mark_state(source, company_id, message.external_id, 'read')
        return outcome

    def _handle_failure(self, company_id: int, source: MailboxSource, message: RawMessage) -> str:
        """
        Leave a failed message unread for the next cycle

        After max_processing_attempts consecutive failures the message is
        recorded as skipped and marked read so it stops taking a batch slot.
        """
        key = (company_id, message.external_id)
        with self._failures_lock:
            attempts = self._failures.get(key, 0) + 1
            self._failures[key] = attempts

        if attempts < self.config.max_processing_attempts:
            self._mark_state(source, company_id, message.external_id, 'unread')
            return FAILED

        logger.error(
            "Giving up on email",
            company_id=company_id,
            external_id=message.external_id,
            attempts=attempts
        )
        _, sender_email = parse_sender_info(message.from_header)
        session = self.SessionMaker()
        try:
            outcome = self._record_skip(session, company_id, message, sender_email or None, 'failed')
        finally:
            session.close()

        if outcome == FAILED:
            self._mark_state(source, company_id, message.external_id, 'unread')
            return FAILED
        self._clear_failure(company_id, message.external_id)
        self._mark_state(source, company_id, message.external_id, 'read')
        return outcome

    def _clear_failure(self, company_id: int, external_id: str) -> None:
        with self._failures_lock:
            self._failures.pop((company_id, external_id), None)

    def _prune_failures(self, company_id: int, seen: Set[str]) -> None:
        """Forget failures for messages no longer listed by the mailbox"""
        with self._failures_lock:
            stale = [key for key in self._failures if key[0] == company_id and key[1] not in seen]
            for key in stale:
                del self._failures[key]

    def _record_skip(
        self,
        session,
        company_id: int,
        message: RawMessage,
        sender_email: Optional[str],
        reason: str
    ) -> str:
        try:
            TicketEngine(session, config=self.config, sentiment=self.sentiment).skip(
                company_id, message, sender_email, reason=reason
            )
            session.commit()
            return SKIPPED
        except Exception as e:
            session.rollback()
            logger.error("Failed to record skipped email", external_id=message.external_id, reason=reason, error=str(e))
            return FAILED

    def _mark_state(self, source: MailboxSource, company_id: int, external_id: str, state: str) -> None:
        try:
            source.mark_state(external_id, state)
        except (MailboxError, ValueError) as e:
            logger.warning(
                "Failed to update message state",
                company_id=company_id,
                external_id=external_id,
                state=state,
                error=str(e)
            )
