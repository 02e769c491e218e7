"""
Acknowledgment Dispatcher
Emails the customer after a ticket is opened or escalated
"""
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional
import structlog

from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.database.models import Company, Ticket
from ticket_ingest.email.mailbox import MailboxSource, OutgoingMessage
from ticket_ingest.utils.templating import (
    DEFAULT_BODY,
    DEFAULT_SUBJECT,
    ESCALATION_BODY,
    ESCALATION_SUBJECT,
    render_template,
)

logger = structlog.get_logger(__name__)


class AcknowledgmentDispatcher:
    """
    Renders and sends acknowledgment emails through the tenant's mailbox

    Send failures are logged and swallowed. With `ack_async` enabled the send
    runs on a small worker pool and the caller does not wait for it.
    """

    def __init__(self, config: Optional[Settings] = None, executor: Optional[ThreadPoolExecutor] = None):
        self.config = config or default_settings
        self._executor = executor
        if self._executor is None and self.config.ack_async:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='ack')

    def portal_url(self, company: Company, ticket: Ticket) -> str:
        if not company.portal_links_enabled:
            return ''
        return f"{self.config.frontend_url.rstrip('/')}/customer/ticket/{ticket.public_token}"

    def template_variables(self, company: Company, ticket: Ticket) -> Dict[str, str]:
        return {
            'customerName': ticket.sender_name or 'Customer',
            'companyName': company.name,
            'subject': ticket.subject,
            'ticketNumber': ticket.ticket_number,
            'portalUrl': self.portal_url(company, ticket),
        }

    def render(self, company: Company, ticket: Ticket, escalation: bool = False) -> OutgoingMessage:
        """Build the acknowledgment message for a ticket"""
        if escalation:
            subject_template, body_template = ESCALATION_SUBJECT, ESCALATION_BODY
        else:
            subject_template, body_template = DEFAULT_SUBJECT, DEFAULT_BODY
            if company.use_custom_template and company.email_template_body:
                subject_template = company.email_template_subject or DEFAULT_SUBJECT
                body_template = company.email_template_body

        variables = self.template_variables(company, ticket)
        return OutgoingMessage(
            to=ticket.sender_email,
            subject=render_template(subject_template, variables),
            body=render_template(body_template, variables),
            from_name=f"{company.name} Support"
        )

    def dispatch(
        self,
        source: MailboxSource,
        company: Company,
        ticket: Ticket,
        in_reply_to: Optional[str] = None,
        thread_id: Optional[str] = None,
        escalation: bool = False
    ) -> Optional[Future]:
        """
        Send the acknowledgment for a ticket

        Returns:
            The pending Future when sending in the background, else None
        """
        message = self.render(company, ticket, escalation=escalation)
        message.in_reply_to = in_reply_to
        message.thread_id = thread_id

        if self._executor is not None:
            return self._executor.submit(self._send, source, message, ticket.ticket_number)
        self._send(source, message, ticket.ticket_number)
        return None

    def _send(self, source: MailboxSource, message: OutgoingMessage, ticket_number: str) -> bool:
        try:
            source.send(message)
        except Exception as e:
            logger.error(
                "Failed to send acknowledgment",
                ticket_number=ticket_number,
                to=message.to,
                error=str(e)
            )
            return False
        logger.info("Acknowledgment sent", ticket_number=ticket_number, to=message.to)
        return True

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
