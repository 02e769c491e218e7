"""
Mailbox Source Interface
Capability interface shared by the Gmail API and IMAP pollers
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional, Tuple

from ticket_ingest.utils.email_utils import strip_html

MAILBOX_ERROR_KINDS = ('timeout', 'host-unreachable', 'auth-failed', 'auth-expired', 'transport')
MESSAGE_STATES = ('read', 'unread')

DEFAULT_IMAP_PORT = 993
DEFAULT_SMTP_PORT = 587


class MailboxError(Exception):
    """Mailbox transport failure with a machine-readable kind"""

    def __init__(self, kind: str, message: str = ''):
        if kind not in MAILBOX_ERROR_KINDS:
            raise ValueError(f"Unknown mailbox error kind: {kind}")
        super().__init__(message or kind)
        self.kind = kind

    @property
    def is_auth_error(self) -> bool:
        return self.kind in ('auth-failed', 'auth-expired')


class MessageParseError(Exception):
    """A single message could not be decoded; it is skipped"""
    pass


@dataclass
class RawMessage:
    """Inbound message as fetched from a mailbox"""
    external_id: str
    subject: str
    from_header: str
    raw_body: str = ''
    html_body: str = ''
    received_at: Optional[datetime] = None
    thread_id: Optional[str] = None
    message_id_header: Optional[str] = None

    @property
    def body(self) -> str:
        """Plain body, falling back to the text of the HTML part"""
        return self.raw_body or strip_html(self.html_body)


@dataclass
class OutgoingMessage:
    """Message to send through a mailbox's own transport"""
    to: str
    subject: str
    body: str
    in_reply_to: Optional[str] = None
    thread_id: Optional[str] = None
    from_name: Optional[str] = None
    headers: dict = field(default_factory=dict)


class MailboxSource(ABC):
    """
    Per-tenant mailbox capability

    poll() yields a finite, lazily fetched sequence of new messages. A message
    that cannot be decoded is logged and skipped by the implementation; a
    transport failure raises MailboxError and aborts the cycle.
    """

    @abstractmethod
    def connect(self) -> None:
        ...

    @abstractmethod
    def disconnect(self) -> None:
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def poll(self, cursor: Optional[str] = None) -> Iterator[RawMessage]:
        ...

    @abstractmethod
    def send(self, message: OutgoingMessage) -> Optional[str]:
        """Send a message, returning the provider's id for it when known"""
        ...

    @abstractmethod
    def mark_state(self, external_id: str, state: str) -> bool:
        ...


def guess_mail_host(email_address: str, service: str) -> str:
    """
    Guess the IMAP or SMTP host for an address from its domain

    Args:
        email_address: Mailbox address
        service: 'imap' or 'smtp'

    Returns:
        Host name
    """
    if service not in ('imap', 'smtp'):
        raise ValueError(f"Unknown mail service: {service}")
    domain = email_address.rsplit('@', 1)[-1].strip().lower()
    if domain == 'gmail.com':
        return f'{service}.gmail.com'
    if domain in ('outlook.com', 'hotmail.com', 'live.com'):
        return 'outlook.office365.com' if service == 'imap' else 'smtp.office365.com'
    if domain == 'yahoo.com':
        return f'{service}.mail.yahoo.com'
    return f'{service}.{domain}'


def resolve_mail_endpoints(
    email_address: str,
    imap_host: Optional[str] = None,
    imap_port: Optional[int] = None,
    smtp_host: Optional[str] = None,
    smtp_port: Optional[int] = None
) -> Tuple[Tuple[str, int], Tuple[str, int]]:
    """Fill in missing IMAP/SMTP host and port values"""
    return (
        (imap_host or guess_mail_host(email_address, 'imap'), imap_port or DEFAULT_IMAP_PORT),
        (smtp_host or guess_mail_host(email_address, 'smtp'), smtp_port or DEFAULT_SMTP_PORT),
    )
