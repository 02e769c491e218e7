"""Email module"""
from typing import Optional

from ticket_ingest.config.settings import Settings
from ticket_ingest.database.models import Company
from .mailbox import (
    MailboxSource,
    MailboxError,
    MessageParseError,
    RawMessage,
    OutgoingMessage,
    guess_mail_host,
)
from .credentials import CredentialManager, CredentialError
from .gmail_monitor import GmailMailbox
from .imap_monitor import ImapMailbox


def create_mailbox_source(
    company: Company,
    credential_manager: Optional[CredentialManager] = None,
    config: Optional[Settings] = None
) -> MailboxSource:
    """Build the mailbox adapter matching a company's backend"""
    if company.mailbox_backend == 'imap':
        if not (company.mail_username and company.mail_password):
            raise MailboxError('auth-failed', f"Company {company.id} has no IMAP credentials")
        return ImapMailbox(
            company_id=company.id,
            username=company.mail_username,
            password=company.mail_password,
            imap_host=company.imap_host,
            imap_port=company.imap_port,
            smtp_host=company.smtp_host,
            smtp_port=company.smtp_port,
            config=config
        )
    return GmailMailbox(
        company_id=company.id,
        credential_manager=credential_manager,
        config=config,
        connected_email=company.connected_email
    )


__all__ = [
    'MailboxSource',
    'MailboxError',
    'MessageParseError',
    'RawMessage',
    'OutgoingMessage',
    'guess_mail_host',
    'CredentialManager',
    'CredentialError',
    'GmailMailbox',
    'ImapMailbox',
    'create_mailbox_source',
]
