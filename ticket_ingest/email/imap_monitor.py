"""
IMAP Monitor Module
Polls a tenant mailbox over IMAP and sends replies through SMTP
"""
import email
import imaplib
import smtplib
import socket
from datetime import datetime
from email.header import decode_header, make_header
from email.message import EmailMessage, Message
from email.utils import parsedate_to_datetime, formataddr
from typing import Callable, Dict, Iterator, List, Optional
import structlog

from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.email.mailbox import (
    MailboxSource,
    MailboxError,
    MessageParseError,
    OutgoingMessage,
    RawMessage,
    MESSAGE_STATES,
    resolve_mail_endpoints,
)

logger = structlog.get_logger(__name__)


def _network_error(error: Exception) -> MailboxError:
    if isinstance(error, socket.gaierror):
        return MailboxError('host-unreachable', str(error))
    if isinstance(error, (socket.timeout, TimeoutError)):
        return MailboxError('timeout', str(error))
    if isinstance(error, ConnectionRefusedError):
        return MailboxError('host-unreachable', str(error))
    return MailboxError('transport', str(error))


def _decode_header_value(value: Optional[str]) -> str:
    if not value:
        return ''
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError, ValueError):
        return value


def _decode_text_part(part: Message) -> str:
    payload = part.get_payload(decode=True) or b""
    try:
        return payload.decode(part.get_content_charset() or "utf-8", errors="replace").strip()
    except LookupError:
        return payload.decode("utf-8", errors="replace").strip()


def parse_uid_search_data(data: List) -> List[str]:
    uids: List[str] = []
    for chunk in data:
        if not chunk:
            continue
        if isinstance(chunk, bytes):
            chunk = chunk.decode('ascii', errors='ignore')
        uids.extend(part for part in chunk.split() if part.isdigit())
    return uids


class ImapMailbox(MailboxSource):
    """IMAP/SMTP mailbox for one tenant"""

    def __init__(
        self,
        company_id: int,
        username: str,
        password: str,
        imap_host: Optional[str] = None,
        imap_port: Optional[int] = None,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        config: Optional[Settings] = None,
        imap_factory: Callable[..., imaplib.IMAP4] = imaplib.IMAP4_SSL,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP
    ):
        self.company_id = company_id
        self.username = username
        self.password = password
        self.config = config or default_settings
        (self.imap_host, self.imap_port), (self.smtp_host, self.smtp_port) = resolve_mail_endpoints(
            username,
            imap_host,
            imap_port or self.config.imap_port,
            smtp_host,
            smtp_port or self.config.smtp_port
        )
        self._imap_factory = imap_factory
        self._smtp_factory = smtp_factory
        self._imap: Optional[imaplib.IMAP4] = None
        self._uids: Dict[str, str] = {}

    def connect(self) -> None:
        """Open the IMAP session and select INBOX"""
        try:
            self._imap = self._imap_factory(
                self.imap_host, self.imap_port, timeout=self.config.mail_timeout_seconds
            )
        except OSError as e:
            logger.error("IMAP connection failed", company_id=self.company_id, host=self.imap_host, error=str(e))
            raise _network_error(e) from e

        try:
            self._imap.login(self.username, self.password)
            status, _ = self._imap.select('INBOX')
        except imaplib.IMAP4.error as e:
            logger.error("IMAP login failed", company_id=self.company_id, user=self.username, error=str(e))
            self._imap = None
            raise MailboxError('auth-failed', str(e)) from e
        except OSError as e:
            self._imap = None
            raise _network_error(e) from e

        if status != 'OK':
            self._imap = None
            raise MailboxError('transport', 'Unable to select INBOX')

        logger.info("IMAP session opened", company_id=self.company_id, host=self.imap_host, port=self.imap_port)

    def disconnect(self) -> None:
        if self._imap is None:
            return
        try:
            self._imap.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.warning("IMAP logout failed", company_id=self.company_id, error=str(e))
        finally:
            self._imap = None

    def is_connected(self) -> bool:
        return self._imap is not None

    def poll(self, cursor: Optional[str] = None) -> Iterator[RawMessage]:
        """
        Yield unseen messages

        Bodies are fetched with BODY.PEEK so nothing is flagged \\Seen
        until the caller marks it read. A message that fails downstream
        is listed again on the next cycle.
        """
        if self._imap is None:
            raise MailboxError('transport', 'Mailbox is not connected')
        self._uids = {}

        try:
            status, data = self._imap.uid('SEARCH', None, 'UNSEEN')
        except imaplib.IMAP4.error as e:
            raise MailboxError('transport', str(e)) from e
        except OSError as e:
            raise _network_error(e) from e

        if status != 'OK' or not data or not data[0]:
            return

        uids = parse_uid_search_data(data)
        if cursor:
            uids = [uid for uid in uids if int(uid) > int(cursor)]
        logger.info("Found unseen messages", company_id=self.company_id, count=len(uids))

        for uid in uids:
            try:
                yield self._fetch(uid)
            except MessageParseError as e:
                logger.warning("Skipping undecodable message", company_id=self.company_id, uid=uid, error=str(e))

    def _fetch(self, uid: str) -> RawMessage:
        try:
            status, fetch_data = self._imap.uid('FETCH', uid, '(BODY.PEEK[])')
        except OSError as e:
            raise _network_error(e) from e
        if status != 'OK' or not fetch_data:
            raise MessageParseError(f"Unable to fetch message {uid}")

        raw_bytes = None
        for item in fetch_data:
            if isinstance(item, tuple) and len(item) >= 2:
                raw_bytes = item[1]
                break
        if not raw_bytes:
            raise MessageParseError(f"Empty message {uid}")

        return self.parse_message(uid, raw_bytes)

    def parse_message(self, uid: str, raw_bytes: bytes) -> RawMessage:
        """Decode an RFC 822 message into a RawMessage"""
        try:
            message = email.message_from_bytes(raw_bytes)
        except (TypeError, ValueError) as e:
            raise MessageParseError(str(e)) from e

        plain_parts, html_parts = [], []
        for part in message.walk():
            if part.get_content_maintype() == 'multipart':
                continue
            if (part.get_content_disposition() or '').lower() == 'attachment':
                continue
            content_type = part.get_content_type()
            if content_type == 'text/plain':
                plain_parts.append(_decode_text_part(part))
            elif content_type == 'text/html':
                html_parts.append(_decode_text_part(part))

        date_header = message.get('Date')
        try:
            received_at = parsedate_to_datetime(date_header) if date_header else None
        except (TypeError, ValueError):
            received_at = None

        message_id_header = (message.get('Message-ID') or '').strip() or None
        external_id = message_id_header or f"uid:{uid}"
        self._uids[external_id] = uid

        return RawMessage(
            external_id=external_id,
            subject=_decode_header_value(message.get('Subject')),
            from_header=_decode_header_value(message.get('From')),
            raw_body="\n\n".join(p for p in plain_parts if p).strip(),
            html_body="\n\n".join(p for p in html_parts if p).strip(),
            received_at=received_at or datetime.utcnow(),
            thread_id=None,
            message_id_header=message_id_header
        )

    def send(self, message: OutgoingMessage) -> Optional[str]:
        """
        Send a message over SMTP with STARTTLS

        Raises:
            MailboxError: connection or authentication failed
        """
        outgoing = EmailMessage()
        outgoing['From'] = formataddr((message.from_name or '', self.username))
        outgoing['To'] = message.to
        outgoing['Subject'] = message.subject
        outgoing['Reply-To'] = self.username
        if message.in_reply_to:
            outgoing['In-Reply-To'] = message.in_reply_to
            outgoing['References'] = message.in_reply_to
        for name, value in message.headers.items():
            outgoing[name] = value
        outgoing.set_content(message.body)

        try:
            with self._smtp_factory(self.smtp_host, self.smtp_port, timeout=self.config.mail_timeout_seconds) as smtp:
                smtp.starttls()
                smtp.login(self.username, self.password)
                smtp.send_message(outgoing)
        except smtplib.SMTPAuthenticationError as e:
            raise MailboxError('auth-failed', str(e)) from e
        except smtplib.SMTPException as e:
            raise MailboxError('transport', str(e)) from e
        except OSError as e:
            raise _network_error(e) from e

        logger.info("Email sent successfully", company_id=self.company_id, to=message.to, subject=message.subject)
        return outgoing.get('Message-ID')

    def mark_state(self, external_id: str, state: str) -> bool:
        if state not in MESSAGE_STATES:
            raise ValueError(f"Unknown message state: {state}")
        uid = self._uids.get(external_id)
        if uid is None and external_id.startswith('uid:'):
            uid = external_id[len('uid:'):]
        if uid is None or self._imap is None:
            logger.warning("Cannot mark unknown message", company_id=self.company_id, external_id=external_id)
            return False
        flag_op = '+FLAGS' if state == 'read' else '-FLAGS'
        try:
            status, _ = self._imap.uid('STORE', uid, flag_op, '(\\Seen)')
        except (imaplib.IMAP4.error, OSError) as e:
            logger.error("Failed to mark message", company_id=self.company_id, uid=uid, error=str(e))
            return False
        if status != 'OK':
            return False
        self._uids.pop(external_id, None)
        return True
