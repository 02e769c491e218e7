"""
Gmail Monitor Module
Polls a tenant's Gmail inbox through the Gmail API and sends replies from it
"""
import base64
import socket
from typing import Dict, Iterator, List, Optional
from datetime import datetime
from email.mime.text import MIMEText
from email.utils import parsedate_to_datetime, formataddr
import structlog

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.email.credentials import CredentialManager, CredentialError
from ticket_ingest.email.mailbox import (
    MailboxSource,
    MailboxError,
    MessageParseError,
    OutgoingMessage,
    RawMessage,
    MESSAGE_STATES,
)

logger = structlog.get_logger(__name__)


def _http_error_kind(error: HttpError) -> str:
    status = getattr(error.resp, 'status', None)
    try:
        status = int(status)
    except (TypeError, ValueError):
        return 'transport'
    if status == 401:
        return 'auth-expired'
    if status == 403:
        return 'auth-failed'
    return 'transport'


class GmailMailbox(MailboxSource):
    """Gmail API mailbox for one tenant"""

    def __init__(
        self,
        company_id: int,
        credential_manager: Optional[CredentialManager] = None,
        config: Optional[Settings] = None,
        service=None,
        connected_email: Optional[str] = None
    ):
        self.company_id = company_id
        self.credential_manager = credential_manager
        self.config = config or default_settings
        self.connected_email = connected_email
        self.service = service
        self._connected = service is not None

    def connect(self) -> None:
        """Build the Gmail API client from fresh tenant credentials"""
        if self.credential_manager is None:
            if self.service is None:
                raise MailboxError('auth-failed', 'No credential manager configured')
            self._connected = True
            return
        try:
            creds = self.credential_manager.ensure_fresh(self.company_id)
        except CredentialError as e:
            raise MailboxError('auth-failed', str(e)) from e

        self.service = build('gmail', 'v1', credentials=creds, cache_discovery=False)
        self._connected = True
        logger.info("Gmail API client initialized", company_id=self.company_id)

    def disconnect(self) -> None:
        if self.service is not None and hasattr(self.service, 'close'):
            try:
                self.service.close()
            except Exception as e:
                logger.warning("Failed to close Gmail client", company_id=self.company_id, error=str(e))
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def poll(self, cursor: Optional[str] = None) -> Iterator[RawMessage]:
        """
        Yield new inbox messages, one API fetch per message

        Walks at most `gmail_max_pages` listing pages starting from `cursor`
        (a page token). Messages that fail to fetch or decode are skipped.

        Raises:
            MailboxError: listing failed
        """
        if not self._connected:
            raise MailboxError('transport', 'Mailbox is not connected')

        page_token = cursor
        for _ in range(self.config.gmail_max_pages):
            results = self._list_page(page_token)
            messages = results.get('messages', [])
            if not messages:
                logger.debug("No new messages", company_id=self.company_id)
                return

            logger.info("Found messages", company_id=self.company_id, count=len(messages))
            for msg in messages:
                try:
                    yield self._get_message_details(msg['id'])
                except MessageParseError as e:
                    logger.warning(
                        "Skipping undecodable message",
                        company_id=self.company_id,
                        message_id=msg['id'],
                        error=str(e)
                    )

            page_token = results.get('nextPageToken')
            if not page_token:
                return

    def _list_page(self, page_token: Optional[str]) -> Dict:
        request = {
            'userId': 'me',
            'q': self.config.gmail_query,
            'maxResults': self.config.gmail_max_results,
        }
        if page_token:
            request['pageToken'] = page_token
        try:
            return self.service.users().messages().list(**request).execute()
        except HttpError as e:
            logger.error("Failed to fetch messages", company_id=self.company_id, error=str(e))
            raise MailboxError(_http_error_kind(e), str(e)) from e
        except (socket.timeout, TimeoutError) as e:
            raise MailboxError('timeout', str(e)) from e
        except OSError as e:
            raise MailboxError('host-unreachable', str(e)) from e

    def _get_message_details(self, message_id: str) -> RawMessage:
        """
        Get full details of a specific message

        Raises:
            MessageParseError: fetch failed or payload is malformed
            MailboxError: credentials expired mid-cycle
        """
        try:
            message = self.service.users().messages().get(
                userId='me',
                id=message_id,
                format='full'
            ).execute()
        except HttpError as e:
            kind = _http_error_kind(e)
            if kind == 'auth-expired':
                raise MailboxError(kind, str(e)) from e
            raise MessageParseError(f"Failed to get message {message_id}: {e}") from e

        try:
            payload = message['payload']
            headers = payload.get('headers', [])
        except (KeyError, TypeError) as e:
            raise MessageParseError(f"Message {message_id} has no payload") from e

        date_str = self._get_header(headers, 'Date')
        try:
            received_at = parsedate_to_datetime(date_str) if date_str else None
        except (TypeError, ValueError):
            received_at = None

        plain, html = self._extract_body(payload)

        return RawMessage(
            external_id=message_id,
            subject=self._get_header(headers, 'Subject') or '',
            from_header=self._get_header(headers, 'From') or '',
            raw_body=plain.strip() or ('' if html.strip() else message.get('snippet', '')),
            html_body=html.strip(),
            received_at=received_at or datetime.utcnow(),
            thread_id=message.get('threadId'),
            message_id_header=self._get_header(headers, 'Message-ID')
        )

    def _get_header(self, headers: List[Dict], name: str) -> Optional[str]:
        """Extract a specific header value from headers list"""
        for header in headers:
            if header['name'].lower() == name.lower():
                return header['value']
        return None

    def _decode(self, data: str) -> str:
        try:
            return base64.urlsafe_b64decode(data).decode('utf-8', errors='ignore')
        except (ValueError, TypeError) as e:
            raise MessageParseError(f"Invalid body encoding: {e}") from e

    def _extract_body(self, payload: Dict) -> tuple:
        """
        Extract text/plain and text/html bodies from a payload

        Walks nested multipart parts; the first part of each type wins.
        """
        plain, html = '', ''
        mime_type = payload.get('mimeType', '')
        data = payload.get('body', {}).get('data')

        if data and not payload.get('parts'):
            text = self._decode(data)
            if mime_type == 'text/html':
                html = text
            else:
                plain = text

        for part in payload.get('parts', []) or []:
            part_plain, part_html = self._extract_body(part)
            plain = plain or part_plain
            html = html or part_html
            if plain and html:
                break

        return plain, html

    def send(self, message: OutgoingMessage) -> Optional[str]:
        """
        Send an email through the Gmail API

        Raises:
            MailboxError: the API rejected the message
        """
        if not self._connected:
            raise MailboxError('transport', 'Mailbox is not connected')

        mime = MIMEText(message.body, 'plain', 'utf-8')
        mime['To'] = message.to
        mime['Subject'] = message.subject
        if self.connected_email:
            mime['From'] = formataddr((message.from_name or '', self.connected_email))

        # Add threading headers if replying
        if message.in_reply_to:
            mime['In-Reply-To'] = message.in_reply_to
            mime['References'] = message.in_reply_to
        for name, value in message.headers.items():
            mime[name] = value

        raw_message = base64.urlsafe_b64encode(mime.as_bytes()).decode('utf-8')
        send_request = {'raw': raw_message}
        if message.thread_id:
            send_request['threadId'] = message.thread_id

        try:
            result = self.service.users().messages().send(
                userId='me',
                body=send_request
            ).execute()
        except HttpError as e:
            logger.error("Gmail API error", company_id=self.company_id, error=str(e))
            raise MailboxError(_http_error_kind(e), str(e)) from e

        logger.info(
            "Email sent successfully",
            company_id=self.company_id,
            message_id=result.get('id'),
            to=message.to,
            subject=message.subject
        )
        return result.get('id')

    def mark_state(self, external_id: str, state: str) -> bool:
        """
        Mark a message read or unread via the UNREAD label

        Returns:
            True if successful, False otherwise
        """
        if state not in MESSAGE_STATES:
            raise ValueError(f"Unknown message state: {state}")
        body = {'removeLabelIds': ['UNREAD']} if state == 'read' else {'addLabelIds': ['UNREAD']}
        try:
            self.service.users().messages().modify(
                userId='me',
                id=external_id,
                body=body
            ).execute()
            logger.info("Marked message", company_id=self.company_id, message_id=external_id, state=state)
            return True
        except HttpError as e:
            logger.error(
                "Failed to mark message",
                company_id=self.company_id,
                message_id=external_id,
                state=state,
                error=str(e)
            )
            return False
