"""
Shared fixtures: temporary SQLite database, fake mailbox and fake AI provider
"""
import imaplib
from email.message import EmailMessage
from typing import Iterator, List, Optional

import pytest

from ticket_ingest.ai.classifier import ClassifierGateway
from ticket_ingest.ai.providers import AIProvider
from ticket_ingest.ai.sentiment import SentimentPrioritizer
from ticket_ingest.config.settings import get_settings
from ticket_ingest.database.models import Company, Ticket, User, init_database
from ticket_ingest.email.mailbox import MailboxSource, OutgoingMessage, RawMessage
from ticket_ingest.orchestrator import TicketIngestOrchestrator
from ticket_ingest.pipeline.acknowledgment import AcknowledgmentDispatcher

SUPPORT_ADDRESS = 'support@acme.test'


class FakeProvider(AIProvider):
    """Returns canned answers in order; the last one repeats"""

    def __init__(self, answers=None, error: Optional[Exception] = None):
        self.answers = list(answers or ['Normal'])
        self.error = error
        self.prompts: List[str] = []

    def generate_response(self, prompt, temperature=0.0, system_text=None):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if len(self.answers) > 1:
            return self.answers.pop(0)
        return self.answers[0]


class FakeMailbox(MailboxSource):
    """In-memory mailbox; poll() yields inbox messages not yet marked read"""

    def __init__(self, messages=None, connect_error=None, send_error=None, poll_error=None):
        self.inbox: List[RawMessage] = list(messages or [])
        self.read = set()
        self.sent: List[OutgoingMessage] = []
        self.connected = False
        self.connect_error = connect_error
        self.send_error = send_error
        self.poll_error = poll_error
        self.disconnect_calls = 0

    def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    def is_connected(self):
        return self.connected

    def poll(self, cursor=None) -> Iterator[RawMessage]:
        if self.poll_error is not None:
            raise self.poll_error
        for message in list(self.inbox):
            if message.external_id not in self.read:
                yield message

    def send(self, message):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)
        return f"sent-{len(self.sent)}"

    def mark_state(self, external_id, state):
        if state == 'read':
            self.read.add(external_id)
        else:
            self.read.discard(external_id)
        return True


class FakeImap:
    """
    Minimal IMAP4 stand-in driven by raw RFC 822 messages keyed by UID

    Tracks the \\Seen flag like a server: SEARCH UNSEEN skips flagged UIDs,
    a plain RFC822 fetch sets the flag and BODY.PEEK leaves it alone.
    """

    def __init__(self, host='imap.acme.test', port=993, timeout=None, messages=None, login_error=None):
        self.host = host
        self.port = port
        self.messages = messages or {}
        self.login_error = login_error
        self.seen = set()
        self.fetched = []
        self.stored = []
        self.logged_out = False

    def login(self, user, password):
        if self.login_error:
            raise imaplib.IMAP4.error(self.login_error)
        return 'OK', [b'Logged in']

    def select(self, mailbox):
        return 'OK', [b'1']

    def uid(self, command, *args):
        if command == 'SEARCH':
            unseen = [uid for uid in self.messages if uid not in self.seen]
            return 'OK', [' '.join(unseen).encode('ascii')]
        if command == 'FETCH':
            uid, items = args
            self.fetched.append(items)
            if 'PEEK' not in items:
                self.seen.add(uid)
            return 'OK', [(f'{uid} (BODY[] {{100}}'.encode('ascii'), self.messages[uid]), b')']
        if command == 'STORE':
            uid, flag_op, _ = args
            self.stored.append(args)
            if flag_op == '+FLAGS':
                self.seen.add(uid)
            else:
                self.seen.discard(uid)
            return 'OK', [b'']
        raise AssertionError(command)

    def logout(self):
        self.logged_out = True


class FakeSmtp:
    """Context-manager SMTP stand-in that keeps sent messages"""

    def __init__(self, host=None, port=None, timeout=None):
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, message):
        self.sent.append(message)


def rfc822_message(subject, body, message_id=None, html=None):
    message = EmailMessage()
    message['From'] = 'Jane Doe <jane@example.com>'
    message['To'] = SUPPORT_ADDRESS
    message['Subject'] = subject
    if message_id:
        message['Message-ID'] = message_id
    message.set_content(body)
    if html:
        message.add_alternative(html, subtype='html')
    message.add_attachment(b'binary', maintype='application', subtype='octet-stream', filename='a.bin')
    return message.as_bytes()


def make_message(
    external_id: str,
    subject: str = 'Order broken',
    body: str = 'My order arrived broken and nobody answers my calls.',
    from_header: str = 'Jane Doe <jane@example.com>',
    **kwargs
) -> RawMessage:
    return RawMessage(
        external_id=external_id,
        subject=subject,
        from_header=from_header,
        raw_body=body,
        message_id_header=kwargs.pop('message_id_header', f'<{external_id}@mail.example.com>'),
        **kwargs
    )


def add_ticket(session, company_id: int, number: str, **fields) -> Ticket:
    """Insert a ticket row directly, bypassing the engine"""
    values = dict(
        company_id=company_id,
        ticket_number=number,
        public_token=f'{number}_token',
        subject='Existing ticket',
        body='Existing body',
        sender_email='jane@example.com',
        sender_name='Jane Doe',
        status='acknowledged',
        priority='low',
        escalation_count=1,
    )
    values.update(fields)
    ticket = Ticket(**values)
    session.add(ticket)
    session.commit()
    return ticket


@pytest.fixture
def config():
    return get_settings(
        classifier_min_interval_seconds=0,
        google_api_key='test-key',
        gmail_client_id='client-id',
        gmail_client_secret='client-secret',
        jwt_secret_key='test-secret',
        frontend_url='https://portal.acme.test',
        ack_async=False,
    )


@pytest.fixture
def SessionMaker(tmp_path):
    return init_database(f"sqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def session(SessionMaker):
    session = SessionMaker()
    yield session
    session.close()


@pytest.fixture
def company(SessionMaker):
    session = SessionMaker()
    company = Company(
        name='Acme',
        support_email=SUPPORT_ADDRESS,
        google_connected_email=SUPPORT_ADDRESS,
        email_connected=True,
    )
    session.add(company)
    session.commit()
    session.close()
    return company


@pytest.fixture
def staff_user(SessionMaker, company):
    session = SessionMaker()
    user = User(company_id=company.id, email='alice@acme.test', name='Alice Agent', role='agent')
    session.add(user)
    session.commit()
    session.close()
    return user


@pytest.fixture
def sentiment(config):
    return SentimentPrioritizer(config, scorer=lambda text: 0.0)


@pytest.fixture
def provider():
    return FakeProvider(['Complaint'])


@pytest.fixture
def mailbox():
    return FakeMailbox()


@pytest.fixture
def orchestrator(SessionMaker, provider, config, sentiment):
    return TicketIngestOrchestrator(
        SessionMaker,
        ClassifierGateway(provider, config),
        config=config,
        sentiment=sentiment,
        acknowledger=AcknowledgmentDispatcher(config),
    )
