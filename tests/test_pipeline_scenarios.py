"""
End-to-end pipeline tests: poll, resolve, classify, mutate, acknowledge
"""
from ticket_ingest.ai.classifier import ClassifierGateway
from ticket_ingest.ai.sentiment import SentimentPrioritizer
from ticket_ingest.database.models import ProcessedEmail, Ticket, TicketActivity
from ticket_ingest.email.imap_monitor import ImapMailbox
from ticket_ingest.email.mailbox import MailboxError
from ticket_ingest.orchestrator import (
    TicketIngestOrchestrator,
    CREATED,
    UPDATED,
    SKIPPED,
    FAILED,
    ALREADY_PROCESSED,
)
from ticket_ingest.pipeline.acknowledgment import AcknowledgmentDispatcher

from conftest import (
    FakeImap,
    FakeMailbox,
    FakeProvider,
    FakeSmtp,
    SUPPORT_ADDRESS,
    add_ticket,
    make_message,
    rfc822_message,
)


def _tickets(SessionMaker, company_id):
    session = SessionMaker()
    try:
        return session.query(Ticket).filter(Ticket.company_id == company_id).order_by(Ticket.id).all()
    finally:
        session.close()


def _ledger(SessionMaker, company_id):
    session = SessionMaker()
    try:
        return session.query(ProcessedEmail).filter(
            ProcessedEmail.company_id == company_id
        ).order_by(ProcessedEmail.id).all()
    finally:
        session.close()


def _activities(SessionMaker, ticket_id):
    session = SessionMaker()
    try:
        return session.query(TicketActivity).filter(
            TicketActivity.ticket_id == ticket_id
        ).order_by(TicketActivity.id).all()
    finally:
        session.close()


def test_complaint_creates_ticket(SessionMaker, company, orchestrator, mailbox):
    message = make_message('m1')

    outcome = orchestrator.process_message(company.id, mailbox, message)

    assert outcome == CREATED
    tickets = _tickets(SessionMaker, company.id)
    assert len(tickets) == 1
    ticket = tickets[0]
    assert ticket.ticket_number == 'INC000001'
    assert ticket.status == 'acknowledged'
    assert ticket.priority == 'low'
    assert ticket.sender_email == 'jane@example.com'
    assert ticket.sender_name == 'Jane Doe'
    assert ticket.public_token.startswith('INC000001_')
    assert len(ticket.public_token) == len('INC000001_') + 32
    assert ticket.processed_gmail_message_ids == ['m1']

    activities = _activities(SessionMaker, ticket.id)
    assert [a.activity_type for a in activities] == ['created']

    ledger = _ledger(SessionMaker, company.id)
    assert [(row.external_id, row.action, row.ticket_id) for row in ledger] == [('m1', 'created', ticket.id)]

    assert len(mailbox.sent) == 1
    assert mailbox.sent[0].to == 'jane@example.com'
    assert mailbox.sent[0].subject == '[INC000001] We have received your support request'
    assert mailbox.sent[0].in_reply_to == '<m1@mail.example.com>'
    assert 'm1' in mailbox.read


def test_redelivered_message_is_short_circuited(SessionMaker, company, orchestrator, provider, mailbox):
    message = make_message('m1')
    orchestrator.process_message(company.id, mailbox, message)
    calls_after_first = len(provider.prompts)

    outcome = orchestrator.process_message(company.id, mailbox, message)

    assert outcome == ALREADY_PROCESSED
    assert len(provider.prompts) == calls_after_first
    assert len(_tickets(SessionMaker, company.id)) == 1
    assert len(_ledger(SessionMaker, company.id)) == 1
    assert len(mailbox.sent) == 1


def test_replay_many_times_converges(SessionMaker, company, orchestrator, mailbox):
    first = make_message('m1')
    reply = make_message('m2', subject='Re: [INC000001] Order broken', body='Any news?')

    for _ in range(3):
        orchestrator.process_message(company.id, mailbox, first)
        orchestrator.process_message(company.id, mailbox, reply)

    tickets = _tickets(SessionMaker, company.id)
    assert len(tickets) == 1
    assert tickets[0].processed_gmail_message_ids == ['m1', 'm2']
    assert len(tickets[0].comments) == 1
    assert [(row.external_id, row.action) for row in _ledger(SessionMaker, company.id)] == [
        ('m1', 'created'),
        ('m2', 'updated'),
    ]


def test_escalating_reply_with_ticket_reference(SessionMaker, company, orchestrator, mailbox):
    orchestrator.process_message(company.id, mailbox, make_message('m1'))
    reply = make_message('m2', subject='Re: [INC000001] Order broken', body='Still broken. This is unacceptable.')

    outcome = orchestrator.process_message(company.id, mailbox, reply)

    assert outcome == UPDATED
    ticket = _tickets(SessionMaker, company.id)[0]
    assert ticket.priority == 'medium'
    assert ticket.escalation_count == 2
    assert ticket.escalated_at is not None
    assert ticket.last_reply_at is not None
    assert len(ticket.comments) == 1
    assert ticket.comments[0].user_name == 'Jane Doe'
    assert ticket.comments[0].user_id is None
    assert ticket.comments[0].text == 'Still broken. This is unacceptable.'

    replies = [a for a in _activities(SessionMaker, ticket.id) if a.activity_type == 'reply']
    assert len(replies) == 1
    assert replies[0].details == 'Customer replied - Priority escalated to medium'

    assert len(mailbox.sent) == 2
    assert mailbox.sent[1].subject == '[INC000001] Your support request has been escalated'


def test_identical_message_within_window_is_skipped(SessionMaker, company, orchestrator, provider, mailbox):
    orchestrator.process_message(company.id, mailbox, make_message('m1'))

    outcome = orchestrator.process_message(company.id, mailbox, make_message('m9'))

    assert outcome == SKIPPED
    assert len(_tickets(SessionMaker, company.id)) == 1
    assert len(provider.prompts) == 1
    row = _ledger(SessionMaker, company.id)[-1]
    assert (row.external_id, row.action, row.reason) == ('m9', 'skipped', 'duplicate')


def test_classifier_timeout_skips_message(SessionMaker, company, config, sentiment, mailbox):
    provider = FakeProvider(error=TimeoutError('classifier timed out'))
    orchestrator = TicketIngestOrchestrator(
        SessionMaker, ClassifierGateway(provider, config), config=config, sentiment=sentiment
    )

    outcome = orchestrator.process_message(company.id, mailbox, make_message('m1'))

    assert outcome == SKIPPED
    assert _tickets(SessionMaker, company.id) == []
    row = _ledger(SessionMaker, company.id)[0]
    assert (row.action, row.reason) == ('skipped', 'not_complaint')
    assert mailbox.sent == []
    assert 'm1' in mailbox.read


def test_self_sent_message_is_skipped(SessionMaker, company, orchestrator, provider, mailbox):
    message = make_message('m1', from_header=f'Acme Support <{SUPPORT_ADDRESS.upper()}>')

    outcome = orchestrator.process_message(company.id, mailbox, message)

    assert outcome == SKIPPED
    assert provider.prompts == []
    assert _tickets(SessionMaker, company.id) == []
    assert _ledger(SessionMaker, company.id)[0].reason == 'self_sent'


def test_self_sent_reply_does_not_touch_ticket(SessionMaker, company, orchestrator, mailbox):
    orchestrator.process_message(company.id, mailbox, make_message('m1'))
    reply = make_message('m2', subject='Re: [INC000001] Order broken', from_header=SUPPORT_ADDRESS)

    outcome = orchestrator.process_message(company.id, mailbox, reply)

    assert outcome == SKIPPED
    ticket = _tickets(SessionMaker, company.id)[0]
    assert ticket.comments == []
    assert ticket.processed_gmail_message_ids == ['m1']


def test_explicit_reference_wins_over_heuristics(SessionMaker, company, orchestrator, mailbox):
    orchestrator.process_message(company.id, mailbox, make_message('m1', subject='Order broken'))
    orchestrator.process_message(
        company.id, mailbox, make_message('m2', subject='Refund missing', body='Where is my refund?')
    )

    reply = make_message('m3', subject='Re: [INC000001] Order broken', body='Following up on this.')
    orchestrator.process_message(company.id, mailbox, reply)

    first, second = _tickets(SessionMaker, company.id)
    assert first.processed_gmail_message_ids == ['m1', 'm3']
    assert second.processed_gmail_message_ids == ['m2']


def test_reply_prefix_attaches_to_open_ticket(SessionMaker, company, config, sentiment, mailbox):
    provider = FakeProvider(['Complaint', 'Normal'])
    orchestrator = TicketIngestOrchestrator(
        SessionMaker, ClassifierGateway(provider, config), config=config, sentiment=sentiment
    )
    orchestrator.process_message(company.id, mailbox, make_message('m1'))

    outcome = orchestrator.process_message(
        company.id, mailbox, make_message('m2', subject='Re: Order broken', body='Thanks for the quick answer')
    )

    assert outcome == UPDATED
    ticket = _tickets(SessionMaker, company.id)[0]
    assert ticket.priority == 'low'
    assert ticket.escalation_count == 1
    assert ticket.processed_gmail_message_ids == ['m1', 'm2']
    assert 'Consider that this is a reply to an existing support ticket' in provider.prompts[1]
    assert len(mailbox.sent) == 1


def test_continuation_phrase_attaches_to_open_ticket(SessionMaker, company, orchestrator, mailbox):
    orchestrator.process_message(company.id, mailbox, make_message('m1'))

    outcome = orchestrator.process_message(
        company.id, mailbox, make_message('m2', subject='Hello again', body='I am still waiting for a replacement')
    )

    assert outcome == UPDATED
    assert len(_tickets(SessionMaker, company.id)) == 1


def test_reply_from_staff_user_is_attributed(SessionMaker, company, staff_user, orchestrator, mailbox):
    orchestrator.process_message(company.id, mailbox, make_message('m1'))
    reply = make_message('m2', subject='Re: [INC000001] Order broken', from_header='alice@acme.test',
                         body='Adding details from the phone call')

    orchestrator.process_message(company.id, mailbox, reply)

    comment = _tickets(SessionMaker, company.id)[0].comments[0]
    assert comment.user_id == staff_user.id
    assert comment.user_name == 'Alice Agent'


def test_escalation_stops_at_urgent(SessionMaker, company, orchestrator, mailbox):
    session = SessionMaker()
    add_ticket(session, company.id, 'INC000001', priority='urgent', escalation_count=4)
    session.close()

    for index in range(3):
        reply = make_message(f'r{index}', subject='Re: [INC000001] Broken', body=f'Complaint number {index}')
        assert orchestrator.process_message(company.id, mailbox, reply) == UPDATED

    ticket = _tickets(SessionMaker, company.id)[0]
    assert ticket.priority == 'urgent'
    assert ticket.escalation_count == 4
    assert len(ticket.comments) == 3
    assert mailbox.sent == []


def test_ticket_folded_message_without_ledger_row_converges(SessionMaker, company, orchestrator, provider, mailbox):
    orchestrator.process_message(company.id, mailbox, make_message('m1'))
    session = SessionMaker()
    session.query(ProcessedEmail).delete()
    session.commit()
    session.close()

    outcome = orchestrator.process_message(company.id, mailbox, make_message('m1'))

    assert outcome == ALREADY_PROCESSED
    assert len(provider.prompts) == 1
    ledger = _ledger(SessionMaker, company.id)
    assert [(row.external_id, row.action) for row in ledger] == [('m1', 'created')]


def test_message_without_sender_is_skipped(SessionMaker, company, orchestrator, provider, mailbox):
    outcome = orchestrator.process_message(company.id, mailbox, make_message('m1', from_header=''))

    assert outcome == SKIPPED
    assert provider.prompts == []
    assert _ledger(SessionMaker, company.id)[0].reason == 'unparseable'


def test_failed_message_does_not_abort_batch(SessionMaker, company, config):
    def scorer(text):
        if 'explode' in text:
            raise RuntimeError('scorer failure')
        return 0.0

    orchestrator = TicketIngestOrchestrator(
        SessionMaker,
        ClassifierGateway(FakeProvider(['Complaint']), config),
        config=config,
        sentiment=SentimentPrioritizer(config, scorer=scorer),
    )
    mailbox = FakeMailbox([
        make_message('bad', subject='Please explode', body='explode'),
        make_message('good'),
    ])

    stats = orchestrator.process_cycle(company.id, mailbox)

    assert stats == {FAILED: 1, CREATED: 1}
    assert 'bad' not in mailbox.read
    assert 'good' in mailbox.read
    tickets = _tickets(SessionMaker, company.id)
    assert [t.ticket_number for t in tickets] == ['INC000001']
    assert [row.external_id for row in _ledger(SessionMaker, company.id)] == ['good']


def test_failed_imap_message_is_retried_next_cycle(SessionMaker, company, config):
    calls = []

    def scorer(text):
        calls.append(text)
        if len(calls) == 1:
            raise RuntimeError('scorer failure')
        return 0.0

    orchestrator = TicketIngestOrchestrator(
        SessionMaker,
        ClassifierGateway(FakeProvider(['Complaint']), config),
        config=config,
        sentiment=SentimentPrioritizer(config, scorer=scorer),
        acknowledger=AcknowledgmentDispatcher(config),
    )
    fake = FakeImap(messages={'1': rfc822_message('Order broken', 'My order arrived broken.', message_id='<m1@example.com>')})
    smtp = FakeSmtp()
    mailbox = ImapMailbox(
        company.id, SUPPORT_ADDRESS, 'secret', config=config,
        imap_factory=lambda host, port, timeout=None: fake,
        smtp_factory=lambda host, port, timeout=None: smtp
    )
    mailbox.connect()

    first = orchestrator.process_cycle(company.id, mailbox)

    assert first == {FAILED: 1}
    assert fake.seen == set()
    assert _tickets(SessionMaker, company.id) == []
    assert _ledger(SessionMaker, company.id) == []

    second = orchestrator.process_cycle(company.id, mailbox)

    assert second == {CREATED: 1}
    assert fake.seen == {'1'}
    assert [t.ticket_number for t in _tickets(SessionMaker, company.id)] == ['INC000001']
    assert [row.external_id for row in _ledger(SessionMaker, company.id)] == ['<m1@example.com>']
    assert len(smtp.sent) == 1
    assert orchestrator.process_cycle(company.id, mailbox) == {}


def _failing_orchestrator(SessionMaker, config):
    def scorer(text):
        raise RuntimeError('scorer failure')

    return TicketIngestOrchestrator(
        SessionMaker,
        ClassifierGateway(FakeProvider(['Complaint']), config),
        config=config,
        sentiment=SentimentPrioritizer(config, scorer=scorer),
    )


def test_repeatedly_failing_message_is_eventually_skipped(SessionMaker, company, config):
    config = config.model_copy(update={'max_processing_attempts': 2})
    orchestrator = _failing_orchestrator(SessionMaker, config)
    mailbox = FakeMailbox([make_message('bad')])

    assert orchestrator.process_cycle(company.id, mailbox) == {FAILED: 1}
    assert 'bad' not in mailbox.read

    assert orchestrator.process_cycle(company.id, mailbox) == {SKIPPED: 1}
    assert 'bad' in mailbox.read
    ledger = _ledger(SessionMaker, company.id)
    assert [(row.external_id, row.action, row.reason) for row in ledger] == [('bad', 'skipped', 'failed')]
    assert _tickets(SessionMaker, company.id) == []

    assert orchestrator.process_cycle(company.id, mailbox) == {}
    assert orchestrator._failures == {}


def test_failure_count_is_dropped_when_message_disappears(SessionMaker, company, config):
    orchestrator = _failing_orchestrator(SessionMaker, config)
    mailbox = FakeMailbox([make_message('bad')])

    orchestrator.process_cycle(company.id, mailbox)
    assert orchestrator._failures == {(company.id, 'bad'): 1}

    mailbox.inbox.clear()
    orchestrator.process_cycle(company.id, mailbox)

    assert orchestrator._failures == {}


def test_cycle_is_bounded(SessionMaker, company, config, sentiment):
    orchestrator = TicketIngestOrchestrator(
        SessionMaker, ClassifierGateway(FakeProvider(['Normal']), config), config=config, sentiment=sentiment
    )
    mailbox = FakeMailbox([
        make_message(f'm{i}', subject=f'Question {i}', body=f'Body {i}') for i in range(7)
    ])

    stats = orchestrator.process_cycle(company.id, mailbox)

    assert stats == {SKIPPED: config.max_messages_per_cycle}
    assert mailbox.read == {f'm{i}' for i in range(config.max_messages_per_cycle)}


def test_auth_expired_triggers_credential_refresh(SessionMaker, company, config, sentiment):
    class RecordingCredentials:
        def __init__(self):
            self.calls = []

        def ensure_fresh(self, company_id, force=False):
            self.calls.append((company_id, force))

    credentials = RecordingCredentials()
    orchestrator = TicketIngestOrchestrator(
        SessionMaker,
        ClassifierGateway(FakeProvider(), config),
        config=config,
        sentiment=sentiment,
        credential_manager=credentials,
    )
    mailbox = FakeMailbox(poll_error=MailboxError('auth-expired', 'token expired'))

    stats = orchestrator.process_cycle(company.id, mailbox)

    assert stats == {'mailbox_error': 1}
    assert credentials.calls == [(company.id, True)]


def test_acknowledgment_failure_keeps_ticket(SessionMaker, company, orchestrator):
    mailbox = FakeMailbox(send_error=MailboxError('transport', 'smtp down'))

    outcome = orchestrator.process_message(company.id, mailbox, make_message('m1'))

    assert outcome == CREATED
    assert len(_tickets(SessionMaker, company.id)) == 1
    assert 'm1' in mailbox.read


def test_ticket_numbers_are_per_tenant(SessionMaker, company, orchestrator, mailbox):
    from ticket_ingest.database.models import Company

    session = SessionMaker()
    other = Company(name='Globex', support_email='help@globex.test', email_connected=True)
    session.add(other)
    session.commit()
    session.close()

    orchestrator.process_message(company.id, mailbox, make_message('m1'))
    orchestrator.process_message(other.id, mailbox, make_message('m1'))

    assert [t.ticket_number for t in _tickets(SessionMaker, company.id)] == ['INC000001']
    assert [t.ticket_number for t in _tickets(SessionMaker, other.id)] == ['INC000001']


def test_acknowledgment_uses_async_worker(SessionMaker, company, config, sentiment):
    async_config = config.model_copy(update={'ack_async': True})
    acknowledger = AcknowledgmentDispatcher(async_config)
    orchestrator = TicketIngestOrchestrator(
        SessionMaker,
        ClassifierGateway(FakeProvider(['Complaint']), async_config),
        config=async_config,
        sentiment=sentiment,
        acknowledger=acknowledger,
    )
    mailbox = FakeMailbox()

    orchestrator.process_message(company.id, mailbox, make_message('m1'))
    acknowledger.shutdown()

    assert len(mailbox.sent) == 1
