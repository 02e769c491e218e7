"""
Tests for duplicate and reply resolution rules
"""
from datetime import datetime, timedelta

from ticket_ingest.database.ticket_store import TicketStore
from ticket_ingest.pipeline.ledger import IdempotencyLedger
from ticket_ingest.pipeline.resolver import (
    ReplyResolver,
    ALREADY_PROCESSED,
    DUPLICATE,
    EXPLICIT_REPLY,
    HEURISTIC_REPLY,
    INDICATOR_REPLY,
    NEW,
)
from ticket_ingest.utils.email_utils import compute_content_hash

from conftest import add_ticket

SENDER = 'jane@example.com'


def _resolver(session, config, now=None):
    return ReplyResolver(
        TicketStore(session),
        IdempotencyLedger(session),
        config,
        now=now or datetime.utcnow
    )


def test_unrelated_message_is_new(session, company, config):
    resolution = _resolver(session, config).resolve(company.id, 'm1', 'Order broken', 'Body', SENDER)

    assert resolution.kind == NEW
    assert resolution.ticket is None
    assert resolution.content_hash == compute_content_hash('Body', 'Order broken', SENDER)


def test_ledger_entry_short_circuits(session, company, config):
    IdempotencyLedger(session).record(company.id, 'm1', None, 'skipped')
    session.commit()

    resolution = _resolver(session, config).resolve(company.id, 'm1', 'Re: [INC000001] x', 'Body', SENDER)

    assert resolution.kind == ALREADY_PROCESSED
    assert resolution.prior is not None


def test_explicit_reference_to_missing_ticket_falls_through(session, company, config):
    resolution = _resolver(session, config).resolve(company.id, 'm1', '[INC000099] Order', 'Body', SENDER)

    assert resolution.kind == NEW


def test_explicit_reference_beats_duplicate(session, company, config):
    add_ticket(session, company.id, 'INC000001')
    duplicate_hash = compute_content_hash('Body', '[INC000001] Order', SENDER)
    add_ticket(session, company.id, 'INC000002', content_hash=duplicate_hash)

    resolution = _resolver(session, config).resolve(company.id, 'm1', '[INC000001] Order', 'Body', SENDER)

    assert resolution.kind == EXPLICIT_REPLY
    assert resolution.ticket.ticket_number == 'INC000001'


def test_duplicate_only_inside_window(session, company, config):
    content_hash = compute_content_hash('Body', 'Order broken', SENDER)
    add_ticket(session, company.id, 'INC000001', content_hash=content_hash, status='closed')

    inside = _resolver(session, config).resolve(company.id, 'm1', 'Re: Order broken', 'Body', SENDER)
    later = datetime.utcnow() + timedelta(days=config.duplicate_window_days + 1)
    outside = _resolver(session, config, now=lambda: later).resolve(company.id, 'm2', 'Order broken', 'Body', SENDER)

    assert inside.kind == DUPLICATE
    assert outside.kind == NEW


def test_reply_prefix_matches_open_ticket_in_window(session, company, config):
    add_ticket(session, company.id, 'INC000001')

    recent = _resolver(session, config).resolve(company.id, 'm1', 'Re: something', 'Thanks', SENDER)
    later = datetime.utcnow() + timedelta(days=config.reply_prefix_window_days + 1)
    stale = _resolver(session, config, now=lambda: later).resolve(company.id, 'm2', 'Re: something', 'Thanks', SENDER)
    other_sender = _resolver(session, config).resolve(company.id, 'm3', 'Re: something', 'Thanks', 'john@example.com')

    assert recent.kind == HEURISTIC_REPLY
    assert recent.ticket.ticket_number == 'INC000001'
    assert stale.kind == NEW
    assert other_sender.kind == NEW


def test_reply_prefix_ignores_closed_tickets(session, company, config):
    add_ticket(session, company.id, 'INC000001', status='resolved')

    resolution = _resolver(session, config).resolve(company.id, 'm1', 'Re: something', 'Thanks', SENDER)

    assert resolution.kind == NEW


def test_indicator_phrase_uses_longer_window(session, company, config):
    add_ticket(session, company.id, 'INC000001')
    later = datetime.utcnow() + timedelta(days=config.reply_prefix_window_days + 2)

    resolution = _resolver(session, config, now=lambda: later).resolve(
        company.id, 'm1', 'Hello', 'As discussed on the phone, nothing changed', SENDER
    )

    assert resolution.kind == INDICATOR_REPLY


def test_most_recent_open_ticket_wins(session, company, config):
    add_ticket(session, company.id, 'INC000001', created_at=datetime.utcnow() - timedelta(days=2))
    add_ticket(session, company.id, 'INC000002', created_at=datetime.utcnow() - timedelta(days=1))

    resolution = _resolver(session, config).resolve(company.id, 'm1', 'Re: hello', 'Thanks', SENDER)

    assert resolution.ticket.ticket_number == 'INC000002'
