"""
Database Models
SQLAlchemy models for tenants, tickets, their activity trail and the
idempotency ledger of processed emails
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean,
    ForeignKey, JSON, UniqueConstraint, Index, create_engine, event
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from ticket_ingest.config.settings import settings

Base = declarative_base()

TICKET_STATUSES = ('new', 'acknowledged', 'in_progress', 'resolved', 'closed')
OPEN_STATUSES = ('new', 'acknowledged', 'in_progress')
PRIORITIES = ('low', 'medium', 'high', 'urgent')
ACTIVITY_TYPES = ('created', 'status_changed', 'assigned', 'note', 'comment', 'reply')
LEDGER_ACTIONS = ('created', 'updated', 'skipped')


class Company(Base):
    """
    Tenant account
    Holds the connected mailbox credentials and acknowledgment preferences
    """
    __tablename__ = 'companies'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    domain = Column(String(255))
    support_email = Column(String(255))
    email_connected = Column(Boolean, default=False, nullable=False)
    mailbox_backend = Column(String(20), default='gmail', nullable=False)  # 'gmail' or 'imap'

    # Google OAuth 2.0 tokens
    google_user_id = Column(String(255))
    google_access_token = Column(Text)
    google_refresh_token = Column(Text)
    google_token_expiry = Column(DateTime)  # naive UTC
    google_scope = Column(Text)
    google_connected_email = Column(String(255))

    # IMAP/SMTP credentials
    imap_host = Column(String(255))
    imap_port = Column(Integer)
    smtp_host = Column(String(255))
    smtp_port = Column(Integer)
    mail_username = Column(String(255))
    mail_password = Column(Text)

    # Acknowledgment template
    email_template_subject = Column(String(500))
    email_template_body = Column(Text)
    use_custom_template = Column(Boolean, default=False, nullable=False)

    # Customer portal
    customer_portal_enabled = Column(Boolean, default=True, nullable=False)
    customer_portal_in_emails = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    users = relationship('User', backref='company', lazy='dynamic')

    @property
    def connected_email(self) -> Optional[str]:
        """Address the tenant receives support mail on"""
        address = self.google_connected_email if self.mailbox_backend == 'gmail' else self.mail_username
        return (address or self.support_email or '').strip().lower() or None

    @property
    def portal_links_enabled(self) -> bool:
        return bool(self.customer_portal_enabled and self.customer_portal_in_emails)

    def __repr__(self):
        return f"<Company(id={self.id}, name={self.name}, backend={self.mailbox_backend})>"


class User(Base):
    """
    Company staff account
    Used for reply attribution and notification fan-out
    """
    __tablename__ = 'users'
    __table_args__ = (
        UniqueConstraint('company_id', 'email', name='uq_users_company_email'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey('companies.id'), nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    role = Column(String(20), default='agent', nullable=False)  # 'admin', 'agent', 'viewer'
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"


class Ticket(Base):
    """
    Ticket aggregate
    Ticket number and public token are assigned once and never change.
    Comments and processed message ids live in append-only child tables.
    """
    __tablename__ = 'tickets'
    __table_args__ = (
        UniqueConstraint('company_id', 'ticket_number', name='uq_tickets_company_number'),
        Index('ix_tickets_company_hash', 'company_id', 'content_hash'),
        Index('ix_tickets_company_sender', 'company_id', 'sender_email'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey('companies.id'), nullable=False, index=True)
    ticket_number = Column(String(20), nullable=False)
    public_token = Column(String(64), unique=True, nullable=False)

    subject = Column(String(998), nullable=False)
    body = Column(Text, nullable=False)
    sender_email = Column(String(255), nullable=False)
    sender_name = Column(String(255), nullable=False)
    gmail_message_id = Column(String(255), index=True)  # external id of the first message
    content_hash = Column(String(64))
    source = Column(String(20), default='email', nullable=False)

    status = Column(String(20), default='new', nullable=False)
    priority = Column(String(20), default='medium', nullable=False)
    escalation_count = Column(Integer, default=0, nullable=False)
    assigned_to = Column(Integer, ForeignKey('users.id'), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    last_reply_at = Column(DateTime)
    resolved_at = Column(DateTime)
    escalated_at = Column(DateTime)

    comments = relationship(
        'TicketComment', backref='ticket', order_by='TicketComment.id', lazy='selectin'
    )
    message_refs = relationship(
        'TicketMessageRef', backref='ticket', order_by='TicketMessageRef.id', lazy='selectin'
    )
    activities = relationship(
        'TicketActivity', backref='ticket', order_by='TicketActivity.id', lazy='dynamic'
    )

    @property
    def processed_gmail_message_ids(self) -> list[str]:
        """Every inbound external message id folded into this ticket"""
        return [ref.external_id for ref in self.message_refs]

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def __repr__(self):
        return f"<Ticket(id={self.id}, ticket_number={self.ticket_number}, status={self.status}, priority={self.priority})>"


class TicketComment(Base):
    """Append-only comment on a ticket"""
    __tablename__ = 'ticket_comments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey('tickets.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    user_name = Column(String(255), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<TicketComment(id={self.id}, ticket_id={self.ticket_id}, user_name={self.user_name})>"


class TicketMessageRef(Base):
    """
    External message id folded into a ticket
    One row per (ticket, external id); rows are only ever inserted
    """
    __tablename__ = 'ticket_message_refs'
    __table_args__ = (
        UniqueConstraint('ticket_id', 'external_id', name='uq_message_refs_ticket_external'),
        Index('ix_message_refs_company_external', 'company_id', 'external_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey('tickets.id'), nullable=False, index=True)
    company_id = Column(Integer, ForeignKey('companies.id'), nullable=False)
    external_id = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<TicketMessageRef(ticket_id={self.ticket_id}, external_id={self.external_id})>"


class TicketActivity(Base):
    """
    Immutable audit event on a ticket
    """
    __tablename__ = 'ticket_activities'

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey('tickets.id'), nullable=False, index=True)
    activity_type = Column(String(30), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    user_name = Column(String(255))
    details = Column(Text, nullable=False)
    content = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<TicketActivity(id={self.id}, ticket_id={self.ticket_id}, type={self.activity_type})>"


class ProcessedEmail(Base):
    """
    Idempotency ledger
    One row per (company, external message id), written once
    """
    __tablename__ = 'processed_emails'
    __table_args__ = (
        UniqueConstraint('company_id', 'external_id', name='uq_processed_company_external'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey('companies.id'), nullable=False, index=True)
    external_id = Column(String(255), nullable=False)
    message_id = Column(String(998))  # RFC 822 Message-ID header
    subject = Column(String(998))
    sender_email = Column(String(255))
    ticket_id = Column(Integer, ForeignKey('tickets.id'), nullable=True)
    action = Column(String(20), nullable=False)  # 'created', 'updated', 'skipped'
    reason = Column(String(100))
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ProcessedEmail(id={self.id}, external_id={self.external_id}, action={self.action})>"


class Notification(Base):
    """Per-user notification feed entry"""
    __tablename__ = 'notifications'
    __table_args__ = (
        Index('ix_notifications_user_read', 'user_id', 'is_read', 'created_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    company_id = Column(Integer, ForeignKey('companies.id'), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    related_ticket_id = Column(Integer, ForeignKey('tickets.id'), nullable=True)
    priority = Column(String(20), default='medium', nullable=False)
    extra_data = Column(JSON, default=dict)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    read_at = Column(DateTime)

    def mark_as_read(self) -> None:
        self.is_read = True
        self.read_at = datetime.utcnow()

    def __repr__(self):
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type})>"


def _configure_sqlite_connection(dbapi_connection, connection_record):
    # SQLAlchemy emits BEGIN itself so SAVEPOINTs nest inside a real transaction
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(conn):
    conn.exec_driver_sql("BEGIN")


def init_database(database_url: Optional[str] = None) -> sessionmaker:
    """
    Initialize database and create tables

    Args:
        database_url: Optional database URL override

    Returns:
        SQLAlchemy sessionmaker
    """
    db_url = database_url or settings.database_url

    if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite:///:memory:'):
        import os
        db_dir = os.path.dirname(db_url[len('sqlite:///'):])
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    connect_args = {'check_same_thread': False} if db_url.startswith('sqlite') else {}
    engine = create_engine(db_url, echo=False, connect_args=connect_args)
    if db_url.startswith('sqlite'):
        event.listen(engine, "connect", _configure_sqlite_connection)
        event.listen(engine, "begin", _begin_sqlite_transaction)

    # Create all tables
    Base.metadata.create_all(engine)

    return sessionmaker(bind=engine, expire_on_commit=False)

