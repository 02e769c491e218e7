"""
Web API for ticket management
FastAPI application exposing tickets, activities, notifications and mailbox control
"""
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
import structlog
from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker
import jwt

from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.database.models import Company, Notification, Ticket, User, TICKET_STATUSES
from ticket_ingest.database.ticket_store import TicketStore
from ticket_ingest.email.mailbox import MailboxError
from ticket_ingest.pipeline.ticket_engine import TicketEngine
from ticket_ingest.scheduler.mailbox_supervisor import MailboxSupervisor
from ticket_ingest.utils.notification_service import NotificationService

logger = structlog.get_logger(__name__)

security = HTTPBearer(auto_error=False)


class ApiError(Exception):
    """Error returned to callers as {"error": {"code", "message"}}"""

    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


# Pydantic models
class Principal(BaseModel):
    user_id: int
    company_id: int
    account_type: str = 'business'


class CommentInfo(BaseModel):
    id: int
    user_id: Optional[int]
    user_name: str
    text: str
    created_at: datetime

    class Config:
        from_attributes = True


class TicketSummary(BaseModel):
    id: int
    ticket_number: str
    subject: str
    sender_email: str
    sender_name: str
    status: str
    priority: str
    escalation_count: int
    created_at: datetime
    last_reply_at: Optional[datetime]

    class Config:
        from_attributes = True


class TicketDetail(TicketSummary):
    body: str
    source: str
    assigned_to: Optional[int]
    resolved_at: Optional[datetime]
    escalated_at: Optional[datetime]
    comments: List[CommentInfo]
    processed_gmail_message_ids: List[str]


class PortalTicket(BaseModel):
    ticket_number: str
    subject: str
    status: str
    priority: str
    created_at: datetime
    comments: List[CommentInfo]

    class Config:
        from_attributes = True


class ActivityInfo(BaseModel):
    id: int
    activity_type: str
    user_id: Optional[int]
    user_name: Optional[str]
    details: str
    content: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationInfo(BaseModel):
    id: int
    type: str
    title: str
    message: str
    related_ticket_id: Optional[int]
    priority: str
    is_read: bool
    extra_data: Optional[Dict[str, Any]]
    created_at: datetime

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    status: str


class CommentCreate(BaseModel):
    text: str = Field(min_length=1)


class MailboxStatus(BaseModel):
    company_id: int
    connected: bool
    polling: bool
    backend: str


# Helper function to ensure timezone-aware datetimes
def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert naive datetime to UTC-aware datetime"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def create_app(
    SessionMaker: sessionmaker,
    supervisor: Optional[MailboxSupervisor] = None,
    config: Optional[Settings] = None
) -> FastAPI:
    """
    Build the API application

    Args:
        SessionMaker: Session factory shared with the ingestion pipeline
        supervisor: Mailbox supervisor used by the connect/disconnect endpoints
        config: Settings override
    """
    config = config or default_settings
    notifications = NotificationService()

    app = FastAPI(
        title="Ticket Ingest API",
        description="Ticket management API for email-sourced support tickets",
        version="1.0.0"
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": exc.code, "message": exc.message}}
        )

    # Database dependency
    def get_db():
        """Get database session"""
        session = SessionMaker()
        try:
            yield session
        finally:
            session.close()

    def get_principal(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Principal:
        """Principal from a bearer token minted by the auth service"""
        if credentials is None:
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing bearer token")
        try:
            payload = jwt.decode(credentials.credentials, config.jwt_secret_key, algorithms=[config.jwt_algorithm])
            return Principal(
                user_id=int(payload["sub"]),
                company_id=int(payload["companyId"]),
                account_type=payload.get("accountType", "business")
            )
        except (jwt.PyJWTError, KeyError, TypeError, ValueError):
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Could not validate credentials")

    def get_current_user(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)) -> User:
        user = db.query(User).filter(
            User.id == principal.user_id,
            User.company_id == principal.company_id
        ).first()
        if user is None:
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Unknown user")
        return user

    def load_ticket(db: Session, user: User, ticket_id: int) -> Ticket:
        ticket = TicketStore(db).get_ticket(user.company_id, ticket_id)
        if ticket is None:
            raise ApiError(status.HTTP_404_NOT_FOUND, "not_found", f"Ticket {ticket_id} not found")
        return ticket

    def require_supervisor() -> MailboxSupervisor:
        if supervisor is None:
            raise ApiError(status.HTTP_503_SERVICE_UNAVAILABLE, "temporarily_unavailable", "Mailbox polling is not available")
        return supervisor

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": ensure_utc(datetime.utcnow()),
            "polling_tenants": supervisor.running_tenants() if supervisor else []
        }

    # Ticket endpoints
    @app.get("/api/tickets", response_model=List[TicketSummary])
    def list_tickets(
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db)
    ):
        return TicketStore(db).list_tickets(user.company_id, limit=limit, offset=offset)

    @app.get("/api/tickets/{ticket_id}", response_model=TicketDetail)
    def get_ticket(ticket_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
        return load_ticket(db, user, ticket_id)

    @app.get("/api/tickets/{ticket_id}/activities", response_model=List[ActivityInfo])
    def get_activities(ticket_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
        ticket = load_ticket(db, user, ticket_id)
        return TicketStore(db).list_activities(ticket)

    @app.patch("/api/tickets/{ticket_id}/status", response_model=TicketDetail)
    def update_status(
        ticket_id: int,
        request: StatusUpdate,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db)
    ):
        if request.status not in TICKET_STATUSES:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "invalid_status", f"Unknown status: {request.status}")
        load_ticket(db, user, ticket_id)
        engine = TicketEngine(db, config=config, notifications=notifications)
        ticket = engine.update_status(user.company_id, ticket_id, request.status, user=user)
        db.commit()
        logger.info("Ticket status updated", ticket_number=ticket.ticket_number, status=request.status, user_id=user.id)
        return ticket

    @app.post("/api/tickets/{ticket_id}/comments", response_model=TicketDetail, status_code=status.HTTP_201_CREATED)
    def add_comment(
        ticket_id: int,
        request: CommentCreate,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db)
    ):
        load_ticket(db, user, ticket_id)
        engine = TicketEngine(db, config=config, notifications=notifications)
        ticket = engine.add_staff_comment(user.company_id, ticket_id, request.text, user)
        db.commit()
        return ticket

    # Notification endpoints
    @app.get("/api/notifications", response_model=List[NotificationInfo])
    def list_notifications(
        unread_only: bool = False,
        limit: int = Query(50, ge=1, le=200),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db)
    ):
        return notifications.list_for_user(db, user.id, unread_only=unread_only, limit=limit)

    @app.post("/api/notifications/{notification_id}/read", response_model=NotificationInfo)
    def mark_notification_read(notification_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
        notification = db.query(Notification).filter(
            Notification.id == notification_id,
            Notification.user_id == user.id
        ).first()
        if notification is None:
            raise ApiError(status.HTTP_404_NOT_FOUND, "not_found", f"Notification {notification_id} not found")
        notification.mark_as_read()
        db.commit()
        return notification

    # Customer portal
    @app.get("/api/customer/tickets/{public_token}", response_model=PortalTicket)
    def portal_ticket(public_token: str, db: Session = Depends(get_db)):
        ticket = TicketStore(db).get_by_public_token(public_token)
        if ticket is None:
            raise ApiError(status.HTTP_404_NOT_FOUND, "not_found", "Ticket not found")
        company = db.get(Company, ticket.company_id)
        if company is None or not company.customer_portal_enabled:
            raise ApiError(status.HTTP_404_NOT_FOUND, "not_found", "Ticket not found")
        return ticket

    # Mailbox control
    @app.get("/api/mailbox/status", response_model=MailboxStatus)
    def mailbox_status(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
        company = db.get(Company, user.company_id)
        return MailboxStatus(
            company_id=company.id,
            connected=company.email_connected,
            polling=bool(supervisor and supervisor.is_running(company.id)),
            backend=company.mailbox_backend
        )

    @app.post("/api/mailbox/connect", response_model=MailboxStatus)
    def connect_mailbox(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
        runner = require_supervisor()
        company = db.get(Company, user.company_id)
        try:
            runner.start(company.id)
        except MailboxError as e:
            logger.warning("Mailbox connect failed", company_id=company.id, kind=e.kind, error=str(e))
            if e.is_auth_error:
                raise ApiError(status.HTTP_409_CONFLICT, "not_connected", f"Mailbox rejected credentials: {e}")
            raise ApiError(status.HTTP_503_SERVICE_UNAVAILABLE, "temporarily_unavailable", f"Mailbox unreachable: {e}")

        company.email_connected = True
        db.commit()
        return MailboxStatus(company_id=company.id, connected=True, polling=True, backend=company.mailbox_backend)

    @app.post("/api/mailbox/disconnect", response_model=MailboxStatus)
    def disconnect_mailbox(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
        runner = require_supervisor()
        company = db.get(Company, user.company_id)
        if not runner.stop(company.id) and not company.email_connected:
            raise ApiError(status.HTTP_409_CONFLICT, "not_connected", "Mailbox is not connected")

        company.email_connected = False
        db.commit()
        return MailboxStatus(company_id=company.id, connected=False, polling=False, backend=company.mailbox_backend)

    return app
