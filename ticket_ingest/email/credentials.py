"""
Credential Manager
Keeps each tenant's Google OAuth access token fresh
"""
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional
import structlog

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from sqlalchemy.orm import sessionmaker

from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.database.models import Company

logger = structlog.get_logger(__name__)

# Gmail API scopes
SCOPES = [
    'https://www.googleapis.com/auth/gmail.readonly',
    'https://www.googleapis.com/auth/gmail.modify',
    'https://www.googleapis.com/auth/gmail.send',
]


class CredentialError(Exception):
    """Tenant credentials are missing or can no longer be refreshed"""
    pass


def _refresh_with_google(creds: Credentials) -> None:
    creds.refresh(Request())


class CredentialManager:
    """
    Refreshes and persists OAuth tokens per tenant

    Concurrent calls for the same tenant are serialized by a per-tenant lock,
    so only one refresh request goes out and later callers reuse its result.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[Settings] = None,
        refresher: Callable[[Credentials], None] = _refresh_with_google,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.session_factory = session_factory
        self.config = config or default_settings
        self._refresher = refresher
        self._clock = clock
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, company_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(company_id, threading.Lock())

    def needs_refresh(self, expiry: Optional[datetime]) -> bool:
        if expiry is None:
            return True
        margin = timedelta(seconds=self.config.token_refresh_margin_seconds)
        return expiry - self._clock() <= margin

    def ensure_fresh(self, company_id: int, force: bool = False) -> Credentials:
        """
        Return usable credentials for a tenant, refreshing them if needed

        Args:
            company_id: Tenant id
            force: Refresh even if the stored expiry looks valid

        Returns:
            google.oauth2.credentials.Credentials

        Raises:
            CredentialError: no refresh token, or the refresh was rejected
        """
        with self._lock_for(company_id):
            session = self.session_factory()
            try:
                company = session.get(Company, company_id)
                if not company:
                    raise CredentialError(f"Company {company_id} not found")
                if not company.google_refresh_token:
                    raise CredentialError(f"Company {company_id} has no refresh token; reconnect required")

                creds = Credentials(
                    token=company.google_access_token,
                    refresh_token=company.google_refresh_token,
                    token_uri=self.config.gmail_token_uri,
                    client_id=self.config.gmail_client_id,
                    client_secret=self.config.gmail_client_secret,
                    scopes=SCOPES,
                    expiry=company.google_token_expiry
                )

                if not force and company.google_access_token and not self.needs_refresh(company.google_token_expiry):
                    return creds

                logger.info("Refreshing Gmail credentials", company_id=company_id, forced=force)
                try:
                    self._refresher(creds)
                except RefreshError as e:
                    logger.error("Refresh token rejected", company_id=company_id, error=str(e))
                    raise CredentialError(f"Refresh rejected for company {company_id}: {e}") from e
                except TransportError as e:
                    logger.warning("Token endpoint unreachable", company_id=company_id, error=str(e))
                    raise CredentialError(f"Token endpoint unreachable: {e}") from e

                company.google_access_token = creds.token
                if creds.refresh_token:
                    company.google_refresh_token = creds.refresh_token
                company.google_token_expiry = creds.expiry
                session.commit()

                logger.info(
                    "Saved refreshed Gmail credentials",
                    company_id=company_id,
                    expiry=creds.expiry.isoformat() if creds.expiry else None
                )
                return creds
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
