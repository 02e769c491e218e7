"""
Mailbox Supervisor
Owns one polling loop per connected tenant mailbox
"""
import threading
from typing import Callable, Dict, List, Optional, Set
import schedule
import structlog
from sqlalchemy.orm import sessionmaker

from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.database.models import Company
from ticket_ingest.email import create_mailbox_source
from ticket_ingest.email.credentials import CredentialManager
from ticket_ingest.email.mailbox import MailboxError, MailboxSource
from ticket_ingest.orchestrator import TicketIngestOrchestrator

logger = structlog.get_logger(__name__)


class PollingLoop:
    """
    Background poller for one tenant

    Runs its own schedule.Scheduler on a daemon thread, so loops never share
    jobs. Cycles never overlap; stop() waits for an in-flight cycle.
    """

    def __init__(
        self,
        company_id: int,
        source: MailboxSource,
        cycle: Callable[[int, MailboxSource], object],
        interval_seconds: int,
        tick_seconds: float = 1.0
    ):
        self.company_id = company_id
        self.source = source
        self._cycle = cycle
        self.interval_seconds = interval_seconds
        self.tick_seconds = tick_seconds
        self.scheduler = schedule.Scheduler()
        self.job: Optional[schedule.Job] = None
        self.thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._cycle_lock = threading.Lock()
        self.cycles_run = 0

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive() and not self._stop_event.is_set()

    def start(self, run_immediately: bool = True) -> None:
        """Start the background thread"""
        if self.thread is not None:
            logger.warning("Polling loop already started", company_id=self.company_id)
            return

        self.job = self.scheduler.every(self.interval_seconds).seconds.do(self.run_cycle)
        self.thread = threading.Thread(
            target=self._run_scheduler,
            args=(run_immediately,),
            name=f"mailbox-poller-{self.company_id}",
            daemon=True
        )
        self.thread.start()
        logger.info("Polling loop started", company_id=self.company_id, interval=self.interval_seconds)

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Stop polling, wait for the current cycle, then close the mailbox"""
        self.scheduler.clear()
        self._stop_event.set()

        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning("Polling loop did not stop in time", company_id=self.company_id)

        # An in-flight cycle holds the lock; disconnect only once it is done
        with self._cycle_lock:
            try:
                self.source.disconnect()
            except MailboxError as e:
                logger.warning("Mailbox disconnect failed", company_id=self.company_id, error=str(e))

        logger.info("Polling loop stopped", company_id=self.company_id, cycles_run=self.cycles_run)

    def run_cycle(self) -> None:
        with self._cycle_lock:
            if self._stop_event.is_set():
                return
            try:
                self._cycle(self.company_id, self.source)
            except Exception as e:
                logger.error("Poll cycle failed", company_id=self.company_id, error=str(e), exc_info=True)
            finally:
                self.cycles_run += 1

    def _run_scheduler(self, run_immediately: bool) -> None:
        """Run the scheduler loop in background thread"""
        if run_immediately:
            self.run_cycle()
        while not self._stop_event.is_set():
            try:
                self.scheduler.run_pending()
            except Exception as e:
                logger.error("Scheduler loop error", company_id=self.company_id, error=str(e), exc_info=True)
            self._stop_event.wait(self.tick_seconds)


class MailboxSupervisor:
    """
    Starts and stops per-tenant polling loops

    Each supervisor instance owns its loops; nothing is kept at module level.
    """

    def __init__(
        self,
        SessionMaker: sessionmaker,
        orchestrator: TicketIngestOrchestrator,
        credential_manager: Optional[CredentialManager] = None,
        config: Optional[Settings] = None,
        source_factory: Callable[..., MailboxSource] = create_mailbox_source,
        tick_seconds: float = 1.0
    ):
        self.SessionMaker = SessionMaker
        self.orchestrator = orchestrator
        self.credential_manager = credential_manager
        self.config = config or default_settings
        self.source_factory = source_factory
        self.tick_seconds = tick_seconds
        self._loops: Dict[int, PollingLoop] = {}
        self._starting: Set[int] = set()
        self._lock = threading.Lock()

    def start(self, company_id: int, run_immediately: bool = True) -> bool:
        """
        Connect a tenant's mailbox and start polling it

        Returns:
            False if the tenant was already being polled

        Raises:
            MailboxError: the mailbox could not be connected
            ValueError: unknown company
        """
        with self._lock:
            if company_id in self._loops or company_id in self._starting:
                return False
            self._starting.add(company_id)

        # slot reserved; connect without holding the lock
        try:
            session = self.SessionMaker()
            try:
                company = session.get(Company, company_id)
                if company is None:
                    raise ValueError(f"Company {company_id} not found")
                source = self.source_factory(company, self.credential_manager, self.config)
            finally:
                session.close()

            source.connect()
            loop = PollingLoop(
                company_id,
                source,
                self.orchestrator.process_cycle,
                self.config.email_poll_interval_seconds,
                tick_seconds=self.tick_seconds
            )
            loop.start(run_immediately=run_immediately)
            with self._lock:
                self._loops[company_id] = loop
        finally:
            with self._lock:
                self._starting.discard(company_id)

        logger.info("Mailbox polling started", company_id=company_id)
        return True

    def stop(self, company_id: int) -> bool:
        """
        Stop polling a tenant and release its mailbox session

        Returns only after the loop thread has finished.
        """
        with self._lock:
            loop = self._loops.pop(company_id, None)
        if loop is None:
            return False
        loop.stop()
        logger.info("Mailbox polling stopped", company_id=company_id)
        return True

    def stop_all(self) -> None:
        with self._lock:
            loops = list(self._loops.values())
            self._loops.clear()
        for loop in loops:
            loop.stop()

    def is_running(self, company_id: int) -> bool:
        with self._lock:
            return company_id in self._loops

    def running_tenants(self) -> List[int]:
        with self._lock:
            return sorted(self._loops)

    def start_all_connected(self) -> int:
        """Start a loop for every company flagged as connected"""
        session = self.SessionMaker()
        try:
            company_ids = [
                row.id for row in session.query(Company.id).filter(Company.email_connected.is_(True)).all()
            ]
        finally:
            session.close()

        started = 0
        for company_id in company_ids:
            try:
                if self.start(company_id):
                    started += 1
            except (MailboxError, ValueError) as e:
                logger.error("Failed to start mailbox polling", company_id=company_id, error=str(e))
        return started
