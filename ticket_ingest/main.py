#!/usr/bin/env python3
"""
Ticket Ingest - Main Entry Point
Polls connected tenant mailboxes and turns complaint emails into tickets
"""
import logging
import sys
import threading
import structlog
from pathlib import Path

from ticket_ingest.ai.classifier import ClassifierGateway
from ticket_ingest.ai.providers import create_provider
from ticket_ingest.config.settings import ConfigurationError, settings
from ticket_ingest.database.models import init_database
from ticket_ingest.email.credentials import CredentialManager
from ticket_ingest.orchestrator import TicketIngestOrchestrator
from ticket_ingest.pipeline.acknowledgment import AcknowledgmentDispatcher
from ticket_ingest.scheduler.mailbox_supervisor import MailboxSupervisor


def setup_logging():
    """Configure structured logging"""
    # Ensure logs directory exists
    log_dir = Path(settings.log_file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.log_level.upper()),
        handlers=[
            logging.FileHandler(settings.log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )


def build_supervisor(SessionMaker):
    """Wire the pipeline and return (supervisor, acknowledger)"""
    provider = create_provider(settings)
    classifier = ClassifierGateway(provider, settings)
    credential_manager = CredentialManager(SessionMaker, settings)
    acknowledger = AcknowledgmentDispatcher(settings)
    orchestrator = TicketIngestOrchestrator(
        SessionMaker,
        classifier,
        config=settings,
        acknowledger=acknowledger,
        credential_manager=credential_manager
    )
    supervisor = MailboxSupervisor(
        SessionMaker,
        orchestrator,
        credential_manager=credential_manager,
        config=settings
    )
    return supervisor, acknowledger


def main():
    """Main entry point"""
    setup_logging()

    logger = structlog.get_logger(__name__)

    logger.info("=" * 60)
    logger.info("Ticket Ingest Service Starting")
    logger.info(
        "Configuration",
        ai_provider=settings.ai_provider,
        ai_model=settings.ai_model,
        poll_interval=settings.email_poll_interval_seconds
    )
    logger.info("=" * 60)

    try:
        settings.validate_startup()
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)

    supervisor = None
    acknowledger = None
    try:
        SessionMaker = init_database()
        supervisor, acknowledger = build_supervisor(SessionMaker)
        started = supervisor.start_all_connected()
        logger.info("Mailbox pollers started", count=started)

        if settings.serve_api:
            import uvicorn
            from ticket_ingest.api.web_api import create_app

            app = create_app(SessionMaker, supervisor=supervisor, config=settings)
            uvicorn.run(app, host=settings.api_host, port=settings.api_port)
        else:
            threading.Event().wait()

    except KeyboardInterrupt:
        logger.info("Received shutdown signal")

    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)

    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        sys.exit(1)

    finally:
        if supervisor is not None:
            supervisor.stop_all()
        if acknowledger is not None:
            acknowledger.shutdown()
        logger.info("Ticket Ingest Service stopped")


if __name__ == '__main__':
    main()
