"""
Complaint Classifier
Asks the AI provider whether an email is a complaint, with pacing and a safe fallback
"""
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional
import structlog

from ticket_ingest.ai.providers import AIProvider
from ticket_ingest.config.settings import Settings, settings as default_settings
from ticket_ingest.utils.email_utils import extract_ticket_number, strip_html

logger = structlog.get_logger(__name__)

COMPLAINT = 'Complaint'
NORMAL = 'Normal'

NEW_EMAIL_PROMPT = (
    'Analyze the following email text and determine if it is a complaint. '
    'Respond with only one word: "Complaint" or "Normal".\n\n---\n\n'
    'Subject: {subject}\n\nBody: {body}'
)
REPLY_PROMPT = (
    'Analyze the following email reply and determine if it contains a complaint '
    'or negative feedback. Consider that this is a reply to {reference}. '
    'Respond with only one word: "Complaint" or "Normal".\n\n---\n\n'
    'Subject: {subject}\n\nBody: {body}'
)


class ClassifierError(Exception):
    """Provider returned nothing usable"""
    pass


@dataclass(frozen=True)
class Verdict:
    type: str
    is_reply: bool = False
    ticket_number: Optional[str] = None
    should_escalate: bool = False

    @property
    def is_complaint(self) -> bool:
        return self.type == COMPLAINT


class ClassifierGateway:
    """
    Classifies emails as Complaint or Normal

    Any provider failure yields a Normal verdict without escalation. Calls are
    spaced at least `classifier_min_interval_seconds` apart across all
    threads sharing the gateway.
    """

    def __init__(
        self,
        provider: AIProvider,
        config: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.provider = provider
        self.config = config or default_settings
        self._sleep = sleep
        self._clock = clock
        self._pace_lock = threading.Lock()
        self._last_call: Optional[float] = None

    def classify(self, subject: str, body: str, is_reply_context: bool = False) -> Verdict:
        """
        Classify one email

        Args:
            subject: Email subject
            body: Email body, plain text or HTML
            is_reply_context: The message was matched to an existing ticket

        Returns:
            Verdict; should_escalate is only ever set for replies
        """
        clean_body = strip_html(body)[:self.config.classifier_max_body_chars]
        ticket_number = extract_ticket_number(subject)
        is_reply = bool(ticket_number) or is_reply_context

        if is_reply:
            reference = f"ticket {ticket_number}" if ticket_number else "an existing support ticket"
            prompt = REPLY_PROMPT.format(reference=reference, subject=subject, body=clean_body)
        else:
            prompt = NEW_EMAIL_PROMPT.format(subject=subject, body=clean_body)

        self._pace()
        try:
            answer = self._ask(prompt)
        except Exception as e:
            logger.warning(
                "Classifier unavailable, using Normal",
                subject=subject[:100],
                is_reply=is_reply,
                error=str(e)
            )
            return Verdict(type=NORMAL, is_reply=is_reply, ticket_number=ticket_number, should_escalate=False)

        is_complaint = 'complaint' in answer.lower()
        verdict = Verdict(
            type=COMPLAINT if is_complaint else NORMAL,
            is_reply=is_reply,
            ticket_number=ticket_number,
            should_escalate=is_reply and is_complaint
        )
        logger.info(
            "Email classified",
            subject=subject[:100],
            type=verdict.type,
            is_reply=is_reply,
            should_escalate=verdict.should_escalate
        )
        return verdict

    def _ask(self, prompt: str) -> str:
        answer = self.provider.generate_response(prompt, temperature=self.config.ai_temperature)
        if not isinstance(answer, str) or not answer.strip():
            raise ClassifierError("Empty classifier response")
        return answer.strip()

    def _pace(self) -> None:
        with self._pace_lock:
            interval = self.config.classifier_min_interval_seconds
            if self._last_call is not None and interval > 0:
                wait = self._last_call + interval - self._clock()
                if wait > 0:
                    logger.debug("Pacing classifier call", wait_seconds=round(wait, 2))
                    self._sleep(wait)
            self._last_call = self._clock()
