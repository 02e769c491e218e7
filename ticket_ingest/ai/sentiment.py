"""
Sentiment Priority
Initial ticket priority from the AFINN score of subject and body
"""
from typing import Callable, Optional
import structlog

from afinn import Afinn

from ticket_ingest.config.settings import Settings, settings as default_settings

logger = structlog.get_logger(__name__)


class SentimentPrioritizer:
    """
    Maps an AFINN sentiment score to a starting priority

    A score strictly below the high threshold gives 'high', strictly below the
    medium threshold gives 'medium', anything else 'low'.
    """

    def __init__(self, config: Optional[Settings] = None, scorer: Optional[Callable[[str], float]] = None):
        self.config = config or default_settings
        if scorer is None:
            scorer = Afinn(language='en').score
        self._score = scorer

    def score(self, subject: str, body: str) -> float:
        return self._score(f"{subject or ''} {body or ''}")

    def priority_for_score(self, score: float) -> str:
        if score < self.config.sentiment_high_threshold:
            return 'high'
        if score < self.config.sentiment_medium_threshold:
            return 'medium'
        return 'low'

    def priority(self, subject: str, body: str) -> str:
        score = self.score(subject, body)
        priority = self.priority_for_score(score)
        logger.debug("Sentiment scored", score=score, priority=priority)
        return priority
