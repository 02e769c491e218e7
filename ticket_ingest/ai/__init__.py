"""AI module"""
from .providers import AIProvider, create_provider
from .classifier import ClassifierGateway, ClassifierError, Verdict
from .sentiment import SentimentPrioritizer

__all__ = [
    'AIProvider',
    'create_provider',
    'ClassifierGateway',
    'ClassifierError',
    'Verdict',
    'SentimentPrioritizer',
]
