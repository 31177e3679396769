"""Context inference and next-action prediction."""

from .aggregator import ContextAggregator
from .classifier import ActivityClassifier, HeuristicActivityStrategy, LearnedActivityStrategy
from .engine import ContextEngineService, default_context, merge_context
from .predictor import StatePredictorService, combine_predictions
from .store import ContextStore, InMemoryContextStore
from .subscriptions import Subscription, SubscriptionRegistry

__all__ = [
    "ActivityClassifier",
    "HeuristicActivityStrategy",
    "LearnedActivityStrategy",
    "ContextAggregator",
    "StatePredictorService",
    "combine_predictions",
    "ContextEngineService",
    "default_context",
    "merge_context",
    "ContextStore",
    "InMemoryContextStore",
    "Subscription",
    "SubscriptionRegistry",
]
