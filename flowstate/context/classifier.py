from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from flowstate.schemas.context import ACTIVITY_TYPES, ActivityClassificationResult, clamp01

from .learning import load_model_best_effort, save_model, train_activity_model
from .signals import (
    action_type_score,
    as_observation,
    file_type_score,
    git_activity_score,
    git_activity_type,
    is_code_file,
    is_markdown,
    keyword_density,
    keyword_frequency,
    number,
)
from .timeutil import Clock, day_index, local_now

logger = logging.getLogger("flowstate.context.classifier")

FALLBACK_ACTIVITY = "coding"
FALLBACK_CONFIDENCE = 0.5

MEETING_CONFIDENCE = 0.9
REVIEWING_CONFIDENCE = 0.8
PLANNING_CONFIDENCE = 0.7
DEBUGGING_CONFIDENCE = 0.75
CODING_CONFIDENCE = 0.8

PLANNING_DENSITY_THRESHOLD = 0.3
DEBUGGING_DENSITY_THRESHOLD = 0.4

TRAINING_BUFFER_SIZE = 1000
LABEL_MATCH_WINDOW_SEC = 30.0
MIN_TRAINING_SAMPLES = 100
MIN_LABELED_SAMPLES = 50

FEATURE_NAMES: Tuple[str, ...] = (
    "editsPerMinute",
    "fileTypeScore",
    "keywordDensity",
    "gitActivityScore",
    "timeOfDay",
    "dayOfWeek",
)
MODEL_FEATURE_NAMES: Tuple[str, ...] = FEATURE_NAMES + (
    "timeSpentInFile",
    "numberOfEdits",
    "interruptionCount",
    "actionTypeScore",
)


def extract_features(obs: Dict[str, Any], now: datetime) -> Dict[str, float]:
    edits = number(obs.get("number_of_edits"))
    seconds = number(obs.get("time_spent_in_file"))
    minutes = seconds / 60.0
    return {
        "editsPerMinute": edits / minutes if minutes > 0 else 0.0,
        "fileTypeScore": file_type_score(obs.get("file_type")),
        "keywordDensity": keyword_density(obs.get("keyword_frequency")),
        "gitActivityScore": git_activity_score(obs.get("git_activity")),
        "timeOfDay": float(now.hour),
        "dayOfWeek": float(day_index(now)),
    }


def model_features(obs: Dict[str, Any], features: Dict[str, float]) -> Dict[str, float]:
    out = dict(features)
    out["timeSpentInFile"] = number(obs.get("time_spent_in_file"))
    out["numberOfEdits"] = number(obs.get("number_of_edits"))
    out["interruptionCount"] = number(obs.get("interruption_count"))
    out["actionTypeScore"] = action_type_score(obs.get("action_type"))
    return out


def feature_vector(model_feature_map: Dict[str, float]) -> List[float]:
    return [float(model_feature_map.get(name, 0.0) or 0.0) for name in MODEL_FEATURE_NAMES]


def heuristic_activity(obs: Dict[str, Any]) -> Tuple[str, float]:
    """Ordered rules; the first match wins."""
    action = obs.get("action_type")
    frequency = keyword_frequency(obs.get("keyword_frequency"))

    if obs.get("calendar_status") == "in-meeting":
        return "meeting", MEETING_CONFIDENCE

    if action == "viewing" and git_activity_type(obs.get("git_activity")) == "pull_request":
        return "reviewing", REVIEWING_CONFIDENCE

    if is_markdown(obs.get("file_type")) and frequency.get("planning", 0.0) > PLANNING_DENSITY_THRESHOLD:
        return "planning", PLANNING_CONFIDENCE

    if frequency.get("debugging", 0.0) > DEBUGGING_DENSITY_THRESHOLD or action == "debugging":
        return "debugging", DEBUGGING_CONFIDENCE

    if number(obs.get("number_of_edits")) >= 1 and is_code_file(obs.get("file_type")):
        return "coding", CODING_CONFIDENCE

    return FALLBACK_ACTIVITY, FALLBACK_CONFIDENCE


class ActivityStrategy(Protocol):
    name: str

    def classify(self, obs: Dict[str, Any], vector: Sequence[float]) -> Tuple[str, float]:
        ...


class HeuristicActivityStrategy:
    name = "heuristic"

    def classify(self, obs: Dict[str, Any], vector: Sequence[float]) -> Tuple[str, float]:
        return heuristic_activity(obs)


class LearnedActivityStrategy:
    """Arg-max over a fitted classifier's `predict_proba`."""

    name = "learned"

    def __init__(self, model: Any) -> None:
        self.model = model

    def classify(self, obs: Dict[str, Any], vector: Sequence[float]) -> Tuple[str, float]:
        rows = np.asarray([list(vector)], dtype=float)
        try:
            probabilities = np.asarray(self.model.predict_proba(rows))[0]
        finally:
            del rows
        index = int(np.argmax(probabilities))
        label = str(self.model.classes_[index])
        if label not in ACTIVITY_TYPES:
            raise ValueError(f"model produced unknown activity {label!r}")
        return label, float(probabilities[index])


@dataclass
class TrainingSample:
    features: Dict[str, float]
    timestamp: datetime
    source: str
    label: Optional[str] = None


Trainer = Callable[[Sequence[Sequence[float]], Sequence[str]], Any]


class ActivityClassifier:
    """
    Turns one raw activity observation into an activity type + confidence.

    Never raises: absent or malformed observations fall back to coding at 0.5.
    Every classified observation also lands in a bounded training buffer so a
    learned strategy can replace the heuristic once enough labels arrive.
    """

    def __init__(
        self,
        *,
        strategy: Optional[ActivityStrategy] = None,
        clock: Clock = local_now,
        trainer: Optional[Trainer] = None,
        model_path: Optional[str | Path] = None,
        buffer_size: int = TRAINING_BUFFER_SIZE,
        label_window_sec: float = LABEL_MATCH_WINDOW_SEC,
        min_samples: int = MIN_TRAINING_SAMPLES,
        min_labeled: int = MIN_LABELED_SAMPLES,
    ) -> None:
        self.clock = clock
        self._strategy: ActivityStrategy = strategy or HeuristicActivityStrategy()
        self._heuristic = HeuristicActivityStrategy()
        self._trainer: Trainer = trainer or train_activity_model
        self.model_path = Path(model_path) if model_path else None
        self._samples: Deque[TrainingSample] = deque(maxlen=buffer_size)
        self.label_window_sec = float(label_window_sec)
        self.min_samples = int(min_samples)
        self.min_labeled = int(min_labeled)
        self._training_task: Optional[asyncio.Task] = None

    @property
    def strategy_name(self) -> str:
        return self._strategy.name

    @property
    def model_loaded(self) -> bool:
        return isinstance(self._strategy, LearnedActivityStrategy)

    def use_model(self, model: Any) -> None:
        self._strategy = LearnedActivityStrategy(model)

    async def load_model(self, *, timeout_sec: float = 10.0) -> bool:
        model = await load_model_best_effort(self.model_path, timeout_sec=timeout_sec, label="activity")
        if model is None:
            return False
        self.use_model(model)
        logger.info("ActivityClassifier using learned model from %s", self.model_path)
        return True

    # ── classification ──────────────────────────────────────

    def classify(self, observation: Any, *, source: str = "classification") -> ActivityClassificationResult:
        now = self.clock()
        try:
            obs = as_observation(observation)
            if not obs:
                return ActivityClassificationResult(
                    activity_type=FALLBACK_ACTIVITY,
                    confidence=FALLBACK_CONFIDENCE,
                    features={},
                    timestamp=now,
                )

            features = extract_features(obs, now)
            full = model_features(obs, features)
            activity, confidence = self._decide(obs, feature_vector(full))
            self._collect(full, now, source)

            return ActivityClassificationResult(
                activity_type=activity,
                confidence=clamp01(confidence),
                features=features,
                timestamp=now,
            )
        except Exception:
            logger.exception("Failed to classify activity; using fallback")
            return ActivityClassificationResult(
                activity_type=FALLBACK_ACTIVITY,
                confidence=FALLBACK_CONFIDENCE,
                features={},
                timestamp=now,
            )

    def _decide(self, obs: Dict[str, Any], vector: List[float]) -> Tuple[str, float]:
        if self._strategy is self._heuristic or isinstance(self._strategy, HeuristicActivityStrategy):
            return self._strategy.classify(obs, vector)
        try:
            return self._strategy.classify(obs, vector)
        except Exception as exc:
            logger.warning("Learned activity model failed (%s); downgrading to rules", exc)
            self._strategy = self._heuristic
            return self._heuristic.classify(obs, vector)

    # ── training data ───────────────────────────────────────

    def _collect(self, features: Dict[str, float], timestamp: datetime, source: str) -> None:
        self._samples.append(TrainingSample(features=features, timestamp=timestamp, source=source))

    @property
    def samples(self) -> List[TrainingSample]:
        return list(self._samples)

    def add_training_label(self, timestamp: datetime, label: str) -> bool:
        """Attach `label` to the first buffered sample within the match window of `timestamp`."""
        if label not in ACTIVITY_TYPES:
            raise ValueError(f"unknown activity label {label!r}")
        for sample in self._samples:
            if abs((sample.timestamp - timestamp).total_seconds()) < self.label_window_sec:
                sample.label = label
                logger.debug("Added training label %s", label)
                return True
        return False

    def training_stats(self) -> Dict[str, Any]:
        labeled = [s.label for s in self._samples if s.label is not None]
        return {
            "totalSamples": len(self._samples),
            "labeledSamples": len(labeled),
            "labelDistribution": dict(Counter(labeled)),
            "modelLoaded": self.model_loaded,
            "strategy": self.strategy_name,
        }

    def ready_to_train(self) -> bool:
        if len(self._samples) < self.min_samples:
            return False
        return sum(1 for s in self._samples if s.label is not None) >= self.min_labeled

    async def train_model(self) -> bool:
        """Retrain from labeled samples. Returns False (not an error) when data is insufficient."""
        if len(self._samples) < self.min_samples:
            logger.info("Insufficient training data: %d/%d samples", len(self._samples), self.min_samples)
            return False
        labeled = [s for s in self._samples if s.label is not None]
        if len(labeled) < self.min_labeled:
            logger.info("Insufficient labeled data: %d/%d", len(labeled), self.min_labeled)
            return False

        rows = [feature_vector(s.features) for s in labeled]
        labels = [str(s.label) for s in labeled]
        try:
            model = await asyncio.to_thread(self._trainer, rows, labels)
        except Exception as exc:
            logger.warning("Activity model training failed: %s", exc)
            return False

        self.use_model(model)
        logger.info("Activity model trained on %d labeled samples", len(labeled))
        if self.model_path is not None:
            try:
                await asyncio.to_thread(save_model, model, self.model_path)
            except Exception as exc:
                logger.warning("Failed to save activity model to %s: %s", self.model_path, exc)
        return True

    def train_in_background(self) -> Optional[asyncio.Task]:
        """Fire-and-forget retrain; classification never waits on it."""
        if self._training_task is not None and not self._training_task.done():
            return self._training_task
        if not self.ready_to_train():
            return None
        self._training_task = asyncio.create_task(self.train_model(), name="activity-classifier-train")
        return self._training_task
