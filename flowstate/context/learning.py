from __future__ import annotations

"""Trainable model runtime for the classifier and the sequence predictor.

The core only needs two capabilities from here: `train(samples) -> model` and a
model exposing `predict_proba(rows)` plus `classes_`. Models are scikit-learn
estimators persisted with joblib.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

import joblib
import numpy as np
from sklearn.model_selection import train_test_split
from sklearn.neural_network import MLPClassifier
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler

logger = logging.getLogger("flowstate.context.learning")

SEQUENCE_EPOCHS = 20
SEQUENCE_BATCH_SIZE = 16
SEQUENCE_VALIDATION_SPLIT = 0.2


@dataclass
class TrainingReport:
    samples: int
    classes: int
    train_accuracy: float
    validation_accuracy: Optional[float] = None


def _class_count(labels: Sequence[Any]) -> int:
    return len(set(labels))


def train_activity_model(rows: Sequence[Sequence[float]], labels: Sequence[str], *, seed: int = 7) -> Any:
    """Fit a feature-vector activity classifier. Raises ValueError when the data cannot train a model."""
    if len(rows) != len(labels):
        raise ValueError("rows and labels must have the same length")
    if _class_count(labels) < 2:
        raise ValueError("need at least two distinct activity labels to train")

    x = np.asarray(rows, dtype=float)
    y = np.asarray(labels)
    model = make_pipeline(
        StandardScaler(),
        MLPClassifier(hidden_layer_sizes=(32, 16), max_iter=300, random_state=seed),
    )
    model.fit(x, y)
    logger.info("Activity model trained samples=%d accuracy=%.3f", len(y), model.score(x, y))
    return model


def train_sequence_model(
    windows: Sequence[Sequence[Sequence[float]]],
    labels: Sequence[str],
    *,
    seed: int = 7,
) -> tuple[Any, TrainingReport]:
    """Fit the next-action model on flattened context windows (20 epochs, batch 16, 80/20 split)."""
    if len(windows) != len(labels):
        raise ValueError("windows and labels must have the same length")
    if _class_count(labels) < 2:
        raise ValueError("need at least two distinct next actions to train")

    x = np.asarray(windows, dtype=float).reshape(len(windows), -1)
    y = np.asarray(labels)

    x_train, x_val, y_train, y_val = train_test_split(
        x, y, test_size=SEQUENCE_VALIDATION_SPLIT, random_state=seed, shuffle=True
    )
    if _class_count(y_train) < 2:
        raise ValueError("training split holds a single next action")

    model = make_pipeline(
        StandardScaler(),
        MLPClassifier(
            hidden_layer_sizes=(32, 16),
            batch_size=SEQUENCE_BATCH_SIZE,
            max_iter=SEQUENCE_EPOCHS,
            random_state=seed,
        ),
    )
    model.fit(x_train, y_train)
    report = TrainingReport(
        samples=len(y),
        classes=_class_count(y),
        train_accuracy=float(model.score(x_train, y_train)),
        validation_accuracy=float(model.score(x_val, y_val)) if len(y_val) else None,
    )
    return model, report


def save_model(model: Any, path: str | Path) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(model, target)


def load_model(path: str | Path) -> Any:
    model = joblib.load(Path(path))
    if not hasattr(model, "predict_proba") or not hasattr(model, "classes_"):
        raise TypeError(f"object at {path} is not a fitted probabilistic classifier")
    return model


async def load_model_best_effort(path: Optional[str | Path], *, timeout_sec: float, label: str) -> Optional[Any]:
    """Load a model within `timeout_sec`; any failure means rule-only mode, never an error."""
    if not path:
        return None
    if not Path(path).exists():
        logger.info("No %s model at %s; using rule-based mode", label, path)
        return None
    try:
        return await asyncio.wait_for(asyncio.to_thread(load_model, path), timeout=timeout_sec)
    except Exception as exc:
        logger.warning("Failed to load %s model from %s (%s); using rule-based mode", label, path, exc)
        return None
