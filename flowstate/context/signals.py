from __future__ import annotations

"""Lookup tables and normalization helpers shared by the classifier and aggregator."""

import re
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

# File types counted as source code. Producers send either an extension or a language name.
CODE_FILE_TYPES = frozenset(
    {
        "js", "ts", "jsx", "tsx", "py", "java", "cpp", "c", "cs", "php",
        "rb", "go", "rs", "swift", "kt", "scala", "clj", "hs", "ml",
        "javascript", "typescript", "javascriptreact", "typescriptreact", "python",
        "csharp", "ruby", "golang", "rust", "kotlin", "clojure", "haskell", "ocaml",
    }
)

MARKDOWN_FILE_TYPES = frozenset({"md", "markdown"})

FILE_TYPE_SCORES: Dict[str, float] = {
    "js": 1.0, "ts": 1.0, "jsx": 1.0, "tsx": 1.0,
    "javascript": 1.0, "typescript": 1.0,
    "py": 0.9, "java": 0.9, "cpp": 0.9, "c": 0.9, "python": 0.9,
    "md": 0.3, "markdown": 0.3, "txt": 0.2, "json": 0.5, "yaml": 0.4, "yml": 0.4,
}
DEFAULT_FILE_TYPE_SCORE = 0.5

GIT_ACTIVITY_SCORES: Dict[str, float] = {
    "commit": 0.8,
    "push": 0.7,
    "pull_request": 0.9,
    "merge": 0.6,
    "branch": 0.5,
}
DEFAULT_GIT_ACTIVITY_SCORE = 0.3

ACTION_TYPE_SCORES: Dict[str, float] = {
    "editing": 1.0,
    "viewing": 0.3,
    "debugging": 0.8,
    "reviewing": 0.6,
    "planning": 0.4,
}
DEFAULT_ACTION_TYPE_SCORE = 0.5


def snake_key(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def as_observation(value: Any) -> Dict[str, Any]:
    """Coerce a raw observation (dict, model or junk) into a snake_case dict. Never raises."""
    if value is None:
        return {}
    if isinstance(value, BaseModel):
        value = value.model_dump(exclude_none=True)
    if not isinstance(value, Mapping):
        return {}
    return {snake_key(str(k)): v for k, v in value.items() if v is not None}


def normalize_file_type(file_type: Any) -> str:
    if not isinstance(file_type, str):
        return ""
    return file_type.strip().lower().lstrip(".")


def is_code_file(file_type: Any) -> bool:
    return normalize_file_type(file_type) in CODE_FILE_TYPES


def is_markdown(file_type: Any) -> bool:
    return normalize_file_type(file_type) in MARKDOWN_FILE_TYPES


def file_type_score(file_type: Any) -> float:
    return FILE_TYPE_SCORES.get(normalize_file_type(file_type), DEFAULT_FILE_TYPE_SCORE)


def git_activity_type(git_activity: Any) -> Optional[str]:
    if isinstance(git_activity, BaseModel):
        git_activity = git_activity.model_dump()
    if isinstance(git_activity, Mapping):
        kind = git_activity.get("type")
        return str(kind) if kind is not None else None
    return None


def git_activity_score(git_activity: Any) -> float:
    if not git_activity:
        return 0.0
    return GIT_ACTIVITY_SCORES.get(git_activity_type(git_activity) or "", DEFAULT_GIT_ACTIVITY_SCORE)


def action_type_score(action_type: Any) -> float:
    return ACTION_TYPE_SCORES.get(str(action_type or ""), DEFAULT_ACTION_TYPE_SCORE)


def number(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def keyword_frequency(value: Any) -> Dict[str, float]:
    if not isinstance(value, Mapping):
        return {}
    out: Dict[str, float] = {}
    for k, v in value.items():
        try:
            out[str(k)] = float(v)
        except (TypeError, ValueError):
            continue
    return out


def keyword_density(value: Any) -> float:
    return sum(keyword_frequency(value).values()) / 100.0
