"""Encode/decode structured task annotations stored as prefixed labels.

Only the task store and the file scope analyzer read or write these; the
rest of the engine goes through their typed accessors.
"""

import json
import logging

logger = logging.getLogger(__name__)

FILES = "files:"
ACTUAL_FILES = "actual_files:"
CONFLICT_FILES = "conflict_files:"
MERGE_STAGE = "merge_stage:"
ATTEMPTS = "attempts:"


def find_label(labels: list[str], prefix: str) -> str | None:
    """Return the payload of the first label with the given prefix."""
    for label in labels:
        if label.startswith(prefix):
            return label[len(prefix):]
    return None


def replace_label(labels: list[str], prefix: str, payload: str | None) -> list[str]:
    """Drop every label with the prefix and append prefix+payload (unless None)."""
    kept = [label for label in labels if not label.startswith(prefix)]
    if payload is not None:
        kept.append(f"{prefix}{payload}")
    return kept


def encode_file_list(files: list[str]) -> str:
    return json.dumps(sorted(set(files)))


def decode_file_list(labels: list[str], prefix: str) -> list[str] | None:
    payload = find_label(labels, prefix)
    if payload is None:
        return None
    try:
        value = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed %s label: %s", prefix.rstrip(":"), payload[:200])
        return None
    if not isinstance(value, list):
        return None
    return [str(f) for f in value if f]


def decode_planned_files(labels: list[str]) -> list[str] | None:
    """Flatten a planner ``files:{"modify": [...], "create": [...], "test": [...]}`` label."""
    payload = find_label(labels, FILES)
    if payload is None:
        return None
    try:
        value = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed files label: %s", payload[:200])
        return None
    if not isinstance(value, dict):
        return None
    files: list[str] = []
    for key in ("modify", "create", "test"):
        for f in value.get(key) or []:
            if f and f not in files:
                files.append(str(f))
    return files


def decode_attempts(labels: list[str]) -> int:
    payload = find_label(labels, ATTEMPTS)
    if payload is None:
        return 0
    try:
        return max(0, int(payload))
    except ValueError:
        return 0
