from __future__ import annotations

import hashlib
import json
import re
from typing import Any


_WHITESPACE_RE = re.compile(r"\s+")


def normalize_question(question: str) -> str:
    return _WHITESPACE_RE.sub(" ", question.strip().lower())


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def question_hash(question: str) -> str:
    return content_hash(normalize_question(question))


def canonical_json(payload: Any) -> str:
    # Sorted keys and fixed separators so equal structures hash equally.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def schema_hash(schema_payload: dict[str, Any]) -> str:
    return content_hash(canonical_json(schema_payload))
