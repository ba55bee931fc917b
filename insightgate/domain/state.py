from __future__ import annotations

from typing import Any, Optional, TypedDict


class SynthesisState(TypedDict, total=False):
    question: str
    conversation_context: Optional[str]
    prompt: str
    draft: Optional[str]
    query: Optional[str]
    rows: Optional[list[dict[str, Any]]]
    error: Optional[str]
    failed_query: Optional[str]
    # Set once the single repair cycle has been used (or consumed by a provider failure).
    repaired: bool
    provider_failed: bool
    unsafe_mutation: bool
    relaxed: bool
    fallback: bool
    reason: Optional[str]
