from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import re
from typing import Any, Protocol

from langgraph.graph import END, StateGraph

from insightgate.agent.prompts import build_query_prompt, build_repair_prompt
from insightgate.agent.rewrite import (
    apply_dialect_rules,
    find_enum_mismatches,
    relax_query,
)
from insightgate.agent.validation import strip_code_fences, validate_query
from insightgate.core.errors import (
    InsightGateError,
    ProviderConfigError,
    ProviderError,
    QueryExecutionFailed,
    QueryGenerationFailed,
    UnsafeQuery,
)
from insightgate.domain.schema import ConnectionDescriptor, EngineTag, SchemaSnapshot
from insightgate.domain.state import SynthesisState
from insightgate.providers.llm.base import CompletionProvider
from insightgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Completion failures consume the repair cycle; none of these are retried.
_PROVIDER_ERRORS = (ProviderError, ProviderConfigError, asyncio.TimeoutError)

_WORD_RE = re.compile(r"[a-z0-9]+")
_NAME_PART_RE = re.compile(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])")
_FINANCIAL_MARKERS = ("amount", "price", "total", "revenue", "sales", "cost", "profit", "value")
_NUMERIC_TYPES = ("int", "numeric", "decimal", "float", "double", "real", "money", "number")


class QueryGateway(Protocol):
    async def execute_read_query(self, descriptor: ConnectionDescriptor, query_text: str) -> list[dict[str, Any]]:
        ...

    def probe_query(self, engine: EngineTag, table: str | None, *, limit: int) -> str | None:
        ...


@dataclass(frozen=True)
class SynthesisPolicy:
    relax_strategy: str = "drop"
    status_values: tuple[str, ...] = ()
    probe_limit: int = 10


@dataclass(frozen=True)
class SynthesisOutcome:
    query_text: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    relaxed: bool = False
    repaired: bool = False
    fallback: bool = False
    reason: str | None = None

    @property
    def cacheable(self) -> bool:
        # Probe results answer "what is in here", not the question.
        return not self.fallback


def _singular(word: str) -> str:
    return word[:-1] if len(word) > 3 and word.endswith("s") else word


def choose_probe_table(snapshot: SchemaSnapshot, question: str) -> str | None:
    """Pick the table most likely to answer the question, or None when nothing fits."""
    words = {_singular(word) for word in _WORD_RE.findall(question.lower())}
    best: tuple[int, int, str] | None = None
    for table in snapshot.tables:
        parts = {_singular(part.lower()) for part in _NAME_PART_RE.findall(table.name)}
        score = 10 * len(words & parts)
        if any(
            marker in column.name.lower() and any(kind in column.type.lower() for kind in _NUMERIC_TYPES)
            for column in table.columns
            for marker in _FINANCIAL_MARKERS
        ):
            score += 1
        if score == 0:
            continue
        candidate = (score, table.row_count or 0, table.name)
        if best is None or candidate[:2] > best[:2]:
            best = candidate
    return best[2] if best is not None else None


def build_graph(
    *,
    completion: CompletionProvider,
    gateway: QueryGateway,
    descriptor: ConnectionDescriptor,
    snapshot: SchemaSnapshot,
    policy: SynthesisPolicy,
):
    engine = snapshot.engine
    graph = StateGraph(SynthesisState)

    async def draft(state: SynthesisState) -> dict:
        prompt = build_query_prompt(snapshot, state["question"], state.get("conversation_context"))
        try:
            text = await completion.complete(prompt)
        except _PROVIDER_ERRORS as exc:
            logger.warning("synthesis_draft_provider_failed engine=%s error=%s", engine.value, type(exc).__name__)
            return {"prompt": prompt, "draft": None, "error": str(exc), "repaired": True, "provider_failed": True}
        return {"prompt": prompt, "draft": strip_code_fences(text), "provider_failed": False}

    async def validate(state: SynthesisState) -> dict:
        try:
            query = validate_query(state.get("draft"), engine)
            rewritten = apply_dialect_rules(query, engine, snapshot)
            if rewritten != query:
                query = validate_query(rewritten, engine)
        except UnsafeQuery as exc:
            increment_counter("synthesis_unsafe_total")
            logger.warning(
                "synthesis_validation_rejected engine=%s mutation=%s reason=%s",
                engine.value,
                exc.mutation,
                exc,
            )
            return {
                "query": None,
                "error": str(exc),
                "failed_query": state.get("draft"),
                "unsafe_mutation": exc.mutation,
            }
        return {"query": query, "error": None, "unsafe_mutation": False}

    async def execute(state: SynthesisState) -> dict:
        try:
            rows = await gateway.execute_read_query(descriptor, state["query"])
        except QueryExecutionFailed as exc:
            logger.info("synthesis_execution_failed engine=%s", engine.value)
            return {"rows": None, "error": exc.detail or str(exc), "failed_query": state["query"]}
        return {"rows": rows, "error": None}

    async def relax(state: SynthesisState) -> dict:
        query = state["query"]
        relaxed = relax_query(
            query,
            engine,
            strategy=policy.relax_strategy,
            status_values=policy.status_values,
            snapshot=snapshot,
        )
        if relaxed == query:
            return {"reason": "no_data"}
        try:
            relaxed = validate_query(relaxed, engine)
            rows = await gateway.execute_read_query(descriptor, relaxed)
        except (UnsafeQuery, QueryExecutionFailed) as exc:
            logger.info("synthesis_relaxation_failed engine=%s error=%s", engine.value, type(exc).__name__)
            return {"reason": "no_data"}
        if not rows:
            return {"reason": "no_data"}
        increment_counter("synthesis_relaxed_total")
        return {"query": relaxed, "rows": rows, "relaxed": True, "reason": "relaxed_filters"}

    async def repair(state: SynthesisState) -> dict:
        increment_counter("synthesis_repairs_total")
        failed_query = state.get("failed_query")
        mismatches = find_enum_mismatches(failed_query, snapshot) if failed_query else []
        if mismatches:
            # Surface the allowed labels to the model instead of substituting one.
            logger.warning(
                "synthesis_enum_mismatch engine=%s columns=%s",
                engine.value,
                ",".join(sorted({item.column for item in mismatches})),
            )
        prompt = build_repair_prompt(
            state["prompt"],
            state.get("error") or "",
            engine,
            previous_query=failed_query,
            enum_mismatches=mismatches,
            status_values=policy.status_values,
        )
        try:
            text = await completion.complete(prompt)
        except _PROVIDER_ERRORS as exc:
            logger.warning("synthesis_repair_provider_failed engine=%s error=%s", engine.value, type(exc).__name__)
            return {"repaired": True, "provider_failed": True, "draft": None}
        return {"repaired": True, "draft": strip_code_fences(text)}

    async def fallback(state: SynthesisState) -> dict:
        increment_counter("synthesis_fallback_total")
        table = choose_probe_table(snapshot, state["question"])
        probe = gateway.probe_query(engine, table, limit=policy.probe_limit)
        if probe is None:
            raise QueryGenerationFailed(
                "Query generation failed",
                detail=state.get("error") or "no fallback probe available",
            )
        try:
            probe = validate_query(probe, engine)
            rows = await gateway.execute_read_query(descriptor, probe)
        except (UnsafeQuery, QueryExecutionFailed) as exc:
            raise QueryGenerationFailed("Query generation failed", detail=str(exc)) from exc
        logger.info("synthesis_fallback_probe engine=%s table=%s", engine.value, table or "-")
        return {"query": probe, "rows": rows, "fallback": True, "reason": "fallback_probe"}

    def after_draft(state: SynthesisState) -> str:
        return "fallback" if state.get("provider_failed") else "validate"

    def after_validate(state: SynthesisState) -> str:
        if state.get("query"):
            return "execute"
        if not state.get("repaired"):
            return "repair"
        # A repaired draft that still mutates is refused outright, without probing.
        if state.get("unsafe_mutation"):
            return "end"
        return "fallback"

    def after_execute(state: SynthesisState) -> str:
        rows = state.get("rows")
        if rows is None:
            return "fallback" if state.get("repaired") else "repair"
        if not rows:
            return "relax"
        return "end"

    def after_repair(state: SynthesisState) -> str:
        return "fallback" if state.get("provider_failed") else "validate"

    graph.add_node("draft", draft)
    graph.add_node("validate", validate)
    graph.add_node("execute", execute)
    graph.add_node("relax", relax)
    graph.add_node("repair", repair)
    graph.add_node("fallback", fallback)

    graph.set_entry_point("draft")
    graph.add_conditional_edges("draft", after_draft, {"validate": "validate", "fallback": "fallback"})
    graph.add_conditional_edges(
        "validate",
        after_validate,
        {"execute": "execute", "repair": "repair", "fallback": "fallback", "end": END},
    )
    graph.add_conditional_edges(
        "execute",
        after_execute,
        {"relax": "relax", "repair": "repair", "fallback": "fallback", "end": END},
    )
    graph.add_conditional_edges("repair", after_repair, {"validate": "validate", "fallback": "fallback"})
    graph.add_edge("relax", END)
    graph.add_edge("fallback", END)

    return graph.compile()


class QuerySynthesizer:
    def __init__(
        self,
        *,
        completion: CompletionProvider,
        gateway: QueryGateway,
        policy: SynthesisPolicy | None = None,
    ) -> None:
        self._completion = completion
        self._gateway = gateway
        self._policy = policy or SynthesisPolicy()

    async def run(
        self,
        *,
        descriptor: ConnectionDescriptor,
        snapshot: SchemaSnapshot,
        question: str,
        conversation_context: str | None = None,
    ) -> SynthesisOutcome:
        graph = build_graph(
            completion=self._completion,
            gateway=self._gateway,
            descriptor=descriptor,
            snapshot=snapshot,
            policy=self._policy,
        )
        initial: SynthesisState = {
            "question": question,
            "conversation_context": conversation_context,
            "repaired": False,
            "relaxed": False,
            "fallback": False,
        }
        try:
            final = await graph.ainvoke(initial)
        except InsightGateError:
            raise
        except Exception as exc:  # noqa: BLE001 - never leak raw driver/provider errors
            logger.exception("synthesis_unexpected_error engine=%s", snapshot.engine.value)
            raise QueryGenerationFailed("Query generation failed", detail=type(exc).__name__) from exc

        query = final.get("query")
        rows = final.get("rows")
        if query is None and final.get("unsafe_mutation"):
            raise UnsafeQuery("Generated query was rejected", detail=final.get("error"), mutation=True)
        if query is None or rows is None:
            raise QueryGenerationFailed("Query generation failed", detail=final.get("error"))
        return SynthesisOutcome(
            query_text=query,
            rows=rows,
            relaxed=bool(final.get("relaxed")),
            repaired=bool(final.get("repaired")) and not final.get("provider_failed"),
            fallback=bool(final.get("fallback")),
            reason=final.get("reason"),
        )
