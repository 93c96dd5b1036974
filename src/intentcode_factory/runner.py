from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Generic, Sequence, TypeVar

from .errors import BuildCancelledError, GenerationFailedError, ResultValidationError
from .generation_cache import GenerationCache
from .graph import GraphStore
from .llm import ChatTurn, GenerativeEndpoint, ToolConfig, extract_json_payload, normalize_structured_output
from .messages import surface_diagnostics
from .models import GenerationRecord, GraphNode, StageResult
from .utils import file_modified_time

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=StageResult)

MAX_GENERATION_ATTEMPTS = 5


class CancellationToken:
    """Cooperative cancellation flag shared by the orchestrator and the runner."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str) -> None:
        if self._event.is_set():
            raise BuildCancelledError(f"Build cancelled {where}")


@dataclass(frozen=True)
class AttemptSuccess(Generic[ResultT]):
    output_text: str
    result: ResultT


@dataclass(frozen=True)
class AttemptFailure:
    reason: str


@dataclass
class TransformationUnit(Generic[ResultT]):
    """One unit of work for a stage: a spec file, an intent file or the tech-stack declaration.

    Attributes:
        label: Human-readable name used in logs and errors.
        tool: Tool identity and call settings; ``tool.tool_id`` is part of the cache key.
        role_context: Role primer sent ahead of the prompt.
        build_prompt: Builds the prompt from current state.
        resolve_node: Returns (creating if needed) the derived-data node the cache is scoped to.
        schema: Pydantic result type validated at the response boundary.
        apply: Writes artifacts and updates the graph and dependencies for a validated result.
        validate: Stage-specific checks; raises ``ResultValidationError`` to reject a result.
        source_path: Input file whose modification time decides whether cached output is stale.
    """

    label: str
    tool: ToolConfig
    role_context: str
    build_prompt: Callable[[], str]
    resolve_node: Callable[[], GraphNode]
    schema: type[ResultT]
    apply: Callable[[ResultT], None]
    validate: Callable[[ResultT], None] | None = None
    source_path: Path | None = None


@dataclass(frozen=True)
class UnitOutcome(Generic[ResultT]):
    label: str
    result: ResultT
    cache_hit: bool
    attempts: int


class TransformationRunner:
    """Turns a unit of work into a cached, validated result and applies it.

    Cache lookup first; on a miss, up to ``MAX_GENERATION_ATTEMPTS`` calls of
    the pure :meth:`attempt`; the cache record is written only on success.
    Side effects run next, and model-reported diagnostics are surfaced last.
    """

    def __init__(
        self,
        *,
        graph: GraphStore,
        cache: GenerationCache,
        endpoint: GenerativeEndpoint,
        cancel_token: CancellationToken | None = None,
        max_concurrency: int = 1,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got: {max_concurrency}")
        self.graph = graph
        self.cache = cache
        self.endpoint = endpoint
        self.cancel_token = cancel_token if cancel_token is not None else CancellationToken()
        self.max_concurrency = max_concurrency

    def attempt(self, unit: TransformationUnit[ResultT], prompt: str) -> AttemptSuccess[ResultT] | AttemptFailure:
        """Make one generative call and validate the reply. Touches no state."""
        try:
            messages = self.endpoint.prepare_messages(unit.tool, unit.role_context, [ChatTurn(role="user", text=prompt)])
            reply = self.endpoint.send(messages)
        except Exception as exc:  # noqa: BLE001 - transport errors and timeouts count against the attempt budget.
            return AttemptFailure(f"endpoint call failed: {exc!r}")
        if reply.status != "ok":
            return AttemptFailure(f"endpoint returned status {reply.status!r}: {reply.error or 'no details'}")

        output_text = "\n".join(reply.reply_texts).strip()
        try:
            payload = extract_json_payload(output_text)
            result = normalize_structured_output(raw_output=payload, schema=unit.schema)
            if unit.validate is not None:
                unit.validate(result)
        except (RuntimeError, ResultValidationError) as exc:
            return AttemptFailure(str(exc))
        return AttemptSuccess(output_text=output_text, result=result)

    def generate(self, unit: TransformationUnit[ResultT], prompt: str) -> tuple[AttemptSuccess[ResultT], int]:
        """Call :meth:`attempt` until it succeeds or the budget runs out.

        Raises:
            GenerationFailedError: After ``MAX_GENERATION_ATTEMPTS`` failures.
            BuildCancelledError: If the build is cancelled between attempts.
        """
        reasons: list[str] = []
        for attempt_no in range(1, MAX_GENERATION_ATTEMPTS + 1):
            self.cancel_token.raise_if_cancelled(f"before attempt {attempt_no} of {unit.label}")
            outcome = self.attempt(unit, prompt)
            if isinstance(outcome, AttemptSuccess):
                return outcome, attempt_no
            reasons.append(outcome.reason)
            logger.warning(
                "%s: attempt %d/%d failed: %s",
                unit.label,
                attempt_no,
                MAX_GENERATION_ATTEMPTS,
                outcome.reason,
            )
        logger.error("%s: giving up after %d attempts", unit.label, MAX_GENERATION_ATTEMPTS)
        raise GenerationFailedError(unit.label, MAX_GENERATION_ATTEMPTS, reasons)

    def run(self, unit: TransformationUnit[ResultT]) -> UnitOutcome[ResultT]:
        """Run one unit of work end to end.

        Raises:
            GenerationFailedError: If no attempt produced a valid result.
            DiagnosticsError: If the result carries error diagnostics (after it was applied).
            BuildCancelledError: If the build was cancelled.
        """
        self.cancel_token.raise_if_cancelled(f"before {unit.label}")
        prompt = unit.build_prompt()
        source_mtime = file_modified_time(unit.source_path) if unit.source_path is not None else None
        node = unit.resolve_node()

        with self.cache.node_lock(node.id):
            result: ResultT | None = None
            attempts = 0
            if self._is_stale(node, source_mtime):
                logger.debug("%s: input changed since last run, ignoring cached output", unit.label)
            else:
                result = self._cached_result(unit, self.cache.lookup(node, unit.tool.tool_id, prompt))
            cache_hit = result is not None
            if result is None:
                logger.info("%s: generating with %s", unit.label, unit.tool.tool_id)
                success, attempts = self.generate(unit, prompt)
                result = success.result
                self.cache.store(
                    node,
                    unit.tool.tool_id,
                    prompt,
                    success.output_text,
                    result.model_dump(mode="json", by_alias=True),
                )

        unit.apply(result)
        if source_mtime is not None:
            self.graph.set_content(node, content_updated=source_mtime)
        surface_diagnostics(unit.label, result)
        return UnitOutcome(label=unit.label, result=result, cache_hit=cache_hit, attempts=attempts)

    def run_all(self, units: Sequence[TransformationUnit[ResultT]]) -> list[UnitOutcome[ResultT]]:
        """Run units in order, or on a bounded thread pool when ``max_concurrency > 1``.

        The first failure cancels the remaining units and is re-raised.
        """
        if self.max_concurrency == 1 or len(units) <= 1:
            return [self.run(unit) for unit in units]

        outcomes: list[UnitOutcome[ResultT]] = []
        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="intentcode-unit") as executor:
            futures = [executor.submit(self.run, unit) for unit in units]
            try:
                for future in futures:
                    outcomes.append(future.result())
            except BaseException:
                self.cancel_token.cancel()
                for future in futures:
                    future.cancel()
                raise
        return outcomes

    @staticmethod
    def _is_stale(node: GraphNode, source_mtime: datetime | None) -> bool:
        if source_mtime is None:
            return False
        return node.content_updated is None or source_mtime > node.content_updated

    def _cached_result(
        self,
        unit: TransformationUnit[ResultT],
        record: GenerationRecord | None,
    ) -> ResultT | None:
        if record is None or record.json_content is None:
            return None
        try:
            result = normalize_structured_output(raw_output=record.json_content, schema=unit.schema)
            if unit.validate is not None:
                unit.validate(result)
        except (RuntimeError, ResultValidationError) as exc:
            logger.info("%s: cached output no longer validates (%s), regenerating", unit.label, exc)
            return None
        return result
