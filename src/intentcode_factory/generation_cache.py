from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .canonical import prompt_hash
from .models import GenerationRecord, GraphNode
from .state_store import GraphStateStore

logger = logging.getLogger(__name__)


class GenerationCache:
    """Validated generative outputs keyed by ``(derived node, tool, prompt hash)``.

    The prompt hash only indexes the record: a lookup succeeds only when the
    stored prompt text equals the prompt being asked about. Each node keeps at
    most ``history_limit`` records per tool, oldest pruned first.
    """

    def __init__(self, state_store: GraphStateStore, *, history_limit: int = 5) -> None:
        if history_limit < 1:
            raise ValueError(f"history_limit must be >= 1, got: {history_limit}")
        self.state_store = state_store
        self.history_limit = history_limit
        self._locks_guard = threading.Lock()
        self._node_locks: dict[str, threading.Lock] = {}

    @contextmanager
    def node_lock(self, node_id: str) -> Iterator[None]:
        """Serialize lookup-then-store for one node across worker threads."""
        with self._locks_guard:
            lock = self._node_locks.setdefault(node_id, threading.Lock())
        with lock:
            yield

    def lookup(self, node: GraphNode, tool_id: str, prompt: str) -> GenerationRecord | None:
        """Return the record for this exact prompt, or None on a miss."""
        record = self.state_store.find_generation(node.id, tool_id, prompt_hash(prompt))
        if record is None:
            logger.debug("Cache miss for %r (%s)", node.name, tool_id)
            return None
        if record.prompt != prompt:
            logger.warning("Cache record for %r (%s) matched by hash but not by prompt text", node.name, tool_id)
            return None
        logger.debug("Cache hit for %r (%s)", node.name, tool_id)
        return record

    def store(
        self,
        node: GraphNode,
        tool_id: str,
        prompt: str,
        output_text: str,
        json_output: dict[str, Any] | None,
    ) -> GenerationRecord:
        """Upsert the record for this prompt and prune older history of the same tool."""
        with self.state_store.transaction():
            record = self.state_store.upsert_generation(
                GenerationRecord(
                    node_id=node.id,
                    tool_id=tool_id,
                    prompt_hash=prompt_hash(prompt),
                    prompt=prompt,
                    content=output_text,
                    json_content=json_output,
                )
            )
            self._prune(node, tool_id, keep_id=record.id)
        return record

    def delete(self, node: GraphNode, tool_id: str, prompt: str) -> bool:
        record = self.state_store.find_generation(node.id, tool_id, prompt_hash(prompt))
        if record is None:
            return False
        self.state_store.delete_generation(record.id)
        return True

    def history(self, node: GraphNode, tool_id: str | None = None) -> list[GenerationRecord]:
        return self.state_store.generations_for(node.id, tool_id)

    def invalidate(self, node: GraphNode) -> int:
        """Drop every record of *node*, so its next lookup misses."""
        records = self.state_store.generations_for(node.id)
        with self.state_store.transaction():
            for record in records:
                self.state_store.delete_generation(record.id)
        if records:
            logger.info("Invalidated %d cached generation(s) for %r", len(records), node.name)
        return len(records)

    def _prune(self, node: GraphNode, tool_id: str, *, keep_id: str) -> None:
        records = [record for record in self.state_store.generations_for(node.id, tool_id) if record.id != keep_id]
        excess = len(records) + 1 - self.history_limit
        for record in records[: max(excess, 0)]:
            self.state_store.delete_generation(record.id)
