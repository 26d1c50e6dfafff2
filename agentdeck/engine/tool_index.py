"""Tool correlation index.

Maps tool invocation ids to their inputs and results, and resolves the
nested output of sub-agents reported through the agent-output tool
(two hops: tool_use id → agentId, then tool_result → agentId → output).

Always rebuilt from a full ledger snapshot, never patched
incrementally, so the result does not depend on the order in which
unrelated entries arrived. Duplicate tool ids resolve last-write-wins
in scan order.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from agentdeck.adapters.events import StreamEvent, ToolResultBlock
from agentdeck.engine.config import DEFAULT_AGENT_OUTPUT_TOOL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolInvocation:
    tool_name: str
    input: Mapping[str, Any]


@dataclass(frozen=True)
class ToolCorrelation:
    """Read-only correlation maps for the render collaborator."""
    invocations: Mapping[str, ToolInvocation] = field(
        default_factory=lambda: MappingProxyType({})
    )
    results: Mapping[str, ToolResultBlock] = field(
        default_factory=lambda: MappingProxyType({})
    )
    agent_outputs: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @property
    def unlinked_result_ids(self) -> frozenset[str]:
        """Results whose tool_use has not been seen (yet)."""
        return frozenset(k for k in self.results if k not in self.invocations)

    def result_for(self, tool_use_id: str) -> ToolResultBlock | None:
        return self.results.get(tool_use_id)

    def invocation_for(self, tool_use_id: str) -> ToolInvocation | None:
        return self.invocations.get(tool_use_id)


def _result_text(content: Any) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text = item.get("text")
                return text if isinstance(text, str) else None
    return None


def _parse_agent_output(entry: StreamEvent, block: ToolResultBlock) -> Any:
    # History files carry the structured result next to the message;
    # live streams only have it as JSON text inside the block.
    structured = entry.extra.get("toolUseResult")
    if structured:
        return structured
    text = _result_text(block.content)
    if not text:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Agent output for %s is not JSON; leaving unresolved", block.tool_use_id)
        return None


def build_tool_correlation(
    entries: Iterable[StreamEvent],
    agent_output_tool: str = DEFAULT_AGENT_OUTPUT_TOOL,
) -> ToolCorrelation:
    snapshot = list(entries)
    invocations: dict[str, ToolInvocation] = {}
    agent_ids: dict[str, str] = {}

    # Pass 1: invocations, and tool_use id → agentId for the agent-output tool
    for entry in snapshot:
        if entry.type != "assistant":
            continue
        for use in entry.tool_uses():
            if not use.id:
                continue
            invocations[use.id] = ToolInvocation(
                tool_name=use.name, input=MappingProxyType(dict(use.input)),
            )
            if use.name == agent_output_tool:
                agent_id = use.input.get("agentId")
                if agent_id:
                    agent_ids[use.id] = str(agent_id)

    # Pass 2: results, and agentId → nested output
    results: dict[str, ToolResultBlock] = {}
    agent_outputs: dict[str, Any] = {}
    for entry in snapshot:
        if entry.type != "user":
            continue
        for block in entry.tool_results():
            if not block.tool_use_id:
                continue
            results[block.tool_use_id] = block
            agent_id = agent_ids.get(block.tool_use_id)
            if agent_id is None:
                continue
            output = _parse_agent_output(entry, block)
            if output is not None:
                agent_outputs[agent_id] = output

    return ToolCorrelation(
        invocations=MappingProxyType(invocations),
        results=MappingProxyType(results),
        agent_outputs=MappingProxyType(agent_outputs),
    )
