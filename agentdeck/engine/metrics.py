"""Per-session counters fed from the event stream and user operations."""
from __future__ import annotations

import time
from dataclasses import dataclass, field

from agentdeck.adapters.events import StreamEvent, TextBlock


@dataclass
class ModelChange:
    from_model: str
    to_model: str
    timestamp: float


@dataclass
class SessionMetrics:
    """Lightweight counters for one conversation."""

    was_resumed: bool = False
    default_model: str = "sonnet"
    started_at: float = field(default_factory=time.time)
    first_message_time: float | None = None
    last_activity_time: float = field(default_factory=time.time)
    prompts_sent: int = 0
    tools_executed: int = 0
    tools_failed: int = 0
    files_created: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    code_blocks_generated: int = 0
    errors_encountered: int = 0
    model_changes: list[ModelChange] = field(default_factory=list)
    last_model: str | None = None

    @property
    def current_model(self) -> str | None:
        return self.last_model

    def track_prompt_sent(self, model: str) -> None:
        now = time.time()
        self.prompts_sent += 1
        self.last_activity_time = now
        if self.first_message_time is None:
            self.first_message_time = now
        previous = self.last_model
        if previous is None:
            # A resumed session was started with the default model
            previous = self.default_model if self.was_resumed else model
        if previous != model:
            self.track_model_change(previous, model)
        self.last_model = model

    def track_model_change(self, from_model: str, to_model: str) -> None:
        self.model_changes.append(ModelChange(from_model, to_model, time.time()))

    def track_tool_execution(self, tool_name: str) -> None:
        self.tools_executed += 1
        self.last_activity_time = time.time()
        name = tool_name.lower()
        if "create" in name or "write" in name:
            self.track_file_operation("create")
        elif "edit" in name or "search_replace" in name:
            self.track_file_operation("modify")
        elif "delete" in name:
            self.track_file_operation("delete")

    def track_tool_failure(self) -> None:
        self.tools_failed += 1
        self.errors_encountered += 1

    def track_file_operation(self, operation: str) -> None:
        if operation == "create":
            self.files_created += 1
        elif operation == "modify":
            self.files_modified += 1
        elif operation == "delete":
            self.files_deleted += 1

    def track_code_blocks(self, count: int = 1) -> None:
        self.code_blocks_generated += count

    def track_error(self) -> None:
        self.errors_encountered += 1

    def observe(self, event: StreamEvent) -> None:
        """Update counters from one complete (non-delta) stream event."""
        if event.type == "assistant":
            for use in event.tool_uses():
                self.track_tool_execution(use.name)
            for block in event.content:
                if isinstance(block, TextBlock) and "```" in block.text:
                    self.track_code_blocks(block.text.count("```") // 2)
        elif event.type == "user":
            for result in event.tool_results():
                if result.is_error:
                    self.track_tool_failure()
        elif event.type == "system" and (event.subtype == "error" or event.extra.get("error")):
            self.track_error()

    def reset(self) -> None:
        fresh = SessionMetrics(default_model=self.default_model)
        self.__dict__.update(fresh.__dict__)

    def snapshot(self) -> dict[str, object]:
        now = time.time()
        return {
            "prompts_sent": self.prompts_sent,
            "tools_executed": self.tools_executed,
            "tools_failed": self.tools_failed,
            "files_created": self.files_created,
            "files_modified": self.files_modified,
            "files_deleted": self.files_deleted,
            "code_blocks_generated": self.code_blocks_generated,
            "errors_encountered": self.errors_encountered,
            "model": self.current_model,
            "was_resumed": self.was_resumed,
            "duration_seconds": round(now - self.started_at, 3),
            "idle_seconds": round(now - self.last_activity_time, 3),
        }
