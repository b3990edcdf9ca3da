"""Run-time types shared by the engine, executors and subflows."""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from flowforge.graph.cancellation import CancellationToken

if TYPE_CHECKING:
    from flowforge.runtime.event_bus import ExecutionEvent

# Reserved input key under which error-resilient nodes receive upstream failures
UPSTREAM_ERRORS_KEY = "__upstream_errors"


class NodeStatus(StrEnum):
    """Lifecycle of a single node within one run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCESS, NodeStatus.ERROR, NodeStatus.SKIPPED)


class RunStatus(StrEnum):
    """Overall status of a run."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class ErrorMode(StrEnum):
    """How a terminal node failure affects the rest of the run."""

    STOP_ALL = "stop-all"  # Abort the run, then give error-resilient nodes a chance
    SKIP_AND_CONTINUE = "skip-and-continue"  # Skip descendants, keep scheduling others


@dataclass
class ExecutionContext:
    """Everything an executor receives for one invocation."""

    node_id: str
    node_type: str
    config: dict[str, Any]
    inputs: dict[str, Any]
    token: CancellationToken = field(default_factory=CancellationToken)
    depth: int = 0

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled


@dataclass
class ExecutionResult:
    """What an executor returns."""

    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    # Merged into the node's config after success (e.g. a cached preview)
    config_update: dict[str, Any] | None = None


@dataclass
class UpstreamError:
    """A failed dependency, as injected into an error-resilient node."""

    node_id: str
    node_type: str
    error: str
    started_at: float | None = None
    ended_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "error": self.error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


@dataclass
class NodeState:
    """State of one node in one run. Only the task running the node writes it."""

    status: NodeStatus = NodeStatus.PENDING
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    started_at: float | None = None
    ended_at: float | None = None
    attempts: int = 0

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def start(self) -> None:
        self.status = NodeStatus.RUNNING
        self.started_at = time.time()

    def finish(
        self,
        status: NodeStatus,
        outputs: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if self.started_at is None:
            self.started_at = time.time()
        self.status = status
        self.outputs = outputs or {}
        self.error = error
        self.ended_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "outputs": self.outputs,
            "error": self.error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "attempts": self.attempts,
        }


@dataclass
class ExecutionState:
    """Result of one ``execute()`` call."""

    run_id: str = ""
    status: RunStatus = RunStatus.IDLE
    node_states: dict[str, NodeState] = field(default_factory=dict)
    started_at: float | None = None
    ended_at: float | None = None
    error: str | None = None  # Run-level message (abort reason)
    failed_node_id: str | None = None  # Node whose failure stopped the run

    def get(self, node_id: str) -> NodeState | None:
        return self.node_states.get(node_id)

    def outputs(self, node_id: str) -> dict[str, Any] | None:
        state = self.node_states.get(node_id)
        return state.outputs if state else None

    def with_status(self, *statuses: NodeStatus) -> list[str]:
        return [nid for nid, state in self.node_states.items() if state.status in statuses]

    def succeeded(self) -> list[str]:
        return self.with_status(NodeStatus.SUCCESS)

    def failed(self) -> list[str]:
        return self.with_status(NodeStatus.ERROR)

    def skipped(self) -> list[str]:
        return self.with_status(NodeStatus.SKIPPED)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "error": self.error,
            "failed_node_id": self.failed_node_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "nodes": {nid: state.to_dict() for nid, state in self.node_states.items()},
        }


class RetryConfig(BaseModel):
    """Retry policy for a node type. ``max_attempts=1`` means no retries."""

    max_attempts: int = Field(default=1, ge=1)
    base_delay: float = Field(default=1.0, ge=0, description="Seconds before the first retry")
    backoff_multiplier: float = Field(default=2.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Backoff after failed ``attempt`` (1-based): base * multiplier^(attempt-1)."""
        return self.base_delay * self.backoff_multiplier ** (attempt - 1)

    def merged(self, override: "RetryOverride | dict[str, Any] | None") -> "RetryConfig":
        """Apply a partial per-type override on top of this policy."""
        if override is None:
            return self
        if isinstance(override, dict):
            override = RetryOverride(**override)
        return self.model_copy(update=override.model_dump(exclude_none=True))


class RetryOverride(BaseModel):
    """Partial retry policy; unset fields fall back to the default policy."""

    max_attempts: int | None = Field(default=None, ge=1)
    base_delay: float | None = Field(default=None, ge=0)
    backoff_multiplier: float | None = Field(default=None, ge=0)


EventCallback = Callable[["ExecutionEvent"], Awaitable[None] | None]


@dataclass
class ExecutionOptions:
    """
    Options for one ``execute()`` call.

    Timeouts are in seconds; 0 means unbounded.
    """

    on_event: EventCallback | None = None
    token: CancellationToken | None = None
    default_timeout: float = 0.0
    timeouts: dict[str, float] = field(default_factory=dict)
    default_retry: RetryConfig = field(default_factory=RetryConfig)
    retries: dict[str, RetryOverride | dict[str, Any]] = field(default_factory=dict)
    error_mode: ErrorMode = ErrorMode.STOP_ALL
    skip_validation: bool = False
    depth: int = 0

    def retry_for(self, node_type: str) -> RetryConfig:
        return self.default_retry.merged(self.retries.get(node_type))

    def timeout_for(self, node_type: str) -> float:
        return self.timeouts.get(node_type, self.default_timeout)
