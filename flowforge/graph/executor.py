"""
Execution Engine - Runs flows.

The engine:
1. Checks the flow statically (structure, known node types, no cycles)
2. Groups nodes into dependency levels
3. Runs each level's nodes concurrently, wiring producer outputs into inputs
4. Wraps every invocation in timeout + retry with exponential backoff
5. Applies the run's error mode when a node fails for good
6. Streams events and returns the final ExecutionState

Only configuration errors escape ``execute()``; every node-level failure
ends up in that node's state and in the emitted events.
"""

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from flowforge.graph.analyzer import dependencies, levels
from flowforge.graph.cancellation import CancellationToken
from flowforge.graph.edge import Edge, FlowGraph, port_conflicts, validate_structure
from flowforge.graph.errors import (
    CancellationError,
    ConfigurationError,
    ExecutorError,
    NodeTimeoutError,
    UnknownNodeTypeError,
    ValidationError,
    is_retryable,
)
from flowforge.graph.node import Node, NodeTypeRegistry
from flowforge.graph.registry import ExecutorRegistry, NodeExecutor
from flowforge.graph.types import (
    UPSTREAM_ERRORS_KEY,
    ErrorMode,
    ExecutionContext,
    ExecutionOptions,
    ExecutionResult,
    ExecutionState,
    NodeState,
    NodeStatus,
    RunStatus,
    UpstreamError,
)
from flowforge.graph.values import kind_of, matches_kind
from flowforge.observability import set_trace_context
from flowforge.runtime.event_bus import ExecutionEvent, ExecutionEventType, dispatch_event


class _NodeFailed(Exception):
    """A node reached a terminal error. Internal to the engine."""

    def __init__(self, node_id: str, error: str):
        self.node_id = node_id
        self.error = error
        super().__init__(error)


@dataclass
class _Run:
    """Per-run bookkeeping, owned by a single execute() call."""

    state: ExecutionState
    nodes: dict[str, Node]
    edges: list[Edge]
    levels: list[list[str]]
    options: ExecutionOptions
    # Cancelled by the caller's token or abort(); observed everywhere
    cancel_token: CancellationToken
    # Child of cancel_token; cancelled additionally when stop-all aborts the run
    scope: CancellationToken
    incoming: dict[str, list[Edge]] = field(default_factory=dict)
    failed: set[str] = field(default_factory=set)  # error or skipped


class ExecutionEngine:
    """
    Executes flows.

    Example:
        executors, node_types = create_default_registries()
        engine = ExecutionEngine(executors, node_types)

        state = await engine.execute(
            nodes=graph.nodes,
            edges=graph.edges,
            options=ExecutionOptions(error_mode=ErrorMode.SKIP_AND_CONTINUE),
        )

    One engine services one run at a time; use separate engines for
    concurrent runs.
    """

    def __init__(
        self,
        executors: ExecutorRegistry,
        node_types: NodeTypeRegistry | None = None,
    ):
        """
        Initialize the engine.

        Args:
            executors: Executor lookup by node type
            node_types: Node type metadata used for input validation and
                error-resilience decisions
        """
        self.executors = executors
        self.node_types = node_types or NodeTypeRegistry()
        self.logger = logging.getLogger(__name__)
        self._state = ExecutionState()
        self._cancel_token: CancellationToken | None = None
        self._running = False

    @property
    def state(self) -> ExecutionState:
        """State of the current (or most recent) run."""
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    def get_node_outputs(self, node_id: str) -> dict[str, Any] | None:
        return self._state.outputs(node_id)

    def abort(self, reason: str = "Execution aborted") -> None:
        """Cancel the current run. Safe to call when nothing is running."""
        if self._cancel_token is not None:
            self._cancel_token.cancel(reason)

    # ------------------------------------------------------------------
    # Static checks
    # ------------------------------------------------------------------

    def check(self, nodes: list[Node], edges: list[Edge]) -> list[list[str]]:
        """
        Run the pre-execution configuration checks.

        Returns:
            The dependency levels of the flow

        Raises:
            ConfigurationError: Malformed graph, unknown node type or cycle
        """
        problems = validate_structure(nodes, edges)
        if problems:
            raise ConfigurationError("; ".join(problems))

        for conflict in port_conflicts(edges):
            self.logger.warning(f"{conflict}; the last edge wins")

        for node in nodes:
            if not self.executors.has(node.type):
                raise UnknownNodeTypeError(node.type, node.id)

        return levels(nodes, edges)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute(
        self,
        nodes: list[Node],
        edges: list[Edge],
        options: ExecutionOptions | None = None,
    ) -> ExecutionState:
        """
        Execute a flow.

        Args:
            nodes: Nodes to run. Their ``data`` may be updated in place by
                executors returning a config update.
            edges: Port wiring between the nodes
            options: Events, cancellation, timeouts, retries, error mode

        Returns:
            ExecutionState with the final status and per-node states

        Raises:
            ConfigurationError: Before anything runs, if the flow is malformed
            RuntimeError: If this engine is already running a flow
        """
        if self._running:
            raise RuntimeError("ExecutionEngine is already running a flow; use one engine per run")

        options = options or ExecutionOptions()
        flow_levels = self.check(nodes, edges)

        root = options.token or CancellationToken()
        cancel_token = root.child()
        run = _Run(
            state=ExecutionState(
                run_id=uuid.uuid4().hex,
                status=RunStatus.RUNNING,
                node_states={node.id: NodeState() for node in nodes},
                started_at=time.time(),
            ),
            nodes={node.id: node for node in nodes},
            edges=list(edges),
            levels=flow_levels,
            options=options,
            cancel_token=cancel_token,
            scope=cancel_token.child(),
        )
        for edge in run.edges:
            run.incoming.setdefault(edge.target, []).append(edge)

        self._state = run.state
        self._cancel_token = cancel_token
        self._running = True
        try:
            # Own task, so trace context set for this run stays scoped to it
            await asyncio.create_task(self._run(run), name=f"flowforge-run-{run.state.run_id}")
        finally:
            self._running = False
            run.scope.close()
            cancel_token.close()

        return run.state

    async def _run(self, run: _Run) -> None:
        options = run.options
        set_trace_context(run_id=run.state.run_id, depth=options.depth)
        self.logger.info(
            f"▶ Run started: {len(run.nodes)} node(s) in {len(run.levels)} level(s), "
            f"error mode '{options.error_mode}'"
        )
        await self._emit(run, ExecutionEventType.START)

        abort_message: str | None = None
        try:
            for level in run.levels:
                run.cancel_token.raise_if_cancelled()
                await self._execute_level(level, run)

        except CancellationError as e:
            abort_message = str(e)
            self.logger.warning(f"⏹ Run cancelled: {abort_message}")

        except _NodeFailed as e:
            abort_message = f"Node '{e.node_id}' failed: {e.error}"
            run.state.failed_node_id = e.node_id
            self.logger.error(f"✗ Run stopped: {abort_message}")
            if not run.cancel_token.cancelled:
                await self._run_error_resilient_post_pass(run)

        state = run.state
        state.status = RunStatus.ERROR if abort_message or state.failed() else RunStatus.SUCCESS
        state.error = abort_message
        state.ended_at = time.time()

        elapsed = state.ended_at - (state.started_at or state.ended_at)
        if abort_message is not None:
            await self._emit(run, ExecutionEventType.ERROR, message=abort_message)
        else:
            self.logger.info(
                f"✓ Run finished with status '{state.status}': "
                f"{len(state.succeeded())} succeeded, {len(state.failed())} failed, "
                f"{len(state.skipped())} skipped ({elapsed:.3f}s)"
            )
            await self._emit(run, ExecutionEventType.COMPLETE, status=state.status.value)

    async def _execute_level(self, level: list[str], run: _Run) -> None:
        """Run one level's nodes concurrently and apply the error mode."""
        tasks = [
            asyncio.create_task(self._process_node(node_id, run), name=f"flowforge-node-{node_id}")
            for node_id in level
        ]

        try:
            if run.options.error_mode == ErrorMode.STOP_ALL:
                done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
                if pending:
                    failed_ids = [t.exception().node_id for t in done if _failed_node(t)]
                    reason = "Execution aborted"
                    if failed_ids:
                        reason = f"Execution aborted: node '{failed_ids[0]}' failed"
                    run.scope.cancel(reason)
                    await asyncio.gather(*pending, return_exceptions=True)
            else:
                await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            # The caller cancelled execute() itself
            run.cancel_token.cancel("Execution cancelled")
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        run.cancel_token.raise_if_cancelled()

        if run.options.error_mode == ErrorMode.STOP_ALL:
            # Report the failure that triggered the abort, not siblings it cancelled
            failures = [t.exception() for t in tasks if _failed_node(t)]
            if failures:
                raise failures[0]

    async def _process_node(self, node_id: str, run: _Run) -> None:
        """Decide between skip, error-resilient run and normal run for one node."""
        node = run.nodes[node_id]
        set_trace_context(node_id=node_id)
        run.scope.raise_if_cancelled()

        inputs = self._collect_inputs(node_id, run)
        validate = not run.options.skip_validation

        failed_deps = [dep for dep in dependencies(node_id, run.edges) if dep in run.failed]
        if failed_deps and run.options.error_mode == ErrorMode.SKIP_AND_CONTINUE:
            if self.node_types.is_error_resilient(node.type):
                inputs[UPSTREAM_ERRORS_KEY] = self._collect_upstream_errors(node_id, run)
                validate = False
            else:
                await self._skip_node(node, failed_deps, run)
                return

        await self._invoke(node, inputs, run, run.scope, validate=validate)

    async def _skip_node(self, node: Node, failed_deps: list[str], run: _Run) -> None:
        deps = ", ".join(dict.fromkeys(failed_deps))
        reason = f"Dependency failed: {deps}"
        run.state.node_states[node.id].finish(
            NodeStatus.SKIPPED, error=f"Skipped due to failed dependency ({deps})"
        )
        run.failed.add(node.id)
        self.logger.info(f"⤼ Skipping node '{node.id}': {reason}")
        await self._emit(run, ExecutionEventType.NODE_SKIPPED, node.id, reason=reason)

    async def _invoke(
        self,
        node: Node,
        inputs: dict[str, Any],
        run: _Run,
        parent_token: CancellationToken,
        validate: bool = True,
    ) -> None:
        """Run a node to a terminal state, recording it and emitting events."""
        state = run.state.node_states[node.id]
        state.start()
        await self._emit(run, ExecutionEventType.NODE_START, node.id)

        try:
            if validate:
                self._validate_inputs(node, inputs)

            executor = self.executors.get(node.type)
            if executor is None:
                raise UnknownNodeTypeError(node.type, node.id)

            result = await self._execute_with_retry(node, executor, inputs, run, parent_token, state)

        except Exception as e:
            error = str(e) or type(e).__name__
            state.finish(NodeStatus.ERROR, error=error)
            run.failed.add(node.id)
            self.logger.error(f"✗ Node '{node.id}' ({node.type}) failed: {error}")
            await self._emit(
                run,
                ExecutionEventType.NODE_ERROR,
                node.id,
                error=error,
                error_type=type(e).__name__,
            )
            if isinstance(e, CancellationError):
                raise
            raise _NodeFailed(node.id, error) from e

        state.finish(NodeStatus.SUCCESS, outputs=result.outputs)
        self.logger.debug(
            f"✓ Node '{node.id}' ({node.type}) succeeded in {state.duration or 0:.3f}s",
            extra={"node_type": node.type, "attempt": state.attempts},
        )

        if result.config_update:
            node.data.update(result.config_update)
            await self._emit(
                run, ExecutionEventType.NODE_DATA_UPDATE, node.id, data=result.config_update
            )

        await self._emit(run, ExecutionEventType.NODE_COMPLETE, node.id, outputs=result.outputs)

    async def _execute_with_retry(
        self,
        node: Node,
        executor: NodeExecutor,
        inputs: dict[str, Any],
        run: _Run,
        parent_token: CancellationToken,
        state: NodeState,
    ) -> ExecutionResult:
        """Attempt a node up to max_attempts times with exponential backoff."""
        policy = run.options.retry_for(node.type)
        timeout = run.options.timeout_for(node.type)

        for attempt in range(1, policy.max_attempts + 1):
            state.attempts = attempt
            try:
                return await self._call_executor(node, executor, inputs, run, parent_token, timeout)
            except Exception as e:
                if attempt >= policy.max_attempts or not is_retryable(e):
                    raise

                error = str(e) or type(e).__name__
                delay = policy.delay_for(attempt)
                self.logger.warning(
                    f"↻ Node '{node.id}' attempt {attempt}/{policy.max_attempts} failed: "
                    f"{error}; retrying in {delay:g}s",
                    extra={"node_type": node.type, "attempt": attempt},
                )
                await self._emit(
                    run,
                    ExecutionEventType.NODE_RETRY,
                    node.id,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    error=error,
                    delay=delay,
                )
                await parent_token.sleep(delay)

        # max_attempts >= 1, so the loop always returns or raises
        raise ExecutorError(f"Node '{node.id}' was not attempted")

    async def _call_executor(
        self,
        node: Node,
        executor: NodeExecutor,
        inputs: dict[str, Any],
        run: _Run,
        parent_token: CancellationToken,
        timeout: float,
    ) -> ExecutionResult:
        """One attempt under the node's own token and effective deadline."""
        node_token = parent_token.child()
        try:
            node_token.raise_if_cancelled()
            ctx = ExecutionContext(
                node_id=node.id,
                node_type=node.type,
                config=node.data,
                inputs=dict(inputs),
                token=node_token,
                depth=run.options.depth,
            )

            task = asyncio.ensure_future(_call(executor, ctx))
            waiter = asyncio.ensure_future(node_token.wait())
            try:
                done, _ = await asyncio.wait(
                    {task, waiter},
                    timeout=timeout if timeout > 0 else None,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            except asyncio.CancelledError:
                await _discard(task, waiter)
                raise

            if not done:
                node_token.cancel(f"Node execution timed out after {timeout:g}s")
                await _discard(task, waiter)
                raise NodeTimeoutError(timeout)

            if waiter in done:
                await _discard(task)
                raise CancellationError(node_token.reason)

            await _discard(waiter)
            if task.cancelled():
                # Neither the run nor the node was cancelled; the executor leaked a CancelledError
                raise ExecutorError("Node execution was cancelled unexpectedly")
            return _normalize_result(task.result())
        finally:
            node_token.close()

    # ------------------------------------------------------------------
    # Error-resilient post-pass (stop-all)
    # ------------------------------------------------------------------

    async def _run_error_resilient_post_pass(self, run: _Run) -> None:
        """Give unexecuted error-resilient nodes next to a failure a chance to run."""
        failed = {nid for nid, st in run.state.node_states.items() if st.status == NodeStatus.ERROR}

        for level in run.levels:
            for node_id in level:
                node = run.nodes[node_id]
                if run.state.node_states[node_id].status != NodeStatus.PENDING:
                    continue
                if not self.node_types.is_error_resilient(node.type):
                    continue
                if not any(dep in failed for dep in dependencies(node_id, run.edges)):
                    continue

                self.logger.info(f"Running error-resilient node '{node_id}' after abort")
                inputs = self._collect_inputs(node_id, run)
                inputs[UPSTREAM_ERRORS_KEY] = self._collect_upstream_errors(node_id, run)
                try:
                    await self._invoke(node, inputs, run, run.cancel_token, validate=False)
                except _NodeFailed:
                    failed.add(node_id)
                except CancellationError:
                    return

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def _collect_inputs(self, node_id: str, run: _Run) -> dict[str, Any]:
        """Read each incoming edge's value from its settled producer."""
        inputs: dict[str, Any] = {}
        for edge in run.incoming.get(node_id, []):
            source_state = run.state.node_states.get(edge.source)
            if source_state is None or source_state.status != NodeStatus.SUCCESS:
                continue
            if edge.source_port in source_state.outputs:
                inputs[edge.target_port] = source_state.outputs[edge.source_port]
        return inputs

    def _collect_upstream_errors(self, node_id: str, run: _Run) -> list[UpstreamError]:
        errors = []
        for dep in dict.fromkeys(dependencies(node_id, run.edges)):
            dep_state = run.state.node_states.get(dep)
            if dep_state is None or dep_state.status not in (NodeStatus.ERROR, NodeStatus.SKIPPED):
                continue
            errors.append(
                UpstreamError(
                    node_id=dep,
                    node_type=run.nodes[dep].type,
                    error=dep_state.error or "",
                    started_at=dep_state.started_at,
                    ended_at=dep_state.ended_at,
                )
            )
        return errors

    def _validate_inputs(self, node: Node, inputs: dict[str, Any]) -> None:
        """Check required ports are present and of their declared kind."""
        spec = self.node_types.get(node.type)
        if spec is None:
            return

        for port in spec.inputs:
            if not port.required:
                continue

            value = inputs.get(port.id)
            if value is None:
                raise ValidationError(
                    f"Missing required input '{port.label}' for node "
                    f"'{spec.title or spec.type}' ({node.id})",
                    node_id=node.id,
                    port=port.id,
                )
            if not matches_kind(value, port.kind):
                raise ValidationError(
                    f"Type mismatch for input '{port.label}': "
                    f"expected {port.kind}, got {kind_of(value)}",
                    node_id=node.id,
                    port=port.id,
                )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit(
        self,
        run: _Run,
        event_type: ExecutionEventType,
        node_id: str | None = None,
        **data: Any,
    ) -> None:
        on_event = run.options.on_event
        if on_event is None:
            return
        event = ExecutionEvent(
            type=event_type,
            run_id=run.state.run_id,
            node_id=node_id,
            data=data,
            depth=run.options.depth,
        )
        await dispatch_event(on_event, event)


def _failed_node(task: asyncio.Task) -> bool:
    return not task.cancelled() and isinstance(task.exception(), _NodeFailed)


async def _call(executor: NodeExecutor, ctx: ExecutionContext) -> Any:
    result = executor(ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


async def _discard(*futures: asyncio.Future) -> None:
    """Cancel unfinished futures and wait for them to settle."""
    for future in futures:
        if not future.done():
            future.cancel()
    await asyncio.gather(*futures, return_exceptions=True)


def _normalize_result(result: Any) -> ExecutionResult:
    if result is None:
        return ExecutionResult()
    if isinstance(result, ExecutionResult):
        if result.error:
            raise ExecutorError(result.error)
        return result
    if isinstance(result, dict):
        return ExecutionResult(outputs=result)
    raise ExecutorError(
        f"Executor returned {type(result).__name__}; expected ExecutionResult or dict"
    )


async def execute_flow(
    graph: FlowGraph,
    executors: ExecutorRegistry,
    node_types: NodeTypeRegistry | None = None,
    options: ExecutionOptions | None = None,
) -> ExecutionState:
    """Run a FlowGraph on a fresh engine."""
    engine = ExecutionEngine(executors, node_types)
    return await engine.execute(graph.nodes, graph.edges, options)
