"""Apply executor for resource orchestration.

Executes a plan's operations against a provider with bounded parallelism.
An operation starts only once every operation it waits on has succeeded:

- create/update waits on the operations of its dependencies
- destroy waits on the destroy operations of its dependents, and on the
  create/update of any resource whose state still records it as a dependency

When an operation fails, everything waiting on it (transitively) is
skipped while independent branches keep running. State is saved after
every successful operation, so a partial apply leaves an accurate state.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Optional

from common import CallResult, call_with_retry
from config import RetryPolicy
from errors import OperationCanceled, OrchestratorError, ValidationError
from orchestrator.graph import topological_sort
from orchestrator.planner import CREATE, DESTROY, PREVENT_DESTROY_KEY, UPDATE, Operation, Plan
from orchestrator.references import UnresolvedReference, lookup_path, resolve
from orchestrator.state import ResourceState, State, StateStore
from providers import Provider

logger = logging.getLogger(__name__)

PENDING = 'pending'
RUNNING = 'running'
SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'
CANCELED = 'canceled'

_BLOCKING = (FAILED, SKIPPED, CANCELED)


@dataclass
class OperationState:
    """Per-operation execution state.

    Attributes:
        resource_id: Resource the operation applies to
        action: create, update or destroy
        status: pending, running, succeeded, failed, skipped, canceled
        attempts: Provider call attempts made
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution reached a terminal status
        error: Failure, skip or cancel reason
    """
    resource_id: str
    action: str
    status: str = PENDING
    attempts: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def succeed(self, attempts: int = 1) -> None:
        self.status = SUCCEEDED
        self.attempts = attempts
        self.completed_at = time.time()

    def fail(self, error: str, attempts: int = 0) -> None:
        self.status = FAILED
        self.attempts = attempts
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = SKIPPED
        self.completed_at = time.time()
        self.error = reason

    def cancel(self, reason: str) -> None:
        self.status = CANCELED
        self.completed_at = time.time()
        self.error = reason

    @property
    def is_terminal(self) -> bool:
        return self.status not in (PENDING, RUNNING)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource_id': self.resource_id,
            'action': self.action,
            'status': self.status,
        }
        if self.attempts:
            d['attempts'] = self.attempts
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
        return d


@dataclass
class ApplyResult:
    """Outcome of an apply, per resource.

    Attributes:
        operations: Operation states keyed by resource id, in plan order
        rollback: Destroy operations run by the rollback policy
        canceled: True if the apply was canceled
        started_at: Timestamp the apply started
        completed_at: Timestamp the apply finished
    """
    operations: dict[str, OperationState] = field(default_factory=dict)
    rollback: list[OperationState] = field(default_factory=list)
    canceled: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def success(self) -> bool:
        return all(s.status == SUCCEEDED for s in self.operations.values())

    @property
    def partial(self) -> bool:
        """Some operations succeeded and some did not."""
        statuses = [s.status for s in self.operations.values()]
        return not self.success and SUCCEEDED in statuses

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return 0.0

    def counts(self) -> dict[str, int]:
        counts = {status: 0 for status in (SUCCEEDED, FAILED, SKIPPED, CANCELED)}
        for s in self.operations.values():
            counts[s.status] = counts.get(s.status, 0) + 1
        return counts

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'success': self.success,
            'partial': self.partial,
            'canceled': self.canceled,
            'duration_seconds': round(self.duration, 2),
            'counts': self.counts(),
            'operations': [s.to_dict() for s in self.operations.values()],
        }
        if self.rollback:
            d['rollback'] = [s.to_dict() for s in self.rollback]
        return d


def build_wait_graph(plan: Plan, state: Optional[State] = None) -> tuple[dict[str, set[str]], list[str]]:
    """Compute which operations each operation waits on.

    With state, a resource that is updated to drop a dependency keeps its
    recorded dependency until the update is done, so the old dependency's
    destroy waits for it.

    Returns:
        (waits, order): resource id -> ids it waits on, and a topological
        execution order

    Raises:
        ValidationError: If a resource appears in more than one operation
        CycleError: If the operations wait on each other circularly
    """
    ops: dict[str, Operation] = {}
    for op in plan.operations:
        if op.resource_id in ops:
            raise ValidationError(f"Plan has more than one operation for '{op.resource_id}'")
        ops[op.resource_id] = op

    waits: dict[str, set[str]] = {}
    for rid, op in ops.items():
        if op.action == DESTROY:
            waits[rid] = {
                other.resource_id for other in ops.values()
                if other.action == DESTROY and rid in other.depends_on
            }
        else:
            waits[rid] = {d for d in op.depends_on if d in ops and ops[d].action != DESTROY}

    if state is not None:
        for rid, op in ops.items():
            current = state.get(rid)
            if op.action == DESTROY or current is None:
                continue
            for dep in current.depends_on:
                if dep in ops and ops[dep].action == DESTROY:
                    waits[dep].add(rid)

    order = topological_sort(waits, order=list(ops))
    return waits, order


@dataclass
class ApplyExecutor:
    """Executes plan operations with bounded parallelism.

    Attributes:
        provider: Provider that performs create/update/delete calls
        store: State store (locked for the duration of the apply)
        max_workers: Maximum concurrent provider operations
        on_error: continue (halt dependents only), stop (start nothing new
            after a failure) or rollback (continue, then destroy resources
            created during this apply)
        retry: Backoff policy for transient provider errors
    """
    provider: Provider
    store: StateStore
    max_workers: int = 4
    on_error: str = 'continue'
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def cancel(self) -> None:
        """Stop starting new operations; in-flight calls finish best-effort."""
        self._cancel.set()

    @property
    def canceled(self) -> bool:
        return self._cancel.is_set()

    def apply(self, plan: Plan) -> ApplyResult:
        """Execute plan under the state lock.

        Raises:
            LockHeldError: If another apply holds the state lock
            StalePlanError: If the state changed since the plan was computed
            CycleError: If the plan's operations wait on each other circularly
        """
        with self.store.lock('apply'):
            state = self.store.load()
            plan.check_fresh(state)
            waits, order = build_wait_graph(plan, state)
            if state.serial == 0:
                state.lineage = plan.lineage

            result = ApplyResult(
                operations={op.resource_id: OperationState(op.resource_id, op.action) for op in plan.operations},
                started_at=time.time(),
            )
            if not plan.operations:
                logger.info("No changes to apply")
                result.completed_at = time.time()
                return result

            created = self._run(plan, waits, order, state, result)

            if self.on_error == 'rollback' and not result.success:
                if self.canceled:
                    logger.warning("Apply canceled, skipping rollback")
                else:
                    self._rollback(created, state, result)

            result.canceled = self.canceled
            result.completed_at = time.time()

        counts = result.counts()
        log = logger.info if result.success else logger.error
        log(
            f"Apply {'complete' if result.success else 'finished with errors'}: "
            f"{counts[SUCCEEDED]} succeeded, {counts[FAILED]} failed, "
            f"{counts[SKIPPED]} skipped, {counts[CANCELED]} canceled"
        )
        return result

    def _run(
        self,
        plan: Plan,
        waits: dict[str, set[str]],
        order: list[str],
        state: State,
        result: ApplyResult,
    ) -> list[str]:
        """Schedule operations until all are terminal. Returns ids created, in completion order."""
        ops = {op.resource_id: op for op in plan.operations}
        statuses = result.operations
        pending = list(order)
        running: dict[Future, tuple[Operation, dict]] = {}
        created: list[str] = []
        halted = False

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='apply') as pool:
            while pending or running:
                # Single pass in topological order: dependencies are settled before dependents
                for rid in list(pending):
                    op = ops[rid]
                    status = statuses[rid]

                    if self.canceled:
                        status.cancel("apply canceled")
                        pending.remove(rid)
                        continue
                    if halted:
                        status.skip("halted after an earlier failure (on_error=stop)")
                        pending.remove(rid)
                        continue

                    blocking = sorted(d for d in waits[rid] if statuses[d].status in _BLOCKING)
                    if blocking:
                        dep = blocking[0]
                        status.skip(f"dependency {dep} {statuses[dep].status}")
                        logger.warning(f"[{op.action}] {rid} skipped: dependency {dep} {statuses[dep].status}")
                        pending.remove(rid)
                        continue

                    if len(running) >= self.max_workers:
                        continue
                    if not all(statuses[d].status == SUCCEEDED for d in waits[rid]):
                        continue

                    pending.remove(rid)
                    try:
                        inputs = self._prepare(op, state)
                    except OrchestratorError as e:
                        status.fail(str(e))
                        logger.error(f"[{op.action}] {rid} failed: {e}")
                        halted = halted or self.on_error == 'stop'
                        continue

                    status.start()
                    logger.info(f"[{op.action}] {rid}...")
                    running[pool.submit(self._execute, op, inputs)] = (op, inputs)

                if not running:
                    continue

                try:
                    done, _ = wait(running, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    logger.warning("Interrupted, canceling apply (in-flight operations will finish)")
                    self.cancel()
                    continue

                for future in done:
                    op, inputs = running.pop(future)
                    ok = self._complete(op, inputs, future, statuses[op.resource_id], state)
                    if ok and op.action == CREATE:
                        created.append(op.resource_id)
                    if not ok and self.on_error == 'stop':
                        halted = True

        return created

    def _prepare(self, op: Operation, state: State) -> dict:
        """Resolve references and collect provider inputs on the scheduling thread."""
        current = state.get(op.resource_id)
        if op.action in (UPDATE, DESTROY) and current is None:
            raise ValidationError(f"'{op.resource_id}' is not in state")

        inputs: dict[str, Any] = {'outputs': current.outputs if current else {}}
        if op.action == DESTROY:
            return inputs

        def _lookup(target_id: str, path: list[str], expression: str) -> Any:
            target = state.get(target_id)
            if target is None:
                raise ValidationError(f"'{op.resource_id}' references ${{{expression}}} but '{target_id}' is not in state")
            try:
                return lookup_path(target.outputs, path, expression)
            except UnresolvedReference as e:
                raise ValidationError(f"'{op.resource_id}' references {e}")

        inputs['attributes'] = resolve(op.attributes, _lookup)
        return inputs

    def _execute(self, op: Operation, inputs: dict) -> CallResult:
        """Run the provider call for one operation (worker thread)."""
        def call() -> Any:
            if op.action == CREATE:
                return self.provider.create(op.resource_type, inputs['attributes'])
            if op.action == UPDATE and set(op.diff) == {PREVENT_DESTROY_KEY}:
                # Lifecycle-only change, nothing to send
                return inputs['outputs']
            if op.action == UPDATE:
                return self.provider.update(op.resource_type, inputs['outputs'], inputs['attributes'])
            self.provider.delete(op.resource_type, inputs['outputs'])
            return None

        return call_with_retry(call, self.retry, f"[{op.action}] {op.resource_id}", self._cancel)

    def _complete(
        self,
        op: Operation,
        inputs: dict,
        future: Future,
        status: OperationState,
        state: State,
    ) -> bool:
        """Record a finished operation in state and its status. Returns success."""
        rid = op.resource_id
        try:
            call = future.result()
        except OperationCanceled as e:
            status.cancel(str(e))
            logger.warning(f"[{op.action}] {rid} canceled")
            return False
        except OrchestratorError as e:
            status.fail(str(e), attempts=getattr(e, 'attempts', 1))
            logger.error(f"[{op.action}] {rid} failed: {e}")
            return False
        except Exception as e:
            status.fail(f"{type(e).__name__}: {e}", attempts=1)
            logger.exception(f"[{op.action}] {rid} failed with an unexpected error")
            return False

        if op.action == DESTROY:
            state.remove(rid)
        else:
            attributes = inputs['attributes']
            state.put(ResourceState(
                id=rid,
                type=op.resource_type,
                attributes=attributes,
                outputs={**attributes, **(call.value or {})},
                depends_on=list(op.depends_on),
                prevent_destroy=op.prevent_destroy,
                updated_at=time.time(),
            ))
        self.store.save(state)
        status.succeed(call.attempts)
        logger.info(f"[{op.action}] {rid} done ({call.duration:.1f}s)")
        return True

    def _rollback(self, created: list[str], state: State, result: ApplyResult) -> None:
        """Destroy resources created during this apply, newest first."""
        if not created:
            return
        logger.info(f"Rolling back {len(created)} created resource(s)...")
        for rid in reversed(created):
            current = state.get(rid)
            if current is None:
                continue
            rollback_state = OperationState(rid, DESTROY)
            rollback_state.start()
            try:
                call = call_with_retry(
                    lambda current=current: self.provider.delete(current.type, current.outputs),
                    self.retry,
                    f"[rollback] {rid}",
                )
            except OrchestratorError as e:
                rollback_state.fail(str(e), attempts=getattr(e, 'attempts', 1))
                logger.error(f"[rollback] {rid} failed: {e}")
            else:
                state.remove(rid)
                self.store.save(state)
                rollback_state.succeed(call.attempts)
                logger.info(f"[rollback] {rid} destroyed")
            result.rollback.append(rollback_state)
