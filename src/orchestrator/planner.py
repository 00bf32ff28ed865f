"""Plan engine for resource orchestration.

Diffs the desired resources of a manifest against the last-applied state and
produces an ordered change-set:

- destroy operations first, dependents before their dependencies
- then create/update operations, dependencies before their dependents

Resources whose resolved attributes match the state produce no operation,
so re-planning an unchanged state yields an empty plan.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import call_with_retry
from config import RetryPolicy
from errors import StalePlanError, ValidationError
from manifest import Manifest
from orchestrator.graph import ResourceGraph, topological_sort
from orchestrator.references import (
    UNKNOWN,
    UnresolvedReference,
    contains_unknown,
    lookup_path,
    resolve,
)
from orchestrator.state import ResourceState, State

logger = logging.getLogger(__name__)

PLAN_FORMAT_VERSION = 1

CREATE = 'create'
UPDATE = 'update'
DESTROY = 'destroy'
ACTIONS = (CREATE, UPDATE, DESTROY)

_SYMBOLS = {CREATE: '+', UPDATE: '~', DESTROY: '-'}

# Diff key for a lifecycle flag change; the flag is recorded in state, not sent to the provider
PREVENT_DESTROY_KEY = 'lifecycle.prevent_destroy'


@dataclass
class Operation:
    """A single planned change.

    Attributes:
        action: create, update or destroy
        resource_id: Resource id (<type>.<name>)
        resource_type: Resource type
        diff: attribute -> [before, after]; after may be UNKNOWN
        attributes: Desired attributes with references unresolved (empty for destroy)
        depends_on: Resource dependencies (declared for create/update, recorded for destroy)
        prevent_destroy: Lifecycle flag to record in state after apply
    """
    action: str
    resource_id: str
    resource_type: str
    diff: dict = field(default_factory=dict)
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    prevent_destroy: bool = False

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'action': self.action,
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'diff': self.diff,
        }
        if self.attributes:
            d['attributes'] = self.attributes
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.prevent_destroy:
            d['prevent_destroy'] = True
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Operation':
        action = data.get('action')
        if action not in ACTIONS:
            raise ValidationError(f"Invalid plan operation action: {action!r}")
        if 'resource_id' not in data:
            raise ValidationError("Plan operation missing resource_id")
        return cls(
            action=action,
            resource_id=data['resource_id'],
            resource_type=data.get('resource_type', data['resource_id'].split('.', 1)[0]),
            diff={k: list(v) for k, v in (data.get('diff') or {}).items()},
            attributes=dict(data.get('attributes') or {}),
            depends_on=list(data.get('depends_on') or []),
            prevent_destroy=bool(data.get('prevent_destroy', False)),
        )


@dataclass
class Plan:
    """Ordered change-set computed against a specific state version.

    Attributes:
        operations: Operations in execution order
        lineage: Lineage of the state the plan was computed from
        serial: Serial of the state the plan was computed from
        mode: 'normal' or 'destroy'
        unchanged: Resource ids that need no change
        manifest_name: Name of the source manifest
        settings: Execution settings carried from the manifest
        created_at: Timestamp the plan was computed
    """
    operations: list[Operation]
    lineage: str
    serial: int
    mode: str = 'normal'
    unchanged: list[str] = field(default_factory=list)
    manifest_name: str = ''
    settings: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @property
    def has_changes(self) -> bool:
        return bool(self.operations)

    def summary(self) -> dict[str, int]:
        counts = {action: 0 for action in ACTIONS}
        for op in self.operations:
            counts[op.action] += 1
        return counts

    def get(self, resource_id: str) -> Optional[Operation]:
        for op in self.operations:
            if op.resource_id == resource_id:
                return op
        return None

    def check_fresh(self, state: State) -> None:
        """Verify the plan was computed against this exact state.

        Raises:
            StalePlanError: If lineage or serial differ
        """
        if state.serial == 0 and self.serial == 0:
            # Neither side has ever been saved; an empty state has no history yet
            return
        if state.lineage != self.lineage:
            raise StalePlanError(
                f"Plan was created for state lineage {self.lineage}, "
                f"but the current state has lineage {state.lineage}"
            )
        if state.serial != self.serial:
            raise StalePlanError(
                f"State has changed since the plan was created "
                f"(plan serial {self.serial}, state serial {state.serial}). Re-run plan."
            )

    def render(self) -> str:
        """Human-readable plan description."""
        if not self.operations:
            return "No changes. Infrastructure matches the configuration."

        lines = []
        for op in self.operations:
            lines.append(f"  {_SYMBOLS[op.action]} {op.resource_id} ({op.action})")
            for attr in sorted(op.diff):
                before, after = op.diff[attr]
                if op.action == CREATE:
                    lines.append(f"      {attr}: {json.dumps(after)}")
                elif op.action == UPDATE:
                    lines.append(f"      {attr}: {json.dumps(before)} -> {json.dumps(after)}")
        counts = self.summary()
        lines.append("")
        lines.append(
            f"Plan: {counts[CREATE]} to create, {counts[UPDATE]} to update, "
            f"{counts[DESTROY]} to destroy."
        )
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        return {
            'format_version': PLAN_FORMAT_VERSION,
            'lineage': self.lineage,
            'serial': self.serial,
            'mode': self.mode,
            'manifest_name': self.manifest_name,
            'created_at': self.created_at,
            'settings': self.settings,
            'unchanged': list(self.unchanged),
            'operations': [op.to_dict() for op in self.operations],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Plan':
        version = data.get('format_version')
        if version != PLAN_FORMAT_VERSION:
            raise ValidationError(
                f"Unsupported plan format version: {version}. Supported version: {PLAN_FORMAT_VERSION}"
            )
        if 'lineage' not in data or 'serial' not in data:
            raise ValidationError("Plan missing required fields: lineage, serial")
        return cls(
            operations=[Operation.from_dict(op) for op in data.get('operations') or []],
            lineage=data['lineage'],
            serial=int(data['serial']),
            mode=data.get('mode', 'normal'),
            unchanged=list(data.get('unchanged') or []),
            manifest_name=data.get('manifest_name', ''),
            settings=dict(data.get('settings') or {}),
            created_at=float(data.get('created_at', 0.0)),
        )

    def save(self, path: Path) -> Path:
        """Write the plan as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved plan to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> 'Plan':
        """Read a plan file.

        Raises:
            ValidationError: If the file is missing or malformed
        """
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"Plan file not found: {path}")
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid plan file {path}: {e}")
        if not isinstance(data, dict):
            raise ValidationError(f"Plan file {path} must be a JSON object")
        return cls.from_dict(data)


def compute_diff(before: dict, after: dict) -> dict[str, list]:
    """Return attr -> [before, after] for every attribute that differs.

    Values containing UNKNOWN, at any depth, always count as a difference.
    """
    diff: dict[str, list] = {}
    for key in sorted(set(before) | set(after)):
        old = before.get(key)
        new = after.get(key)
        if old != new or contains_unknown(new):
            diff[key] = [old, new]
    return diff


class PlanEngine:
    """Computes plans from a manifest and the current state.

    Attributes:
        provider: Provider used to refresh state; None disables refresh
        refresh: Read every stored resource before diffing
        retry: Backoff policy for refresh reads
    """

    def __init__(self, provider=None, refresh: bool = True, retry: Optional[RetryPolicy] = None):
        self.provider = provider
        self.refresh = refresh and provider is not None
        self.retry = retry or RetryPolicy()

    def plan(
        self,
        manifest: Optional[Manifest],
        state: State,
        destroy: bool = False,
        targets: Optional[list[str]] = None,
    ) -> Plan:
        """Compute the change-set.

        Args:
            manifest: Desired resources (may be None in destroy mode)
            state: Last-applied state
            destroy: Plan the destruction of every stored resource
            targets: Restrict the plan to these resource ids and what they need

        Raises:
            ValidationError: On invalid targets or a destroy of a protected resource
            CycleError: If manifest resources depend on each other circularly
        """
        if manifest is None and not destroy:
            raise ValidationError("A manifest is required for a normal plan")

        graph = ResourceGraph(manifest) if manifest is not None else None
        self._check_targets(targets, graph, state)

        if destroy:
            operations = self._plan_destroy_all(state, targets)
            unchanged: list[str] = []
        else:
            snapshot = self._refreshed(state)
            selected = self._select(graph, targets)
            destroys = self._plan_orphans(graph, state, targets)
            changes, unchanged = self._plan_changes(graph, snapshot, selected)
            operations = destroys + changes

        self._check_prevent_destroy(operations, manifest, state)

        settings = manifest.settings.to_dict() if manifest is not None else {}
        plan = Plan(
            operations=operations,
            lineage=state.lineage,
            serial=state.serial,
            mode='destroy' if destroy else 'normal',
            unchanged=unchanged,
            manifest_name=manifest.name if manifest is not None else '',
            settings=settings,
        )
        counts = plan.summary()
        logger.info(
            f"Plan: {counts[CREATE]} to create, {counts[UPDATE]} to update, "
            f"{counts[DESTROY]} to destroy"
        )
        return plan

    @staticmethod
    def _check_targets(targets, graph: Optional[ResourceGraph], state: State) -> None:
        for target in targets or []:
            if (graph is None or target not in graph) and target not in state:
                raise ValidationError(f"Target '{target}' is not declared and not in state")

    def _refreshed(self, state: State) -> dict[str, ResourceState]:
        """Snapshot of state, re-read through the provider when refresh is on."""
        snapshot = state.resources
        if not self.refresh:
            return snapshot

        for rid in state.ids():
            rs = snapshot[rid]
            call = call_with_retry(
                lambda rs=rs: self.provider.read(rs.type, rs.outputs),
                self.retry,
                f"[refresh] {rid}",
            )
            outputs = call.value
            if outputs is None:
                logger.warning(f"[refresh] {rid} no longer exists, it will be re-created")
                del snapshot[rid]
                continue
            attributes = {k: outputs[k] for k in rs.attributes if k in outputs}
            if attributes != rs.attributes:
                logger.info(f"[refresh] {rid} has drifted from the last-applied state")
            snapshot[rid] = ResourceState(
                id=rid,
                type=rs.type,
                attributes=attributes,
                outputs=outputs,
                depends_on=rs.depends_on,
                prevent_destroy=rs.prevent_destroy,
                updated_at=rs.updated_at,
            )
        return snapshot

    @staticmethod
    def _select(graph: ResourceGraph, targets: Optional[list[str]]) -> set[str]:
        if not targets:
            return {node.id for node in graph.create_order()}
        selected: set[str] = set()
        for target in targets:
            if target in graph:
                selected.add(target)
                selected |= graph.dependencies_of(target)
        return selected

    def _plan_changes(
        self,
        graph: ResourceGraph,
        snapshot: dict[str, ResourceState],
        selected: set[str],
    ) -> tuple[list[Operation], list[str]]:
        operations: list[Operation] = []
        unchanged: list[str] = []
        planned: dict[str, Optional[str]] = {}
        resolved_attrs: dict[str, dict] = {}

        for node in graph.create_order():
            if node.id not in selected:
                continue
            resource = node.resource

            def _lookup(target_id: str, path: list[str], expression: str, owner: str = node.id) -> Any:
                return self._lookup(target_id, path, expression, owner, planned, resolved_attrs, snapshot)

            resolved = resolve(resource.attributes, _lookup)
            resolved_attrs[node.id] = resolved
            current = snapshot.get(node.id)

            if current is None:
                action: Optional[str] = CREATE
                diff = {k: [None, v] for k, v in sorted(resolved.items())}
            else:
                diff = compute_diff(current.attributes, resolved)
                if current.prevent_destroy != resource.prevent_destroy:
                    diff[PREVENT_DESTROY_KEY] = [current.prevent_destroy, resource.prevent_destroy]
                action = UPDATE if diff else None

            planned[node.id] = action
            if action is None:
                unchanged.append(node.id)
                continue

            logger.debug(f"[plan] {node.id}: {action}")
            operations.append(Operation(
                action=action,
                resource_id=node.id,
                resource_type=resource.type,
                diff=diff,
                attributes=resource.attributes,
                depends_on=sorted(resource.dependencies),
                prevent_destroy=resource.prevent_destroy,
            ))
        return operations, unchanged

    @staticmethod
    def _lookup(
        target_id: str,
        path: list[str],
        expression: str,
        owner: str,
        planned: dict[str, Optional[str]],
        resolved_attrs: dict[str, dict],
        snapshot: dict[str, ResourceState],
    ) -> Any:
        """Plan-time value of ${target.attr}.

        Declared attributes come from the target's resolved desired values;
        computed attributes come from its last-applied outputs, and are
        unknown until a newly created target has been applied.
        """
        resolved = resolved_attrs.get(target_id)
        if resolved is not None and path[0] in resolved:
            return lookup_path(resolved, path, expression)
        if planned.get(target_id) == CREATE:
            return UNKNOWN
        current = snapshot.get(target_id)
        if current is None:
            return UNKNOWN
        try:
            return lookup_path(current.outputs, path, expression)
        except UnresolvedReference as e:
            raise ValidationError(f"Resource '{owner}' references {e}")

    @staticmethod
    def _destroy_order(state: State, ids: set[str]) -> list[str]:
        """Ids ordered dependents first, using dependencies recorded in state."""
        order = topological_sort(state.dependency_map(), order=state.ids())
        return [rid for rid in reversed(order) if rid in ids]

    def _destroy_op(self, rs: ResourceState) -> Operation:
        return Operation(
            action=DESTROY,
            resource_id=rs.id,
            resource_type=rs.type,
            diff={k: [v, None] for k, v in sorted(rs.attributes.items())},
            depends_on=sorted(rs.depends_on),
            prevent_destroy=rs.prevent_destroy,
        )

    def _plan_orphans(self, graph: ResourceGraph, state: State, targets: Optional[list[str]]) -> list[Operation]:
        """Destroy resources that are in state but no longer declared."""
        orphans = {rid for rid in state.ids() if rid not in graph}
        if targets:
            orphans &= set(targets)
        return [self._destroy_op(state.get(rid)) for rid in self._destroy_order(state, orphans)]

    def _plan_destroy_all(self, state: State, targets: Optional[list[str]]) -> list[Operation]:
        ids = set(state.ids())
        if targets:
            dependents: dict[str, set[str]] = {rid: set() for rid in ids}
            for rid, deps in state.dependency_map().items():
                for dep in deps:
                    dependents[dep].add(rid)
            selected: set[str] = set()
            queue = [t for t in targets if t in ids]
            while queue:
                rid = queue.pop()
                if rid in selected:
                    continue
                selected.add(rid)
                queue.extend(dependents[rid])
            ids = selected
        return [self._destroy_op(state.get(rid)) for rid in self._destroy_order(state, ids)]

    @staticmethod
    def _check_prevent_destroy(operations: list[Operation], manifest: Optional[Manifest], state: State) -> None:
        """Declared resources use the manifest flag, others the flag recorded in state."""
        declared = {r.id: r.prevent_destroy for r in manifest.resources} if manifest is not None else {}
        protected = {rid for rid, rs in state.resources.items() if declared.get(rid, rs.prevent_destroy)}
        protected |= {rid for rid, flag in declared.items() if flag}
        blocked = [op.resource_id for op in operations if op.action == DESTROY and op.resource_id in protected]
        if blocked:
            raise ValidationError(
                f"Plan would destroy resources with prevent_destroy set: {', '.join(blocked)}"
            )
