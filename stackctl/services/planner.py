"""
Dependency Resolver / Planner Implementation
"""
import copy
import heapq
import json
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Hashable, Iterable, List, Optional, Set, Tuple

from config.logging import get_logger
from .interfaces import Provider
from .retry import RetryHandler
from ..models.data_models import (
    Change, ChangeSummary, Configuration, Plan, PlanStep, ResourceSchema, StateRecord, ValidationResult
)
from ..models.enums import ChangeAction, ErrorCodes, StepAction
from ..models.exceptions import CyclicDependencyError, StackException, ValidationError
from ..models.expressions import UNKNOWN, Reference, contains_unknown, evaluate, resolve_path

logger = get_logger("planner")

BUCKET_TYPE = "aws_s3_bucket"
BUCKET_POLICY_TYPE = "aws_s3_bucket_policy"
DISTRIBUTION_TYPE = "aws_cloudfront_distribution"

# Tie-break between steps of one resource when no edge orders them
_STEP_RANK = {
    StepAction.DELETE: 0,
    StepAction.CREATE: 1,
    StepAction.UPDATE: 1,
    StepAction.DELETE_DEPOSED: 2,
}


class DefaultPlanner:
    """Builds the dependency graph and diffs declarations against refreshed state"""

    def __init__(self, provider: Optional[Provider] = None, retry_handler: Optional[RetryHandler] = None):
        """Initialize planner

        Args:
            provider: Provider used to refresh recorded resources and look up schemas
            retry_handler: Retries transient errors raised while refreshing
        """
        self.provider = provider
        self.retry_handler = retry_handler

    async def plan(
        self,
        config: Optional[Configuration],
        state: Optional[StateRecord],
        destroy: bool = False
    ) -> Plan:
        """Generate a plan reconciling declarations with the recorded state

        Args:
            config: Loaded declarations; may be None in destroy mode
            state: Current State Record, or None before the first apply
            destroy: Delete every recorded resource instead of converging

        Returns:
            Plan with ordered steps and parallelizable levels

        Raises:
            CyclicDependencyError: Before any provider call when the graph has a cycle
            ValidationError: Unknown resource types, missing required attributes,
                or a plan that would destroy a ``prevent_destroy`` resource
        """
        if self.provider is None:
            raise ValidationError("A provider is required to plan")

        try:
            order: List[str] = []
            if config is not None and not destroy:
                order = self.topological_order(config)
                result = self.validate(config, self.provider_schemas())
                if not result.is_valid:
                    raise ValidationError("; ".join(result.errors), {"errors": result.errors})

            prior, removed = await self.refresh(state)

            if destroy:
                changes = self._destroy_changes(config, prior)
            else:
                changes = self._diff(config, order, prior)

            steps, levels = self._schedule(config, prior, changes, destroy)

            summary = ChangeSummary(
                creates=len([c for c in changes if c.action == ChangeAction.CREATE]),
                updates=len([c for c in changes if c.action == ChangeAction.UPDATE]),
                replaces=len([c for c in changes if c.action == ChangeAction.REPLACE]),
                deletes=len([c for c in changes if c.action == ChangeAction.DELETE])
            )

            plan = Plan(
                id=str(uuid.uuid4()),
                changes=changes,
                steps=steps,
                levels=levels,
                summary=summary,
                created_at=datetime.now(),
                state_serial=state.serial if state else 0,
                state_lineage=state.lineage if state else None,
                destroy=destroy,
                warnings=self._warnings(config, changes),
                removed=removed,
                prior_state=prior
            )

            logger.info(
                f"Generated plan {plan.id} with {len(steps)} steps in {len(levels)} levels",
                creates=summary.creates,
                updates=summary.updates,
                replaces=summary.replaces,
                deletes=summary.deletes,
            )
            return plan

        except StackException:
            raise
        except Exception as e:
            logger.error(f"Failed to generate plan: {e}")
            raise StackException(ErrorCodes.VALIDATION_FAILED, f"Failed to generate plan: {e}")

    def validate(
        self,
        config: Configuration,
        schemas: Optional[Dict[str, ResourceSchema]] = None
    ) -> ValidationResult:
        """Check declarations without calling the provider

        Args:
            config: Loaded declarations
            schemas: Resource schemas by type; type checks are skipped when omitted

        Returns:
            Validation result with errors and warnings
        """
        errors: List[str] = []
        warnings: List[str] = []

        try:
            self.topological_order(config)
        except CyclicDependencyError as e:
            errors.append(e.message)

        if schemas is not None:
            for resource in config.resources:
                schema = schemas.get(resource.type)
                if schema is None:
                    errors.append(f"{resource.location}: unknown resource type '{resource.type}'")
                    continue
                missing = sorted(schema.required - set(resource.config.items))
                if missing:
                    errors.append(
                        f"{resource.location}: {resource.address} is missing required attribute(s) {', '.join(missing)}"
                    )

        warnings.extend(self._dual_exposure_warnings(config))

        return ValidationResult(is_valid=len(errors) == 0, errors=errors, warnings=warnings)

    def provider_schemas(self) -> Dict[str, ResourceSchema]:
        return {t: self.provider.get_schema(t) for t in self.provider.resource_types()}

    # Graph

    def build_graph(self, config: Configuration) -> Dict[str, List[str]]:
        """Map each address to its dependencies, explicit edges first"""
        return {resource.address: resource.dependencies() for resource in config.resources}

    def topological_order(self, config: Configuration) -> List[str]:
        """Stable topological order of resource addresses

        Ties are broken by declaration order, so identical input always
        yields the same order.

        Raises:
            CyclicDependencyError: If the graph has a cycle
        """
        graph = self.build_graph(config)
        addresses = config.addresses

        cycle = self._find_cycle(addresses, graph)
        if cycle:
            raise CyclicDependencyError(cycle)

        successors: Dict[str, Set[str]] = defaultdict(set)
        for address, deps in graph.items():
            for dep in deps:
                successors[dep].add(address)

        priority = {address: (index,) for index, address in enumerate(addresses)}
        return self._stable_topological_sort(addresses, successors, priority)

    def _find_cycle(self, nodes: Iterable[Hashable], graph: Dict[Any, Iterable[Any]]) -> Optional[List[Any]]:
        """Depth-first search for the first cycle, returned closed on its start node"""
        visiting: Set[Any] = set()
        done: Set[Any] = set()

        def visit(node: Any, path: List[Any]) -> Optional[List[Any]]:
            visiting.add(node)
            path.append(node)
            for neighbor in graph.get(node, ()):
                if neighbor in visiting:
                    return path[path.index(neighbor):] + [neighbor]
                if neighbor not in done:
                    found = visit(neighbor, path)
                    if found:
                        return found
            visiting.remove(node)
            done.add(node)
            path.pop()
            return None

        for node in nodes:
            if node not in done:
                found = visit(node, [])
                if found:
                    return found
        return None

    def _stable_topological_sort(
        self,
        nodes: List[Any],
        successors: Dict[Any, Set[Any]],
        priority: Dict[Any, Tuple]
    ) -> List[Any]:
        """Kahn's algorithm, always taking the ready node with the lowest priority"""
        in_degree = {node: 0 for node in nodes}
        for node in nodes:
            for succ in successors.get(node, ()):
                in_degree[succ] += 1

        ready = [(priority[node], node) for node in nodes if in_degree[node] == 0]
        heapq.heapify(ready)
        result = []

        while ready:
            _, node = heapq.heappop(ready)
            result.append(node)
            for succ in successors.get(node, ()):
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(ready, (priority[succ], succ))

        return result

    # Refresh

    async def refresh(self, state: Optional[StateRecord]) -> Tuple[StateRecord, List[str]]:
        """Read every recorded resource from the provider

        Returns:
            A refreshed copy of the state and the addresses reported as gone
        """
        if state is None:
            return StateRecord(lineage=str(uuid.uuid4())), []

        refreshed = copy.deepcopy(state)
        removed: List[str] = []
        for resource in list(refreshed.resources):
            attributes = await self._call(self.provider.read, resource.type, resource.id, resource.config)
            if attributes is None:
                logger.info(f"{resource.address} ({resource.id}) no longer exists")
                refreshed.remove(resource.address)
                removed.append(resource.address)
            else:
                resource.attributes = attributes

        logger.info(f"Refreshed {len(state.resources)} resources, {len(removed)} gone")
        return refreshed, removed

    async def _call(self, func, *args):
        if self.retry_handler:
            return await self.retry_handler.execute_with_retry(func, *args)
        return await func(*args)

    # Diff

    def _create_before_destroy(self, config: Configuration) -> Set[str]:
        """Addresses replaced create-before-destroy; the flag flows to dependencies"""
        graph = self.build_graph(config)
        result: Set[str] = set()
        stack = [r.address for r in config.resources if r.lifecycle.create_before_destroy]
        while stack:
            address = stack.pop()
            if address in result:
                continue
            result.add(address)
            stack.extend(graph.get(address, []))
        return result

    def _diff(self, config: Configuration, order: List[str], prior: StateRecord) -> List[Change]:
        cbd = self._create_before_destroy(config)
        changes: Dict[str, Change] = {}
        unknown: Set[str] = set()
        destroy_first: Set[str] = set()

        def planned_value(ref: Reference) -> Any:
            if ref.address in unknown:
                return UNKNOWN
            change = changes.get(ref.address)
            if change and change.action == ChangeAction.UPDATE:
                name = ref.path[0]
                if name in change.changed_attributes:
                    try:
                        return resolve_path(change.after.get(name), ref.path[1:])
                    except KeyError:
                        return UNKNOWN
                stable = self.provider.get_schema(change.resource_type).stable
                if name != "id" and name not in change.after and name not in stable:
                    return UNKNOWN
            return prior.get(ref.address).attribute(ref)

        for address in order:
            resource = config.get_resource(address)
            current = prior.get(address)
            after = self.provider.prepare_config(resource.type, evaluate(resource.config, planned_value))

            if current is None:
                change = Change(address, resource.type, ChangeAction.CREATE, after=after)
                unknown.add(address)
            else:
                changed = self._changed_keys(current.config, after)
                schema = self.provider.get_schema(resource.type)
                forced = [key for key in changed if key in schema.force_new]
                cascaded = [
                    dep for dep in resource.dependencies()
                    if dep in destroy_first and dep in current.dependencies
                ]

                if forced or cascaded:
                    reasons = [f"{key} forces replacement" for key in forced]
                    reasons += [f"depends on {dep}, which is destroyed and re-created" for dep in cascaded]
                    change = Change(
                        address, resource.type, ChangeAction.REPLACE,
                        before=current.config, after=after,
                        changed_attributes=changed, reasons=reasons,
                        create_before_destroy=address in cbd
                    )
                    unknown.add(address)
                    if address not in cbd:
                        destroy_first.add(address)
                elif changed:
                    change = Change(
                        address, resource.type, ChangeAction.UPDATE,
                        before=current.config, after=after, changed_attributes=changed
                    )
                else:
                    change = Change(address, resource.type, ChangeAction.NO_OP, before=current.config, after=after)

                if change.action == ChangeAction.REPLACE and resource.lifecycle.prevent_destroy:
                    raise ValidationError(
                        f"{address} has lifecycle.prevent_destroy set but the plan would replace it "
                        f"({'; '.join(change.reasons)})",
                        {"address": address}
                    )

            changes[address] = change

        desired = set(order)
        for resource in prior.resources:
            if resource.address not in desired:
                changes[resource.address] = Change(
                    resource.address, resource.type, ChangeAction.DELETE,
                    before=resource.config, reasons=["no longer declared"]
                )

        return [c for c in changes.values() if c.action != ChangeAction.NO_OP]

    def _changed_keys(self, before: Dict[str, Any], after: Dict[str, Any]) -> List[str]:
        keys = set(before) | set(after)
        return sorted(
            key for key in keys
            if key not in before or key not in after
            or contains_unknown(after[key]) or before[key] != after[key]
        )

    def _destroy_changes(self, config: Optional[Configuration], prior: StateRecord) -> List[Change]:
        changes = []
        for resource in prior.resources:
            declaration = config.get_resource(resource.address) if config else None
            if declaration and declaration.lifecycle.prevent_destroy:
                raise ValidationError(
                    f"{resource.address} has lifecycle.prevent_destroy set and cannot be destroyed",
                    {"address": resource.address}
                )
            changes.append(Change(
                resource.address, resource.type, ChangeAction.DELETE,
                before=resource.config, reasons=["destroy requested"]
            ))
        return changes

    # Scheduling

    def _schedule(
        self,
        config: Optional[Configuration],
        prior: StateRecord,
        changes: List[Change],
        destroy: bool
    ) -> Tuple[List[PlanStep], List[List[PlanStep]]]:
        """Expand changes into provider steps, order them and group them into levels"""
        steps: Dict[str, PlanStep] = {}

        def add(address: str, action: StepAction) -> None:
            step = PlanStep(address, action)
            steps[step.key] = step

        for change in changes:
            if change.action == ChangeAction.CREATE:
                add(change.address, StepAction.CREATE)
            elif change.action == ChangeAction.UPDATE:
                add(change.address, StepAction.UPDATE)
            elif change.action == ChangeAction.DELETE:
                add(change.address, StepAction.DELETE)
            elif change.action == ChangeAction.REPLACE:
                add(change.address, StepAction.CREATE)
                add(change.address, StepAction.DELETE_DEPOSED if change.create_before_destroy else StepAction.DELETE)

        # Deposed objects left behind by an interrupted apply
        for resource in prior.resources:
            if resource.deposed:
                add(resource.address, StepAction.DELETE_DEPOSED)

        def key(address: str, action: StepAction) -> Optional[str]:
            k = f"{action.value}:{address}"
            return k if k in steps else None

        def apply_key(address: str) -> Optional[str]:
            return key(address, StepAction.CREATE) or key(address, StepAction.UPDATE)

        def destroy_keys(address: str) -> List[str]:
            return [k for k in (key(address, StepAction.DELETE), key(address, StepAction.DELETE_DEPOSED)) if k]

        def desired_deps(address: str) -> List[str]:
            if destroy or config is None:
                return []
            resource = config.get_resource(address)
            return resource.dependencies() if resource else []

        def state_deps(address: str) -> List[str]:
            resource = prior.get(address)
            return resource.dependencies if resource else []

        successors: Dict[str, Set[str]] = defaultdict(set)

        def edge(src: Optional[str], dst: Optional[str]) -> None:
            if src and dst and src != dst:
                successors[src].add(dst)

        addresses = list(dict.fromkeys(
            ([] if destroy or config is None else config.addresses) + prior.addresses
        ))

        for address in addresses:
            apply = apply_key(address)
            wanted = desired_deps(address)
            recorded = state_deps(address)
            all_deps = [d for d in dict.fromkeys(recorded + wanted) if d != address]

            if apply:
                # Dependencies are created or updated first
                for dep in wanted:
                    edge(apply_key(dep), apply)
                # A reference is dropped before the resource it pointed at is deleted
                for dep in recorded:
                    if dep not in wanted:
                        edge(apply, key(dep, StepAction.DELETE))
                # Old instances go only after dependents point at the new one
                for dep in all_deps:
                    edge(apply, key(dep, StepAction.DELETE_DEPOSED))

            # Dependents are destroyed before their dependencies
            for destroy_key in destroy_keys(address):
                for dep in all_deps:
                    for dep_key in destroy_keys(dep):
                        edge(destroy_key, dep_key)

            delete = key(address, StepAction.DELETE)
            deposed = key(address, StepAction.DELETE_DEPOSED)
            edge(delete, apply)
            if delete:
                edge(deposed, delete)
            else:
                edge(apply, deposed)

        index = {address: i for i, address in enumerate(addresses)}
        nodes = list(steps)
        priority = {k: (index[steps[k].address], _STEP_RANK[steps[k].action], k) for k in nodes}
        ordered = self._stable_topological_sort(nodes, successors, priority)

        if len(ordered) != len(nodes):
            cycle = self._find_cycle(nodes, successors) or nodes
            raise CyclicDependencyError([str(steps[k]) for k in cycle])

        predecessors: Dict[str, List[str]] = defaultdict(list)
        for src, dsts in successors.items():
            for dst in dsts:
                predecessors[dst].append(src)

        level_of: Dict[str, int] = {}
        for k in ordered:
            level_of[k] = max((level_of[p] + 1 for p in predecessors[k]), default=0)

        levels: List[List[PlanStep]] = [[] for _ in range(max(level_of.values(), default=-1) + 1)]
        for k in ordered:
            levels[level_of[k]].append(steps[k])

        return [steps[k] for k in ordered], levels

    # Warnings

    def _warnings(self, config: Optional[Configuration], changes: List[Change]) -> List[str]:
        warnings = []
        for change in changes:
            if change.resource_type == BUCKET_TYPE and change.action in (ChangeAction.DELETE, ChangeAction.REPLACE):
                warnings.append(f"{change.address} will be deleted; objects stored in the bucket are lost")
        if config is not None:
            warnings.extend(self._dual_exposure_warnings(config))
        return warnings

    def _dual_exposure_warnings(self, config: Configuration) -> List[str]:
        """Buckets readable by anyone that are also a CDN origin"""
        public: Dict[str, str] = {}
        for resource in config.resources:
            values = evaluate(resource.config, lambda ref: UNKNOWN)
            if resource.type == BUCKET_TYPE and values.get("acl") in ("public-read", "public-read-write"):
                public.setdefault(resource.address, f"acl {values['acl']}")
            elif resource.type == BUCKET_POLICY_TYPE and _is_public_read_policy(values.get("policy")):
                for address in resource.references():
                    if address.startswith(BUCKET_TYPE + "."):
                        public.setdefault(address, f"policy {resource.address}")

        warnings = []
        for resource in config.resources:
            if resource.type != DISTRIBUTION_TYPE:
                continue
            for address in resource.references():
                if address in public:
                    warnings.append(
                        f"{address} is publicly readable ({public[address]}) and is also the origin of "
                        f"{resource.address}; its content is reachable both directly and through the CDN"
                    )
        return warnings


def _is_public_read_policy(policy: Any) -> bool:
    if isinstance(policy, str):
        try:
            policy = json.loads(policy)
        except ValueError:
            return False
    if not isinstance(policy, dict):
        return False

    statements = policy.get("Statement", [])
    if isinstance(statements, dict):
        statements = [statements]

    for statement in statements:
        if not isinstance(statement, dict) or statement.get("Effect") != "Allow":
            continue
        principal = statement.get("Principal")
        if isinstance(principal, dict):
            principal = principal.get("AWS")
        principals = principal if isinstance(principal, list) else [principal]
        actions = statement.get("Action", [])
        actions = actions if isinstance(actions, list) else [actions]
        if "*" in principals and any(a in ("s3:GetObject", "s3:*", "*") for a in actions):
            return True
    return False
