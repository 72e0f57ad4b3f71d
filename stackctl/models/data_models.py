"""
Core data models for stackctl
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any, FrozenSet

from .enums import ChangeAction, StepAction, VariableType
from .exceptions import UndefinedReferenceError
from .expressions import MapExpr, Expression, Reference, iter_references, resolve_path


@dataclass
class Variable:
    """Input variable declaration and its resolved value"""
    name: str
    type: VariableType = VariableType.ANY
    default: Any = None
    has_default: bool = False
    description: str = ""
    sensitive: bool = False
    value: Any = None
    location: Optional[str] = None


@dataclass
class Lifecycle:
    """Per-resource lifecycle options"""
    create_before_destroy: bool = False
    prevent_destroy: bool = False


@dataclass
class ResourceDeclaration:
    """A named, typed unit of desired infrastructure"""
    type: str
    name: str
    config: MapExpr
    depends_on: List[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    location: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    def references(self) -> List[str]:
        """Resource addresses referenced from the config, in source order"""
        seen: List[str] = []
        for ref in iter_references(self.config):
            if not ref.is_variable and ref.address not in seen:
                seen.append(ref.address)
        return seen

    def dependencies(self) -> List[str]:
        """Explicit and implicit dependencies, explicit first"""
        deps = list(dict.fromkeys(self.depends_on))
        for address in self.references():
            if address not in deps:
                deps.append(address)
        return deps


@dataclass
class OutputDeclaration:
    """Named value computed from resource attributes after apply"""
    name: str
    value: Expression
    description: str = ""
    sensitive: bool = False
    location: Optional[str] = None


@dataclass
class Configuration:
    """Loaded declaration graph"""
    provider: str
    variables: Dict[str, Variable]
    resources: List[ResourceDeclaration]
    outputs: Dict[str, OutputDeclaration]
    sources: List[str] = field(default_factory=list)

    def get_resource(self, address: str) -> Optional[ResourceDeclaration]:
        for resource in self.resources:
            if resource.address == address:
                return resource
        return None

    @property
    def addresses(self) -> List[str]:
        return [r.address for r in self.resources]


@dataclass
class DeposedObject:
    """Previous instance kept alive by a create-before-destroy replacement"""
    id: str
    config: Dict[str, Any]
    attributes: Dict[str, Any]


@dataclass
class ResourceState:
    """Last-applied state of one resource"""
    address: str
    type: str
    name: str
    id: str
    config: Dict[str, Any]
    attributes: Dict[str, Any]
    dependencies: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    deposed: List[DeposedObject] = field(default_factory=list)

    def attribute(self, ref: Reference) -> Any:
        """Value of a reference into this resource: provider attributes, then id, then applied config"""
        name, rest = ref.path[0], ref.path[1:]
        if name in self.attributes:
            value = self.attributes[name]
        elif name == "id":
            value = self.id
        elif name in self.config:
            value = self.config[name]
        else:
            raise UndefinedReferenceError(str(ref), ref.location, f"{self.address} has no attribute '{name}'")
        try:
            return resolve_path(value, rest)
        except KeyError as e:
            raise UndefinedReferenceError(str(ref), ref.location, f"{ref} has no element {e}")


@dataclass
class OutputValue:
    value: Any
    sensitive: bool = False


@dataclass
class StateRecord:
    """Persisted mapping from resource address to applied state"""
    lineage: str
    serial: int = 0
    resources: List[ResourceState] = field(default_factory=list)
    outputs: Dict[str, OutputValue] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.now)

    def get(self, address: str) -> Optional[ResourceState]:
        for resource in self.resources:
            if resource.address == address:
                return resource
        return None

    def put(self, resource: ResourceState) -> None:
        """Insert or replace a resource, keeping its original position"""
        for i, existing in enumerate(self.resources):
            if existing.address == resource.address:
                self.resources[i] = resource
                return
        self.resources.append(resource)

    def remove(self, address: str) -> None:
        self.resources = [r for r in self.resources if r.address != address]

    @property
    def addresses(self) -> List[str]:
        return [r.address for r in self.resources]


@dataclass
class ResourceSchema:
    """What a provider says about one resource type"""
    resource_type: str
    force_new: FrozenSet[str] = frozenset()
    required: FrozenSet[str] = frozenset()
    # Computed attributes an in-place update never changes
    stable: FrozenSet[str] = frozenset()


@dataclass
class ProviderResult:
    """Identifier and attributes returned by a create or update"""
    id: str
    attributes: Dict[str, Any]


@dataclass
class Change:
    """Proposed action for a single resource"""
    address: str
    resource_type: str
    action: ChangeAction
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    changed_attributes: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    create_before_destroy: bool = False


@dataclass
class PlanStep:
    """One provider operation in execution order"""
    address: str
    action: StepAction

    @property
    def key(self) -> str:
        return f"{self.action.value}:{self.address}"

    def __str__(self) -> str:
        return f"{self.action.value} {self.address}"


@dataclass
class ChangeSummary:
    """Counts of proposed actions"""
    creates: int = 0
    updates: int = 0
    replaces: int = 0
    deletes: int = 0

    @property
    def total_changes(self) -> int:
        return self.creates + self.updates + self.replaces + self.deletes


@dataclass
class Plan:
    """Ordered actions reconciling declarations with recorded state"""
    id: str
    changes: List[Change]
    steps: List[PlanStep]
    levels: List[List[PlanStep]]
    summary: ChangeSummary
    created_at: datetime
    state_serial: int
    state_lineage: Optional[str] = None
    destroy: bool = False
    warnings: List[str] = field(default_factory=list)
    # Recorded resources the provider reports as gone
    removed: List[str] = field(default_factory=list)
    # State Record after refresh; the executor starts from this copy
    prior_state: Optional[StateRecord] = None

    @property
    def has_changes(self) -> bool:
        return bool(self.steps)

    def get_change(self, address: str) -> Optional[Change]:
        for change in self.changes:
            if change.address == address:
                return change
        return None


@dataclass
class ApplyResult:
    """What an apply run did, step by step"""
    succeeded: List[PlanStep] = field(default_factory=list)
    failed: List[PlanStep] = field(default_factory=list)
    pending: List[PlanStep] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.pending and not self.cancelled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": [str(s) for s in self.succeeded],
            "failed": [str(s) for s in self.failed],
            "pending": [str(s) for s in self.pending],
            "errors": dict(self.errors),
            "cancelled": self.cancelled,
        }


@dataclass
class ValidationResult:
    """Result of configuration or plan validation"""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class LockInfo:
    """Holder of the state lock"""
    id: str
    operation: str
    who: str
    created_at: datetime
    path: str = ""
