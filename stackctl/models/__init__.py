# Core data models and enums for stackctl

from .enums import (
    ChangeAction,
    StepAction,
    VariableType,
    ErrorCodes
)

from .data_models import (
    Variable,
    Lifecycle,
    ResourceDeclaration,
    OutputDeclaration,
    Configuration,
    DeposedObject,
    ResourceState,
    OutputValue,
    StateRecord,
    ResourceSchema,
    ProviderResult,
    Change,
    PlanStep,
    ChangeSummary,
    Plan,
    ApplyResult,
    ValidationResult,
    LockInfo
)

from .exceptions import (
    StackException,
    ParseError,
    UndefinedReferenceError,
    ValidationError,
    CyclicDependencyError,
    ProviderError,
    ProviderTransientError,
    ProviderFatalError,
    StateError,
    StateLockError,
    StalePlanError,
    ApplyError,
    ApplyCancelled
)

__all__ = [
    # Enums
    'ChangeAction',
    'StepAction',
    'VariableType',
    'ErrorCodes',

    # Data Models
    'Variable',
    'Lifecycle',
    'ResourceDeclaration',
    'OutputDeclaration',
    'Configuration',
    'DeposedObject',
    'ResourceState',
    'OutputValue',
    'StateRecord',
    'ResourceSchema',
    'ProviderResult',
    'Change',
    'PlanStep',
    'ChangeSummary',
    'Plan',
    'ApplyResult',
    'ValidationResult',
    'LockInfo',

    # Exceptions
    'StackException',
    'ParseError',
    'UndefinedReferenceError',
    'ValidationError',
    'CyclicDependencyError',
    'ProviderError',
    'ProviderTransientError',
    'ProviderFatalError',
    'StateError',
    'StateLockError',
    'StalePlanError',
    'ApplyError',
    'ApplyCancelled'
]
