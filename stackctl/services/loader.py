"""
Declaration Loader

Parses YAML declaration documents into a Configuration: resources with typed
expression trees, resolved variables and outputs. Pure transformation, no
provider or state access.
"""
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml
from yaml.constructor import SafeConstructor
from yaml.nodes import MappingNode, Node, ScalarNode, SequenceNode

from config.logging import get_logger
from ..models.data_models import (
    Configuration, Lifecycle, OutputDeclaration, ResourceDeclaration, Variable
)
from ..models.enums import VariableType
from ..models.exceptions import ParseError, UndefinedReferenceError, ValidationError
from ..models.expressions import (
    Expression, ListExpr, Literal, MapExpr, iter_references, parse_string, substitute_variables
)

logger = get_logger("loader")

DECLARATION_PATTERNS = ("*.stack.yaml", "*.stack.yml")
DEFAULT_VAR_FILE = "stackctl.vars.yaml"
VAR_ENV_PREFIX = "STACKCTL_VAR_"
DEFAULT_PROVIDER = "aws"

TOP_LEVEL_KEYS = ("provider", "variables", "resources", "outputs")
RESOURCE_KEYS = ("config", "depends_on", "lifecycle")
VARIABLE_KEYS = ("type", "default", "description", "sensitive")
OUTPUT_KEYS = ("value", "description", "sensitive")
LIFECYCLE_KEYS = ("create_before_destroy", "prevent_destroy")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")
_ADDRESS = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*\.[A-Za-z_][A-Za-z0-9_\-]*$")


def _location(source: str, node: Node) -> str:
    mark = node.start_mark
    return f"{source}:{mark.line + 1}:{mark.column + 1}"


class DeclarationLoader:
    """Loads declaration documents into an in-memory resource graph"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        """Initialize the loader

        Args:
            environ: Environment used for STACKCTL_VAR_* values; defaults to os.environ
        """
        self.environ = os.environ if environ is None else environ
        self._constructor = SafeConstructor()

    def discover(self, directory: str) -> List[Path]:
        """Declaration files in a directory, sorted by name"""
        root = Path(directory)
        files = {p for pattern in DECLARATION_PATTERNS for p in root.glob(pattern)}
        return sorted(files)

    def load_directory(
        self,
        directory: str,
        var_files: Sequence[str] = (),
        cli_vars: Optional[Dict[str, str]] = None
    ) -> Configuration:
        """Load every declaration file in a directory

        ``stackctl.vars.yaml`` in the directory is applied before explicit var files.
        """
        files = self.discover(directory)
        if not files:
            raise ParseError(f"No declaration files ({', '.join(DECLARATION_PATTERNS)}) found in {directory}")

        all_var_files = list(var_files)
        default_vars = Path(directory) / DEFAULT_VAR_FILE
        if default_vars.exists() and str(default_vars) not in all_var_files:
            all_var_files.insert(0, str(default_vars))

        return self.load_documents(
            [(str(p), self._read(p)) for p in files],
            [(f, self._read(Path(f))) for f in all_var_files],
            cli_vars
        )

    def _read(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ParseError(f"Cannot read {path}: {e}")

    def load_documents(
        self,
        documents: Sequence[Tuple[str, str]],
        var_documents: Sequence[Tuple[str, str]] = (),
        cli_vars: Optional[Dict[str, str]] = None
    ) -> Configuration:
        """Load declarations from (source name, YAML text) pairs

        Args:
            documents: Declaration documents in load order
            var_documents: Variable files, later ones win
            cli_vars: ``-var name=value`` overrides as raw strings

        Returns:
            Configuration with variables substituted

        Raises:
            ParseError: Malformed input
            UndefinedReferenceError: Reference to an undeclared variable or resource
            ValidationError: Missing or mistyped variable values
        """
        provider: Optional[Tuple[str, str]] = None
        variables: Dict[str, Variable] = {}
        resources: List[ResourceDeclaration] = []
        outputs: Dict[str, OutputDeclaration] = {}

        for source, text in documents:
            for root in self._compose(source, text):
                if root is None:
                    continue
                if not isinstance(root, MappingNode):
                    raise ParseError("Declaration document must be a mapping", _location(source, root))
                for key_node, value_node in self._pairs(source, root):
                    key = key_node.value
                    if key not in TOP_LEVEL_KEYS:
                        raise ParseError(
                            f"Unknown top-level key '{key}' (expected one of {', '.join(TOP_LEVEL_KEYS)})",
                            _location(source, key_node)
                        )
                    if key == "provider":
                        name = self._scalar_string(source, value_node, "provider")
                        if provider and provider[0] != name:
                            raise ParseError(
                                f"Conflicting provider '{name}', already declared as '{provider[0]}' at {provider[1]}",
                                _location(source, value_node)
                            )
                        provider = (name, _location(source, value_node))
                    elif key == "variables":
                        self._parse_variables(source, value_node, variables)
                    elif key == "resources":
                        self._parse_resources(source, value_node, resources)
                    elif key == "outputs":
                        self._parse_outputs(source, value_node, outputs)

        self._check_references(variables, resources, outputs)
        self._resolve_variables(variables, var_documents, cli_vars or {})

        values = {name: v.value for name, v in variables.items()}
        for resource in resources:
            resource.config = substitute_variables(resource.config, values)
        for output in outputs.values():
            output.value = substitute_variables(output.value, values)

        logger.info(
            "Loaded declarations",
            sources=[s for s, _ in documents],
            resources=len(resources),
            variables=len(variables),
            outputs=len(outputs),
        )
        return Configuration(
            provider=provider[0] if provider else DEFAULT_PROVIDER,
            variables=variables,
            resources=resources,
            outputs=outputs,
            sources=[s for s, _ in documents]
        )

    # YAML helpers

    def _compose(self, source: str, text: str) -> List[Optional[Node]]:
        try:
            return list(yaml.compose_all(text, Loader=yaml.SafeLoader))
        except yaml.MarkedYAMLError as e:
            mark = e.problem_mark or e.context_mark
            location = f"{source}:{mark.line + 1}:{mark.column + 1}" if mark else source
            raise ParseError(f"Invalid YAML: {e.problem or e}", location)
        except yaml.YAMLError as e:
            raise ParseError(f"Invalid YAML: {e}", source)

    def _pairs(self, source: str, node: MappingNode) -> List[Tuple[ScalarNode, Node]]:
        self._constructor.flatten_mapping(node)
        seen = set()
        pairs = []
        for key_node, value_node in node.value:
            if not isinstance(key_node, ScalarNode):
                raise ParseError("Mapping keys must be scalars", _location(source, key_node))
            if key_node.value in seen:
                raise ParseError(f"Duplicate key '{key_node.value}'", _location(source, key_node))
            seen.add(key_node.value)
            pairs.append((key_node, value_node))
        return pairs

    def _mapping(self, source: str, node: Node, what: str) -> List[Tuple[ScalarNode, Node]]:
        if isinstance(node, ScalarNode) and node.tag == "tag:yaml.org,2002:null":
            return []
        if not isinstance(node, MappingNode):
            raise ParseError(f"{what} must be a mapping", _location(source, node))
        return self._pairs(source, node)

    def _plain(self, node: Node) -> Any:
        return self._constructor.construct_object(node, deep=True)

    def _scalar_string(self, source: str, node: Node, what: str) -> str:
        value = self._plain(node) if isinstance(node, ScalarNode) else None
        if not isinstance(value, str) or not value:
            raise ParseError(f"{what} must be a non-empty string", _location(source, node))
        return value

    def _bool(self, source: str, node: Node, what: str) -> bool:
        value = self._plain(node)
        if not isinstance(value, bool):
            raise ParseError(f"{what} must be true or false", _location(source, node))
        return value

    def _expression(self, source: str, node: Node) -> Expression:
        """Build a typed expression tree from a YAML node"""
        location = _location(source, node)
        if isinstance(node, MappingNode):
            return MapExpr({k.value: self._expression(source, v) for k, v in self._pairs(source, node)})
        if isinstance(node, SequenceNode):
            return ListExpr(tuple(self._expression(source, item) for item in node.value))
        value = self._plain(node)
        if isinstance(value, str):
            return parse_string(value, location)
        return Literal(value)

    # Sections

    def _parse_variables(self, source: str, node: Node, variables: Dict[str, Variable]) -> None:
        for name_node, spec_node in self._mapping(source, node, "variables"):
            name = name_node.value
            location = _location(source, name_node)
            if not _IDENTIFIER.match(name):
                raise ParseError(f"Invalid variable name '{name}'", location)
            if name in variables:
                raise ParseError(f"Variable '{name}' already declared at {variables[name].location}", location)

            variable = Variable(name=name, location=location)
            for key_node, value_node in self._mapping(source, spec_node, f"variable '{name}'"):
                key = key_node.value
                if key not in VARIABLE_KEYS:
                    raise ParseError(f"Unknown variable attribute '{key}'", _location(source, key_node))
                if key == "type":
                    type_name = self._scalar_string(source, value_node, "variable type")
                    try:
                        variable.type = VariableType(type_name)
                    except ValueError:
                        raise ParseError(
                            f"Unknown variable type '{type_name}' "
                            f"(expected one of {', '.join(t.value for t in VariableType)})",
                            _location(source, value_node)
                        )
                elif key == "default":
                    variable.default = self._plain(value_node)
                    variable.has_default = True
                elif key == "description":
                    variable.description = str(self._plain(value_node) or "")
                elif key == "sensitive":
                    variable.sensitive = self._bool(source, value_node, "sensitive")
            variables[name] = variable

    def _parse_resources(self, source: str, node: Node, resources: List[ResourceDeclaration]) -> None:
        for type_node, names_node in self._mapping(source, node, "resources"):
            resource_type = type_node.value
            if not _IDENTIFIER.match(resource_type):
                raise ParseError(f"Invalid resource type '{resource_type}'", _location(source, type_node))

            for name_node, block_node in self._mapping(source, names_node, f"resources of type {resource_type}"):
                name = name_node.value
                location = _location(source, name_node)
                if not _IDENTIFIER.match(name):
                    raise ParseError(f"Invalid resource name '{name}'", location)
                address = f"{resource_type}.{name}"
                for existing in resources:
                    if existing.address == address:
                        raise ParseError(f"Resource {address} already declared at {existing.location}", location)

                resource = ResourceDeclaration(type=resource_type, name=name, config=MapExpr({}), location=location)
                for key_node, value_node in self._mapping(source, block_node, f"resource {address}"):
                    key = key_node.value
                    if key not in RESOURCE_KEYS:
                        raise ParseError(
                            f"Unknown attribute '{key}' in resource {address} "
                            f"(expected one of {', '.join(RESOURCE_KEYS)})",
                            _location(source, key_node)
                        )
                    if key == "config":
                        config = self._expression(source, value_node)
                        if isinstance(config, Literal) and config.value is None:
                            config = MapExpr({})
                        if not isinstance(config, MapExpr):
                            raise ParseError(f"config of {address} must be a mapping", _location(source, value_node))
                        resource.config = config
                    elif key == "depends_on":
                        resource.depends_on = self._depends_on(source, value_node, address)
                    elif key == "lifecycle":
                        resource.lifecycle = self._lifecycle(source, value_node, address)
                resources.append(resource)

    def _depends_on(self, source: str, node: Node, address: str) -> List[str]:
        if not isinstance(node, SequenceNode):
            raise ParseError(f"depends_on of {address} must be a list", _location(source, node))
        deps = []
        for item in node.value:
            target = self._plain(item)
            if not isinstance(target, str) or not _ADDRESS.match(target):
                raise ParseError(
                    f"depends_on entries must be resource addresses (<type>.<name>), got {target!r}",
                    _location(source, item)
                )
            deps.append(target)
        return deps

    def _lifecycle(self, source: str, node: Node, address: str) -> Lifecycle:
        lifecycle = Lifecycle()
        for key_node, value_node in self._mapping(source, node, f"lifecycle of {address}"):
            if key_node.value not in LIFECYCLE_KEYS:
                raise ParseError(f"Unknown lifecycle option '{key_node.value}'", _location(source, key_node))
            setattr(lifecycle, key_node.value, self._bool(source, value_node, key_node.value))
        return lifecycle

    def _parse_outputs(self, source: str, node: Node, outputs: Dict[str, OutputDeclaration]) -> None:
        for name_node, spec_node in self._mapping(source, node, "outputs"):
            name = name_node.value
            location = _location(source, name_node)
            if not _IDENTIFIER.match(name):
                raise ParseError(f"Invalid output name '{name}'", location)
            if name in outputs:
                raise ParseError(f"Output '{name}' already declared at {outputs[name].location}", location)

            output = OutputDeclaration(name=name, value=Literal(None), location=location)
            has_value = False
            for key_node, value_node in self._mapping(source, spec_node, f"output '{name}'"):
                key = key_node.value
                if key not in OUTPUT_KEYS:
                    raise ParseError(f"Unknown output attribute '{key}'", _location(source, key_node))
                if key == "value":
                    output.value = self._expression(source, value_node)
                    has_value = True
                elif key == "description":
                    output.description = str(self._plain(value_node) or "")
                elif key == "sensitive":
                    output.sensitive = self._bool(source, value_node, "sensitive")
            if not has_value:
                raise ParseError(f"Output '{name}' needs a value", location)
            outputs[name] = output

    # Cross-reference checks

    def _check_references(
        self,
        variables: Dict[str, Variable],
        resources: List[ResourceDeclaration],
        outputs: Dict[str, OutputDeclaration]
    ) -> None:
        addresses = {r.address for r in resources}

        def check(expr: Expression) -> None:
            for ref in iter_references(expr):
                if ref.is_variable:
                    if ref.variable_name not in variables:
                        raise UndefinedReferenceError(str(ref), ref.location, f"Reference to undeclared variable {ref}")
                elif ref.address not in addresses:
                    raise UndefinedReferenceError(str(ref), ref.location, f"Reference to undeclared resource {ref.address}")

        for resource in resources:
            check(resource.config)
            for target in resource.depends_on:
                if target not in addresses:
                    raise UndefinedReferenceError(
                        target, resource.location,
                        f"{resource.address} depends on undeclared resource {target}"
                    )
        for output in outputs.values():
            check(output.value)

    # Variable resolution

    def _resolve_variables(
        self,
        variables: Dict[str, Variable],
        var_documents: Sequence[Tuple[str, str]],
        cli_vars: Dict[str, str]
    ) -> None:
        """Resolve values: default < environment < var files < -var"""
        resolved = set()
        for variable in variables.values():
            if variable.has_default:
                variable.value = self._coerce(variable, variable.default, "default")
                resolved.add(variable.name)

        for key, raw in self.environ.items():
            if key.startswith(VAR_ENV_PREFIX):
                name = key[len(VAR_ENV_PREFIX):]
                if name in variables:
                    variables[name].value = self._coerce(variables[name], raw, key, from_string=True)
                    resolved.add(name)

        for source, text in var_documents:
            try:
                data = yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise ParseError(f"Invalid YAML in variable file: {e}", source)
            if data is None:
                continue
            if not isinstance(data, dict):
                raise ParseError("Variable file must be a mapping of variable names to values", source)
            for name, value in data.items():
                if name not in variables:
                    logger.warning(f"Variable file {source} sets undeclared variable '{name}'")
                    continue
                variables[name].value = self._coerce(variables[name], value, source)
                resolved.add(name)

        for name, raw in cli_vars.items():
            if name not in variables:
                raise ValidationError(f"Unknown variable '{name}' given with -var", {"variable": name})
            variables[name].value = self._coerce(variables[name], raw, "-var", from_string=True)
            resolved.add(name)

        missing = [v.name for v in variables.values() if v.name not in resolved]
        if missing:
            raise ValidationError(
                f"No value for required variable(s): {', '.join(sorted(missing))}",
                {"variables": sorted(missing)}
            )

    def _coerce(self, variable: Variable, value: Any, origin: str, from_string: bool = False) -> Any:
        expected = variable.type
        if from_string and expected not in (VariableType.STRING, VariableType.ANY):
            try:
                value = yaml.safe_load(value)
            except yaml.YAMLError as e:
                raise ValidationError(f"Variable '{variable.name}' from {origin} is not a valid {expected.value}: {e}")

        if expected == VariableType.STRING and isinstance(value, (int, float, bool)):
            value = ("true" if value else "false") if isinstance(value, bool) else str(value)

        valid = {
            VariableType.STRING: lambda v: isinstance(v, str),
            VariableType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
            VariableType.BOOL: lambda v: isinstance(v, bool),
            VariableType.LIST: lambda v: isinstance(v, list),
            VariableType.MAP: lambda v: isinstance(v, dict),
            VariableType.ANY: lambda v: True,
        }[expected]
        if not valid(value):
            raise ValidationError(
                f"Variable '{variable.name}' from {origin} expects {expected.value}, got {type(value).__name__}",
                {"variable": variable.name, "origin": origin}
            )
        return value
