"""
Typed expression tree for declaration attribute values.

Every string in a resource block is parsed once into this tree. ``${...}``
interpolations become ``Reference`` nodes, so dependency inference and
evaluation walk nodes instead of matching strings. ``$${`` escapes a
literal ``${``.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from .exceptions import ParseError, UndefinedReferenceError

_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$|^[0-9]+$")


class _Unknown:
    """Placeholder for a value only known once a dependency has been applied"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"


UNKNOWN = _Unknown()


@dataclass
class Literal:
    value: Any


@dataclass
class Reference:
    """``var.<name>[.path]`` or ``<type>.<name>.<attr>[.path]``"""
    kind: str
    address: str
    path: Tuple[str, ...] = ()
    location: Optional[str] = field(default=None, compare=False)

    @property
    def is_variable(self) -> bool:
        return self.kind == "var"

    @property
    def variable_name(self) -> str:
        return self.address.split(".", 1)[1]

    def __str__(self) -> str:
        return ".".join((self.address,) + tuple(self.path))


@dataclass
class Template:
    parts: Tuple[Union[str, Reference], ...]


@dataclass
class ListExpr:
    items: Tuple["Expression", ...]


@dataclass
class MapExpr:
    items: Dict[str, "Expression"]


Expression = Union[Literal, Reference, Template, ListExpr, MapExpr]


def parse_reference(text: str, location: Optional[str] = None) -> Reference:
    """Parse the inside of a ``${...}`` interpolation"""
    segments = text.split(".")
    if not text or not all(_SEGMENT.match(s) for s in segments):
        raise ParseError(f"Malformed reference '${{{text}}}'", location)

    if segments[0] == "var":
        if len(segments) < 2:
            raise ParseError(f"Variable reference '${{{text}}}' needs a name", location)
        return Reference("var", f"var.{segments[1]}", tuple(segments[2:]), location)

    if len(segments) < 3:
        raise ParseError(
            f"Resource reference '${{{text}}}' must name an attribute (<type>.<name>.<attribute>)",
            location
        )
    return Reference("resource", f"{segments[0]}.{segments[1]}", tuple(segments[2:]), location)


def parse_string(text: str, location: Optional[str] = None) -> Expression:
    """Parse a string that may contain ``${...}`` interpolations"""
    parts: List[Union[str, Reference]] = []
    buf: List[str] = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            buf.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = text.find("}", i + 2)
            if end == -1:
                raise ParseError(f"Unterminated interpolation in {text!r}", location)
            if buf:
                parts.append("".join(buf))
                buf = []
            parts.append(parse_reference(text[i + 2:end].strip(), location))
            i = end + 1
            continue
        buf.append(text[i])
        i += 1
    if buf:
        parts.append("".join(buf))

    if not parts:
        return Literal("")
    if len(parts) == 1:
        return Literal(parts[0]) if isinstance(parts[0], str) else parts[0]
    return Template(tuple(parts))


def parse_value(value: Any, location: Optional[str] = None) -> Expression:
    """Build an expression tree from plain Python data"""
    if isinstance(value, str):
        return parse_string(value, location)
    if isinstance(value, dict):
        return MapExpr({str(k): parse_value(v, location) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return ListExpr(tuple(parse_value(v, location) for v in value))
    return Literal(value)


def iter_references(expr: Expression) -> Iterator[Reference]:
    """Yield every reference in the tree, depth first, in source order"""
    if isinstance(expr, Reference):
        yield expr
    elif isinstance(expr, Template):
        for part in expr.parts:
            if isinstance(part, Reference):
                yield part
    elif isinstance(expr, ListExpr):
        for item in expr.items:
            yield from iter_references(item)
    elif isinstance(expr, MapExpr):
        for item in expr.items.values():
            yield from iter_references(item)


def resolve_path(value: Any, path: Tuple[str, ...]) -> Any:
    """Walk nested maps and lists; raises KeyError when a segment is missing"""
    for segment in path:
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(value, dict) and segment in value:
            value = value[segment]
        elif isinstance(value, list) and segment.isdigit() and int(segment) < len(value):
            value = value[int(segment)]
        else:
            raise KeyError(segment)
    return value


def format_value(value: Any) -> str:
    """String form of a value interpolated into a template"""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if value is None:
        return ""
    return str(value)


def evaluate(expr: Expression, resolve: Callable[[Reference], Any]) -> Any:
    """Evaluate an expression tree

    Args:
        expr: Expression to evaluate
        resolve: Returns the value of a reference, or UNKNOWN

    Returns:
        Plain Python data, possibly containing UNKNOWN
    """
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Reference):
        return resolve(expr)
    if isinstance(expr, Template):
        rendered = []
        for part in expr.parts:
            if isinstance(part, Reference):
                value = resolve(part)
                if contains_unknown(value):
                    return UNKNOWN
                rendered.append(format_value(value))
            else:
                rendered.append(part)
        return "".join(rendered)
    if isinstance(expr, ListExpr):
        return [evaluate(item, resolve) for item in expr.items]
    if isinstance(expr, MapExpr):
        return {key: evaluate(item, resolve) for key, item in expr.items.items()}
    raise TypeError(f"Not an expression: {expr!r}")


def substitute_variables(expr: Expression, values: Dict[str, Any]) -> Expression:
    """Replace variable references with literal values, leaving resource references"""

    def lookup(ref: Reference) -> Any:
        name = ref.variable_name
        if name not in values:
            raise UndefinedReferenceError(str(ref), ref.location)
        try:
            return resolve_path(values[name], ref.path)
        except KeyError:
            raise UndefinedReferenceError(str(ref), ref.location)

    if isinstance(expr, Reference):
        return Literal(lookup(expr)) if expr.is_variable else expr
    if isinstance(expr, Template):
        parts: List[Union[str, Reference]] = []
        for part in expr.parts:
            if isinstance(part, Reference) and part.is_variable:
                part = format_value(lookup(part))
            if isinstance(part, str) and parts and isinstance(parts[-1], str):
                parts[-1] += part
            else:
                parts.append(part)
        if all(isinstance(p, str) for p in parts):
            return Literal("".join(parts))
        return Template(tuple(parts))
    if isinstance(expr, ListExpr):
        return ListExpr(tuple(substitute_variables(i, values) for i in expr.items))
    if isinstance(expr, MapExpr):
        return MapExpr({k: substitute_variables(v, values) for k, v in expr.items.items()})
    return expr


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False
