"""
Attribute expressions: literals, references to another node's output, and
string templates interpolating references.

Parsers turn declaration syntax into these objects once; the graph builder
reads edges from them statically and the engine resolves them against
recorded state right before a node is applied.
"""
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Tuple, Union

# "${name.attribute}" inside a string
INTERPOLATION_RE = re.compile(r"\$\{\s*([A-Za-z][\w-]*)\.([A-Za-z_][\w]*)\s*\}")


@dataclass(frozen=True)
class Reference:
    node: str
    attribute: str

    def __str__(self) -> str:
        return f"{self.node}.{self.attribute}"


@dataclass(frozen=True)
class Template:
    parts: Tuple[Union[str, Reference], ...]

    def __str__(self) -> str:
        return "".join(p if isinstance(p, str) else "${" + str(p) + "}" for p in self.parts)


class _Unknown:
    """Placeholder for a value that only exists once a dependency is applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = _Unknown()


def parse_template(text: str) -> Any:
    """
    Split a string on ${node.attr} markers.

    A string that is exactly one marker becomes a bare Reference so that
    non-string outputs (lists, numbers) pass through unchanged.
    """
    matches = list(INTERPOLATION_RE.finditer(text))
    if not matches:
        return text
    if len(matches) == 1 and matches[0].span() == (0, len(text)):
        m = matches[0]
        return Reference(m.group(1), m.group(2))

    parts: List[Union[str, Reference]] = []
    pos = 0
    for m in matches:
        if m.start() > pos:
            parts.append(text[pos:m.start()])
        parts.append(Reference(m.group(1), m.group(2)))
        pos = m.end()
    if pos < len(text):
        parts.append(text[pos:])
    return Template(tuple(parts))


def references(value: Any) -> List[Reference]:
    """Every Reference reachable from value, in encounter order, deduplicated."""
    found: List[Reference] = []

    def _walk(v: Any) -> None:
        if isinstance(v, Reference):
            if v not in found:
                found.append(v)
        elif isinstance(v, Template):
            for p in v.parts:
                _walk(p)
        elif isinstance(v, dict):
            for item in v.values():
                _walk(item)
        elif isinstance(v, (list, tuple)):
            for item in v:
                _walk(item)

    _walk(value)
    return found


def resolve(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """
    Substitute references using lookup.

    If lookup returns UNKNOWN for any part of a template, the whole template
    is UNKNOWN.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Template):
        out = []
        for p in value.parts:
            if isinstance(p, Reference):
                v = lookup(p)
                if v is UNKNOWN:
                    return UNKNOWN
                out.append(str(v))
            else:
                out.append(p)
        return "".join(out)
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve(v, lookup) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def to_source(value: Any) -> Any:
    """Render expressions back into plain data, for reports and JSON."""
    if isinstance(value, Reference):
        return "${" + str(value) + "}"
    if isinstance(value, Template):
        return str(value)
    if value is UNKNOWN:
        return str(UNKNOWN)
    if isinstance(value, dict):
        return {k: to_source(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_source(v) for v in value]
    return value
