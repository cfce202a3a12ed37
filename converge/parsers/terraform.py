import os
import re
from typing import Any, Dict, List, Sequence, Tuple

import hcl2
from rich.console import Console

from converge.detect import detect_format
from converge.errors import DeclarationError, UnresolvedReferenceError
from converge.models.expression import Reference, Template
from converge.models.resource import Declaration, OutputValue, ResourceNode

console = Console(stderr=True)

# ${object_store_bucket.state.arn}
_REF_RE = re.compile(r"\$\{\s*([a-z][a-z0-9_-]*)\.([A-Za-z][\w-]*)\.([A-Za-z_]\w*)\s*\}")
# ${object_store_bucket.state}, as used by depends_on
_NODE_RE = re.compile(r"^\$\{\s*([a-z][a-z0-9_-]*)\.([A-Za-z][\w-]*)\s*\}$")

_LIFECYCLE_KEYS = {"prevent_destroy"}

# (owner, referenced type, referenced name) collected while parsing so the
# type half of a reference can be checked once every file is loaded
TypedRef = Tuple[str, str, str]


def normalize_type(resource_type: str) -> str:
    """HCL identifiers use underscores; resource type tags use hyphens."""
    return resource_type.replace("_", "-")


def _strip_quotes(val: str) -> str:
    # newer python-hcl2 releases keep the quotes of string literals
    if len(val) >= 2 and val[0] == '"' and val[-1] == '"':
        return val[1:-1]
    return val


def _clean(val: Any) -> Any:
    """Drop python-hcl2 line metadata and literal quotes."""
    if isinstance(val, dict):
        return {_strip_quotes(k): _clean(v) for k, v in val.items() if not str(k).startswith("__")}
    if isinstance(val, list):
        return [_clean(v) for v in val]
    if isinstance(val, str):
        return _strip_quotes(val)
    return val


def _to_expression(val: Any, owner: str, typed: List[TypedRef]) -> Any:
    """Turn ${type.name.attr} strings into References and Templates."""
    if isinstance(val, dict):
        return {k: _to_expression(v, owner, typed) for k, v in val.items()}
    if isinstance(val, list):
        return [_to_expression(v, owner, typed) for v in val]
    if not isinstance(val, str):
        return val

    matches = list(_REF_RE.finditer(val))
    if not matches:
        return val
    for m in matches:
        typed.append((owner, normalize_type(m.group(1)), m.group(2)))
    if len(matches) == 1 and matches[0].span() == (0, len(val)):
        return Reference(matches[0].group(2), matches[0].group(3))

    parts: List[Any] = []
    pos = 0
    for m in matches:
        if m.start() > pos:
            parts.append(val[pos:m.start()])
        parts.append(Reference(m.group(2), m.group(3)))
        pos = m.end()
    if pos < len(val):
        parts.append(val[pos:])
    return Template(tuple(parts))


def _as_bool(val: Any) -> bool:
    if isinstance(val, str):
        return val.strip().lower() == "true"
    return bool(val)


def _lifecycle(props: Dict[str, Any], owner: str) -> bool:
    block = props.pop("lifecycle", None)
    if block is None:
        return False
    # python-hcl2 wraps blocks in a list
    if isinstance(block, list):
        block = block[0] if len(block) == 1 else {}
    if not isinstance(block, dict):
        raise DeclarationError("lifecycle must be a block", node=owner)
    unknown = sorted(set(block) - _LIFECYCLE_KEYS)
    if unknown:
        raise DeclarationError(f"unsupported lifecycle setting(s): {', '.join(unknown)}", node=owner)
    return _as_bool(block.get("prevent_destroy", False))


def _depends_on(props: Dict[str, Any], owner: str, typed: List[TypedRef]) -> Tuple[str, ...]:
    raw = props.pop("depends_on", None) or []
    if not isinstance(raw, list):
        raw = [raw]
    names = []
    for item in raw:
        m = _NODE_RE.match(str(item))
        if not m:
            raise DeclarationError(f"depends_on entry {item!r} is not a resource address", node=owner)
        typed.append((owner, normalize_type(m.group(1)), m.group(2)))
        names.append(m.group(2))
    return tuple(names)


def _resource_instances(resource_block: Dict[str, Any]):
    for resource_type, instances in resource_block.items():
        if isinstance(instances, dict):
            instances = [instances]
        if not isinstance(instances, list):
            continue
        # hcl2 wraps the block in a list
        for instance_map in instances:
            if not isinstance(instance_map, dict):
                continue
            for name, raw_props in instance_map.items():
                yield resource_type, name, raw_props


def _parse(filepath: str, typed: List[TypedRef]) -> Declaration:
    try:
        with open(filepath) as fh:
            data = hcl2.load(fh)
    except Exception as exc:
        raise DeclarationError(f"failed to parse {filepath}: {exc}") from exc

    decl = Declaration()
    for resource_block in data.get("resource", []):
        for raw_type, raw_name, raw_props in _resource_instances(resource_block):
            resource_type = normalize_type(_strip_quotes(raw_type))
            name = _strip_quotes(raw_name)
            props = _clean(raw_props) if isinstance(raw_props, dict) else {}
            protect = _lifecycle(props, name)
            depends_on = _depends_on(props, name, typed)
            decl.resources.append(ResourceNode(
                name=name,
                resource_type=resource_type,
                attributes=_to_expression(props, name, typed),
                protect_from_destroy=protect,
                depends_on=depends_on,
                source_file=filepath,
            ))

    for output_block in data.get("output", []):
        for raw_name, body in output_block.items():
            name = _strip_quotes(raw_name)
            body = _clean(body[0] if isinstance(body, list) and body else body)
            if not isinstance(body, dict) or "value" not in body:
                raise DeclarationError(f"output '{name}' has no value in {filepath}")
            decl.outputs.append(OutputValue(
                name=name,
                value=_to_expression(body["value"], f"output.{name}", typed),
                description=str(body.get("description", "")),
                source_file=filepath,
            ))
    return decl


def _check_typed_refs(decl: Declaration, typed: List[TypedRef]) -> None:
    types = {r.name: r.resource_type for r in decl.resources}
    for owner, ref_type, ref_name in typed:
        actual = types.get(ref_name)
        if actual is not None and actual != ref_type:
            raise UnresolvedReferenceError(
                f"'{ref_type}.{ref_name}' does not exist ('{ref_name}' is a {actual})", node=owner
            )


def parse_files(file_paths: Sequence[str]) -> Declaration:
    decl = Declaration()
    typed: List[TypedRef] = []
    for fp in file_paths:
        decl.extend(_parse(fp, typed))
    _check_typed_refs(decl, typed)
    return decl


def parse_file(filepath: str) -> Declaration:
    return parse_files([filepath])


def parse_directory(path: str) -> Declaration:
    if os.path.isfile(path):
        if detect_format(path) == "terraform":
            return parse_file(path)
        return Declaration()

    file_paths = []
    for root, dirs, files in os.walk(path):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "terraform":
                file_paths.append(fpath)
    if not file_paths:
        console.print(f"[yellow]Warning:[/yellow] no .tf files under {path}")
    return parse_files(file_paths)
