"""
YAML / JSON declaration parser.

    resources:
      state:
        type: object-store-bucket
        protect_from_destroy: true
        properties:
          bucket: acme-state
      reader:
        type: assumable-role
        depends_on: [state]
        properties:
          name: !Sub "${state.id}-reader"
    outputs:
      state_arn:
        value: !GetAtt state.arn

!Ref name is the identity of another resource (its `id` output); !GetAtt
name.attr (or [name, attr]) reads any attribute; !Sub and plain strings
interpolate ${name.attr}. JSON files use {"Ref": ...}, {"Fn::GetAtt": ...}
and {"Fn::Sub": ...} objects for the same.
"""
import json
import os
from typing import Any, Dict

import yaml

from converge.detect import detect_format
from converge.errors import DeclarationError
from converge.models.expression import Reference, parse_template
from converge.models.resource import Declaration, OutputValue, ResourceNode

_NODE_KEYS = {"type", "properties", "protect_from_destroy", "depends_on", "description"}


# ------------------------------------------------------------------ YAML loader
# !Ref / !GetAtt / !Sub become single-key marker dicts, the same shape a JSON
# declaration uses, so one converter handles both.

class _DeclarationLoader(yaml.SafeLoader):
    pass


def _tag_constructor(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Any:
    """Convert any !Tag into {"Tag": value} so downstream code can traverse it."""
    if isinstance(node, yaml.ScalarNode):
        return {tag_suffix: loader.construct_scalar(node)}
    if isinstance(node, yaml.SequenceNode):
        return {tag_suffix: loader.construct_sequence(node, deep=True)}
    if isinstance(node, yaml.MappingNode):
        return {tag_suffix: loader.construct_mapping(node, deep=True)}
    return {tag_suffix: None}


_DeclarationLoader.add_multi_constructor("!", _tag_constructor)


def _marker(val: Dict[str, Any]):
    if len(val) != 1:
        return None
    key = next(iter(val))
    return key[4:] if key.startswith("Fn::") else key


def _convert(val: Any, owner: str) -> Any:
    if isinstance(val, dict):
        marker = _marker(val)
        if marker == "Ref":
            target = val[next(iter(val))]
            if not isinstance(target, str):
                raise DeclarationError(f"!Ref expects a resource name, got {target!r}", node=owner)
            return Reference(target, "id")
        if marker == "GetAtt":
            target = val[next(iter(val))]
            if isinstance(target, str) and "." in target:
                node, attr = target.split(".", 1)
            elif isinstance(target, list) and len(target) == 2:
                node, attr = target
            else:
                raise DeclarationError(f"!GetAtt expects name.attribute, got {target!r}", node=owner)
            return Reference(str(node), str(attr))
        if marker == "Sub":
            target = val[next(iter(val))]
            if not isinstance(target, str):
                raise DeclarationError(f"!Sub expects a string, got {target!r}", node=owner)
            return parse_template(target)
        return {k: _convert(v, owner) for k, v in val.items()}
    if isinstance(val, list):
        return [_convert(v, owner) for v in val]
    if isinstance(val, str):
        return parse_template(val)
    return val


def _load(filepath: str) -> Any:
    _, ext = os.path.splitext(filepath.lower())
    try:
        with open(filepath) as fh:
            if ext == ".json":
                return json.load(fh)
            return yaml.load(fh, Loader=_DeclarationLoader)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise DeclarationError(f"failed to parse {filepath}: {exc}") from exc


def parse_file(filepath: str) -> Declaration:
    doc = _load(filepath)
    decl = Declaration()
    if doc is None:
        return decl
    if not isinstance(doc, dict):
        raise DeclarationError(f"{filepath}: top level must be a mapping")

    resources = doc.get("resources") or {}
    if not isinstance(resources, dict):
        raise DeclarationError(f"{filepath}: 'resources' must be a mapping")

    for name, definition in resources.items():
        name = str(name)
        if not isinstance(definition, dict) or "type" not in definition:
            raise DeclarationError(f"resource has no type in {filepath}", node=name)
        unknown = sorted(set(definition) - _NODE_KEYS)
        if unknown:
            raise DeclarationError(f"unknown key(s) {', '.join(unknown)} in {filepath}", node=name)
        properties = definition.get("properties") or {}
        if not isinstance(properties, dict):
            raise DeclarationError(f"properties must be a mapping in {filepath}", node=name)
        depends_on = definition.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]

        decl.resources.append(ResourceNode(
            name=name,
            resource_type=str(definition["type"]),
            attributes=_convert(properties, name),
            protect_from_destroy=bool(definition.get("protect_from_destroy", False)),
            depends_on=tuple(str(d) for d in depends_on),
            source_file=filepath,
        ))

    outputs = doc.get("outputs") or {}
    if not isinstance(outputs, dict):
        raise DeclarationError(f"{filepath}: 'outputs' must be a mapping")
    for name, body in outputs.items():
        if isinstance(body, dict) and "value" in body:
            value, description = body["value"], str(body.get("description", ""))
        else:
            value, description = body, ""
        decl.outputs.append(OutputValue(
            name=str(name),
            value=_convert(value, f"output.{name}"),
            description=description,
            source_file=filepath,
        ))

    return decl


def parse_directory(path: str) -> Declaration:
    decl = Declaration()

    if os.path.isfile(path):
        if detect_format(path) == "yaml":
            decl.extend(parse_file(path))
        return decl

    for root, dirs, files in os.walk(path):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "yaml":
                decl.extend(parse_file(fpath))

    return decl
