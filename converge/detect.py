import json
import os

import yaml

# Loader that tolerates the declaration tags (!Ref, !GetAtt, !Sub) without
# raising an error, so detect_format can read YAML declarations.
class _TagTolerantLoader(yaml.SafeLoader):
    pass

_TagTolerantLoader.add_multi_constructor(
    "!",
    lambda loader, suffix, node: loader.construct_yaml_str(node)
    if isinstance(node, yaml.ScalarNode) else None,
)


def _is_declaration(doc) -> bool:
    if not isinstance(doc, dict):
        return False
    resources = doc.get("resources")
    if isinstance(resources, dict) and resources:
        return all(isinstance(v, dict) and "type" in v for v in resources.values())
    return "outputs" in doc and isinstance(doc["outputs"], dict)


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'yaml' or 'unknown'.

    JSON declarations share the YAML document layout and report as 'yaml'.
    A .json or .yaml file that cannot be read also reports as 'yaml' so the
    parser raises instead of the file silently dropping out of the directory.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "terraform"

    if ext == ".json":
        try:
            with open(filepath) as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "yaml"
        return "yaml" if _is_declaration(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                doc = yaml.load(fh, Loader=_TagTolerantLoader)
        except (OSError, yaml.YAMLError):
            return "yaml"
        if _is_declaration(doc):
            return "yaml"

    return "unknown"
