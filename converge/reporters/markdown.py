"""
Markdown + Mermaid plan report generator.
"""
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jinja2 import Environment

from converge import __version__
from converge.graph import ResourceGraph
from converge.models.expression import to_source
from converge.models.plan import Action, PassResult, Plan

_ACTION_SYMBOL = {
    "create": "+",
    "update": "~",
    "replace": "-/+",
    "no-op": " ",
    "destroy": "-",
}

_ACTION_STYLE = {
    "create": "fill:#88cc00,color:#000",
    "update": "fill:#ffcc00,color:#000",
    "replace": "fill:#ff8800,color:#fff",
    "destroy": "fill:#ff4444,color:#fff",
}

_STATUS_STYLE = {
    "failed": "fill:#ff4444,color:#fff",
    "skipped": "fill:#bbbbbb,color:#000",
    "cancelled": "fill:#bbbbbb,color:#000",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _render_value(value: Any) -> str:
    value = to_source(value)
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def _build_mermaid(graph: Optional[ResourceGraph], plan: Plan, result: Optional[PassResult]) -> str:
    lines = ["flowchart LR"]
    for e in plan.entries:
        node_id = _sanitize_node_id(e.name)
        shape = f"[/{e.name}/]" if e.protected else f"[{e.name}]"
        lines.append(f"    {node_id}{shape}")

    # Edges point from the dependency to the node that reads it
    if graph is not None:
        for src, dst in graph.edges():
            if plan.entry(src) and plan.entry(dst):
                lines.append(f"    {_sanitize_node_id(src)} --> {_sanitize_node_id(dst)}")

    for e in plan.entries:
        style = _ACTION_STYLE.get(e.action.value, "")
        if result is not None:
            status = result.status_of(e.name)
            if status is not None:
                style = _STATUS_STYLE.get(status.value, style)
        if style:
            lines.append(f"    style {_sanitize_node_id(e.name)} {style}")
    return "\n".join(lines)


_TEMPLATE = """\
# {% if result %}Apply{% else %}Plan{% endif %} Report

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** converge v{{ version }}

---

## Summary

{% if plan.destroy_mode %}Destroy requested for every recorded resource.
{% endif %}{% for action in actions %}
- **{{ action }}**: {{ counts[action] }}{% endfor %}

{% if not plan.has_changes %}
No changes. The infrastructure matches the declaration.
{% endif %}
---

## Resources

| Action | Resource | Type | Protected | Note |
|--------|----------|------|-----------|------|
{% for e in plan.entries %}| `{{ symbol[e.action.value] }}` {{ e.action.value }} | `{{ e.name }}` | `{{ e.resource_type }}` | {{ "yes" if e.protected else "" }} | {{ e.reason }} |
{% endfor %}
{% if result %}
---

## Results

| Resource | Action | Status | Error |
|----------|--------|--------|-------|
{% for r in results %}| `{{ r.name }}` | {{ r.action.value }} | {{ r.status.value }} | {{ r.message }} |
{% endfor %}
{% endif %}
---

## Changes
{% for e in plan.entries if e.diffs %}
### {{ symbol[e.action.value] }} {{ e.resource_type }}.{{ e.name }}

| Attribute | Before | After | Forces replacement |
|-----------|--------|-------|--------------------|
{% for d in e.diffs %}| `{{ d.attribute }}` | `{{ render(d.before) }}` | `{{ render(d.after) }}` | {{ "yes" if d.requires_replace else "" }} |
{% endfor %}{% endfor %}
{% if outputs %}
---

## Outputs

| Name | Value |
|------|-------|
{% for name, value in outputs.items() %}| `{{ name }}` | `{{ render(value) }}` |
{% endfor %}{% endif %}
## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(
    plan: Plan,
    source_path: str,
    graph: Optional[ResourceGraph] = None,
    result: Optional[PassResult] = None,
    ascii_mode: bool = False,
) -> str:
    counts: Dict[str, int] = plan.count_by_action()
    symbol = dict(_ACTION_SYMBOL)
    if not ascii_mode:
        symbol["replace"] = "±"

    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    results = []
    if result is not None:
        results = [result.results[e.name] for e in plan.entries if e.name in result.results]

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        plan=plan,
        actions=[a.value for a in Action],
        counts=counts,
        symbol=symbol,
        result=result,
        results=results,
        outputs=result.outputs if result is not None else {},
        render=_render_value,
        mermaid=_build_mermaid(graph, plan, result),
    )
