"""
JSON plan / apply report generator.
"""
import json
from datetime import datetime, timezone
from typing import Optional

from converge import __version__
from converge.graph import ResourceGraph
from converge.models.plan import PassResult, Plan


def build_report(
    plan: Plan,
    source_path: str,
    graph: Optional[ResourceGraph] = None,
    result: Optional[PassResult] = None,
) -> str:
    report = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "converge",
            "version": __version__,
        },
        "summary": plan.count_by_action(),
        "plan": plan.to_dict(),
    }
    if graph is not None:
        report["graph"] = {
            "order": graph.apply_order(),
            "edges": [list(e) for e in graph.edges()],
        }
    if result is not None:
        applied = result.to_dict()
        report["ok"] = applied["ok"]
        report["results"] = applied["results"]
        report["outputs"] = applied["outputs"]
    return json.dumps(report, indent=2)
