from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from converge.models.expression import to_source


class Action(str, Enum):
    CREATE  = "create"
    UPDATE  = "update"
    REPLACE = "replace"
    NO_OP   = "no-op"
    DESTROY = "destroy"


class NodeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED    = "failed"
    SKIPPED   = "skipped"
    CANCELLED = "cancelled"


@dataclass
class AttributeDiff:
    attribute: str
    before: Any
    after: Any
    requires_replace: bool = False

    def to_dict(self) -> dict:
        return {
            "attribute": self.attribute,
            "before": to_source(self.before),
            "after": to_source(self.after),
            "requires_replace": self.requires_replace,
        }


@dataclass
class PlanEntry:
    name: str
    resource_type: str
    action: Action
    diffs: List[AttributeDiff] = field(default_factory=list)
    protected: bool = False
    reason: str = ""

    @property
    def changes(self) -> bool:
        return self.action != Action.NO_OP

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "resource_type": self.resource_type,
            "action": self.action.value,
            "protected": self.protected,
            "reason": self.reason,
            "diffs": [d.to_dict() for d in self.diffs],
        }


@dataclass
class Plan:
    entries: List[PlanEntry] = field(default_factory=list)
    destroy_mode: bool = False

    def entry(self, name: str) -> Optional[PlanEntry]:
        return next((e for e in self.entries if e.name == name), None)

    @property
    def has_changes(self) -> bool:
        return any(e.changes for e in self.entries)

    def count_by_action(self) -> Dict[str, int]:
        return {a.value: sum(1 for e in self.entries if e.action == a) for a in Action}

    def to_dict(self) -> dict:
        return {
            "destroy_mode": self.destroy_mode,
            "summary": self.count_by_action(),
            "entries": [e.to_dict() for e in self.entries],
        }


@dataclass
class NodeResult:
    name: str
    action: Action
    status: NodeStatus
    error: Optional[Exception] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def message(self) -> str:
        return str(self.error) if self.error is not None else ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "action": self.action.value,
            "status": self.status.value,
            "error": self.message or None,
            "error_type": type(self.error).__name__ if self.error is not None else None,
        }


@dataclass
class PassResult:
    plan: Plan
    results: Dict[str, NodeResult] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> List[NodeResult]:
        return [r for r in self.results.values() if r.status == NodeStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed and all(
            r.status == NodeStatus.SUCCEEDED for r in self.results.values()
        )

    def status_of(self, name: str) -> Optional[NodeStatus]:
        r = self.results.get(name)
        return r.status if r else None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "plan": self.plan.to_dict(),
            "results": [self.results[e.name].to_dict() for e in self.plan.entries if e.name in self.results],
            "outputs": to_source(self.outputs),
        }
