from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from converge.errors import StateCorruptionError

STATUS_APPLIED = "applied"
STATUS_PENDING = "pending"

FORMAT_VERSION = 1


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class ObservedState:
    name: str
    resource_type: str
    identity: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    protect_from_destroy: bool = False
    dependencies: List[str] = field(default_factory=list)
    status: str = STATUS_APPLIED
    pending_token: Optional[str] = None
    pending_action: Optional[str] = None
    updated_at: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "resource_type": self.resource_type,
            "identity": self.identity,
            "attributes": self.attributes,
            "protect_from_destroy": self.protect_from_destroy,
            "dependencies": list(self.dependencies),
            "status": self.status,
            "pending_token": self.pending_token,
            "pending_action": self.pending_action,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ObservedState":
        if not isinstance(data, dict):
            raise StateCorruptionError(f"resource record is not an object: {data!r}")
        try:
            name = data["name"]
            resource_type = data["resource_type"]
        except KeyError as exc:
            raise StateCorruptionError(f"resource record missing {exc.args[0]!r}") from None
        status = data.get("status", STATUS_APPLIED)
        if status not in (STATUS_APPLIED, STATUS_PENDING):
            raise StateCorruptionError(f"unknown status {status!r}", node=name)
        attributes = data.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise StateCorruptionError("attributes is not an object", node=name)
        return cls(
            name=name,
            resource_type=resource_type,
            identity=data.get("identity"),
            attributes=attributes,
            protect_from_destroy=bool(data.get("protect_from_destroy", False)),
            dependencies=list(data.get("dependencies") or []),
            status=status,
            pending_token=data.get("pending_token"),
            pending_action=data.get("pending_action"),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class StateSnapshot:
    serial: int = 0
    lineage: str = ""
    resources: Dict[str, ObservedState] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "format_version": FORMAT_VERSION,
            "serial": self.serial,
            "lineage": self.lineage,
            "resources": {n: s.to_dict() for n, s in sorted(self.resources.items())},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StateSnapshot":
        if not isinstance(data, dict):
            raise StateCorruptionError("state snapshot is not an object")
        if data.get("format_version") != FORMAT_VERSION:
            raise StateCorruptionError(
                f"unsupported state format_version {data.get('format_version')!r}"
            )
        serial = data.get("serial")
        if not isinstance(serial, int) or serial < 0:
            raise StateCorruptionError(f"invalid serial {serial!r}")
        raw = data.get("resources")
        if not isinstance(raw, dict):
            raise StateCorruptionError("resources is not an object")
        resources = {}
        for key, record in raw.items():
            state = ObservedState.from_dict(record)
            if state.name != key:
                raise StateCorruptionError(f"record keyed {key!r} names {state.name!r}")
            resources[key] = state
        return cls(serial=serial, lineage=str(data.get("lineage", "")), resources=resources)
