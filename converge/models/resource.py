from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from converge.models.expression import Reference, references


@dataclass(frozen=True)
class ResourceNode:
    name: str              # logical name, unique within the declaration
    resource_type: str     # e.g. "object-store-bucket", "assumable-role"
    attributes: Dict[str, Any] = field(default_factory=dict)
    protect_from_destroy: bool = False
    depends_on: Tuple[str, ...] = ()
    source_file: str = ""

    @property
    def references(self) -> List[Reference]:
        return references(self.attributes)

    @property
    def dependency_names(self) -> List[str]:
        """Nodes this node reads from or is explicitly ordered after."""
        names = [r.node for r in self.references]
        for d in self.depends_on:
            if d not in names:
                names.append(d)
        return names


@dataclass(frozen=True)
class OutputValue:
    name: str
    value: Any
    description: str = ""
    source_file: str = ""


@dataclass
class Declaration:
    """Everything read from the declaration files of one project."""

    resources: List[ResourceNode] = field(default_factory=list)
    outputs: List[OutputValue] = field(default_factory=list)

    def extend(self, other: "Declaration") -> None:
        self.resources.extend(other.resources)
        self.outputs.extend(other.outputs)
