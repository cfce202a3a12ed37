"""
Provider interface: one ResourceProvider per resource type, looked up
through a ProviderRegistry.

Every call must be safe to repeat. create/update/destroy receive a
client-supplied idempotency token; a provider that sees the same token twice
returns the outcome of the first call instead of acting again.
"""
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from converge.errors import DeclarationError


@dataclass(frozen=True)
class ResourceSchema:
    type_name: str
    required: FrozenSet[str] = frozenset()
    optional: Dict[str, Any] = field(default_factory=dict)   # name -> default
    immutable: FrozenSet[str] = frozenset()
    outputs: FrozenSet[str] = frozenset()

    @property
    def inputs(self) -> FrozenSet[str]:
        return self.required | frozenset(self.optional)

    def has_attribute(self, name: str) -> bool:
        return name in self.inputs or name in self.outputs

    def with_defaults(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        merged = copy.deepcopy(self.optional)
        merged.update(attributes)
        return merged

    def validate(self, node_name: str, attributes: Dict[str, Any]) -> None:
        missing = sorted(self.required - set(attributes))
        if missing:
            raise DeclarationError(
                f"{self.type_name} is missing required attribute(s): {', '.join(missing)}",
                node=node_name,
            )
        unknown = sorted(set(attributes) - self.inputs)
        if unknown:
            raise DeclarationError(
                f"{self.type_name} has no attribute(s): {', '.join(unknown)}",
                node=node_name,
            )


class ResourceProvider(ABC):
    schema: ResourceSchema

    @abstractmethod
    def describe(self, identity: str) -> Optional[Dict[str, Any]]:
        """Live attributes, or None when the resource does not exist."""

    @abstractmethod
    def create(self, attributes: Dict[str, Any], token: str) -> Tuple[str, Dict[str, Any]]:
        """Create the resource; return (identity, live attributes)."""

    @abstractmethod
    def update(self, identity: str, changes: Dict[str, Any], token: str) -> Dict[str, Any]:
        """Apply changed mutable attributes; return live attributes."""

    @abstractmethod
    def destroy(self, identity: str, token: str) -> None:
        """Delete the resource. Deleting an absent resource is not an error."""


class ProviderRegistry:
    def __init__(self, providers: Iterable[ResourceProvider] = ()):
        self._providers: Dict[str, ResourceProvider] = {}
        for p in providers:
            self.register(p)

    def register(self, provider: ResourceProvider) -> None:
        self._providers[provider.schema.type_name] = provider

    def get(self, resource_type: str) -> ResourceProvider:
        try:
            return self._providers[resource_type]
        except KeyError:
            raise DeclarationError(
                f"unknown resource type '{resource_type}' (known: {', '.join(self.types)})"
            ) from None

    def schema(self, resource_type: str) -> ResourceSchema:
        return self.get(resource_type).schema

    def __contains__(self, resource_type: str) -> bool:
        return resource_type in self._providers

    @property
    def types(self) -> List[str]:
        return sorted(self._providers)
