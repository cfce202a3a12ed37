"""
A simulated cloud control plane for the built-in resource types.

Resources live in memory and, when a path is given, are persisted to a JSON
file after every mutation so separate CLI runs see the same "remote" world.
Fault injection hooks let tests make a given operation fail transiently or
permanently.
"""
import copy
import hashlib
import json
import os
import tempfile
import threading
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from converge.errors import ProviderPermanentError, StateCorruptionError
from converge.providers import schemas
from converge.providers.base import ProviderRegistry, ResourceProvider, ResourceSchema


class SimulatedCloud:
    def __init__(
        self,
        path: Optional[str] = None,
        account_id: str = "123456789012",
        region: str = "eu-west-1",
    ):
        self.path = path
        self.account_id = account_id
        self.region = region
        self._lock = threading.RLock()
        self._resources: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._tokens: Dict[str, str] = {}
        self._faults: Dict[Tuple[str, str], List[Exception]] = {}
        self.calls: List[Tuple[float, str, str, str]] = []
        if path and os.path.exists(path):
            self._load()

    # ------------------------------------------------------------- persistence

    def _load(self) -> None:
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
            self._resources = data["resources"]
            self._tokens = data["tokens"]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StateCorruptionError(f"cannot read simulated cloud at {self.path}: {exc}") from exc

    def _save(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".cloud-")
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
            json.dump({"resources": self._resources, "tokens": self._tokens}, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    # ------------------------------------------------------------- test hooks

    def inject(self, resource_type: str, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of operation on resource_type raise error."""
        with self._lock:
            self._faults.setdefault((resource_type, operation), []).extend([error] * times)

    def delete_out_of_band(self, resource_type: str, identity: str) -> None:
        with self._lock:
            self._resources.get(resource_type, {}).pop(identity, None)
            self._save()

    def modify_out_of_band(self, resource_type: str, identity: str, **attributes: Any) -> None:
        with self._lock:
            self._resources[resource_type][identity].update(attributes)
            self._save()

    def list(self, resource_type: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._resources.get(resource_type, {}))

    def calls_for(self, operation: str) -> List[str]:
        return [identity for _, op, _, identity in self.calls if op == operation]

    # ------------------------------------------------------------- primitives

    def _enter(self, resource_type: str, operation: str, identity: str) -> None:
        self.calls.append((time.monotonic(), operation, resource_type, identity))
        pending = self._faults.get((resource_type, operation))
        if pending:
            raise pending.pop(0)

    def get(self, resource_type: str, identity: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._enter(resource_type, "describe", identity)
            found = self._resources.get(resource_type, {}).get(identity)
            return copy.deepcopy(found) if found is not None else None

    def insert(self, resource_type: str, identity: str, attributes: Dict[str, Any], token: str) -> Tuple[str, Dict[str, Any]]:
        with self._lock:
            self._enter(resource_type, "create", identity)
            store = self._resources.setdefault(resource_type, {})
            if token in self._tokens and self._tokens[token] in store:
                existing = self._tokens[token]
                return existing, copy.deepcopy(store[existing])
            if identity in store:
                raise ProviderPermanentError(f"{resource_type} '{identity}' already exists")
            store[identity] = copy.deepcopy(attributes)
            self._tokens[token] = identity
            self._save()
            return identity, copy.deepcopy(attributes)

    def patch(self, schema: ResourceSchema, identity: str, changes: Dict[str, Any], token: str) -> Dict[str, Any]:
        with self._lock:
            self._enter(schema.type_name, "update", identity)
            store = self._resources.get(schema.type_name, {})
            if identity not in store:
                raise ProviderPermanentError(f"{schema.type_name} '{identity}' not found")
            if self._tokens.get(token) == identity:
                return copy.deepcopy(store[identity])
            frozen = sorted(set(changes) & schema.immutable)
            if frozen:
                raise ProviderPermanentError(
                    f"cannot modify immutable attribute(s) {', '.join(frozen)} of '{identity}'"
                )
            store[identity].update(copy.deepcopy(changes))
            self._tokens[token] = identity
            self._save()
            return copy.deepcopy(store[identity])

    def remove(self, resource_type: str, identity: str, token: str) -> None:
        with self._lock:
            self._enter(resource_type, "destroy", identity)
            self._resources.get(resource_type, {}).pop(identity, None)
            self._tokens[token] = identity
            self._save()

    def registry(self) -> ProviderRegistry:
        return ProviderRegistry([
            BucketProvider(self),
            LockTableProvider(self),
            FederationTrustProvider(self),
            RoleProvider(self),
        ])


class SimulatedProvider(ResourceProvider):
    """Generic provider: subclasses decide identity and computed outputs."""

    schema: ResourceSchema

    def __init__(self, cloud: SimulatedCloud):
        self.cloud = cloud

    def identity_for(self, attributes: Dict[str, Any]) -> str:
        raise NotImplementedError

    def computed(self, identity: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": identity}

    def check(self, attributes: Dict[str, Any]) -> None:
        """Server-side validation; raise ProviderPermanentError on bad input."""

    def describe(self, identity: str) -> Optional[Dict[str, Any]]:
        return self.cloud.get(self.schema.type_name, identity)

    def create(self, attributes: Dict[str, Any], token: str) -> Tuple[str, Dict[str, Any]]:
        self.check(attributes)
        identity = self.identity_for(attributes)
        live = dict(attributes)
        live.update(self.computed(identity, attributes))
        return self.cloud.insert(self.schema.type_name, identity, live, token)

    def update(self, identity: str, changes: Dict[str, Any], token: str) -> Dict[str, Any]:
        self.check(changes)
        return self.cloud.patch(self.schema, identity, changes, token)

    def destroy(self, identity: str, token: str) -> None:
        self.cloud.remove(self.schema.type_name, identity, token)


class BucketProvider(SimulatedProvider):
    schema = schemas.OBJECT_STORE_BUCKET

    def identity_for(self, attributes):
        return attributes["bucket"]

    def computed(self, identity, attributes):
        return {
            "id": identity,
            "arn": f"arn:aws:s3:::{identity}",
            "regional_domain_name": f"{identity}.s3.{self.cloud.region}.amazonaws.com",
        }

    def check(self, attributes):
        enc = attributes.get("encryption")
        if enc is not None and enc not in ("AES256", "aws:kms"):
            raise ProviderPermanentError(f"unsupported encryption algorithm '{enc}'")


class LockTableProvider(SimulatedProvider):
    schema = schemas.LOCK_TABLE

    def identity_for(self, attributes):
        return attributes["name"]

    def computed(self, identity, attributes):
        return {
            "id": identity,
            "arn": f"arn:aws:dynamodb:{self.cloud.region}:{self.cloud.account_id}:table/{identity}",
        }

    def check(self, attributes):
        mode = attributes.get("billing_mode")
        if mode is not None and mode not in ("PAY_PER_REQUEST", "PROVISIONED"):
            raise ProviderPermanentError(f"unsupported billing_mode '{mode}'")


class FederationTrustProvider(SimulatedProvider):
    schema = schemas.FEDERATION_TRUST

    def identity_for(self, attributes):
        parsed = urlparse(attributes["url"])
        host = parsed.netloc or parsed.path
        return f"arn:aws:iam::{self.cloud.account_id}:oidc-provider/{host}"

    def computed(self, identity, attributes):
        return {"id": identity, "arn": identity}

    def check(self, attributes):
        url = attributes.get("url")
        if url is not None and not str(url).startswith("https://"):
            raise ProviderPermanentError(f"federation url must use https: '{url}'")


class RoleProvider(SimulatedProvider):
    schema = schemas.ASSUMABLE_ROLE

    def identity_for(self, attributes):
        return attributes["name"]

    def computed(self, identity, attributes):
        path = attributes.get("path", "/")
        digest = hashlib.sha1(identity.encode("utf-8")).hexdigest()[:17].upper()
        return {
            "id": identity,
            "arn": f"arn:aws:iam::{self.cloud.account_id}:role{path}{identity}",
            "unique_id": f"AROA{digest}",
        }

    def check(self, attributes):
        duration = attributes.get("max_session_duration")
        if duration is not None:
            try:
                seconds = int(duration)
            except (TypeError, ValueError):
                raise ProviderPermanentError(f"max_session_duration {duration!r} is not a number of seconds") from None
            if not 3600 <= seconds <= 43200:
                raise ProviderPermanentError(f"max_session_duration {duration} outside 3600..43200")
        policy = attributes.get("assume_role_policy")
        if isinstance(policy, str):
            try:
                json.loads(policy)
            except ValueError:
                raise ProviderPermanentError("assume_role_policy is not valid JSON") from None

