"""
Reconciliation engine.

plan() diffs the declared graph against recorded and live state without
mutating anything. apply() takes the reconciliation lock, plans again and
executes the plan: nodes run on a thread pool as soon as everything they
depend on has succeeded, a failed node skips its transitive dependents, and
independent branches carry on.

Each mutating provider call is preceded by a "pending" state record holding
the idempotency token, so an interrupted pass can be rerun and the provider
recognises the repeated intent instead of acting twice.
"""
import fnmatch
import os
import socket
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Sequence

import networkx as nx
from rich.console import Console

from converge.diff import compute_diff, creation_diff
from converge.errors import (
    ConvergeError,
    PolicyViolationError,
    ProtectedResourceError,
    ProviderPermanentError,
    StateCorruptionError,
    UnresolvedReferenceError,
)
from converge.graph import ResourceGraph
from converge.models.expression import UNKNOWN, Reference, resolve
from converge.models.plan import Action, NodeResult, NodeStatus, PassResult, Plan, PlanEntry
from converge.models.resource import ResourceNode
from converge.models.state import STATUS_APPLIED, STATUS_PENDING, ObservedState
from converge.providers.base import ProviderRegistry
from converge.retry import RetryPolicy, retry_with_backoff
from converge.state.recorder import StateRecorder

console = Console(stderr=True)


def default_holder() -> str:
    return f"{os.getenv('USER', 'unknown')}@{socket.gethostname()}:{os.getpid()}"


class Engine:
    def __init__(
        self,
        registry: ProviderRegistry,
        recorder: StateRecorder,
        parallelism: int = 4,
        retry: Optional[RetryPolicy] = None,
        allowed_managed_policies: Optional[Sequence[str]] = None,
        sleep: Callable[[float], None] = time.sleep,
        out: Optional[Console] = None,
        quiet: bool = False,
    ):
        self.registry = registry
        self.recorder = recorder
        self.parallelism = max(1, parallelism)
        self.retry = retry or RetryPolicy()
        self.allowed_managed_policies = allowed_managed_policies
        self.sleep = sleep
        self.console = out or console
        self.quiet = quiet
        self._cancel = threading.Event()

    # ------------------------------------------------------------------ helpers

    def _log(self, message: str) -> None:
        if not self.quiet:
            self.console.print(message)

    def _call(self, name: str, operation: str, func: Callable[[], Any]) -> Any:
        def _on_retry(attempt: int, delay: float, exc: Exception) -> None:
            self._log(
                f"[yellow]{name}:[/yellow] {operation} attempt {attempt} failed ({exc}); "
                f"retrying in {delay:.1f}s"
            )

        return retry_with_backoff(func, self.retry, sleep=self.sleep, on_retry=_on_retry)

    def _describe(self, name: str, resource_type: str, identity: Optional[str]) -> Optional[Dict[str, Any]]:
        if not identity:
            return None
        provider = self.registry.get(resource_type)
        return self._call(name, "describe", lambda: provider.describe(identity))

    def _new_token(self, name: str) -> str:
        return f"{self.recorder.lineage}-{name}-{uuid.uuid4().hex[:12]}"

    def cancel(self) -> None:
        """Stop starting new nodes; in-flight nodes finish and are recorded."""
        self._cancel.set()

    # ------------------------------------------------------------------ policy

    def check_privileges(self, graph: ResourceGraph) -> None:
        if self.allowed_managed_policies is None:
            return
        for node in graph.nodes.values():
            if node.resource_type != "assumable-role":
                continue
            for arn in node.attributes.get("managed_policy_arns") or []:
                if not isinstance(arn, str):
                    continue
                if not any(fnmatch.fnmatchcase(arn, pat) for pat in self.allowed_managed_policies):
                    raise PolicyViolationError(
                        f"managed policy '{arn}' is not in the allowed privilege policy",
                        node=node.name,
                    )

    # ------------------------------------------------------------------ plan

    def _destroy_order(self, names: List[str]) -> List[str]:
        """Recorded nodes in an order that removes dependents first."""
        g = nx.DiGraph()
        g.add_nodes_from(names)
        for name in names:
            state = self.recorder.get(name)
            for dep in state.dependencies if state else []:
                if dep in g:
                    g.add_edge(name, dep)
        try:
            return list(nx.lexicographical_topological_sort(g))
        except nx.NetworkXUnfeasible:
            raise StateCorruptionError("recorded dependencies form a cycle") from None

    def plan(self, graph: ResourceGraph, destroy: bool = False) -> Plan:
        """
        Compute the actions needed to reconcile graph with the world.

        Calls provider describe only; never mutates remote or recorded state.
        """
        self.check_privileges(graph)
        plan = Plan(destroy_mode=destroy)
        desired_by_name: Dict[str, Dict[str, Any]] = {}
        live_by_name: Dict[str, Optional[Dict[str, Any]]] = {}
        actions: Dict[str, Action] = {}

        def _planned_lookup(ref: Reference) -> Any:
            desired = desired_by_name.get(ref.node, {})
            value = desired.get(ref.attribute, UNKNOWN)
            if ref.attribute in desired and value is not UNKNOWN:
                return value
            if actions.get(ref.node) in (Action.CREATE, Action.REPLACE):
                return UNKNOWN
            live = live_by_name.get(ref.node) or {}
            return live.get(ref.attribute, UNKNOWN)

        if not destroy:
            for name in graph.apply_order():
                node = graph.node(name)
                schema = self.registry.schema(node.resource_type)
                state = self.recorder.get(name)
                desired = schema.with_defaults(resolve(node.attributes, _planned_lookup))
                desired_by_name[name] = desired

                if state is not None and state.is_pending and state.pending_action == Action.CREATE.value:
                    live = None
                    reason = "resuming an interrupted create"
                else:
                    live = self._describe(name, node.resource_type, state.identity if state else None)
                    reason = "not recorded" if state is None else ""
                    if state is not None and live is None:
                        reason = "deleted outside converge"
                live_by_name[name] = live

                if live is None:
                    entry = PlanEntry(name, node.resource_type, Action.CREATE, creation_diff(desired), reason=reason)
                else:
                    diffs = compute_diff(schema, desired, live)
                    if not diffs:
                        action = Action.NO_OP
                    elif any(d.requires_replace for d in diffs):
                        action = Action.REPLACE
                        if node.protect_from_destroy:
                            reason = "replacement blocked: protect_from_destroy is set"
                    else:
                        action = Action.UPDATE
                    entry = PlanEntry(name, node.resource_type, action, diffs, reason=reason)
                entry.protected = node.protect_from_destroy
                actions[name] = entry.action
                plan.entries.append(entry)

        removed = [n for n in self.recorder.names() if destroy or n not in graph]
        for name in self._destroy_order(removed):
            state = self.recorder.get(name)
            if destroy and name in graph:
                protected = graph.node(name).protect_from_destroy
            else:
                protected = state.protect_from_destroy
            reason = "destroy requested" if destroy else "no longer declared"
            if protected:
                reason = "blocked: protect_from_destroy is set"
            plan.entries.append(PlanEntry(
                name, state.resource_type, Action.DESTROY,
                [], protected=protected, reason=reason,
            ))
        return plan

    # ------------------------------------------------------------------ apply

    def apply(self, graph: ResourceGraph, destroy: bool = False, holder: Optional[str] = None) -> PassResult:
        """
        One reconciliation pass under the state lock.

        Raises before any mutation for lock contention, corrupt state or a
        policy violation; node-level failures are reported in the result.
        """
        self._cancel.clear()
        with self.recorder.lock(holder or default_holder()):
            plan = self.plan(graph, destroy=destroy)
            result = PassResult(plan=plan)
            result.results = self._execute(graph, plan)
            if not destroy:
                result.outputs = self.resolve_outputs(graph)
        return result

    def _execution_graph(self, graph: ResourceGraph, plan: Plan) -> nx.DiGraph:
        g = nx.DiGraph()
        g.add_nodes_from(e.name for e in plan.entries)
        for e in plan.entries:
            if e.action == Action.DESTROY:
                state = self.recorder.get(e.name)
                # a removed node goes away before anything it depended on changes
                for dep in state.dependencies if state else []:
                    if dep in g and dep != e.name:
                        g.add_edge(e.name, dep)
            else:
                for dep in graph.dependencies(e.name):
                    g.add_edge(dep, e.name)
        if not nx.is_directed_acyclic_graph(g):
            raise StateCorruptionError("recorded dependencies conflict with the declaration")
        return g

    def _execute(self, graph: ResourceGraph, plan: Plan) -> Dict[str, NodeResult]:
        entries = {e.name: e for e in plan.entries}
        order = self._execution_graph(graph, plan)
        results: Dict[str, NodeResult] = {}
        pending = set(entries)
        running = {}

        def _ready(name: str) -> bool:
            return all(
                p in results and results[p].status == NodeStatus.SUCCEEDED
                for p in order.predecessors(name)
            )

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="converge") as pool:
            while pending or running:
                if self._cancel.is_set():
                    for name in sorted(pending):
                        results[name] = NodeResult(
                            name, entries[name].action, NodeStatus.CANCELLED,
                            error=ConvergeError("pass cancelled before this node started", node=name),
                        )
                    pending.clear()
                else:
                    for name in sorted(n for n in pending if _ready(n)):
                        pending.discard(name)
                        running[pool.submit(self._visit, graph, entries[name])] = name

                if not running:
                    break
                try:
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self._log("[yellow]interrupted:[/yellow] finishing in-flight nodes, starting no new ones")
                    self.cancel()
                    continue
                for fut in done:
                    name = running.pop(fut)
                    res = fut.result()
                    results[name] = res
                    if res.status == NodeStatus.SUCCEEDED:
                        continue
                    for child in sorted(nx.descendants(order, name)):
                        if child in pending:
                            pending.discard(child)
                            results[child] = NodeResult(
                                child, entries[child].action, NodeStatus.SKIPPED,
                                error=ConvergeError(f"skipped because '{name}' failed", node=child),
                            )
            for name in sorted(pending):
                results[name] = NodeResult(
                    name, entries[name].action, NodeStatus.SKIPPED,
                    error=ConvergeError("dependencies did not complete", node=name),
                )
        return results

    def _visit(self, graph: ResourceGraph, entry: PlanEntry) -> NodeResult:
        started = time.monotonic()
        try:
            if entry.action == Action.DESTROY:
                action = self._destroy_node(entry)
            else:
                action = self._apply_node(graph.node(entry.name))
        except ConvergeError as exc:
            if exc.node is None:
                exc.node = entry.name
            self._log(f"[red]{entry.name}:[/red] {type(exc).__name__}: {exc}")
            return NodeResult(entry.name, entry.action, NodeStatus.FAILED, exc, started, time.monotonic())
        except Exception as exc:
            # a provider bug fails this node only; independent branches keep running
            error = ProviderPermanentError(f"{type(exc).__name__}: {exc}", node=entry.name)
            error.__cause__ = exc
            self._log(f"[red]{entry.name}:[/red] unexpected {type(exc).__name__}: {exc}")
            return NodeResult(entry.name, entry.action, NodeStatus.FAILED, error, started, time.monotonic())
        return NodeResult(entry.name, action, NodeStatus.SUCCEEDED, None, started, time.monotonic())

    # ------------------------------------------------------------------ per node

    def _committed_lookup(self, owner: str) -> Callable[[Reference], Any]:
        def _lookup(ref: Reference) -> Any:
            state = self.recorder.get(ref.node)
            if state is None or state.status != STATUS_APPLIED:
                raise UnresolvedReferenceError(
                    f"'{ref.node}' has no committed state to read '{ref.attribute}' from", node=owner
                )
            if ref.attribute not in state.attributes:
                raise UnresolvedReferenceError(
                    f"'{ref.node}' recorded no value for '{ref.attribute}'", node=owner
                )
            return state.attributes[ref.attribute]
        return _lookup

    def _record(self, node: ResourceNode, identity: Optional[str], attributes: Dict[str, Any],
                status: str = STATUS_APPLIED, token: Optional[str] = None,
                action: Optional[Action] = None) -> None:
        self.recorder.put(node.name, ObservedState(
            name=node.name,
            resource_type=node.resource_type,
            identity=identity,
            attributes=attributes,
            protect_from_destroy=node.protect_from_destroy,
            dependencies=node.dependency_names,
            status=status,
            pending_token=token,
            pending_action=action.value if action else None,
        ))

    def _create(self, node: ResourceNode, desired: Dict[str, Any], token: str) -> None:
        provider = self.registry.get(node.resource_type)
        self._record(node, None, desired, STATUS_PENDING, token, Action.CREATE)
        identity, live = self._call(node.name, "create", lambda: provider.create(desired, token))
        self._record(node, identity, live)

    def _apply_node(self, node: ResourceNode) -> Action:
        provider = self.registry.get(node.resource_type)
        schema = provider.schema
        state = self.recorder.get(node.name)
        desired = schema.with_defaults(resolve(node.attributes, self._committed_lookup(node.name)))

        if state is not None and state.is_pending and state.pending_action == Action.CREATE.value:
            self._log(f"[cyan]{node.name}:[/cyan] resuming interrupted create")
            self._create(node, desired, state.pending_token)
            return Action.CREATE

        live = self._describe(node.name, node.resource_type, state.identity if state else None)
        if live is None:
            self._log(f"[cyan]{node.name}:[/cyan] creating {node.resource_type}")
            self._create(node, desired, self._new_token(node.name))
            return Action.CREATE

        diffs = compute_diff(schema, desired, live)
        if not diffs:
            refreshed = ObservedState(
                name=node.name,
                resource_type=node.resource_type,
                identity=state.identity,
                attributes=live,
                protect_from_destroy=node.protect_from_destroy,
                dependencies=node.dependency_names,
                updated_at=state.updated_at,
            )
            if refreshed.to_dict() != state.to_dict():
                self.recorder.put(node.name, refreshed)
            return Action.NO_OP

        if any(d.requires_replace for d in diffs):
            if node.protect_from_destroy:
                changed = ", ".join(d.attribute for d in diffs if d.requires_replace)
                raise ProtectedResourceError(
                    f"changing {changed} requires replacement but protect_from_destroy is set",
                    node=node.name,
                )
            self._log(f"[cyan]{node.name}:[/cyan] replacing {node.resource_type}")
            token = self._new_token(node.name)
            self._record(node, state.identity, state.attributes, STATUS_PENDING, token, Action.REPLACE)
            self._call(node.name, "destroy", lambda: provider.destroy(state.identity, token))
            self._create(node, desired, self._new_token(node.name))
            return Action.REPLACE

        changes = {d.attribute: d.after for d in diffs}
        self._log(f"[cyan]{node.name}:[/cyan] updating {', '.join(sorted(changes))}")
        token = self._new_token(node.name)
        self._record(node, state.identity, state.attributes, STATUS_PENDING, token, Action.UPDATE)
        live = self._call(node.name, "update", lambda: provider.update(state.identity, changes, token))
        self._record(node, state.identity, live)
        return Action.UPDATE

    def _destroy_node(self, entry: PlanEntry) -> Action:
        state = self.recorder.get(entry.name)
        if state is None:
            return Action.DESTROY
        if entry.protected:
            raise ProtectedResourceError(
                "protect_from_destroy is set; refusing to destroy", node=entry.name
            )
        if state.identity:
            provider = self.registry.get(state.resource_type)
            if state.is_pending and state.pending_action == Action.DESTROY.value:
                token = state.pending_token
            else:
                token = self._new_token(entry.name)
                pending = ObservedState.from_dict(state.to_dict())
                pending.status = STATUS_PENDING
                pending.pending_token = token
                pending.pending_action = Action.DESTROY.value
                self.recorder.put(entry.name, pending)
            self._log(f"[cyan]{entry.name}:[/cyan] destroying {state.resource_type}")
            self._call(entry.name, "destroy", lambda: provider.destroy(state.identity, token))
        self.recorder.delete(entry.name)
        return Action.DESTROY

    # ------------------------------------------------------------------ outputs

    def resolve_outputs(self, graph: ResourceGraph) -> Dict[str, Any]:
        def _lookup(ref: Reference) -> Any:
            state = self.recorder.get(ref.node)
            if state is None or state.status != STATUS_APPLIED:
                return UNKNOWN
            return state.attributes.get(ref.attribute)

        return {name: resolve(o.value, _lookup) for name, o in sorted(graph.outputs.items())}
