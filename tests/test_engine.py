"""
Engine tests against the simulated cloud and in-memory state.
"""
import os

import pytest

from converge.engine import Engine
from converge.errors import (
    CycleError,
    LockContentionError,
    PolicyViolationError,
    ProtectedResourceError,
    ProviderPermanentError,
    ProviderTransientError,
    UnresolvedReferenceError,
)
from converge.graph import build_graph
from converge.models.expression import UNKNOWN, Reference, Template
from converge.models.plan import Action, NodeStatus
from converge.models.resource import ResourceNode
from converge.models.state import STATUS_PENDING, ObservedState
from converge.parsers import yaml_decl
from converge.providers.simulated import BucketProvider, LockTableProvider, SimulatedCloud
from converge.retry import RetryPolicy
from converge.state import MemoryStateBackend, StateRecorder

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


def _bucket(name, protect=False, **attrs):
    attrs.setdefault("bucket", f"acme-{name}")
    return ResourceNode(name=name, resource_type="object-store-bucket", attributes=attrs,
                        protect_from_destroy=protect)


def _role(name, depends_on=(), **attrs):
    attrs.setdefault("name", name)
    attrs.setdefault("assume_role_policy", "{}")
    return ResourceNode(name=name, resource_type="assumable-role", attributes=attrs,
                        depends_on=tuple(depends_on))


def _actions(plan):
    return {e.name: e.action for e in plan.entries}


class EngineCase:
    def setup_method(self):
        self.cloud = SimulatedCloud()
        self.registry = self.cloud.registry()
        self.backend = MemoryStateBackend()
        self.recorder = StateRecorder(self.backend)
        self.sleeps = []
        self.engine = self._engine()

    def _engine(self, **kwargs):
        kwargs.setdefault("sleep", self.sleeps.append)
        kwargs.setdefault("quiet", True)
        return Engine(self.registry, self.recorder, **kwargs)

    def graph(self, *nodes, outputs=None):
        return build_graph(list(nodes), self.registry, outputs)

    def fixture_graph(self, name="bootstrap.yaml"):
        decl = yaml_decl.parse_file(os.path.join(FIXTURES, name))
        return build_graph(decl.resources, self.registry, decl.outputs)


# --------------------------------------------------------- Plan
class TestPlan(EngineCase):
    def test_first_plan_creates_everything(self):
        plan = self.engine.plan(self.fixture_graph())
        assert set(_actions(plan).values()) == {Action.CREATE}
        assert plan.entry("state").reason == "not recorded"

    def test_plan_does_not_mutate(self):
        self.engine.plan(self.fixture_graph())
        assert self.backend.versions() == []
        assert self.cloud.calls_for("create") == []

    def test_dependency_outputs_unknown_until_applied(self):
        plan = self.engine.plan(self.fixture_graph())
        policy = next(d for d in plan.entry("ci_deployer").diffs if d.attribute == "assume_role_policy")
        assert policy.after["Statement"][0]["Principal"]["Federated"] is UNKNOWN

    def test_inputs_of_dependencies_known_at_plan_time(self):
        plan = self.engine.plan(self.fixture_graph())
        tags = next(d for d in plan.entry("locks").diffs if d.attribute == "tags")
        assert tags.after == {"StateBucket": "acme-infra-state"}

    def test_order_follows_dependencies(self):
        order = [e.name for e in self.engine.plan(self.fixture_graph()).entries]
        assert order.index("state") < order.index("locks") < order.index("ci_deployer")
        assert order.index("github") < order.index("ci_deployer")


# --------------------------------------------------------- Apply
class TestApply(EngineCase):
    def test_bucket_then_policy_scenario(self):
        bucket = _bucket("bucket")
        policy = _role("policy", description=Reference("bucket", "id"))

        first = self.engine.apply(self.graph(bucket, policy))
        assert first.ok
        assert first.results["bucket"].action == Action.CREATE
        assert first.results["policy"].action == Action.CREATE
        creates = self.cloud.calls_for("create")
        assert creates.index("acme-bucket") < creates.index("policy")

        second = self.engine.apply(self.graph(bucket, policy))
        assert _actions(second.plan) == {"bucket": Action.NO_OP, "policy": Action.NO_OP}

        third = self.engine.apply(self.graph(bucket))
        assert third.ok
        assert _actions(third.plan) == {"bucket": Action.NO_OP, "policy": Action.DESTROY}
        assert self.cloud.calls_for("destroy") == ["policy"]
        assert "acme-bucket" in self.cloud.list("object-store-bucket")
        assert self.recorder.names() == ["bucket"]

    def test_second_plan_is_all_no_op(self):
        graph = self.fixture_graph()
        assert self.engine.apply(graph).ok
        plan = self.engine.plan(self.fixture_graph())
        assert set(_actions(plan).values()) == {Action.NO_OP}
        assert not plan.has_changes

    def test_dependents_start_after_dependencies_finish(self):
        result = self.engine.apply(self.fixture_graph())
        res = result.results
        for dep, child in [("state", "locks"), ("locks", "ci_deployer"), ("github", "ci_deployer")]:
            assert res[dep].finished_at <= res[child].started_at

    def test_references_resolved_from_committed_state(self):
        self.engine.apply(self.fixture_graph())
        role = self.cloud.list("assumable-role")["ci-deployer"]
        federated = role["assume_role_policy"]["Statement"][0]["Principal"]["Federated"]
        assert federated == "arn:aws:iam::123456789012:oidc-provider/token.actions.githubusercontent.com"

    def test_outputs(self):
        result = self.engine.apply(self.fixture_graph())
        assert result.outputs == {
            "ci_role_arn": "arn:aws:iam::123456789012:role/ci-deployer",
            "state_bucket_arn": "arn:aws:s3:::acme-infra-state",
        }

    def test_state_records_identity_and_dependencies(self):
        self.engine.apply(self.fixture_graph())
        state = self.recorder.get("ci_deployer")
        assert state.identity == "ci-deployer"
        assert state.dependencies == ["github", "locks"]
        assert not state.is_pending

    def test_update_in_place(self):
        self.engine.apply(self.graph(_role("r", description="old")))
        graph = self.graph(_role("r", description="new"))
        plan = self.engine.plan(graph)
        assert _actions(plan) == {"r": Action.UPDATE}
        assert self.engine.apply(graph).ok
        assert self.cloud.list("assumable-role")["r"]["description"] == "new"
        assert self.recorder.get("r").attributes["description"] == "new"

    def test_policy_json_text_matches_mapping(self):
        self.engine.apply(self.graph(_role("r", assume_role_policy='{"Version": "2012-10-17"}')))
        plan = self.engine.plan(self.graph(_role("r", assume_role_policy={"Version": "2012-10-17"})))
        assert _actions(plan) == {"r": Action.NO_OP}

    def test_drift_is_reverted(self):
        self.engine.apply(self.graph(_role("r", description="declared")))
        self.cloud.modify_out_of_band("assumable-role", "r", description="hand edited")
        result = self.engine.apply(self.graph(_role("r", description="declared")))
        assert result.results["r"].action == Action.UPDATE
        assert self.cloud.list("assumable-role")["r"]["description"] == "declared"

    def test_deleted_out_of_band_is_recreated(self):
        graph = self.fixture_graph()
        self.engine.apply(graph)
        self.cloud.delete_out_of_band("lock-table", "acme-infra-locks")
        plan = self.engine.plan(graph)
        assert plan.entry("locks").action == Action.CREATE
        assert plan.entry("locks").reason == "deleted outside converge"
        assert self.engine.apply(graph).ok
        assert "acme-infra-locks" in self.cloud.list("lock-table")


# --------------------------------------------------------- Replace
class TestReplace(EngineCase):
    def test_immutable_change_replaces(self):
        self.engine.apply(self.graph(_bucket("logs"), _role("reader", description=Reference("logs", "arn"))))
        graph = self.graph(
            _bucket("logs", bucket="acme-logs-v2"),
            _role("reader", description=Reference("logs", "arn")),
        )
        plan = self.engine.plan(graph)
        assert plan.entry("logs").action == Action.REPLACE
        assert plan.entry("logs").diffs[0].requires_replace
        assert plan.entry("reader").action == Action.UPDATE

        result = self.engine.apply(graph)
        assert result.ok
        buckets = self.cloud.list("object-store-bucket")
        assert list(buckets) == ["acme-logs-v2"]
        assert self.cloud.list("assumable-role")["reader"]["description"] == "arn:aws:s3:::acme-logs-v2"

    def test_protected_replace_refused(self):
        self.engine.apply(self.graph(_bucket("vault", protect=True), _role("r", description=Reference("vault", "id"))))
        graph = self.graph(
            _bucket("vault", protect=True, bucket="acme-vault-2"),
            _role("r", description=Reference("vault", "id")),
        )
        assert "blocked" in self.engine.plan(graph).entry("vault").reason

        result = self.engine.apply(graph)
        assert result.status_of("vault") == NodeStatus.FAILED
        assert isinstance(result.results["vault"].error, ProtectedResourceError)
        assert result.status_of("r") == NodeStatus.SKIPPED
        assert list(self.cloud.list("object-store-bucket")) == ["acme-vault"]


# --------------------------------------------------------- Destroy
class TestDestroy(EngineCase):
    def test_destroy_mode_removes_dependents_first(self):
        graph = self.graph(_bucket("a"), _role("r", description=Reference("a", "arn")))
        self.engine.apply(graph)
        result = self.engine.apply(graph, destroy=True)
        assert result.ok
        assert self.cloud.calls_for("destroy") == ["r", "acme-a"]
        assert self.recorder.names() == []
        assert result.outputs == {}

    def test_protected_node_removed_from_declaration(self):
        self.engine.apply(self.graph(_bucket("vault", protect=True), _bucket("logs")))
        result = self.engine.apply(self.graph(_bucket("logs", tags={"Team": "infra"})))

        assert result.status_of("vault") == NodeStatus.FAILED
        assert isinstance(result.results["vault"].error, ProtectedResourceError)
        assert result.results["vault"].error.node == "vault"
        assert result.status_of("logs") == NodeStatus.SUCCEEDED
        assert result.results["logs"].action == Action.UPDATE
        assert "acme-vault" in self.cloud.list("object-store-bucket")
        assert self.recorder.get("vault") is not None

    def test_destroy_mode_respects_protection(self):
        graph = self.fixture_graph()
        self.engine.apply(graph)
        result = self.engine.apply(graph, destroy=True)
        assert not result.ok
        assert result.status_of("state") == NodeStatus.FAILED
        for name in ("locks", "github", "ci_deployer", "operator"):
            assert result.status_of(name) == NodeStatus.SUCCEEDED
        assert self.recorder.names() == ["state"]


# --------------------------------------------------------- Failures
class TestFailures(EngineCase):
    def test_cycle_rejected_before_any_provider_call(self):
        with pytest.raises(CycleError):
            self.fixture_graph("cyclic.yaml")
        assert self.cloud.calls == []

    def test_permanent_failure_skips_dependents_only(self):
        self.cloud.inject("federation-trust", "create", ProviderPermanentError("access denied"))
        result = self.engine.apply(self.fixture_graph())
        assert result.status_of("github") == NodeStatus.FAILED
        assert result.status_of("ci_deployer") == NodeStatus.SKIPPED
        for name in ("state", "locks", "operator"):
            assert result.status_of(name) == NodeStatus.SUCCEEDED
        assert "access denied" in result.results["github"].message
        assert "github" in result.results["ci_deployer"].message

    def test_rerun_after_failure_converges(self):
        self.cloud.inject("federation-trust", "create", ProviderPermanentError("access denied"))
        graph = self.fixture_graph()
        assert not self.engine.apply(graph).ok
        assert self.recorder.get("github").is_pending

        rerun = self.engine.apply(graph)
        assert rerun.ok
        assert set(self.recorder.names()) == set(graph.nodes)
        assert set(_actions(self.engine.plan(graph)).values()) == {Action.NO_OP}

    def test_transient_errors_are_retried(self):
        self.cloud.inject("lock-table", "create", ProviderTransientError("throttled"), times=2)
        result = self.engine.apply(self.fixture_graph())
        assert result.ok
        assert self.sleeps == [1.0, 2.0]

    def test_retries_are_bounded(self):
        self.engine = self._engine(retry=RetryPolicy(max_attempts=3, initial_delay=0.5))
        self.cloud.inject("lock-table", "create", ProviderTransientError("throttled"), times=10)
        result = self.engine.apply(self.fixture_graph())
        assert result.status_of("locks") == NodeStatus.FAILED
        assert isinstance(result.results["locks"].error, ProviderTransientError)
        assert self.sleeps == [0.5, 1.0]

    def test_provider_validation_error_fails_node(self):
        result = self.engine.apply(self.graph(_role("r", max_session_duration=60)))
        assert result.status_of("r") == NodeStatus.FAILED
        assert isinstance(result.results["r"].error, ProviderPermanentError)

    def test_malformed_session_duration_fails_only_that_node(self):
        graph = self.graph(_bucket("b"), _role("r", max_session_duration="one hour"))
        result = self.engine.apply(graph)
        assert result.status_of("b") == NodeStatus.SUCCEEDED
        assert result.status_of("r") == NodeStatus.FAILED
        assert isinstance(result.results["r"].error, ProviderPermanentError)
        assert "one hour" in result.results["r"].message

    def test_unexpected_provider_exception_is_contained(self):
        self.cloud.inject("lock-table", "create", RuntimeError("provider bug"))
        result = self.engine.apply(self.fixture_graph())
        assert result.status_of("locks") == NodeStatus.FAILED
        assert result.status_of("ci_deployer") == NodeStatus.SKIPPED
        for name in ("state", "github", "operator"):
            assert result.status_of(name) == NodeStatus.SUCCEEDED
        error = result.results["locks"].error
        assert isinstance(error, ProviderPermanentError)
        assert isinstance(error.__cause__, RuntimeError)
        assert self.recorder.get("state").identity == "acme-infra-state"

    def test_missing_committed_attribute_is_unresolved(self):
        class TerseBuckets(BucketProvider):
            def computed(self, identity, attributes):
                return {"id": identity, "arn": f"arn:aws:s3:::{identity}"}

        self.registry.register(TerseBuckets(self.cloud))
        graph = self.graph(
            _bucket("b"),
            _role("r", description=Template(("serves ", Reference("b", "regional_domain_name")))),
        )
        result = self.engine.apply(graph)
        assert result.status_of("b") == NodeStatus.SUCCEEDED
        assert result.status_of("r") == NodeStatus.FAILED
        assert isinstance(result.results["r"].error, UnresolvedReferenceError)
        assert self.cloud.list("assumable-role") == {}


# --------------------------------------------------------- Interruption
class TestInterruption(EngineCase):
    def test_pending_create_is_adopted_not_duplicated(self):
        # provider call completed but the process died before recording it
        desired = self.registry.schema("lock-table").with_defaults({"name": "acme-locks"})
        with self.recorder.lock("crashed"):
            self.recorder.put("locks", ObservedState(
                name="locks", resource_type="lock-table", attributes=desired,
                status=STATUS_PENDING, pending_token="tok-1", pending_action="create",
            ))
        self.registry.get("lock-table").create(desired, "tok-1")

        graph = self.graph(ResourceNode("locks", "lock-table", {"name": "acme-locks"}))
        plan = self.engine.plan(graph)
        assert plan.entry("locks").action == Action.CREATE
        assert plan.entry("locks").reason == "resuming an interrupted create"

        result = self.engine.apply(graph)
        assert result.ok
        assert list(self.cloud.list("lock-table")) == ["acme-locks"]
        state = self.recorder.get("locks")
        assert state.identity == "acme-locks"
        assert not state.is_pending

    def test_lock_contention_aborts_before_mutation(self):
        self.backend.acquire_lock("someone-else", lease_seconds=300)
        with pytest.raises(LockContentionError) as exc_info:
            self.engine.apply(self.fixture_graph())
        assert exc_info.value.holder == "someone-else"
        assert self.cloud.calls == []
        assert self.backend.versions() == []

    def test_cancel_stops_new_nodes(self):
        engine = self._engine(parallelism=1)

        class CancellingTables(LockTableProvider):
            def create(self, attributes, token):
                out = super().create(attributes, token)
                engine.cancel()
                return out

        self.registry.register(CancellingTables(self.cloud))
        graph = self.graph(
            ResourceNode("locks", "lock-table", {"name": "acme-locks"}),
            _role("r", depends_on=["locks"]),
        )
        result = engine.apply(graph)
        assert result.status_of("locks") == NodeStatus.SUCCEEDED
        assert result.status_of("r") == NodeStatus.CANCELLED
        assert not result.ok
        # completed work is recorded, unstarted work is not
        assert self.recorder.get("locks").identity == "acme-locks"
        assert self.recorder.get("r") is None


# --------------------------------------------------------- Privilege policy
class TestPrivilegePolicy(EngineCase):
    def test_disallowed_policy_rejected_before_mutation(self):
        engine = self._engine(allowed_managed_policies=["arn:aws:iam::aws:policy/ReadOnly*"])
        with pytest.raises(PolicyViolationError) as exc_info:
            engine.apply(self.fixture_graph())
        assert exc_info.value.node in ("ci_deployer", "operator")
        assert self.cloud.calls_for("create") == []

    def test_allowed_policy_passes(self):
        engine = self._engine(allowed_managed_policies=["arn:aws:iam::aws:policy/*"])
        assert engine.apply(self.fixture_graph()).ok

    def test_no_policy_means_no_check(self):
        assert self.engine.apply(self.fixture_graph()).ok
