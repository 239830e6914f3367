"""Unit tests for rollout verification."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from urllib3.exceptions import MaxRetryError, ProtocolError

from src.cluster.rollout import (
    RolloutOutcome,
    RolloutVerifier,
    WorkloadRef,
    is_converged,
)
from src.common.errors import RolloutError
from src.common.metrics import MetricsClient

IMAGE = "123456789012.dkr.ecr.us-west-2.amazonaws.com/web-app:a1b2c3d"

DIAGNOSTIC_ORDER = [
    "deployment_summary",
    "deployment_description",
    "replica_sets",
    "pods",
    "pod_descriptions",
    "events",
]


def make_event(index: int, when: datetime) -> client.CoreV1Event:
    return client.CoreV1Event(
        metadata=client.V1ObjectMeta(name=f"event-{index}", namespace="web"),
        involved_object=client.V1ObjectReference(kind="Pod", name=f"web-app-{index}"),
        reason="BackOff",
        message=f"Back-off pulling image ({index})",
        type="Warning",
        last_timestamp=when,
    )


def make_pod(name: str) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, namespace="web"),
        spec=client.V1PodSpec(containers=[client.V1Container(name="nginx", image=IMAGE)], node_name="node-1"),
        status=client.V1PodStatus(
            phase="Pending",
            container_statuses=[
                client.V1ContainerStatus(
                    name="nginx", image=IMAGE, image_id="", ready=False, restart_count=3
                )
            ],
        ),
    )


def make_replica_set(name: str, image: str, replicas: int) -> client.V1ReplicaSet:
    return client.V1ReplicaSet(
        metadata=client.V1ObjectMeta(name=name, namespace="web"),
        spec=client.V1ReplicaSetSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(match_labels={"app": "web-app"}),
            template=client.V1PodTemplateSpec(
                spec=client.V1PodSpec(containers=[client.V1Container(name="nginx", image=image)])
            ),
        ),
        status=client.V1ReplicaSetStatus(replicas=replicas, ready_replicas=0),
    )


@pytest.fixture
def workload():
    return WorkloadRef(namespace="web", name="web-app", container="nginx")


@pytest.fixture
def stuck_cluster(apps_api, core_api, deployment_factory):
    """Cluster state with a Deployment stuck at 0/2 ready replicas."""
    stuck = deployment_factory(replicas=2, ready=0, updated=2, available=0, total=2, unavailable=2)
    apps_api.read_namespaced_deployment.return_value = stuck
    apps_api.read_namespaced_deployment_status.return_value = stuck
    apps_api.list_namespaced_replica_set.return_value = client.V1ReplicaSetList(
        items=[make_replica_set("web-app-5d9f", IMAGE, 2), make_replica_set("web-app-7c4b", "nginx:stable", 0)]
    )
    core_api.list_namespaced_pod.return_value = client.V1PodList(
        items=[make_pod("web-app-5d9f-a"), make_pod("web-app-5d9f-b")]
    )
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    core_api.list_namespaced_event.return_value = client.CoreV1EventList(
        items=[make_event(i, start + timedelta(seconds=i)) for i in range(3)]
    )
    return apps_api, core_api


@pytest.fixture
def verifier(apps_api, core_api, fake_clock):
    return RolloutVerifier(apps_api, core_api, poll_interval=5, clock=fake_clock, sleep=fake_clock.sleep)


class TestIsConverged:
    """Tests for convergence detection."""

    def test_converged(self, deployment_factory):
        """Test a fully rolled out Deployment is converged."""
        assert is_converged(deployment_factory(replicas=2, ready=2, updated=2, available=2))

    def test_stale_generation(self, deployment_factory):
        """Test an unobserved spec change is not converged."""
        assert not is_converged(
            deployment_factory(replicas=2, ready=2, updated=2, available=2, generation=3, observed=2)
        )

    def test_old_replicas_remaining(self, deployment_factory):
        """Test old replicas pending termination block convergence."""
        assert not is_converged(deployment_factory(replicas=2, ready=2, updated=2, available=2, total=3))

    def test_unavailable_replicas(self, deployment_factory):
        """Test updated but unavailable replicas block convergence."""
        assert not is_converged(deployment_factory(replicas=2, ready=0, updated=2, available=0, unavailable=2))

    def test_missing_status(self, deployment_factory):
        """Test a Deployment without status is not converged."""
        deployment = deployment_factory()
        deployment.status = None

        assert not is_converged(deployment)


class TestRolloutVerifier:
    """Tests for RolloutVerifier."""

    def test_converged_rollout(self, verifier, apps_api, workload, deployment_factory, fake_clock):
        """Test a converging rollout succeeds without diagnostics."""
        apps_api.read_namespaced_deployment.return_value = deployment_factory()
        apps_api.read_namespaced_deployment_status.side_effect = [
            deployment_factory(replicas=2, ready=1, updated=1, available=1),
            deployment_factory(replicas=2, ready=2, updated=2, available=2),
        ]

        attempt = verifier.rollout(workload, IMAGE, timeout=300)

        assert attempt.outcome == RolloutOutcome.CONVERGED
        assert attempt.diagnostics == []
        assert fake_clock.now == 5
        apps_api.patch_namespaced_deployment.assert_called_once_with(
            "web-app",
            "web",
            {"spec": {"template": {"spec": {"containers": [{"name": "nginx", "image": IMAGE}]}}}},
        )

    def test_container_defaults_to_first(self, verifier, apps_api, deployment_factory):
        """Test the first container is updated when none is named."""
        apps_api.read_namespaced_deployment.return_value = deployment_factory()
        apps_api.read_namespaced_deployment_status.return_value = deployment_factory(
            replicas=2, ready=2, updated=2, available=2
        )

        verifier.rollout(WorkloadRef(namespace="web", name="web-app"), IMAGE)

        body = apps_api.patch_namespaced_deployment.call_args.args[2]
        assert body["spec"]["template"]["spec"]["containers"][0]["name"] == "nginx"

    def test_timeout_collects_diagnostics_in_order(self, verifier, stuck_cluster, workload, fake_clock):
        """Test a stuck 0/2 rollout fails after capturing the full bundle."""
        with pytest.raises(RolloutError, match="did not converge within 300s") as exc_info:
            verifier.rollout(workload, IMAGE, timeout=300)

        diagnostics = exc_info.value.diagnostics
        assert [d.step for d in diagnostics] == DIAGNOSTIC_ORDER
        assert all(d.ok for d in diagnostics)
        assert diagnostics[0].output["ready"] == "0/2"
        assert [rs["name"] for rs in diagnostics[2].output] == ["web-app-5d9f", "web-app-7c4b"]
        assert diagnostics[3].output[0]["restarts"] == 3
        assert diagnostics[3].output[0]["ready"] == "0/1"
        assert fake_clock.now == 300

    def test_failing_captures_do_not_stop_bundle(self, verifier, stuck_cluster, workload):
        """Test each capture step runs even when earlier ones fail."""
        apps_api, core_api = stuck_cluster
        apps_api.list_namespaced_replica_set.side_effect = client.ApiException(status=500)
        core_api.list_namespaced_pod.side_effect = RuntimeError("connection reset")

        with pytest.raises(RolloutError) as exc_info:
            verifier.rollout(workload, IMAGE, timeout=300)

        diagnostics = exc_info.value.diagnostics
        assert [d.step for d in diagnostics] == DIAGNOSTIC_ORDER
        assert [d.ok for d in diagnostics] == [True, True, False, False, False, True]
        assert "connection reset" in diagnostics[3].error
        assert core_api.list_namespaced_event.called

    def test_all_captures_failing(self, verifier, apps_api, core_api, workload, deployment_factory):
        """Test the outcome is still a rollout failure when every capture fails."""
        apps_api.read_namespaced_deployment_status.return_value = deployment_factory()
        apps_api.read_namespaced_deployment.side_effect = [deployment_factory()] + [client.ApiException(status=503)] * 10
        core_api.list_namespaced_event.side_effect = client.ApiException(status=503)

        with pytest.raises(RolloutError) as exc_info:
            verifier.rollout(workload, IMAGE, timeout=10)

        assert len(exc_info.value.diagnostics) == 6
        assert not any(d.ok for d in exc_info.value.diagnostics)

    def test_events_sorted_and_limited(self, apps_api, core_api, workload, fake_clock):
        """Test only the most recent events are kept, oldest first."""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        events = [make_event(i, start + timedelta(seconds=i)) for i in range(150)]
        core_api.list_namespaced_event.return_value = client.CoreV1EventList(items=list(reversed(events)))
        verifier = RolloutVerifier(apps_api, core_api, clock=fake_clock, sleep=fake_clock.sleep)

        captures = verifier.collect_diagnostics(workload)

        output = captures[-1].output
        assert len(output) == 100
        assert output[0]["object"] == "Pod/web-app-50"
        assert output[-1]["object"] == "Pod/web-app-149"

    def test_set_image_failure(self, verifier, apps_api, workload, deployment_factory):
        """Test a rejected image update is fatal."""
        apps_api.read_namespaced_deployment.return_value = deployment_factory()
        apps_api.patch_namespaced_deployment.side_effect = client.ApiException(status=404, reason="Not Found")

        with pytest.raises(RolloutError, match="Failed to update image"):
            verifier.rollout(workload, IMAGE)

        apps_api.read_namespaced_deployment_status.assert_not_called()

    def test_transient_status_errors_keep_polling(self, verifier, apps_api, workload, deployment_factory):
        """Test status read errors count as not converged yet."""
        apps_api.read_namespaced_deployment.return_value = deployment_factory()
        apps_api.read_namespaced_deployment_status.side_effect = [
            client.ApiException(status=500),
            ProtocolError("Connection aborted.", ConnectionResetError(104, "reset")),
            deployment_factory(replicas=2, ready=2, updated=2, available=2),
        ]

        attempt = verifier.rollout(workload, IMAGE)

        assert attempt.outcome == RolloutOutcome.CONVERGED

    def test_bundle_written_to_directory(self, apps_api, core_api, stuck_cluster, workload, fake_clock, tmp_path):
        """Test the diagnostic bundle is saved as a JSON artifact."""
        verifier = RolloutVerifier(
            apps_api, core_api, diagnostics_dir=tmp_path, clock=fake_clock, sleep=fake_clock.sleep
        )

        with pytest.raises(RolloutError):
            verifier.rollout(workload, IMAGE, timeout=30)

        files = list(tmp_path.glob("rollout-web-app-*.json"))
        assert len(files) == 1
        bundle = json.loads(files[0].read_text())
        assert bundle["outcome"] == "timed_out"
        assert [d["step"] for d in bundle["diagnostics"]] == DIAGNOSTIC_ORDER

    def test_records_outcome_metric(self, apps_api, core_api, stuck_cluster, workload, fake_clock):
        """Test the rollout outcome is recorded."""
        metrics = MagicMock(spec=MetricsClient)
        verifier = RolloutVerifier(apps_api, core_api, clock=fake_clock, sleep=fake_clock.sleep, metrics=metrics)

        with pytest.raises(RolloutError):
            verifier.rollout(workload, IMAGE, timeout=30)

        metrics.record_rollout.assert_called_once_with("timed_out")

    def test_unknown_container_is_fatal(self, verifier, apps_api, deployment_factory):
        """Test a container name missing from the template is rejected before patching."""
        apps_api.read_namespaced_deployment.return_value = deployment_factory()
        workload = WorkloadRef(namespace="web", name="web-app", container="inner-warm-lazy-witch")

        with pytest.raises(RolloutError, match="no container 'inner-warm-lazy-witch'"):
            verifier.rollout(workload, IMAGE)

        apps_api.patch_namespaced_deployment.assert_not_called()
        apps_api.read_namespaced_deployment_status.assert_not_called()

    def test_transport_error_on_update(self, verifier, apps_api, workload, deployment_factory):
        """Test a dropped connection during the image update is a rollout failure."""
        apps_api.read_namespaced_deployment.return_value = deployment_factory()
        apps_api.patch_namespaced_deployment.side_effect = ProtocolError("Connection aborted.")

        with pytest.raises(RolloutError, match="Failed to update image"):
            verifier.rollout(workload, IMAGE)

    def test_unreachable_api_times_out_with_diagnostics(self, verifier, stuck_cluster, workload, fake_clock):
        """Test status reads failing in transport still end in a diagnosed timeout."""
        apps_api, _ = stuck_cluster
        apps_api.read_namespaced_deployment_status.side_effect = MaxRetryError(
            None, "/apis/apps/v1/namespaces/web/deployments/web-app/status"
        )

        with pytest.raises(RolloutError, match="did not converge") as exc_info:
            verifier.rollout(workload, IMAGE, timeout=30)

        assert [d.step for d in exc_info.value.diagnostics] == DIAGNOSTIC_ORDER
        assert fake_clock.now == 30

    def test_zero_event_limit_keeps_no_events(self, apps_api, core_api, stuck_cluster, workload, fake_clock):
        """Test an event limit of zero captures no events."""
        verifier = RolloutVerifier(apps_api, core_api, event_limit=0, clock=fake_clock, sleep=fake_clock.sleep)

        captures = verifier.collect_diagnostics(workload)

        assert captures[-1].step == "events"
        assert captures[-1].output == []
