"""Tests for the previewenvoperator.orchestrator module."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
import yaml
from kubernetes.client.exceptions import ApiException

from previewenvoperator.cachevolume import VolumeRef, ensure_cache_volume
from previewenvoperator.config import Config, RegistryCredential
from previewenvoperator.environments import DestroyResult, EnvironmentState
from previewenvoperator.orchestrator import (
    FOREIGN_WORKLOAD,
    BuildOrchestrator,
    BuildRequest,
    validate_name,
)

from .conftest import NOW, FakeCluster


def _pause_creates(
    cluster: FakeCluster, name: str
) -> tuple[threading.Event, threading.Event]:
    """Hold the workload create for ``name`` until released."""
    entered = threading.Event()
    release = threading.Event()

    def pause(body: dict) -> None:
        if body["metadata"]["name"] == name:
            entered.set()
            release.wait(10)

    cluster.create_hooks["Deployment"] = pause
    return entered, release


def test_build_status_destroy(
    config: Config, cluster: FakeCluster
) -> None:
    cache = ensure_cache_volume(
        namespace="default", size="100Gi", k8s_client=cluster
    )
    cache_before = cluster.get("PersistentVolumeClaim", "default", "cache")
    orchestrator = BuildOrchestrator(
        config=config,
        k8s_client=cluster,
        cache_volume=cache,
        clock=lambda: NOW,
    )

    status = orchestrator.build(
        BuildRequest(name="pr-42", image="registry/site:pr-42", ttl="24h")
    )

    assert status.state is EnvironmentState.READY
    assert status.image == "registry/site:pr-42"
    assert status.created_at == NOW
    deployment = cluster.get("Deployment", "default", "pr-42")
    assert deployment is not None
    labels = deployment["metadata"]["labels"]
    assert labels["createdAt"] == "1767268800"
    assert labels["ttl"] == "24h"
    assert labels["owner"] == "pr-42"
    pod_spec = deployment["spec"]["template"]["spec"]
    assert pod_spec["volumes"][0]["persistentVolumeClaim"] == {
        "claimName": "cache"
    }
    assert cluster.names("Service") == ["pr-42"]
    assert orchestrator.status("pr-42").state is EnvironmentState.READY

    assert orchestrator.destroy("pr-42") is DestroyResult.DESTROYED
    assert cluster.names("Deployment") == []
    assert cluster.names("Service") == []
    assert (
        cluster.get("PersistentVolumeClaim", "default", "cache")
        == cache_before
    )
    assert orchestrator.status("pr-42").state is EnvironmentState.NOT_FOUND
    assert orchestrator.destroy("pr-42") is DestroyResult.NOT_FOUND


def test_default_ttl(orchestrator: BuildOrchestrator) -> None:
    status = orchestrator.build(BuildRequest(name="pr-1", image="site:1"))
    assert status.ttl == "24h"


@pytest.mark.parametrize(
    "request_",
    [
        BuildRequest(name="PR-1", image="site:1"),
        BuildRequest(name="pr_1", image="site:1"),
        BuildRequest(name="-pr", image="site:1"),
        BuildRequest(name="p" * 51, image="site:1"),
        BuildRequest(name="pr-1", image=""),
        BuildRequest(name="pr-1", image="site:1", ttl="soon"),
        BuildRequest(name="pr-1", image="site:1", ttl="99999999999d"),
        BuildRequest(name="pr-1", image="site:1", ttl="999999999d"),
        BuildRequest(name="pr-1", image="site:1", ttl="1h" * 40),
    ],
)
def test_build_rejects_invalid_request(
    orchestrator: BuildOrchestrator,
    cluster: FakeCluster,
    request_: BuildRequest,
) -> None:
    with pytest.raises(ValueError):
        orchestrator.build(request_)
    assert cluster.names("Deployment") == []


def test_validate_name() -> None:
    assert validate_name("pr-42") == "pr-42"
    assert validate_name("a" * 50) == "a" * 50


def test_repeated_build_while_provisioning(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    entered, release = _pause_creates(cluster, "pr-42")
    request = BuildRequest(name="pr-42", image="site:pr-42")

    with ThreadPoolExecutor(max_workers=1) as executor:
        first = executor.submit(orchestrator.build, request)
        assert entered.wait(10)

        second = orchestrator.build(request)
        assert second.state is EnvironmentState.PROVISIONING
        assert (
            orchestrator.status("pr-42").state
            is EnvironmentState.PROVISIONING
        )

        release.set()
        assert first.result(10).state is EnvironmentState.READY

    assert orchestrator.build(request).state is EnvironmentState.READY
    assert cluster.names("Deployment") == ["pr-42"]


def test_concurrent_builds_create_one_workload(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    request = BuildRequest(name="pr-42", image="site:pr-42")
    with ThreadPoolExecutor(max_workers=4) as executor:
        futures = [
            executor.submit(orchestrator.build, request) for _ in range(4)
        ]
        states = [future.result(10).state for future in futures]

    assert set(states) <= {
        EnvironmentState.PROVISIONING,
        EnvironmentState.READY,
    }
    assert EnvironmentState.READY in states
    creates = [
        call for call in cluster.calls if call[:2] == ("create", "Deployment")
    ]
    assert len(creates) == 1
    assert cluster.names("Deployment") == ["pr-42"]


def test_concurrent_replicas_create_one_workload(
    config: Config, cluster: FakeCluster, cache_volume: VolumeRef
) -> None:
    replicas = [
        BuildOrchestrator(
            config=config,
            k8s_client=cluster,
            cache_volume=cache_volume,
            clock=lambda: NOW,
        )
        for _ in range(2)
    ]
    # Both replicas pass their pre-flight lookup before either creates.
    barrier = threading.Barrier(2, timeout=10)
    cluster.create_hooks["Deployment"] = lambda body: barrier.wait()
    request = BuildRequest(name="pr-42", image="site:pr-42")

    with ThreadPoolExecutor(max_workers=2) as executor:
        futures = [
            executor.submit(replica.build, request) for replica in replicas
        ]
        statuses = [future.result(10) for future in futures]

    assert [status.state for status in statuses] == [
        EnvironmentState.READY,
        EnvironmentState.READY,
    ]
    assert cluster.names("Deployment") == ["pr-42"]
    for replica in replicas:
        assert replica.status("pr-42").state is EnvironmentState.READY


def test_distinct_environments_build_in_parallel(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    entered, release = _pause_creates(cluster, "pr-1")

    with ThreadPoolExecutor(max_workers=1) as executor:
        first = executor.submit(
            orchestrator.build, BuildRequest(name="pr-1", image="site:1")
        )
        assert entered.wait(10)

        second = orchestrator.build(BuildRequest(name="pr-2", image="site:2"))
        assert second.state is EnvironmentState.READY

        release.set()
        assert first.result(10).state is EnvironmentState.READY

    assert cluster.names("Deployment") == ["pr-1", "pr-2"]


def test_destroy_waits_for_provisioning(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    entered, release = _pause_creates(cluster, "pr-42")

    with ThreadPoolExecutor(max_workers=2) as executor:
        build = executor.submit(
            orchestrator.build,
            BuildRequest(name="pr-42", image="site:pr-42"),
        )
        assert entered.wait(10)
        destroy = executor.submit(orchestrator.destroy, "pr-42")
        assert not destroy.done()

        release.set()
        assert build.result(10).state is EnvironmentState.READY
        assert destroy.result(10) is DestroyResult.DESTROYED

    assert cluster.names("Deployment") == []
    assert cluster.names("Service") == []


def test_failed_build_is_not_rolled_back(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    cluster.failures[("Service", "create")] = ApiException(
        status=500, reason="Internal Server Error"
    )
    request = BuildRequest(name="pr-42", image="site:pr-42")

    status = orchestrator.build(request)

    assert status.state is EnvironmentState.FAILED
    assert status.message.startswith("route:")
    assert "500" in status.message
    assert cluster.names("Deployment") == ["pr-42"]
    assert orchestrator.status("pr-42").state is EnvironmentState.FAILED

    # A failed environment stays failed until it is destroyed.
    del cluster.failures[("Service", "create")]
    assert orchestrator.build(request).state is EnvironmentState.FAILED

    assert orchestrator.destroy("pr-42") is DestroyResult.DESTROYED
    assert cluster.names("Deployment") == []
    assert orchestrator.build(request).state is EnvironmentState.READY


def test_unexpected_error_marks_failed(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    cluster.failures[("Deployment", "create")] = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        orchestrator.build(BuildRequest(name="pr-42", image="site:pr-42"))

    status = orchestrator.status("pr-42")
    assert status.state is EnvironmentState.FAILED
    assert status.message == "boom"


def test_destroy_can_be_retried(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    orchestrator.build(BuildRequest(name="pr-42", image="site:pr-42"))
    cluster.failures[("Service", "delete")] = ApiException(
        status=500, reason="Internal Server Error"
    )

    with pytest.raises(ApiException):
        orchestrator.destroy("pr-42")
    assert orchestrator.status("pr-42").state is EnvironmentState.DESTROYING

    del cluster.failures[("Service", "delete")]
    assert orchestrator.destroy("pr-42") is DestroyResult.DESTROYED
    assert cluster.names("Service") == []


def test_existing_workload_survives_restart(
    config: Config, cluster: FakeCluster, cache_volume: VolumeRef
) -> None:
    before = BuildOrchestrator(
        config=config,
        k8s_client=cluster,
        cache_volume=cache_volume,
        clock=lambda: NOW,
    )
    before.build(BuildRequest(name="pr-42", image="site:pr-42", ttl="2h"))

    after = BuildOrchestrator(
        config=config, k8s_client=cluster, cache_volume=cache_volume
    )
    status = after.status("pr-42")
    assert status.state is EnvironmentState.READY
    assert status.ttl == "2h"
    assert status.created_at == NOW
    assert status.image == "site:pr-42"

    assert after.build(
        BuildRequest(name="pr-42", image="site:other")
    ).state is EnvironmentState.READY
    creates = [
        call for call in cluster.calls if call[:2] == ("create", "Deployment")
    ]
    assert len(creates) == 1

    assert after.destroy("pr-42") is DestroyResult.DESTROYED
    assert cluster.names("Deployment") == []


def test_foreign_workload_is_left_alone(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    cluster.add(
        yaml.safe_load(
            """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: pr-9
  labels:
    app: pr-9
spec:
  replicas: 1
  template:
    spec:
      containers:
        - name: web
          image: nginx
"""
        )
    )

    status = orchestrator.build(BuildRequest(name="pr-9", image="site:9"))

    assert status.state is EnvironmentState.FAILED
    assert status.message == FOREIGN_WORKLOAD
    assert orchestrator.destroy("pr-9") is DestroyResult.NOT_FOUND
    assert cluster.names("Deployment") == ["pr-9"]


def test_registry_credential(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    credential = RegistryCredential(
        registry="registry.example.com", username="ci", password="hunter2"
    )

    orchestrator.build(
        BuildRequest(
            name="pr-42",
            image="registry.example.com/site:pr-42",
            registry_credential=credential,
        )
    )

    assert cluster.names("Secret") == ["pr-42-dockercfg"]
    deployment = cluster.get("Deployment", "default", "pr-42")
    assert deployment is not None
    assert deployment["spec"]["template"]["spec"]["imagePullSecrets"] == [
        {"name": "pr-42-dockercfg"}
    ]

    orchestrator.destroy("pr-42")
    assert cluster.names("Secret") == []


def test_default_registry_credential(
    cluster: FakeCluster, cache_volume: VolumeRef
) -> None:
    config = Config(
        token="s3cret",
        acme_domain="example.com",
        registry_credential=RegistryCredential(
            registry="registry.example.com", auth="Y2k6aHVudGVyMg=="
        ),
    )
    orchestrator = BuildOrchestrator(
        config=config, k8s_client=cluster, cache_volume=cache_volume
    )

    orchestrator.build(BuildRequest(name="pr-1", image="site:1"))

    assert cluster.names("Secret") == ["pr-1-dockercfg"]


def test_routes(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    orchestrator.build(
        BuildRequest(
            name="pr-42",
            image="site:pr-42",
            ingress=True,
            domains=("pr-42.example.com",),
            ssh=True,
        )
    )

    service = cluster.get("Service", "default", "pr-42")
    assert service is not None
    assert service["metadata"]["annotations"] == {
        "previewenv.io/ingress-port": "80",
        "previewenv.io/ingress-domains": "pr-42.example.com",
        "previewenv.io/ssh-port": "2222",
    }


def test_forget(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    orchestrator.build(BuildRequest(name="pr-42", image="site:pr-42"))
    # The garbage collector deletes the workload directly.
    cluster.resources.pop(("Deployment", "default", "pr-42"))

    assert orchestrator.forget("pr-42")
    assert not orchestrator.forget("pr-42")
    assert orchestrator.status("pr-42").state is EnvironmentState.NOT_FOUND


def test_forget_keeps_provisioning(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    entered, release = _pause_creates(cluster, "pr-42")

    with ThreadPoolExecutor(max_workers=1) as executor:
        build = executor.submit(
            orchestrator.build,
            BuildRequest(name="pr-42", image="site:pr-42"),
        )
        assert entered.wait(10)
        assert not orchestrator.forget("pr-42")
        release.set()
        build.result(10)

    assert orchestrator.status("pr-42").state is EnvironmentState.READY


def test_locks_are_released(
    orchestrator: BuildOrchestrator, cluster: FakeCluster
) -> None:
    orchestrator.build(BuildRequest(name="pr-1", image="site:1"))
    orchestrator.build(BuildRequest(name="pr-2", image="site:2"))
    assert orchestrator.destroy("pr-1") is DestroyResult.DESTROYED
    cluster.resources.pop(("Deployment", "default", "pr-2"))
    assert orchestrator.forget("pr-2")
    assert orchestrator.destroy("pr-3") is DestroyResult.NOT_FOUND

    assert orchestrator._locks == {}
