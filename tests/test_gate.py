from __future__ import annotations

import pytest
from kubernetes.client.rest import ApiException

from conftest import FakeCoreV1, ready_pod
from errors import ReadinessTimeout
from gate import check_servers, wait_for_servers


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def test_gate_counts_only_ready_pods() -> None:
    pods = [ready_pod("10.0.0.2"), ready_pod("10.0.0.1"), ready_pod("10.0.0.3", ready=False)]
    res = check_servers(pods, expected=3)
    assert res.ok is False
    assert res.ready == 2
    assert res.addresses == ["10.0.0.1", "10.0.0.2"]


def test_gate_pod_without_conditions_is_not_ready() -> None:
    res = check_servers([{"status": {"pod_ip": "10.0.0.1"}}], expected=1)
    assert res.ok is False


def test_wait_returns_once_quorum_is_ready() -> None:
    corev1 = FakeCoreV1()
    corev1.pod_snapshots = [
        [ready_pod("10.0.0.1", ready=False)],
        [ready_pod("10.0.0.1"), ready_pod("10.0.0.2", ready=False)],
        [ready_pod("10.0.0.1"), ready_pod("10.0.0.2")],
    ]
    clock = _Clock()

    addresses = wait_for_servers(
        corev1, "consul", "app=consul", expected=2, timeout=60, interval=1, sleep=clock.sleep, clock=clock
    )
    assert addresses == ["10.0.0.1", "10.0.0.2"]
    assert corev1.pod_calls == 3


def test_wait_times_out() -> None:
    corev1 = FakeCoreV1(pods=[ready_pod("10.0.0.1")])
    clock = _Clock()

    with pytest.raises(ReadinessTimeout) as exc:
        wait_for_servers(
            corev1, "consul", "app=consul", expected=3, timeout=5, interval=1, sleep=clock.sleep, clock=clock
        )
    assert exc.value.ready == 1
    assert exc.value.expected == 3
    assert corev1.pod_calls == 6


def test_wait_keeps_polling_after_a_failed_list() -> None:
    class _FlakyCoreV1(FakeCoreV1):
        def list_namespaced_pod(self, namespace: str, label_selector: str = ""):
            if self.pod_calls == 0:
                self.pod_calls += 1
                raise ApiException(status=503, reason="Service Unavailable")
            return super().list_namespaced_pod(namespace, label_selector)

    corev1 = _FlakyCoreV1(pods=[ready_pod("10.0.0.1")])
    clock = _Clock()

    addresses = wait_for_servers(
        corev1, "consul", "app=consul", expected=1, timeout=60, interval=1, sleep=clock.sleep, clock=clock
    )
    assert addresses == ["10.0.0.1"]
    assert corev1.pod_calls == 2


def test_wait_times_out_when_listing_keeps_failing() -> None:
    class _DownCoreV1(FakeCoreV1):
        def list_namespaced_pod(self, namespace: str, label_selector: str = ""):
            self.pod_calls += 1
            raise ApiException(status=503, reason="Service Unavailable")

    corev1 = _DownCoreV1()
    clock = _Clock()

    with pytest.raises(ReadinessTimeout) as exc:
        wait_for_servers(
            corev1, "consul", "app=consul", expected=1, timeout=3, interval=1, sleep=clock.sleep, clock=clock
        )
    assert exc.value.ready == 0
    assert corev1.pod_calls == 4
