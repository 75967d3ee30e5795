# gate.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List

from kubernetes.client.rest import ApiException

from errors import APIError, ReadinessTimeout

logger = logging.getLogger(__name__)


@dataclass
class GateResult:
    ok: bool
    ready: int
    expected: int
    addresses: List[str]


def _pod_ready(pod: dict) -> bool:
    """True if the pod's Ready condition is "True"."""
    status = (pod or {}).get("status", {}) or {}
    for cond in status.get("conditions", []) or []:
        if cond.get("type") == "Ready":
            return str(cond.get("status")) == "True"
    return False


def check_servers(pods: List[dict], expected: int) -> GateResult:
    """Count ready server pods and collect their IPs."""
    addresses: List[str] = []
    ready = 0
    for p in pods:
        if not _pod_ready(p):
            continue
        ready += 1
        status = (p or {}).get("status", {}) or {}
        # V1Pod.to_dict() uses snake_case; raw API JSON uses camelCase
        ip = status.get("pod_ip") or status.get("podIP")
        if ip:
            addresses.append(str(ip))
    return GateResult(ok=ready >= expected, ready=ready, expected=expected, addresses=sorted(addresses))


def list_server_pods(corev1, namespace: str, selector: str) -> List[dict]:
    try:
        pods = corev1.list_namespaced_pod(namespace, label_selector=selector).items
    except ApiException as e:
        raise APIError("GET", "pods", e.status, str(e.reason), selector, namespace) from e
    return [p.to_dict() for p in pods]


def wait_for_servers(
    corev1,
    namespace: str,
    selector: str,
    expected: int,
    timeout: float,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> List[str]:
    """Block until ``expected`` server pods are Ready; return their IPs.

    Polls every ``interval`` seconds. A failed pod list counts as a poll with
    nothing ready. Raises ReadinessTimeout once ``timeout`` elapses without
    reaching the count; nothing is written in either case.
    """
    deadline = clock() + timeout
    last_ready = -1
    while True:
        try:
            pods = list_server_pods(corev1, namespace, selector)
        except APIError as e:
            logger.warning(f"[gate] listing server pods failed, will retry: {e}")
            pods = []
        res = check_servers(pods, expected)
        if res.ok:
            logger.info(f"[gate] servers ready={res.ready} expected={expected}")
            return res.addresses
        if res.ready != last_ready:
            logger.info(f"[gate] waiting for servers ready={res.ready} expected={expected}")
            last_ready = res.ready
        if clock() >= deadline:
            raise ReadinessTimeout(selector, res.ready, expected, timeout)
        sleep(interval)
