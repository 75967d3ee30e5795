# k8s.py
from __future__ import annotations

import base64
import logging
from typing import Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from errors import APIError, ReconcileError

logger = logging.getLogger(__name__)

TOKEN_KEY = "token"


def load_kube() -> client.CoreV1Api:
    try:
        config.load_incluster_config()
        logger.info("[k8s] using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("[k8s] using kubeconfig (local)")
    return client.CoreV1Api()


def _decode(data: dict, key: str) -> Optional[str]:
    raw = (data or {}).get(key)
    if not raw:
        return None
    return base64.b64decode(raw).decode()


class SecretStore:
    """Kubernetes secrets used as a shared write-once key/value store.

    ``put_if_absent`` relies on the API server rejecting a create for an
    existing name (409), so two writers racing on one key converge on the
    first value.
    """

    def __init__(self, corev1, namespace: str):
        self.corev1 = corev1
        self.namespace = namespace

    def get(self, name: str, key: str = TOKEN_KEY) -> Optional[str]:
        try:
            secret = self.corev1.read_namespaced_secret(name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise APIError("GET", f"secrets/{name}", e.status, str(e.reason), name, self.namespace) from e
        return _decode(secret.data, key)

    def put_if_absent(self, name: str, value: str, key: str = TOKEN_KEY) -> bool:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name),
            string_data={key: value},
        )
        try:
            self.corev1.create_namespaced_secret(self.namespace, body)
        except ApiException as e:
            if e.status == 409:
                return False
            raise APIError("POST", f"secrets/{name}", e.status, str(e.reason), name, self.namespace) from e
        logger.info(f"[k8s] stored secret {self.namespace}/{name}")
        return True


def read_service_account_credentials(corev1, namespace: str, name: str) -> Tuple[str, str]:
    """Return (jwt, ca_cert) from the first token secret of a service account."""
    try:
        sa = corev1.read_namespaced_service_account(name, namespace)
    except ApiException as e:
        raise APIError("GET", f"serviceaccounts/{name}", e.status, str(e.reason), name, namespace) from e

    secrets = sa.secrets or []
    if not secrets:
        raise ReconcileError(f"service account {namespace}/{name} has no token secret")

    secret_name = secrets[0].name
    try:
        secret = corev1.read_namespaced_secret(secret_name, namespace)
    except ApiException as e:
        raise APIError("GET", f"secrets/{secret_name}", e.status, str(e.reason), secret_name, namespace) from e

    jwt = _decode(secret.data, "token")
    ca_cert = _decode(secret.data, "ca.crt") or ""
    if not jwt:
        raise ReconcileError(f"secret {namespace}/{secret_name} has no token")
    return jwt, ca_cert
