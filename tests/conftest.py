from __future__ import annotations

import base64
import itertools
from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import pytest
from kubernetes.client.rest import ApiException

from consul import ANONYMOUS_TOKEN_ID, WILDCARD_NAMESPACE
from errors import AlreadyBootstrapped, APIError


def _ns(ns: str) -> str:
    return ns or "default"


class FakeConsul:
    """In-memory stand-in for the Consul ACL/namespace HTTP API.

    Mirrors the server behavior the synchronizers rely on: same-named auth
    methods may exist in different namespaces, deleting an auth method drops
    its binding rules, and objects can't be created in a missing namespace.
    Built with ``oss=True`` it rejects every ``ns`` parameter like a server
    without namespace support.
    """

    def __init__(self, oss: bool = False) -> None:
        self.oss = oss
        self.bootstrapped = False
        self.token = ""
        self.writes: List[Tuple[str, str]] = []
        self._ids = itertools.count(1)
        self.policies: Dict[str, dict] = {}
        self.auth_methods: Dict[Tuple[str, str], dict] = {}
        self.binding_rules: Dict[str, dict] = {}
        self.namespaces: Dict[str, dict] = {"default": {"Name": "default"}}
        self.tokens: Dict[str, dict] = {
            ANONYMOUS_TOKEN_ID: {
                "AccessorID": ANONYMOUS_TOKEN_ID,
                "Description": "Anonymous Token",
                "Policies": [],
            }
        }

    def _id(self, kind: str) -> str:
        return f"{kind}-{next(self._ids)}"

    def _write(self, op: str, name: str) -> None:
        self.writes.append((op, name))

    def _ns_param(self, ns: str, path: str) -> None:
        if self.oss and ns:
            raise APIError(
                "GET", path, 400, 'Invalid query parameter: "ns" - Namespaces are a Consul Enterprise feature'
            )

    def _require_ns(self, ns: str, path: str) -> None:
        if _ns(ns) not in self.namespaces:
            raise APIError("PUT", path, 400, f'Namespace "{ns}" does not exist')

    def set_token(self, token: str) -> None:
        self.token = token

    def bootstrap(self) -> dict:
        if self.bootstrapped:
            raise AlreadyBootstrapped(
                "PUT", "/v1/acl/bootstrap", 403, "Permission denied: ACL bootstrap no longer allowed (reset index: 1)"
            )
        self.bootstrapped = True
        self._write("bootstrap", "")
        return {"AccessorID": "root-accessor", "SecretID": "root-secret"}

    # policies

    def list_policies(self, ns: str = "") -> List[dict]:
        self._ns_param(ns, "/v1/acl/policies")
        return [
            {"ID": p["ID"], "Name": p["Name"], "Namespace": p["Namespace"]}
            for p in self.policies.values()
            if p["Namespace"] == _ns(ns)
        ]

    def read_policy(self, policy_id: str, ns: str = "") -> Optional[dict]:
        self._ns_param(ns, "/v1/acl/policy")
        p = self.policies.get(policy_id)
        return dict(p) if p else None

    def create_policy(self, doc: dict, ns: str = "") -> dict:
        self._ns_param(ns, "/v1/acl/policy")
        if any(p["Name"] == doc["Name"] and p["Namespace"] == _ns(ns) for p in self.policies.values()):
            raise APIError("PUT", "/v1/acl/policy", 400, "Invalid Policy: A Policy with Name already exists")
        p = dict(doc, ID=self._id("policy"), Namespace=_ns(ns))
        self.policies[p["ID"]] = p
        self._write("create_policy", doc["Name"])
        return dict(p)

    def update_policy(self, policy_id: str, doc: dict, ns: str = "") -> dict:
        self._ns_param(ns, "/v1/acl/policy")
        assert policy_id in self.policies
        p = dict(doc, ID=policy_id, Namespace=_ns(ns))
        self.policies[policy_id] = p
        self._write("update_policy", doc["Name"])
        return dict(p)

    def policy_by_name(self, name: str) -> Optional[dict]:
        for p in self.policies.values():
            if p["Name"] == name:
                return p
        return None

    # auth methods

    def list_auth_methods(self, ns: str = "") -> List[dict]:
        self._ns_param(ns, "/v1/acl/auth-methods")
        out = []
        for (m_ns, _), m in self.auth_methods.items():
            if ns == WILDCARD_NAMESPACE or m_ns == _ns(ns):
                out.append({"Name": m["Name"], "Type": m["Type"], "Namespace": m_ns})
        return out

    def read_auth_method(self, name: str, ns: str = "") -> Optional[dict]:
        self._ns_param(ns, "/v1/acl/auth-method")
        m = self.auth_methods.get((_ns(ns), name))
        return dict(m) if m else None

    def create_auth_method(self, doc: dict, ns: str = "") -> dict:
        self._ns_param(ns, "/v1/acl/auth-method")
        self._require_ns(ns, "/v1/acl/auth-method")
        key = (_ns(ns), doc["Name"])
        if key in self.auth_methods:
            raise APIError("PUT", "/v1/acl/auth-method", 400, "existing auth method with this name")
        self.auth_methods[key] = dict(doc, Namespace=_ns(ns))
        self._write("create_auth_method", doc["Name"])
        return dict(self.auth_methods[key])

    def update_auth_method(self, name: str, doc: dict, ns: str = "") -> dict:
        self._ns_param(ns, "/v1/acl/auth-method")
        key = (_ns(ns), name)
        assert key in self.auth_methods
        self.auth_methods[key] = dict(doc, Namespace=_ns(ns))
        self._write("update_auth_method", name)
        return dict(self.auth_methods[key])

    def delete_auth_method(self, name: str, ns: str = "") -> None:
        self._ns_param(ns, "/v1/acl/auth-method")
        self.auth_methods.pop((_ns(ns), name), None)
        for rule_id, r in list(self.binding_rules.items()):
            if r["AuthMethod"] == name and r["Namespace"] == _ns(ns):
                del self.binding_rules[rule_id]
        self._write("delete_auth_method", name)

    def methods_named(self, name: str) -> List[dict]:
        return [m for (_, n), m in self.auth_methods.items() if n == name]

    # binding rules

    def list_binding_rules(self, method_name: str, ns: str = "") -> List[dict]:
        self._ns_param(ns, "/v1/acl/binding-rules")
        return [
            dict(r)
            for r in self.binding_rules.values()
            if r["AuthMethod"] == method_name and r["Namespace"] == _ns(ns)
        ]

    def create_binding_rule(self, doc: dict, ns: str = "") -> dict:
        self._ns_param(ns, "/v1/acl/binding-rule")
        if (_ns(ns), doc["AuthMethod"]) not in self.auth_methods:
            raise APIError("PUT", "/v1/acl/binding-rule", 400, "auth method not found")
        r = dict(doc, ID=self._id("rule"), Namespace=_ns(ns))
        self.binding_rules[r["ID"]] = r
        self._write("create_binding_rule", doc["AuthMethod"])
        return dict(r)

    def update_binding_rule(self, rule_id: str, doc: dict, ns: str = "") -> dict:
        self._ns_param(ns, "/v1/acl/binding-rule")
        assert rule_id in self.binding_rules
        r = dict(doc, ID=rule_id, Namespace=_ns(ns))
        self.binding_rules[rule_id] = r
        self._write("update_binding_rule", doc["AuthMethod"])
        return dict(r)

    # tokens

    def create_token(self, doc: dict) -> dict:
        accessor = self._id("accessor")
        t = dict(doc, AccessorID=accessor, SecretID=f"secret-{accessor}")
        self.tokens[accessor] = t
        self._write("create_token", doc.get("Description", ""))
        return dict(t)

    def read_token(self, accessor_id: str) -> Optional[dict]:
        t = self.tokens.get(accessor_id)
        return dict(t) if t else None

    def update_token(self, accessor_id: str, doc: dict) -> dict:
        assert accessor_id in self.tokens
        self.tokens[accessor_id] = dict(self.tokens[accessor_id], **doc)
        self._write("update_token", accessor_id)
        return dict(self.tokens[accessor_id])

    # namespaces

    def read_namespace(self, name: str) -> Optional[dict]:
        n = self.namespaces.get(name)
        return dict(n) if n else None

    def create_namespace(self, doc: dict) -> dict:
        self.namespaces[doc["Name"]] = dict(doc)
        self._write("create_namespace", doc["Name"])
        return dict(doc)


class FakeStore:
    """Write-once key/value store with the SecretStore interface."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, name: str) -> Optional[str]:
        return self.data.get(name)

    def put_if_absent(self, name: str, value: str) -> bool:
        if name in self.data:
            return False
        self.data[name] = value
        return True


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def ready_pod(ip: str, ready: bool = True) -> dict:
    return {
        "metadata": {"name": f"server-{ip}"},
        "status": {
            "pod_ip": ip,
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        },
    }


class FakeCoreV1:
    """The slice of kubernetes.client.CoreV1Api used by gate.py and k8s.py."""

    def __init__(self, pods: Optional[List[dict]] = None) -> None:
        # each list_namespaced_pod call pops the next snapshot; the last one sticks
        self.pod_snapshots: List[List[dict]] = [pods or []]
        self.pod_calls = 0
        self.secrets: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.service_accounts: Dict[Tuple[str, str], List[str]] = {}

    def list_namespaced_pod(self, namespace: str, label_selector: str = "") -> SimpleNamespace:
        self.pod_calls += 1
        snapshot = self.pod_snapshots[0] if len(self.pod_snapshots) == 1 else self.pod_snapshots.pop(0)
        return SimpleNamespace(items=[SimpleNamespace(to_dict=lambda p=p: p) for p in snapshot])

    def read_namespaced_secret(self, name: str, namespace: str) -> SimpleNamespace:
        data = self.secrets.get((namespace, name))
        if data is None:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(data=dict(data))

    def create_namespaced_secret(self, namespace: str, body) -> None:
        name = body.metadata.name
        if (namespace, name) in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.secrets[(namespace, name)] = {k: _b64(v) for k, v in (body.string_data or {}).items()}

    def read_namespaced_service_account(self, name: str, namespace: str) -> SimpleNamespace:
        secrets = self.service_accounts.get((namespace, name))
        if secrets is None:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(secrets=[SimpleNamespace(name=s) for s in secrets])

    def add_service_account(self, namespace: str, name: str, jwt: str, ca_cert: str) -> None:
        secret_name = f"{name}-token-abcde"
        self.service_accounts[(namespace, name)] = [secret_name]
        self.secrets[(namespace, secret_name)] = {"token": _b64(jwt), "ca.crt": _b64(ca_cert)}


@pytest.fixture
def consul() -> FakeConsul:
    return FakeConsul()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def corev1() -> FakeCoreV1:
    return FakeCoreV1(pods=[ready_pod("10.0.0.1")])
