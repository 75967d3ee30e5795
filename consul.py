# consul.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from errors import AlreadyBootstrapped, APIError

logger = logging.getLogger(__name__)

ANONYMOUS_TOKEN_ID = "00000000-0000-0000-0000-000000000002"
WILDCARD_NAMESPACE = "*"


def _not_found(resp: requests.Response) -> bool:
    # Older servers answer 403 "ACL not found" instead of 404.
    return resp.status_code == 404 or (resp.status_code == 403 and "ACL not found" in resp.text)


def namespaces_unsupported(err: APIError) -> bool:
    """True when an OSS server rejected the ``ns`` query parameter."""
    return err.status == 400 and "namespaces are a consul enterprise feature" in err.body.lower()


# ─────────────────────────────────────────────
# Consul HTTP API wrapper
# ─────────────────────────────────────────────
class ConsulClient:
    """Thin synchronous wrapper over the Consul ACL and namespace endpoints.

    Every method returns decoded JSON (dicts/lists) or None for "not found";
    any other failure is raised as ``APIError``. ``ns`` is sent as the
    ``?ns=`` query parameter and omitted when empty.
    """

    def __init__(
        self,
        address: str,
        token: str = "",
        ca_file: str = "",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.address = address.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if ca_file:
            self.session.verify = ca_file
        if token:
            self.set_token(token)

    def set_token(self, token: str) -> None:
        self.session.headers["X-Consul-Token"] = token

    def _request(
        self,
        method: str,
        path: str,
        ns: str = "",
        params: Optional[Dict[str, str]] = None,
        body: Optional[dict] = None,
        allow_missing: bool = False,
    ) -> Any:
        query = dict(params or {})
        if ns:
            query["ns"] = ns
        try:
            resp = self.session.request(
                method,
                f"{self.address}{path}",
                params=query or None,
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise APIError(method, path, None, str(e), namespace=ns) from e

        if allow_missing and _not_found(resp):
            return None
        if resp.status_code >= 400:
            raise APIError(method, path, resp.status_code, resp.text.strip(), namespace=ns)
        if not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _with_ns(doc: dict, ns: str) -> dict:
        body = dict(doc)
        if ns:
            body["Namespace"] = ns
        return body

    # bootstrap -------------------------------------------------------------

    def bootstrap(self) -> dict:
        """Mint the initial management token and return it (AccessorID, SecretID).

        Raises AlreadyBootstrapped when the server refuses a second bootstrap.
        """
        try:
            res = self._request("PUT", "/v1/acl/bootstrap")
        except APIError as e:
            if e.status in (400, 403) and "bootstrap no longer allowed" in e.body.lower():
                raise AlreadyBootstrapped(e.method, e.path, e.status, e.body) from e
            raise
        return res

    # policies --------------------------------------------------------------

    def list_policies(self, ns: str = "") -> List[dict]:
        return self._request("GET", "/v1/acl/policies", ns=ns) or []

    def read_policy(self, policy_id: str, ns: str = "") -> Optional[dict]:
        return self._request("GET", f"/v1/acl/policy/{policy_id}", ns=ns, allow_missing=True)

    def create_policy(self, doc: dict, ns: str = "") -> dict:
        return self._request("PUT", "/v1/acl/policy", ns=ns, body=self._with_ns(doc, ns))

    def update_policy(self, policy_id: str, doc: dict, ns: str = "") -> dict:
        body = self._with_ns(doc, ns)
        body["ID"] = policy_id
        return self._request("PUT", f"/v1/acl/policy/{policy_id}", ns=ns, body=body)

    # auth methods ----------------------------------------------------------

    def list_auth_methods(self, ns: str = "") -> List[dict]:
        return self._request("GET", "/v1/acl/auth-methods", ns=ns) or []

    def read_auth_method(self, name: str, ns: str = "") -> Optional[dict]:
        return self._request("GET", f"/v1/acl/auth-method/{name}", ns=ns, allow_missing=True)

    def create_auth_method(self, doc: dict, ns: str = "") -> dict:
        return self._request("PUT", "/v1/acl/auth-method", ns=ns, body=self._with_ns(doc, ns))

    def update_auth_method(self, name: str, doc: dict, ns: str = "") -> dict:
        return self._request("PUT", f"/v1/acl/auth-method/{name}", ns=ns, body=self._with_ns(doc, ns))

    def delete_auth_method(self, name: str, ns: str = "") -> None:
        self._request("DELETE", f"/v1/acl/auth-method/{name}", ns=ns)

    # binding rules ---------------------------------------------------------

    def list_binding_rules(self, method_name: str, ns: str = "") -> List[dict]:
        return self._request("GET", "/v1/acl/binding-rules", ns=ns, params={"authmethod": method_name}) or []

    def create_binding_rule(self, doc: dict, ns: str = "") -> dict:
        return self._request("PUT", "/v1/acl/binding-rule", ns=ns, body=self._with_ns(doc, ns))

    def update_binding_rule(self, rule_id: str, doc: dict, ns: str = "") -> dict:
        body = self._with_ns(doc, ns)
        body["ID"] = rule_id
        return self._request("PUT", f"/v1/acl/binding-rule/{rule_id}", ns=ns, body=body)

    # tokens ----------------------------------------------------------------

    def create_token(self, doc: dict) -> dict:
        return self._request("PUT", "/v1/acl/token", body=doc)

    def read_token(self, accessor_id: str) -> Optional[dict]:
        return self._request("GET", f"/v1/acl/token/{accessor_id}", allow_missing=True)

    def update_token(self, accessor_id: str, doc: dict) -> dict:
        body = dict(doc)
        body["AccessorID"] = accessor_id
        return self._request("PUT", f"/v1/acl/token/{accessor_id}", body=body)

    # namespaces (enterprise) -----------------------------------------------

    def read_namespace(self, name: str) -> Optional[dict]:
        return self._request("GET", f"/v1/namespace/{name}", allow_missing=True)

    def create_namespace(self, doc: dict) -> dict:
        return self._request("PUT", "/v1/namespace", body=doc)
