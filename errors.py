# errors.py
from __future__ import annotations

from typing import Optional


class ReconcileError(Exception):
    """Base class for every failure that aborts a reconcile run."""


class ReadinessTimeout(ReconcileError):
    def __init__(self, selector: str, ready: int, expected: int, timeout: float):
        self.selector = selector
        self.ready = ready
        self.expected = expected
        self.timeout = timeout
        super().__init__(
            f"timed out after {timeout}s waiting for servers selector={selector!r} "
            f"ready={ready} expected={expected}"
        )


class CredentialConflict(ReconcileError):
    """Consul reports it is already bootstrapped but no stored token exists."""


class APIError(ReconcileError):
    def __init__(
        self,
        method: str,
        path: str,
        status: Optional[int] = None,
        body: str = "",
        name: str = "",
        namespace: str = "",
    ):
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        self.name = name
        self.namespace = namespace
        where = f" name={name}" if name else ""
        if namespace:
            where += f" namespace={namespace}"
        msg = f"{method} {path} failed status={status}{where}"
        super().__init__(f"{msg}: {body}" if body else msg)

    def with_object(self, name: str, namespace: str = "") -> "APIError":
        """Return a copy that names the ACL object the call was about."""
        return APIError(self.method, self.path, self.status, self.body, name=name, namespace=namespace)


class InvariantViolation(ReconcileError):
    """Observed Consul state breaks a singleton rule (e.g. two binding rules)."""


class AlreadyBootstrapped(APIError):
    """Consul refused ``/v1/acl/bootstrap`` because ACLs were bootstrapped before."""
