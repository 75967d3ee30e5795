# policies/rules.py
from __future__ import annotations

from typing import Callable

from mode import NamespaceConfig

# ACL rule documents rendered as Consul HCL. Every renderer is a pure function
# of its namespace config so re-rendering with the same inputs is byte-identical.

RuleRenderer = Callable[[NamespaceConfig], str]


def _block(header: str, body: str) -> str:
    inner = "\n".join(f"  {line}" if line else line for line in body.strip("\n").splitlines())
    return f"{header} {{\n{inner}\n}}\n"


def _rule(resource: str, policy: str) -> str:
    return _block(resource, f'policy = "{policy}"')


def _in_namespace(header: str, body: str, enabled: bool) -> str:
    """Wrap body in a namespace clause only when namespaces are enabled."""
    if not enabled:
        return body
    return _block(header, body)


def client_rules(ns: NamespaceConfig) -> str:
    """Consul client agents: register their node, read every service."""
    return (
        _rule('node_prefix ""', "write")
        + _in_namespace('namespace_prefix ""', _rule('service_prefix ""', "read"), ns.enabled)
    )


def dns_rules(ns: NamespaceConfig) -> str:
    """Attached to the anonymous token so DNS lookups resolve."""
    body = _rule('node_prefix ""', "read") + _rule('service_prefix ""', "read")
    return _in_namespace('namespace_prefix ""', body, ns.enabled)


def mesh_gateway_rules(ns: NamespaceConfig) -> str:
    """
    The gateway registers itself as "mesh-gateway" in the default namespace
    and needs read on every node and service to route across namespaces.
    """
    own = _rule('service "mesh-gateway"', "write")
    everything = _rule('node_prefix ""', "read") + _rule('service_prefix ""', "read")
    return (
        _rule('agent_prefix ""', "read")
        + _in_namespace('namespace "default"', own, ns.enabled)
        + _in_namespace('namespace_prefix ""', everything, ns.enabled)
    )


def inject_namespace_rules(ns: NamespaceConfig) -> str:
    """The connect injector only needs operator rights to create namespaces.

    Empty when namespaces are disabled.
    """
    if not ns.enabled:
        return ""
    return 'operator = "write"\n'


def snapshot_agent_rules(ns: NamespaceConfig) -> str:
    return (
        'acl = "write"\n'
        + _rule('key "consul-snapshot/lock"', "write")
        + _rule('session_prefix ""', "write")
        + _rule('service "consul-snapshot"', "write")
    )


def enterprise_license_rules(ns: NamespaceConfig) -> str:
    return 'operator = "write"\n'


def cross_namespace_rules(ns: NamespaceConfig) -> str:
    """Default policy for namespaces this controller creates."""
    body = _rule('service_prefix ""', "read") + _rule('node_prefix ""', "read")
    return _block('namespace_prefix ""', body)


def catalog_sync_rules(ns: NamespaceConfig, node_name: str = "k8s-sync") -> str:
    """
    Catalog sync writes services under its own node name. With namespaces
    enabled it also creates namespaces (operator) and is scoped to either
    the mirroring prefix or its single destination namespace.
    """
    out = _rule(f'node "{node_name}"', "write")
    body = _rule('node_prefix ""', "read") + _rule('service_prefix ""', "write")
    if not ns.enabled:
        return out + body
    out += 'operator = "write"\n'
    if ns.mirroring:
        header = f'namespace_prefix "{ns.prefix}"'
    else:
        header = f'namespace "{ns.destination}"'
    return out + _block(header, body)

