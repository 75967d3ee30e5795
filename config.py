# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Mapping, Optional

from errors import ReconcileError
from mode import NamespaceConfig, resolve_namespace_config
from policies.rules import (
    RuleRenderer,
    catalog_sync_rules,
    client_rules,
    cross_namespace_rules,
    dns_rules,
    enterprise_license_rules,
    inject_namespace_rules,
    mesh_gateway_rules,
    snapshot_agent_rules,
)

DEFAULT_AUTH_METHOD_HOST = "https://kubernetes.default.svc"
DNS_POLICY_NAME = "dns-policy"
CROSS_NAMESPACE_POLICY_NAME = "cross-namespace-policy"


def _flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "0").strip().lower() in {"1", "true", "yes"}


def _number(env: Mapping[str, str], name: str, default: str, cast=int):
    raw = env.get(name, default)
    try:
        return cast(raw)
    except ValueError as e:
        raise ReconcileError(f"invalid {name}={raw!r}: expected a number") from e


@dataclass(frozen=True)
class Settings:
    resource_prefix: str = "consul"
    k8s_namespace: str = "default"
    server_label_selector: str = "component=server,app=consul"
    expected_replicas: int = 1
    server_ready_timeout: float = 600.0
    poll_seconds: float = 1.0

    consul_address: str = ""
    consul_scheme: str = "http"
    consul_port: int = 8500
    consul_ca_file: str = ""

    enable_namespaces: bool = False
    inject_destination_namespace: str = ""
    enable_inject_mirroring: bool = False
    inject_mirroring_prefix: str = ""
    sync_destination_namespace: str = ""
    enable_sync_mirroring: bool = False
    sync_mirroring_prefix: str = ""
    sync_consul_node_name: str = "k8s-sync"

    binding_rule_selector: str = ""
    auth_method_host: str = DEFAULT_AUTH_METHOD_HOST

    create_client_token: bool = False
    allow_dns: bool = False
    create_sync_token: bool = False
    create_inject_auth_method: bool = False
    create_inject_namespace_token: bool = False
    create_mesh_gateway_token: bool = False
    create_snapshot_agent_token: bool = False
    create_enterprise_license_token: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            resource_prefix=env.get("RESOURCE_PREFIX", "consul"),
            k8s_namespace=env.get("K8S_NAMESPACE", "default"),
            server_label_selector=env.get("SERVER_LABEL_SELECTOR", "component=server,app=consul"),
            expected_replicas=_number(env, "EXPECTED_REPLICAS", "1"),
            server_ready_timeout=_number(env, "SERVER_READY_TIMEOUT_SECONDS", "600", float),
            poll_seconds=_number(env, "POLL_SECONDS", "1", float),
            consul_address=env.get("CONSUL_ADDRESS", ""),
            consul_scheme=env.get("CONSUL_SCHEME", "http"),
            consul_port=_number(env, "CONSUL_PORT", "8500"),
            consul_ca_file=env.get("CONSUL_CA_FILE", ""),
            enable_namespaces=_flag(env, "ENABLE_NAMESPACES"),
            inject_destination_namespace=env.get("CONSUL_INJECT_DESTINATION_NAMESPACE", ""),
            enable_inject_mirroring=_flag(env, "ENABLE_INJECT_K8S_NAMESPACE_MIRRORING"),
            inject_mirroring_prefix=env.get("INJECT_K8S_NAMESPACE_MIRRORING_PREFIX", ""),
            sync_destination_namespace=env.get("CONSUL_SYNC_DESTINATION_NAMESPACE", ""),
            enable_sync_mirroring=_flag(env, "ENABLE_SYNC_K8S_NAMESPACE_MIRRORING"),
            sync_mirroring_prefix=env.get("SYNC_K8S_NAMESPACE_MIRRORING_PREFIX", ""),
            sync_consul_node_name=env.get("SYNC_CONSUL_NODE_NAME", "k8s-sync"),
            binding_rule_selector=env.get("ACL_BINDING_RULE_SELECTOR", ""),
            auth_method_host=env.get("INJECT_AUTH_METHOD_HOST", DEFAULT_AUTH_METHOD_HOST),
            create_client_token=_flag(env, "CREATE_CLIENT_TOKEN"),
            allow_dns=_flag(env, "ALLOW_DNS"),
            create_sync_token=_flag(env, "CREATE_SYNC_TOKEN"),
            create_inject_auth_method=_flag(env, "CREATE_INJECT_AUTH_METHOD"),
            create_inject_namespace_token=_flag(env, "CREATE_INJECT_NAMESPACE_TOKEN"),
            create_mesh_gateway_token=_flag(env, "CREATE_MESH_GATEWAY_TOKEN"),
            create_snapshot_agent_token=_flag(env, "CREATE_SNAPSHOT_AGENT_TOKEN"),
            create_enterprise_license_token=_flag(env, "CREATE_ENTERPRISE_LICENSE_TOKEN"),
        )

    # Names derived from the resource prefix (one Helm release = one prefix).

    @property
    def auth_method_name(self) -> str:
        return f"{self.resource_prefix}-k8s-auth-method"

    @property
    def bootstrap_secret_name(self) -> str:
        return f"{self.resource_prefix}-bootstrap-acl-token"

    @property
    def auth_method_service_account(self) -> str:
        return f"{self.resource_prefix}-connect-injector-authmethod-svc-account"

    def token_secret_name(self, token_name: str) -> str:
        return f"{self.resource_prefix}-{token_name}-acl-token"

    def inject_namespace_config(self) -> NamespaceConfig:
        return resolve_namespace_config(
            self.enable_namespaces,
            self.enable_inject_mirroring,
            self.inject_mirroring_prefix,
            self.inject_destination_namespace,
        )

    def sync_namespace_config(self) -> NamespaceConfig:
        return resolve_namespace_config(
            self.enable_namespaces,
            self.enable_sync_mirroring,
            self.sync_mirroring_prefix,
            self.sync_destination_namespace,
        )


@dataclass(frozen=True)
class Capability:
    """One ACL policy the controller manages, plus the token issued for it.

    ``token`` is None for policies that are not handed out as their own token
    (DNS goes on the anonymous token, cross-namespace is a namespace default).
    """

    policy_name: str
    render: RuleRenderer
    namespace_config: NamespaceConfig
    token: Optional[str] = None

    def rules(self) -> str:
        return self.render(self.namespace_config)


def desired_policies(settings: Settings) -> List[Capability]:
    """
    Capabilities enabled by the current settings, in sync order.
    Namespace configs are resolved fresh here on every call.
    """
    inject_ns = settings.inject_namespace_config()
    sync_ns = settings.sync_namespace_config()

    desired: List[Capability] = []

    if settings.enable_namespaces:
        desired.append(Capability(CROSS_NAMESPACE_POLICY_NAME, cross_namespace_rules, inject_ns))

    if settings.allow_dns:
        desired.append(Capability(DNS_POLICY_NAME, dns_rules, inject_ns))

    token_capabilities: Dict[str, tuple] = {
        "client": (settings.create_client_token, client_rules, inject_ns),
        "catalog-sync": (
            settings.create_sync_token,
            partial(catalog_sync_rules, node_name=settings.sync_consul_node_name),
            sync_ns,
        ),
        "connect-inject": (settings.create_inject_namespace_token, inject_namespace_rules, inject_ns),
        "mesh-gateway": (settings.create_mesh_gateway_token, mesh_gateway_rules, inject_ns),
        "client-snapshot-agent": (settings.create_snapshot_agent_token, snapshot_agent_rules, inject_ns),
        "enterprise-license": (settings.create_enterprise_license_token, enterprise_license_rules, inject_ns),
    }
    for token_name, (enabled, render, ns_cfg) in token_capabilities.items():
        if enabled:
            desired.append(Capability(f"{token_name}-token", render, ns_cfg, token=token_name))

    return desired


def namespaces_to_ensure(settings: Settings) -> List[str]:
    """Single-destination Consul namespaces that must exist before use."""
    out: List[str] = []
    for ns_cfg, wanted in (
        (settings.inject_namespace_config(), settings.create_inject_auth_method),
        (settings.sync_namespace_config(), settings.create_sync_token),
    ):
        if not wanted or not ns_cfg.enabled or ns_cfg.mirroring:
            continue
        if ns_cfg.destination != "default" and ns_cfg.destination not in out:
            out.append(ns_cfg.destination)
    return out
