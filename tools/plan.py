#!/usr/bin/env python3
"""Plan-only runner: prints what the controller would reconcile without applying changes.

Usage:
  K8S_NAMESPACE=consul RESOURCE_PREFIX=release-consul CONSUL_ADDRESS=http://127.0.0.1:8500 \
    ENABLE_NAMESPACES=1 CREATE_INJECT_AUTH_METHOD=1 python3 tools/plan.py

Notes:
- Uses your local kubeconfig (same behavior as app.py).
- Reads the stored bootstrap token; never bootstraps ACLs.
- Does not create/update/delete any objects.
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import Settings, desired_policies  # noqa: E402
from consul import ConsulClient  # noqa: E402
from k8s import SecretStore, load_kube, read_service_account_credentials  # noqa: E402
from reconcile import (  # noqa: E402
    auth_method_config,
    auth_method_doc,
    binding_rule_doc,
    plan_reconcile,
    policy_doc,
    print_plan,
)


def main() -> int:
    settings = Settings.from_env()
    if not settings.consul_address:
        print("[plan] CONSUL_ADDRESS is required")
        return 2

    corev1 = load_kube()
    token = SecretStore(corev1, settings.k8s_namespace).get(settings.bootstrap_secret_name)
    if not token:
        print(f"[plan] no bootstrap token in secret {settings.bootstrap_secret_name}; nothing to plan against")
        return 2

    consul = ConsulClient(settings.consul_address, token, ca_file=settings.consul_ca_file)
    ns_cfg = settings.inject_namespace_config()

    policies = [policy_doc(c.policy_name, c.rules()) for c in desired_policies(settings)]
    method = rule = None
    if settings.create_inject_auth_method:
        jwt, ca_cert = read_service_account_credentials(
            corev1, settings.k8s_namespace, settings.auth_method_service_account
        )
        cfg = auth_method_config(settings.auth_method_host, ca_cert, jwt, ns_cfg)
        method = auth_method_doc(settings.auth_method_name, cfg)
        rule = binding_rule_doc(settings.auth_method_name, settings.binding_rule_selector)

    print_plan(plan_reconcile(consul, policies, method, rule, ns_cfg))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
