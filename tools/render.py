#!/usr/bin/env python3
"""tools/render.py

Render the ACL objects the controller would converge to as multi-document YAML.

Why this exists:
- Policy rules are rendered from capability flags + the resolved namespace mode.
- Sometimes you want an artifact to review / diff before running against a cluster.

Usage examples:
  ENABLE_NAMESPACES=1 CONSUL_INJECT_DESTINATION_NAMESPACE=dest CREATE_CLIENT_TOKEN=1 \
    CREATE_INJECT_AUTH_METHOD=1 ACL_BINDING_RULE_SELECTOR='serviceaccount.name!=default' \
    python3 tools/render.py > /tmp/acls.yaml

Notes:
- This does NOT talk to Kubernetes or Consul.
- The auth method's JWT and CA cert are shown as placeholders.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List

import yaml

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import Settings, desired_policies  # noqa: E402
from reconcile import auth_method_config, auth_method_doc, binding_rule_doc, policy_doc  # noqa: E402


def render_documents(settings: Settings) -> List[dict]:
    docs: List[dict] = []
    for cap in desired_policies(settings):
        docs.append({"kind": "Policy", **policy_doc(cap.policy_name, cap.rules())})

    if settings.create_inject_auth_method:
        ns_cfg = settings.inject_namespace_config()
        cfg = auth_method_config(settings.auth_method_host, "<ca-cert>", "<service-account-jwt>", ns_cfg)
        namespace = ns_cfg.target_namespace or "default"
        docs.append({"kind": "AuthMethod", "Namespace": namespace, **auth_method_doc(settings.auth_method_name, cfg)})
        docs.append(
            {
                "kind": "BindingRule",
                "Namespace": namespace,
                **binding_rule_doc(settings.auth_method_name, settings.binding_rule_selector),
            }
        )
    return docs


def main() -> int:
    docs = render_documents(Settings.from_env())
    try:
        yaml.safe_dump_all(docs, sys.stdout, sort_keys=False, explicit_start=True)
    except BrokenPipeError:
        # Common when piping to `head`; exit cleanly
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
