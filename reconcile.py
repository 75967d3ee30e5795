# reconcile.py
from __future__ import annotations

import logging
from typing import Dict, List, NamedTuple, Optional

from consul import ANONYMOUS_TOKEN_ID, WILDCARD_NAMESPACE, namespaces_unsupported
from errors import APIError, InvariantViolation
from mode import NamespaceConfig, same_namespace

logger = logging.getLogger(__name__)

AUTH_METHOD_TYPE = "kubernetes"
AUTH_METHOD_DESCRIPTION = "Kubernetes AuthMethod"
BINDING_RULE_DESCRIPTION = "Kubernetes binding rule"
BIND_TYPE_SERVICE = "service"
BIND_NAME = "${serviceaccount.name}"
NAMESPACE_DESCRIPTION = "Auto-generated by consul-acl-init"

CREATE = "create"
UPDATE = "update"
MOVE = "move"
NOOP = "noop"


class Action(NamedTuple):
    """Decision for one ACL object. ``id`` is the Consul ID once known."""

    kind: str
    name: str
    namespace: str = ""
    id: str = ""
    from_namespace: str = ""

    @property
    def writes(self) -> bool:
        return self.kind != NOOP


class ReconcilePlan(dict):
    """A small, json-serializable planning object."""

    # kept as dict subclass for easy printing/JSON dumping


def _api_context(e: APIError, name: str, ns: str) -> APIError:
    return e if e.name else e.with_object(name, ns)


# ─────────────────────────────────────────────
# Desired documents
# ─────────────────────────────────────────────
def policy_doc(name: str, rules: str) -> dict:
    return {"Name": name, "Description": f"{name} Token Policy", "Rules": rules}


def auth_method_config(host: str, ca_cert: str, jwt: str, ns_cfg: NamespaceConfig) -> dict:
    """Kubernetes auth method config.

    MapNamespaces/ConsulNamespacePrefix exist only under mirroring; in the other
    modes the keys are left out entirely rather than set to false/empty.
    """
    cfg = {"Host": host, "CACert": ca_cert, "ServiceAccountJWT": jwt}
    if ns_cfg.mirroring:
        cfg["MapNamespaces"] = True
        cfg["ConsulNamespacePrefix"] = ns_cfg.prefix
    return cfg


def auth_method_doc(name: str, config: dict) -> dict:
    return {
        "Name": name,
        "Type": AUTH_METHOD_TYPE,
        "Description": AUTH_METHOD_DESCRIPTION,
        "Config": config,
    }


def binding_rule_doc(method_name: str, selector: str) -> dict:
    return {
        "AuthMethod": method_name,
        "Description": BINDING_RULE_DESCRIPTION,
        "BindType": BIND_TYPE_SERVICE,
        "BindName": BIND_NAME,
        "Selector": selector,
    }


# ─────────────────────────────────────────────
# Decisions (pure)
# ─────────────────────────────────────────────
def decide_policy(desired: dict, observed: Optional[dict], ns: str = "") -> Action:
    name = desired["Name"]
    if observed is None:
        return Action(CREATE, name, ns)
    if observed.get("Rules", "") != desired["Rules"]:
        return Action(UPDATE, name, ns, id=observed["ID"])
    return Action(NOOP, name, ns, id=observed["ID"])


def decide_auth_method(desired: dict, observed: List[dict], target_ns: str) -> Action:
    """
    ``observed`` is every auth method with the desired name, in any namespace.
    There must never be more than one.
    """
    name = desired["Name"]
    if len(observed) > 1:
        where = ", ".join(sorted(m.get("Namespace", "") or "default" for m in observed))
        raise InvariantViolation(f"auth method {name} exists in {len(observed)} namespaces: {where}")
    if not observed:
        return Action(CREATE, name, target_ns)

    current = observed[0]
    current_ns = current.get("Namespace", "")
    if not same_namespace(current_ns, target_ns):
        return Action(MOVE, name, target_ns, from_namespace=current_ns)
    for key in ("Type", "Description", "Config"):
        if current.get(key) != desired[key]:
            return Action(UPDATE, name, target_ns)
    return Action(NOOP, name, target_ns)


def decide_binding_rule(desired: dict, observed: List[dict], ns: str = "") -> Action:
    method = desired["AuthMethod"]
    if len(observed) > 1:
        ids = ", ".join(r.get("ID", "?") for r in observed)
        raise InvariantViolation(
            f"auth method {method} has {len(observed)} binding rules ({ids}); expected at most one"
        )
    if not observed:
        return Action(CREATE, method, ns)

    current = observed[0]
    for key in ("Selector", "Description", "BindType", "BindName"):
        if current.get(key, "") != desired[key]:
            return Action(UPDATE, method, ns, id=current["ID"])
    return Action(NOOP, method, ns, id=current["ID"])


# ─────────────────────────────────────────────
# Observation
# ─────────────────────────────────────────────
def observe_policy(consul, name: str, ns: str = "") -> Optional[dict]:
    for stub in consul.list_policies(ns):
        if stub.get("Name") == name:
            # list results carry no Rules
            return consul.read_policy(stub["ID"], ns)
    return None


def _list_all_auth_methods(consul) -> List[dict]:
    try:
        return consul.list_auth_methods(WILDCARD_NAMESPACE)
    except APIError as e:
        if not namespaces_unsupported(e):
            raise
    logger.debug("[auth-method] server has no namespaces; listing without ns")
    return consul.list_auth_methods()


def observe_auth_methods(consul, name: str) -> List[dict]:
    """Every auth method called ``name``, searched across all namespaces.

    Servers without namespace support reject ``ns=*``; the plain list is
    already complete there.
    """
    out: List[dict] = []
    for stub in _list_all_auth_methods(consul):
        if stub.get("Name") != name:
            continue
        ns = stub.get("Namespace", "")
        out.append(consul.read_auth_method(name, ns) or stub)
    return out


# ─────────────────────────────────────────────
# Synchronizers
# ─────────────────────────────────────────────
def sync_policy(consul, name: str, rules: str, ns: str = "") -> Action:
    desired = policy_doc(name, rules)
    try:
        action = decide_policy(desired, observe_policy(consul, name, ns), ns)
        if action.kind == CREATE:
            created = consul.create_policy(desired, ns)
            action = action._replace(id=created["ID"])
        elif action.kind == UPDATE:
            consul.update_policy(action.id, desired, ns)
    except APIError as e:
        raise _api_context(e, name, ns) from e
    logger.info(f"[policy] {action.kind} name={name} id={action.id}")
    return action


def sync_auth_method(consul, name: str, config: dict, ns_cfg: NamespaceConfig) -> Action:
    target_ns = ns_cfg.target_namespace
    desired = auth_method_doc(name, config)
    try:
        action = decide_auth_method(desired, observe_auth_methods(consul, name), target_ns)
        if action.kind == MOVE:
            # deleting the method also drops its binding rules
            consul.delete_auth_method(name, action.from_namespace)
            consul.create_auth_method(desired, target_ns)
        elif action.kind == CREATE:
            consul.create_auth_method(desired, target_ns)
        elif action.kind == UPDATE:
            consul.update_auth_method(name, desired, target_ns)
    except APIError as e:
        raise _api_context(e, name, target_ns) from e
    suffix = f" from={action.from_namespace or 'default'}" if action.kind == MOVE else ""
    logger.info(f"[auth-method] {action.kind} name={name} namespace={target_ns or 'default'}{suffix}")
    return action


def sync_binding_rule(consul, method_name: str, selector: str, ns_cfg: NamespaceConfig) -> Action:
    ns = ns_cfg.target_namespace
    desired = binding_rule_doc(method_name, selector)
    try:
        action = decide_binding_rule(desired, consul.list_binding_rules(method_name, ns), ns)
        if action.kind == CREATE:
            created = consul.create_binding_rule(desired, ns)
            action = action._replace(id=created["ID"])
        elif action.kind == UPDATE:
            consul.update_binding_rule(action.id, desired, ns)
    except APIError as e:
        raise _api_context(e, f"binding rule for {method_name}", ns) from e
    logger.info(f"[binding-rule] {action.kind} method={method_name} id={action.id} selector={selector!r}")
    return action


def issue_policy_token(consul, store, secret_name: str, policy_name: str, token_name: str) -> Action:
    """Create a token for ``policy_name`` once; its SecretID lives in ``secret_name``."""
    if store.get(secret_name):
        return Action(NOOP, secret_name)
    try:
        token = consul.create_token(
            {"Description": f"{token_name} Token", "Policies": [{"Name": policy_name}]}
        )
    except APIError as e:
        raise _api_context(e, f"{token_name} token", "") from e
    if not store.put_if_absent(secret_name, token["SecretID"]):
        logger.warning(f"[token] secret={secret_name} written concurrently; token {token['AccessorID']} unused")
        return Action(NOOP, secret_name)
    logger.info(f"[token] create name={token_name} secret={secret_name}")
    return Action(CREATE, secret_name, id=token["AccessorID"])


def attach_anonymous_policy(consul, policy_name: str) -> Action:
    """Add ``policy_name`` to the anonymous token unless it is already linked."""
    try:
        token = consul.read_token(ANONYMOUS_TOKEN_ID)
        if token is None:
            raise InvariantViolation("anonymous ACL token not found")
        policies = [{"Name": p["Name"]} for p in token.get("Policies") or [] if p.get("Name")]
        if any(p["Name"] == policy_name for p in policies):
            return Action(NOOP, policy_name, id=ANONYMOUS_TOKEN_ID)
        consul.update_token(
            ANONYMOUS_TOKEN_ID,
            {"Description": token.get("Description", ""), "Policies": policies + [{"Name": policy_name}]},
        )
    except APIError as e:
        raise _api_context(e, "anonymous token", "") from e
    logger.info(f"[token] attached policy={policy_name} to anonymous token")
    return Action(UPDATE, policy_name, id=ANONYMOUS_TOKEN_ID)


def ensure_namespace(consul, name: str, default_policy_id: str = "") -> Action:
    """Create Consul namespace ``name`` if missing; existing ones are left as-is."""
    try:
        if consul.read_namespace(name) is not None:
            return Action(NOOP, name, name)
        doc: Dict[str, object] = {"Name": name, "Description": NAMESPACE_DESCRIPTION}
        if default_policy_id:
            doc["ACLs"] = {"PolicyDefaults": [{"ID": default_policy_id}]}
        consul.create_namespace(doc)
    except APIError as e:
        raise _api_context(e, name, name) from e
    logger.info(f"[namespace] create name={name}")
    return Action(CREATE, name, name)


# ─────────────────────────────────────────────
# Plan (no writes)
# ─────────────────────────────────────────────
def plan_reconcile(
    consul,
    policies: List[dict],
    method: Optional[dict],
    rule: Optional[dict],
    ns_cfg: NamespaceConfig,
) -> ReconcilePlan:
    """Compute what the synchronizers *would* do, without creating/updating/deleting anything.

    ``policies`` are desired policy docs; ``method``/``rule`` are desired docs
    or None when the auth method is not managed.
    """
    actions: List[Action] = []
    for doc in policies:
        actions.append(decide_policy(doc, observe_policy(consul, doc["Name"])))

    if method is not None:
        target_ns = ns_cfg.target_namespace
        method_action = decide_auth_method(method, observe_auth_methods(consul, method["Name"]), target_ns)
        actions.append(method_action)
        if rule is not None:
            if method_action.kind in (CREATE, MOVE):
                # a fresh auth method starts with no rules
                actions.append(Action(CREATE, rule["AuthMethod"], target_ns))
            else:
                observed = consul.list_binding_rules(rule["AuthMethod"], target_ns)
                actions.append(decide_binding_rule(rule, observed, target_ns))

    counts = {k: 0 for k in (CREATE, UPDATE, MOVE, NOOP)}
    for a in actions:
        counts[a.kind] += 1
    return ReconcilePlan(
        mode=ns_cfg.mode.value,
        counts=counts,
        actions=[a._asdict() for a in actions],
    )


def print_plan(plan: ReconcilePlan) -> None:
    counts = plan.get("counts", {})
    print(
        f"[plan] mode={plan.get('mode')} create={counts.get(CREATE, 0)} update={counts.get(UPDATE, 0)} "
        f"move={counts.get(MOVE, 0)} noop={counts.get(NOOP, 0)}"
    )
    for a in plan.get("actions", []) or []:
        if a["kind"] == NOOP:
            continue
        where = f" namespace={a['namespace']}" if a.get("namespace") else ""
        print(f"  - {a['kind']} {a['name']}{where}")
