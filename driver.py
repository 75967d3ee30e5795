# driver.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from bootstrap import acquire_bootstrap_token
from config import CROSS_NAMESPACE_POLICY_NAME, DNS_POLICY_NAME, Settings, desired_policies, namespaces_to_ensure
from errors import ReconcileError
from gate import wait_for_servers
from mode import NamespaceConfig
from reconcile import (
    Action,
    attach_anonymous_policy,
    auth_method_config,
    ensure_namespace,
    issue_policy_token,
    sync_auth_method,
    sync_binding_rule,
    sync_policy,
)

logger = logging.getLogger(__name__)


class State(str, Enum):
    IDLE = "Idle"
    WAITING_FOR_SERVERS = "WaitingForServers"
    ACQUIRING_CREDENTIAL = "AcquiringCredential"
    SYNCING_POLICIES = "SyncingPolicies"
    ISSUING_TOKENS = "IssuingTokens"
    ENSURING_NAMESPACES = "EnsuringNamespaces"
    SYNCING_AUTH_METHOD = "SyncingAuthMethod"
    SYNCING_BINDING_RULE = "SyncingBindingRule"
    DONE = "Done"
    FAILED = "Failed"


ORDER: List[State] = [
    State.IDLE,
    State.WAITING_FOR_SERVERS,
    State.ACQUIRING_CREDENTIAL,
    State.SYNCING_POLICIES,
    State.ISSUING_TOKENS,
    State.ENSURING_NAMESPACES,
    State.SYNCING_AUTH_METHOD,
    State.SYNCING_BINDING_RULE,
    State.DONE,
]


@dataclass
class RunStateMachine:
    state: State = State.IDLE

    def transition(self, target: State) -> None:
        if self.state in (State.DONE, State.FAILED):
            raise ValueError(f"Invalid transition: {self.state.value} is terminal")
        if target == State.FAILED:
            self.state = target
            return
        if ORDER.index(target) != ORDER.index(self.state) + 1:
            raise ValueError(f"Invalid transition: {self.state.value} -> {target.value}")
        self.state = target


@dataclass
class RunResult:
    state: State
    actions: List[Action] = field(default_factory=list)
    error: Optional[ReconcileError] = None
    failed_step: Optional[State] = None

    @property
    def ok(self) -> bool:
        return self.state == State.DONE

    @property
    def writes(self) -> int:
        return sum(1 for a in self.actions if a.writes)


# (jwt, ca_cert) for the auth method's reviewer service account
CredentialsLoader = Callable[[], Tuple[str, str]]
# builds a Consul client for the given server addresses and token
ConsulFactory = Callable[[List[str], str], object]


class ReconcileDriver:
    """Runs one full bootstrap + reconcile pass, strictly in ORDER.

    Any ReconcileError moves the run to FAILED and stops it; nothing is rolled
    back. Re-running is the recovery path since every step is idempotent.
    """

    def __init__(
        self,
        settings: Settings,
        corev1,
        store,
        consul_factory: ConsulFactory,
        load_credentials: Optional[CredentialsLoader] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.settings = settings
        self.corev1 = corev1
        self.store = store
        self.consul_factory = consul_factory
        self.load_credentials = load_credentials
        self.sleep = sleep
        self.machine = RunStateMachine()
        self.actions: List[Action] = []
        self.consul = None
        self.addresses: List[str] = []
        self.policy_ids: Dict[str, str] = {}

    def run(self) -> RunResult:
        steps = [
            (State.WAITING_FOR_SERVERS, self._wait_for_servers),
            (State.ACQUIRING_CREDENTIAL, self._acquire_credential),
            (State.SYNCING_POLICIES, self._sync_policies),
            (State.ISSUING_TOKENS, self._issue_tokens),
            (State.ENSURING_NAMESPACES, self._ensure_namespaces),
            (State.SYNCING_AUTH_METHOD, self._sync_auth_method),
            (State.SYNCING_BINDING_RULE, self._sync_binding_rule),
        ]
        for state, step in steps:
            self.machine.transition(state)
            logger.debug(f"[driver] state={state.value}")
            try:
                step()
            except ReconcileError as e:
                logger.error(f"[driver] step={state.value} failed: {e}")
                self.machine.transition(State.FAILED)
                return RunResult(State.FAILED, self.actions, error=e, failed_step=state)

        self.machine.transition(State.DONE)
        res = RunResult(State.DONE, self.actions)
        logger.info(f"[driver] done writes={res.writes} objects={len(self.actions)}")
        return res

    # ── steps ──────────────────────────────────

    def _wait_for_servers(self) -> None:
        s = self.settings
        kwargs = {"sleep": self.sleep} if self.sleep is not None else {}
        self.addresses = wait_for_servers(
            self.corev1,
            s.k8s_namespace,
            s.server_label_selector,
            s.expected_replicas,
            s.server_ready_timeout,
            interval=s.poll_seconds,
            **kwargs,
        )

    def _acquire_credential(self) -> None:
        self.consul = self.consul_factory(self.addresses, "")
        token = acquire_bootstrap_token(self.consul, self.store, self.settings.bootstrap_secret_name)
        self.consul.set_token(token)

    def _sync_policies(self) -> None:
        for cap in desired_policies(self.settings):
            action = sync_policy(self.consul, cap.policy_name, cap.rules())
            self.policy_ids[cap.policy_name] = action.id
            self.actions.append(action)

    def _issue_tokens(self) -> None:
        for cap in desired_policies(self.settings):
            if cap.token is None:
                continue
            secret = self.settings.token_secret_name(cap.token)
            self.actions.append(issue_policy_token(self.consul, self.store, secret, cap.policy_name, cap.token))
        if self.settings.allow_dns:
            self.actions.append(attach_anonymous_policy(self.consul, DNS_POLICY_NAME))

    def _ensure_namespaces(self) -> None:
        cross_id = self.policy_ids.get(CROSS_NAMESPACE_POLICY_NAME, "")
        for ns in namespaces_to_ensure(self.settings):
            self.actions.append(ensure_namespace(self.consul, ns, cross_id))

    def _ns_cfg(self) -> NamespaceConfig:
        return self.settings.inject_namespace_config()

    def _sync_auth_method(self) -> None:
        if not self.settings.create_inject_auth_method:
            return
        if self.load_credentials is None:
            raise ReconcileError("auth method requested but no service account credentials loader configured")
        jwt, ca_cert = self.load_credentials()
        cfg = auth_method_config(self.settings.auth_method_host, ca_cert, jwt, self._ns_cfg())
        self.actions.append(sync_auth_method(self.consul, self.settings.auth_method_name, cfg, self._ns_cfg()))

    def _sync_binding_rule(self) -> None:
        if not self.settings.create_inject_auth_method:
            return
        self.actions.append(
            sync_binding_rule(
                self.consul,
                self.settings.auth_method_name,
                self.settings.binding_rule_selector,
                self._ns_cfg(),
            )
        )
