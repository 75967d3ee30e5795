# app.py
from __future__ import annotations

import logging
import os
from functools import partial
from typing import List

from config import Settings
from consul import ConsulClient
from driver import ReconcileDriver
from errors import ReconcileError
from k8s import SecretStore, load_kube, read_service_account_credentials

logger = logging.getLogger("acl-init")


def consul_address(settings: Settings, server_ips: List[str]) -> str:
    """Explicit CONSUL_ADDRESS wins; otherwise talk to the first ready server pod."""
    if settings.consul_address:
        return settings.consul_address
    if not server_ips:
        raise ReconcileError("no ready server pod has an IP and CONSUL_ADDRESS is not set")
    return f"{settings.consul_scheme}://{server_ips[0]}:{settings.consul_port}"


def build_driver(settings: Settings, corev1) -> ReconcileDriver:
    def consul_factory(server_ips: List[str], token: str) -> ConsulClient:
        return ConsulClient(consul_address(settings, server_ips), token, ca_file=settings.consul_ca_file)

    return ReconcileDriver(
        settings,
        corev1,
        SecretStore(corev1, settings.k8s_namespace),
        consul_factory,
        load_credentials=partial(
            read_service_account_credentials,
            corev1,
            settings.k8s_namespace,
            settings.auth_method_service_account,
        ),
    )


# ─────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────
def main() -> int:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        settings = Settings.from_env()
    except ReconcileError as e:
        logger.error(f"[acl-init] bad configuration: {e}")
        return 1
    logger.info(
        f"[acl-init] prefix={settings.resource_prefix} namespace={settings.k8s_namespace} "
        f"mode={settings.inject_namespace_config().mode.value}"
    )

    corev1 = load_kube()
    result = build_driver(settings, corev1).run()
    if not result.ok:
        logger.error(f"[acl-init] FAILED at {result.failed_step.value}: {result.error}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
