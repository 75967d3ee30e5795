# bootstrap.py
from __future__ import annotations

import logging

from errors import AlreadyBootstrapped, APIError, CredentialConflict

logger = logging.getLogger(__name__)


def acquire_bootstrap_token(consul, store, secret_name: str) -> str:
    """Return the cluster's ACL bootstrap token, minting it at most once.

    1) stored token present -> return it (every re-run takes this path)
    2) otherwise mint via /v1/acl/bootstrap and store it put-if-absent
    3) Consul already bootstrapped -> another run won the race, re-read the store

    A store that is still empty after (3) cannot be repaired automatically:
    the only copy of the management token is gone.
    """
    token = store.get(secret_name)
    if token:
        logger.info(f"[bootstrap] using stored token secret={secret_name}")
        return token

    try:
        minted = consul.bootstrap()
    except AlreadyBootstrapped as e:
        logger.warning(f"[bootstrap] consul already bootstrapped; re-reading secret={secret_name}")
        token = store.get(secret_name)
        if token:
            return token
        raise CredentialConflict(
            f"consul ACLs are already bootstrapped but secret {secret_name} holds no token; "
            "operator intervention required (ACL bootstrap reset)"
        ) from e

    token = minted["SecretID"]
    accessor = minted.get("AccessorID", "")
    try:
        stored_now = store.put_if_absent(secret_name, token)
    except APIError as e:
        logger.error(f"[bootstrap] minted token accessor={accessor} could not be stored in secret={secret_name}")
        raise CredentialConflict(
            f"minted bootstrap token accessor={accessor} but storing it in secret {secret_name} failed ({e}); "
            "the management token is not persisted, recover it or reset ACL bootstrap"
        ) from e

    if stored_now:
        logger.info(f"[bootstrap] minted and stored bootstrap token secret={secret_name} accessor={accessor}")
        return token

    # Lost the write race; whatever is stored is authoritative.
    stored = store.get(secret_name)
    if not stored:
        raise CredentialConflict(f"secret {secret_name} exists but holds no token")
    logger.warning(f"[bootstrap] secret={secret_name} written concurrently; using stored token")
    return stored
