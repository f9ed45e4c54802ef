"""Custodial signing credentials, resolved by role.

Keys are opaque handles to the rest of the system. Only the anchor
client ever reveals one, and only to sign.
"""

from __future__ import annotations

import enum
import os
from typing import Mapping, Optional, Protocol, runtime_checkable


class SignerRole(str, enum.Enum):
    """Custodial signing roles. Each role has its own key."""

    TRUST_PARTNER = "trust_partner"
    """Contract and document anchoring."""

    SPV = "spv"
    """Payment and yield contract calls."""


# Environment variable holding each role's key.
ROLE_ENV_VARS: dict[SignerRole, str] = {
    SignerRole.TRUST_PARTNER: "TRUST_PARTNER_PRIVATE_KEY",
    SignerRole.SPV: "SPV_PRIVATE_KEY",
}


class CredentialHandle:
    """An opaque signing credential. Never printed or logged."""

    __slots__ = ("_role", "_secret")

    def __init__(self, role: SignerRole, secret: str) -> None:
        self._role = role
        self._secret = secret

    @property
    def role(self) -> SignerRole:
        return self._role

    def reveal(self) -> str:
        return self._secret

    def __repr__(self) -> str:
        return f"CredentialHandle(role={self._role.value}, secret=***)"

    __str__ = __repr__


@runtime_checkable
class SecretsProvider(Protocol):
    """Resolves a signing credential for a role, or None if absent."""

    def resolve(self, role: SignerRole) -> Optional[CredentialHandle]:
        ...


class EnvSecretsProvider:
    """Reads role keys from environment variables.

    Call ``anchorledger.config.LedgerConfig.from_env`` (which loads
    ``.env``) before resolving if keys live in a dotenv file.
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None) -> None:
        self._env = env if env is not None else os.environ

    def resolve(self, role: SignerRole) -> Optional[CredentialHandle]:
        value = self._env.get(ROLE_ENV_VARS[role], "").strip()
        if not value:
            return None
        return CredentialHandle(role, value)


class StaticSecretsProvider:
    """Fixed role → key mapping, for wiring and tests."""

    def __init__(self, keys: Mapping[SignerRole, str]) -> None:
        self._keys = dict(keys)

    def resolve(self, role: SignerRole) -> Optional[CredentialHandle]:
        value = self._keys.get(role)
        if not value:
            return None
        return CredentialHandle(role, value)
