"""Runtime configuration.

Settings come from environment variables, optionally loaded from a
``.env`` file at the working directory or an explicit path. Signing keys
are not part of the config; see ``anchorledger.credentials``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from anchorledger.errors import ConfigurationError


DEFAULT_RPC_URL = "https://rpc.sepolia.mantle.xyz"
DEFAULT_CHAIN_ID = 5003  # Mantle Sepolia
DEFAULT_NETWORK_NAME = "Mantle Sepolia Testnet"


@dataclass(frozen=True)
class LedgerConfig:
    """All tunables for the anchoring engine."""
    rpc_url: str = DEFAULT_RPC_URL
    chain_id: int = DEFAULT_CHAIN_ID
    network_name: str = DEFAULT_NETWORK_NAME
    data_dir: Path = Path("data")
    confirmation_timeout: float = 300.0
    verify_attempts: int = 5
    verify_delay: float = 2.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.verify_attempts < 1:
            raise ConfigurationError(
                f"verify_attempts must be >= 1, got {self.verify_attempts}"
            )
        if self.verify_delay < 0 or self.confirmation_timeout <= 0:
            raise ConfigurationError("Delays and timeouts must be positive")

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Path] = None,
    ) -> LedgerConfig:
        """Build from LEDGER_* variables.

        When ``env`` is None the process environment is used, after
        loading ``dotenv_path`` (or a ``.env`` found from the cwd).
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ

        return cls(
            rpc_url=env.get("LEDGER_RPC_URL", DEFAULT_RPC_URL),
            chain_id=_int(env, "LEDGER_CHAIN_ID", DEFAULT_CHAIN_ID),
            network_name=env.get("LEDGER_NETWORK_NAME", DEFAULT_NETWORK_NAME),
            data_dir=Path(env.get("LEDGER_DATA_DIR", "data")),
            confirmation_timeout=_float(env, "LEDGER_CONFIRMATION_TIMEOUT", 300.0),
            verify_attempts=_int(env, "LEDGER_VERIFY_ATTEMPTS", 5),
            verify_delay=_float(env, "LEDGER_VERIFY_DELAY", 2.0),
            log_level=env.get("LEDGER_LOG_LEVEL", "INFO"),
        )


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
