"""Blockchain anchoring — records ledger payloads in EVM transactions.

Anchoring embeds a payload in the data field of a zero-value transaction
the custodial signer sends to itself. The chain acts as a witness: once
confirmed, the payload and its timestamp cannot be altered, and anyone
can read it back by transaction hash.

This is NOT a smart contract for anchoring; no code executes on chain.
``AnchorClient.call`` separately invokes functions of deployed contracts
for the payment and yield side of the system.

Retry policy differs by operation:
- submit / call: single attempt. Broadcasting is a side effect and a
  blind retry can double-anchor or collide on the nonce.
- verify: bounded retry, but only while the transaction is not yet
  visible. Anything else fails immediately.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from eth_account import Account
from web3 import HTTPProvider, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from anchorledger.config import LedgerConfig
from anchorledger.credentials import CredentialHandle, SecretsProvider, SignerRole
from anchorledger.errors import (
    ConfigurationError,
    ConfirmationTimeout,
    MalformedPayloadError,
    SubmissionError,
    VerificationError,
    VerificationTimeout,
)

logger = logging.getLogger(__name__)


class ReceiptStatus(str, enum.Enum):
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class AnchorReceipt:
    """A confirmed transaction sent by a custodial signer."""
    tx_id: str
    signer_address: str
    network_name: str
    chain_id: int
    block_number: int
    status: ReceiptStatus = ReceiptStatus.CONFIRMED

    def to_record(self) -> dict[str, Any]:
        return {
            "txId": self.tx_id,
            "signerAddress": self.signer_address,
            "networkName": self.network_name,
            "chainId": self.chain_id,
            "blockNumber": self.block_number,
            "status": self.status.value,
        }


class AnchorClient:
    """Boundary to the external chain.

    Usage:
        client = AnchorClient.from_config(config, EnvSecretsProvider())
        receipt = client.submit(payload_bytes)
        payload = client.verify(receipt.tx_id)
    """

    def __init__(
        self,
        w3: Web3,
        secrets: SecretsProvider,
        chain_id: int,
        network_name: str,
        confirmation_timeout: float = 300.0,
        verify_attempts: int = 5,
        verify_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if verify_attempts < 1:
            raise ValueError("verify_attempts must be >= 1")
        self._w3 = w3
        self._secrets = secrets
        self._chain_id = chain_id
        self._network_name = network_name
        self._confirmation_timeout = confirmation_timeout
        self._verify_attempts = verify_attempts
        self._verify_delay = verify_delay
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: LedgerConfig, secrets: SecretsProvider) -> AnchorClient:
        w3 = Web3(HTTPProvider(config.rpc_url, request_kwargs={"timeout": 30}))
        return cls(
            w3,
            secrets,
            chain_id=config.chain_id,
            network_name=config.network_name,
            confirmation_timeout=config.confirmation_timeout,
            verify_attempts=config.verify_attempts,
            verify_delay=config.verify_delay,
        )

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def network_name(self) -> str:
        return self._network_name

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def submit(
        self,
        payload: bytes,
        signer_role: SignerRole = SignerRole.TRUST_PARTNER,
    ) -> AnchorReceipt:
        """Anchor ``payload`` in a zero-value self-send and wait for 1 confirmation.

        Raises ConfigurationError, SubmissionError or ConfirmationTimeout.
        """
        if not payload:
            raise SubmissionError("Refusing to anchor an empty payload")
        acct = self._signer(signer_role)

        tx: dict[str, Any] = {
            "from": acct.address,
            "to": acct.address,  # self-send, 0 value
            "value": 0,
            "data": payload,
            "chainId": self._chain_id,
        }
        try:
            tx["nonce"] = self._pending_nonce(acct.address)
            tx["gas"] = self._w3.eth.estimate_gas(tx)
            tx["gasPrice"] = self._w3.eth.gas_price
        except (ValueError, Web3Exception, OSError) as e:
            raise SubmissionError(f"Could not prepare anchor transaction: {e}") from e

        return self._sign_and_send(acct, tx, description=f"anchor of {len(payload)} bytes")

    def verify(self, tx_id: str) -> bytes:
        """Fetch a submitted transaction and return its data payload.

        Retries only while the node reports the transaction as not found.
        Raises VerificationTimeout after ``verify_attempts`` lookups,
        MalformedPayloadError if the data is missing, VerificationError on
        any other RPC failure.
        """
        for attempt in range(1, self._verify_attempts + 1):
            try:
                tx = self._w3.eth.get_transaction(tx_id)
            except TransactionNotFound:
                logger.info(
                    "Transaction %s not visible yet (attempt %d/%d)",
                    tx_id, attempt, self._verify_attempts,
                )
                if attempt < self._verify_attempts:
                    self._sleep(self._verify_delay)
                continue
            except (ValueError, Web3Exception, OSError) as e:
                raise VerificationError(f"Lookup of {tx_id} failed: {e}", tx_id=tx_id) from e

            return _decode_input(tx, tx_id)

        raise VerificationTimeout(
            f"Transaction {tx_id} not visible after {self._verify_attempts} "
            "attempts; status unknown",
            tx_id=tx_id,
        )

    def call(
        self,
        contract_address: str,
        abi: Sequence[dict[str, Any]],
        function: str,
        args: Sequence[Any],
        signer_role: SignerRole,
    ) -> AnchorReceipt:
        """Invoke a state-mutating contract function as a custodial role.

        The nonce is taken from the pending-inclusive transaction count so
        calls issued before earlier ones confirm do not collide.
        """
        acct = self._signer(signer_role)
        try:
            contract = self._w3.eth.contract(
                address=Web3.to_checksum_address(contract_address), abi=abi,
            )
            fn = getattr(contract.functions, function)
        except AttributeError as e:
            raise SubmissionError(
                f"Function {function!r} not found in contract ABI"
            ) from e
        except (ValueError, Web3Exception) as e:
            raise SubmissionError(f"Invalid contract {contract_address}: {e}") from e

        try:
            nonce = self._pending_nonce(acct.address)
            tx = fn(*args).build_transaction({
                "from": acct.address,
                "nonce": nonce,
                "chainId": self._chain_id,
            })
        except (ValueError, Web3Exception, OSError) as e:
            raise SubmissionError(
                f"Could not build {function} transaction: {e}"
            ) from e

        return self._sign_and_send(acct, tx, description=f"{function} on {contract_address}")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _signer(self, role: SignerRole) -> Any:
        handle: Optional[CredentialHandle] = self._secrets.resolve(role)
        if handle is None:
            raise ConfigurationError(f"No signing key configured for role {role.value}")
        try:
            return Account.from_key(handle.reveal())
        except Exception as e:  # eth_keys raises its own ValidationError
            raise ConfigurationError(
                f"Signing key for role {role.value} is not a valid private key"
            ) from e

    def _pending_nonce(self, address: str) -> int:
        return self._w3.eth.get_transaction_count(address, "pending")

    def _sign_and_send(self, acct: Any, tx: dict[str, Any], description: str) -> AnchorReceipt:
        # eth_account refuses a "from" field it did not derive itself
        unsigned = {k: v for k, v in tx.items() if k != "from"}
        signed = acct.sign_transaction(unsigned)
        local_tx_id = Web3.to_hex(signed.hash)

        try:
            sent = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        except (ValueError, Web3Exception) as e:
            logger.warning("Broadcast rejected for %s: %s", description, e)
            raise SubmissionError(f"Broadcast rejected: {e}") from e
        except OSError as e:
            # The node may or may not have received it
            logger.warning("Broadcast of %s interrupted: %s", local_tx_id, e)
            raise ConfirmationTimeout(
                f"Broadcast of {local_tx_id} interrupted; status unknown: {e}",
                tx_id=local_tx_id,
            ) from e

        tx_id = Web3.to_hex(sent)
        logger.info("Sent %s as %s (nonce %s), waiting for confirmation", description, tx_id, tx.get("nonce"))

        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(
                sent, timeout=self._confirmation_timeout,
            )
        except TimeExhausted as e:
            logger.warning("No confirmation for %s within %ss", tx_id, self._confirmation_timeout)
            raise ConfirmationTimeout(
                f"Transaction {tx_id} not confirmed within "
                f"{self._confirmation_timeout}s; it may still land",
                tx_id=tx_id,
            ) from e
        except (OSError, Web3Exception) as e:
            # Broadcast went through; only the receipt poll failed
            logger.warning("Lost contact while waiting for %s: %s", tx_id, e)
            raise ConfirmationTimeout(
                f"Waiting for {tx_id} failed; status unknown: {e}",
                tx_id=tx_id,
            ) from e

        if receipt["status"] != 1:
            raise SubmissionError(f"Transaction {tx_id} reverted", tx_id=tx_id)

        logger.info("Confirmed %s in block %s", tx_id, receipt["blockNumber"])
        return AnchorReceipt(
            tx_id=tx_id,
            signer_address=acct.address,
            network_name=self._network_name,
            chain_id=self._chain_id,
            block_number=receipt["blockNumber"],
        )


def _decode_input(tx: Any, tx_id: str) -> bytes:
    """Raw bytes of a transaction's data field."""
    try:
        data = tx["input"]
    except KeyError as e:
        raise MalformedPayloadError(f"Transaction {tx_id} has no data field", tx_id=tx_id) from e

    if isinstance(data, str):
        try:
            data = bytes.fromhex(data.removeprefix("0x"))
        except ValueError as e:
            raise MalformedPayloadError(
                f"Transaction {tx_id} data is not hex", tx_id=tx_id,
            ) from e
    payload = bytes(data)
    if not payload:
        raise MalformedPayloadError(f"Transaction {tx_id} carries no payload", tx_id=tx_id)
    return payload
