"""
Attestations authorising a mint or unlock on the destination bridge.

The destination contract accepts an execution only with an EIP-191 signature
over keccak256(abi.encodePacked(address recipient, uint256 amount,
bytes32 transferId, uint256 destChainId, address destBridge)). Binding the
destination chain and contract into the digest keeps an attestation from being
replayed on another deployment.
"""

import logging
from collections.abc import Iterable

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_keys.exceptions import BadSignature, ValidationError
from hexbytes import HexBytes
from web3 import Web3

from .models import TransferIntent

logger = logging.getLogger(__name__)


def attestation_digest(
    recipient: str,
    amount: int,
    transfer_id: str,
    dest_chain_id: int,
    dest_bridge: str,
) -> bytes:
    """Packed keccak256 digest signed by the attester."""
    return bytes(Web3.solidity_keccak(
        ["address", "uint256", "bytes32", "uint256", "address"],
        [
            Web3.to_checksum_address(recipient),
            amount,
            HexBytes(transfer_id),
            dest_chain_id,
            Web3.to_checksum_address(dest_bridge),
        ],
    ))


class Attestor:
    """Signs and verifies transfer attestations."""

    def __init__(self, private_key: str):
        self.account: LocalAccount = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self.account.address

    def sign(self, intent: TransferIntent, dest_chain_id: int, dest_bridge: str) -> bytes:
        """Produce the 65-byte signature for executing ``intent`` on a destination."""
        digest = attestation_digest(
            intent.recipient, intent.amount, intent.transfer_id, dest_chain_id, dest_bridge
        )
        signed = self.account.sign_message(encode_defunct(primitive=digest))
        return bytes(signed.signature)

    @staticmethod
    def recover(
        intent: TransferIntent, dest_chain_id: int, dest_bridge: str, signature: bytes
    ) -> str:
        """Address that produced ``signature`` for this intent and destination."""
        digest = attestation_digest(
            intent.recipient, intent.amount, intent.transfer_id, dest_chain_id, dest_bridge
        )
        return Account.recover_message(encode_defunct(primitive=digest), signature=signature)

    @classmethod
    def verify(
        cls,
        intent: TransferIntent,
        dest_chain_id: int,
        dest_bridge: str,
        signatures: Iterable[bytes],
        allowed_signers: Iterable[str],
        threshold: int = 1,
    ) -> bool:
        """
        Check an M-of-N attestation.

        Unreadable signatures and signatures by unknown keys do not count.
        Several signatures by the same key count once.

        Args:
            intent: Transfer being attested
            dest_chain_id: Destination chain id bound into the digest
            dest_bridge: Destination bridge address bound into the digest
            signatures: Candidate signatures
            allowed_signers: Attester allow-list
            threshold: Distinct allowed signers required

        Returns:
            True if at least ``threshold`` distinct allowed signers signed
        """
        allowed = {Web3.to_checksum_address(a) for a in allowed_signers}
        if not 1 <= threshold <= len(allowed):
            raise ValueError(
                f"Threshold must be in [1, {len(allowed)}], got {threshold}"
            )

        signers: set[str] = set()
        for signature in signatures:
            try:
                signer = cls.recover(intent, dest_chain_id, dest_bridge, signature)
            except (ValueError, BadSignature, ValidationError) as e:
                logger.debug(f"Ignoring unreadable attestation signature: {e}")
                continue
            if signer in allowed:
                signers.add(signer)

        return len(signers) >= threshold
