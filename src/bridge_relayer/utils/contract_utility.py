import json
from pathlib import Path
from typing import Any

from eth_abi import decode, encode
from web3 import Web3


class ContractUtility:
    """
    Utility for ABI loading.

    ABIs are shipped with the package under ``bridge_relayer/abi``.
    """

    def __init__(self, abi_dir: Path | None = None):
        self.abi_dir = abi_dir or (Path(__file__).parent.parent / "abi").resolve()

    def get_contract_abi(self, contract_name: str) -> list:
        """Fetches ABI of the given contract from the abi folder"""
        contract_path = self.abi_dir / f"{contract_name}.json"

        with contract_path.open() as file:
            contract_data = json.load(file)

        return contract_data["abi"]


def _abi_entry(abi: list[dict[str, Any]], name: str, kind: str) -> dict[str, Any]:
    for entry in abi:
        if entry.get("type") == kind and entry.get("name") == name:
            return entry
    raise ValueError(f"{kind} {name} not found in contract ABI")


def _signature(entry: dict[str, Any]) -> str:
    types = ",".join(item["type"] for item in entry.get("inputs", []))
    return f"{entry['name']}({types})"


class BridgeContract:
    """
    Schema-aware view of a bridge contract at one address.

    Encodes calldata and describes event layouts straight from the ABI, without
    needing a live provider.
    """

    def __init__(self, address: str, abi: list[dict[str, Any]]):
        self.address = Web3.to_checksum_address(address)
        self.abi = abi

    def event_topic(self, event_name: str) -> bytes:
        """keccak256 of the canonical event signature (topic0)."""
        entry = _abi_entry(self.abi, event_name, "event")
        return bytes(Web3.keccak(text=_signature(entry)))

    def event_layout(self, event_name: str) -> tuple[list[tuple[str, str]], list[tuple[str, str]]]:
        """
        Split an event's inputs into indexed and data fields.

        Returns:
            (indexed, data) lists of (name, type) in declaration order
        """
        entry = _abi_entry(self.abi, event_name, "event")
        indexed = [(i["name"], i["type"]) for i in entry["inputs"] if i.get("indexed")]
        data = [(i["name"], i["type"]) for i in entry["inputs"] if not i.get("indexed")]
        return indexed, data

    def encode_call(self, function_name: str, args: list[Any]) -> str:
        """ABI-encode a function call as 0x-prefixed calldata."""
        entry = _abi_entry(self.abi, function_name, "function")
        types = [i["type"] for i in entry.get("inputs", [])]
        if len(types) != len(args):
            raise ValueError(
                f"{function_name} expects {len(types)} arguments, got {len(args)}"
            )
        selector = bytes(Web3.keccak(text=_signature(entry)))[:4]
        return Web3.to_hex(selector + encode(types, args))

    def decode_output(self, function_name: str, raw: bytes) -> tuple[Any, ...]:
        """Decode the return data of a view call."""
        entry = _abi_entry(self.abi, function_name, "function")
        types = [o["type"] for o in entry.get("outputs", [])]
        return tuple(decode(types, raw))
