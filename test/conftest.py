"""Shared fixtures: an in-memory two-chain bridge and a temporary ledger."""

from typing import Any

import pytest
import pytest_asyncio
from eth_abi import decode, encode
from hexbytes import HexBytes
from web3 import Web3

from bridge_relayer.attestation import Attestor
from bridge_relayer.config import ChainConfig, MonitoringConfig, RouteConfig
from bridge_relayer.errors import DestinationRejectedError, TransientRpcError
from bridge_relayer.event_processor import EventProcessor
from bridge_relayer.event_source import EventSource
from bridge_relayer.execution import ExecutionEngine, PreparedTx
from bridge_relayer.finality import FinalityGate
from bridge_relayer.ledger import TransferLedger
from bridge_relayer.orchestrator import TransferOrchestrator
from bridge_relayer.utils.contract_utility import BridgeContract, ContractUtility

SOURCE_CHAIN_ID = 1337
DEST_CHAIN_ID = 31337
SOURCE_BRIDGE = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
DEST_BRIDGE = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
ATTESTER_KEY = "0x" + "11" * 32
RELAYER_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
SENDER = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
RECIPIENT = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"

GAS_USED = 50_000
GAS_PRICE = 1_000_000_000


def _selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature))[:4]


class FakeChain:
    """
    In-memory EVM chain hosting one bridge contract.

    Implements the ChainClient calls the relayer makes. Executing mint or
    unlock twice for the same transfer id reverts, like the real contract.
    """

    EXECUTE_FUNCTIONS = {
        _selector("mint(address,uint256,bytes32,bytes)"): "Mint",
        _selector("unlock(address,uint256,bytes32,bytes)"): "Unlock",
    }
    PROCESSED_SELECTOR = _selector("processedTransfers(bytes32)")

    def __init__(self, name: str, chain_id: int, contract: BridgeContract, height: int = 100):
        self.name = name
        self.chain_id_value = chain_id
        self.contract = contract
        self.height = height
        self.logs: list[dict[str, Any]] = []
        self.receipts: dict[str, dict[str, Any]] = {}
        self.held_receipts: dict[str, dict[str, Any]] = {}
        self.processed: set[str] = set()
        self.executed: list[tuple[str, int]] = []
        self.account_nonce = 0
        self.hold_receipts = False
        self.estimate_error: str | None = None
        self.height_failures = 0
        self._counter = 0

    def new_hash(self) -> str:
        self._counter += 1
        return Web3.to_hex(Web3.keccak(text=f"{self.name}-{self._counter}"))

    def add_transfer_event(
        self,
        sequence: int,
        block: int,
        log_index: int = 0,
        amount: int = 10**18,
        recipient: str = RECIPIENT,
        sender: str = SENDER,
        event_name: str = "Lock",
    ) -> dict[str, Any]:
        """Emit a Lock/Burn log in ``block`` together with its receipt."""
        tx_hash = self.new_hash()
        log = {
            "address": self.contract.address,
            "topics": [
                HexBytes(self.contract.event_topic(event_name)),
                HexBytes(encode(["address"], [sender])),
                HexBytes(encode(["address"], [recipient])),
                HexBytes(encode(["uint256"], [sequence])),
            ],
            "data": HexBytes(encode(
                ["uint256", "uint256", "bytes32"],
                [amount, 1_700_000_000 + sequence, b"\x00" * 32],
            )),
            "blockNumber": block,
            "logIndex": log_index,
            "transactionHash": HexBytes(tx_hash),
            "removed": False,
        }
        self.logs.append(log)
        self.receipts[tx_hash] = {
            "status": 1,
            "blockNumber": block,
            "transactionHash": HexBytes(tx_hash),
            "gasUsed": GAS_USED,
            "effectiveGasPrice": GAS_PRICE,
        }
        self.height = max(self.height, block)
        return log

    def reorg_out(self, log: dict[str, Any]) -> None:
        """Drop a log and its transaction, as a reorganization would."""
        self.logs.remove(log)
        self.receipts.pop(Web3.to_hex(log["transactionHash"]), None)

    def mine(self, blocks: int = 1) -> None:
        self.height += blocks

    def apply(self, data: str, tx_hash: str) -> None:
        """Execute destination calldata in a new block."""
        raw = HexBytes(data)
        event_name = self.EXECUTE_FUNCTIONS[bytes(raw[:4])]
        to, amount, transfer_id, _signature = decode(
            ["address", "uint256", "bytes32", "bytes"], bytes(raw[4:])
        )
        transfer_id = Web3.to_hex(transfer_id)

        self.height += 1
        self.account_nonce += 1
        receipt = {
            "status": 0,
            "blockNumber": self.height,
            "transactionHash": HexBytes(tx_hash),
            "gasUsed": GAS_USED,
            "effectiveGasPrice": GAS_PRICE,
        }

        if transfer_id not in self.processed:
            self.processed.add(transfer_id)
            self.executed.append((transfer_id, amount))
            receipt["status"] = 1
            self.logs.append({
                "address": self.contract.address,
                "topics": [
                    HexBytes(self.contract.event_topic(event_name)),
                    HexBytes(encode(["address"], [to])),
                    HexBytes(transfer_id),
                ],
                "data": HexBytes(encode(["uint256", "uint256"], [amount, 1_700_000_000])),
                "blockNumber": self.height,
                "logIndex": 0,
                "transactionHash": HexBytes(tx_hash),
                "removed": False,
            })

        if self.hold_receipts:
            self.held_receipts[tx_hash] = receipt
        else:
            self.receipts[tx_hash] = receipt

    def release_receipts(self) -> None:
        self.receipts.update(self.held_receipts)
        self.held_receipts.clear()

    # ChainClient interface

    async def chain_id(self) -> int:
        return self.chain_id_value

    async def current_height(self) -> int:
        if self.height_failures:
            self.height_failures -= 1
            raise TransientRpcError(f"{self.name} eth_blockNumber failed: timeout")
        return self.height

    async def get_logs(self, from_block, to_block, address, topics):
        wanted = [HexBytes(t) if t is not None else None for t in topics]
        result = []
        for log in self.logs:
            if not from_block <= log["blockNumber"] <= to_block:
                continue
            if Web3.to_checksum_address(log["address"]) != Web3.to_checksum_address(address):
                continue
            if any(
                topic is not None and (i >= len(log["topics"]) or log["topics"][i] != topic)
                for i, topic in enumerate(wanted)
            ):
                continue
            result.append(log)
        return sorted(result, key=lambda l: (l["blockNumber"], l["logIndex"]))

    async def get_receipt(self, tx_hash):
        return self.receipts.get(Web3.to_hex(HexBytes(tx_hash)))

    async def wait_for_receipt(self, tx_hash, timeout, poll_latency=2.0):
        return self.receipts.get(tx_hash)

    async def call(self, to, data):
        raw = HexBytes(data)
        assert bytes(raw[:4]) == self.PROCESSED_SELECTOR
        (transfer_id,) = decode(["bytes32"], bytes(raw[4:]))
        return encode(["bool"], [Web3.to_hex(transfer_id) in self.processed])

    async def estimate_gas(self, tx):
        if self.estimate_error:
            raise DestinationRejectedError(f"execution reverted: {self.estimate_error}")
        return GAS_USED

    async def gas_price(self):
        return GAS_PRICE

    async def get_transaction_count(self, address, block="pending"):
        return self.account_nonce

    async def get_balance(self, address):
        return 10**18

    async def is_connected(self):
        return True


class FakeSubmitter:
    """Submitter that executes directly on a FakeChain."""

    provides_tx_hash = True
    address = RELAYER_ADDRESS

    def __init__(self, chain: FakeChain):
        self.chain = chain
        self.broadcasts = 0
        self.fail_with: Exception | None = None

    async def submit(self, tx, before_broadcast):
        tx_hash = self.chain.new_hash()
        await before_broadcast(PreparedTx(tx_hash=tx_hash, nonce=self.chain.account_nonce))
        if self.fail_with is not None:
            raise self.fail_with
        self.chain.apply(tx["data"], tx_hash)
        self.broadcasts += 1
        return tx_hash


@pytest.fixture
def bridge_abi():
    return ContractUtility().get_contract_abi("Bridge")


@pytest.fixture
def source_contract(bridge_abi):
    return BridgeContract(SOURCE_BRIDGE, bridge_abi)


@pytest.fixture
def dest_contract(bridge_abi):
    return BridgeContract(DEST_BRIDGE, bridge_abi)


@pytest.fixture
def source_chain(source_contract):
    return FakeChain("source", SOURCE_CHAIN_ID, source_contract)


@pytest.fixture
def dest_chain(dest_contract):
    return FakeChain("dest", DEST_CHAIN_ID, dest_contract)


@pytest.fixture
def processor(source_contract):
    return EventProcessor(SOURCE_CHAIN_ID, source_contract, "Lock")


@pytest.fixture
def attestor():
    return Attestor(ATTESTER_KEY)


@pytest.fixture
def ledger_path(tmp_path):
    return str(tmp_path / "ledger.sqlite3")


@pytest_asyncio.fixture
async def ledger(ledger_path):
    ledger = await TransferLedger.create(ledger_path)
    yield ledger
    await ledger.close()


@pytest.fixture
def route():
    return RouteConfig(
        source=ChainConfig(
            name="source",
            rpc_url="http://localhost:8545",
            bridge_address=SOURCE_BRIDGE,
            chain_id=SOURCE_CHAIN_ID,
            required_confirmations=12,
            start_height=1,
        ),
        target=ChainConfig(
            name="dest",
            rpc_url="http://localhost:9545",
            bridge_address=DEST_BRIDGE,
            chain_id=DEST_CHAIN_ID,
            required_confirmations=12,
        ),
        source_event="Lock",
        target_function="mint",
        target_event="Mint",
    )


@pytest.fixture
def monitoring():
    return MonitoringConfig(
        polling_interval=1,
        reconcile_interval=1,
        receipt_timeout=1,
        retry_count=2,
        retry_base_delay=0,
        max_block_range=50,
        rescan_depth=20,
    )


def make_engine(ledger, dest_chain, dest_contract, attestor, submitter, **kwargs) -> ExecutionEngine:
    return ExecutionEngine(
        client=dest_chain,
        contract=dest_contract,
        ledger=ledger,
        attestor=attestor,
        submitter=submitter,
        dest_chain_id=DEST_CHAIN_ID,
        receipt_timeout=kwargs.pop("receipt_timeout", 1),
        retry_count=kwargs.pop("retry_count", 1),
        retry_base_delay=0,
        confirm_poll_interval=0,
        **kwargs,
    )


def make_orchestrator(
    route, monitoring, ledger, source_chain, dest_chain, processor, attestor, submitter
) -> TransferOrchestrator:
    engine = make_engine(ledger, dest_chain, dest_chain.contract, attestor, submitter)
    return TransferOrchestrator(
        route=route,
        source=EventSource(source_chain, processor, max_block_range=monitoring.max_block_range),
        source_client=source_chain,
        ledger=ledger,
        gate=FinalityGate(route.source.required_confirmations),
        engine=engine,
        monitoring=monitoring,
    )
