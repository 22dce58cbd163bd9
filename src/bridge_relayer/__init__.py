"""
Bridge Relayer package.

Crash-safe relay service for a lock/mint and burn/unlock token bridge between
two EVM chains.
"""

from .config import RelayerConfig
from .ledger import TransferLedger
from .models import TransferIntent, TransferState
from .relayer import BridgeRelayer

__all__ = ["RelayerConfig", "BridgeRelayer", "TransferLedger", "TransferIntent", "TransferState"]
__version__ = "0.1.0"
