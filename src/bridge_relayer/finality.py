"""
Finality policy for source chain events.

Source chains give no synchronous finality signal, so an event is treated as
final once it is buried under a configured number of blocks. This is a
probabilistic policy: a reorganization deeper than ``required_confirmations``
can still revert a "final" event. Pick the depth per chain above its
practical reorganization depth.
"""

from dataclasses import dataclass

from .models import TransferIntent


@dataclass(frozen=True, slots=True)
class FinalityGate:
    """Confirmation-depth finality check. Pure, no I/O."""
    required_confirmations: int

    def __post_init__(self) -> None:
        if self.required_confirmations < 0:
            raise ValueError(
                f"Required confirmations must be non-negative, got {self.required_confirmations}"
            )

    def confirmations(self, intent: TransferIntent, current_height: int) -> int:
        return max(0, current_height - intent.source_block_height)

    def is_final(self, intent: TransferIntent, current_height: int) -> bool:
        return current_height - intent.source_block_height >= self.required_confirmations
