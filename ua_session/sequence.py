# =============================================================================
# UA Session -- Sequence Validator
# =============================================================================
#
# Per-subscription sequence number tracking: duplicate detection,
# out-of-order buffering, republish candidates and loss declaration.
# =============================================================================

from __future__ import annotations

from .constants import OUT_OF_ORDER_THRESHOLD, OUTDATED_THRESHOLD
from .types import SequenceClass, SequenceVerdict


def classify(
    last_acked: int,
    received: int,
    *,
    outdated_threshold: int = OUTDATED_THRESHOLD,
) -> SequenceClass:
    """Classify *received* against the last acknowledged number.

    Total function of its inputs. The gap is the count of numbers missing
    between the two.
    """
    if received <= last_acked:
        return SequenceClass.DUPLICATE
    gap = received - last_acked - 1
    if gap == 0:
        return SequenceClass.IN_ORDER
    if gap > outdated_threshold:
        return SequenceClass.GAP
    return SequenceClass.OUT_OF_ORDER


class SequenceWindow:
    """Sequence state of one subscription.

    ``last_acked`` is the contiguous high-water mark: every number up to it
    was either received or declared lost. Numbers received above it are
    kept in the ahead set until the hole below them closes. Each received
    number is queued for acknowledgement exactly once.

    Owned by the publish pipeline; not safe for concurrent mutation.
    """

    def __init__(
        self,
        *,
        out_of_order_threshold: int = OUT_OF_ORDER_THRESHOLD,
        outdated_threshold: int = OUTDATED_THRESHOLD,
        last_acked: int = 0,
    ) -> None:
        self._out_of_order_threshold = out_of_order_threshold
        self._outdated_threshold = outdated_threshold
        self._last_acked = last_acked
        self._ahead: set[int] = set()
        self._pending_acks: dict[int, None] = {}  # insertion-ordered set

        self._duplicates = 0
        self._out_of_order = 0
        self._lost_total = 0

    # -- Properties -----------------------------------------------------------

    @property
    def last_acked(self) -> int:
        return self._last_acked

    @property
    def out_of_order_threshold(self) -> int:
        return self._out_of_order_threshold

    @property
    def outdated_threshold(self) -> int:
        return self._outdated_threshold

    @property
    def highest_received(self) -> int:
        return max(self._ahead) if self._ahead else self._last_acked

    @property
    def pending_acks(self) -> tuple[int, ...]:
        return tuple(self._pending_acks)

    def missing(self) -> tuple[int, ...]:
        """Numbers not yet seen between last_acked and the highest received."""
        if not self._ahead:
            return ()
        return tuple(
            n
            for n in range(self._last_acked + 1, max(self._ahead))
            if n not in self._ahead
        )

    def republish_candidates(self) -> tuple[int, ...]:
        """Missing numbers that should no longer be waited for.

        Holes are tolerated while the span up to the highest received number
        stays within the out-of-order threshold; beyond it every missing
        number is a candidate for republish.
        """
        if not self._ahead:
            return ()
        span = max(self._ahead) - self._last_acked - 1
        if span <= self._out_of_order_threshold:
            return ()
        return self.missing()

    # -- Mutation -------------------------------------------------------------

    def accept(self, received: int) -> SequenceVerdict:
        """Classify *received* and apply it to the window."""
        kind = classify(
            self._last_acked, received, outdated_threshold=self._outdated_threshold
        )

        if kind == SequenceClass.DUPLICATE or received in self._ahead:
            self._duplicates += 1
            return SequenceVerdict(
                SequenceClass.DUPLICATE, received, missing=self.missing()
            )

        lost: tuple[int, ...] = ()
        if kind == SequenceClass.IN_ORDER:
            self._last_acked = received
            self._advance()
        elif kind == SequenceClass.GAP:
            lost = tuple(
                n for n in range(self._last_acked + 1, received) if n not in self._ahead
            )
            self._last_acked = received
            self._ahead = {n for n in self._ahead if n > received}
            self._lost_total += len(lost)
            self._advance()
        else:
            self._ahead.add(received)
            self._out_of_order += 1

        self._pending_acks[received] = None
        return SequenceVerdict(kind, received, missing=self.missing(), lost=lost)

    def declare_lost(self, numbers: tuple[int, ...] | list[int]) -> tuple[int, ...]:
        """Give up on *numbers*; returns the ones that were actually missing."""
        lost = tuple(
            n for n in sorted(set(numbers)) if n > self._last_acked and n not in self._ahead
        )
        if not lost:
            return ()
        # Lost numbers fill their holes but are never acknowledged.
        self._ahead.update(lost)
        self._lost_total += len(lost)
        self._advance()
        return lost

    def _advance(self) -> None:
        while self._last_acked + 1 in self._ahead:
            self._ahead.discard(self._last_acked + 1)
            self._last_acked += 1

    # -- Acknowledgements -----------------------------------------------------

    def take_acks(self) -> list[int]:
        """Remove and return every queued acknowledgement."""
        acks = list(self._pending_acks)
        self._pending_acks.clear()
        return acks

    def requeue_acks(self, numbers: list[int]) -> None:
        """Put back acknowledgements whose carrying request did not succeed."""
        for n in numbers:
            self._pending_acks[n] = None

    def prune_acks(self, available: tuple[int, ...]) -> list[int]:
        """Drop queued acks the server no longer retains."""
        if not available:
            return []
        keep = set(available)
        dropped = [n for n in self._pending_acks if n not in keep]
        for n in dropped:
            del self._pending_acks[n]
        return dropped

    def reset(self) -> None:
        self._last_acked = 0
        self._ahead.clear()
        self._pending_acks.clear()

    def copy(self) -> SequenceWindow:
        clone = SequenceWindow(
            out_of_order_threshold=self._out_of_order_threshold,
            outdated_threshold=self._outdated_threshold,
            last_acked=self._last_acked,
        )
        clone._ahead = set(self._ahead)
        clone._pending_acks = dict(self._pending_acks)
        return clone

    def snapshot(self) -> tuple[int, tuple[int, ...], tuple[int, ...]]:
        """``(last_acked, received_ahead, pending_acks)``."""
        return (self._last_acked, tuple(sorted(self._ahead)), self.pending_acks)

    def get_stats(self) -> dict:
        return {
            "last_acked": self._last_acked,
            "ahead": len(self._ahead),
            "pending_acks": len(self._pending_acks),
            "duplicates_detected": self._duplicates,
            "out_of_order": self._out_of_order,
            "lost": self._lost_total,
        }
