"""
Voting-round arithmetic.

Pure functions, no I/O. The oracle network processes requests in discrete
voting epochs of fixed length starting at an anchor timestamp:

    round_id = floor((block_timestamp - epoch_anchor) / epoch_duration)

A round's data becomes queryable on the data-availability layer only after
a few further rounds have elapsed (``finalization_lag_rounds``):

    estimated_finalization = epoch_anchor
                             + (round_id + finalization_lag_rounds) * epoch_duration

The round must be computed from the *confirmed* block timestamp of the
submission transaction, never from a pre-submission estimate.
"""

from __future__ import annotations

from dataclasses import dataclass

from fdc_attest.errors import ConfigError, ValidationError

# Coston2 / Flare defaults.
DEFAULT_EPOCH_ANCHOR_TS = 1658429955
DEFAULT_EPOCH_DURATION_S = 90
DEFAULT_FINALIZATION_LAG_ROUNDS = 4


def _validate_constants(epoch_duration: int, finalization_lag_rounds: int = 0) -> None:
    if epoch_duration <= 0:
        raise ConfigError(
            f"epoch_duration must be > 0, got {epoch_duration}",
            details={"epoch_duration": epoch_duration},
        )
    if finalization_lag_rounds < 0:
        raise ConfigError(
            f"finalization_lag_rounds must be >= 0, got {finalization_lag_rounds}",
            details={"finalization_lag_rounds": finalization_lag_rounds},
        )


def round_id(block_timestamp: int, epoch_anchor: int, epoch_duration: int) -> int:
    """Map a block timestamp to its voting-round id.

    Raises:
        ConfigError: If epoch_duration <= 0.
        ValidationError: If the timestamp precedes the epoch anchor.
    """
    _validate_constants(epoch_duration)
    if block_timestamp < epoch_anchor:
        raise ValidationError(
            f"block timestamp {block_timestamp} precedes epoch anchor {epoch_anchor}",
            details={"block_timestamp": block_timestamp, "epoch_anchor": epoch_anchor},
        )
    return (block_timestamp - epoch_anchor) // epoch_duration


def estimated_finalization(
    round_id: int,
    epoch_anchor: int,
    epoch_duration: int,
    finalization_lag_rounds: int,
) -> int:
    """Estimate the unix time at which a round's data becomes queryable.

    Raises:
        ConfigError: If epoch_duration <= 0 or finalization_lag_rounds < 0.
        ValidationError: If round_id is negative.
    """
    _validate_constants(epoch_duration, finalization_lag_rounds)
    if round_id < 0:
        raise ValidationError(f"round_id must be >= 0, got {round_id}")
    return epoch_anchor + (round_id + finalization_lag_rounds) * epoch_duration


@dataclass(frozen=True)
class RoundClock:
    """Round arithmetic bound to one network's epoch constants."""

    epoch_anchor: int = DEFAULT_EPOCH_ANCHOR_TS
    epoch_duration: int = DEFAULT_EPOCH_DURATION_S
    finalization_lag_rounds: int = DEFAULT_FINALIZATION_LAG_ROUNDS

    def __post_init__(self) -> None:
        _validate_constants(self.epoch_duration, self.finalization_lag_rounds)

    def round_for(self, block_timestamp: int) -> int:
        return round_id(block_timestamp, self.epoch_anchor, self.epoch_duration)

    def round_start(self, round_id: int) -> int:
        """Unix time at which ``round_id`` opens."""
        if round_id < 0:
            raise ValidationError(f"round_id must be >= 0, got {round_id}")
        return self.epoch_anchor + round_id * self.epoch_duration

    def finalization_time(self, round_id: int) -> int:
        return estimated_finalization(
            round_id,
            self.epoch_anchor,
            self.epoch_duration,
            self.finalization_lag_rounds,
        )

    def seconds_until_finalization(self, round_id: int, now: float) -> float:
        """Seconds from ``now`` until the round is queryable (0 if already past)."""
        return max(0.0, self.finalization_time(round_id) - now)
