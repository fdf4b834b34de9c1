"""
Proof retriever — resilient proof retrieval from replicated DA layers.

State machine, one instance per ``retrieve()`` call:

    WAITING_FOR_ROUND  cancellable sleep until the round's estimated
                       finalization time has passed
    POLLING            attempts 1..max_attempts; each attempt probes the
                       endpoints sequentially, first PROOF_FOUND wins;
                       between attempts sleep
                       min(initial * multiplier^(attempt-1), max_delay)
    ADJACENT_SEARCH    rounds round_id+1 .. round_id+width, one pass each
                       (submission-time clock skew can shift the round)
    EXHAUSTED          NotFoundError, or a flagged synthetic ProofResult
                       when the caller explicitly allows it

Backoff rules:
    - A rate-limited attempt escalates the next delay to at least
      ``rate_limit_min_wait_ms`` (or the server's Retry-After, if larger).
    - Delays never decrease within one call and never exceed
      ``max_delay_ms``.

Endpoints are probed one after another, never in parallel, so a struggling
DA layer is not hit with redundant concurrent requests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from web3 import Web3

from fdc_attest.cancellation import CancelToken, SleepFn, cancellable_sleep
from fdc_attest.codec import EncodedRequest
from fdc_attest.da import DataAvailabilityClient, ProbeOutcome, ProbeResult, ProofResult
from fdc_attest.errors import ConfigError, NotFoundError, ValidationError
from fdc_attest.rounds import RoundClock

logger = logging.getLogger(__name__)


class RetrievalState(StrEnum):
    WAITING_FOR_ROUND = "WAITING_FOR_ROUND"
    POLLING = "POLLING"
    ADJACENT_SEARCH = "ADJACENT_SEARCH"
    EXHAUSTED = "EXHAUSTED"


# =========================================================================
# Policy
# =========================================================================


@dataclass(frozen=True)
class RetrievalPolicy:
    """Retry/backoff/fallback settings for one retrieval.

    Attributes:
        endpoints: DA base URLs, probed in order.
        max_attempts: Polling attempts over all endpoints (>= 1).
        initial_delay_ms: Delay after the first failed attempt.
        max_delay_ms: Upper bound for every delay.
        backoff_multiplier: Growth factor per attempt (>= 1).
        adjacent_round_search_width: Rounds after ``round_id`` to probe
            once polling is exhausted (0 disables the search).
        rate_limit_min_wait_ms: Minimum delay after a rate-limited attempt.
            Must not exceed ``max_delay_ms``.
        max_elapsed_ms: Optional wall budget for POLLING. When exceeded,
            polling ends early and adjacent search begins.
    """

    endpoints: tuple[str, ...]
    max_attempts: int = 3
    initial_delay_ms: int = 30_000
    max_delay_ms: int = 120_000
    backoff_multiplier: float = 2.0
    adjacent_round_search_width: int = 2
    rate_limit_min_wait_ms: int = 60_000
    max_elapsed_ms: int | None = None

    def __post_init__(self) -> None:
        endpoints = tuple(self.endpoints)
        object.__setattr__(self, "endpoints", endpoints)

        problems: list[str] = []
        if not endpoints or not all(endpoints):
            problems.append("endpoints must be a non-empty sequence of URLs")
        if self.max_attempts < 1:
            problems.append(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_ms < 0:
            problems.append(f"initial_delay_ms must be >= 0, got {self.initial_delay_ms}")
        if self.max_delay_ms < self.initial_delay_ms:
            problems.append("max_delay_ms must be >= initial_delay_ms")
        if self.backoff_multiplier < 1:
            problems.append(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")
        if self.adjacent_round_search_width < 0:
            problems.append("adjacent_round_search_width must be >= 0")
        if not 0 <= self.rate_limit_min_wait_ms <= self.max_delay_ms:
            problems.append("rate_limit_min_wait_ms must be within [0, max_delay_ms]")
        if self.max_elapsed_ms is not None and self.max_elapsed_ms <= 0:
            problems.append("max_elapsed_ms must be > 0 when set")
        if problems:
            raise ConfigError("invalid retrieval policy: " + "; ".join(problems))

    def backoff_delay_ms(self, attempt: int) -> int:
        """Normal (non-rate-limited) delay after failed ``attempt`` (1-indexed)."""
        delay = float(self.initial_delay_ms)
        for _ in range(attempt - 1):
            delay *= self.backoff_multiplier
            if delay >= self.max_delay_ms:
                return self.max_delay_ms
        return min(int(delay), self.max_delay_ms)


@dataclass
class RetryState:
    """Mutable retry bookkeeping owned by a single retrieve() call."""

    attempt: int = 0
    next_delay_ms: int = 0
    deadline: float | None = None

    def schedule(
        self,
        policy: RetrievalPolicy,
        *,
        rate_limited: bool = False,
        retry_after_s: float | None = None,
    ) -> int:
        """Compute and record the delay before the next attempt."""
        delay = max(policy.backoff_delay_ms(self.attempt), self.next_delay_ms)
        if rate_limited:
            delay = max(delay, policy.rate_limit_min_wait_ms)
            if retry_after_s is not None:
                delay = max(delay, int(retry_after_s * 1000))
        self.next_delay_ms = min(delay, policy.max_delay_ms)
        return self.next_delay_ms

    def expired(self, now: float) -> bool:
        return self.deadline is not None and now >= self.deadline


def synthetic_proof(round_id: int, encoded_request: EncodedRequest) -> ProofResult:
    """Non-authoritative placeholder, flagged so consumers can reject it."""
    return ProofResult(
        merkle_proof_leaves=(Web3.to_hex(Web3.keccak(encoded_request.to_bytes())),),
        response_payload_hex=None,
        is_synthetic=True,
        round_id=round_id,
        endpoint=None,
    )


# =========================================================================
# Retriever
# =========================================================================


@dataclass(frozen=True)
class _Sweep:
    found: ProofResult | None
    rate_limited: bool
    retry_after_s: float | None


class ProofRetriever:
    """Polls DA replicas for the proof tied to (round, request).

    Args:
        da_client: DataAvailabilityClient (or a fake with ``probe()``).
        clock: RoundClock used to compute the finalization wait.
        default_policy: Policy used when ``retrieve()`` gets none.
        sleep_fn: Injectable sleep.
        now_fn: Injectable unix-time clock (compared to finalization time).
        monotonic_fn: Injectable monotonic clock for ``max_elapsed_ms``.
    """

    def __init__(
        self,
        da_client: DataAvailabilityClient,
        clock: RoundClock,
        *,
        default_policy: RetrievalPolicy | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
        now_fn: Callable[[], float] = time.time,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._da = da_client
        self._clock = clock
        self._default_policy = default_policy
        self._sleep_fn = sleep_fn
        self._now_fn = now_fn
        self._monotonic_fn = monotonic_fn

    @property
    def default_policy(self) -> RetrievalPolicy | None:
        return self._default_policy

    async def retrieve(
        self,
        round_id: int,
        encoded_request: EncodedRequest | str,
        policy: RetrievalPolicy | None = None,
        *,
        allow_synthetic: bool = False,
        cancel: CancelToken | None = None,
    ) -> ProofResult:
        """Retrieve the proof for ``encoded_request`` submitted in ``round_id``.

        Raises:
            ValidationError: Malformed request or negative round (no retry).
            ConfigError: No policy given and no default configured.
            NotFoundError: Exhausted and synthetic results not allowed.
            WorkflowCancelledError: ``cancel`` fired during a suspension.
        """
        if not isinstance(encoded_request, EncodedRequest):
            encoded_request = EncodedRequest(encoded_request)
        if round_id < 0:
            raise ValidationError(f"round_id must be >= 0, got {round_id}")
        policy = policy or self._default_policy
        if policy is None:
            raise ConfigError("no retrieval policy given and no default configured")

        # WAITING_FOR_ROUND
        wait_s = self._clock.seconds_until_finalization(round_id, self._now_fn())
        if wait_s > 0:
            logger.info(
                "[%s] round %d finalizes at ~%d; sleeping %.0fs",
                RetrievalState.WAITING_FOR_ROUND, round_id,
                self._clock.finalization_time(round_id), wait_s,
            )
            await cancellable_sleep(wait_s, cancel, sleep_fn=self._sleep_fn)

        # POLLING
        state = RetryState()
        if policy.max_elapsed_ms is not None:
            state.deadline = self._monotonic_fn() + policy.max_elapsed_ms / 1000

        for attempt in range(1, policy.max_attempts + 1):
            state.attempt = attempt
            logger.info(
                "[%s] round %d attempt %d/%d",
                RetrievalState.POLLING, round_id, attempt, policy.max_attempts,
            )
            sweep = await self._sweep(round_id, encoded_request, policy.endpoints, cancel)
            if sweep.found is not None:
                return sweep.found

            if attempt == policy.max_attempts:
                break
            if state.expired(self._monotonic_fn()):
                logger.warning(
                    "polling budget of %dms spent after attempt %d",
                    policy.max_elapsed_ms, attempt,
                )
                break

            delay_ms = state.schedule(
                policy,
                rate_limited=sweep.rate_limited,
                retry_after_s=sweep.retry_after_s,
            )
            if sweep.rate_limited:
                logger.warning("rate limited; backing off %dms", delay_ms)
            else:
                logger.info("no proof yet; backing off %dms", delay_ms)
            await cancellable_sleep(delay_ms / 1000, cancel, sleep_fn=self._sleep_fn)

        # ADJACENT_SEARCH
        width = policy.adjacent_round_search_width
        for offset in range(1, width + 1):
            candidate = round_id + offset
            logger.info("[%s] probing round %d", RetrievalState.ADJACENT_SEARCH, candidate)
            sweep = await self._sweep(candidate, encoded_request, policy.endpoints, cancel)
            if sweep.found is not None:
                logger.warning(
                    "proof found in round %d, not the submission round %d",
                    candidate, round_id,
                )
                return sweep.found

        # EXHAUSTED
        details = {
            "round_id": round_id,
            "attempts": state.attempt,
            "endpoints": list(policy.endpoints),
            "adjacent_rounds": [round_id + i for i in range(1, width + 1)],
            "request": encoded_request.preview(),
        }
        if allow_synthetic:
            logger.warning(
                "[%s] issuing SYNTHETIC proof for round %d; not for production use",
                RetrievalState.EXHAUSTED, round_id,
            )
            return synthetic_proof(round_id, encoded_request)

        logger.warning("[%s] no proof for round %d", RetrievalState.EXHAUSTED, round_id)
        raise NotFoundError(
            f"no proof found for round {round_id} after {state.attempt} attempts "
            f"and {width} adjacent rounds",
            details=details,
        )

    async def _sweep(
        self,
        round_id: int,
        encoded_request: EncodedRequest,
        endpoints: Sequence[str],
        cancel: CancelToken | None,
    ) -> _Sweep:
        """Probe each endpoint once, in order; stop at the first proof."""
        rate_limited = False
        retry_after_s: float | None = None

        for endpoint in endpoints:
            if cancel is not None:
                cancel.raise_if_cancelled()
            probe: ProbeResult = await self._da.probe(endpoint, round_id, encoded_request)
            logger.debug(
                "probe %s round=%d shape=%s → %s%s",
                endpoint, round_id, probe.shape, probe.outcome,
                f" ({probe.detail})" if probe.detail else "",
            )

            if probe.outcome == ProbeOutcome.PROOF_FOUND and probe.proof is not None:
                logger.info(
                    "proof found for round %d at %s (%d leaves)",
                    round_id, endpoint, len(probe.proof.merkle_proof_leaves),
                )
                return _Sweep(found=probe.proof, rate_limited=rate_limited, retry_after_s=None)

            if probe.outcome == ProbeOutcome.RATE_LIMITED:
                rate_limited = True
                if probe.retry_after_s is not None:
                    retry_after_s = max(retry_after_s or 0.0, probe.retry_after_s)

        return _Sweep(found=None, rate_limited=rate_limited, retry_after_s=retry_after_s)
