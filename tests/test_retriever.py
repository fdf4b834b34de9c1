"""
Tests for ProofRetriever and its retry policy.

Uses a FakeDaClient with scripted per-(endpoint, round) outcomes, a
recording fake sleep and injected clocks — no network, no real waiting.

Test plan:
- Finalization wait: sleeps until the round's estimated finalization,
  not at all once it has passed
- Polling: proof after two empty attempts returns after exactly two
  backoff sleeps; endpoints probed sequentially, first proof wins;
  empty proofs never terminal
- Backoff: exponential, capped, non-decreasing; rate-limited attempts
  escalate to the minimum wait or Retry-After, still capped
- Adjacent search: rounds +1..+width, one pass each
- Exhaustion: NotFoundError with details, or a flagged synthetic proof
  only after every attempt × endpoint × adjacent round was tried
- Input validation and cancellation before any probe
- Idempotence: repeated retrieval yields equal results
"""

from typing import Any

import pytest
from web3 import Web3

from fdc_attest.cancellation import CancelToken
from fdc_attest.codec import EncodedRequest
from fdc_attest.da import ProbeOutcome, ProbeResult, ProofResult
from fdc_attest.errors import (
    ConfigError,
    NotFoundError,
    ValidationError,
    WorkflowCancelledError,
)
from fdc_attest.retriever import ProofRetriever, RetrievalPolicy, RetryState
from fdc_attest.rounds import RoundClock

ANCHOR = 1658429955
CLOCK = RoundClock(epoch_anchor=ANCHOR, epoch_duration=90, finalization_lag_rounds=4)
ROUND = 100
AFTER_FINALIZATION = float(CLOCK.finalization_time(ROUND + 10))
REQUEST = EncodedRequest("0x" + "22" * 48)
EP_A = "https://da-a.example/"
EP_B = "https://da-b.example/"

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def _proof(round_id: int, endpoint: str, leaves: tuple[str, ...] = ("0xabc",)) -> ProofResult:
    return ProofResult(
        merkle_proof_leaves=leaves,
        response_payload_hex="0x01",
        is_synthetic=False,
        round_id=round_id,
        endpoint=endpoint,
    )


def found(endpoint: str, round_id: int) -> ProbeResult:
    return ProbeResult(
        ProbeOutcome.PROOF_FOUND, endpoint, round_id, proof=_proof(round_id, endpoint)
    )


def empty(endpoint: str, round_id: int) -> ProbeResult:
    return ProbeResult(ProbeOutcome.EMPTY_PROOF, endpoint, round_id)


def transport_error(endpoint: str, round_id: int) -> ProbeResult:
    return ProbeResult(ProbeOutcome.TRANSPORT_ERROR, endpoint, round_id, detail="refused")


def rate_limited(retry_after_s: float | None = None) -> Any:
    def make(endpoint: str, round_id: int) -> ProbeResult:
        return ProbeResult(
            ProbeOutcome.RATE_LIMITED, endpoint, round_id, retry_after_s=retry_after_s
        )

    return make


class FakeDaClient:
    """Scripted DA client.

    ``script[(endpoint, round_id)]`` is a list of outcome factories consumed
    one per probe; the last one repeats. Unscripted keys use ``default``.
    """

    def __init__(
        self,
        script: dict[tuple[str, int], list[Any]] | None = None,
        default: Any = empty,
    ) -> None:
        self._script = {k: list(v) for k, v in (script or {}).items()}
        self._default = default
        self.calls: list[tuple[str, int, str]] = []

    async def probe(
        self, endpoint: str, round_id: int, encoded_request: EncodedRequest
    ) -> ProbeResult:
        self.calls.append((endpoint, round_id, encoded_request.hex))
        queue = self._script.get((endpoint, round_id))
        if not queue:
            return self._default(endpoint, round_id)
        factory = queue.pop(0) if len(queue) > 1 else queue[0]
        return factory(endpoint, round_id)


class FakeSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class SteppingClock:
    """Returns scripted values; repeats the last one."""

    def __init__(self, *values: float) -> None:
        self._values = list(values)

    def __call__(self) -> float:
        if len(self._values) > 1:
            return self._values.pop(0)
        return self._values[0]


def _policy(**overrides: Any) -> RetrievalPolicy:
    kwargs: dict[str, Any] = {"endpoints": (EP_A,)}
    kwargs.update(overrides)
    return RetrievalPolicy(**kwargs)


def _retriever(
    da: FakeDaClient,
    sleep: FakeSleep,
    *,
    now: float = AFTER_FINALIZATION,
    **kwargs: Any,
) -> ProofRetriever:
    return ProofRetriever(da, CLOCK, sleep_fn=sleep, now_fn=lambda: now, **kwargs)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class TestRetrievalPolicy:
    def test_defaults(self) -> None:
        policy = _policy()
        assert policy.max_attempts == 3
        assert policy.initial_delay_ms == 30_000
        assert policy.max_delay_ms == 120_000
        assert policy.backoff_multiplier == 2.0
        assert policy.adjacent_round_search_width == 2
        assert policy.rate_limit_min_wait_ms == 60_000

    def test_backoff_exponential_and_capped(self) -> None:
        policy = _policy()
        assert [policy.backoff_delay_ms(n) for n in range(1, 6)] == [
            30_000, 60_000, 120_000, 120_000, 120_000,
        ]

    def test_endpoints_coerced_to_tuple(self) -> None:
        assert _policy(endpoints=[EP_A, EP_B]).endpoints == (EP_A, EP_B)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"endpoints": ()},
            {"endpoints": ("",)},
            {"max_attempts": 0},
            {"initial_delay_ms": -1},
            {"initial_delay_ms": 5_000, "max_delay_ms": 1_000, "rate_limit_min_wait_ms": 0},
            {"backoff_multiplier": 0.5},
            {"adjacent_round_search_width": -1},
            {"rate_limit_min_wait_ms": 200_000},
            {"max_elapsed_ms": 0},
        ],
    )
    def test_invalid_policies(self, overrides: dict[str, Any]) -> None:
        with pytest.raises(ConfigError):
            _policy(**overrides)


class TestRetryState:
    @pytest.mark.parametrize(
        "pattern",
        [
            [False] * 8,
            [True] * 8,
            [True, False, False, True, False, False, False, False],
            [False, True, False, True, False, True, False, True],
        ],
    )
    @pytest.mark.parametrize(
        "policy",
        [
            _policy(),
            _policy(initial_delay_ms=0, max_delay_ms=10_000, rate_limit_min_wait_ms=5_000),
            _policy(initial_delay_ms=1_000, backoff_multiplier=1.0, rate_limit_min_wait_ms=0),
            _policy(initial_delay_ms=100, max_delay_ms=100, rate_limit_min_wait_ms=100),
        ],
    )
    def test_delays_non_decreasing_and_bounded(
        self, policy: RetrievalPolicy, pattern: list[bool]
    ) -> None:
        state = RetryState()
        delays: list[int] = []
        for attempt, limited in enumerate(pattern, start=1):
            state.attempt = attempt
            delays.append(state.schedule(policy, rate_limited=limited, retry_after_s=45.0))
        assert delays == sorted(delays)
        assert all(d <= policy.max_delay_ms for d in delays)

    def test_rate_limited_escalates_to_minimum(self) -> None:
        state = RetryState(attempt=1)
        assert state.schedule(_policy(), rate_limited=True) == 60_000

    def test_retry_after_above_minimum(self) -> None:
        state = RetryState(attempt=1)
        assert state.schedule(_policy(), rate_limited=True, retry_after_s=90) == 90_000

    def test_retry_after_capped(self) -> None:
        state = RetryState(attempt=1)
        assert state.schedule(_policy(), rate_limited=True, retry_after_s=3600) == 120_000

    def test_no_decrease_after_rate_limit(self) -> None:
        policy = _policy(initial_delay_ms=1_000)
        state = RetryState(attempt=1)
        assert state.schedule(policy, rate_limited=True) == 60_000
        state.attempt = 2
        assert state.schedule(policy) == 60_000

    def test_expired(self) -> None:
        assert not RetryState().expired(1e12)
        assert RetryState(deadline=10.0).expired(10.0)
        assert not RetryState(deadline=10.0).expired(9.9)


# ---------------------------------------------------------------------------
# Finalization wait
# ---------------------------------------------------------------------------


class TestFinalizationWait:
    @pytest.mark.asyncio
    async def test_sleeps_until_finalization(self) -> None:
        da = FakeDaClient(default=found)
        sleep = FakeSleep()
        now = CLOCK.finalization_time(ROUND) - 123
        retriever = _retriever(da, sleep, now=now)

        await retriever.retrieve(ROUND, REQUEST, _policy())

        assert sleep.calls == [123]

    @pytest.mark.asyncio
    async def test_no_sleep_when_finalized(self) -> None:
        da = FakeDaClient(default=found)
        sleep = FakeSleep()

        await _retriever(da, sleep).retrieve(ROUND, REQUEST, _policy())

        assert sleep.calls == []


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


class TestPolling:
    @pytest.mark.asyncio
    async def test_proof_on_third_attempt(self) -> None:
        da = FakeDaClient({(EP_A, ROUND): [empty, empty, found]})
        sleep = FakeSleep()

        result = await _retriever(da, sleep).retrieve(ROUND, REQUEST, _policy())

        assert result.is_synthetic is False
        assert result.merkle_proof_leaves == ("0xabc",)
        assert result.response_payload_hex == "0x01"
        assert sleep.calls == [30.0, 60.0]
        assert len(da.calls) == 3

    @pytest.mark.asyncio
    async def test_first_endpoint_with_proof_wins(self) -> None:
        da = FakeDaClient({(EP_A, ROUND): [transport_error], (EP_B, ROUND): [found]})
        sleep = FakeSleep()

        result = await _retriever(da, sleep).retrieve(
            ROUND, REQUEST, _policy(endpoints=(EP_A, EP_B))
        )

        assert result.endpoint == EP_B
        assert [c[0] for c in da.calls] == [EP_A, EP_B]
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_later_endpoints_skipped_after_proof(self) -> None:
        da = FakeDaClient({(EP_A, ROUND): [found]})

        await _retriever(da, FakeSleep()).retrieve(ROUND, REQUEST, _policy(endpoints=(EP_A, EP_B)))

        assert [c[0] for c in da.calls] == [EP_A]

    @pytest.mark.asyncio
    async def test_request_hex_forwarded_unchanged(self) -> None:
        da = FakeDaClient(default=found)
        await _retriever(da, FakeSleep()).retrieve(ROUND, REQUEST.hex, _policy())
        assert da.calls[0][2] == REQUEST.hex

    @pytest.mark.asyncio
    async def test_rate_limit_escalates_sleep(self) -> None:
        da = FakeDaClient({(EP_A, ROUND): [rate_limited(), empty, found]})
        sleep = FakeSleep()

        await _retriever(da, sleep).retrieve(ROUND, REQUEST, _policy())

        assert sleep.calls == [60.0, 60.0]

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self) -> None:
        da = FakeDaClient({(EP_A, ROUND): [rate_limited(100.0), found]})
        sleep = FakeSleep()

        await _retriever(da, sleep).retrieve(ROUND, REQUEST, _policy())

        assert sleep.calls == [100.0]

    @pytest.mark.asyncio
    async def test_sleeps_are_non_decreasing(self) -> None:
        da = FakeDaClient(default=empty)
        sleep = FakeSleep()
        policy = _policy(max_attempts=6, initial_delay_ms=1_000, adjacent_round_search_width=0)

        with pytest.raises(NotFoundError):
            await _retriever(da, sleep).retrieve(ROUND, REQUEST, policy)

        assert sleep.calls == [1.0, 2.0, 4.0, 8.0, 16.0]

    @pytest.mark.asyncio
    async def test_elapsed_budget_ends_polling_early(self) -> None:
        da = FakeDaClient(default=empty)
        sleep = FakeSleep()
        retriever = _retriever(da, sleep, monotonic_fn=SteppingClock(0.0, 5.0))
        policy = _policy(max_attempts=5, max_elapsed_ms=1_000, adjacent_round_search_width=0)

        with pytest.raises(NotFoundError) as exc_info:
            await retriever.retrieve(ROUND, REQUEST, policy)

        assert exc_info.value.details["attempts"] == 1
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_default_policy_used(self) -> None:
        da = FakeDaClient(default=found)
        retriever = _retriever(da, FakeSleep(), default_policy=_policy(endpoints=(EP_B,)))

        result = await retriever.retrieve(ROUND, REQUEST)

        assert result.endpoint == EP_B


# ---------------------------------------------------------------------------
# Adjacent search and exhaustion
# ---------------------------------------------------------------------------


class TestAdjacentSearch:
    @pytest.mark.asyncio
    async def test_proof_in_adjacent_round(self) -> None:
        da = FakeDaClient({(EP_A, ROUND + 2): [found]})
        sleep = FakeSleep()

        result = await _retriever(da, sleep).retrieve(ROUND, REQUEST, _policy())

        assert result.round_id == ROUND + 2
        assert [c[1] for c in da.calls] == [ROUND, ROUND, ROUND, ROUND + 1, ROUND + 2]
        assert sleep.calls == [30.0, 60.0]

    @pytest.mark.asyncio
    async def test_width_zero_skips_search(self) -> None:
        da = FakeDaClient()
        with pytest.raises(NotFoundError):
            await _retriever(da, FakeSleep()).retrieve(
                ROUND, REQUEST, _policy(adjacent_round_search_width=0)
            )
        assert {c[1] for c in da.calls} == {ROUND}


class TestExhaustion:
    @pytest.mark.asyncio
    async def test_all_transport_errors_not_found(self) -> None:
        da = FakeDaClient(default=transport_error)
        sleep = FakeSleep()
        policy = _policy(endpoints=(EP_A, EP_B))

        with pytest.raises(NotFoundError) as exc_info:
            await _retriever(da, sleep).retrieve(ROUND, REQUEST, policy)

        # 3 attempts x 2 endpoints + 2 adjacent rounds x 2 endpoints
        assert len(da.calls) == 10
        assert sleep.calls == [30.0, 60.0]
        details = exc_info.value.details
        assert details["round_id"] == ROUND
        assert details["attempts"] == 3
        assert details["endpoints"] == [EP_A, EP_B]
        assert details["adjacent_rounds"] == [ROUND + 1, ROUND + 2]

    @pytest.mark.asyncio
    async def test_synthetic_only_after_full_exhaustion(self) -> None:
        da = FakeDaClient(default=empty)
        policy = _policy(endpoints=(EP_A, EP_B))

        result = await _retriever(da, FakeSleep()).retrieve(
            ROUND, REQUEST, policy, allow_synthetic=True
        )

        assert len(da.calls) == 10
        assert result.is_synthetic is True
        assert result.response_payload_hex is None
        assert result.endpoint is None
        assert result.round_id == ROUND
        assert result.merkle_proof_leaves == (Web3.to_hex(Web3.keccak(REQUEST.to_bytes())),)

    @pytest.mark.asyncio
    async def test_real_proof_preferred_when_synthetic_allowed(self) -> None:
        da = FakeDaClient({(EP_A, ROUND): [empty, found]})
        result = await _retriever(da, FakeSleep()).retrieve(
            ROUND, REQUEST, _policy(), allow_synthetic=True
        )
        assert result.is_synthetic is False


# ---------------------------------------------------------------------------
# Validation, cancellation, idempotence
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.asyncio
    async def test_malformed_request_before_io(self) -> None:
        da = FakeDaClient()
        with pytest.raises(ValidationError):
            await _retriever(da, FakeSleep()).retrieve(ROUND, "0xabc", _policy())
        assert da.calls == []

    @pytest.mark.asyncio
    async def test_negative_round(self) -> None:
        da = FakeDaClient()
        with pytest.raises(ValidationError):
            await _retriever(da, FakeSleep()).retrieve(-1, REQUEST, _policy())
        assert da.calls == []

    @pytest.mark.asyncio
    async def test_no_policy(self) -> None:
        with pytest.raises(ConfigError):
            await _retriever(FakeDaClient(), FakeSleep()).retrieve(ROUND, REQUEST)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_probe(self) -> None:
        da = FakeDaClient(default=found)
        token = CancelToken()
        token.cancel()

        with pytest.raises(WorkflowCancelledError):
            await _retriever(da, FakeSleep()).retrieve(ROUND, REQUEST, _policy(), cancel=token)

        assert da.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_during_finalization_wait(self) -> None:
        da = FakeDaClient(default=found)
        token = CancelToken()
        token.cancel("shutdown")
        retriever = _retriever(da, FakeSleep(), now=CLOCK.finalization_time(ROUND) - 60)

        with pytest.raises(WorkflowCancelledError):
            await retriever.retrieve(ROUND, REQUEST, _policy(), cancel=token)

        assert da.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_between_attempts(self) -> None:
        da = FakeDaClient(default=empty)
        token = CancelToken()

        async def cancelling_sleep(seconds: float) -> None:
            token.cancel()

        retriever = ProofRetriever(
            da, CLOCK, sleep_fn=cancelling_sleep, now_fn=lambda: AFTER_FINALIZATION
        )

        with pytest.raises(WorkflowCancelledError):
            await retriever.retrieve(ROUND, REQUEST, _policy(), cancel=token)

        assert len(da.calls) == 1


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_repeated_retrieval_equal(self) -> None:
        da = FakeDaClient(default=found)
        retriever = _retriever(da, FakeSleep())

        first = await retriever.retrieve(ROUND, REQUEST, _policy())
        second = await retriever.retrieve(ROUND, REQUEST, _policy())

        assert first == second
        assert first.to_dict() == second.to_dict()
