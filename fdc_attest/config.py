"""
Client configuration.

All endpoints, addresses, epoch constants and retry parameters are
explicit configuration passed into each component at construction. There
is no process-wide mutable state: ``ClientConfig`` is frozen and may be
shared read-only by concurrent workflow runs.

``ClientConfig.from_env()`` loads a ``.env`` file (python-dotenv) and then
reads the environment. Secrets are excluded from ``repr``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from dotenv import load_dotenv

from fdc_attest.errors import ConfigError
from fdc_attest.gateway import DEFAULT_CONFIRMATION_TIMEOUT_S, SubmissionParams
from fdc_attest.retriever import RetrievalPolicy
from fdc_attest.rounds import (
    DEFAULT_EPOCH_ANCHOR_TS,
    DEFAULT_EPOCH_DURATION_S,
    DEFAULT_FINALIZATION_LAG_ROUNDS,
    RoundClock,
)

# Coston2 testnet defaults.
DEFAULT_VERIFIER_URL = "https://fdc-verifiers-testnet.flare.network/"
DEFAULT_JQ_VERIFIER_URL = "https://jq-verifier-test.flare.rocks/"
DEFAULT_DA_LAYER_URL = "https://ctn2-data-availability.flare.network/"
DEFAULT_RPC_URL = "https://coston2-api.flare.network/ext/bc/C/rpc"
DEFAULT_HUB_ADDRESS = "0x1c78A073E3BD2aCa4cc327d55FB0cD4f0549B55b"
DEFAULT_EXPLORER_URL = "https://coston2-systems-explorer.flare.rocks/"
DEFAULT_REQUEST_FEE_WEI = 500_000_000_000_000_000  # 0.5 C2FLR
DEFAULT_GAS_LIMIT = 500_000

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


# =========================================================================
# Env parsing helpers
# =========================================================================


def _get_str(env: Mapping[str, str], name: str, default: str) -> str:
    value = env.get(name)
    return value.strip() if value is not None and value.strip() else default


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _get_list(env: Mapping[str, str], name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


# =========================================================================
# ClientConfig
# =========================================================================


@dataclass(frozen=True)
class ClientConfig:
    """Read-only configuration shared by all components."""

    # --- Verifier ---
    verifier_url: str = DEFAULT_VERIFIER_URL
    verifier_api_key: str = field(default="", repr=False)
    jq_verifier_url: str = DEFAULT_JQ_VERIFIER_URL
    jq_verifier_api_key: str = field(default="", repr=False)
    verifier_timeout_s: float = 30.0

    # --- Data-availability layer ---
    da_layer_urls: tuple[str, ...] = (DEFAULT_DA_LAYER_URL,)
    da_api_key: str = field(default="", repr=False)
    da_timeout_s: float = 10.0

    # --- Chain ---
    rpc_url: str = DEFAULT_RPC_URL
    hub_address: str = DEFAULT_HUB_ADDRESS
    private_key: str | None = field(default=None, repr=False)
    rpc_timeout_s: float = 30.0
    request_fee_wei: int = DEFAULT_REQUEST_FEE_WEI
    gas_limit: int = DEFAULT_GAS_LIMIT
    confirmation_timeout_s: float = DEFAULT_CONFIRMATION_TIMEOUT_S
    confirmation_poll_interval_s: float = 2.0

    # --- Rounds ---
    epoch_anchor_ts: int = DEFAULT_EPOCH_ANCHOR_TS
    epoch_duration_s: int = DEFAULT_EPOCH_DURATION_S
    finalization_lag_rounds: int = DEFAULT_FINALIZATION_LAG_ROUNDS

    # --- Retrieval ---
    retry_max_attempts: int = 3
    retry_initial_delay_ms: int = 30_000
    retry_max_delay_ms: int = 120_000
    retry_backoff_multiplier: float = 2.0
    rate_limit_min_wait_ms: int = 60_000
    adjacent_round_search_width: int = 2
    allow_synthetic_proof: bool = False

    # --- Diagnostics ---
    explorer_url: str = DEFAULT_EXPLORER_URL

    def __post_init__(self) -> None:
        object.__setattr__(self, "da_layer_urls", tuple(self.da_layer_urls))
        if not self.da_layer_urls:
            raise ConfigError("at least one data-availability URL is required")
        if self.epoch_duration_s <= 0:
            raise ConfigError(f"epoch_duration_s must be > 0, got {self.epoch_duration_s}")
        for name in ("verifier_timeout_s", "da_timeout_s", "rpc_timeout_s",
                     "confirmation_timeout_s", "confirmation_poll_interval_s"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0, got {getattr(self, name)}")

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        *,
        dotenv: bool = True,
        dotenv_path: str | os.PathLike[str] | None = None,
    ) -> ClientConfig:
        """Build configuration from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ`` (tests).
            dotenv: Load a ``.env`` file into ``os.environ`` first. Ignored
                when ``env`` is given. Existing variables win.
            dotenv_path: Explicit ``.env`` location. Searched for when None.

        Raises:
            ConfigError: On malformed values.
        """
        if env is None:
            if dotenv:
                load_dotenv(dotenv_path)
            env = os.environ

        verifier_api_key = _get_str(env, "VERIFIER_API_KEY", "")
        return cls(
            verifier_url=_get_str(env, "FDC_VERIFIER_URL", DEFAULT_VERIFIER_URL),
            verifier_api_key=verifier_api_key,
            jq_verifier_url=_get_str(env, "JQ_VERIFIER_URL", DEFAULT_JQ_VERIFIER_URL),
            jq_verifier_api_key=_get_str(env, "JQ_VERIFIER_API_KEY", verifier_api_key),
            verifier_timeout_s=_get_float(env, "VERIFIER_TIMEOUT_SECONDS", 30.0),
            da_layer_urls=_get_list(env, "DA_LAYER_URLS", (DEFAULT_DA_LAYER_URL,)),
            da_api_key=_get_str(env, "DA_LAYER_API_KEY", ""),
            da_timeout_s=_get_float(env, "HTTP_TIMEOUT_SECONDS", 10.0),
            rpc_url=_get_str(env, "RPC_URL", DEFAULT_RPC_URL),
            hub_address=_get_str(env, "FDC_HUB_ADDRESS", DEFAULT_HUB_ADDRESS),
            private_key=_get_str(env, "PRIVATE_KEY", "") or None,
            rpc_timeout_s=_get_float(env, "RPC_TIMEOUT_SECONDS", 30.0),
            request_fee_wei=_get_int(env, "REQUEST_FEE_WEI", DEFAULT_REQUEST_FEE_WEI),
            gas_limit=_get_int(env, "GAS_LIMIT", DEFAULT_GAS_LIMIT),
            confirmation_timeout_s=_get_float(
                env, "CONFIRMATION_TIMEOUT_SECONDS", DEFAULT_CONFIRMATION_TIMEOUT_S
            ),
            epoch_anchor_ts=_get_int(env, "FIRST_VOTING_ROUND_START_TS", DEFAULT_EPOCH_ANCHOR_TS),
            epoch_duration_s=_get_int(
                env, "VOTING_EPOCH_DURATION_SECONDS", DEFAULT_EPOCH_DURATION_S
            ),
            finalization_lag_rounds=_get_int(
                env, "FINALIZATION_LAG_ROUNDS", DEFAULT_FINALIZATION_LAG_ROUNDS
            ),
            retry_max_attempts=_get_int(env, "RETRY_MAX_ATTEMPTS", 3),
            retry_initial_delay_ms=_get_int(env, "RETRY_INITIAL_DELAY_MS", 30_000),
            retry_max_delay_ms=_get_int(env, "RETRY_MAX_DELAY_MS", 120_000),
            retry_backoff_multiplier=_get_float(env, "RETRY_BACKOFF_MULTIPLIER", 2.0),
            rate_limit_min_wait_ms=_get_int(env, "RATE_LIMIT_MIN_WAIT_MS", 60_000),
            adjacent_round_search_width=_get_int(env, "ADJACENT_ROUND_SEARCH_WIDTH", 2),
            allow_synthetic_proof=_get_bool(env, "ALLOW_SYNTHETIC_PROOF", False),
            explorer_url=_get_str(env, "EXPLORER_URL", DEFAULT_EXPLORER_URL),
        )

    # --- Derived value objects ---

    def round_clock(self) -> RoundClock:
        return RoundClock(
            epoch_anchor=self.epoch_anchor_ts,
            epoch_duration=self.epoch_duration_s,
            finalization_lag_rounds=self.finalization_lag_rounds,
        )

    def retrieval_policy(self) -> RetrievalPolicy:
        return RetrievalPolicy(
            endpoints=self.da_layer_urls,
            max_attempts=self.retry_max_attempts,
            initial_delay_ms=self.retry_initial_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            backoff_multiplier=self.retry_backoff_multiplier,
            adjacent_round_search_width=self.adjacent_round_search_width,
            rate_limit_min_wait_ms=self.rate_limit_min_wait_ms,
        )

    def submission_params(self) -> SubmissionParams:
        return SubmissionParams(
            fee_wei=self.request_fee_wei,
            gas_limit=self.gas_limit,
            confirmation_timeout_s=self.confirmation_timeout_s,
        )

