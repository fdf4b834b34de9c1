"""
Workflow orchestrator — descriptor in, proof out.

    encode  →  submit  →  round_for(block_timestamp)  →  retrieve

Stages run strictly in that order. Only the side-effect-free verifier
exchange is retried. The first fatal error propagates unchanged; the
orchestrator adds bookkeeping (logging, explorer link) but
never reinterprets a failure.

Round computation uses the confirmed block's timestamp, never the wall
clock at submission time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from fdc_attest.cancellation import CancelToken, SleepFn, cancellable_sleep
from fdc_attest.codec import AttestationDescriptor, EncodedRequest, RequestCodec
from fdc_attest.config import ClientConfig
from fdc_attest.da import DataAvailabilityClient, ProofResult
from fdc_attest.errors import ConfigError, UpstreamError
from fdc_attest.gateway import SubmissionGateway, SubmissionParams, SubmissionReceipt
from fdc_attest.hub import Web3HubClient
from fdc_attest.retriever import ProofRetriever, RetrievalPolicy
from fdc_attest.rounds import RoundClock
from fdc_attest.transport import HttpxTransport

logger = logging.getLogger(__name__)

VERIFIER_ATTEMPTS = 3
VERIFIER_RETRY_DELAY_S = 2.0


@dataclass(frozen=True)
class WorkflowRecord:
    """Bookkeeping for one completed run."""

    request_digest: str
    receipt: SubmissionReceipt
    round_id: int
    estimated_finalization: int
    proof: ProofResult


class WorkflowOrchestrator:
    """Drives one attestation end to end.

    Args:
        codec: RequestCodec (verifier exchange).
        gateway: SubmissionGateway (on-chain submission).
        retriever: ProofRetriever (DA polling).
        clock: RoundClock used to map block timestamps to rounds.
        submission_params: Defaults for ``run()``.
        retrieval_policy: Defaults for ``run()``.
        allow_synthetic: Permit a synthetic proof after exhaustion.
        explorer_url: Base URL for per-round explorer links in logs.
        verifier_attempts: Tries per run for the verifier exchange; only
            UpstreamError is retried.
        verifier_retry_delay_s: Pause between verifier tries.
        sleep_fn: Injectable sleep.
    """

    def __init__(
        self,
        codec: RequestCodec,
        gateway: SubmissionGateway,
        retriever: ProofRetriever,
        clock: RoundClock,
        *,
        submission_params: SubmissionParams | None = None,
        retrieval_policy: RetrievalPolicy | None = None,
        allow_synthetic: bool = False,
        explorer_url: str | None = None,
        verifier_attempts: int = VERIFIER_ATTEMPTS,
        verifier_retry_delay_s: float = VERIFIER_RETRY_DELAY_S,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        if verifier_attempts < 1:
            raise ConfigError(f"verifier_attempts must be >= 1, got {verifier_attempts}")
        self._codec = codec
        self._gateway = gateway
        self._retriever = retriever
        self._clock = clock
        self._submission_params = submission_params
        self._retrieval_policy = retrieval_policy
        self._allow_synthetic = allow_synthetic
        self._explorer_url = explorer_url
        self._verifier_attempts = verifier_attempts
        self._verifier_retry_delay_s = verifier_retry_delay_s
        self._sleep_fn = sleep_fn

    @classmethod
    def from_config(cls, config: ClientConfig) -> WorkflowOrchestrator:
        """Wire the concrete httpx/web3 clients from configuration.

        Raises:
            ConfigError: Missing private key or invalid hub address.
        """
        codec = RequestCodec(
            config.verifier_url,
            config.verifier_api_key,
            transport=HttpxTransport(timeout=config.verifier_timeout_s),
            base_urls={"IJsonApi": config.jq_verifier_url, "JsonApi": config.jq_verifier_url},
            api_keys={
                "IJsonApi": config.jq_verifier_api_key,
                "JsonApi": config.jq_verifier_api_key,
            },
        )
        hub = Web3HubClient(
            config.rpc_url,
            config.hub_address,
            config.private_key or "",
            timeout=config.rpc_timeout_s,
        )
        gateway = SubmissionGateway(hub, poll_interval_s=config.confirmation_poll_interval_s)
        da_client = DataAvailabilityClient(
            HttpxTransport(timeout=config.da_timeout_s),
            api_key=config.da_api_key,
        )
        clock = config.round_clock()
        policy = config.retrieval_policy()
        retriever = ProofRetriever(da_client, clock, default_policy=policy)
        return cls(
            codec,
            gateway,
            retriever,
            clock,
            submission_params=config.submission_params(),
            retrieval_policy=policy,
            allow_synthetic=config.allow_synthetic_proof,
            explorer_url=config.explorer_url,
        )

    def explorer_link(self, round_id: int) -> str | None:
        if not self._explorer_url:
            return None
        return f"{self._explorer_url.rstrip('/')}/voting-epoch/{round_id}?tab=fdc"

    async def run(
        self,
        descriptor: AttestationDescriptor,
        submission_params: SubmissionParams | None = None,
        retrieval_policy: RetrievalPolicy | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> ProofResult:
        """Encode, submit, compute the round and retrieve the proof.

        See ``run_detailed()`` for the raised errors.
        """
        record = await self.run_detailed(
            descriptor, submission_params, retrieval_policy, cancel=cancel
        )
        return record.proof

    async def run_detailed(
        self,
        descriptor: AttestationDescriptor,
        submission_params: SubmissionParams | None = None,
        retrieval_policy: RetrievalPolicy | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> WorkflowRecord:
        """Like ``run()``, but also return the submission bookkeeping.

        Raises:
            ValidationError: Malformed descriptor (before any I/O).
            ConfigError: No submission params or retrieval policy available.
            UpstreamError, InsufficientFundsError, RejectedError,
            ConfirmationTimeoutError, NotFoundError, WorkflowCancelledError:
                Propagated unchanged from the failing stage.

        The verifier exchange is retried up to ``verifier_attempts`` times on
        UpstreamError; nothing after the on-chain send is retried here.
        """
        params = submission_params or self._submission_params
        if params is None:
            raise ConfigError("no submission params given and no default configured")
        policy = retrieval_policy or self._retrieval_policy or self._retriever.default_policy
        if policy is None:
            raise ConfigError("no retrieval policy given and no default configured")

        if cancel is not None:
            cancel.raise_if_cancelled()
        encoded = await self._encode(descriptor, cancel)
        request_digest = encoded.digest()
        logger.info("request digest: %s", request_digest)

        if cancel is not None:
            cancel.raise_if_cancelled()
        receipt = await self._gateway.submit(
            encoded,
            params.fee_wei,
            params.gas_limit,
            confirmation_timeout_s=params.confirmation_timeout_s,
            cancel=cancel,
        )

        round_id = self._clock.round_for(receipt.block_timestamp)
        finalization = self._clock.finalization_time(round_id)
        logger.info(
            "tx %s in block %d (timestamp %d) -> round %d, finalizes at ~%d",
            receipt.tx_hash, receipt.confirmed_block_height, receipt.block_timestamp,
            round_id, finalization,
        )
        link = self.explorer_link(round_id)
        if link:
            logger.info("round explorer: %s", link)

        proof = await self._retriever.retrieve(
            round_id,
            encoded,
            policy,
            allow_synthetic=self._allow_synthetic,
            cancel=cancel,
        )
        if proof.is_synthetic:
            logger.warning("workflow for %s finished with a SYNTHETIC proof", request_digest)
        else:
            logger.info(
                "workflow for %s finished: proof from %s, round %d",
                request_digest, proof.endpoint, proof.round_id,
            )

        return WorkflowRecord(
            request_digest=request_digest,
            receipt=receipt,
            round_id=round_id,
            estimated_finalization=finalization,
            proof=proof,
        )

    async def _encode(
        self, descriptor: AttestationDescriptor, cancel: CancelToken | None
    ) -> EncodedRequest:
        attempt = 1
        while True:
            try:
                return await self._codec.encode(descriptor)
            except UpstreamError as exc:
                if attempt >= self._verifier_attempts:
                    raise
                logger.warning(
                    "verifier attempt %d/%d failed: %s; retrying in %.1fs",
                    attempt, self._verifier_attempts, exc.message,
                    self._verifier_retry_delay_s,
                )
            await cancellable_sleep(self._verifier_retry_delay_s, cancel, sleep_fn=self._sleep_fn)
            attempt += 1
