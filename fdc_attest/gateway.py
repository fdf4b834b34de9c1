"""
Submission gateway — put an encoded request on-chain and wait for it.

Composes the HubClient network boundary with the funding check, the
confirmation deadline, and the block-timestamp lookup that round
computation depends on.

    submit()              funds check → send → await_confirmation()
    await_confirmation()  poll receipt until mined, raced against a deadline

Submission is NOT idempotent. After a ConfirmationTimeoutError the
transaction may still be mined; callers should re-check with
``await_confirmation(tx_hash, ...)`` (the hash is in the error details)
and de-duplicate by request digest before resubmitting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from fdc_attest.cancellation import CancelToken, SleepFn, cancellable_sleep
from fdc_attest.codec import EncodedRequest
from fdc_attest.errors import (
    AttestationError,
    ConfirmationTimeoutError,
    InsufficientFundsError,
    RejectedError,
    TransportError,
    ValidationError,
)
from fdc_attest.hub import HubClient, HubReceipt

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_TIMEOUT_S = 180.0
DEFAULT_POLL_INTERVAL_S = 2.0


@dataclass(frozen=True)
class SubmissionReceipt:
    """Confirmed on-chain submission.

    Attributes:
        request_digest: Keccak digest of the encoded request (dedup key).
        tx_hash: Hash of the confirming transaction.
        block_timestamp: Timestamp of the including block. The only
            legitimate input to round computation.
        confirmed_block_height: Number of the including block.
    """

    request_digest: str
    tx_hash: str
    block_timestamp: int
    confirmed_block_height: int


@dataclass(frozen=True)
class SubmissionParams:
    """Per-run submission settings."""

    fee_wei: int
    gas_limit: int
    confirmation_timeout_s: float = DEFAULT_CONFIRMATION_TIMEOUT_S

    def __post_init__(self) -> None:
        if self.fee_wei < 0:
            raise ValidationError(f"fee_wei must be >= 0, got {self.fee_wei}")
        if self.gas_limit <= 0:
            raise ValidationError(f"gas_limit must be > 0, got {self.gas_limit}")
        if self.confirmation_timeout_s <= 0:
            raise ValidationError(
                f"confirmation_timeout_s must be > 0, got {self.confirmation_timeout_s}"
            )


class SubmissionGateway:
    """Submits encoded requests to the hub and awaits confirmation.

    Args:
        hub: HubClient implementation.
        poll_interval_s: Delay between receipt polls.
        sleep_fn: Injectable sleep (tests pass a fake).
        monotonic_fn: Injectable monotonic clock for the deadline.
    """

    def __init__(
        self,
        hub: HubClient,
        *,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        sleep_fn: SleepFn = asyncio.sleep,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._hub = hub
        self._poll_interval_s = poll_interval_s
        self._sleep_fn = sleep_fn
        self._monotonic_fn = monotonic_fn

    async def submit(
        self,
        encoded_request: EncodedRequest,
        fee_wei: int,
        gas_limit: int,
        *,
        confirmation_timeout_s: float = DEFAULT_CONFIRMATION_TIMEOUT_S,
        cancel: CancelToken | None = None,
    ) -> SubmissionReceipt:
        """Submit ``encoded_request`` with ``fee_wei`` and wait for inclusion.

        Raises:
            InsufficientFundsError: Balance < fee + gas_limit * gas_price.
            RejectedError: The hub reverted (preflight or mined status 0).
            ConfirmationTimeoutError: Not mined within the deadline.
            WorkflowCancelledError: ``cancel`` fired while waiting.
        """
        params = SubmissionParams(fee_wei, gas_limit, confirmation_timeout_s)
        request_digest = encoded_request.digest()

        balance = await self._hub.get_balance()
        gas_price = await self._hub.get_gas_price()
        required = params.fee_wei + params.gas_limit * gas_price
        if balance < required:
            raise InsufficientFundsError(
                f"balance {balance} wei cannot cover fee + gas ({required} wei)",
                details={
                    "sender": self._hub.sender_address,
                    "balance_wei": balance,
                    "required_wei": required,
                    "fee_wei": params.fee_wei,
                    "gas_limit": params.gas_limit,
                    "gas_price_wei": gas_price,
                },
            )

        if cancel is not None:
            cancel.raise_if_cancelled()

        logger.info(
            "submitting request %s from %s (fee=%d wei, gas_limit=%d)",
            request_digest, self._hub.sender_address, params.fee_wei, params.gas_limit,
        )
        try:
            tx_hash = await self._hub.send_request(
                encoded_request.to_bytes(), params.fee_wei, params.gas_limit
            )
        except AttestationError as exc:
            exc.details.setdefault("request_digest", request_digest)
            raise
        logger.info("transaction sent: %s", tx_hash)

        return await self.await_confirmation(
            tx_hash,
            request_digest,
            confirmation_timeout_s=params.confirmation_timeout_s,
            cancel=cancel,
        )

    async def await_confirmation(
        self,
        tx_hash: str,
        request_digest: str,
        *,
        confirmation_timeout_s: float = DEFAULT_CONFIRMATION_TIMEOUT_S,
        cancel: CancelToken | None = None,
    ) -> SubmissionReceipt:
        """Wait until ``tx_hash`` is mined, then read its block timestamp.

        Transient RPC failures while polling are logged and retried until
        the deadline. Every error raised here carries ``tx_hash`` and
        ``request_digest`` in its details.

        Raises:
            RejectedError: Mined with status 0.
            ConfirmationTimeoutError: Not mined within the deadline.
        """
        try:
            return await self._confirm(tx_hash, request_digest, confirmation_timeout_s, cancel)
        except AttestationError as exc:
            exc.details.setdefault("tx_hash", tx_hash)
            exc.details.setdefault("request_digest", request_digest)
            raise

    async def _confirm(
        self,
        tx_hash: str,
        request_digest: str,
        confirmation_timeout_s: float,
        cancel: CancelToken | None,
    ) -> SubmissionReceipt:
        deadline = self._monotonic_fn() + confirmation_timeout_s
        timeout_error = ConfirmationTimeoutError(
            f"transaction not confirmed within {confirmation_timeout_s}s",
            details={
                "tx_hash": tx_hash,
                "request_digest": request_digest,
                "timeout_s": confirmation_timeout_s,
            },
        )

        receipt: HubReceipt | None = None
        block_timestamp: int | None = None
        while True:
            remaining = deadline - self._monotonic_fn()
            if remaining <= 0:
                raise timeout_error
            try:
                # A hung RPC call must not outlive the deadline either.
                if receipt is None:
                    receipt = await asyncio.wait_for(self._hub.get_receipt(tx_hash), remaining)
                if receipt is not None:
                    if not receipt.succeeded:
                        raise RejectedError(
                            "hub transaction reverted",
                            details={"tx_hash": tx_hash, "block_number": receipt.block_number},
                        )
                    block_timestamp = await asyncio.wait_for(
                        self._hub.get_block_timestamp(receipt.block_number), remaining
                    )
                    break
            except asyncio.TimeoutError as exc:
                raise timeout_error from exc
            except TransportError as exc:
                logger.warning("polling %s failed, retrying: %s", tx_hash, exc.message)

            remaining = deadline - self._monotonic_fn()
            if remaining <= 0:
                raise timeout_error
            await cancellable_sleep(
                min(self._poll_interval_s, remaining), cancel, sleep_fn=self._sleep_fn
            )

        logger.info(
            "transaction %s confirmed in block %d (timestamp %d)",
            tx_hash, receipt.block_number, block_timestamp,
        )
        return SubmissionReceipt(
            request_digest=request_digest,
            tx_hash=tx_hash,
            block_timestamp=block_timestamp,
            confirmed_block_height=receipt.block_number,
        )
