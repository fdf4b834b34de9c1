"""
Data-availability layer client — one proof query against one replica.

Translates DA-layer responses into ProbeResult values. Uses an injectable
transport (JsonTransport) so HTTP can be swapped for test fakes without
changing parsing or classification.

No retry loops. No sleeping. The retriever owns retry/backoff; this module
only answers "what did this replica say for (round, request) just now?".

Response-shape adapters:
    Deployed DA versions disagree on the request field naming and the
    endpoint path. Each ProofQueryShape pairs a path with a body builder;
    shapes are tried in order per endpoint. A shape is abandoned for the
    next one only when the server rejects the *shape* (HTTP 400, 404,
    405, 422). Any other answer, including an empty proof, is final for
    that endpoint.

    v1          api/v1/fdc/proof-by-request-round-raw  {votingRoundId, requestBytes}
    v1-roundId  api/v1/fdc/proof-by-request-round-raw  {roundId, requestBytes}
    v0          api/v0/fdc/get-proof-round-id-bytes    {votingRoundId, requestBytes}

Classification:
    PROOF_FOUND      non-empty proof list AND a response payload
    EMPTY_PROOF      accepted shape, proof empty or payload missing
                     (not yet processed / pruned / nonexistent — the
                     response alone does not say which)
    RATE_LIMITED     HTTP 429
    TRANSPORT_ERROR  connection, timeout, 5xx, non-JSON, or no shape accepted
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from fdc_attest.codec import EncodedRequest
from fdc_attest.errors import RateLimitedError, SyntheticProofError, TransportError
from fdc_attest.transport import HttpxTransport, JsonTransport, join_url

logger = logging.getLogger(__name__)

DEFAULT_DA_TIMEOUT_S = 10.0

# Statuses meaning "this server does not understand this request shape".
SHAPE_REJECTION_STATUSES = frozenset({400, 404, 405, 422})


# =========================================================================
# Result types
# =========================================================================


class ProbeOutcome(StrEnum):
    PROOF_FOUND = "PROOF_FOUND"
    EMPTY_PROOF = "EMPTY_PROOF"
    RATE_LIMITED = "RATE_LIMITED"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"


@dataclass(frozen=True)
class ProofResult:
    """Merkle proof and response payload for one attestation.

    Attributes:
        merkle_proof_leaves: Ordered proof hashes.
        response_payload_hex: ABI-encoded attestation response, if present.
        is_synthetic: True for a non-authoritative placeholder issued after
            retrieval exhaustion. Must never reach a production consumer.
        round_id: Round the proof was found in (may differ from the
            submission round after adjacent-round search).
        endpoint: DA base URL that served the proof. None if synthetic.
    """

    merkle_proof_leaves: tuple[str, ...]
    response_payload_hex: str | None
    is_synthetic: bool
    round_id: int
    endpoint: str | None = None

    def require_authoritative(self) -> ProofResult:
        """Return self, or raise if this is a synthetic placeholder.

        Raises:
            SyntheticProofError: If ``is_synthetic`` is set.
        """
        if self.is_synthetic:
            raise SyntheticProofError(
                "synthetic proof must not be forwarded to a production consumer",
                details={"round_id": self.round_id},
            )
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "proof": list(self.merkle_proof_leaves),
            "response_hex": self.response_payload_hex,
            "is_synthetic": self.is_synthetic,
            "round_id": self.round_id,
        }


@dataclass(frozen=True)
class ProbeResult:
    """Classified answer of one replica for one (round, request) query.

    Attributes:
        outcome: Classification of the response.
        endpoint: DA base URL probed.
        round_id: Round queried.
        proof: Populated only when outcome is PROOF_FOUND.
        shape: Name of the shape that produced the answer, if any.
        retry_after_s: Server Retry-After hint on RATE_LIMITED.
        detail: Human-readable diagnostics.
    """

    outcome: ProbeOutcome
    endpoint: str
    round_id: int
    proof: ProofResult | None = None
    shape: str | None = None
    retry_after_s: float | None = None
    detail: str | None = None


# =========================================================================
# Response-shape adapters
# =========================================================================


@dataclass(frozen=True)
class ProofQueryShape:
    """One known request shape of the DA proof endpoint."""

    name: str
    path: str
    build_body: Callable[[int, str], dict[str, Any]]


V1_SHAPE = ProofQueryShape(
    name="v1",
    path="api/v1/fdc/proof-by-request-round-raw",
    build_body=lambda round_id, request_hex: {
        "votingRoundId": round_id,
        "requestBytes": request_hex,
    },
)

V1_ROUND_ID_SHAPE = ProofQueryShape(
    name="v1-roundId",
    path="api/v1/fdc/proof-by-request-round-raw",
    build_body=lambda round_id, request_hex: {
        "roundId": round_id,
        "requestBytes": request_hex,
    },
)

V0_SHAPE = ProofQueryShape(
    name="v0",
    path="api/v0/fdc/get-proof-round-id-bytes",
    build_body=lambda round_id, request_hex: {
        "votingRoundId": round_id,
        "requestBytes": request_hex,
    },
)

DEFAULT_SHAPES: tuple[ProofQueryShape, ...] = (V1_SHAPE, V1_ROUND_ID_SHAPE, V0_SHAPE)


# =========================================================================
# Response parsing (pure functions, no I/O)
# =========================================================================

_PROOF_KEYS = ("proof", "merkleProof")
_PAYLOAD_KEYS = ("response_hex", "responseHex")


def _first_present(body: dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in body and body[key] is not None:
            return body[key]
    return None


def parse_proof_response(
    response: Any,
    *,
    endpoint: str,
    round_id: int,
) -> ProofResult | None:
    """Extract a ProofResult from a DA response body, or None if empty.

    Accepts the proof under ``proof``/``merkleProof`` and the payload under
    ``response_hex``/``responseHex``, either at top level or nested under
    ``data``.
    """
    if not isinstance(response, dict):
        return None

    candidates = [response]
    if isinstance(response.get("data"), dict):
        candidates.append(response["data"])

    for body in candidates:
        proof = _first_present(body, _PROOF_KEYS)
        payload = _first_present(body, _PAYLOAD_KEYS)
        if not isinstance(proof, list) or not proof:
            continue
        if not isinstance(payload, str) or not payload:
            continue
        return ProofResult(
            merkle_proof_leaves=tuple(str(leaf) for leaf in proof),
            response_payload_hex=payload,
            is_synthetic=False,
            round_id=round_id,
            endpoint=endpoint,
        )
    return None


# =========================================================================
# Client
# =========================================================================


class DataAvailabilityClient:
    """Queries DA replicas for proofs, one endpoint at a time.

    Args:
        transport: Injectable JSON transport. Defaults to HttpxTransport
            with a 10s timeout.
        shapes: Ordered request shapes to try per endpoint.
        api_key: Optional DA API key, sent as ``X-API-KEY``.
    """

    def __init__(
        self,
        transport: JsonTransport | None = None,
        *,
        shapes: Sequence[ProofQueryShape] = DEFAULT_SHAPES,
        api_key: str = "",
    ) -> None:
        if not shapes:
            raise ValueError("at least one proof query shape is required")
        self._transport = transport or HttpxTransport(timeout=DEFAULT_DA_TIMEOUT_S)
        self._shapes = tuple(shapes)
        self._headers = {"X-API-KEY": api_key} if api_key else {}

    @property
    def shapes(self) -> tuple[ProofQueryShape, ...]:
        return self._shapes

    async def probe(
        self,
        endpoint: str,
        round_id: int,
        encoded_request: EncodedRequest,
    ) -> ProbeResult:
        """Ask one replica for the proof of (round_id, encoded_request).

        Never raises for expected DA failures; those are classified into
        the returned ProbeResult.
        """
        rejected: list[str] = []

        for shape in self._shapes:
            url = join_url(endpoint, shape.path)
            body = shape.build_body(round_id, encoded_request.hex)
            try:
                response = await self._transport.post_json(url, body, self._headers)
            except RateLimitedError as exc:
                return ProbeResult(
                    outcome=ProbeOutcome.RATE_LIMITED,
                    endpoint=endpoint,
                    round_id=round_id,
                    shape=shape.name,
                    retry_after_s=exc.retry_after_s,
                    detail=exc.message,
                )
            except TransportError as exc:
                if exc.status_code in SHAPE_REJECTION_STATUSES:
                    logger.debug(
                        "%s rejected shape %s (HTTP %s)", endpoint, shape.name, exc.status_code
                    )
                    rejected.append(f"{shape.name}:{exc.status_code}")
                    continue
                return ProbeResult(
                    outcome=ProbeOutcome.TRANSPORT_ERROR,
                    endpoint=endpoint,
                    round_id=round_id,
                    shape=shape.name,
                    detail=exc.message,
                )

            proof = parse_proof_response(response, endpoint=endpoint, round_id=round_id)
            if proof is None:
                return ProbeResult(
                    outcome=ProbeOutcome.EMPTY_PROOF,
                    endpoint=endpoint,
                    round_id=round_id,
                    shape=shape.name,
                    detail="empty proof or missing response payload",
                )
            return ProbeResult(
                outcome=ProbeOutcome.PROOF_FOUND,
                endpoint=endpoint,
                round_id=round_id,
                proof=proof,
                shape=shape.name,
            )

        return ProbeResult(
            outcome=ProbeOutcome.TRANSPORT_ERROR,
            endpoint=endpoint,
            round_id=round_id,
            detail=f"no request shape accepted ({', '.join(rejected)})",
        )
