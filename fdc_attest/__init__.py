"""
FDC attestation client.

Encodes attestation requests via a verifier, submits them to the on-chain
hub, computes the voting round from the confirmed block, and retrieves the
merkle proof from replicated data-availability layers.

Public API:

    Workflow:
        - ``WorkflowOrchestrator`` — encode → submit → round → retrieve.
        - ``ClientConfig`` — frozen configuration, ``from_env()`` via dotenv.

    Stages:
        - ``RequestCodec`` — descriptor → ``EncodedRequest`` via verifier.
        - ``SubmissionGateway`` — on-chain submission + confirmation.
        - ``ProofRetriever`` — finalization wait, polling, adjacent search.
        - ``RoundClock`` — voting-round arithmetic.

    Protocols (for dependency injection):
        - ``JsonTransport`` — HTTP boundary (verifier, DA layer).
        - ``HubClient`` — chain boundary (balance, send, receipt, block).

    Errors:
        - ``AttestationError`` and its subclasses, keyed by ``ErrorCode``.
"""

__version__ = "0.1.0"

from fdc_attest.cancellation import CancelToken, cancellable_sleep
from fdc_attest.codec import (
    AttestationDescriptor,
    AttestationTypeCodec,
    EncodedRequest,
    RequestCodec,
    encode_tag,
)
from fdc_attest.config import ClientConfig
from fdc_attest.da import (
    DataAvailabilityClient,
    ProbeOutcome,
    ProbeResult,
    ProofQueryShape,
    ProofResult,
)
from fdc_attest.errors import (
    AttestationError,
    ConfigError,
    ConfirmationTimeoutError,
    ErrorCode,
    InsufficientFundsError,
    NotFoundError,
    RateLimitedError,
    RejectedError,
    SyntheticProofError,
    TransportError,
    UpstreamError,
    ValidationError,
    WorkflowCancelledError,
)
from fdc_attest.gateway import SubmissionGateway, SubmissionParams, SubmissionReceipt
from fdc_attest.hub import HubClient, HubReceipt, Web3HubClient
from fdc_attest.orchestrator import WorkflowOrchestrator, WorkflowRecord
from fdc_attest.retriever import ProofRetriever, RetrievalPolicy, RetrievalState
from fdc_attest.rounds import RoundClock, estimated_finalization, round_id
from fdc_attest.transport import HttpxTransport, JsonTransport

__all__ = [
    "AttestationDescriptor",
    "AttestationError",
    "AttestationTypeCodec",
    "CancelToken",
    "ClientConfig",
    "ConfigError",
    "ConfirmationTimeoutError",
    "DataAvailabilityClient",
    "EncodedRequest",
    "ErrorCode",
    "HttpxTransport",
    "HubClient",
    "HubReceipt",
    "InsufficientFundsError",
    "JsonTransport",
    "NotFoundError",
    "ProbeOutcome",
    "ProbeResult",
    "ProofQueryShape",
    "ProofResult",
    "ProofRetriever",
    "RateLimitedError",
    "RejectedError",
    "RequestCodec",
    "RetrievalPolicy",
    "RetrievalState",
    "RoundClock",
    "SubmissionGateway",
    "SubmissionParams",
    "SubmissionReceipt",
    "SyntheticProofError",
    "TransportError",
    "UpstreamError",
    "ValidationError",
    "Web3HubClient",
    "WorkflowCancelledError",
    "WorkflowOrchestrator",
    "WorkflowRecord",
    "cancellable_sleep",
    "encode_tag",
    "estimated_finalization",
    "round_id",
]

