"""
Request codec — descriptor to ABI-encoded attestation request.

The client never fabricates the ABI encoding itself. It pads the two tags
into their fixed 32-byte slots, serializes the body according to the
attestation type, and asks a verifier service for the authoritative
``abiEncodedRequest``.

Tag encoding:
    "0x" + hex(utf8(tag)) right-padded with "0" to 64 hex chars.
    Tags longer than 32 UTF-8 bytes do not fit the slot → ValidationError.

Attestation-type strategies (AttestationTypeCodec):
    Each type supplies the verifier path for a given source tag and a
    body serializer that validates and normalizes the request body.
    EVMTransaction and JsonApi ship built in; anything else passes the
    body through unchanged with the type tag as the path.

Verifier exchange:
    POST {verifier_base}/{path}/prepareRequest
    {"attestationType": <hex>, "sourceId": <hex>, "requestBody": {...}}
    → {"status": "VALID", "abiEncodedRequest": "0x..."}

No retries here. UpstreamError is retried by the caller if at all.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from web3 import Web3

from fdc_attest.errors import TransportError, UpstreamError, ValidationError
from fdc_attest.transport import HttpxTransport, JsonTransport, join_url

logger = logging.getLogger(__name__)

TAG_SLOT_BYTES = 32
VERIFIER_STATUS_VALID = "VALID"

_HEX_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2})+$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


# =========================================================================
# Data types
# =========================================================================


@dataclass(frozen=True)
class AttestationDescriptor:
    """What to attest: type tag, source tag, and a typed request body.

    The body is copied into a read-only mapping on construction, so a
    descriptor cannot change after it is built.
    """

    type_tag: str
    source_tag: str
    body: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "body", MappingProxyType(dict(self.body)))


@dataclass(frozen=True)
class EncodedRequest:
    """Opaque ABI-encoded request as returned by the verifier.

    Never re-derived after creation; only passed through to the hub
    contract and the data-availability layer.
    """

    hex: str

    def __post_init__(self) -> None:
        if not isinstance(self.hex, str) or not _HEX_RE.match(self.hex):
            preview = self.hex[:20] if isinstance(self.hex, str) else type(self.hex).__name__
            raise ValidationError(
                "encoded request must be 0x-prefixed, non-empty, even-length hex",
                details={"preview": preview},
            )

    def to_bytes(self) -> bytes:
        return bytes.fromhex(self.hex[2:])

    def digest(self) -> str:
        """Keccak-256 of the request bytes, 0x-prefixed (the request digest)."""
        return Web3.to_hex(Web3.keccak(self.to_bytes()))

    def preview(self, length: int = 50) -> str:
        """Truncated form for logs."""
        if len(self.hex) <= length:
            return self.hex
        return self.hex[:length] + "..."


# =========================================================================
# Tag encoding
# =========================================================================


def encode_tag(tag: str) -> str:
    """Encode a type/source tag into its 32-byte hex slot.

    Raises:
        ValidationError: If the tag is empty or exceeds 32 UTF-8 bytes.
    """
    if not tag:
        raise ValidationError("tag must be non-empty")
    raw = tag.encode("utf-8")
    if len(raw) > TAG_SLOT_BYTES:
        raise ValidationError(
            f"tag {tag!r} is {len(raw)} UTF-8 bytes, slot holds {TAG_SLOT_BYTES}",
            details={"tag": tag, "length": len(raw)},
        )
    return "0x" + raw.hex().ljust(TAG_SLOT_BYTES * 2, "0")


# =========================================================================
# Attestation-type strategies
# =========================================================================

BodySerializer = Callable[[Mapping[str, Any]], dict[str, Any]]
PathResolver = Callable[[str], str]


@dataclass(frozen=True)
class AttestationTypeCodec:
    """How one attestation type is addressed and serialized.

    Attributes:
        type_tag: Attestation type name (e.g. "EVMTransaction").
        resolve_path: Source tag → verifier path (without /prepareRequest).
        serialize_body: Validates and normalizes the request body.
    """

    type_tag: str
    resolve_path: PathResolver
    serialize_body: BodySerializer


# Source tag → verifier chain segment. Test networks share their mainnet path.
_EVM_CHAIN_PATHS: dict[str, str] = {
    "eth": "eth",
    "flr": "flr",
    "sgb": "sgb",
    "btc": "btc",
    "doge": "doge",
    "xrp": "xrp",
}


def _evm_path(source_tag: str) -> str:
    key = source_tag.lower().removeprefix("test")
    chain = _EVM_CHAIN_PATHS.get(key)
    if chain is None:
        raise ValidationError(
            f"no verifier path known for source {source_tag!r}",
            details={"source_tag": source_tag, "known": sorted(_EVM_CHAIN_PATHS)},
        )
    return f"verifier/{chain}/EVMTransaction"


def _serialize_evm_transaction(body: Mapping[str, Any]) -> dict[str, Any]:
    tx_hash = body.get("transactionHash")
    if not isinstance(tx_hash, str) or not _TX_HASH_RE.match(tx_hash):
        raise ValidationError(
            "EVMTransaction body requires transactionHash as 0x + 64 hex chars",
            details={"transactionHash": tx_hash},
        )

    confirmations = body.get("requiredConfirmations", "1")
    try:
        confirmations_int = int(confirmations)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"requiredConfirmations must be an integer, got {confirmations!r}"
        ) from exc
    if confirmations_int < 0:
        raise ValidationError(f"requiredConfirmations must be >= 0, got {confirmations_int}")

    log_indices = list(body.get("logIndices", []))
    if not all(isinstance(i, int) and i >= 0 for i in log_indices):
        raise ValidationError("logIndices must be non-negative integers")

    return {
        "transactionHash": tx_hash,
        "requiredConfirmations": str(confirmations_int),
        "provideInput": bool(body.get("provideInput", True)),
        "listEvents": bool(body.get("listEvents", True)),
        "logIndices": log_indices,
    }


def _serialize_json_api(body: Mapping[str, Any]) -> dict[str, Any]:
    missing = [k for k in ("url", "postprocessJq", "abi_signature") if not body.get(k)]
    if missing:
        raise ValidationError(
            f"JsonApi body missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )

    abi_signature = body["abi_signature"]
    if isinstance(abi_signature, Mapping):
        abi_signature = json.dumps(dict(abi_signature), separators=(",", ":"))
    elif isinstance(abi_signature, str):
        try:
            json.loads(abi_signature)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"abi_signature is not valid JSON: {exc}") from exc
    else:
        raise ValidationError("abi_signature must be a JSON string or mapping")

    return {
        "url": str(body["url"]),
        "postprocessJq": str(body["postprocessJq"]),
        "abi_signature": abi_signature,
    }


EVM_TRANSACTION = AttestationTypeCodec(
    type_tag="EVMTransaction",
    resolve_path=_evm_path,
    serialize_body=_serialize_evm_transaction,
)

JSON_API = AttestationTypeCodec(
    type_tag="IJsonApi",
    resolve_path=lambda _source: "JsonApi",
    serialize_body=_serialize_json_api,
)

DEFAULT_CODECS: dict[str, AttestationTypeCodec] = {
    "EVMTransaction": EVM_TRANSACTION,
    "IJsonApi": JSON_API,
    "JsonApi": JSON_API,
}


def passthrough_codec(type_tag: str) -> AttestationTypeCodec:
    """Codec for types without a registered strategy: body sent as-is."""
    return AttestationTypeCodec(
        type_tag=type_tag,
        resolve_path=lambda _source: type_tag,
        serialize_body=lambda body: dict(body),
    )


# =========================================================================
# RequestCodec
# =========================================================================


class RequestCodec:
    """Obtains ABI-encoded requests from a verifier service.

    Args:
        verifier_base_url: Base URL of the verifier service.
        api_key: Verifier API key, sent as ``X-API-KEY``. Never logged.
        transport: Injectable JSON transport. Defaults to HttpxTransport.
        codecs: Attestation-type strategies keyed by type tag. Merged
            over DEFAULT_CODECS.
        base_urls: Optional per-type verifier base URL overrides
            (JsonApi requests go to a separate JQ verifier).
        api_keys: Optional per-type API key overrides.
    """

    def __init__(
        self,
        verifier_base_url: str,
        api_key: str = "",
        *,
        transport: JsonTransport | None = None,
        codecs: Mapping[str, AttestationTypeCodec] | None = None,
        base_urls: Mapping[str, str] | None = None,
        api_keys: Mapping[str, str] | None = None,
    ) -> None:
        self._verifier_base_url = verifier_base_url
        self._api_key = api_key
        self._transport = transport or HttpxTransport()
        self._codecs: dict[str, AttestationTypeCodec] = {**DEFAULT_CODECS, **(codecs or {})}
        self._base_urls = dict(base_urls or {})
        self._api_keys = dict(api_keys or {})

    def codec_for(self, type_tag: str) -> AttestationTypeCodec:
        return self._codecs.get(type_tag) or passthrough_codec(type_tag)

    def build_request(self, descriptor: AttestationDescriptor) -> tuple[str, dict[str, Any]]:
        """Build the verifier URL and payload without any I/O.

        Raises:
            ValidationError: On oversize tags or an invalid body.
        """
        attestation_type = encode_tag(descriptor.type_tag)
        source_id = encode_tag(descriptor.source_tag)
        codec = self.codec_for(descriptor.type_tag)

        base = self._base_urls.get(descriptor.type_tag, self._verifier_base_url)
        url = join_url(base, f"{codec.resolve_path(descriptor.source_tag)}/prepareRequest")
        payload = {
            "attestationType": attestation_type,
            "sourceId": source_id,
            "requestBody": codec.serialize_body(descriptor.body),
        }
        return url, payload

    async def encode(self, descriptor: AttestationDescriptor) -> EncodedRequest:
        """Encode a descriptor via the verifier service.

        Raises:
            ValidationError: Before any I/O, on malformed descriptor input.
            UpstreamError: Verifier unreachable, non-200, or non-VALID.
        """
        url, payload = self.build_request(descriptor)
        api_key = self._api_keys.get(descriptor.type_tag, self._api_key)
        headers = {"X-API-KEY": api_key} if api_key else {}

        logger.info(
            "preparing %s request (source=%s) via %s",
            descriptor.type_tag, descriptor.source_tag, url,
        )

        try:
            response = await self._transport.post_json(url, payload, headers)
        except TransportError as exc:
            raise UpstreamError(
                f"verifier request failed: {exc.message}",
                details={"url": url, "status_code": exc.status_code},
            ) from exc

        if not isinstance(response, dict):
            raise UpstreamError(
                "verifier response was not a JSON object",
                details={"url": url, "type": type(response).__name__},
            )

        status = response.get("status")
        if status != VERIFIER_STATUS_VALID:
            raise UpstreamError(
                f"verifier returned status {status!r}",
                details={"url": url, "status": status},
            )

        encoded_hex = response.get("abiEncodedRequest")
        if not encoded_hex:
            raise UpstreamError(
                "verifier response missing abiEncodedRequest",
                details={"url": url},
            )

        try:
            encoded = EncodedRequest(encoded_hex)
        except ValidationError as exc:
            raise UpstreamError(
                "verifier returned a malformed abiEncodedRequest",
                details={"url": url, **exc.details},
            ) from exc

        logger.info("request prepared: %s", encoded.preview())
        return encoded
