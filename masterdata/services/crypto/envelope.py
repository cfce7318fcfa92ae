from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from masterdata.core.errors import FieldCryptoError, FieldIntegrityError
from masterdata.services.crypto.utils import (
    b64decode_str,
    b64encode_bytes,
    digests_match,
    hmac_sha256,
    sha256_hex,
    stable_json,
)


ALGORITHM_NONE = "none"
ALGORITHM_AES_256_GCM = "aes-256-gcm"
ALGORITHM_CHACHA20_POLY1305 = "chacha20-poly1305"

_NONCE_BYTES = 12


class Classification(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"
    TOP_SECRET = "top_secret"


@dataclass(frozen=True)
class CipherPolicy:
    algorithm: str
    per_field_key: bool


# Fixed classification policy; callers cannot pick an algorithm.
CLASSIFICATION_POLICY: dict[Classification, CipherPolicy] = {
    Classification.PUBLIC: CipherPolicy(algorithm=ALGORITHM_NONE, per_field_key=False),
    Classification.INTERNAL: CipherPolicy(algorithm=ALGORITHM_AES_256_GCM, per_field_key=False),
    Classification.CONFIDENTIAL: CipherPolicy(algorithm=ALGORITHM_AES_256_GCM, per_field_key=False),
    Classification.RESTRICTED: CipherPolicy(algorithm=ALGORITHM_AES_256_GCM, per_field_key=True),
    Classification.TOP_SECRET: CipherPolicy(algorithm=ALGORITHM_CHACHA20_POLY1305, per_field_key=True),
}


@dataclass(frozen=True)
class FieldContext:
    tenant_id: str
    table: str
    column: str
    record_id: str

    def aad(self) -> bytes:
        # Associated data binds the ciphertext to exactly one field occurrence.
        return stable_json(
            {
                "tenant_id": self.tenant_id,
                "table": self.table,
                "column": self.column,
                "record_id": self.record_id,
            }
        )


@dataclass(frozen=True)
class FieldEnvelope:
    classification: str
    algorithm: str
    key_id: str | None
    nonce: str
    ciphertext: str
    integrity_hash: str

    @property
    def encrypted(self) -> bool:
        return self.algorithm != ALGORITHM_NONE

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "FieldEnvelope":
        try:
            return cls(
                classification=str(payload["classification"]),
                algorithm=str(payload["algorithm"]),
                key_id=payload.get("key_id"),
                nonce=str(payload.get("nonce") or ""),
                ciphertext=str(payload["ciphertext"]),
                integrity_hash=str(payload["integrity_hash"]),
            )
        except KeyError as exc:
            raise FieldIntegrityError(f"envelope is missing {exc.args[0]}") from exc


def resolve_classification(value: Classification | str) -> Classification:
    try:
        return Classification(value)
    except ValueError as exc:
        raise FieldCryptoError(f"unknown classification: {value}") from exc


def derive_field_key(key: bytes, context: FieldContext) -> bytes:
    # Restricted and top-secret fields never share a key with another field occurrence.
    return hmac_sha256(key, b"field:" + context.aad())


def _integrity_hash(*, algorithm: str, classification: str, nonce: bytes, ciphertext: bytes, aad: bytes) -> str:
    header = f"{algorithm}|{classification}|".encode("utf-8")
    return sha256_hex(header + nonce + ciphertext + aad)


def _cipher(algorithm: str, key: bytes) -> AESGCM | ChaCha20Poly1305:
    if algorithm == ALGORITHM_AES_256_GCM:
        return AESGCM(key)
    if algorithm == ALGORITHM_CHACHA20_POLY1305:
        return ChaCha20Poly1305(key)
    raise FieldCryptoError(f"unsupported algorithm: {algorithm}")


def encode_value(value: Any) -> bytes:
    try:
        return stable_json({"v": value})
    except TypeError as exc:
        raise FieldCryptoError("field value is not JSON serializable") from exc


def decode_value(plaintext: bytes, *, field: str | None = None) -> Any:
    try:
        return json.loads(plaintext.decode("utf-8"))["v"]
    except (ValueError, KeyError, TypeError) as exc:
        raise FieldIntegrityError("field value is not a valid encoding", field=field) from exc


def _decode_part(value: str, *, part: str, field: str) -> bytes:
    # binascii.Error and non-ascii input both surface as ValueError.
    try:
        return b64decode_str(value)
    except ValueError as exc:
        raise FieldIntegrityError(f"envelope {part} is not valid base64", field=field) from exc


def seal_field(
    value: Any,
    *,
    classification: Classification | str,
    context: FieldContext,
    key_id: str | None,
    key: bytes | None,
) -> FieldEnvelope:
    level = resolve_classification(classification)
    policy = CLASSIFICATION_POLICY[level]
    plaintext = encode_value(value)
    aad = context.aad()
    if policy.algorithm == ALGORITHM_NONE:
        return FieldEnvelope(
            classification=level.value,
            algorithm=ALGORITHM_NONE,
            key_id=None,
            nonce="",
            ciphertext=b64encode_bytes(plaintext),
            integrity_hash=_integrity_hash(
                algorithm=ALGORITHM_NONE,
                classification=level.value,
                nonce=b"",
                ciphertext=plaintext,
                aad=aad,
            ),
        )
    if key is None or key_id is None:
        raise FieldCryptoError("encryption key is required", field=context.column)
    if policy.per_field_key:
        key = derive_field_key(key, context)
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext = _cipher(policy.algorithm, key).encrypt(nonce, plaintext, aad)
    return FieldEnvelope(
        classification=level.value,
        algorithm=policy.algorithm,
        key_id=key_id,
        nonce=b64encode_bytes(nonce),
        ciphertext=b64encode_bytes(ciphertext),
        integrity_hash=_integrity_hash(
            algorithm=policy.algorithm,
            classification=level.value,
            nonce=nonce,
            ciphertext=ciphertext,
            aad=aad,
        ),
    )


def open_field(envelope: FieldEnvelope, *, context: FieldContext, key: bytes | None) -> Any:
    level = resolve_classification(envelope.classification)
    policy = CLASSIFICATION_POLICY[level]
    if envelope.algorithm != policy.algorithm:
        # Reject envelopes whose algorithm was downgraded relative to the classification.
        raise FieldIntegrityError(
            f"algorithm {envelope.algorithm} does not match {level.value} policy",
            field=context.column,
        )
    nonce = _decode_part(envelope.nonce, part="nonce", field=context.column) if envelope.nonce else b""
    ciphertext = _decode_part(envelope.ciphertext, part="ciphertext", field=context.column)
    aad = context.aad()
    expected = _integrity_hash(
        algorithm=envelope.algorithm,
        classification=envelope.classification,
        nonce=nonce,
        ciphertext=ciphertext,
        aad=aad,
    )
    try:
        intact = digests_match(expected, envelope.integrity_hash)
    except (TypeError, ValueError):
        intact = False
    if not intact:
        raise FieldIntegrityError("integrity hash mismatch", field=context.column)
    if envelope.algorithm == ALGORITHM_NONE:
        return decode_value(ciphertext, field=context.column)
    if key is None:
        raise FieldCryptoError("decryption key is required", field=context.column)
    if policy.per_field_key:
        key = derive_field_key(key, context)
    try:
        plaintext = _cipher(envelope.algorithm, key).decrypt(nonce, ciphertext, aad)
    except InvalidTag as exc:
        raise FieldIntegrityError("authentication tag mismatch", field=context.column) from exc
    except ValueError as exc:
        # Nonce of the wrong length for the algorithm.
        raise FieldIntegrityError("envelope nonce is malformed", field=context.column) from exc
    return decode_value(plaintext, field=context.column)
