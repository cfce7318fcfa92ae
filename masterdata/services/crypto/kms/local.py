from __future__ import annotations

import hashlib
from typing import Final

from masterdata.core.config import get_settings
from masterdata.services.crypto.utils import decode_key_material, hmac_sha256


class LocalKmsProvider:
    provider: Final[str] = "local_kms"

    def __init__(self, master_key: bytes | None = None) -> None:
        self._master_key = _ensure_32_bytes(master_key) if master_key else _load_master_key()

    def build_key_ref(self, *, tenant_id: str, key_alias: str, key_version: int) -> str:
        return f"local://{tenant_id}/{key_alias}/v{key_version}"

    def data_key(self, *, tenant_id: str, key_ref: str) -> bytes:
        # A key_ref minted for another tenant derives a different key and fails authentication.
        if not key_ref.startswith("local://"):
            raise ValueError(f"key_ref {key_ref} was not issued by the local provider")
        return _derive_key(self._master_key, tenant_id=tenant_id, key_ref=key_ref)


def _load_master_key() -> bytes:
    settings = get_settings()
    if settings.crypto_local_master_key:
        return _ensure_32_bytes(decode_key_material(settings.crypto_local_master_key))
    # Deterministic fallback for dev/test to avoid breaking local workflows.
    seed = f"{settings.app_name}-local-kms".encode("utf-8")
    return hashlib.sha256(seed).digest()


def _derive_key(master_key: bytes, *, tenant_id: str, key_ref: str) -> bytes:
    # HMAC-based derivation keeps tenant keys deterministic without persisting key material.
    return hmac_sha256(master_key, f"{tenant_id}:{key_ref}".encode("utf-8"))


def _ensure_32_bytes(value: bytes) -> bytes:
    if len(value) == 32:
        return value
    return hashlib.sha256(value).digest()
