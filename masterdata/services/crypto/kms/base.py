from __future__ import annotations

from typing import Protocol


class KmsProvider(Protocol):
    provider: str

    def build_key_ref(self, *, tenant_id: str, key_alias: str, key_version: int) -> str:
        ...

    def data_key(self, *, tenant_id: str, key_ref: str) -> bytes:
        ...
