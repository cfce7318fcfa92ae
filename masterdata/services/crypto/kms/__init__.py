"""Key providers; a tenant key row is only unwrapped by the provider that minted it."""

from __future__ import annotations

from masterdata.core.config import get_settings
from masterdata.core.errors import KeyUnavailableError
from masterdata.services.crypto.kms.base import KmsProvider
from masterdata.services.crypto.kms.local import LocalKmsProvider


PROVIDERS: dict[str, type[KmsProvider]] = {LocalKmsProvider.provider: LocalKmsProvider}


def get_kms_provider(name: str | None = None) -> KmsProvider:
    provider_name = name or get_settings().crypto_provider
    provider_cls = PROVIDERS.get(provider_name)
    if provider_cls is None:
        known = ", ".join(sorted(PROVIDERS))
        raise KeyUnavailableError(f"no key provider named {provider_name} (known: {known})")
    return provider_cls()


def unwrap_data_key(kms: KmsProvider, *, tenant_id: str, provider: str, key_ref: str) -> bytes:
    # Rows minted elsewhere stay unreadable until their provider is configured again.
    if provider != kms.provider:
        raise KeyUnavailableError(f"key {key_ref} belongs to provider {provider}, not {kms.provider}")
    try:
        return kms.data_key(tenant_id=tenant_id, key_ref=key_ref)
    except ValueError as exc:
        raise KeyUnavailableError(str(exc)) from exc
