"""Closed set of provider adapters resolved by name."""

from typing import Iterable

import httpx

from digipay.common.config import CommonSettings
from digipay.services.provider_adapter.base import ProviderAdapter
from digipay.services.provider_adapter.ipaymu import IpaymuAdapter
from digipay.services.provider_adapter.pakasir import PakasirAdapter
from digipay.services.provider_adapter.paypal import PayPalAdapter
from digipay.services.provider_adapter.tokopay import TokopayAdapter


class UnknownProviderError(LookupError):
    """No adapter is registered under the requested name."""


class ProviderRegistry:
    def __init__(self, adapters: Iterable[ProviderAdapter]) -> None:
        self._adapters = {adapter.name: adapter for adapter in adapters}

    def get(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get((name or "").lower())
        if adapter is None:
            raise UnknownProviderError(f"unsupported payment provider: {name}")
        return adapter

    def __contains__(self, name: str) -> bool:
        return (name or "").lower() in self._adapters

    def names(self) -> list[str]:
        return sorted(self._adapters)


def build_registry(source: CommonSettings, client: httpx.AsyncClient | None = None) -> ProviderRegistry:
    """Instantiate every supported adapter from settings."""

    common = {"client": client, "timeout": source.provider_timeout_seconds}
    return ProviderRegistry(
        [
            IpaymuAdapter(source.ipaymu_api_key, source.ipaymu_va, source.ipaymu_api_url, **common),
            PakasirAdapter(source.pakasir_api_key, source.pakasir_project, source.pakasir_api_url, **common),
            TokopayAdapter(source.tokopay_merchant_id, source.tokopay_secret, source.tokopay_api_url, **common),
            PayPalAdapter(
                source.paypal_client_id,
                source.paypal_secret,
                mode=source.paypal_mode,
                webhook_id=source.paypal_webhook_id,
                brand_name=source.site_name,
                **common,
            ),
        ]
    )
