"""Payment rail clients.

The engine only needs ``pay(from_wallet, to_wallet, amount) -> PaymentReceipt``. Wallet
custody and chain details live behind the HTTP service.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Protocol

import httpx
from loguru import logger

from mercator.core.config import PaymentConfig
from mercator.core.exceptions import PaymentError
from mercator.domain.contracts import PaymentReceipt


class PaymentGateway(Protocol):
    async def pay(self, from_wallet: str, to_wallet: str, amount: Decimal) -> PaymentReceipt: ...


class LedgerOnlyGateway:
    """Used when no rail is configured: every transfer stays ledger-side and pending."""

    async def pay(self, from_wallet: str, to_wallet: str, amount: Decimal) -> PaymentReceipt:
        return PaymentReceipt(settled=False, error="payment rail disabled")


class HttpPaymentGateway:
    """POSTs transfers to the payment service with bounded retries and exponential backoff."""

    def __init__(self, config: PaymentConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or PaymentConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_seconds))
        return self._client

    async def pay(self, from_wallet: str, to_wallet: str, amount: Decimal) -> PaymentReceipt:
        payload = {"from_wallet": from_wallet, "to_wallet": to_wallet, "amount": str(amount)}
        attempts = self.config.retries + 1
        last_error = ""

        for attempt in range(1, attempts + 1):
            try:
                return await self._post(payload)
            except (httpx.HTTPError, PaymentError) as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(f"[component:payments] pay attempt {attempt}/{attempts} failed: {last_error}")
                if isinstance(e, PaymentError) or attempt == attempts:
                    break
                await asyncio.sleep(self.config.backoff_seconds * (2 ** (attempt - 1)))

        return PaymentReceipt(settled=False, error=last_error)

    async def _post(self, payload: dict) -> PaymentReceipt:
        response = await self.client.post(f"{self.base_url}/pay", json=payload)
        if response.status_code >= 500 or response.status_code == 429:
            # Transient, worth retrying
            response.raise_for_status()
        if response.status_code >= 400:
            raise PaymentError(f"Payment rejected ({response.status_code}): {response.text[:200]}")

        data = response.json()
        return PaymentReceipt(settled=bool(data.get("settled")), tx_hash=data.get("tx_hash") or data.get("txHash"))

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
