from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import httpx

from marketplace.core.config import (
    ABACATEPAY_API_KEY,
    ABACATEPAY_BASE_URL,
    PIX_EXPIRES_IN_SECONDS,
    PIX_GATEWAY,
)
from marketplace.core.database import utcnow
from marketplace.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

PIX_STATUSES = {"PENDING", "PAID", "EXPIRED"}


@dataclass
class PixCustomer:
    name: str
    tax_id: str
    email: str | None = None
    cellphone: str | None = None


@dataclass
class PixCharge:
    pix_id: str
    br_code: str
    br_code_base64: str | None
    expires_at: datetime
    raw: dict[str, Any] = field(default_factory=dict)


class PixGateway(Protocol):
    async def create_charge(
        self,
        *,
        amount_cents: int,
        reference: str,
        description: str,
        customer: PixCustomer,
        metadata: dict[str, Any] | None = None,
    ) -> PixCharge:
        ...

    async def get_status(self, pix_id: str) -> str:
        ...


def normalize_pix_status(status: str | None) -> str:
    normalized = (status or "").strip().upper()
    if normalized == "PAID":
        return "PAID"
    if normalized in {"EXPIRED", "CANCELLED", "CANCELED", "REFUNDED"}:
        return "EXPIRED"
    return "PENDING"


def _parse_expires_at(value: Any, fallback_seconds: int) -> datetime:
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
    return utcnow() + timedelta(seconds=fallback_seconds)


def _should_retry(status_code: int) -> bool:
    return status_code in (429, 500, 502, 503, 504)


def _backoff_seconds(attempt: int) -> float:
    # 0.5s, 1s, 2s... (máx 4s)
    sec = 0.5 * (2 ** max(0, attempt - 1))
    return min(sec, 4.0)


class AbacatePayGateway:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        expires_in: int = PIX_EXPIRES_IN_SECONDS,
        retries: int = 3,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else ABACATEPAY_API_KEY
        self.base_url = (base_url or ABACATEPAY_BASE_URL).rstrip("/")
        self.expires_in = expires_in
        self.retries = max(1, retries)
        self.timeout = timeout
        self._transport = transport

    async def create_charge(
        self,
        *,
        amount_cents: int,
        reference: str,
        description: str,
        customer: PixCustomer,
        metadata: dict[str, Any] | None = None,
    ) -> PixCharge:
        customer_payload = {
            "name": customer.name or "Cliente",
            "email": customer.email,
            "cellphone": customer.cellphone,
            "taxId": customer.tax_id,
        }
        payload = {
            "amount": int(amount_cents),
            "expiresIn": self.expires_in,
            "description": description[:140],
            "customer": {key: value for key, value in customer_payload.items() if value},
            "metadata": {"reference": reference, **(metadata or {})},
        }
        data = await self._request("POST", "/v1/pixQrCode/create", json=payload)
        pix_id = data.get("id")
        br_code = data.get("brCode")
        if not pix_id or not br_code:
            raise ExternalServiceError("Resposta inválida do gateway de pagamento", reference=reference)

        logger.info("PIX charge created", extra={"pix_id": pix_id})
        return PixCharge(
            pix_id=str(pix_id),
            br_code=str(br_code),
            br_code_base64=data.get("brCodeBase64"),
            expires_at=_parse_expires_at(data.get("expiresAt"), self.expires_in),
            raw=data,
        )

    async def get_status(self, pix_id: str) -> str:
        data = await self._request("GET", "/v1/pixQrCode/check", params={"id": pix_id})
        return normalize_pix_status(data.get("status"))

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        if not self.api_key:
            raise ExternalServiceError("Gateway de pagamento não configurado")

        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.retries + 1):
                try:
                    response = await client.request(method, url, headers=headers, **kwargs)
                except (httpx.TimeoutException, httpx.NetworkError) as exc:
                    if attempt < self.retries:
                        await asyncio.sleep(_backoff_seconds(attempt))
                        continue
                    logger.warning("AbacatePay request failed path=%s error=%s", path, exc)
                    raise ExternalServiceError("Gateway de pagamento indisponível") from exc

                if 200 <= response.status_code < 300:
                    break

                if _should_retry(response.status_code) and attempt < self.retries:
                    await asyncio.sleep(_backoff_seconds(attempt))
                    continue

                logger.warning(
                    "AbacatePay error path=%s status=%s body=%s",
                    path,
                    response.status_code,
                    response.text[:500],
                )
                raise ExternalServiceError(
                    "Erro no gateway de pagamento",
                    status_code=response.status_code,
                )

        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalServiceError("Resposta inválida do gateway de pagamento") from exc

        if body.get("error"):
            logger.warning("AbacatePay returned error path=%s error=%s", path, body.get("error"))
            raise ExternalServiceError("Erro no gateway de pagamento")
        return body.get("data") or {}


class MockPixGateway:
    """Gateway em memória para desenvolvimento e testes.

    As cobranças nascem PENDING; ``mark_paid``/``mark_expired`` simulam o
    que o banco informaria. ``fail_next`` faz as próximas chamadas falharem.
    """

    def __init__(self, *, expires_in: int = PIX_EXPIRES_IN_SECONDS) -> None:
        self.expires_in = expires_in
        self.charges: dict[str, dict[str, Any]] = {}
        self.create_calls = 0
        self.status_calls = 0
        self._failures = 0

    def fail_next(self, times: int = 1) -> None:
        self._failures += times

    def _maybe_fail(self) -> None:
        if self._failures > 0:
            self._failures -= 1
            raise ExternalServiceError("Gateway de pagamento indisponível")

    async def create_charge(
        self,
        *,
        amount_cents: int,
        reference: str,
        description: str,
        customer: PixCustomer,
        metadata: dict[str, Any] | None = None,
    ) -> PixCharge:
        self.create_calls += 1
        self._maybe_fail()
        pix_id = f"pix_mock_{uuid.uuid4().hex[:12]}"
        br_code = f"00020126mock{pix_id}5204000053039865406{amount_cents / 100:.2f}"
        charge = {
            "id": pix_id,
            "amount": amount_cents,
            "reference": reference,
            "description": description,
            "taxId": customer.tax_id,
            "metadata": metadata or {},
            "status": "PENDING",
            "expires_at": utcnow() + timedelta(seconds=self.expires_in),
        }
        self.charges[pix_id] = charge
        return PixCharge(
            pix_id=pix_id,
            br_code=br_code,
            br_code_base64=base64.b64encode(br_code.encode()).decode(),
            expires_at=charge["expires_at"],
            raw=charge,
        )

    async def get_status(self, pix_id: str) -> str:
        self.status_calls += 1
        self._maybe_fail()
        charge = self.charges.get(pix_id)
        if charge is None:
            raise ExternalServiceError("Cobrança PIX desconhecida", pix_id=pix_id)
        return charge["status"]

    def mark_paid(self, pix_id: str) -> None:
        self.charges[pix_id]["status"] = "PAID"

    def mark_expired(self, pix_id: str) -> None:
        self.charges[pix_id]["status"] = "EXPIRED"


def build_pix_gateway(name: str | None = None) -> PixGateway:
    selected = (name or PIX_GATEWAY).strip().lower()
    if selected == "abacatepay":
        return AbacatePayGateway()
    if selected != "mock":
        logger.warning("Unknown PIX_GATEWAY=%s, falling back to mock", selected)
    return MockPixGateway()
