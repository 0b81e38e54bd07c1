"""x402 (protocol version 1) payment gate.

Wire format: the client retries with a base64-encoded JSON ``X-PAYMENT``
header, the facilitator's ``/verify`` and ``/settle`` take
``{x402Version, paymentPayload, paymentRequirements}``, and the settlement is
returned in ``X-PAYMENT-RESPONSE``. Networks use the v1 names (``base``,
``base-sepolia``), not CAIP-2 ids.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx

from .logging_utils import get_logger

logger = get_logger(__name__)

X402_VERSION = 1
USDC_DECIMALS = 6
DEFAULT_FACILITATOR_URL = "https://facilitator.payai.network"

_NETWORK_ALIASES = {"eip155:8453": "base", "eip155:84532": "base-sepolia"}
# network -> (USDC contract, EIP-712 domain name)
_USDC_BY_NETWORK = {
    "base": ("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "USD Coin"),
    "base-sepolia": ("0x036CbD53842c5426634e7929541eC2318f3dCF7e", "USDC"),
}


class PaymentError(Exception):
    pass


@dataclass(frozen=True)
class PaymentDecision:
    allowed: bool
    code: str = "ok"
    message: str = "allowed"
    settlement: dict[str, Any] | None = None

    def settlement_header(self) -> str | None:
        if not self.settlement:
            return None
        raw = json.dumps(self.settlement, separators=(",", ":")).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")


class PaymentGate(Protocol):
    def requirements(self, resource: str) -> dict[str, Any]:
        ...

    def verify(self, payment_header: str | None, requirements: dict[str, Any]) -> PaymentDecision:
        """Check the payment without moving funds."""
        ...

    def settle(self, payment_header: str, requirements: dict[str, Any]) -> PaymentDecision:
        """Move the funds of a verified payment."""
        ...


def normalize_network(network: str) -> str:
    cleaned = network.strip()
    return _NETWORK_ALIASES.get(cleaned, cleaned)


def price_to_atomic_units(price: str, decimals: int = USDC_DECIMALS) -> str:
    """Convert a dollar price such as ``$0.001`` into token base units."""
    cleaned = price.strip().lstrip("$").replace(",", "")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid price: {price!r}") from exc
    if amount <= 0:
        raise ValueError(f"Price must be positive: {price!r}")
    atomic = amount * (Decimal(10) ** decimals)
    if atomic != atomic.to_integral_value():
        raise ValueError(f"Price {price!r} is finer than {decimals} decimals")
    return str(int(atomic))


def decode_payment_header(header: str) -> dict[str, Any]:
    try:
        decoded = base64.b64decode(header.strip(), validate=True)
        payload = json.loads(decoded)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("X-PAYMENT header is not base64-encoded JSON") from exc
    if not isinstance(payload, dict):
        raise ValueError("X-PAYMENT header must encode a JSON object")
    return payload


class AllowAllPaymentGate:
    def requirements(self, resource: str) -> dict[str, Any]:
        return {"scheme": "free", "resource": resource}

    def verify(self, payment_header: str | None, requirements: dict[str, Any]) -> PaymentDecision:
        return PaymentDecision(allowed=True)

    def settle(self, payment_header: str, requirements: dict[str, Any]) -> PaymentDecision:
        return PaymentDecision(allowed=True)


class X402PaymentGate:
    """Verifies and settles x402 ``exact`` payments through a facilitator."""

    def __init__(
        self,
        *,
        pay_to: str,
        price: str,
        network: str = "base",
        asset: str | None = None,
        facilitator_url: str = DEFAULT_FACILITATOR_URL,
        facilitator_token: str | None = None,
        description: str = "Healthcare diagnosis and treatment recommendation",
        mime_type: str = "application/json",
        max_timeout_seconds: int = 60,
        timeout_seconds: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.pay_to = pay_to
        self.max_amount_required = price_to_atomic_units(price)
        self.network = normalize_network(network)
        default_asset, self.asset_name = _USDC_BY_NETWORK.get(self.network, ("", "USD Coin"))
        self.asset = asset or default_asset
        if not self.asset:
            raise ValueError(f"No default USDC asset for network {self.network!r}; set one explicitly")
        self.facilitator_url = facilitator_url.rstrip("/")
        self.facilitator_token = facilitator_token
        self.description = description
        self.mime_type = mime_type
        self.max_timeout_seconds = max_timeout_seconds
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def requirements(self, resource: str) -> dict[str, Any]:
        return {
            "scheme": "exact",
            "network": self.network,
            "maxAmountRequired": self.max_amount_required,
            "resource": resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset,
            "extra": {"name": self.asset_name, "version": "2"},
        }

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        timeout = httpx.Timeout(self.timeout_seconds, connect=8.0)
        headers = {"Authorization": f"Bearer {self.facilitator_token}"} if self.facilitator_token else {}
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.post(f"{self.facilitator_url}/{path}", json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PaymentError(f"Payment facilitator unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise PaymentError(f"Payment facilitator {path} failed with HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise PaymentError(f"Payment facilitator {path} returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise PaymentError(f"Payment facilitator {path} returned an unexpected payload")
        return payload

    def _request_body(
        self,
        payment_header: str,
        requirements: dict[str, Any],
    ) -> tuple[dict[str, Any] | None, PaymentDecision | None]:
        try:
            payment_payload = decode_payment_header(payment_header)
        except ValueError as exc:
            return None, PaymentDecision(False, "invalid_payment_header", str(exc))
        if payment_payload.get("x402Version") != X402_VERSION:
            return None, PaymentDecision(
                False,
                "unsupported_x402_version",
                f"Only x402Version {X402_VERSION} payments are accepted",
            )
        if payment_payload.get("network") != requirements.get("network"):
            return None, PaymentDecision(
                False,
                "network_mismatch",
                f"Payment must be made on {requirements.get('network')}",
            )
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": payment_payload,
            "paymentRequirements": requirements,
        }
        return body, None

    def verify(self, payment_header: str | None, requirements: dict[str, Any]) -> PaymentDecision:
        if not payment_header:
            return PaymentDecision(False, "payment_required", "X-PAYMENT header is required")
        body, rejection = self._request_body(payment_header, requirements)
        if rejection is not None:
            return rejection

        verification = self._post("verify", body)
        if not verification.get("isValid"):
            reason = str(verification.get("invalidReason") or "payment verification failed")
            logger.warning("Payment rejected by facilitator: %s", reason)
            return PaymentDecision(False, "payment_invalid", reason)
        return PaymentDecision(True)

    def settle(self, payment_header: str, requirements: dict[str, Any]) -> PaymentDecision:
        body, rejection = self._request_body(payment_header, requirements)
        if rejection is not None:
            return rejection

        settlement = self._post("settle", body)
        if not settlement.get("success"):
            reason = str(settlement.get("errorReason") or "payment settlement failed")
            logger.warning("Payment settlement failed: %s", reason)
            return PaymentDecision(False, "settlement_failed", reason)

        logger.info("Payment settled on %s", settlement.get("network") or self.network)
        return PaymentDecision(True, settlement=settlement)
