"""WaafiPay (EVC Plus) mobile-money gateway integration."""

import logging
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import httpx
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.metrics import GATEWAY_LATENCY, GATEWAY_REQUESTS
from app.services.billing.errors import (
    GatewayError,
    GatewayNotConfigured,
    InvalidPhoneNumber,
)

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0"
PURCHASE_SERVICE = "API_PURCHASE"
PENDING_STATES = {"PENDING", "PROCESSING", "INITIATED"}
FAILED_STATES = {"FAILED", "DECLINED", "CANCELLED", "CANCELED", "EXPIRED"}
SOMALI_COUNTRY_CODE = "252"


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    transaction_id: str | None
    response_code: str
    response_message: str | None = None
    pending: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def format_phone(phone: str) -> str:
    """Normalize a Somali mobile number to the 252XXXXXXXXX form."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("00"):
        digits = digits[2:]
    if digits.startswith(SOMALI_COUNTRY_CODE):
        national = digits[len(SOMALI_COUNTRY_CODE):]
    else:
        national = digits.lstrip("0")
    if not re.fullmatch(r"\d{7,9}", national):
        raise InvalidPhoneNumber(details={"phone": phone})
    return f"{SOMALI_COUNTRY_CODE}{national}"


def _retry_predicate(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.retryable


class WaafiPayGateway:
    """Thin wrapper around the WaafiPay REST API."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self._base_url = settings.waafipay_base_url.rstrip("/")
        self._merchant_uid = settings.waafipay_merchant_uid
        self._api_user_id = settings.waafipay_api_user_id
        self._api_key = settings.waafipay_api_key
        self._timeout = settings.gateway_timeout_seconds
        self._max_retries = max(settings.gateway_max_retries, 0)
        self._initial_delay = settings.gateway_retry_initial_delay
        self._sleep = sleep

    def is_configured(self) -> bool:
        return bool(self._merchant_uid and self._api_user_id and self._api_key)

    def _merchant_params(self) -> dict[str, str]:
        return {
            "merchantUid": self._merchant_uid,
            "apiUserId": self._api_user_id,
            "apiKey": self._api_key,
        }

    def _envelope(self, service_name: str, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "schemaVersion": "1.0",
            "requestId": str(uuid.uuid4()),
            "timestamp": datetime.now(UTC).isoformat(),
            "channelName": "WEB",
            "serviceName": service_name,
            "serviceParams": {**self._merchant_params(), **params},
        }

    def _post(self, operation: str, payload: dict[str, Any]) -> dict[str, Any]:
        start = time.monotonic()
        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.post(
                    self._base_url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException as exc:
            GATEWAY_REQUESTS.labels(operation, "timeout").inc()
            logger.warning("WaafiPay %s timed out: %s", operation, exc)
            raise GatewayError(
                f"Payment gateway timed out: {exc}", timed_out=True
            ) from exc
        except httpx.HTTPError as exc:
            GATEWAY_REQUESTS.labels(operation, "transport_error").inc()
            logger.warning("WaafiPay %s transport error: %s", operation, exc)
            raise GatewayError(f"Payment processing failed: {exc}") from exc
        finally:
            GATEWAY_LATENCY.labels(operation).observe(time.monotonic() - start)

        if resp.status_code >= 500:
            GATEWAY_REQUESTS.labels(operation, "server_error").inc()
            raise GatewayError(f"Payment gateway returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            GATEWAY_REQUESTS.labels(operation, "invalid_response").inc()
            raise GatewayError(
                "Invalid response from WaafiPay",
                code="invalid_gateway_response",
                retryable=False,
            ) from exc
        if not isinstance(data, dict) or not data.get("responseCode"):
            GATEWAY_REQUESTS.labels(operation, "invalid_response").inc()
            raise GatewayError(
                "Invalid response from WaafiPay",
                code="invalid_gateway_response",
                retryable=False,
            )
        return data

    @staticmethod
    def _parse_result(data: dict[str, Any]) -> GatewayResult:
        params = data.get("params") or {}
        code = str(data.get("responseCode"))
        state = str(params.get("state") or "").upper()
        success = code == SUCCESS_CODE and state not in FAILED_STATES
        return GatewayResult(
            success=success,
            transaction_id=params.get("transactionId") or data.get("transactionId"),
            response_code=code,
            response_message=data.get("responseMsg") or data.get("responseMessage"),
            pending=success and state in PENDING_STATES,
            raw=data,
        )

    # ── Purchase ─────────────────────────────────────────

    def initiate(
        self,
        phone: str,
        amount: Decimal,
        reference: str,
        description: str,
        currency: str = "USD",
    ) -> GatewayResult:
        """Request an EVC Plus debit. ``reference`` must be the payment id."""
        if not self.is_configured():
            raise GatewayNotConfigured()
        account = format_phone(phone)
        payload = self._envelope(
            PURCHASE_SERVICE,
            {
                "paymentMethod": "MWALLET_ACCOUNT",
                "payerInfo": {"accountNo": account},
                "transactionInfo": {
                    "referenceId": reference,
                    "invoiceId": reference,
                    "amount": f"{Decimal(amount):.2f}",
                    "currency": currency,
                    "description": description,
                },
                "callbackUrl": settings.waafipay_webhook_url or None,
            },
        )
        logger.info(
            "Processing EVC Plus payment for %s of amount %s",
            account,
            amount,
            extra={"payment_id": reference},
        )
        result = self._parse_result(self._post("purchase", payload))
        outcome = "pending" if result.pending else ("success" if result.success else "declined")
        GATEWAY_REQUESTS.labels("purchase", outcome).inc()
        if result.success:
            logger.info(
                "EVC Plus payment accepted: %s",
                result.transaction_id,
                extra={"payment_id": reference},
            )
        else:
            logger.error(
                "EVC Plus payment failed: %s (%s)",
                result.response_message,
                result.response_code,
                extra={"payment_id": reference},
            )
        return result

    def initiate_with_retry(
        self,
        phone: str,
        amount: Decimal,
        reference: str,
        description: str,
        currency: str = "USD",
    ) -> GatewayResult:
        """``initiate`` with bounded exponential backoff on retryable errors."""
        retrying = Retrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._initial_delay, min=self._initial_delay),
            retry=retry_if_exception(_retry_predicate),
            sleep=self._sleep,
            reraise=True,
            before_sleep=lambda state: logger.info(
                "Retrying EVC Plus payment, attempt %s failed",
                state.attempt_number,
                extra={"payment_id": reference},
            ),
        )
        return retrying(self.initiate, phone, amount, reference, description, currency)

    # ── Reconciliation ───────────────────────────────────

    def query_status(self, reference: str) -> GatewayResult:
        """Ask the gateway for the final state of a purchase by reference."""
        if not self.is_configured():
            raise GatewayNotConfigured()
        payload = self._envelope(
            settings.waafipay_status_service,
            {"referenceId": reference, "invoiceId": reference},
        )
        result = self._parse_result(self._post("query", payload))
        GATEWAY_REQUESTS.labels(
            "query", "pending" if result.pending else ("success" if result.success else "failed")
        ).inc()
        return result


waafipay_gateway = WaafiPayGateway()
