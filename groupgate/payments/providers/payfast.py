"""
PayFast gateway: checkout URLs, ITN verification and the recurring-billing API.

Checkout and ITN signatures hash the fields in the order they were built or posted
(not sorted), with values encoded like JavaScript's encodeURIComponent and spaces as '+'.
The subscriptions REST API instead signs alphabetically sorted header/body params.
"""
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping
from urllib.parse import quote_plus

import httpx
import pybreaker

from groupgate.payments.base import (
    NormalizedPayment,
    PaymentGateway,
    PaymentOptions,
    SubscriptionOptions,
    format_amount,
)
from groupgate.payments.errors import ConfigurationError, FormatError, PaymentError
from groupgate.services.circuit_breaker import PAYFAST_BREAKER, get_circuit_breaker

logger = logging.getLogger(__name__)

PROCESS_HOSTS = {True: "sandbox.payfast.co.za", False: "www.payfast.co.za"}
API_HOST = "api.payfast.co.za"
API_VERSION = "v1"
SETTLEMENT_CURRENCY = "ZAR"
ITN_PATH = "/webhook/payfast-itn"

# Left unescaped by encodeURIComponent
_SAFE_CHARS = "-_.!~*'()"


def encode_value(value: Any) -> str:
    return quote_plus(str(value), safe=_SAFE_CHARS)


def encode_pairs(data: Mapping[str, Any]) -> str:
    """key=value pairs joined by '&', preserving mapping order."""
    return "&".join(f"{key}={encode_value(value)}" for key, value in data.items())


def generate_signature(data: Mapping[str, Any], passphrase: str | None = None) -> str:
    """MD5 over insertion-ordered pairs; 'signature' itself is never part of the string."""
    payload = encode_pairs({k: v for k, v in data.items() if k != "signature"})
    if passphrase and passphrase.strip():
        payload += f"&passphrase={encode_value(passphrase)}"
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def generate_api_signature(params: Mapping[str, Any], passphrase: str | None = None) -> str:
    """MD5 over alphabetically sorted pairs, passphrase sorted in with the rest."""
    data = {k: v for k, v in params.items() if k != "signature"}
    if passphrase and passphrase.strip():
        data["passphrase"] = passphrase
    payload = encode_pairs({k: data[k] for k in sorted(data)})
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


class PayFastGateway(PaymentGateway):
    """
    PayFast (South Africa) gateway.

    Config keys: merchant_id, merchant_key, passphrase, sandbox, validate_with_server,
    return_url, cancel_url, notify_url, base_url, timeout.
    """

    name = "payfast"
    display_name = "💳 PayFast"
    credential_fields = ("merchant_id", "merchant_key", "passphrase")
    required_credentials = ("merchant_id", "merchant_key")
    account_secrets = ("passphrase",)
    required_fields = ("m_payment_id",)

    def __init__(self, config: Mapping[str, Any] | None = None, clock: Callable[[], float] | None = None):
        super().__init__(config)
        self._clock = clock or time.time

    def _clone(self, config: dict[str, Any]) -> "PayFastGateway":
        return type(self)(config, clock=self._clock)

    @property
    def sandbox(self) -> bool:
        return bool(self.config.get("sandbox", True))

    @property
    def host(self) -> str:
        return PROCESS_HOSTS[self.sandbox]

    @property
    def passphrase(self) -> str:
        return str(self.config.get("passphrase") or "")

    @property
    def timeout(self) -> float:
        return float(self.config.get("timeout") or 15.0)

    def webhook_path(self) -> str | None:
        return ITN_PATH

    # ------------------------------------------------------------------
    # Checkout URLs
    # ------------------------------------------------------------------

    def _require_credentials(self) -> None:
        missing = self.missing_credentials()
        if missing:
            raise ConfigurationError(f"PayFast credentials missing: {', '.join(missing)}")

    def _base_data(
        self,
        user_id: int,
        group_id: int,
        amount: Decimal | float | str,
        item_name: str,
        item_description: str,
        options: PaymentOptions,
    ) -> dict[str, str]:
        self._require_credentials()
        notify_url = (
            options.notify_url
            or self.config.get("notify_url")
            or self.webhook_url(str(self.config.get("base_url") or ""))
        )
        data = {
            # Merchant details
            "merchant_id": str(self.config["merchant_id"]).strip(),
            "merchant_key": str(self.config["merchant_key"]).strip(),
            "return_url": options.return_url or self.config.get("return_url"),
            "cancel_url": options.cancel_url or self.config.get("cancel_url"),
            "notify_url": notify_url,
            # Buyer details (Telegram gives us none)
            "name_first": "Telegram",
            "name_last": "User",
            "email_address": options.email_address or f"user{user_id}@telegram.org",
            # Transaction details
            "m_payment_id": f"sub_{user_id}_{int(self._clock() * 1000)}",
            "amount": format_amount(amount),
            "item_name": item_name[:100],
            "item_description": item_description[:255],
            "custom_str1": str(user_id),
            "custom_str2": str(group_id),
        }
        # PayFast only accepts non-blank variables
        return {k: str(v) for k, v in data.items() if v not in (None, "")}

    def _process_url(self, data: dict[str, str]) -> str:
        data["signature"] = generate_signature(data, self.passphrase)
        return f"https://{self.host}/eng/process?{encode_pairs(data)}"

    def build_payment_url(
        self,
        user_id: int,
        group_id: int,
        amount: Decimal | float | str,
        item_name: str,
        item_description: str = "",
        options: PaymentOptions | None = None,
    ) -> str:
        data = self._base_data(user_id, group_id, amount, item_name, item_description, options or PaymentOptions())
        url = self._process_url(data)
        logger.info(
            "payfast_payment_url_built",
            extra={"user_id": user_id, "group_id": group_id, "payment_id": data["m_payment_id"]},
        )
        return url

    def build_subscription_url(
        self,
        user_id: int,
        group_id: int,
        amount: Decimal | float | str,
        item_name: str,
        item_description: str = "",
        subscription: SubscriptionOptions | None = None,
    ) -> str:
        sub = subscription or SubscriptionOptions()
        data = self._base_data(user_id, group_id, amount, item_name, item_description, sub)
        billing_date = sub.billing_date or datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()
        data["subscription_type"] = "1"
        data["billing_date"] = billing_date.strftime("%Y-%m-%d")
        data["recurring_amount"] = format_amount(
            sub.recurring_amount if sub.recurring_amount is not None else amount
        )
        data["frequency"] = str(sub.frequency)
        data["cycles"] = str(sub.cycles)
        if sub.initial_amount is not None:
            data["initial_amount"] = format_amount(sub.initial_amount)
        url = self._process_url(data)
        logger.info(
            "payfast_subscription_url_built",
            extra={"user_id": user_id, "group_id": group_id, "payment_id": data["m_payment_id"]},
        )
        return url

    # ------------------------------------------------------------------
    # ITN
    # ------------------------------------------------------------------

    def verify(self, notification: Mapping[str, str]) -> bool:
        received = notification.get("signature")
        if not received:
            logger.warning("payfast_itn_signature_missing", extra={"provider": self.name})
            return False
        expected = generate_signature(notification, self.passphrase)
        if not hmac.compare_digest(expected.encode(), str(received).encode("utf-8")):
            logger.warning(
                "payfast_itn_signature_mismatch",
                extra={"provider": self.name, "payment_id": notification.get("pf_payment_id")},
            )
            return False
        if not self.config.get("validate_with_server", True):
            return True
        return self._validate_with_server(notification)

    def _validate_with_server(self, notification: Mapping[str, str]) -> bool:
        payload = encode_pairs({k: v for k, v in notification.items() if k != "signature"})
        try:
            body = get_circuit_breaker(PAYFAST_BREAKER).call(self._post_validate, payload)
        except pybreaker.CircuitBreakerError:
            logger.warning("payfast_validate_circuit_open", extra={"provider": self.name})
            return False
        except httpx.HTTPError as e:
            logger.warning("payfast_validate_failed", extra={"provider": self.name, "error": str(e)})
            return False
        valid = body.strip() == "VALID"
        if not valid:
            logger.warning(
                "payfast_validate_rejected",
                extra={"provider": self.name, "payment_id": notification.get("pf_payment_id")},
            )
        return valid

    def _post_validate(self, payload: str) -> str:
        url = f"https://{self.host}/eng/query/validate"
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(
                url,
                content=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            resp.raise_for_status()
            return resp.text

    def group_id_of(self, notification: Mapping[str, str]) -> int | None:
        try:
            return int(notification.get("custom_str2") or "")
        except ValueError:
            return None

    def normalize(self, notification: Mapping[str, str]) -> NormalizedPayment:
        reference = str(notification.get("m_payment_id") or "")
        parts = reference.split("_")
        if len(parts) < 3 or parts[0] != "sub":
            raise FormatError(f"Invalid m_payment_id format: {reference!r}")
        try:
            user_id = int(parts[1])
        except ValueError:
            raise FormatError(f"Invalid user id in m_payment_id: {reference!r}") from None

        payment_id = notification.get("pf_payment_id")
        if not payment_id:
            raise FormatError("pf_payment_id missing")

        try:
            amount = Decimal(str(notification.get("amount_gross") or "0"))
        except InvalidOperation:
            raise FormatError(f"Invalid amount_gross: {notification.get('amount_gross')!r}") from None

        token = notification.get("token") or None
        subscription_id = notification.get("subscription_id") or None
        return NormalizedPayment(
            user_id=user_id,
            group_id=self.group_id_of(notification),
            amount=amount,
            currency=SETTLEMENT_CURRENCY,
            payment_id=str(payment_id),
            status="completed",
            provider_name=self.name,
            is_subscription=bool(token and subscription_id),
            subscription_id=subscription_id,
            token=token,
            merchant_reference=reference,
            raw=dict(notification),
        )

    # ------------------------------------------------------------------
    # Subscriptions API
    # ------------------------------------------------------------------

    def _api_headers(self, body: Mapping[str, Any] | None = None) -> dict[str, str]:
        merchant_id = str(self.config.get("merchant_id") or "").strip()
        if not merchant_id:
            raise ConfigurationError("PayFast merchant_id is required for API calls")
        timestamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        headers = {"merchant-id": merchant_id, "version": API_VERSION, "timestamp": timestamp}
        headers["signature"] = generate_api_signature({**headers, **(body or {})}, self.passphrase)
        return headers

    def _api_request(self, method: str, path: str, body: Mapping[str, Any] | None = None) -> dict:
        headers = self._api_headers(body)
        params = {"testing": "true"} if self.sandbox else None
        url = f"https://{API_HOST}{path}"
        try:
            return get_circuit_breaker(PAYFAST_BREAKER).call(self._send, method, url, headers, params, body)
        except (httpx.HTTPError, pybreaker.CircuitBreakerError) as e:
            logger.warning("payfast_api_failed", extra={"provider": self.name, "path": path, "error": str(e)})
            raise PaymentError(f"PayFast API {method} {path} failed: {e}") from e

    def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        params: dict[str, str] | None,
        body: Mapping[str, Any] | None,
    ) -> dict:
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.request(method, url, headers=headers, params=params, data=dict(body) if body else None)
            resp.raise_for_status()
            return resp.json()

    def fetch_subscription(self, token: str) -> dict:
        return self._api_request("GET", f"/subscriptions/{token}/fetch")

    def cancel_subscription(self, token: str) -> dict:
        result = self._api_request("PUT", f"/subscriptions/{token}/cancel")
        logger.info("payfast_subscription_cancelled", extra={"provider": self.name})
        return result
