from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type

import requests
from requests.exceptions import RequestException

from utils.errors import GatewayUnavailable, ProviderRejected, UnsupportedProvider, ValidationError


class Provider(str, Enum):
    MTN = "mtn"
    MOOV = "moov"
    VODAFONE = "vodafone"

    @classmethod
    def parse(cls, value: Any) -> "Provider":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise UnsupportedProvider(f"Unsupported mobile money provider: {value!r}")


class ProviderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


_COMPLETED = {"success", "successful", "completed", "approved", "transferred"}
_FAILED = {"failed", "cancelled", "canceled", "declined", "rejected", "expired"}

_PLACEHOLDER_PREFIXES = ("demo_", "your_", "changeme")


def normalize_status(value: Any) -> ProviderStatus:
    s = str(value or "").strip().lower()
    if s in _COMPLETED:
        return ProviderStatus.COMPLETED
    if s in _FAILED:
        return ProviderStatus.FAILED
    return ProviderStatus.PENDING


def normalize_msisdn(phone: str, country_code: str) -> str:
    p = "".join(ch for ch in (phone or "") if ch.isdigit() or ch == "+")
    if p.startswith("+"):
        p = p[1:]
    elif p.startswith("00"):
        p = p[2:]
    if p.startswith(country_code):
        return p
    if p.startswith("0"):
        p = p[1:]
    return country_code + p


def is_configured(value: Optional[str]) -> bool:
    v = (value or "").strip()
    return bool(v) and not v.lower().startswith(_PLACEHOLDER_PREFIXES)


def _reference(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


@dataclass
class GatewayResult:
    transaction_id: str
    provider_status: ProviderStatus
    payment_url: Optional[str] = None
    ussd_code: Optional[str] = None
    amount: Optional[Decimal] = None
    message: Optional[str] = None


class _ProviderClient:
    name = "provider"

    def __init__(self, config: Mapping[str, Any]):
        self.config = config
        self.timeout = float(config.get("MOBILE_MONEY_TIMEOUT") or 15)

    @classmethod
    def is_available(cls, config: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def initiate(self, amount: Decimal, phone_number: str, description: str) -> GatewayResult:
        raise NotImplementedError

    def verify(self, transaction_id: str) -> GatewayResult:
        raise NotImplementedError

    def _call(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        send = requests.post if method == "POST" else requests.get
        try:
            r = send(url, timeout=self.timeout, **kwargs)
        except RequestException as e:
            # Only the exception type: messages may echo request details
            raise GatewayUnavailable(f"{self.name} unreachable ({type(e).__name__})")
        if r.status_code >= 500:
            raise GatewayUnavailable(f"{self.name} returned {r.status_code}")
        if r.status_code >= 400:
            raise ProviderRejected(f"{self.name} rejected the request ({r.status_code})")
        if not r.content:
            return {}
        try:
            data = r.json()
        except ValueError:
            raise GatewayUnavailable(f"{self.name} sent a non-JSON response")
        return data if isinstance(data, dict) else {}


class FedaPayClient(_ProviderClient):
    """Aggregator fronting every provider with one transactions API."""

    name = "FedaPay"

    @classmethod
    def is_available(cls, config: Mapping[str, Any]) -> bool:
        return is_configured(config.get("FEDAPAY_API_KEY"))

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config['FEDAPAY_API_KEY']}",
            "Content-Type": "application/json",
        }

    def _base(self) -> str:
        return str(self.config.get("FEDAPAY_BASE_URL") or "").rstrip("/")

    def initiate(self, amount: Decimal, phone_number: str, description: str) -> GatewayResult:
        callback = str(self.config.get("BACKEND_URL") or "").rstrip("/") + "/api/v1/payments/webhook/mobile-money"
        payload = {
            "description": description,
            "amount": _whole_units(amount),
            "currency": {"iso": self.config.get("MOBILE_MONEY_CURRENCY", "XOF")},
            "callback_url": callback,
            "customer": {
                "phone_number": {
                    "number": phone_number,
                    "country": str(self.config.get("MOBILE_MONEY_COUNTRY", "BJ")).lower(),
                }
            },
        }
        body = self._call("POST", f"{self._base()}/transactions", json=payload, headers=self._headers())
        tx = body.get("v1/transaction") or body
        tx_id = tx.get("id") or tx.get("reference")
        if not tx_id:
            raise GatewayUnavailable("FedaPay response carried no transaction id")
        payment_url = tx.get("payment_url")
        if not payment_url:
            token = self._call("POST", f"{self._base()}/transactions/{tx_id}/token", headers=self._headers())
            payment_url = token.get("url")
        return GatewayResult(
            transaction_id=str(tx_id),
            provider_status=ProviderStatus.PENDING,
            payment_url=payment_url,
        )

    def verify(self, transaction_id: str) -> GatewayResult:
        body = self._call("GET", f"{self._base()}/transactions/{transaction_id}", headers=self._headers())
        tx = body.get("v1/transaction") or body
        return GatewayResult(
            transaction_id=transaction_id,
            provider_status=normalize_status(tx.get("status")),
            amount=_decimal_or_none(tx.get("amount")),
        )


class MtnClient(_ProviderClient):
    name = "MTN MoMo"

    @classmethod
    def is_available(cls, config: Mapping[str, Any]) -> bool:
        return is_configured(config.get("MTN_API_KEY")) and is_configured(config.get("MTN_API_SECRET"))

    def _base(self) -> str:
        return str(self.config.get("MTN_BASE_URL") or "").rstrip("/")

    def _access_token(self) -> str:
        key = self.config["MTN_API_KEY"]
        body = self._call(
            "POST",
            f"{self._base()}/collection/token/",
            auth=(key, self.config["MTN_API_SECRET"]),
            headers={"Ocp-Apim-Subscription-Key": key},
        )
        token = body.get("access_token") or ""
        if not token:
            raise GatewayUnavailable("MTN MoMo token response carried no access_token")
        return token

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "X-Target-Environment": self.config.get("MTN_TARGET_ENV", "sandbox"),
            "Ocp-Apim-Subscription-Key": self.config["MTN_API_KEY"],
            "Content-Type": "application/json",
        }

    def initiate(self, amount: Decimal, phone_number: str, description: str) -> GatewayResult:
        units = _whole_units(amount)
        # requesttopay is keyed by a caller-chosen UUID
        reference = str(uuid.uuid4())
        headers = self._headers(self._access_token())
        headers["X-Reference-Id"] = reference
        payload = {
            "amount": str(units),
            "currency": self.config.get("MOBILE_MONEY_CURRENCY", "XOF"),
            "externalId": reference,
            "payer": {"partyIdType": "MSISDN", "partyId": phone_number},
            "payerMessage": description[:160],
            "payeeNote": description[:160],
        }
        self._call("POST", f"{self._base()}/collection/v1_0/requesttopay", json=payload, headers=headers)
        return GatewayResult(
            transaction_id=reference,
            provider_status=ProviderStatus.PENDING,
            message="Approve the payment on your phone",
        )

    def verify(self, transaction_id: str) -> GatewayResult:
        headers = self._headers(self._access_token())
        body = self._call("GET", f"{self._base()}/collection/v1_0/requesttopay/{transaction_id}", headers=headers)
        return GatewayResult(
            transaction_id=transaction_id,
            provider_status=normalize_status(body.get("status")),
            amount=_decimal_or_none(body.get("amount")),
        )


class _UssdClient(_ProviderClient):
    """Providers confirmed by the payer dialling a USSD code; there is nothing to poll."""

    key_setting = ""
    ussd_setting = ""
    prefix = ""

    @classmethod
    def is_available(cls, config: Mapping[str, Any]) -> bool:
        return is_configured(config.get(cls.key_setting))

    def initiate(self, amount: Decimal, phone_number: str, description: str) -> GatewayResult:
        code = self.config.get(self.ussd_setting)
        return GatewayResult(
            transaction_id=_reference(self.prefix),
            provider_status=ProviderStatus.PENDING,
            ussd_code=code,
            message=f"Dial {code} to complete the {self.name} payment",
        )

    def verify(self, transaction_id: str) -> GatewayResult:
        return GatewayResult(transaction_id=transaction_id, provider_status=ProviderStatus.PENDING)


class MoovClient(_UssdClient):
    name = "Moov Money"
    key_setting = "MOOV_API_KEY"
    ussd_setting = "MOOV_USSD_CODE"
    prefix = "NB-MOOV"


class VodafoneClient(_UssdClient):
    name = "Vodafone Cash"
    key_setting = "VODAFONE_API_KEY"
    ussd_setting = "VODAFONE_USSD_CODE"
    prefix = "NB-VODA"


PROVIDER_CLIENTS: Dict[Provider, Type[_ProviderClient]] = {
    Provider.MTN: MtnClient,
    Provider.MOOV: MoovClient,
    Provider.VODAFONE: VodafoneClient,
}


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


def _whole_units(amount: Decimal) -> int:
    """Amount in francs as sent to providers; a fractional value is never truncated."""
    amount = Decimal(amount)
    if amount != amount.to_integral_value():
        raise ValidationError("amount must be a whole number of francs", amount=str(amount))
    return int(amount)


class MobileMoneyGateway:
    """Single initiate/verify surface over the aggregator and the individual providers.

    Outside production mode both calls return synthetic results and no
    client is ever built, so nothing leaves the process.
    """

    def __init__(self, config: Mapping[str, Any]):
        self.config = config
        self.live = str(config.get("MOBILE_MONEY_ENV", "sandbox")).strip().lower() == "production"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "MobileMoneyGateway":
        return cls(config)

    def _client_for(self, provider: Optional[Provider]) -> _ProviderClient:
        if FedaPayClient.is_available(self.config):
            return FedaPayClient(self.config)
        client_cls = PROVIDER_CLIENTS.get(provider) if provider is not None else None
        if client_cls is None or not client_cls.is_available(self.config):
            raise UnsupportedProvider(
                f"No mobile money route configured for provider {provider.value if provider else None!r}"
            )
        return client_cls(self.config)

    def initiate(self, amount: Decimal, phone_number: str, provider: Provider, description: str) -> GatewayResult:
        if not self.live:
            return GatewayResult(
                transaction_id=_reference(f"DEV-{provider.value.upper()}"),
                provider_status=ProviderStatus.PENDING,
                message="Sandbox mode: payment simulated",
            )
        client = self._client_for(provider)
        msisdn = normalize_msisdn(phone_number, str(self.config.get("MOBILE_MONEY_COUNTRY_CODE", "229")))
        return client.initiate(amount, msisdn, description)

    def verify(self, transaction_id: str, provider: Optional[Provider] = None) -> GatewayResult:
        if not self.live:
            return GatewayResult(
                transaction_id=transaction_id,
                provider_status=ProviderStatus.COMPLETED,
                message="Sandbox mode: payment verified",
            )
        return self._client_for(provider).verify(transaction_id)
