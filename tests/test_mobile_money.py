from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError, Timeout

from utils.errors import GatewayUnavailable, ProviderRejected, UnsupportedProvider, ValidationError
from utils.mobile_money import (
    FedaPayClient,
    MobileMoneyGateway,
    MtnClient,
    Provider,
    ProviderStatus,
    is_configured,
    normalize_msisdn,
    normalize_status,
)

BASE = {
    "MOBILE_MONEY_ENV": "production",
    "MOBILE_MONEY_TIMEOUT": 7,
    "MOBILE_MONEY_CURRENCY": "XOF",
    "MOBILE_MONEY_COUNTRY": "BJ",
    "MOBILE_MONEY_COUNTRY_CODE": "229",
    "BACKEND_URL": "https://school.example.org",
    "FEDAPAY_API_KEY": "",
    "FEDAPAY_BASE_URL": "https://api.fedapay.test/v1",
    "MTN_API_KEY": "",
    "MTN_API_SECRET": "",
    "MTN_BASE_URL": "https://momo.test/v1",
    "MTN_TARGET_ENV": "sandbox",
    "MOOV_API_KEY": "",
    "MOOV_USSD_CODE": "*155#",
    "VODAFONE_API_KEY": "",
    "VODAFONE_USSD_CODE": "*110#",
}


def _config(**overrides):
    cfg = dict(BASE)
    cfg.update(overrides)
    return cfg


def _response(status_code=200, payload=None):
    r = MagicMock()
    r.status_code = status_code
    r.content = b"{}" if payload is not None else b""
    r.json.return_value = payload
    return r


def test_sandbox_initiate_is_synthetic_and_offline():
    gateway = MobileMoneyGateway.from_config(_config(MOBILE_MONEY_ENV="sandbox", FEDAPAY_API_KEY="sk_live_real"))
    with patch("utils.mobile_money.requests.post") as post, patch("utils.mobile_money.requests.get") as get:
        result = gateway.initiate(Decimal("50000"), "97000001", Provider.MTN, "Bulletin payment")
        verified = gateway.verify(result.transaction_id, Provider.MTN)
    assert result.transaction_id.startswith("DEV-MTN-")
    assert result.provider_status is ProviderStatus.PENDING
    assert verified.provider_status is ProviderStatus.COMPLETED
    post.assert_not_called()
    get.assert_not_called()


def test_sandbox_ids_are_unique():
    gateway = MobileMoneyGateway.from_config(_config(MOBILE_MONEY_ENV="sandbox"))
    ids = {gateway.initiate(Decimal("1000"), "97000001", Provider.MOOV, "x").transaction_id for _ in range(20)}
    assert len(ids) == 20


def test_missing_credentials_do_not_imply_sandbox():
    gateway = MobileMoneyGateway.from_config(_config())
    with pytest.raises(UnsupportedProvider):
        gateway.initiate(Decimal("50000"), "97000001", Provider.MTN, "Bulletin payment")


def test_placeholder_aggregator_key_is_ignored():
    assert not is_configured("demo_fedapay_key")
    assert not is_configured("  ")
    assert is_configured("sk_live_abc")
    gateway = MobileMoneyGateway.from_config(_config(FEDAPAY_API_KEY="demo_fedapay_key", MOOV_API_KEY="moov-key"))
    with patch("utils.mobile_money.requests.post") as post:
        result = gateway.initiate(Decimal("50000"), "97000001", Provider.MOOV, "Bulletin payment")
    post.assert_not_called()
    assert result.ussd_code == "*155#"
    assert result.transaction_id.startswith("NB-MOOV-")


def test_unknown_provider_tag_is_rejected():
    with pytest.raises(UnsupportedProvider):
        Provider.parse("orange")
    assert Provider.parse(" MTN ") is Provider.MTN


def test_aggregator_is_preferred_over_named_provider():
    gateway = MobileMoneyGateway.from_config(
        _config(FEDAPAY_API_KEY="sk_live_abc", MTN_API_KEY="k", MTN_API_SECRET="s")
    )
    created = _response(200, {"v1/transaction": {"id": 4321, "payment_url": "https://pay.test/4321"}})
    with patch("utils.mobile_money.requests.post", return_value=created) as post:
        result = gateway.initiate(Decimal("50000"), "97000001", Provider.MTN, "Bulletin payment")
    assert result.transaction_id == "4321"
    assert result.payment_url == "https://pay.test/4321"
    url = post.call_args[0][0]
    kwargs = post.call_args[1]
    assert url == "https://api.fedapay.test/v1/transactions"
    assert kwargs["timeout"] == 7
    assert kwargs["json"]["callback_url"] == "https://school.example.org/api/v1/payments/webhook/mobile-money"
    assert kwargs["json"]["customer"]["phone_number"]["number"] == "22997000001"


def test_aggregator_fetches_payment_url_token_when_missing():
    gateway = MobileMoneyGateway.from_config(_config(FEDAPAY_API_KEY="sk_live_abc"))
    responses = [
        _response(200, {"v1/transaction": {"id": 77}}),
        _response(200, {"token": "tok", "url": "https://pay.test/tok"}),
    ]
    with patch("utils.mobile_money.requests.post", side_effect=responses) as post:
        result = gateway.initiate(Decimal("50000"), "97000001", Provider.VODAFONE, "Bulletin payment")
    assert post.call_count == 2
    assert post.call_args_list[1][0][0] == "https://api.fedapay.test/v1/transactions/77/token"
    assert result.payment_url == "https://pay.test/tok"


def test_aggregator_verify_maps_status_and_amount():
    client = FedaPayClient(_config(FEDAPAY_API_KEY="sk_live_abc"))
    with patch("utils.mobile_money.requests.get", return_value=_response(200, {"v1/transaction": {"status": "approved", "amount": 50000}})):
        result = client.verify("77")
    assert result.provider_status is ProviderStatus.COMPLETED
    assert result.amount == Decimal("50000")


def test_mtn_request_to_pay_then_poll():
    gateway = MobileMoneyGateway.from_config(_config(MTN_API_KEY="k", MTN_API_SECRET="s"))
    token = _response(200, {"access_token": "abc"})
    accepted = _response(202, None)
    with patch("utils.mobile_money.requests.post", side_effect=[token, accepted]) as post:
        result = gateway.initiate(Decimal("50000"), "0097000001", Provider.MTN, "Bulletin payment")
    request_call = post.call_args_list[1]
    assert request_call[0][0] == "https://momo.test/v1/collection/v1_0/requesttopay"
    assert request_call[1]["headers"]["X-Reference-Id"] == result.transaction_id
    assert request_call[1]["json"]["payer"]["partyId"] == "22997000001"
    assert result.provider_status is ProviderStatus.PENDING

    with patch("utils.mobile_money.requests.post", return_value=token), patch(
        "utils.mobile_money.requests.get", return_value=_response(200, {"status": "FAILED", "amount": "50000"})
    ) as get:
        polled = gateway.verify(result.transaction_id, Provider.MTN)
    assert get.call_args[0][0].endswith(f"/requesttopay/{result.transaction_id}")
    assert polled.provider_status is ProviderStatus.FAILED


def test_timeouts_surface_as_gateway_unavailable():
    client = MtnClient(_config(MTN_API_KEY="k", MTN_API_SECRET="s"))
    with patch("utils.mobile_money.requests.post", side_effect=Timeout("slow")):
        with pytest.raises(GatewayUnavailable):
            client.verify("ref-1")
    with patch("utils.mobile_money.requests.post", side_effect=RequestsConnectionError("down")):
        with pytest.raises(GatewayUnavailable):
            client.initiate(Decimal("1000"), "22997000001", "x")


def test_server_errors_are_retryable_client_errors_are_not():
    client = FedaPayClient(_config(FEDAPAY_API_KEY="sk_live_abc"))
    with patch("utils.mobile_money.requests.get", return_value=_response(502, {})):
        with pytest.raises(GatewayUnavailable) as err:
            client.verify("1")
    assert err.value.to_dict()["retryable"] is True
    with patch("utils.mobile_money.requests.get", return_value=_response(401, {"message": "bad key sk_live_abc"})):
        with pytest.raises(ProviderRejected) as rejected:
            client.verify("1")
    assert "sk_live_abc" not in rejected.value.message


def test_ussd_providers_cannot_be_polled():
    gateway = MobileMoneyGateway.from_config(_config(VODAFONE_API_KEY="voda"))
    with patch("utils.mobile_money.requests.get") as get:
        result = gateway.verify("NB-VODA-1", Provider.VODAFONE)
    get.assert_not_called()
    assert result.provider_status is ProviderStatus.PENDING


def test_status_normalisation():
    for raw in ("success", "COMPLETED", "approved", "SUCCESSFUL"):
        assert normalize_status(raw) is ProviderStatus.COMPLETED
    for raw in ("failed", "cancelled", "canceled", "declined"):
        assert normalize_status(raw) is ProviderStatus.FAILED
    for raw in ("pending", "", None, "processing"):
        assert normalize_status(raw) is ProviderStatus.PENDING


def test_normalize_msisdn():
    assert normalize_msisdn("+229 97 00 00 01", "229") == "22997000001"
    assert normalize_msisdn("0097000001", "229") == "22997000001"
    assert normalize_msisdn("97000001", "229") == "22997000001"
    assert normalize_msisdn("0022997000001", "229") == "22997000001"


def test_fractional_amounts_are_never_truncated():
    mtn = MtnClient(_config(MTN_API_KEY="k", MTN_API_SECRET="s"))
    with patch("utils.mobile_money.requests.post") as post:
        with pytest.raises(ValidationError):
            mtn.initiate(Decimal("1500.75"), "22997000001", "Bulletin payment")
    post.assert_not_called()

    fedapay = FedaPayClient(_config(FEDAPAY_API_KEY="sk_live_abc"))
    with patch("utils.mobile_money.requests.post") as post:
        with pytest.raises(ValidationError):
            fedapay.initiate(Decimal("1500.75"), "22997000001", "Bulletin payment")
    post.assert_not_called()

    created = _response(200, {"v1/transaction": {"id": 9, "payment_url": "https://pay.test/9"}})
    with patch("utils.mobile_money.requests.post", return_value=created) as post:
        fedapay.initiate(Decimal("1500.00"), "22997000001", "Bulletin payment")
    assert post.call_args[1]["json"]["amount"] == 1500
