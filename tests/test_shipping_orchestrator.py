"""
Tests for the shipping orchestrator: idempotency, auth retry, transient
retry, deadlines, carrier selection and fan-out.
"""
import asyncio
from dataclasses import replace
from decimal import Decimal

import httpx
import pytest

from shipping_gateway.core.exceptions import (
    CarrierAuthError,
    CarrierRejectedError,
    CarrierTransientError,
    ShippingTimeoutError,
    ShippingValidationError,
    TokenRejectedError,
    UnknownCarrierError,
)
from shipping_gateway.models.carrier import CarrierCode, TrackingStatus
from shipping_gateway.models.shipping import TrackingRequest
from shipping_gateway.services.shipping_orchestrator import build_orchestrator

from conftest import delayed

DHL = "dhl.test"
GLS = "gls.test"

GLS_SHIPMENT = {
    "shipmentId": "SHP-1",
    "trackingId": "12345678901",
    "labelData": "label-bytes",
    "totalPrice": {"amount": "9.00", "currency": "EUR"},
}
DHL_SHIPMENT = {
    "shipmentTrackingNumber": "1234567890",
    "documents": [{"url": "https://labels.dhl.test/1234567890.pdf"}],
    "shipmentCharges": [{"priceCurrency": "EUR", "price": 12.5}],
}
DHL_RATES = {
    "products": [
        {
            "productCode": "P",
            "totalPrice": [{"priceCurrency": "EUR", "price": 12.50}],
            "deliveryCapabilities": {"estimatedDeliveryTimeInDays": 3},
        }
    ]
}
GLS_RATES = {
    "rates": [
        {"serviceType": "PARCEL", "totalPrice": {"amount": 12.50, "currency": "EUR"}, "transitDays": 2},
        {"serviceType": "ECONOMY", "totalPrice": {"amount": 9.00, "currency": "EUR"}, "transitDays": 5},
    ]
}
GLS_TRACKING = {"events": [{"timestamp": "2025-04-01T08:00:00Z", "status": "IN_TRANSIT"}]}
DHL_TRACKING = {"shipments": [{"events": [{"timestamp": "2025-04-01T08:00:00Z", "statusCode": "delivered"}]}]}


class TestIdempotentCreation:

    @pytest.mark.asyncio
    async def test_concurrent_creates_make_one_carrier_call(self, orchestrator, fake_api, shipment_request):
        """Ten concurrent submissions of one key create exactly one shipment."""
        fake_api.add(GLS, "POST", "/shipping/shipments", delayed(0.05, 201, GLS_SHIPMENT))

        results = await asyncio.gather(
            *(orchestrator.create_shipment(shipment_request, carrier="GLS") for _ in range(10))
        )

        assert fake_api.count(GLS, "POST", "/shipping/shipments") == 1
        assert fake_api.count(GLS, "POST", "/oauth2/v2/token") == 1
        assert all(result is results[0] for result in results)
        assert results[0].tracking_number == "12345678901"

    @pytest.mark.asyncio
    async def test_repeat_after_success_returns_recorded_result(self, orchestrator, fake_api, shipment_request):
        fake_api.add(GLS, "POST", "/shipping/shipments", (201, GLS_SHIPMENT))

        first = await orchestrator.create_shipment(shipment_request, carrier="GLS")
        second = await orchestrator.create_shipment(shipment_request, carrier=CarrierCode.GLS)

        assert second == first
        assert fake_api.count(GLS, "POST", "/shipping/shipments") == 1

    @pytest.mark.asyncio
    async def test_failure_is_recorded_for_the_key(self, orchestrator, fake_api, shipment_request):
        fake_api.add(GLS, "POST", "/shipping/shipments", (422, {
            "errors": [{"exitCode": "E-1", "exitMessage": "Consignee rejected"}]
        }))

        with pytest.raises(CarrierRejectedError):
            await orchestrator.create_shipment(shipment_request, carrier="GLS")
        with pytest.raises(CarrierRejectedError):
            await orchestrator.create_shipment(shipment_request, carrier="GLS")

        assert fake_api.count(GLS, "POST", "/shipping/shipments") == 1

    @pytest.mark.asyncio
    async def test_key_reused_with_different_payload_rejected(
        self, orchestrator, fake_api, shipment_request, recipient_address
    ):
        fake_api.add(GLS, "POST", "/shipping/shipments", (201, GLS_SHIPMENT))
        await orchestrator.create_shipment(shipment_request, carrier="GLS")

        changed = replace(shipment_request, recipient=replace(recipient_address, city="Antwerp", postal_code="2000"))
        with pytest.raises(ShippingValidationError) as exc_info:
            await orchestrator.create_shipment(changed, carrier="GLS")

        assert exc_info.value.code == "IDEMPOTENCY_KEY_MISMATCH"
        assert fake_api.count(GLS, "POST", "/shipping/shipments") == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_create_distinct_shipments(self, orchestrator, fake_api, shipment_request):
        fake_api.add(GLS, "POST", "/shipping/shipments", (201, GLS_SHIPMENT))

        await orchestrator.create_shipment(shipment_request, carrier="GLS")
        await orchestrator.create_shipment(replace(shipment_request, idempotency_key="other"), carrier="GLS")

        assert fake_api.count(GLS, "POST", "/shipping/shipments") == 2

    @pytest.mark.asyncio
    async def test_caller_timeout_does_not_cancel_creation(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/shipments", delayed(0.1, 201, DHL_SHIPMENT))

        with pytest.raises(ShippingTimeoutError):
            await orchestrator.create_shipment(shipment_request, carrier="DHL", timeout_ms=20)

        result = await orchestrator.create_shipment(shipment_request, carrier="DHL", timeout_ms=2000)

        assert result.tracking_number == "1234567890"
        assert fake_api.count(DHL, "POST", "/shipments") == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_creation(self, orchestrator, fake_api, shipment_request):
        fake_api.add(GLS, "POST", "/shipping/shipments", delayed(0.05, 201, GLS_SHIPMENT))

        caller = asyncio.ensure_future(orchestrator.create_shipment(shipment_request, carrier="GLS"))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        result = await orchestrator.create_shipment(shipment_request, carrier="GLS")

        assert result.tracking_number == "12345678901"
        assert fake_api.count(GLS, "POST", "/shipping/shipments") == 1

    @pytest.mark.asyncio
    async def test_wrong_shape_response_recorded_as_shipping_error(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/shipments", (201, []))

        with pytest.raises(CarrierTransientError) as first:
            await orchestrator.create_shipment(shipment_request, carrier="DHL")
        with pytest.raises(CarrierTransientError) as second:
            await orchestrator.create_shipment(shipment_request, carrier="DHL")

        assert first.value.code == second.value.code == "CARRIER_MALFORMED_RESPONSE"
        assert fake_api.count(DHL, "POST", "/shipments") == 1

    @pytest.mark.asyncio
    async def test_wrong_shape_rates_left_out_of_fan_out(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/rates", (200, []))
        fake_api.add(GLS, "POST", "/shipping/rates", (200, GLS_RATES))

        quotes = await orchestrator.get_rates(shipment_request)

        assert {q.carrier for q in quotes} == {CarrierCode.GLS}

    @pytest.mark.asyncio
    async def test_create_is_not_retried_on_transient_error(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/shipments", (503, {"title": "Service Unavailable"}))

        with pytest.raises(CarrierTransientError):
            await orchestrator.create_shipment(shipment_request, carrier="DHL")

        assert fake_api.count(DHL, "POST", "/shipments") == 1


class TestCreateValidation:

    @pytest.mark.asyncio
    async def test_carrier_required(self, orchestrator, fake_api, shipment_request):
        with pytest.raises(ShippingValidationError) as exc_info:
            await orchestrator.create_shipment(shipment_request)

        assert exc_info.value.fields == ["carrier"]
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_idempotency_key_required(self, orchestrator, fake_api, shipment_request):
        with pytest.raises(ShippingValidationError) as exc_info:
            await orchestrator.create_shipment(replace(shipment_request, idempotency_key=""), carrier="DHL")

        assert "idempotency_key" in exc_info.value.fields
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_unknown_carrier(self, orchestrator, fake_api, shipment_request):
        with pytest.raises(UnknownCarrierError) as exc_info:
            await orchestrator.create_shipment(shipment_request, carrier="FEDEX")

        assert exc_info.value.details["configured"] == ["DHL", "GLS"]
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_disabled_carrier_is_unknown(self, test_settings, http_client, shipment_request):
        dhl_only = test_settings.model_copy(update={"SHIPPING_ENABLED_CARRIERS": ["DHL"]})
        orchestrator = build_orchestrator(dhl_only, http_client=http_client)

        with pytest.raises(UnknownCarrierError):
            await orchestrator.get_rates(shipment_request, carrier="GLS")


class TestValidationBeforeIO:

    @pytest.mark.asyncio
    async def test_three_letter_country_fails_without_network(
        self, orchestrator, fake_api, shipment_request, recipient_address
    ):
        request = replace(shipment_request, recipient=replace(recipient_address, country_code="USA"))

        with pytest.raises(ShippingValidationError) as exc_info:
            await orchestrator.get_rates(request)

        assert "recipient.country_code" in exc_info.value.fields
        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_invalid_address_validation_request_fails_without_network(
        self, orchestrator, fake_api, recipient_address
    ):
        with pytest.raises(ShippingValidationError):
            await orchestrator.validate_address(replace(recipient_address, postal_code=""))

        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_blank_tracking_number_fails_without_network(self, orchestrator, fake_api):
        with pytest.raises(ShippingValidationError):
            await orchestrator.track_shipment(TrackingRequest(""))

        assert fake_api.calls == []


class TestTokenHandling:

    @pytest.mark.asyncio
    async def test_token_reused_across_operations(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/rates", (200, DHL_RATES))
        fake_api.add(DHL, "GET", "/tracking/1234567890", (200, DHL_TRACKING))

        await orchestrator.get_rates(shipment_request, carrier="DHL")
        await orchestrator.get_rates(shipment_request, carrier="DHL")
        await orchestrator.track_shipment(TrackingRequest("1234567890", CarrierCode.DHL))

        assert fake_api.count(DHL, "POST", "/auth/v4/accesstoken") == 1

    @pytest.mark.asyncio
    async def test_single_401_triggers_one_reauth_and_one_retry(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/rates", (401, {"title": "Unauthorized"}), (200, DHL_RATES))

        quotes = await orchestrator.get_rates(shipment_request, carrier="DHL")

        assert len(quotes) == 1
        assert fake_api.count(DHL, "POST", "/auth/v4/accesstoken") == 2
        rate_calls = fake_api.requests_to(DHL, "POST", "/rates")
        assert [r.headers["Authorization"] for r in rate_calls] == ["Bearer dhl-token-1", "Bearer dhl-token-2"]

    @pytest.mark.asyncio
    async def test_second_401_is_terminal(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/rates", (401, {"title": "Unauthorized"}))

        with pytest.raises(CarrierAuthError) as exc_info:
            await orchestrator.get_rates(shipment_request, carrier="DHL")

        assert not isinstance(exc_info.value, TokenRejectedError)
        assert fake_api.count(DHL, "POST", "/auth/v4/accesstoken") == 2
        assert fake_api.count(DHL, "POST", "/rates") == 2

    @pytest.mark.asyncio
    async def test_create_retried_once_after_401(self, orchestrator, fake_api, shipment_request):
        fake_api.add(GLS, "POST", "/shipping/shipments", (401, {"error": "invalid_token"}), (201, GLS_SHIPMENT))

        result = await orchestrator.create_shipment(shipment_request, carrier="GLS")

        assert result.tracking_number == "12345678901"
        assert fake_api.count(GLS, "POST", "/shipping/shipments") == 2


class TestRetryAndTimeout:

    @pytest.mark.asyncio
    async def test_transient_errors_retried_until_success(self, orchestrator, fake_api, shipment_request):
        fake_api.add(
            GLS, "POST", "/shipping/rates",
            (503, {"errors": []}), (503, {"errors": []}), (200, GLS_RATES),
        )

        quotes = await orchestrator.get_rates(shipment_request, carrier="GLS")

        assert len(quotes) == 2
        assert fake_api.count(GLS, "POST", "/shipping/rates") == 3

    @pytest.mark.asyncio
    async def test_transient_errors_stop_at_max_attempts(self, orchestrator, fake_api, shipment_request):
        fake_api.add(GLS, "POST", "/shipping/rates", (503, {"errors": []}))

        with pytest.raises(CarrierTransientError) as exc_info:
            await orchestrator.get_rates(shipment_request, carrier="GLS")

        assert exc_info.value.status_code == 503
        assert fake_api.count(GLS, "POST", "/shipping/rates") == 3

    @pytest.mark.asyncio
    async def test_rejections_are_not_retried(self, orchestrator, fake_api, shipment_request):
        fake_api.add(GLS, "POST", "/shipping/rates", (400, {"errors": [{"exitCode": "E", "exitMessage": "bad"}]}))

        with pytest.raises(CarrierRejectedError):
            await orchestrator.get_rates(shipment_request, carrier="GLS")

        assert fake_api.count(GLS, "POST", "/shipping/rates") == 1

    @pytest.mark.asyncio
    async def test_deadline_raises_timeout_not_transient(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/rates", delayed(1.0, 200, DHL_RATES))

        with pytest.raises(ShippingTimeoutError) as exc_info:
            await orchestrator.get_rates(shipment_request, carrier="DHL", timeout_ms=50)

        assert not isinstance(exc_info.value, CarrierTransientError)
        assert exc_info.value.timeout_ms == 50
        assert exc_info.value.carrier == "DHL"


class TestRateFanOut:

    @pytest.mark.asyncio
    async def test_quotes_merged_by_cost_then_transit_days(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/rates", (200, DHL_RATES))
        fake_api.add(GLS, "POST", "/shipping/rates", (200, GLS_RATES))

        quotes = await orchestrator.get_rates(shipment_request)

        assert [(q.cost, q.estimated_days) for q in quotes] == [
            (Decimal("9.0"), 5),
            (Decimal("12.5"), 2),
            (Decimal("12.5"), 3),
        ]
        assert [q.carrier for q in quotes] == [CarrierCode.GLS, CarrierCode.GLS, CarrierCode.DHL]

    @pytest.mark.asyncio
    async def test_failing_carrier_left_out(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/rates", (500, {"title": "Internal Server Error"}))
        fake_api.add(GLS, "POST", "/shipping/rates", (200, GLS_RATES))

        quotes = await orchestrator.get_rates(shipment_request)

        assert {q.carrier for q in quotes} == {CarrierCode.GLS}
        assert len(quotes) == 2

    @pytest.mark.asyncio
    async def test_every_carrier_failing_raises_first_error(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/rates", (422, {"title": "Unprocessable", "detail": "Route not served"}))
        fake_api.add(GLS, "POST", "/shipping/rates", (503, {"errors": []}))

        with pytest.raises(CarrierRejectedError) as exc_info:
            await orchestrator.get_rates(shipment_request)

        assert exc_info.value.carrier == "DHL"

    @pytest.mark.asyncio
    async def test_empty_answer_is_not_an_error(self, orchestrator, fake_api, shipment_request):
        fake_api.add(DHL, "POST", "/rates", (200, {"products": []}))
        fake_api.add(GLS, "POST", "/shipping/rates", (200, {"rates": []}))

        assert await orchestrator.get_rates(shipment_request) == ()

    @pytest.mark.asyncio
    async def test_rate_cache_skips_repeat_calls(self, test_settings, http_client, fake_api, shipment_request):
        cached_settings = test_settings.model_copy(update={"SHIPPING_RATE_CACHE_ENABLED": True})
        orchestrator = build_orchestrator(cached_settings, http_client=http_client)
        fake_api.add(GLS, "POST", "/shipping/rates", (200, GLS_RATES))

        first = await orchestrator.get_rates(shipment_request, carrier="GLS")
        second = await orchestrator.get_rates(shipment_request, carrier="GLS")
        await orchestrator.get_rates(shipment_request, carrier="GLS", use_cache=False)

        assert first == second
        assert fake_api.count(GLS, "POST", "/shipping/rates") == 2
        assert orchestrator.get_stats()["rate_cache"]["hits"] == 1


class TestTracking:

    @pytest.mark.asyncio
    async def test_carrier_inferred_from_tracking_number(self, orchestrator, fake_api):
        fake_api.add(GLS, "GET", "/tracking/12345678901", (200, GLS_TRACKING))

        result = await orchestrator.track_shipment(TrackingRequest("12345678901"))

        assert result.carrier == CarrierCode.GLS
        assert result.current_status == TrackingStatus.IN_TRANSIT
        assert fake_api.count(DHL, "GET", "/tracking/12345678901") == 0

    @pytest.mark.asyncio
    async def test_unrecognised_number_broadcast_first_success_wins(self, orchestrator, fake_api):
        fake_api.add(DHL, "GET", "/tracking/REF-778", (404, {"title": "Not Found"}))
        fake_api.add(GLS, "GET", "/tracking/REF-778", (200, GLS_TRACKING))

        result = await orchestrator.track_shipment(TrackingRequest("REF-778"))

        assert result.carrier == CarrierCode.GLS
        assert result.tracking_number == "REF-778"
        assert fake_api.count(DHL, "GET", "/tracking/REF-778") == 1

    @pytest.mark.asyncio
    async def test_broadcast_with_no_match_is_rejection(self, orchestrator, fake_api):
        with pytest.raises(CarrierRejectedError) as exc_info:
            await orchestrator.track_shipment(TrackingRequest("REF-404"))

        assert exc_info.value.code == "TRACKING_NUMBER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_explicit_carrier_routes_directly(self, orchestrator, fake_api):
        fake_api.add(DHL, "GET", "/tracking/1234567890", (200, DHL_TRACKING))

        result = await orchestrator.track_shipment(TrackingRequest("1234567890", CarrierCode.DHL))

        assert result.delivered is True
        assert [c.url.host for c in fake_api.calls if c.url.path.startswith("/tracking")] == [DHL]


class TestAddressValidationAndHealth:

    @pytest.mark.asyncio
    async def test_falls_back_to_next_carrier_when_unavailable(self, orchestrator, fake_api, recipient_address):
        fake_api.add(DHL, "GET", "/address-validation", (503, {"title": "Service Unavailable"}))
        fake_api.add(GLS, "POST", "/address-validation", (200, {"valid": True}))

        result = await orchestrator.validate_address(recipient_address)

        assert result.carrier == CarrierCode.GLS
        assert result.valid is True
        assert fake_api.count(DHL, "GET", "/address-validation") == 3

    @pytest.mark.asyncio
    async def test_rejection_does_not_fall_back(self, orchestrator, fake_api, recipient_address):
        fake_api.add(DHL, "GET", "/address-validation", (400, {"title": "Bad Request", "detail": "Bad city"}))

        with pytest.raises(CarrierRejectedError):
            await orchestrator.validate_address(recipient_address)

        assert fake_api.count(GLS, "POST", "/address-validation") == 0

    @pytest.mark.asyncio
    async def test_authentication_status_per_carrier(self, orchestrator, fake_api):
        fake_api.add(GLS, "POST", "/oauth2/v2/token", (401, {"error": "invalid_client"}))

        statuses = await orchestrator.test_authentication()

        by_carrier = {s.carrier: s for s in statuses}
        assert by_carrier[CarrierCode.DHL].authenticated is True
        assert by_carrier[CarrierCode.GLS].authenticated is False

    @pytest.mark.asyncio
    async def test_owned_http_client_closed(self, test_settings):
        orchestrator = build_orchestrator(test_settings)
        client = orchestrator._http_client

        async with orchestrator:
            pass

        assert client.is_closed
        assert orchestrator._http_client is None


@pytest.mark.asyncio
async def test_network_failure_then_recovery(orchestrator, fake_api, shipment_request):
    attempts = 0

    def flaky(request):
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise httpx.ReadTimeout("read timed out", request=request)
        return httpx.Response(200, json=GLS_RATES)

    fake_api.add(GLS, "POST", "/shipping/rates", flaky)

    quotes = await orchestrator.get_rates(shipment_request, carrier="GLS")

    assert len(quotes) == 2
    assert attempts == 2
