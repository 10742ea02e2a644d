"""
Unit tests for the SOAP transport — envelope codec, fault handling, retries.

Uses respx to mock httpx calls (never makes real HTTP requests) and an
injected sleep so backoff is recorded instead of waited for.

Test categories:
  - Codec: nested mappings, repeated elements, omitted None values
  - Parsing: SOAP faults, non-XML replies, namespace stripping
  - Retry: transient failures retried with capped exponential backoff,
    everything else raised on the first attempt
"""

from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
import respx
from lxml import etree

from afip_client.adapters.soap_transport import (
    INVOICING_NS,
    ResilientSoapTransport,
    authentication_endpoint,
    build_envelope,
    invoicing_endpoint,
    is_transient,
    parse_response,
)
from afip_client.domain.errors import RemoteFaultError, TransportError
from afip_client.domain.models import Environment
from tests.conftest import last_authorized_response, soap_envelope, soap_fault

ENDPOINT = invoicing_endpoint(Environment.TESTING)
URL = ENDPOINT.url


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def transport(sleeps: list[float]) -> ResilientSoapTransport:
    return ResilientSoapTransport(timeout=5, sleep=sleeps.append)


# ─────────────────────── Codec ───────────────────────


class TestBuildEnvelope:
    """
    GIVEN operation parameters as plain mappings
    WHEN the request envelope is built
    THEN structure follows the mapping and None values are left out.
    """

    def _body(self, params: dict) -> etree._Element:
        root = etree.fromstring(build_envelope(INVOICING_NS, "FECAESolicitar", params))
        ns = {"s": "http://schemas.xmlsoap.org/soap/envelope/", "ar": INVOICING_NS}
        return root.find("s:Body/ar:FECAESolicitar", ns)

    def test_nested_mappings_become_elements(self) -> None:
        body = self._body({"Auth": {"Token": "T", "Sign": "S", "Cuit": "20123456786"}})
        assert body.findtext(f"{{{INVOICING_NS}}}Auth/{{{INVOICING_NS}}}Token") == "T"

    def test_sequences_repeat_the_element(self) -> None:
        body = self._body({"Iva": {"AlicIva": [{"Id": 5}, {"Id": 4}]}})
        ids = [e.text for e in body.iter(f"{{{INVOICING_NS}}}Id")]
        assert ids == ["5", "4"]

    def test_none_values_are_omitted(self) -> None:
        body = self._body({"FchServDesde": None, "MonId": "PES"})
        assert body.find(f"{{{INVOICING_NS}}}FchServDesde") is None
        assert body.findtext(f"{{{INVOICING_NS}}}MonId") == "PES"
        assert b"nil" not in build_envelope(INVOICING_NS, "X", {"A": None})

    def test_decimals_render_fixed_point(self) -> None:
        body = self._body({"ImpTotal": Decimal("121.00"), "MonCotiz": Decimal("1E+0")})
        assert body.findtext(f"{{{INVOICING_NS}}}ImpTotal") == "121.00"
        assert body.findtext(f"{{{INVOICING_NS}}}MonCotiz") == "1"


class TestParseResponse:
    def test_returns_response_element_without_namespaces(self) -> None:
        element = parse_response(last_authorized_response(41), "FECompUltimoAutorizado")
        assert element.tag == "FECompUltimoAutorizadoResponse"
        assert element.findtext("FECompUltimoAutorizadoResult/CbteNro") == "41"

    def test_soap_fault_raises_remote_fault(self) -> None:
        with pytest.raises(RemoteFaultError) as exc_info:
            parse_response(soap_fault("ns1:cms.bad", "CMS invalido"), "loginCms", 500)
        assert exc_info.value.fault_code == "ns1:cms.bad"
        assert exc_info.value.fault_string == "CMS invalido"

    def test_html_error_page_raises_transport_error(self) -> None:
        with pytest.raises(TransportError, match="HTTP 502"):
            parse_response(b"<html><body>Bad gateway", "loginCms", 502)

    def test_missing_response_element(self) -> None:
        with pytest.raises(TransportError, match="lacks loginCmsResponse"):
            parse_response(soap_envelope("<other/>"), "loginCms")


class TestIsTransient:
    @pytest.mark.parametrize(
        "message",
        [
            "ConnectTimeout: timed out",
            "ReadTimeout: The read operation timed out",
            "ConnectError: [Errno 111] Connection refused",
            "ConnectError: [Errno 101] Network is unreachable",
        ],
    )
    def test_transient(self, message: str) -> None:
        assert is_transient(TransportError(message))

    @pytest.mark.parametrize(
        "error",
        [
            RemoteFaultError("soap:Server", "Read timeout on backend"),
            TransportError("ConnectError: [SSL: SSLV3_ALERT_HANDSHAKE_FAILURE]"),
            TransportError("HTTP 500 calling FECAESolicitar"),
            ValueError("timeout"),
        ],
    )
    def test_not_transient(self, error: Exception) -> None:
        assert not is_transient(error)


# ─────────────────────── Calls ───────────────────────


class TestCallSuccess:
    """
    GIVEN a reachable service
    WHEN an operation is called
    THEN a SOAP 1.1 POST is sent and the response element returned.
    """

    @respx.mock
    def test_posts_envelope_with_soap_headers(self, transport: ResilientSoapTransport) -> None:
        route = respx.post(URL).mock(return_value=httpx.Response(200, content=last_authorized_response(7)))

        element = transport.call(ENDPOINT, "FECompUltimoAutorizado", {"PtoVta": 1, "CbteTipo": 6})

        assert element.findtext("FECompUltimoAutorizadoResult/CbteNro") == "7"
        request = route.calls.last.request
        assert request.headers["SOAPAction"] == '"http://ar.gov.afip.dif.FEV1/FECompUltimoAutorizado"'
        assert request.headers["Content-Type"] == "text/xml; charset=utf-8"
        assert b"<ns:PtoVta>1</ns:PtoVta>" in request.content

    @respx.mock
    def test_authentication_endpoint_action(self, transport: ResilientSoapTransport) -> None:
        endpoint = authentication_endpoint(Environment.TESTING)
        route = respx.post(endpoint.url).mock(
            return_value=httpx.Response(200, content=soap_envelope("<loginCmsResponse><loginCmsReturn>x</loginCmsReturn></loginCmsResponse>"))
        )
        transport.call(endpoint, "loginCms", {"in0": "abc"})
        assert route.calls.last.request.headers["SOAPAction"] == '"urn:LoginCms"'


class TestRetry:
    """
    GIVEN failures of different kinds
    WHEN an operation is called
    THEN only transient ones are retried, with doubling capped backoff.
    """

    @respx.mock
    def test_timeout_then_success(self, transport: ResilientSoapTransport, sleeps: list[float]) -> None:
        route = respx.post(URL).mock(
            side_effect=[httpx.ConnectTimeout("timed out"), httpx.Response(200, content=last_authorized_response(3))]
        )
        element = transport.call(ENDPOINT, "FECompUltimoAutorizado", {})
        assert element.findtext("FECompUltimoAutorizadoResult/CbteNro") == "3"
        assert route.call_count == 2
        assert sleeps == [1.0]

    @respx.mock
    def test_gives_up_after_max_attempts(self, transport: ResilientSoapTransport, sleeps: list[float]) -> None:
        route = respx.post(URL).mock(side_effect=httpx.ConnectTimeout)
        with pytest.raises(TransportError) as exc_info:
            transport.call(ENDPOINT, "FECompUltimoAutorizado", {})
        assert route.call_count == 3
        assert sleeps == [1.0, 2.0]
        assert exc_info.value.context == {"service": "wsfe", "method": "FECompUltimoAutorizado"}
        assert isinstance(exc_info.value.__cause__, httpx.ConnectTimeout)

    @respx.mock
    def test_backoff_is_capped(self, sleeps: list[float]) -> None:
        transport = ResilientSoapTransport(max_attempts=5, base_delay=3.0, max_delay=10.0, sleep=sleeps.append)
        respx.post(URL).mock(side_effect=httpx.ConnectError("[Errno 111] Connection refused"))
        with pytest.raises(TransportError, match="Connection refused"):
            transport.call(ENDPOINT, "FECompUltimoAutorizado", {})
        assert sleeps == [3.0, 6.0, 10.0, 10.0]

    @respx.mock
    def test_non_transient_failure_not_retried(self, transport: ResilientSoapTransport, sleeps: list[float]) -> None:
        route = respx.post(URL).mock(side_effect=httpx.ConnectError("[SSL: WRONG_VERSION_NUMBER]"))
        with pytest.raises(TransportError):
            transport.call(ENDPOINT, "FECompUltimoAutorizado", {})
        assert route.call_count == 1
        assert sleeps == []

    @respx.mock
    def test_soap_fault_not_retried(self, transport: ResilientSoapTransport) -> None:
        route = respx.post(URL).mock(return_value=httpx.Response(500, content=soap_fault("soap:Server", "Error interno")))
        with pytest.raises(RemoteFaultError):
            transport.call(ENDPOINT, "FECompUltimoAutorizado", {})
        assert route.call_count == 1

    @respx.mock
    def test_fault_mentioning_timeout_not_retried(self, transport: ResilientSoapTransport, sleeps: list[float]) -> None:
        route = respx.post(URL).mock(
            return_value=httpx.Response(500, content=soap_fault("soap:Server", "Read timeout on backend"))
        )
        with pytest.raises(RemoteFaultError):
            transport.call(ENDPOINT, "FECompUltimoAutorizado", {})
        assert route.call_count == 1
        assert sleeps == []

    @respx.mock
    def test_http_error_without_fault_not_retried(self, transport: ResilientSoapTransport) -> None:
        route = respx.post(URL).mock(return_value=httpx.Response(503, content=b"Service Unavailable"))
        with pytest.raises(TransportError, match="HTTP 503"):
            transport.call(ENDPOINT, "FECompUltimoAutorizado", {})
        assert route.call_count == 1
