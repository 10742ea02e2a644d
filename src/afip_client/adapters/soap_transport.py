"""
SOAP transport adapter — resilient SOAP 1.1 calls over httpx.

Adapter layer — implements the SoapCaller port:
  - lxml builds the request envelope from plain mappings and parses replies
  - httpx performs the POST with a per-call timeout and a pinned TLS context
  - tenacity retries transient failures with capped exponential backoff

Only failures whose text matches TRANSIENT_PATTERNS are retried (timeouts,
refused connections, unreachable networks); everything else, SOAP faults
included, propagates on the first attempt. Response elements come back with
namespaces stripped so callers can use plain paths like "FeCabResp/Resultado".
"""

from __future__ import annotations

import ssl
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx
import structlog
from lxml import etree
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from afip_client.domain.errors import RemoteFaultError, TransportError
from afip_client.domain.models import Environment

log = structlog.get_logger()

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
AUTHENTICATION_NS = "http://wsaa.view.sua.dvad.gov.ar/"
INVOICING_NS = "http://ar.gov.afip.dif.FEV1/"

AUTHENTICATION_URLS: dict[Environment, str] = {
    Environment.TESTING: "https://wsaahomo.afip.gov.ar/ws/services/LoginCms",
    Environment.PRODUCTION: "https://wsaa.afip.gov.ar/ws/services/LoginCms",
}
INVOICING_URLS: dict[Environment, str] = {
    Environment.TESTING: "https://wswhomo.afip.gov.ar/wsfev1/service.asmx",
    Environment.PRODUCTION: "https://servicios1.afip.gov.ar/wsfev1/service.asmx",
}

TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "network unreachable",
    "network is unreachable",
    "could not connect",
)

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


@dataclass(frozen=True, slots=True)
class SoapEndpoint:
    """Where and how to reach one remote service."""

    name: str
    url: str
    namespace: str
    action_template: str

    def soap_action(self, method: str) -> str:
        return self.action_template.format(method=method)


def authentication_endpoint(environment: Environment, url: str | None = None) -> SoapEndpoint:
    return SoapEndpoint(
        name="wsaa",
        url=url or AUTHENTICATION_URLS[environment],
        namespace=AUTHENTICATION_NS,
        action_template="urn:LoginCms",
    )


def invoicing_endpoint(environment: Environment, url: str | None = None) -> SoapEndpoint:
    return SoapEndpoint(
        name="wsfe",
        url=url or INVOICING_URLS[environment],
        namespace=INVOICING_NS,
        action_template=INVOICING_NS + "{method}",
    )


# ─────────────────────── Envelope codec ───────────────────────


def render_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def _append(parent: etree._Element, namespace: str, name: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, Mapping):
        element = etree.SubElement(parent, f"{{{namespace}}}{name}")
        for key, child in value.items():
            _append(element, namespace, key, child)
    elif isinstance(value, Sequence) and not isinstance(value, str):
        for item in value:
            _append(parent, namespace, name, item)
    else:
        etree.SubElement(parent, f"{{{namespace}}}{name}").text = render_scalar(value)


def build_envelope(namespace: str, method: str, params: Mapping[str, Any]) -> bytes:
    """
    Build a SOAP 1.1 request envelope.

    Mappings become nested elements, sequences become repeated elements with
    the same name, and None values are omitted entirely (the remote rejects
    explicit nulls).
    """
    envelope = etree.Element(
        f"{{{SOAP_ENV_NS}}}Envelope", nsmap={"soapenv": SOAP_ENV_NS, "ns": namespace}
    )
    etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    _append(body, namespace, method, dict(params))
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def strip_namespaces(element: etree._Element) -> etree._Element:
    """Rewrite every tag under `element` to its local name, in place."""
    for node in element.iter():
        if isinstance(node.tag, str):
            node.tag = etree.QName(node).localname
    etree.cleanup_namespaces(element)
    return element


def parse_response(content: bytes, method: str, status_code: int = 200) -> etree._Element:
    """
    Extract `<method>Response` from a SOAP reply.

    Raises RemoteFaultError for SOAP faults and TransportError for HTTP
    errors or anything that is not a SOAP envelope.
    """
    try:
        root = etree.fromstring(content, parser=_PARSER)
    except etree.XMLSyntaxError as e:
        raise TransportError(
            f"HTTP {status_code}: response to {method} is not XML"
        ) from e

    body = root.find(f"{{{SOAP_ENV_NS}}}Body")
    if body is None:
        raise TransportError(f"HTTP {status_code}: response to {method} has no SOAP body")

    fault = body.find(f"{{{SOAP_ENV_NS}}}Fault")
    if fault is not None:
        raise RemoteFaultError(
            fault_code=(fault.findtext("faultcode") or "").strip(),
            fault_string=(fault.findtext("faultstring") or "").strip(),
        )
    if status_code >= 400:
        raise TransportError(f"HTTP {status_code} calling {method}")

    for child in body:
        if isinstance(child.tag, str) and etree.QName(child).localname == f"{method}Response":
            return strip_namespaces(child)
    raise TransportError(f"Response to {method} lacks {method}Response")


# ─────────────────────── Transport ───────────────────────


def is_transient(error: BaseException) -> bool:
    """Retry only TransportErrors whose text names a transient cause; SOAP faults never."""
    if not isinstance(error, TransportError) or isinstance(error, RemoteFaultError):
        return False
    text = str(error).lower()
    return any(pattern in text for pattern in TRANSIENT_PATTERNS)


def create_ssl_context(ciphers: str = "DEFAULT:!DH", security_level: int = 1) -> ssl.SSLContext:
    """
    TLS context accepted by the remote hosts.

    They negotiate small DH parameters that current OpenSSL defaults refuse,
    so DH suites are excluded and the security level lowered.
    """
    context = ssl.create_default_context()
    context.set_ciphers(f"{ciphers}:@SECLEVEL={security_level}")
    return context


class ResilientSoapTransport:
    """
    Call SOAP operations with bounded retries.

    Implements the SoapCaller port. Backoff waits base_delay, 2×base_delay,
    4×base_delay... capped at max_delay, for at most max_attempts tries.
    """

    def __init__(
        self,
        timeout: float = 30,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        ssl_context: ssl.SSLContext | None = None,
        user_agent: str = "afip-client",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._ssl_context = ssl_context or create_ssl_context()
        self._user_agent = user_agent
        self._sleep = sleep

    def call(
        self,
        endpoint: SoapEndpoint,
        method: str,
        params: Mapping[str, Any],
    ) -> etree._Element:
        payload = build_envelope(endpoint.namespace, method, params)
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._base_delay, max=self._max_delay),
            retry=retry_if_exception(is_transient),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retrying(self._post, endpoint, method, payload)
        except TransportError as e:
            log.warning("soap.failed", service=endpoint.name, method=method, error=str(e))
            raise e.add_context(service=endpoint.name, method=method)

    def _post(self, endpoint: SoapEndpoint, method: str, payload: bytes) -> etree._Element:
        """One HTTP attempt. httpx failures become TransportError with their class name in the text."""
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": f'"{endpoint.soap_action(method)}"',
            "User-Agent": self._user_agent,
        }
        started = time.perf_counter()
        try:
            with httpx.Client(timeout=self._timeout, verify=self._ssl_context) as client:
                response = client.post(endpoint.url, content=payload, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

        log.debug(
            "soap.response",
            service=endpoint.name,
            method=method,
            status=response.status_code,
            elapsed_ms=round((time.perf_counter() - started) * 1000),
        )
        return parse_response(response.content, method, response.status_code)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "soap.retrying",
            attempt=retry_state.attempt_number,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )
