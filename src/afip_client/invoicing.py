"""
Invoice authorization client — requests CAEs from the WSFE service.

Each authorization attempt walks a fixed sequence, logged as
`invoice.state` events:

  START → AUTHENTICATED → NUMBER_RESOLVED → MAPPED → SUBMITTED
        → AUTHORIZED | REJECTED | ERROR

Local validation runs before the first remote call. The number is always
resolved against a fresh FECompUltimoAutorizado query: a requested number
at or below the last authorized one becomes last + 1, a higher one is sent
unchanged. Nothing is persisted locally; the remote is the only source of
truth for correlativity. Rejections are never retried.

Parameter queries (invoice types, points of sale) are cached separately
and filtered by validity window on the query date.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import date, datetime
from enum import StrEnum
from typing import Any, TypeVar

import structlog
from lxml import etree

from afip_client.adapters.request_signer import ARGENTINA_TZ
from afip_client.adapters.soap_transport import SoapEndpoint, invoicing_endpoint
from afip_client.domain.errors import AuthorizationError, InvoicingError, TransportError
from afip_client.domain.models import (
    AuthorizationResult,
    Environment,
    Invoice,
    InvoiceTypeEntry,
    LastAuthorized,
    PointOfSaleEntry,
    RemoteMessage,
    Token,
)
from afip_client.domain.ports import KeyValueCache, SoapCaller, TokenProvider
from afip_client.invoice_mapper import InvoiceMapper, auth_block
from afip_client.token_cache import cache_key

log = structlog.get_logger()

ACCEPTED = "A"
# FEParamGet* answer "no results" as an error entry with this code.
_NO_RESULTS = "602"

T = TypeVar("T")


class AuthorizationState(StrEnum):
    START = "START"
    AUTHENTICATED = "AUTHENTICATED"
    NUMBER_RESOLVED = "NUMBER_RESOLVED"
    MAPPED = "MAPPED"
    SUBMITTED = "SUBMITTED"
    AUTHORIZED = "AUTHORIZED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


def _today() -> date:
    return datetime.now(ARGENTINA_TZ).date()


def resolve_invoice_number(requested: int, last_authorized: int) -> int:
    """Keep a number above the last authorized one; otherwise use the next one."""
    if requested > last_authorized:
        return requested
    return last_authorized + 1


def parse_wire_date(value: str | None) -> date | None:
    """YYYYMMDD → date; blanks, zeros and "NULL" → None; impossible dates raise TransportError."""
    if value is None:
        return None
    text = value.strip()
    if len(text) != 8 or not text.isdigit() or int(text) == 0:
        return None
    try:
        return date(int(text[:4]), int(text[4:6]), int(text[6:]))
    except ValueError as e:
        raise TransportError(f"Malformed date in response: {value!r}") from e


def parse_wire_int(value: str | None, default: int, field: str) -> int:
    """Integer field of a response; a missing value yields `default`."""
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as e:
        raise TransportError(f"Malformed {field} in response: {value!r}") from e


def remote_messages(element: etree._Element | None, path: str) -> list[RemoteMessage]:
    """Collect Code/Msg pairs found at `path` (e.g. "Errors/Err")."""
    if element is None:
        return []
    return [
        RemoteMessage(
            code=(entry.findtext("Code") or "").strip(),
            message=(entry.findtext("Msg") or "").strip(),
        )
        for entry in element.iterfind(path)
    ]


class InvoiceAuthorizationClient:
    """
    Authorize invoices and query the invoicing service's parameters.

    `tokens` supplies access tickets (normally an AuthenticationClient);
    `param_cache` is optional and only used for parameter queries.
    """

    def __init__(
        self,
        tokens: TokenProvider,
        transport: SoapCaller,
        environment: Environment,
        endpoint: SoapEndpoint | None = None,
        mapper: InvoiceMapper | None = None,
        param_cache: KeyValueCache | None = None,
        param_cache_ttl_seconds: int = 21600,
        param_cache_enabled: bool = True,
        cache_prefix: str = "afip_sdk",
        service: str = "wsfe",
        today: Callable[[], date] = _today,
    ) -> None:
        self._tokens = tokens
        self._transport = transport
        self._environment = environment
        self._endpoint = endpoint or invoicing_endpoint(environment)
        self._mapper = mapper or InvoiceMapper()
        self._param_cache = param_cache if param_cache_enabled else None
        self._param_ttl = param_cache_ttl_seconds
        self._prefix = cache_prefix
        self._service = service
        self._today = today

    # ─────────────────────── Authorization ───────────────────────

    def authorize(self, invoice: Invoice, tenant_id: str | None = None) -> AuthorizationResult:
        """
        Obtain a CAE for `invoice`.

        Raises ValidationError before any remote call when the invoice is
        locally invalid, AuthorizationError when the remote rejects it.
        """
        tenant = self._tokens.resolve_tenant(tenant_id)
        bound = log.bind(
            tenant=tenant,
            point_of_sale=invoice.point_of_sale,
            invoice_type=invoice.invoice_type,
        )
        bound.info("invoice.state", state=AuthorizationState.START)
        self._mapper.validate(invoice)

        state = AuthorizationState.START
        try:
            token = self._tokens.get_token(self._service, tenant)
            state = AuthorizationState.AUTHENTICATED
            bound.info("invoice.state", state=state)

            last = self._query_last_authorized(token, tenant, invoice.point_of_sale, invoice.invoice_type)
            number = resolve_invoice_number(invoice.number, last.number)
            if number != invoice.number:
                bound.info("invoice.number_replaced", requested=invoice.number, last=last.number, resolved=number)
            state = AuthorizationState.NUMBER_RESOLVED
            bound.info("invoice.state", state=state, number=number)

            wire = self._mapper.to_wire_format(replace(invoice, number=number), tenant)
            state = AuthorizationState.MAPPED
            bound.info("invoice.state", state=state)

            response = self._call("FECAESolicitar", wire.as_params(token))
            state = AuthorizationState.SUBMITTED
            bound.info("invoice.state", state=state)

            result = self._interpret(response, invoice, number)
        except AuthorizationError as e:
            rejected = AuthorizationState.REJECTED if state is AuthorizationState.SUBMITTED else AuthorizationState.ERROR
            bound.warning("invoice.state", state=rejected, error=e.full_message())
            raise e.add_context(operation="FECAESolicitar", tenant=tenant)
        except InvoicingError as e:
            bound.error("invoice.state", state=AuthorizationState.ERROR, after=state, error=e.full_message())
            raise e.add_context(operation="FECAESolicitar", tenant=tenant)

        bound.info(
            "invoice.state",
            state=AuthorizationState.AUTHORIZED,
            number=result.invoice_number,
            cae=result.cae,
            observations=len(result.observations),
        )
        return result

    def last_authorized(
        self, point_of_sale: int, invoice_type: int, tenant_id: str | None = None
    ) -> LastAuthorized:
        """Last number the remote authorized for (point_of_sale, invoice_type)."""
        tenant = self._tokens.resolve_tenant(tenant_id)
        token = self._tokens.get_token(self._service, tenant)
        try:
            return self._query_last_authorized(token, tenant, point_of_sale, invoice_type)
        except InvoicingError as e:
            raise e.add_context(operation="FECompUltimoAutorizado", tenant=tenant)

    def _query_last_authorized(
        self, token: Token, tenant: str, point_of_sale: int, invoice_type: int
    ) -> LastAuthorized:
        response = self._call(
            "FECompUltimoAutorizado",
            {"Auth": auth_block(token, tenant), "PtoVta": point_of_sale, "CbteTipo": invoice_type},
        )
        result = self._result(response, "FECompUltimoAutorizado")
        errors = remote_messages(result, "Errors/Err")
        if errors:
            raise AuthorizationError("Last authorized number query was rejected", errors)
        last = LastAuthorized(
            point_of_sale=parse_wire_int(result.findtext("PtoVta"), point_of_sale, "PtoVta"),
            invoice_type=parse_wire_int(result.findtext("CbteTipo"), invoice_type, "CbteTipo"),
            number=parse_wire_int(result.findtext("CbteNro"), 0, "CbteNro"),
            issue_date=parse_wire_date(result.findtext("CbteFch")),
        )
        log.info("invoice.last_authorized", tenant=tenant, point_of_sale=point_of_sale, invoice_type=invoice_type, number=last.number)
        return last

    def _interpret(self, response: etree._Element, invoice: Invoice, number: int) -> AuthorizationResult:
        result = self._result(response, "FECAESolicitar")
        header_result = (result.findtext("FeCabResp/Resultado") or "").strip()
        detail = result.find("FeDetResp/FECAEDetResponse")
        detail_result = (detail.findtext("Resultado") or "").strip() if detail is not None else ""

        errors = remote_messages(result, "Errors/Err") + remote_messages(result, "FeCabResp/Errors/Err")
        observations = remote_messages(detail, "Observaciones/Obs")
        for event in remote_messages(result, "Events/Evt"):
            log.info("invoice.remote_event", code=event.code, message=event.message)

        if header_result != ACCEPTED or detail_result != ACCEPTED:
            raise AuthorizationError(
                f"Invoice rejected (header result {header_result or '-'}, detail result {detail_result or '-'})",
                errors + observations,
            )

        assert detail is not None  # detail_result == "A" implies a detail block
        cae = (detail.findtext("CAE") or "").strip()
        cae_expiration = parse_wire_date(detail.findtext("CAEFchVto"))
        if not cae or cae_expiration is None:
            raise AuthorizationError("Accepted response lacks a CAE or its expiration date", errors + observations)

        assigned = parse_wire_int(detail.findtext("CbteDesde"), number, "CbteDesde")
        return AuthorizationResult(
            cae=cae,
            cae_expiration=cae_expiration,
            invoice_number=assigned,
            point_of_sale=invoice.point_of_sale,
            invoice_type=invoice.invoice_type,
            observations=tuple(observations),
        )

    # ─────────────────────── Parameters ───────────────────────

    def invoice_types(self, tenant_id: str | None = None, on: date | None = None) -> list[InvoiceTypeEntry]:
        """Invoice types accepted on `on` (default today), via FEParamGetTiposCbte."""
        tenant = self._tokens.resolve_tenant(tenant_id)
        entries = self._cached(tenant, "cbte_types", lambda token: self._fetch_invoice_types(token, tenant))
        day = on or self._today()
        return [entry for entry in entries if entry.is_active(day)]

    def points_of_sale(self, tenant_id: str | None = None, on: date | None = None) -> list[PointOfSaleEntry]:
        """Unblocked points of sale enabled on `on` (default today), via FEParamGetPtosVenta."""
        tenant = self._tokens.resolve_tenant(tenant_id)
        entries = self._cached(tenant, "points_of_sale", lambda token: self._fetch_points_of_sale(token, tenant))
        day = on or self._today()
        return [entry for entry in entries if entry.is_active(day) and not entry.blocked]

    def clear_param_cache(self, tenant_id: str | None = None) -> None:
        tenant = self._tokens.resolve_tenant(tenant_id)
        if self._param_cache is None:
            return
        for kind in ("cbte_types", "points_of_sale"):
            self._param_cache.forget(cache_key(self._prefix, self._environment, kind, tenant))
        log.info("params.cache_cleared", tenant=tenant)

    def _cached(self, tenant: str, kind: str, fetch: Callable[[Token], tuple[T, ...]]) -> tuple[T, ...]:
        key = cache_key(self._prefix, self._environment, kind, tenant)
        if self._param_cache is not None:
            hit = self._param_cache.get(key)
            if hit is not None:
                log.debug("params.cache_hit", kind=kind, tenant=tenant)
                return hit
        token = self._tokens.get_token(self._service, tenant)
        try:
            entries = fetch(token)
        except InvoicingError as e:
            raise e.add_context(operation=kind, tenant=tenant)
        if self._param_cache is not None:
            self._param_cache.put(key, entries, self._param_ttl)
        return entries

    def _fetch_invoice_types(self, token: Token, tenant: str) -> tuple[InvoiceTypeEntry, ...]:
        result = self._param_result("FEParamGetTiposCbte", token, tenant)
        return tuple(
            InvoiceTypeEntry(
                code=parse_wire_int(entry.findtext("Id"), 0, "Id"),
                description=(entry.findtext("Desc") or "").strip(),
                valid_from=parse_wire_date(entry.findtext("FchDesde")),
                valid_to=parse_wire_date(entry.findtext("FchHasta")),
            )
            for entry in result.iterfind("ResultGet/CbteTipo")
        )

    def _fetch_points_of_sale(self, token: Token, tenant: str) -> tuple[PointOfSaleEntry, ...]:
        result = self._param_result("FEParamGetPtosVenta", token, tenant)
        return tuple(
            PointOfSaleEntry(
                number=parse_wire_int(entry.findtext("Nro"), 0, "Nro"),
                emission_type=(entry.findtext("EmisionTipo") or entry.findtext("Tipo") or "").strip(),
                blocked=(entry.findtext("Bloqueado") or "N").strip().upper() == "S",
                valid_from=parse_wire_date(entry.findtext("FchDesde")),
                valid_to=parse_wire_date(entry.findtext("FchHasta")) or parse_wire_date(entry.findtext("FchBaja")),
            )
            for entry in result.iterfind("ResultGet/PtoVenta")
        )

    def _param_result(self, method: str, token: Token, tenant: str) -> etree._Element:
        response = self._call(method, {"Auth": auth_block(token, tenant)})
        result = self._result(response, method)
        errors = [e for e in remote_messages(result, "Errors/Err") if e.code != _NO_RESULTS]
        if errors:
            raise AuthorizationError(f"{method} query was rejected", errors)
        return result

    # ─────────────────────── Plumbing ───────────────────────

    def _call(self, method: str, params: Mapping[str, Any]) -> etree._Element:
        return self._transport.call(self._endpoint, method, params)

    @staticmethod
    def _result(response: etree._Element, method: str) -> etree._Element:
        result = response.find(f"{method}Result")
        if result is None:
            raise TransportError(f"Response to {method} lacks {method}Result")
        return result
