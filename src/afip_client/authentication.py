"""
Authentication client — obtains access tickets from the WSAA service.

Flow per (tenant, service, environment):

  normalize tenant id
    → TokenCache hit? return it
    → CertificateStore.resolve + validate
      → RequestSigner.build_request + sign
        → loginCms(in0=<envelope>) via the SOAP transport
          → parse loginTicketResponse → Token
            → TokenCache.put → return

Concurrent callers missing the cache for the same key wait on a per-key
lock, so one exchange serves them all. Certificate problems surface as
CertificateError; every later failure is reported as AuthenticationError
chained to its cause, with the remote fault code/string when there is one.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog
from lxml import etree

from afip_client.adapters.certificate_store import CertificateStore
from afip_client.adapters.request_signer import ARGENTINA_TZ, RequestSigner
from afip_client.adapters.soap_transport import SoapEndpoint, authentication_endpoint
from afip_client.domain import tenant
from afip_client.domain.errors import AuthenticationError, InvalidTenantError, RemoteFaultError, TransportError
from afip_client.domain.models import Environment, Token
from afip_client.domain.ports import SoapCaller
from afip_client.token_cache import TokenCache

log = structlog.get_logger()

_TICKET_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def parse_ticket_time(value: str | None) -> datetime | None:
    """Parse an ISO-8601 ticket timestamp; naive values are Argentina local time."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ARGENTINA_TZ)
    return parsed


class AuthenticationClient:
    """
    Produce valid tokens for target services (e.g. "wsfe").

    Implements the TokenProvider port. `default_tenant_id` is used when a
    call does not name a tenant (single-tenant deployments).
    """

    def __init__(
        self,
        certificate_store: CertificateStore,
        signer: RequestSigner,
        transport: SoapCaller,
        token_cache: TokenCache,
        environment: Environment,
        endpoint: SoapEndpoint | None = None,
        default_tenant_id: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
        fallback_validity: timedelta = timedelta(hours=24),
    ) -> None:
        self._store = certificate_store
        self._signer = signer
        self._transport = transport
        self._cache = token_cache
        self._environment = environment
        self._endpoint = endpoint or authentication_endpoint(environment)
        self._default_tenant_id = default_tenant_id
        self._clock = clock
        self._fallback_validity = fallback_validity
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def environment(self) -> Environment:
        return self._environment

    def resolve_tenant(self, tenant_id: str | None) -> str:
        """Normalize the given tenant id, falling back to the default one."""
        candidate = tenant_id if tenant_id is not None else self._default_tenant_id
        if candidate is None:
            raise InvalidTenantError("No tenant identifier given and no default configured")
        return tenant.normalize(candidate)

    def get_token(self, service: str, tenant_id: str | None = None) -> Token:
        tenant_key = self.resolve_tenant(tenant_id)
        cached = self._cache.get(tenant_key, service, self._environment)
        if cached is not None:
            log.debug("token.cache_hit", tenant=tenant_key, service=service)
            return cached

        with self._lock_for(self._cache.key(tenant_key, service, self._environment)):
            cached = self._cache.get(tenant_key, service, self._environment)
            if cached is not None:
                return cached
            token = self._authenticate(service, tenant_key)
            self._cache.put(tenant_key, service, self._environment, token)
            return token

    def has_valid_token(self, service: str, tenant_id: str | None = None) -> bool:
        """True when a cached ticket can still be served without a new exchange."""
        tenant_key = self.resolve_tenant(tenant_id)
        return self._cache.get(tenant_key, service, self._environment) is not None

    def clear_token(self, service: str, tenant_id: str | None = None) -> None:
        tenant_key = self.resolve_tenant(tenant_id)
        self._cache.forget(tenant_key, service, self._environment)
        log.info("token.cleared", tenant=tenant_key, service=service)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _authenticate(self, service: str, tenant_id: str) -> Token:
        context = {"operation": "loginCms", "tenant": tenant_id, "service": service}
        credentials = self._store.resolve(tenant_id)
        self._store.validate(credentials)

        request = self._signer.build_request(service, tenant_id, self._environment)
        envelope = self._signer.sign(request, credentials)

        try:
            response = self._transport.call(self._endpoint, "loginCms", {"in0": envelope})
        except RemoteFaultError as e:
            raise AuthenticationError(
                f"Authentication service refused the access request: {e.fault_string}",
                remote_code=e.fault_code,
                remote_message=e.fault_string,
                context=context,
            ) from e
        except TransportError as e:
            raise AuthenticationError(
                f"Authentication service call failed: {e.message}", context=context
            ) from e

        token = self._parse_ticket(response.findtext("loginCmsReturn"), context)
        log.info(
            "token.acquired",
            tenant=tenant_id,
            service=service,
            expires=token.expires_at.isoformat(),
            token_length=len(token.token),
        )
        return token

    def _parse_ticket(self, ticket_xml: str | None, context: dict[str, str]) -> Token:
        if not ticket_xml or not ticket_xml.strip():
            raise AuthenticationError("Authentication service returned an empty response", context=context)
        try:
            ticket = etree.fromstring(ticket_xml.strip().encode("utf-8"), parser=_TICKET_PARSER)
        except etree.XMLSyntaxError as e:
            raise AuthenticationError("Authentication service returned malformed XML", context=context) from e

        token = (ticket.findtext("credentials/token") or "").strip()
        sign = (ticket.findtext("credentials/sign") or "").strip()
        if not token or not sign:
            source = (ticket.findtext("header/source") or "").strip()
            detail = f": {source}" if source else ""
            raise AuthenticationError(f"Ticket response lacks token or sign{detail}", context=context)

        now = self._clock()
        expires_at = parse_ticket_time(ticket.findtext("header/expirationTime"))
        if expires_at is None:
            expires_at = now + self._fallback_validity
            log.warning("token.expiration_missing", assumed=expires_at.isoformat(), **context)
        generated_at = parse_ticket_time(ticket.findtext("header/generationTime")) or now
        ticket_token = Token(token=token, sign=sign, expires_at=expires_at, generated_at=generated_at)
        if not ticket_token.is_valid(now):
            raise AuthenticationError(
                f"Ticket already expired at {expires_at.isoformat()}", context=context
            )
        return ticket_token
