"""
Ports — Protocol-based interfaces for collaborators outside the core.

These define WHAT the clients need (contracts) without specifying HOW it's
done. Adapters satisfy a port simply by implementing its methods; no
inheritance required.

  KeyValueCache           → token and parameter caches (Redis, memcached, memory)
  ConfigurationRepository → tenant configuration owned by the host application
  SoapCaller              → remote procedure calls (ResilientSoapTransport)
  TokenProvider           → access tickets (AuthenticationClient)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from afip_client.domain.models import PointOfSaleRecord, TenantConfiguration, Token

if TYPE_CHECKING:
    from lxml import etree

    from afip_client.adapters.soap_transport import SoapEndpoint


@runtime_checkable
class KeyValueCache(Protocol):
    """
    Port: a key/value store with per-entry expiry.

    Keys are deterministic strings of the form
    `{prefix}:{environment}:{kind}:{tenant}`. A `get` after the TTL elapsed
    returns None.
    """

    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    def forget(self, key: str) -> None: ...


@runtime_checkable
class ConfigurationRepository(Protocol):
    """
    Port: read-only access to the host application's invoicing configuration.

    Persistence is the host's concern; the core only reads the active record
    for a tenant and its locally known points of sale.
    """

    def lookup_active_config(self, tenant_id: str) -> TenantConfiguration | None: ...

    def list_points_of_sale(self, config_id: str) -> list[PointOfSaleRecord]: ...


@runtime_checkable
class SoapCaller(Protocol):
    """Port: invoke one SOAP operation and return its response element."""

    def call(
        self,
        endpoint: SoapEndpoint,
        method: str,
        params: Mapping[str, Any],
    ) -> etree._Element: ...


@runtime_checkable
class TokenProvider(Protocol):
    """
    Port: obtain a valid access ticket for a target service.

    `resolve_tenant` normalizes a tenant id, or returns the default tenant
    when None is given.
    """

    def resolve_tenant(self, tenant_id: str | None) -> str: ...

    def get_token(self, service: str, tenant_id: str | None = None) -> Token: ...
