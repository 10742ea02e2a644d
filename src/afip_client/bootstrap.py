"""
Composition root — builds the clients from settings.

This is the ONLY place where concrete adapters are instantiated from
configuration. Everything else receives its collaborators through the
constructor and depends on Protocol ports.

Responsibilities:
  1. Offer configure_structlog to the host application
  2. Create the certificate store, signer, transport and caches
  3. Wire AuthenticationClient and InvoiceAuthorizationClient
  4. Optionally read a tenant's active configuration from the host's repository
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta

import structlog

from afip_client.adapters.certificate_store import CertificateStore
from afip_client.adapters.memory_cache import InMemoryCache
from afip_client.adapters.request_signer import RequestSigner
from afip_client.adapters.soap_transport import (
    ResilientSoapTransport,
    authentication_endpoint,
    create_ssl_context,
    invoicing_endpoint,
)
from afip_client.authentication import AuthenticationClient
from afip_client.config import AppSettings
from afip_client.domain import tenant
from afip_client.domain.errors import ConfigurationError
from afip_client.domain.models import PointOfSaleRecord, TenantConfiguration
from afip_client.domain.ports import ConfigurationRepository, KeyValueCache
from afip_client.invoice_mapper import InvoiceMapper
from afip_client.invoicing import InvoiceAuthorizationClient
from afip_client.token_cache import TokenCache


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Colored, human-readable console output with ISO timestamps; events
    below `log_level` are filtered out.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass(frozen=True, slots=True)
class InvoicingClients:
    """The wired clients for one environment (and optionally one tenant)."""

    certificate_store: CertificateStore
    mapper: InvoiceMapper
    authentication: AuthenticationClient
    invoicing: InvoiceAuthorizationClient
    points_of_sale: tuple[int, ...] = ()
    default_point_of_sale: int = 1


def create_clients(
    settings: AppSettings,
    cache: KeyValueCache | None = None,
    configuration: TenantConfiguration | None = None,
    points_of_sale: tuple[int, ...] = (),
    configure_logging: bool = False,
) -> InvoicingClients:
    """
    Instantiate and wire every adapter and client.

    `cache` backs both the token and the parameter caches (an in-memory
    cache by default). A tenant `configuration` overrides the environment,
    the default tenant and the certificate pair taken from settings.
    With `configure_logging`, structlog is set up at `settings.log_level`
    first; host applications that configure logging themselves leave it off.
    """
    if configure_logging:
        configure_structlog(settings.log_level)
    environment = configuration.environment if configuration else settings.environment
    default_tenant = configuration.tenant_id if configuration else settings.tenant_id
    shared_cache = cache if cache is not None else InMemoryCache()

    certificate_store = _certificate_store(settings, configuration)
    transport = ResilientSoapTransport(
        timeout=settings.transport.timeout_seconds,
        max_attempts=settings.retry.max_attempts,
        base_delay=settings.retry.base_delay_ms / 1000,
        max_delay=settings.retry.max_delay_ms / 1000,
        ssl_context=create_ssl_context(settings.transport.ciphers, settings.transport.security_level),
        user_agent=settings.transport.user_agent,
    )
    signer = RequestSigner(
        certificate_store,
        validity=timedelta(hours=settings.request_validity_hours),
    )
    token_cache = TokenCache(
        shared_cache,
        prefix=settings.token_cache.prefix,
        ttl_seconds=settings.token_cache.ttl_seconds,
        safety_margin_seconds=settings.token_cache.safety_margin_seconds,
        enabled=settings.token_cache.enabled,
    )
    authentication = AuthenticationClient(
        certificate_store,
        signer,
        transport,
        token_cache,
        environment,
        endpoint=authentication_endpoint(environment, settings.endpoints.authentication_url),
        default_tenant_id=default_tenant,
    )
    mapper = InvoiceMapper()
    invoicing = InvoiceAuthorizationClient(
        authentication,
        transport,
        environment,
        endpoint=invoicing_endpoint(environment, settings.endpoints.invoicing_url),
        mapper=mapper,
        param_cache=shared_cache,
        param_cache_ttl_seconds=settings.param_cache.ttl_seconds,
        param_cache_enabled=settings.param_cache.enabled,
        cache_prefix=settings.token_cache.prefix,
    )
    structlog.get_logger().info(
        "clients.created",
        environment=str(environment),
        tenant=default_tenant,
        authentication_url=authentication_endpoint(environment, settings.endpoints.authentication_url).url,
    )
    return InvoicingClients(
        certificate_store=certificate_store,
        mapper=mapper,
        authentication=authentication,
        invoicing=invoicing,
        points_of_sale=points_of_sale,
        default_point_of_sale=settings.default_point_of_sale,
    )


def load_tenant_configuration(
    repository: ConfigurationRepository,
    tenant_id: str,
    on: date | None = None,
) -> tuple[TenantConfiguration, list[PointOfSaleRecord]]:
    """
    Read a tenant's active configuration and its usable local points of sale.

    Raises ConfigurationError when the tenant has no active configuration.
    """
    tenant_key = tenant.normalize(tenant_id)
    configuration = repository.lookup_active_config(tenant_key)
    if configuration is None or not configuration.active:
        raise ConfigurationError(
            f"No active invoicing configuration for tenant {tenant_key}",
            context={"tenant": tenant_key},
        )
    day = on or date.today()
    points = [
        record
        for record in repository.list_points_of_sale(configuration.config_id)
        if record.active and (record.blocked_since is None or record.blocked_since > day)
    ]
    return configuration, points


def create_tenant_clients(
    settings: AppSettings,
    repository: ConfigurationRepository,
    tenant_id: str,
    cache: KeyValueCache | None = None,
    configure_logging: bool = False,
) -> InvoicingClients:
    """Wire clients for one tenant using its stored configuration."""
    configuration, points = load_tenant_configuration(repository, tenant_id)
    return create_clients(
        settings,
        cache=cache,
        configuration=configuration,
        points_of_sale=tuple(record.number for record in points),
        configure_logging=configure_logging,
    )


def _certificate_store(
    settings: AppSettings, configuration: TenantConfiguration | None
) -> CertificateStore:
    certs = settings.certificates
    passphrase = certs.passphrase.get_secret_value() if certs.passphrase else None
    cert_path, key_path = certs.certificate_path, certs.key_path
    if configuration is not None and configuration.certificate_path and configuration.key_path:
        cert_path, key_path = configuration.certificate_path, configuration.key_path
        passphrase = configuration.passphrase
    return CertificateStore(
        cert_path=cert_path,
        key_path=key_path,
        passphrase=passphrase,
        base_path=certs.base_path,
        tenant_cert_filename=certs.tenant_certificate_file,
        tenant_key_filename=certs.tenant_key_file,
    )
