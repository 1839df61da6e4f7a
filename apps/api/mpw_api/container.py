"""Composition root shared by the API, the worker and the republish job.

Backend selection happens here and only here:
- DATABASE_URL (or SUPABASE_DB_URL) set → SQLAlchemy stores
- otherwise → Supabase REST stores (SUPABASE_URL + SUPABASE_SERVICE_ROLE_KEY)
"""

import logging
from typing import Optional

from aio_pika.abc import AbstractQueue
from fastapi import Request

from mpw_api.billing.mercadopago import MercadoPagoClient
from mpw_api.billing.ports import BillingRepository, MercadoPagoApiClient, WebhookEventStore
from mpw_api.billing.receive_webhook import ReceiveWebhookUseCase
from mpw_api.billing.reconcile_payment import ReconcilePaymentUseCase
from mpw_api.billing.republish_failed import DEFAULT_BATCH_SIZE, RepublishFailedWebhooksUseCase
from mpw_api.config import env
from mpw_api.observability.metrics import MetricsSink, PrometheusMetricsSink
from mpw_api.queue.config import MqConfig, build_mq_config
from mpw_api.queue.connection import RabbitMqConnection
from mpw_api.queue.publisher import RabbitMqPublisher
from mpw_api.queue.topology import bootstrap_topology

logger = logging.getLogger(__name__)

BACKEND_SQL = "sql"
BACKEND_SUPABASE = "supabase"


class Dependencies:
    """Process-wide singletons plus use case factories."""

    def __init__(
        self,
        mq_config: MqConfig,
        event_store: WebhookEventStore,
        billing: BillingRepository,
        api_client: MercadoPagoApiClient,
        connection: RabbitMqConnection,
        publisher: RabbitMqPublisher,
        metrics: MetricsSink,
        storage_backend: str,
    ):
        self.mq_config = mq_config
        self.event_store = event_store
        self.billing = billing
        self.api_client = api_client
        self.connection = connection
        self.publisher = publisher
        self.metrics = metrics
        self.storage_backend = storage_backend

    def receive_webhook(self) -> ReceiveWebhookUseCase:
        return ReceiveWebhookUseCase(
            store=self.event_store,
            publisher=self.publisher,
            exchange=self.mq_config.exchange,
            metrics=self.metrics,
        )

    def republish_failed(self, batch_size: int = DEFAULT_BATCH_SIZE) -> RepublishFailedWebhooksUseCase:
        return RepublishFailedWebhooksUseCase(
            store=self.event_store,
            publisher=self.publisher,
            exchange=self.mq_config.exchange,
            dlx=self.mq_config.dlx,
            dlq_routing_key=self.mq_config.dlq_routing_key,
            max_attempts=self.mq_config.max_attempts,
            batch_size=batch_size,
            metrics=self.metrics,
        )

    def reconcile_payment(self) -> ReconcilePaymentUseCase:
        return ReconcilePaymentUseCase(api_client=self.api_client, billing=self.billing, metrics=self.metrics)

    async def bootstrap_topology(self) -> AbstractQueue:
        return await bootstrap_topology(self.connection, self.mq_config)

    async def close(self) -> None:
        await self.connection.close()


def build_storage() -> tuple[WebhookEventStore, BillingRepository, str]:
    """Select and build the storage backend.

    Raises:
        ValueError: If neither DATABASE_URL nor the Supabase credentials are set
    """
    database_url = env.get_database_url()
    if database_url:
        from mpw_api.db.engine import build_engine, build_sessionmaker
        from mpw_api.db.repo_billing import SqlBillingRepository
        from mpw_api.db.repo_webhook_events import SqlWebhookEventStore

        session_factory = build_sessionmaker(build_engine(database_url))
        return SqlWebhookEventStore(session_factory), SqlBillingRepository(session_factory), BACKEND_SQL

    from mpw_api.db.supabase_repo_billing import SupabaseBillingRepository
    from mpw_api.db.supabase_repo_webhook_events import SupabaseWebhookEventStore
    from mpw_api.supabase_client import get_supabase_admin_client

    client = get_supabase_admin_client()
    return SupabaseWebhookEventStore(client), SupabaseBillingRepository(client), BACKEND_SUPABASE


def build_dependencies(
    metrics: Optional[MetricsSink] = None,
    event_store: Optional[WebhookEventStore] = None,
    billing: Optional[BillingRepository] = None,
    api_client: Optional[MercadoPagoApiClient] = None,
) -> Dependencies:
    """Build the object graph from the environment.

    Overrides are for tests and tooling; anything not passed is built from
    environment variables.
    """
    mq_config = build_mq_config()

    storage_backend = "custom"
    if event_store is None or billing is None:
        built_store, built_billing, storage_backend = build_storage()
        event_store = event_store or built_store
        billing = billing or built_billing

    connection = RabbitMqConnection(mq_config.url, prefetch_count=mq_config.prefetch_count)
    publisher = RabbitMqPublisher(connection, default_timeout_ms=mq_config.publish_timeout_ms)

    logger.info(
        "DEPENDENCIES_BUILT",
        extra={
            "storage_backend": storage_backend,
            "exchange": mq_config.exchange,
            "retry_queues": len(mq_config.retry_queues),
            "max_attempts": mq_config.max_attempts,
        },
    )

    return Dependencies(
        mq_config=mq_config,
        event_store=event_store,
        billing=billing,
        api_client=api_client or MercadoPagoClient(),
        connection=connection,
        publisher=publisher,
        metrics=metrics or PrometheusMetricsSink(),
        storage_backend=storage_backend,
    )


def get_dependencies(request: Request) -> Dependencies:
    """FastAPI dependency: the graph attached to ``app.state.deps`` at startup."""
    return request.app.state.deps
