"""Bootstrap do container de DI (kink) do motor de sincronização."""
from kink import di
from .settings import Settings
from .logging import configure_logging
from .db import create_session_factory
from .crypto import Cipher
from ..connectors.oletv.rate_limit import GateRegistry
from ..domain.services.product_mapper import ProductMapper
from ..domain.services.orchestrator import Orchestrator
from ..repo.models import ACTIONS
from ..repo.queue_store import SyncQueueStore, BackoffPolicy
from ..tasks.bulk_importer import BulkImporter

def bootstrap_di(settings: Settings | None = None, session_factory=None) -> None:
    settings = settings or Settings()
    configure_logging(settings.log_level)
    di[Settings] = settings
    factory = session_factory or create_session_factory(settings.database_url)
    # sessionmaker é chamável: registrado como factory para o kink não invocá-lo na resolução
    di.factories["session_factory"] = lambda _di: factory
    di[Cipher] = Cipher(settings.encryption_key)
    # Um gate por integração, compartilhado por processador, importador e API
    di[GateRegistry] = GateRegistry(settings.min_call_interval_ms / 1000)
    di[SyncQueueStore] = SyncQueueStore(
        factory,
        backoff=BackoffPolicy(settings.backoff_base_s, settings.backoff_max_s),
        max_attempts={action: settings.queue_max_attempts for action in ACTIONS},
    )
    di[ProductMapper] = ProductMapper(factory, ttl_s=settings.mapping_cache_ttl_s)
    di[Orchestrator] = Orchestrator(di[SyncQueueStore], di[ProductMapper], session_factory=factory)
    di[BulkImporter] = BulkImporter(settings, session_factory=factory)
