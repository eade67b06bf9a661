import logging

from .config import Settings
from .pipeline.orchestrator import VideoRequestService
from .pipeline.store import InMemoryRequestStore, RequestStore, SupabaseRequestStore
from .synclabs import MockSyncLabsClient, SyncLabsClient
from .whatsapp import MockWhatsAppClient, WhatsAppClient

logger = logging.getLogger(__name__)


class ProviderFactory:
    @staticmethod
    def get_generator(settings: Settings):
        # No key (or forced mock) means no network: same interface, synthetic ids
        if settings.mock_generation:
            logger.info("SyncLabs: using mock provider")
            return MockSyncLabsClient()
        return SyncLabsClient(settings.synclabs, model=settings.synclabs_model)

    @staticmethod
    def get_channel(settings: Settings):
        if settings.mock_delivery:
            logger.info("WhatsApp: using mock provider")
            return MockWhatsAppClient()
        return WhatsAppClient(settings.whatsapp, settings.whatsapp_phone_number_id)

    @staticmethod
    def get_store(settings: Settings) -> RequestStore:
        if settings.use_supabase:
            logger.info("Request store: Supabase")
            return SupabaseRequestStore(settings.supabase_url, settings.supabase_service_role_key)
        logger.info("Request store: in-memory (set SUPABASE_URL to persist)")
        return InMemoryRequestStore()


def build_service(settings: Settings) -> VideoRequestService:
    """One service per process; the clients inside are shared by every request."""
    return VideoRequestService(
        store=ProviderFactory.get_store(settings),
        generator=ProviderFactory.get_generator(settings),
        channel=ProviderFactory.get_channel(settings),
        settings=settings,
    )
