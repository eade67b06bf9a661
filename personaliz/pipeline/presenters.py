"""
Presenter (actor) directory.

Read-only catalog of the voices a user can pick. The pipeline touches it once
per request, at creation time, to resolve actor_id → voice_id.
"""

import logging

from ..errors import PresenterNotFoundError
from .models import Presenter
from .store import RequestStore

logger = logging.getLogger(__name__)


DEFAULT_PRESENTERS = [
    Presenter(
        id="actor_1",
        name="Sarah Johnson",
        description="Professional female presenter with warm, friendly voice",
        voice_id="voice_sarah_001",
        image_url="/images/actors/sarah.jpg",
    ),
    Presenter(
        id="actor_2",
        name="Michael Chen",
        description="Energetic male presenter perfect for tech and business content",
        voice_id="voice_michael_002",
        image_url="/images/actors/michael.jpg",
    ),
    Presenter(
        id="actor_3",
        name="Emma Rodriguez",
        description="Bilingual presenter with clear articulation and professional tone",
        voice_id="voice_emma_003",
        image_url="/images/actors/emma.jpg",
    ),
    Presenter(
        id="actor_4",
        name="David Thompson",
        description="Experienced narrator with deep, authoritative voice",
        voice_id="voice_david_004",
        image_url="/images/actors/david.jpg",
    ),
    Presenter(
        id="actor_5",
        name="Lisa Park",
        description="Youthful and engaging presenter ideal for lifestyle content",
        voice_id="voice_lisa_005",
        image_url="/images/actors/lisa.jpg",
    ),
]


class PresenterDirectory:

    def __init__(self, store: RequestStore):
        self._store = store

    def lookup(self, actor_id: str) -> Presenter:
        presenter = self._store.get_presenter(actor_id)
        if presenter is None:
            raise PresenterNotFoundError(actor_id)
        return presenter

    def find(self, actor_id: str):
        return self._store.get_presenter(actor_id)

    def list(self) -> list[Presenter]:
        return self._store.list_presenters()

    def seed_defaults(self) -> int:
        """Insert the default presenters if the catalog is empty. Returns how many were added."""
        if self._store.list_presenters():
            logger.info("Presenters already seeded, skipping")
            return 0

        for presenter in DEFAULT_PRESENTERS:
            self._store.add_presenter(presenter)
        logger.info(f"Seeded {len(DEFAULT_PRESENTERS)} presenters")
        return len(DEFAULT_PRESENTERS)
