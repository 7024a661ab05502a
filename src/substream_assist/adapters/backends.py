"""Recommendation backend selection.

Called once from the application lifespan; the chosen backend is stored on
app.state and injected into services from there.
"""

from substream_assist.adapters.mock_backend import MockRecommendationBackend
from substream_assist.adapters.openai_backend import OpenAIRecommendationBackend
from substream_assist.core.interfaces import IRecommendationBackend
from substream_assist.observability import get_logger
from substream_assist.settings import Settings

logger = get_logger(__name__)


def build_recommendation_backend(settings: Settings) -> IRecommendationBackend:
    """Construct the configured backend.

    Raises:
        ValueError: If the openai backend is selected without an API key.
    """
    backend: IRecommendationBackend
    if settings.recommendation_backend == "openai":
        backend = OpenAIRecommendationBackend(settings)
    else:
        backend = MockRecommendationBackend()
    logger.info("recommendation_backend_selected", provider=backend.name)
    return backend
