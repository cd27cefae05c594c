"""Selects the extraction gateway named in settings."""

import logging

from services.extraction.base import ExtractionProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)

PROVIDERS: dict[str, type[ExtractionProvider]] = {
    "openai": OpenAIExtractionProvider,
}


def create_extraction_service(settings: Settings) -> ExtractionProvider:
    """Build the provider named by settings.extraction_provider.

    A provider without credentials is still returned: every extraction it
    attempts fails, which leaves invoices FAILED until an operator retries.

    Raises:
        ValueError: If no provider is known under that name
    """
    name = settings.extraction_provider
    provider_class = PROVIDERS.get(name)
    if provider_class is None:
        known = ", ".join(sorted(PROVIDERS))
        raise ValueError(f"Unknown extraction provider '{name}' (known: {known})")

    provider = provider_class(settings)
    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{name}' has no credentials; "
            f"submitted invoices will fail extraction"
        )
    logger.info(f"Extraction gateway: {provider.provider_name}")
    return provider
