"""Abstract base class for extraction providers.

The lifecycle engine only depends on this interface, so the provider that
parses submitted PDFs can be swapped (or faked in tests) without touching
workflow code.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from services.extraction.schema import ExtractedInvoice
from services.shared.config import Settings


class ExtractionResult(BaseModel):
    """Result of extraction operation.

    Attributes:
        invoice_data: Extracted invoice data or None if extraction failed
        success: Whether operation succeeded
        error: Error message if operation failed
        provider: Name of provider that performed extraction (e.g., 'openai')
    """

    invoice_data: ExtractedInvoice | None
    success: bool
    error: str | None = None
    provider: str


class ExtractionProvider(ABC):
    """Abstract base class for invoice extraction providers.

    Implementations must not raise from extract_invoice_fields; failures are
    reported through ExtractionResult.success / error.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def extract_invoice_fields(self, file_bytes: bytes) -> ExtractionResult:
        """Extract structured invoice data from a PDF.

        Args:
            file_bytes: Raw bytes of the submitted PDF

        Returns:
            ExtractionResult with structured invoice data or error
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured (API keys, dependencies).

        Returns:
            True if provider can be used, False otherwise
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics."""
