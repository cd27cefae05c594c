"""OpenAI-based extraction provider for submitted invoice PDFs.

Sends the PDF as a base64 file part to the chat completions API in JSON mode
and validates the reply into ExtractedInvoice.

Includes retry logic with exponential backoff for transient API errors.
"""

import base64
import json
import os
import re
from typing import Any

from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)
from pydantic import ValidationError
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.extraction.base import ExtractionProvider, ExtractionResult
from services.extraction.schema import ExtractedInvoice
from services.shared.config import Settings

TRANSIENT_ERRORS = (APIConnectionError, APITimeoutError, InternalServerError, RateLimitError)

_CODE_FENCE_START = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_CODE_FENCE_END = re.compile(r"\n?```\s*$")

EXTRACTION_PROMPT = """You are an invoice data extraction system. Analyze the provided PDF \
invoice and extract all structured data.

Return a JSON object with EXACTLY this structure:

{
  "vendorName": "string or null",
  "invoiceNumber": "string or null",
  "invoiceDate": "YYYY-MM-DD string or null",
  "dueDate": "YYYY-MM-DD string or null",
  "lineItems": [
    {"description": "string or null", "quantity": number or null,
     "unitPrice": number or null, "total": number or null}
  ],
  "subtotal": number or null,
  "tax": number or null,
  "grandTotal": number or null,
  "paymentTerms": "string or null",
  "bankDetails": "string or null",
  "confidenceScores": {
    "vendorName": 0.0-1.0, "invoiceNumber": 0.0-1.0, "invoiceDate": 0.0-1.0,
    "dueDate": 0.0-1.0, "lineItems": 0.0-1.0, "subtotal": 0.0-1.0, "tax": 0.0-1.0,
    "grandTotal": 0.0-1.0, "paymentTerms": 0.0-1.0, "bankDetails": 0.0-1.0
  }
}

Rules:
- Confidence: 1.0 = clearly visible and unambiguous, 0.5-0.9 = partially visible or \
inferred, 0.0-0.4 = not found or guessed
- Dates must be in YYYY-MM-DD format
- Monetary values must be plain numbers (no currency symbols)
- If a field is not found, set it to null and give confidence 0.0
- Return ONLY the JSON object"""


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence from a model reply."""
    return _CODE_FENCE_END.sub("", _CODE_FENCE_START.sub("", text.strip())).strip()


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._client: OpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def extract_invoice_fields(self, file_bytes: bytes) -> ExtractionResult:
        """Extract structured invoice data from a PDF using OpenAI.

        Args:
            file_bytes: Raw PDF bytes

        Returns:
            ExtractionResult with structured invoice data or error, provider='openai'
        """
        if not self.is_available():
            return self._failure("OPENAI_API_KEY environment variable not set")

        if not file_bytes:
            return self._failure("Empty document provided")

        try:
            api_key = os.getenv("OPENAI_API_KEY")
            if self._client is None or self._client.api_key != api_key:
                self._client = OpenAI(api_key=api_key)

            response = self._call_openai_with_retry(file_bytes)

            content = response.choices[0].message.content
            if not content:
                return self._failure("Empty response from extraction model")

            payload = json.loads(strip_code_fences(content))
            if not isinstance(payload, dict):
                return self._failure("Extraction response is not a JSON object")

            return ExtractionResult(
                invoice_data=ExtractedInvoice.model_validate(payload),
                success=True,
                provider=self.provider_name,
            )

        except (json.JSONDecodeError, ValidationError) as e:
            return self._failure(f"Malformed extraction response: {e}")
        except Exception as e:
            return self._failure(f"Extraction failed: {str(e)}")

    def _call_openai_with_retry(self, file_bytes: bytes) -> Any:
        """Call OpenAI API, retrying transient errors with exponential backoff.

        Raises:
            Exception: After all retry attempts are exhausted
        """
        if self._client is None:
            raise RuntimeError("OpenAI client not initialized")

        encoded = base64.b64encode(file_bytes).decode("ascii")
        retrying = Retrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            wait=wait_exponential_jitter(initial=1, max=60),
            stop=stop_after_attempt(self.settings.extraction_max_attempts),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._client.chat.completions.create(  # type: ignore[call-overload]
                    model=self.settings.openai_model,
                    messages=[
                        {
                            "role": "user",
                            "content": [
                                {
                                    "type": "file",
                                    "file": {
                                        "filename": "invoice.pdf",
                                        "file_data": f"data:application/pdf;base64,{encoded}",
                                    },
                                },
                                {"type": "text", "text": EXTRACTION_PROMPT},
                            ],
                        }
                    ],
                    response_format={"type": "json_object"},
                    temperature=0,  # Deterministic output
                )
        raise RuntimeError("Retry loop exited without a response")

    def _failure(self, error: str) -> ExtractionResult:
        return ExtractionResult(
            invoice_data=None,
            success=False,
            error=error,
            provider=self.provider_name,
        )
