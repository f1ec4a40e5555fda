"""
Gateway Application Layer
=========================

Contains:
- Services: ProviderGateway with ordered fallback and structured output
- Interfaces: ILLMBackend, IMetricsExporter
- Validation: typed parsing of structured model output
"""

from helpdesk_retrieval.gateway.application.services import (
    ProviderGateway,
    ILLMBackend,
    IMetricsExporter,
    parse_priority,
    GENERATION,
    EMBEDDING,
)
from helpdesk_retrieval.gateway.application.validation import (
    FallbackModel,
    ClassificationSchema,
    SentimentSchema,
    extract_json,
    validate_ai_output,
)

__all__ = [
    # Services
    "ProviderGateway",
    "parse_priority",
    "GENERATION",
    "EMBEDDING",
    # Interfaces
    "ILLMBackend",
    "IMetricsExporter",
    # Validation
    "FallbackModel",
    "ClassificationSchema",
    "SentimentSchema",
    "extract_json",
    "validate_ai_output",
]
