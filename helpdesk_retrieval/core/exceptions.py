"""
Core Exceptions
================

Custom exceptions for the retrieval pipeline following clean architecture principles.

Library components (gateway, knowledge store) raise these upward; the indexing
pipeline converts per-record failures into statistics instead.
"""

from typing import List, Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ServiceNotConfiguredException(ConfigurationException):
    """No usable backend is available for the requested capability."""

    def __init__(self, capability: str, details: Optional[dict] = None):
        self.capability = capability
        super().__init__(f"AI service not configured: no usable {capability} backend", details)


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class LLMException(ExternalServiceException):
    """A single backend call was rejected or returned garbage."""

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        backend: str = "LLM Service"
    ):
        self.reason = message
        super().__init__(backend, message, details)


class BackendTransportException(LLMException):
    """Connection-level failure (refused, DNS, timeout)."""


class AllBackendsFailedException(ExternalServiceException):
    """Every backend in the priority list failed."""

    def __init__(self, capability: str, errors: List[str]):
        self.capability = capability
        self.errors = list(errors)
        super().__init__(
            "Provider Gateway",
            f"all {capability} backends failed: {'; '.join(self.errors)}",
            {"capability": capability, "errors": self.errors}
        )


class HybridSearchUnavailableException(RepositoryException):
    """The datastore does not provide the hybrid ranking function."""


class IndexingAlreadyRunningException(DomainException):
    """A second indexing run was requested while one is running."""

    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(
            f"Indexing '{pipeline_id}' is already running",
            {"pipeline_id": pipeline_id}
        )
