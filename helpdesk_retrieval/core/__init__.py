"""
Core Module
============

Shared core utilities and abstractions used across the retrieval pipeline.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from helpdesk_retrieval.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    ResourceNotFoundException,
    ConfigurationException,
    ServiceNotConfiguredException,
    ExternalServiceException,
    LLMException,
    BackendTransportException,
    AllBackendsFailedException,
    HybridSearchUnavailableException,
    IndexingAlreadyRunningException,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ServiceNotConfiguredException",
    "ExternalServiceException",
    "LLMException",
    "BackendTransportException",
    "AllBackendsFailedException",
    "HybridSearchUnavailableException",
    "IndexingAlreadyRunningException",
]
