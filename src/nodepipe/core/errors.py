"""Nodepipe error types.

Every error carries the HTTP-style status code that is written to the row or
cell it failed on, so operators see the same classification the code used.
"""

from __future__ import annotations


class NodepipeError(Exception):
    """Base exception for nodepipe."""

    status_code: int = 500


class PipelineError(NodepipeError):
    """Error in pipeline graph configuration (unknown nodes, cycles)."""

    pass


class NotFoundError(NodepipeError):
    """A referenced node, entry, cell, variant or scenario does not exist."""

    status_code = 404


class ValidationError(NodepipeError):
    """Malformed node configuration, ingestion record or prompt construction."""

    status_code = 400


class ProviderError(NodepipeError):
    """The model provider failed in a way that should not be retried."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderRateLimited(ProviderError):
    """The model provider asked us to slow down. Transient."""

    def __init__(self, message: str = "Rate limited") -> None:
        super().__init__(message, status_code=429)


class InvariantViolation(NodepipeError):
    """A programming or configuration error that must never be retried.

    Raised loudly instead of being recorded on a row, e.g. when a node kind
    declares cache match fields without cache write fields.
    """

    pass
