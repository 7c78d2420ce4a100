"""Exception types shared across the opposing views pipeline."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline failures."""


class ProviderError(PipelineError):
    """A provider call failed; ``kind`` tells the caller why."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    MALFORMED = "malformed"
    REFUSED = "refused"
    KINDS = frozenset({TIMEOUT, NETWORK, MALFORMED, REFUSED})

    def __init__(self, kind: str, message: str = "", provider: Optional[str] = None):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown provider error kind '{kind}'")
        self.kind = kind
        self.provider = provider
        detail = message or kind
        prefix = f"[{provider}] " if provider else ""
        super().__init__(f"{prefix}{kind}: {detail}")


class ConflictError(PipelineError):
    """A uniqueness constraint rejected an insert."""


class NotFoundError(PipelineError):
    """A referenced record does not exist."""


class SearchError(PipelineError):
    """The search collaborator failed for one or more queries."""


class AnalysisFailedError(PipelineError):
    """Every configured provider failed for an article."""

    def __init__(self, article_id: str, message: str, last_error: Optional[Exception] = None):
        self.article_id = article_id
        self.last_error = last_error
        super().__init__(f"Analysis failed for article {article_id}: {message}")


class OperationCancelled(PipelineError):
    """The caller cancelled an in-flight analyze or match call."""
