"""Error taxonomy for the knowledge pipeline

Lookup and validation errors propagate to the caller. Operational errors
(extraction, embedding, timeout, empty content) are caught by the sync
orchestrator and turned into a failed SyncRunResult.
"""


class KnowledgeError(Exception):
    """Base class for all knowledge pipeline errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# Caller-facing


class AgentNotFoundError(KnowledgeError):
    """Raised when an agent id is not registered"""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class SourceNotFoundError(KnowledgeError):
    """Raised when a knowledge source id does not exist"""

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Knowledge source not found: {source_id}")


class DuplicateSourceError(KnowledgeError):
    """Raised when (agent, provider, external id) is already registered"""

    def __init__(self, agent_id: str, provider: str, external_id: str):
        self.agent_id = agent_id
        self.provider = provider
        self.external_id = external_id
        super().__init__(
            f"Document {provider}:{external_id} is already added to agent {agent_id}"
        )


class SourceLimitExceededError(KnowledgeError):
    """Raised when an agent already has the maximum number of sources"""

    def __init__(self, agent_id: str, limit: int):
        self.agent_id = agent_id
        self.limit = limit
        super().__init__(
            f"Maximum number of knowledge sources ({limit}) reached for agent {agent_id}"
        )


class UnsupportedProviderError(KnowledgeError):
    """Raised when no extractor is registered for a provider"""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unsupported provider: {provider}")


# Operational


class ExtractionFailedError(KnowledgeError):
    """Raised when the content extractor cannot produce a document"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class EmptyDocumentError(KnowledgeError):
    """Raised when extracted content yields no chunks"""


class EmbeddingFailedError(KnowledgeError):
    """Raised when embeddings cannot be generated after all retries"""

    def __init__(self, message: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(message)


class SyncTimeoutError(KnowledgeError):
    """Raised when a sync run exceeds its overall timeout"""

    def __init__(self, source_id: str, timeout_seconds: float):
        self.source_id = source_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Sync of source {source_id} timed out after {timeout_seconds:.0f}s")


class SyncCancelledError(KnowledgeError):
    """Recorded when a sync run is cancelled before it completes"""

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Sync of source {source_id} was cancelled")
