"""Domain exceptions shared across the knowledge base services."""


class KnowledgeBaseError(Exception):
    """Base exception for knowledge base operations."""

    pass


class NotFoundError(KnowledgeBaseError):
    """Entity does not exist in the requested workspace."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")


class ConflictError(KnowledgeBaseError):
    """Operation conflicts with work already in progress."""

    pass


class SyncConflictError(ConflictError):
    """A non-stale sync is already running for the connection."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Connection '{connection_id}' is already syncing")


class ComputeConflictError(ConflictError):
    """Another cluster computation holds the workspace lease."""

    def __init__(self, workspace_id: str):
        self.workspace_id = workspace_id
        super().__init__(f"Cluster computation already running for workspace '{workspace_id}'")


class SyncSupersededError(KnowledgeBaseError):
    """A newer sync run took over the connection while this one was working."""

    def __init__(self, connection_id: str, run_id: str):
        self.connection_id = connection_id
        self.run_id = run_id
        super().__init__(f"Sync run '{run_id}' for connection '{connection_id}' was superseded")


class ContentValidationError(KnowledgeBaseError):
    """Artifact content failed structural validation."""

    pass
