"""Domain errors raised by the core services."""


class PipelineError(Exception):
    """Base for chat pipeline errors."""
    pass


class EntityNotFoundError(PipelineError, LookupError):
    """A referenced user, message or ticket does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class BusinessRuleError(PipelineError, ValueError):
    """Input violates a business rule (e.g. message without sender)."""
    pass
