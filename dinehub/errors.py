"""
Lifecycle errors

Caller errors (ValidationFailed, IllegalTransition, EntityNotFound) are raised
immediately and never retried. Transport errors (StoreUnavailable) are surfaced
to the caller, who decides whether to re-attempt.
"""


class LifecycleError(Exception):
    """Base class for every failure surfaced by this package."""


class ValidationFailed(LifecycleError):
    """A creation draft is malformed (empty item list, non-positive total, ...)."""

    def __init__(self, entity: str, errors: list[str]) -> None:
        self.entity = entity
        self.errors = errors
        super().__init__(f"invalid {entity} draft: {'; '.join(errors)}")


class EntityNotFound(LifecycleError):
    """The requested id is absent from the mirror at transition time."""

    def __init__(self, entity: str, entity_id: str, requested: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.requested = requested
        msg = f"{entity} {entity_id} not found"
        if requested:
            msg += f" (attempted transition to {requested!r})"
        super().__init__(msg)


class IllegalTransition(LifecycleError):
    """The status change is not in the transition table."""

    def __init__(self, entity: str, entity_id: str, current: str, requested: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"{entity} {entity_id}: illegal transition {current!r} -> {requested!r}"
        )


class StoreUnavailable(LifecycleError):
    """Transport-level failure reported by the store adapter."""


class NotFound(LifecycleError):
    """The store has no document with the given id (point update on a missing id)."""

    def __init__(self, collection: str, doc_id: str) -> None:
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"{collection}/{doc_id} does not exist")


class InitializationFailed(LifecycleError):
    """The synchronization layer received no snapshot before its timeout."""

    def __init__(self, collections: list[str], timeout: float) -> None:
        self.collections = collections
        self.timeout = timeout
        super().__init__(
            f"no snapshot within {timeout:g}s for: {', '.join(collections)}"
        )


class ConcurrentAppend(LifecycleError):
    """Another writer already appended this version to the entity's status history."""

    def __init__(self, aggregate_type: str, aggregate_id: str, version: int) -> None:
        self.aggregate_type = aggregate_type
        self.aggregate_id = aggregate_id
        self.version = version
        super().__init__(f"{aggregate_type} {aggregate_id} already has version {version}")
