from deckflow.db.async_store import AsyncSQLAlchemyStore
from deckflow.db.job_store import AsyncJobStore
from deckflow.db.models import Base, Collection, CollectionMember, Item, Job, ReviewLog

__all__ = [
    "Base",
    "Item",
    "ReviewLog",
    "Collection",
    "CollectionMember",
    "Job",
    "AsyncSQLAlchemyStore",
    "AsyncJobStore",
]
