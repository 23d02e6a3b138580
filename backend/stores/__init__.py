from stores.base import ContentRepository, ProfileStore
from stores.memory import InMemoryContentRepository, InMemoryProfileStore

__all__ = [
    "ContentRepository",
    "ProfileStore",
    "InMemoryContentRepository",
    "InMemoryProfileStore",
]
