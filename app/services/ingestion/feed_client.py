"""Abstract base class for message feed clients."""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from app.schemas.candidate import CandidateMessage


class FeedClient(ABC):
    """Base interface that every message feed must implement.

    Each client is responsible for:
    1. Fetching messages newer than a cursor, oldest first
    2. Mapping feed-specific fields to our CandidateMessage schema
    3. Raising FeedRateLimited for "retry later" and UpstreamUnavailable
       for anything else transient, never returning a partial page
    """

    feed_name: str

    @abstractmethod
    def poll(self, since_cursor: Optional[str]) -> List[CandidateMessage]:
        """Return every message with an id greater than ``since_cursor``.

        Never a subset: the caller advances its cursor to the newest id
        returned, so anything older left out here is lost.

        Args:
            since_cursor: Last processed message id, or None on first run.

        Returns:
            Candidate messages in delivery order.
        """
        pass

    @abstractmethod
    def resolve_authors(self, author_refs: Iterable[str]) -> dict[str, str]:
        """Map author ids to handles. Unknown ids are simply left out."""
        pass
