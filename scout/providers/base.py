"""Abstract base class for tracker providers."""

from abc import ABC, abstractmethod

from scout.models import TrackerPage


class TrackerProvider(ABC):
    source: str

    @abstractmethod
    def list_open_items(self, repo_ref: str, page_size: int, position: int | str | None) -> TrackerPage:
        """Fetch exactly one page of open issues.

        ``position`` is a page number for offset-paginated trackers and an
        opaque cursor (None for the first page) for cursor-paginated ones.
        """
