from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from ..normalizer import RawSourceRecord


class BaseFeed(ABC):
    name = "feed"

    @abstractmethod
    async def fetch_recent(self, since: datetime | None = None) -> list[RawSourceRecord]:
        """Fetch raw records published since the given datetime. If None, fetch the last 24 hours.

        Every record carries its source tag under the "source" key.
        """
        raise NotImplementedError
