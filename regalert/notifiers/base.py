from __future__ import annotations

from abc import ABC, abstractmethod

from ..decisions import Channel
from .message import NotificationMessage


class BaseNotifier(ABC):
    channel: Channel = Channel.EMAIL

    @abstractmethod
    async def send(self, message: NotificationMessage) -> bool:
        """Send notification. Returns True if delivered."""
        raise NotImplementedError
