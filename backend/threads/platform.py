"""
Chat platform interface used by the thread lifecycle manager and the RSVP
synchronizer.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from shared.models.domain import ThreadInfo, ThreadMessage


class ThreadPlatform(ABC):
    """
    Thread operations on the chat platform.

    Implementations raise ``ThreadPlatformError`` (or its subclasses
    ``ThreadRateLimitedError`` / ``ThreadLockedError``) on failure.
    """

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    def is_ready(self) -> bool:
        pass

    @abstractmethod
    async def create_thread(self, name: str, content: str) -> ThreadInfo:
        """Create a thread in the configured channel, seeded with ``content``."""

    @abstractmethod
    async def get_thread(self, thread_id: str) -> Optional[ThreadInfo]:
        """``None`` means the thread is confirmed gone or inaccessible."""

    @abstractmethod
    async def list_threads(self, pattern: Optional[str] = None) -> list[ThreadInfo]:
        """Active and archived threads of the channel whose name contains ``pattern``."""

    @abstractmethod
    async def rename_thread(self, thread_id: str, name: str) -> None:
        pass

    @abstractmethod
    async def lock_thread(self, thread_id: str) -> None:
        pass

    @abstractmethod
    async def post_message(self, thread_id: str, content: str) -> ThreadMessage:
        pass

    @abstractmethod
    async def edit_message(self, thread_id: str, message_id: str, content: str) -> None:
        pass

    @abstractmethod
    async def fetch_messages(self, thread_id: str, limit: int = 20) -> list[ThreadMessage]:
        """Most recent messages, newest first."""
