"""Chat transport interface and normalized update types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

GROUP_CHAT_TYPES = frozenset({"group", "supergroup"})


@dataclass
class InlineButton:
    """One inline keyboard button; ``callback_data`` is routed back to the bot."""

    text: str
    callback_data: str


Keyboard = list[list[InlineButton]]


@dataclass
class IncomingMessage:
    """Normalized inbound chat message."""

    chat_id: int
    message_id: int
    user_id: int
    text: str = ""
    chat_type: str = "private"
    thread_id: int | None = None  # forum topic
    username: str | None = None
    first_name: str = ""
    photo_file_id: str | None = None  # largest size of an attached photo
    raw: dict | None = field(default=None, repr=False)

    @property
    def is_group(self) -> bool:
        return self.chat_type in GROUP_CHAT_TYPES

    @property
    def display_name(self) -> str:
        return display_name(self.username, self.first_name, self.user_id)


@dataclass
class CallbackQuery:
    """Normalized inline-button press."""

    id: str
    data: str
    user_id: int
    chat_id: int
    message_id: int | None = None
    chat_type: str = "private"
    thread_id: int | None = None
    username: str | None = None
    first_name: str = ""
    raw: dict | None = field(default=None, repr=False)

    @property
    def is_group(self) -> bool:
        return self.chat_type in GROUP_CHAT_TYPES

    @property
    def display_name(self) -> str:
        return display_name(self.username, self.first_name, self.user_id)


def display_name(username: str | None, first_name: str, user_id: int) -> str:
    """``@handle`` when the user has one, else their first name, else the id."""
    if username:
        return f"@{username}"
    return first_name or str(user_id)


class ChatTransport(ABC):
    """Operations the bot needs from a chat platform.

    Message ids returned by ``send_message`` are what ``edit_message`` and
    ``delete_message`` accept. Deletes are best-effort and report success.
    """

    channel_name: str = ""

    @abstractmethod
    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int | None = None,
        buttons: Keyboard | None = None,
    ) -> int | None:
        """Send a text message; returns its message id (None if it failed)."""

    @abstractmethod
    async def send_photo(
        self,
        chat_id: int,
        photo: bytes | str,
        *,
        caption: str = "",
        thread_id: int | None = None,
    ) -> int | None:
        """Send a photo given raw bytes or a platform file id."""

    @abstractmethod
    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        buttons: Keyboard | None = None,
    ) -> None: ...

    @abstractmethod
    async def clear_keyboard(self, chat_id: int, message_id: int) -> None: ...

    @abstractmethod
    async def delete_message(self, chat_id: int, message_id: int) -> bool: ...

    @abstractmethod
    async def answer_callback(self, callback_id: str, text: str = "") -> None: ...

    @abstractmethod
    async def get_chat_administrators(self, chat_id: int) -> list[int]:
        """User ids of the chat's administrators (empty on failure)."""

    @abstractmethod
    async def download_file(self, file_id: str) -> bytes | None: ...

    async def start(self) -> None:  # noqa: B027
        """Start receiving updates (optional override)."""

    async def stop(self) -> None:  # noqa: B027
        """Graceful shutdown (optional override)."""
