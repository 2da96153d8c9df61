from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Sequence, Union

from chatnest.client.controller import (
    ChatClientError,
    StreamCallbacks,
    StreamController,
    StreamState,
)
from chatnest.logging import get_logger
from chatnest.models import DEFAULT_PROFILE, Message, UsageProfile
from chatnest.service.profiles import ClientOverrides

logger = get_logger(__name__)

DEFAULT_MAX_MESSAGES = 10


class ChatSession:
    """Conversation state on top of a ``StreamController``.

    Keeps the visible message list, the streaming flag and the last error
    message. The assistant message for the current turn grows as tokens
    arrive and is emptied again when the controller retries.
    """

    def __init__(
        self,
        controller: StreamController,
        *,
        profile: Union[UsageProfile, str] = DEFAULT_PROFILE,
        initial_messages: Optional[Sequence[Message]] = None,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        overrides: Optional[ClientOverrides] = None,
    ) -> None:
        self.controller = controller
        self.max_messages = max_messages
        self.overrides = overrides
        self._initial_messages = list(initial_messages or [])
        self._messages: List[Message] = list(self._initial_messages)
        self._profile = UsageProfile(profile)
        self._streaming = False
        self._error: Optional[str] = None

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def profile(self) -> UsageProfile:
        return self._profile

    def set_profile(self, profile: Union[UsageProfile, str]) -> None:
        """Select the profile for subsequent requests; raises ValueError if unknown."""
        self._profile = UsageProfile(profile)

    async def send_message(self, text: str) -> Optional[StreamState]:
        if not text.strip() or self._streaming:
            return None

        self._error = None
        user_message = Message.user(text)
        assistant_message = Message.assistant()
        history = self._messages + [user_message]
        self._messages = (self._messages + [user_message, assistant_message])[-self.max_messages:]
        self._streaming = True

        def on_token(token: str) -> None:
            self._update_content(assistant_message.id, token, append=True)

        def on_complete() -> None:
            self._streaming = False

        def on_error(error: ChatClientError) -> None:
            self._error = error.message
            self._streaming = False

        def on_retry(attempt: int) -> None:
            logger.info("chat_session_retry", attempt=attempt)
            self._update_content(assistant_message.id, "", append=False)

        callbacks = StreamCallbacks(
            on_token=on_token,
            on_complete=on_complete,
            on_error=on_error,
            on_retry=on_retry,
        )
        try:
            return await self.controller.stream_chat(
                history, callbacks, self._profile, self.overrides
            )
        finally:
            self._streaming = False

    def _update_content(self, message_id: str, text: str, *, append: bool) -> None:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                content = message.content + text if append else text
                self._messages[index] = replace(message, content=content)
                return

    def cancel(self) -> None:
        self.controller.cancel()
        self._streaming = False

    def reset(self) -> None:
        self.cancel()
        self._messages = list(self._initial_messages)
        self._error = None
