from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from relay.assembler import (
    build_model_turn,
    build_user_turn,
    extract_reply_text,
    tail,
    to_request_payload,
)
from relay.core.errors import (
    ImageFetchFailure,
    RemoteCallFailure,
    StorageFailure,
    ValidationError,
)
from relay.core.memory import JsonConversationStore
from relay.core.models import InlineMediaPart


logger = logging.getLogger("relay.chat")

REQUIRED_PARAMS_ERROR = 'Both "prompt" and "uid" parameters are required'
REQUIRED_PARAMS_EXAMPLE = "/gemini-chat?prompt=hello&uid=123"
MODEL_FAILURE_ERROR = "Failed to get response from Gemini API"
STORAGE_FAILURE_ERROR = "Failed to access conversation storage"


class ModelClient(Protocol):
    async def generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...


class ImageSource(Protocol):
    async def fetch(self, url: str) -> InlineMediaPart:
        ...


class ChatState(str, Enum):
    START = "start"
    HISTORY_LOADED = "history_loaded"
    USER_TURN_ASSEMBLED = "user_turn_assembled"
    IMAGE_ATTACHED = "image_attached"
    IMAGE_SKIPPED = "image_skipped"
    MODEL_CALLED = "model_called"
    MODEL_TURN_ASSEMBLED = "model_turn_assembled"
    PERSISTED = "persisted"
    RESPONDED = "responded"
    ABORTED = "aborted"


@dataclass
class ChatOutcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


class ChatRelay:
    """Runs one chat turn: load history, call Gemini, persist both new messages."""

    def __init__(
        self,
        store: JsonConversationStore,
        model_client: ModelClient,
        image_fetcher: Optional[ImageSource] = None,
        history_view_limit: int = 10,
    ):
        self._store = store
        self._model = model_client
        self._images = image_fetcher
        self._view_limit = history_view_limit

    async def handle_chat(
        self,
        user_id: Optional[str],
        prompt: Optional[str],
        img_url: Optional[str] = None,
        clear: bool = False,
    ) -> ChatOutcome:
        try:
            if clear:
                return await self._clear(user_id)
            self._validate(user_id, prompt)
            return await self._run_turn(user_id, prompt, img_url)
        except ValidationError as e:
            logger.info("Rejected chat request: %s", e.message)
            return ChatOutcome(400, {"error": REQUIRED_PARAMS_ERROR, "example": REQUIRED_PARAMS_EXAMPLE})
        except RemoteCallFailure as e:
            self._trace(user_id, ChatState.ABORTED, reason=e.code)
            logger.error("Gemini Error uid=%s: [%s] %s", user_id, e.code, e.message)
            return ChatOutcome(500, {"status": False, "error": MODEL_FAILURE_ERROR})
        except StorageFailure as e:
            self._trace(user_id, ChatState.ABORTED, reason=e.code)
            logger.error("Storage Error uid=%s: [%s] %s", user_id, e.code, e.message)
            return ChatOutcome(500, {"status": False, "error": STORAGE_FAILURE_ERROR})

    async def _clear(self, user_id: Optional[str]) -> ChatOutcome:
        if not (user_id and user_id.strip()):
            raise ValidationError(code="MISSING_UID", message="uid is required to clear a conversation")
        await self._store.delete(user_id)
        logger.info("Conversation cleared uid=%s", user_id)
        return ChatOutcome(200, {"status": True, "message": "Conversation cleared"})

    @staticmethod
    def _validate(user_id: Optional[str], prompt: Optional[str]) -> None:
        missing = [
            name for name, value in (("prompt", prompt), ("uid", user_id)) if not (value and value.strip())
        ]
        if missing:
            raise ValidationError(code="MISSING_PARAMS", message=f"Missing parameters: {', '.join(missing)}")

    async def _run_turn(self, user_id: str, prompt: str, img_url: Optional[str]) -> ChatOutcome:
        self._trace(user_id, ChatState.START)
        async with self._store.session(user_id) as session:
            conversation = session.messages
            self._trace(user_id, ChatState.HISTORY_LOADED, history=len(conversation))

            media = await self._fetch_image(user_id, img_url)
            conversation.append(build_user_turn(prompt, media))
            self._trace(user_id, ChatState.USER_TURN_ASSEMBLED, image=media is not None)

            logger.info(
                "Incoming chat: uid=%s prompt_len=%s image=%s history=%s",
                user_id,
                len(prompt),
                media is not None,
                len(conversation) - 1,
            )
            body = await self._model.generate(to_request_payload(conversation))
            self._trace(user_id, ChatState.MODEL_CALLED)

            text = extract_reply_text(body)
            if text is None:
                logger.warning("Gemini returned no usable text uid=%s", user_id)
            model_turn = build_model_turn(text)
            conversation.append(model_turn)
            self._trace(user_id, ChatState.MODEL_TURN_ASSEMBLED)

            await session.commit(conversation)
            self._trace(user_id, ChatState.PERSISTED, history=len(conversation))

        reply = model_turn.parts[0].text
        logger.info("Model responded uid=%s: %s chars", user_id, len(reply))
        self._trace(user_id, ChatState.RESPONDED)
        return ChatOutcome(
            200,
            {
                "status": True,
                "response": reply,
                "conversation": [m.to_wire() for m in tail(conversation, self._view_limit)],
            },
        )

    async def _fetch_image(self, user_id: str, img_url: Optional[str]):
        if not img_url:
            self._trace(user_id, ChatState.IMAGE_SKIPPED)
            return None
        if self._images is None:
            logger.warning("Image ignored uid=%s: no image fetcher configured", user_id)
            self._trace(user_id, ChatState.IMAGE_SKIPPED)
            return None
        try:
            media = await self._images.fetch(img_url)
        except ImageFetchFailure as e:
            logger.warning("Error loading image uid=%s: [%s] %s", user_id, e.code, e.message)
            self._trace(user_id, ChatState.IMAGE_SKIPPED, reason=e.code)
            return None
        self._trace(user_id, ChatState.IMAGE_ATTACHED, mime=media.inline_data.mime_type)
        return media

    @staticmethod
    def _trace(user_id: Optional[str], state: ChatState, **details: Any) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("uid=%s state=%s %s", user_id, state.value, details or "")
