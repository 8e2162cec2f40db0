"""
Chat Session Manager.

Session lifecycle: Active from ``start_session`` until ``clear_session``,
which deletes the session and its history irreversibly.

Per message (``send_message``):
1. Ownership / existence / busy checks (one message at a time per session)
2. The user message is appended to history before anything else happens
3. Model context = the latest ``context_messages`` messages + page context;
   full history is always retained
4. Budget is reserved before the upstream stream opens (denial: no stream)
5. Deltas are forwarded in order; on clean completion the assembled
   assistant message is appended once

Cancellation (``cancel()``/``aclose()`` on the returned stream, or
``clear_session``) stops the upstream call and discards partial assistant
text; the reserved estimate is still charged. A stream cut short by
``clear_session`` ends with a ``not_found`` error event. Chat is never cached.
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Literal, Mapping, Optional, Set

from pydantic import BaseModel, Field

from advisor_ai.core.errors import BudgetExceededError, ChatSessionBusyError, ForbiddenError, NotFoundError
from advisor_ai.core.logging import get_logger
from advisor_ai.core.metrics import record_chat_stream, record_chat_stream_started
from advisor_ai.services.ai.budget import BudgetLedger
from advisor_ai.services.ai.gateway import ModelGateway, ModelRequest
from advisor_ai.services.ai.prompts import PromptCompiler, estimate_tokens
from advisor_ai.services.ai.schema import Feature
from advisor_ai.services.ai.streaming import (
    CancellationToken,
    DeltaStream,
    ErrorEvent,
    FinalEvent,
    StreamEvent,
)

logger = get_logger(__name__)

DEFAULT_CONTEXT_MESSAGES = 10


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime


class ChatSession(BaseModel):
    id: str
    user_id: str
    messages: List[ChatMessage] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_message_at: Optional[datetime] = None


class ChatSessionStore(ABC):
    @abstractmethod
    async def get(self, session_id: str) -> Optional[ChatSession]:
        ...

    @abstractmethod
    async def create(self, session: ChatSession) -> None:
        ...

    @abstractmethod
    async def append_message(self, session_id: str, message: ChatMessage) -> bool:
        """Append to an existing session. Returns False if the session is gone."""

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...


class InMemoryChatSessionStore(ChatSessionStore):
    def __init__(self):
        self._sessions: Dict[str, ChatSession] = {}

    async def get(self, session_id):
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session is not None else None

    async def create(self, session):
        self._sessions[session.id] = session.model_copy(deep=True)

    async def append_message(self, session_id, message):
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.messages.append(message)
        session.last_message_at = message.timestamp
        return True

    async def delete(self, session_id):
        return self._sessions.pop(session_id, None) is not None


@dataclass
class _Turn:
    session_id: str
    user_id: str
    token: CancellationToken
    upstream: DeltaStream
    outcome: str = "cancelled"
    cleared: bool = False


class ChatSessionManager:
    """
    Stateful streaming chat on top of the gateway's streaming mode.

    Args:
        compiler: Prompt compiler (chat template)
        ledger: Budget ledger
        gateway: Model gateway
        store: Session storage
        context_messages: History messages sent upstream per turn
        now: Clock (injectable for tests)
    """

    def __init__(
        self,
        compiler: PromptCompiler,
        ledger: BudgetLedger,
        gateway: ModelGateway,
        store: Optional[ChatSessionStore] = None,
        context_messages: int = DEFAULT_CONTEXT_MESSAGES,
        now: Callable[[], datetime] = utc_now,
    ):
        self.compiler = compiler
        self.ledger = ledger
        self.gateway = gateway
        self.store = store or InMemoryChatSessionStore()
        self.context_messages = context_messages
        self._now = now
        self._busy: Set[str] = set()
        self._active: Dict[str, _Turn] = {}

    async def start_session(self, user_id: str, context: Optional[Mapping[str, Any]] = None) -> str:
        session = ChatSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            context=dict(context or {}),
            created_at=self._now(),
        )
        await self.store.create(session)
        logger.info("chat_session_started", session_id=session.id, user_id=user_id)
        return session.id

    async def get_history(self, session_id: str, user_id: str) -> List[ChatMessage]:
        return (await self._require_owned(session_id, user_id)).messages

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._busy

    async def send_message(
        self,
        session_id: str,
        user_id: str,
        text: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> DeltaStream:
        """
        Send a user message and stream the assistant's reply.

        Raises:
            NotFoundError / ForbiddenError: unknown or foreign session
            ChatSessionBusyError: a message is already in progress
            BudgetExceededError: daily budget denied (no stream is opened)
            ValueError: empty message
        """
        if not text or not text.strip():
            raise ValueError("message text must not be empty")

        session = await self._require_owned(session_id, user_id)
        # No await between the check and the claim.
        if session_id in self._busy:
            raise ChatSessionBusyError(
                "A message is already being processed for this chat session",
                session_id=session_id,
            )
        self._busy.add(session_id)

        try:
            message = ChatMessage(role="user", content=text.strip(), timestamp=self._now())
            if not await self.store.append_message(session_id, message):
                raise NotFoundError(f"Chat session {session_id} not found", session_id=session_id)
            session.messages.append(message)

            history = [
                {"role": item.role, "content": item.content}
                for item in session.messages[-self.context_messages:]
            ]
            prompt = self.compiler.compile(
                Feature.CHAT,
                {"session_context": session.context, "page_context": dict(context or {})},
                history=history,
            )
            estimate = estimate_tokens(prompt)

            decision = await self.ledger.reserve(user_id, estimate)
            if not decision.allowed:
                raise BudgetExceededError(user_id, decision.remaining, estimate)
        except BaseException:
            self._busy.discard(session_id)
            raise

        token = CancellationToken()
        upstream = self.gateway.stream(
            ModelRequest(feature=Feature.CHAT, prompt=prompt, estimated_tokens=estimate, json_mode=False),
            decision.reservation,
            token=token,
        )
        turn = _Turn(session_id=session_id, user_id=user_id, token=token, upstream=upstream)
        self._active[session_id] = turn
        record_chat_stream_started()
        logger.info(
            "chat_message_accepted",
            session_id=session_id,
            user_id=user_id,
            history_messages=len(session.messages),
            context_messages=len(history),
            estimated_tokens=estimate,
        )

        async def _release() -> None:
            await self._release(turn)

        return DeltaStream(self._relay(turn), token=token, on_close=_release)

    async def _relay(self, turn: _Turn) -> AsyncGenerator[StreamEvent, None]:
        async for event in turn.upstream:
            if isinstance(event, FinalEvent):
                if turn.token.cancelled:
                    break
                stored = await self.store.append_message(
                    turn.session_id,
                    ChatMessage(role="assistant", content=event.text, timestamp=self._now()),
                )
                if not stored:
                    turn.cleared = True
                    break
                turn.outcome = "completed"
            elif isinstance(event, ErrorEvent):
                turn.outcome = "stalled" if event.code == "stream_stalled" else "error"
                logger.warning(
                    "chat_stream_failed",
                    session_id=turn.session_id,
                    error=event.code,
                )
            yield event

        # A reply cut short by another request's clear still ends with a
        # terminal event; a consumer's own cancel ends silently.
        if turn.cleared and turn.outcome == "cancelled":
            turn.outcome = "cleared"
            logger.info("chat_stream_session_cleared", session_id=turn.session_id)
            yield ErrorEvent(
                NotFoundError(
                    f"Chat session {turn.session_id} was cleared", session_id=turn.session_id
                )
            )

    async def _release(self, turn: _Turn) -> None:
        try:
            await turn.upstream.aclose()
        finally:
            self._busy.discard(turn.session_id)
            if self._active.get(turn.session_id) is turn:
                del self._active[turn.session_id]
            record_chat_stream(turn.outcome)
            logger.info(
                "chat_stream_closed",
                session_id=turn.session_id,
                outcome=turn.outcome,
            )

    async def clear_session(self, session_id: str, user_id: str) -> None:
        """Delete the session and its history; cancels an in-progress reply."""
        await self._require_owned(session_id, user_id)
        turn = self._active.get(session_id)
        if turn is not None:
            turn.cleared = True
            turn.token.cancel()
        await self.store.delete(session_id)
        logger.info("chat_session_cleared", session_id=session_id, user_id=user_id)

    async def _require_owned(self, session_id: str, user_id: str) -> ChatSession:
        session = await self.store.get(session_id)
        if session is None:
            raise NotFoundError(f"Chat session {session_id} not found", session_id=session_id)
        if session.user_id != user_id:
            raise ForbiddenError("Chat session belongs to another user", session_id=session_id)
        return session
