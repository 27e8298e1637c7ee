"""ChatSession drives one user's conversations through streamed turns.

The session is a single-writer state machine running on the event loop:

    Idle --send--> Sending --stream done--> Idle (Completed)
                           --transport error--> Idle (Failed)
                           --stop--> Cancelling --> Idle (Interrupted)

Every write to the streaming assistant turn goes through a PendingSlot
(conversation id + turn index). A write whose conversation is no longer the
active one, or whose index no longer holds an assistant turn, is dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

import aiosqlite

from nexus_chat.db import FactPersistError, conversation_store, fact_store
from nexus_chat.db.conversation_store import ConversationStore
from nexus_chat.db.fact_store import FactStore
from nexus_chat.llm.chat.models import (
    ChatEvent,
    ChatSessionConfig,
    ChatSessionInfo,
    ChatSessionSnapshot,
    ChatStrings,
    Notification,
    PendingSlot,
    SessionState,
    TurnOutcome,
)
from nexus_chat.llm.chat.personal_facts import extract_personal_facts
from nexus_chat.llm.client import CompletionClient, TransportError
from nexus_chat.llm.markers import MarkerExtractor, dedupe_facts
from nexus_chat.models import ChatRole, ConversationSummary, Transcript, Turn

logger = logging.getLogger(__name__)

FACTS_NOTE_SEPARATOR = " • "


@dataclass
class _ActiveTurn:
    """Bookkeeping for the turn currently streaming."""

    slot: PendingSlot
    message: str
    history: list[Turn]
    user_facts: list[str] = field(default_factory=list)
    accumulator: str = ""


class ChatSession:
    """A chat session streaming model replies into the active conversation.

    The session maintains:
    - The active transcript and the list of stored conversations
    - At most one in-flight turn and the slot it writes to
    - Subscriber queues receiving a ChatEvent for every change
    """

    def __init__(
        self,
        session_id: str,
        client: CompletionClient,
        config: ChatSessionConfig | None = None,
        conversations: ConversationStore | None = None,
        facts: FactStore | None = None,
        facts_enabled: bool = True,
        auto_save_enabled: bool = True,
    ):
        self.session_id = session_id
        self.client = client
        self.config = config or ChatSessionConfig()
        self.extractor = MarkerExtractor(self.config.marker_grammar())
        self.facts_enabled = facts_enabled
        self.auto_save_enabled = auto_save_enabled
        self._conversation_store = conversations or conversation_store
        self._fact_store = facts or fact_store

        self.transcript = self._new_transcript()
        self.conversations: list[Transcript] = []
        self.input = ""
        self.notification: Notification | None = None
        self.last_outcome: TurnOutcome | None = None
        self.created_at = datetime.now()
        self.last_activity = datetime.now()

        self._state = SessionState.IDLE
        self._turn: _ActiveTurn | None = None
        self._task: asyncio.Task | None = None
        self._last_sent: str | None = None
        self._subscribers: list[asyncio.Queue[ChatEvent]] = []
        self._note_tasks: set[asyncio.Task] = set()
        self._stopped: asyncio.Event | None = None

    @property
    def strings(self) -> ChatStrings:
        return self.config.strings

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_processing(self) -> bool:
        """Whether a turn is in flight."""
        return self._state != SessionState.IDLE

    @property
    def last_sent_message(self) -> str | None:
        return self._last_sent

    async def initialize(self) -> None:
        """Load stored conversations and persist the opening transcript."""
        await self._persist()
        logger.info(f"Chat session {self.session_id} initialized")

    # ==================== Subscriptions ====================

    def subscribe(self) -> asyncio.Queue[ChatEvent]:
        """Register a subscriber queue that receives every ChatEvent."""
        queue: asyncio.Queue[ChatEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChatEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event: ChatEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def _set_state(self, state: SessionState, outcome: TurnOutcome | None = None) -> None:
        self._state = state
        if outcome is not None:
            self.last_outcome = outcome
        self._emit(ChatEvent(event="state", state=state, outcome=outcome))

    # ==================== Turn lifecycle ====================

    def set_input(self, text: str) -> None:
        self.input = text

    def send(self, text: str | None = None) -> bool:
        """Start a turn with ``text`` (or the current input).

        Blank text, or a turn already in flight, is ignored.

        Returns:
            True if a turn was started.
        """
        message = (self.input if text is None else text).strip()
        if not message or self._state != SessionState.IDLE:
            return False

        self.last_activity = datetime.now()
        self._last_sent = message
        self.input = ""

        history = list(self.transcript.turns)
        user_turn = Turn(role=ChatRole.USER, content=message)
        placeholder = Turn(role=ChatRole.ASSISTANT, content="", in_progress=True)
        self.transcript.turns.extend([user_turn, placeholder])

        slot = PendingSlot(self.transcript.id, len(self.transcript.turns) - 1)
        turn = _ActiveTurn(slot=slot, message=message, history=history)
        if self.facts_enabled and self.auto_save_enabled:
            turn.user_facts = extract_personal_facts(message)

        self._turn = turn
        self._set_state(SessionState.SENDING)
        self._emit(ChatEvent(
            event="turn", conversation_id=slot.conversation_id, index=slot.index - 1, turn=user_turn
        ))
        self._emit(ChatEvent(
            event="turn", conversation_id=slot.conversation_id, index=slot.index, turn=placeholder
        ))

        self._task = asyncio.create_task(self._run_turn(turn), name=f"chat-turn-{self.session_id}")
        return True

    def retry(self) -> bool:
        """Resend the last message after a failure.

        Returns:
            True if a turn was started.
        """
        if self._state != SessionState.IDLE or not self._last_sent:
            return False
        self.notification = None
        self.input = self._last_sent
        return self.send()

    async def stop(self) -> bool:
        """Cancel the in-flight turn, if any.

        No delta is applied after this is called, even one already queued.

        Returns:
            True if a turn was interrupted.
        """
        if self._state == SessionState.CANCELLING and self._stopped is not None:
            # Another stop is tearing the turn down; finish with it
            await self._stopped.wait()
            return False

        turn = self._turn
        if turn is None or self._state != SessionState.SENDING:
            return False

        transcript = self.transcript
        self._turn = None
        self._stopped = asyncio.Event()
        self._set_state(SessionState.CANCELLING)

        try:
            self.client.cancel_active()
            task = self._task
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            current = self._slot_turn(turn.slot)
            if current is not None and current.in_progress:
                self._write_slot(turn.slot, content=self.strings.interrupted, in_progress=False)

            self._set_state(SessionState.IDLE, TurnOutcome.INTERRUPTED)
            logger.info(f"Chat session {self.session_id} interrupted turn")
            await self._persist(transcript)
        finally:
            self._stopped.set()
            self._stopped = None
        return True

    async def wait_until_idle(self) -> None:
        """Wait for the current turn task, if any, to finish."""
        task = self._task
        if task and not task.done():
            await asyncio.wait({task})

    async def _run_turn(self, turn: _ActiveTurn) -> None:
        try:
            await self._save_facts(turn.user_facts)
            request = await self._build_request(turn)
            await self.client.stream(request, lambda delta: self._on_delta(turn, delta))
        except TransportError as e:
            logger.warning(f"Chat session {self.session_id} turn failed: {e}")
            await self._fail_turn(turn, e)
            return
        except Exception as e:
            logger.exception(f"Unexpected error in chat turn: {e}")
            await self._fail_turn(turn, e)
            return

        await self._complete_turn(turn)

    def _on_delta(self, turn: _ActiveTurn, delta: str) -> None:
        if self._turn is not turn or not delta:
            return
        turn.accumulator += delta
        visible = self.extractor.extract(turn.accumulator).visible
        self._write_slot(turn.slot, content=visible, in_progress=True)

    async def _complete_turn(self, turn: _ActiveTurn) -> None:
        if self._turn is not turn:
            return

        transcript = self.transcript
        result = self.extractor.extract(turn.accumulator)
        marker_facts = result.facts if self.facts_enabled and self.auto_save_enabled else []
        note = FACTS_NOTE_SEPARATOR.join(dedupe_facts([*marker_facts, *turn.user_facts])) or None

        self._write_slot(turn.slot, content=result.visible, in_progress=False, facts_saved=note)
        self._turn = None
        self._set_state(SessionState.IDLE, TurnOutcome.COMPLETED)

        await self._save_facts(marker_facts)
        if note:
            self._schedule_note_clear(turn.slot, note)
        # The user may have switched conversations while facts were saving
        await self._persist(transcript)

    async def _fail_turn(self, turn: _ActiveTurn, error: Exception) -> None:
        if self._turn is not turn:
            return

        transcript = self.transcript
        reason = str(error) or self.strings.generic_error
        self._write_slot(
            turn.slot,
            content=self.strings.assistant_error_template.format(error=reason),
            in_progress=False,
        )
        self._turn = None
        self.notification = Notification(
            message=self.strings.notification_failed_template.format(error=reason),
            action_label=self.strings.retry_action_label,
            retry_message=turn.message,
        )
        self._set_state(SessionState.IDLE, TurnOutcome.FAILED)
        self._emit(ChatEvent(event="notification", notification=self.notification))
        await self._persist(transcript)

    # ==================== Slot writes ====================

    def _slot_turn(self, slot: PendingSlot) -> Turn | None:
        """Return the turn a slot points at, or None if the slot is stale."""
        if self.transcript.id != slot.conversation_id:
            return None
        turns = self.transcript.turns
        if not 0 <= slot.index < len(turns):
            return None
        turn = turns[slot.index]
        if turn.role != ChatRole.ASSISTANT:
            return None
        return turn

    def _write_slot(self, slot: PendingSlot, **changes: object) -> bool:
        """Apply changes to the slot's turn unless the slot is stale."""
        current = self._slot_turn(slot)
        if current is None:
            logger.debug(
                f"Dropped stale write for conversation {slot.conversation_id} index {slot.index}"
            )
            return False
        updated = current.model_copy(update=changes)
        self.transcript.turns[slot.index] = updated
        self._emit(ChatEvent(
            event="turn", conversation_id=slot.conversation_id, index=slot.index, turn=updated
        ))
        return True

    def _schedule_note_clear(self, slot: PendingSlot, note: str) -> None:
        task = asyncio.create_task(self._clear_note_later(slot, note))
        self._note_tasks.add(task)
        task.add_done_callback(self._note_tasks.discard)

    async def _clear_note_later(self, slot: PendingSlot, note: str) -> None:
        await asyncio.sleep(self.config.facts_note_seconds)
        current = self._slot_turn(slot)
        if current is None or current.facts_saved != note:
            return
        self._write_slot(slot, facts_saved=None)

    # ==================== Request building & facts ====================

    async def _build_request(self, turn: _ActiveTurn) -> list[Turn]:
        """Assemble system instructions, saved facts, history and the new message."""
        system = self.strings.system_prompt
        if self.facts_enabled:
            instructions = self.strings.facts_instructions.format(
                marker=self.extractor.instruction_example()
            )
            system = f"{system}\n\n{instructions}"
        request = [Turn(role=ChatRole.SYSTEM, content=system)]

        if self.facts_enabled:
            facts = await self._load_facts()
            if facts:
                request.append(Turn(
                    role=ChatRole.SYSTEM,
                    content=self.strings.facts_context_header + "\n- " + "\n- ".join(facts),
                ))

        request.extend(
            t for t in turn.history
            if t.role != ChatRole.SYSTEM and t.content.strip() and not t.in_progress
        )
        request.append(Turn(role=ChatRole.USER, content=turn.message))
        return request

    async def _load_facts(self) -> list[str]:
        try:
            return await self._fact_store.load_facts()
        except FactPersistError as e:
            logger.warning(f"Could not load facts for request context: {e}")
            return []

    async def _save_facts(self, facts: list[str]) -> None:
        """Persist facts one by one; failures are logged and skipped."""
        for fact in facts:
            try:
                await self._fact_store.add_fact(fact)
            except FactPersistError as e:
                logger.warning(f"Failed to save fact '{fact}': {e}")

    def update_memory_settings(self, facts_enabled: bool, auto_save_enabled: bool) -> None:
        self.facts_enabled = facts_enabled
        self.auto_save_enabled = auto_save_enabled

    async def update_strings(self, strings: ChatStrings) -> None:
        """Swap user-facing strings, refreshing a greeting-only transcript."""
        self.config = self.config.model_copy(update={"strings": strings})
        turns = self.transcript.turns
        if len(turns) == 1 and turns[0].role == ChatRole.ASSISTANT and not self.is_processing:
            self.transcript.turns = self._new_transcript().turns
            self._emit(ChatEvent(event="transcript", conversation_id=self.transcript.id))
            await self._persist()

    # ==================== Conversations ====================

    def _new_transcript(self) -> Transcript:
        greeting = self.strings.greeting
        turns = [Turn(role=ChatRole.ASSISTANT, content=greeting)] if greeting else []
        return Transcript(turns=turns)

    def _activate(self, transcript: Transcript) -> None:
        self.transcript = transcript
        self.input = ""
        self._emit(ChatEvent(event="transcript", conversation_id=transcript.id))

    async def new_conversation(self) -> Transcript:
        """Stop any turn and start a fresh conversation."""
        await self.stop()
        self._activate(self._new_transcript())
        await self._persist()
        return self.transcript

    async def open_conversation(self, conversation_id: str) -> bool:
        """Stop any turn and make a stored conversation the active one.

        Returns:
            False if no conversation with that id is stored.
        """
        await self.stop()
        stored = next((c for c in self.conversations if c.id == conversation_id), None)
        if stored is None:
            stored = await self._conversation_store.get_conversation(conversation_id)
        if stored is None:
            return False

        turns = list(stored.turns) or self._new_transcript().turns
        self._activate(Transcript(id=stored.id, created_at=stored.created_at, turns=turns))
        return True

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Stop any turn and delete a stored conversation.

        Deleting the active conversation starts a new one.
        """
        await self.stop()
        deleted = await self._conversation_store.delete_conversation(conversation_id)
        await self.refresh_conversations()
        if conversation_id == self.transcript.id:
            await self.new_conversation()
        return deleted

    async def clear_all_history(self) -> int:
        """Stop any turn, delete every stored conversation and start afresh."""
        await self.stop()
        removed = await self._conversation_store.clear_all_conversations()
        self._activate(self._new_transcript())
        await self._persist()
        return removed

    async def refresh_conversations(self) -> None:
        self.conversations = await self._conversation_store.load_conversations()
        self._emit(ChatEvent(event="conversations"))

    async def _persist(self, transcript: Transcript | None = None) -> None:
        """Snapshot a transcript (the active one by default) and refresh the list."""
        transcript = transcript or self.transcript
        try:
            await self._conversation_store.upsert_conversation(transcript)
            await self.refresh_conversations()
        except aiosqlite.Error as e:
            logger.error(f"Failed to persist conversation {transcript.id}: {e}")

    # ==================== Inspection & teardown ====================

    def consume_notification(self) -> Notification | None:
        notification, self.notification = self.notification, None
        return notification

    def snapshot(self) -> ChatSessionSnapshot:
        return ChatSessionSnapshot(
            session_id=self.session_id,
            state=self._state,
            last_outcome=self.last_outcome,
            conversation_id=self.transcript.id,
            turns=list(self.transcript.turns),
            input=self.input,
            notification=self.notification,
            conversations=[ConversationSummary.from_transcript(c) for c in self.conversations],
            facts_enabled=self.facts_enabled,
            auto_save_enabled=self.auto_save_enabled,
        )

    def get_info(self) -> ChatSessionInfo:
        return ChatSessionInfo(
            session_id=self.session_id,
            created_at=self.created_at,
            last_activity=self.last_activity,
            conversation_id=self.transcript.id,
            message_count=len(self.transcript.turns),
            state=self._state,
        )

    async def close(self) -> None:
        """Stop any turn and release the client."""
        await self.stop()
        for task in list(self._note_tasks):
            task.cancel()
        await self.client.aclose()
        self._emit(ChatEvent(event="closed"))
        logger.info(f"Chat session {self.session_id} closed")
