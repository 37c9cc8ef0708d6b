import copy
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class Tab(str, Enum):
    ALL = "all"
    STARRED = "starred"
    ARCHIVED = "archived"


class MutationState(str, Enum):
    IDLE = "idle"
    APPLIED = "applied"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


@dataclass
class ChatMessage:
    id: str
    conversation_id: str
    role: str
    content: str
    tokens_used: int = 0
    cost: float = 0.0
    is_starred: bool = False
    created_at: str = ""
    status: str = "sent"  # sending | sent | error
    error: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "ChatMessage":
        return cls(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data["content"],
            tokens_used=data.get("tokens_used", 0),
            cost=data.get("cost", 0.0),
            is_starred=bool(data.get("is_starred", False)),
            created_at=data.get("created_at", ""),
        )


@dataclass
class ChatConversation:
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str
    category: Optional[str] = None
    is_starred: bool = False
    is_archived: bool = False
    tags: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    last_message_at: Optional[str] = None
    # Local-only
    message_count: int = 0
    last_message_id: Optional[str] = None
    last_message_content: Optional[str] = None
    last_message_role: Optional[str] = None
    unread_count: int = 0
    error: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "ChatConversation":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            title=data["title"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            category=data.get("category"),
            is_starred=bool(data.get("is_starred", False)),
            is_archived=bool(data.get("is_archived", False)),
            tags=list(data.get("tags") or []),
            metadata=dict(data.get("metadata") or {}),
            last_message_at=data.get("last_message_at"),
            message_count=data.get("message_count", 0),
            last_message_content=data.get("last_message_content"),
            last_message_role=data.get("last_message_role"),
        )


# Fields the server owns. A confirmed response overwrites these locally.
CONVERSATION_SERVER_FIELDS = (
    "user_id", "title", "created_at", "updated_at", "category",
    "is_starred", "is_archived", "tags", "metadata", "last_message_at",
)
MESSAGE_SERVER_FIELDS = ("content", "tokens_used", "cost", "is_starred", "created_at")


@dataclass
class UIState:
    search_query: str = ""
    active_tab: Tab = Tab.ALL
    is_loading: bool = False
    is_sending: bool = False
    error: Optional[str] = None


@dataclass
class PendingMutation:
    """One optimistic write: the value it replaced and the request that carries it."""
    conversation_id: str
    field: str
    previous_value: Any
    new_value: Any
    request_id: int
    message_id: Optional[str] = None
    state: MutationState = MutationState.APPLIED

    @property
    def key(self) -> tuple:
        if self.message_id is not None:
            return ("message", self.message_id, self.field)
        return ("conversation", self.conversation_id, self.field)


@dataclass
class FieldSync:
    confirmed_value: Any
    issued_seq: int = 0
    applied_seq: int = 0
    state: MutationState = MutationState.IDLE
    in_flight: set[int] = field(default_factory=set)


@dataclass
class ConversationSnapshot:
    conversation: ChatConversation
    messages: list[ChatMessage]
    was_active: bool


class ChatStore:
    """In-memory mirror of the session's conversations and messages.

    Only the methods below mutate state. Optimistic writes go through
    apply(), and leave through exactly one of confirm() or rollback().
    """

    def __init__(self):
        self.conversations: dict[str, ChatConversation] = {}
        self.messages: dict[str, list[ChatMessage]] = {}
        self.prompts: dict[str, list[dict]] = {}
        self.active_conversation_id: Optional[str] = None
        self.ui_state = UIState()
        self._sync: dict[tuple, FieldSync] = {}
        self._seq = itertools.count(1)

    # --- Conversations ---

    def set_conversations(self, conversations: list[ChatConversation]):
        previous = self.conversations
        self.conversations = {}
        for conv in conversations:
            old = previous.get(conv.id)
            if old is not None:
                conv.unread_count = old.unread_count
            self.conversations[conv.id] = conv
        for key in [k for k in self._sync if k[0] == "conversation" and k[1] not in self.conversations]:
            del self._sync[key]
        if self.active_conversation_id not in self.conversations:
            self.active_conversation_id = None

    def upsert_conversation(self, conversation: ChatConversation) -> ChatConversation:
        existing = self.conversations.get(conversation.id)
        if existing is None:
            self.conversations[conversation.id] = conversation
            return conversation
        self.merge_server_fields(conversation.id, {
            name: getattr(conversation, name) for name in CONVERSATION_SERVER_FIELDS
        })
        return existing

    def merge_server_fields(self, conversation_id: str, data: dict, skip: tuple = ()):
        """Overwrite server-owned fields, leaving any with a mutation in flight."""
        conv = self.conversations.get(conversation_id)
        if conv is None:
            return
        for name in CONVERSATION_SERVER_FIELDS:
            if name not in data or name in skip:
                continue
            sync = self._sync.get(("conversation", conversation_id, name))
            if sync is not None and sync.in_flight:
                continue
            setattr(conv, name, copy.deepcopy(data[name]))

    def get_conversation(self, conversation_id: str) -> Optional[ChatConversation]:
        return self.conversations.get(conversation_id)

    def remove_conversation(self, conversation_id: str) -> Optional[ConversationSnapshot]:
        conv = self.conversations.pop(conversation_id, None)
        if conv is None:
            return None
        snapshot = ConversationSnapshot(
            conversation=conv,
            messages=self.messages.pop(conversation_id, []),
            was_active=self.active_conversation_id == conversation_id,
        )
        self.prompts.pop(conversation_id, None)
        message_ids = {m.id for m in snapshot.messages}
        for key in list(self._sync):
            if (key[0] == "conversation" and key[1] == conversation_id) or (
                key[0] == "message" and key[1] in message_ids
            ):
                del self._sync[key]
        if snapshot.was_active:
            self.active_conversation_id = None
        return snapshot

    def restore_conversation(self, snapshot: ConversationSnapshot, error: Optional[str] = None):
        conv = snapshot.conversation
        conv.error = error
        self.conversations[conv.id] = conv
        self.messages[conv.id] = snapshot.messages
        if snapshot.was_active and self.active_conversation_id is None:
            self.active_conversation_id = conv.id
        if error:
            self.ui_state.error = error

    # --- Messages ---

    def set_messages(self, conversation_id: str, messages: list[ChatMessage]):
        self.messages[conversation_id] = list(messages)
        conv = self.conversations.get(conversation_id)
        if conv is not None:
            conv.message_count = len(messages)
            if messages:
                last = messages[-1]
                conv.last_message_id = last.id
                conv.last_message_content = last.content
                conv.last_message_role = last.role

    def add_message(self, conversation_id: str, message: ChatMessage):
        self.messages.setdefault(conversation_id, []).append(message)
        conv = self.conversations.get(conversation_id)
        if conv is None:
            return
        conv.message_count += 1
        conv.last_message_id = message.id
        conv.last_message_content = message.content
        conv.last_message_role = message.role
        if message.created_at:
            conv.updated_at = message.created_at
            conv.last_message_at = message.created_at
        if message.role == "assistant" and conversation_id != self.active_conversation_id:
            conv.unread_count += 1

    def get_message(self, conversation_id: str, message_id: str) -> Optional[ChatMessage]:
        for msg in self.messages.get(conversation_id, []):
            if msg.id == message_id:
                return msg
        return None

    def replace_message(self, conversation_id: str, message_id: str, message: ChatMessage):
        msgs = self.messages.get(conversation_id, [])
        for i, msg in enumerate(msgs):
            if msg.id == message_id:
                msgs[i] = message
                break
        conv = self.conversations.get(conversation_id)
        if conv is not None and conv.last_message_id == message_id:
            conv.last_message_id = message.id
            conv.last_message_content = message.content

    def update_message(self, conversation_id: str, message_id: str, **updates) -> Optional[ChatMessage]:
        msg = self.get_message(conversation_id, message_id)
        if msg is None:
            return None
        for name, value in updates.items():
            setattr(msg, name, value)
        return msg

    def remove_message(self, conversation_id: str, message_id: str):
        msgs = self.messages.get(conversation_id)
        if msgs is None:
            return
        self.messages[conversation_id] = [m for m in msgs if m.id != message_id]
        conv = self.conversations.get(conversation_id)
        if conv is not None and len(self.messages[conversation_id]) < len(msgs):
            conv.message_count = max(conv.message_count - 1, 0)

    def snapshot_activity(self, conversation_id: str) -> Optional[dict]:
        conv = self.conversations.get(conversation_id)
        if conv is None:
            return None
        return {
            name: getattr(conv, name)
            for name in (
                "updated_at", "last_message_at", "last_message_id",
                "last_message_content", "last_message_role", "unread_count",
                "message_count",
            )
        }

    def restore_activity(self, conversation_id: str, snapshot: Optional[dict]):
        conv = self.conversations.get(conversation_id)
        if conv is None or snapshot is None:
            return
        for name, value in snapshot.items():
            setattr(conv, name, value)

    # --- Optimistic field sync ---

    def apply(
        self,
        conversation_id: str,
        field_name: str,
        value: Any,
        message_id: Optional[str] = None,
    ) -> PendingMutation:
        target = self._target(conversation_id, message_id)
        if target is None:
            raise KeyError(message_id or conversation_id)

        current = copy.deepcopy(getattr(target, field_name))
        mutation = PendingMutation(
            conversation_id=conversation_id,
            field=field_name,
            previous_value=current,
            new_value=copy.deepcopy(value),
            request_id=next(self._seq),
            message_id=message_id,
        )
        sync = self._sync.get(mutation.key)
        if sync is None:
            sync = self._sync[mutation.key] = FieldSync(confirmed_value=current)
        elif not sync.in_flight:
            # Nothing pending, so what is displayed is what the server last agreed to
            sync.confirmed_value = current
        sync.issued_seq = mutation.request_id
        sync.in_flight.add(mutation.request_id)
        sync.state = MutationState.APPLIED

        setattr(target, field_name, copy.deepcopy(value))
        target.error = None
        return mutation

    def confirm(self, mutation: PendingMutation, server_data: Optional[dict]) -> bool:
        """Apply a successful response. Returns False when it was stale and dropped."""
        sync = self._sync.get(mutation.key)
        target = self._target(mutation.conversation_id, mutation.message_id)
        if sync is None or target is None:
            return False
        sync.in_flight.discard(mutation.request_id)
        if mutation.request_id < sync.applied_seq:
            logger.debug(
                "Discarding stale response %d for %s (applied %d)",
                mutation.request_id, mutation.key, sync.applied_seq,
            )
            return False

        server_data = server_data or {}
        value = server_data.get(mutation.field, mutation.new_value)
        sync.applied_seq = mutation.request_id
        sync.confirmed_value = copy.deepcopy(value)
        mutation.state = MutationState.CONFIRMED

        if mutation.message_id is not None:
            for name in MESSAGE_SERVER_FIELDS:
                if name == mutation.field or name not in server_data:
                    continue
                other = self._sync.get(("message", mutation.message_id, name))
                if other is None or not other.in_flight:
                    setattr(target, name, server_data[name])
        else:
            self.merge_server_fields(mutation.conversation_id, server_data, skip=(mutation.field,))

        if not any(seq > mutation.request_id for seq in sync.in_flight):
            setattr(target, mutation.field, copy.deepcopy(value))
            sync.state = MutationState.CONFIRMED
        return True

    def rollback(self, mutation: PendingMutation, error: Optional[str] = None) -> bool:
        """Revert to the last confirmed value if this was the newest request for the field."""
        mutation.state = MutationState.ROLLED_BACK
        sync = self._sync.get(mutation.key)
        target = self._target(mutation.conversation_id, mutation.message_id)
        if sync is None or target is None:
            return False
        sync.in_flight.discard(mutation.request_id)
        if mutation.request_id != sync.issued_seq:
            return False

        # A failure carries no server state, so applied_seq stays put and an
        # older request still in flight may confirm afterwards.
        setattr(target, mutation.field, copy.deepcopy(sync.confirmed_value))
        sync.state = MutationState.ROLLED_BACK
        target.error = error
        if error:
            self.ui_state.error = error
        return True

    def field_state(
        self, conversation_id: str, field_name: str, message_id: Optional[str] = None
    ) -> MutationState:
        if message_id is not None:
            key = ("message", message_id, field_name)
        else:
            key = ("conversation", conversation_id, field_name)
        sync = self._sync.get(key)
        return sync.state if sync else MutationState.IDLE

    def _target(self, conversation_id: str, message_id: Optional[str]):
        if message_id is not None:
            return self.get_message(conversation_id, message_id)
        return self.conversations.get(conversation_id)

    # --- UI ---

    def set_active_conversation(self, conversation_id: Optional[str]):
        self.active_conversation_id = conversation_id
        if conversation_id is not None:
            self.mark_as_read(conversation_id)

    def mark_as_read(self, conversation_id: str):
        conv = self.conversations.get(conversation_id)
        if conv is not None:
            conv.unread_count = 0

    def set_search_query(self, query: str):
        self.ui_state.search_query = query or ""

    def set_active_tab(self, tab):
        self.ui_state.active_tab = Tab(tab)

    def set_error(self, error: Optional[str]):
        self.ui_state.error = error

    def get_active_conversation(self) -> Optional[ChatConversation]:
        if self.active_conversation_id is None:
            return None
        return self.conversations.get(self.active_conversation_id)

    def get_active_messages(self) -> list[ChatMessage]:
        if self.active_conversation_id is None:
            return []
        return list(self.messages.get(self.active_conversation_id, []))

    def get_filtered_conversations(self) -> list[ChatConversation]:
        tab = self.ui_state.active_tab
        query = self.ui_state.search_query.strip().lower()

        matches = []
        for conv in self.conversations.values():
            if tab == Tab.ARCHIVED and not conv.is_archived:
                continue
            if tab == Tab.STARRED and not conv.is_starred:
                continue
            if tab == Tab.ALL and conv.is_archived:
                continue
            if query and not _matches(conv, query):
                continue
            matches.append(conv)

        # Both sorts are stable: updated_at desc, then id asc among equals
        matches.sort(key=lambda c: c.id)
        matches.sort(key=lambda c: c.updated_at, reverse=True)
        return matches

    def counts_by_tab(self) -> dict[str, int]:
        convs = list(self.conversations.values())
        return {
            Tab.ALL.value: sum(1 for c in convs if not c.is_archived),
            Tab.STARRED.value: sum(1 for c in convs if c.is_starred),
            Tab.ARCHIVED.value: sum(1 for c in convs if c.is_archived),
        }


def _matches(conv: ChatConversation, query: str) -> bool:
    haystacks = [conv.title, conv.last_message_content or "", *conv.tags]
    return any(query in text.lower() for text in haystacks)
