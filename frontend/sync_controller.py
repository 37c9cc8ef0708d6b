import logging
import time
import uuid
from typing import Any, Callable, Optional

from frontend.api_client import (
    APIClient,
    APIError,
    ConflictError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from frontend.chat_store import ChatConversation, ChatMessage, ChatStore, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"
MAX_TITLE_LENGTH = 255
MAX_TAGS = 10
MAX_TAG_LENGTH = 50
MAX_CONTENT_LENGTH = 50_000
LOCAL_ID_PREFIX = "local-"


# --- Local validation (mirrors the backend so nothing invalid is ever applied) ---

def check_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be {MAX_TITLE_LENGTH} characters or less")
    return title


def check_tags(tags: Any) -> list[str]:
    if isinstance(tags, (set, frozenset)):
        tags = sorted(tags)
    if not isinstance(tags, (list, tuple)):
        raise ValidationError("tags must be an array of strings")
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip() or len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(
                f"All tags must be non-empty strings with maximum {MAX_TAG_LENGTH} characters"
            )
    return list(dict.fromkeys(tags))


def check_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("content is required")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError("Content must be 50,000 characters or less")
    return content


def check_flag(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean value")
    return value


class SyncController:
    """Drives every user action: mutate the store, call the backend, reconcile.

    Deletes that fail with a DependencyError are retried with exponential
    backoff; ``sleep`` is injectable so tests do not wait.
    """

    def __init__(
        self,
        store: ChatStore,
        api: APIClient,
        sleep: Callable[[float], None] = time.sleep,
        max_delete_attempts: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 4.0,
    ):
        self.store = store
        self.api = api
        self._sleep = sleep
        self.max_delete_attempts = max(1, max_delete_attempts)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._deleting: set[str] = set()

    # --- Loading ---

    def load_conversations(self) -> list[ChatConversation]:
        self.store.ui_state.is_loading = True
        try:
            data = self.api.list_conversations()
        except APIError as exc:
            self.store.set_error(exc.message)
            raise
        finally:
            self.store.ui_state.is_loading = False
        self.store.set_conversations([ChatConversation.from_api(c) for c in data])
        return self.store.get_filtered_conversations()

    def open_conversation(self, conversation_id: Optional[str]):
        self.store.set_active_conversation(conversation_id)
        if conversation_id is not None and conversation_id not in self.store.messages:
            self.refresh_conversation(conversation_id)

    def refresh_conversation(self, conversation_id: str) -> ChatConversation:
        try:
            data = self.api.get_conversation(conversation_id)
        except NotFoundError as exc:
            self.store.remove_conversation(conversation_id)
            self.store.set_error(exc.message)
            raise
        conv = self.store.upsert_conversation(ChatConversation.from_api(data))
        self.store.set_messages(
            conversation_id, [ChatMessage.from_api(m) for m in data.get("messages", [])]
        )
        return conv

    # --- Conversation fields ---

    def create_conversation(
        self, title: str = DEFAULT_TITLE, category: Optional[str] = None
    ) -> ChatConversation:
        check_title(title)
        try:
            data = self.api.create_conversation(title=title, category=category)
        except APIError as exc:
            self.store.set_error(exc.message)
            raise
        conv = self.store.upsert_conversation(ChatConversation.from_api(data))
        self.store.set_messages(conv.id, [])
        return conv

    def rename(self, conversation_id: str, title: str) -> dict:
        check_title(title)
        return self._mutate(
            conversation_id, "title", title,
            lambda: self.api.update_conversation(conversation_id, title=title),
        )

    def set_starred(self, conversation_id: str, value: bool) -> dict:
        check_flag("isStarred", value)
        return self._mutate(
            conversation_id, "is_starred", value,
            lambda: self.api.set_starred(conversation_id, value),
        )

    def toggle_star(self, conversation_id: str) -> dict:
        conv = self._require(conversation_id)
        return self.set_starred(conversation_id, not conv.is_starred)

    def set_archived(self, conversation_id: str, value: bool) -> dict:
        check_flag("isArchived", value)
        return self._mutate(
            conversation_id, "is_archived", value,
            lambda: self.api.set_archived(conversation_id, value),
        )

    def toggle_archive(self, conversation_id: str) -> dict:
        conv = self._require(conversation_id)
        return self.set_archived(conversation_id, not conv.is_archived)

    def set_tags(self, conversation_id: str, tags) -> dict:
        tags = check_tags(tags)
        if len(tags) > MAX_TAGS:
            raise ValidationError(f"Maximum {MAX_TAGS} tags allowed per conversation")
        return self._mutate(
            conversation_id, "tags", tags,
            lambda: self.api.set_tags(conversation_id, tags),
        )

    def add_tags(self, conversation_id: str, tags) -> dict:
        new_tags = check_tags(tags)
        if not new_tags:
            raise ValidationError("tags must be a non-empty array of strings")
        conv = self._require(conversation_id)
        merged = list(dict.fromkeys([*conv.tags, *new_tags]))
        if len(merged) > MAX_TAGS:
            raise ConflictError(f"Maximum {MAX_TAGS} tags allowed per conversation")
        return self._mutate(
            conversation_id, "tags", merged,
            lambda: self.api.add_tags(conversation_id, new_tags),
        )

    def delete_conversation(self, conversation_id: str) -> bool:
        """Remove locally, then delete remotely, restoring if every attempt fails.

        Returns False when there was nothing to delete (already gone or a
        delete for the same id is still running).
        """
        if conversation_id in self._deleting or conversation_id not in self.store.conversations:
            logger.debug("Ignoring delete of %s: not present or already deleting", conversation_id)
            return False

        snapshot = self.store.remove_conversation(conversation_id)
        self._deleting.add(conversation_id)
        try:
            for attempt in range(1, self.max_delete_attempts + 1):
                try:
                    self.api.delete_conversation(conversation_id)
                    return True
                except NotFoundError:
                    logger.info("Conversation %s was already deleted", conversation_id)
                    return True
                except DependencyError as exc:
                    if attempt == self.max_delete_attempts:
                        self.store.restore_conversation(snapshot, error=exc.message)
                        logger.warning(
                            "Delete of %s failed after %d attempts, restored: %s",
                            conversation_id, attempt, exc.message,
                        )
                        raise
                    delay = min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)
                    logger.warning(
                        "Delete of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                        conversation_id, attempt, self.max_delete_attempts, delay, exc.message,
                    )
                    self._sleep(delay)
                except APIError as exc:
                    self.store.restore_conversation(snapshot, error=exc.message)
                    logger.warning("Delete of %s rejected, restored: %s", conversation_id, exc.message)
                    raise
        finally:
            self._deleting.discard(conversation_id)
        return False

    # --- Messages ---

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        tokens_used: int = 0,
        cost: float = 0.0,
    ) -> ChatMessage:
        if role not in ("user", "assistant"):
            raise ValidationError('role must be either "user" or "assistant"')
        check_content(content)
        conv = self._require(conversation_id)
        needs_title = conv.title == DEFAULT_TITLE and role == "user"

        def call():
            return self.api.add_message(
                conversation_id, role, content, tokens_used=tokens_used, cost=cost
            )

        message = self._send(conversation_id, role, content, call, tokens_used, cost)
        if needs_title:
            try:
                self.refresh_conversation(conversation_id)
            except APIError as exc:
                logger.warning("Could not refresh title of %s: %s", conversation_id, exc.message)
        return message

    def send_message(
        self, conversation_id: str, content: str, model_id: Optional[str] = None
    ) -> tuple[ChatMessage, ChatMessage]:
        """Send a user turn and receive the assistant reply in one round trip."""
        check_content(content)
        self._require(conversation_id)
        self.store.ui_state.is_sending = True
        try:
            result = {}

            def call():
                data = self.api.send_chat(conversation_id, content, model_id=model_id)
                result.update(data)
                return data["userMessage"]

            user_message = self._send(conversation_id, "user", content, call)
        finally:
            self.store.ui_state.is_sending = False

        assistant_message = ChatMessage.from_api(result["assistantMessage"])
        self.store.add_message(conversation_id, assistant_message)
        self.store.merge_server_fields(conversation_id, result.get("conversation") or {})
        return user_message, assistant_message

    def star_message(
        self, conversation_id: str, message_id: str, value: Optional[bool] = None
    ) -> dict:
        msg = self._require_message(conversation_id, message_id)
        if value is None:
            value = not msg.is_starred
        check_flag("isStarred", value)
        return self._mutate(
            conversation_id, "is_starred", value,
            lambda: self.api.update_message(conversation_id, message_id, is_starred=value),
            message_id=message_id,
        )

    def edit_message(self, conversation_id: str, message_id: str, content: str) -> dict:
        check_content(content)
        self._require_message(conversation_id, message_id)
        return self._mutate(
            conversation_id, "content", content,
            lambda: self.api.update_message(conversation_id, message_id, content=content),
            message_id=message_id,
        )

    # --- Prompts ---

    def generate_prompt(self, conversation_id: str, model_id: Optional[str] = None) -> dict:
        self._require(conversation_id)
        try:
            result = self.api.generate_prompt(conversation_id, model_id=model_id)
        except APIError as exc:
            self._surface(conversation_id, exc)
            raise
        self.store.prompts.setdefault(conversation_id, []).insert(0, result)
        return result

    def load_prompts(self, conversation_id: str) -> list[dict]:
        prompts = self.api.list_prompts(conversation_id)
        self.store.prompts[conversation_id] = prompts
        return prompts

    # --- Internals ---

    def _mutate(
        self,
        conversation_id: str,
        field_name: str,
        value: Any,
        call: Callable[[], dict],
        message_id: Optional[str] = None,
    ) -> dict:
        mutation = self.store.apply(conversation_id, field_name, value, message_id=message_id)
        try:
            data = call()
        except APIError as exc:
            self.store.rollback(mutation, exc.message)
            logger.warning(
                "Rolled back %s on %s: %s",
                field_name, message_id or conversation_id, exc.message,
            )
            raise
        self.store.confirm(mutation, data)
        return data

    def _send(
        self,
        conversation_id: str,
        role: str,
        content: str,
        call: Callable[[], dict],
        tokens_used: int = 0,
        cost: float = 0.0,
    ) -> ChatMessage:
        pending = ChatMessage(
            id=f"{LOCAL_ID_PREFIX}{uuid.uuid4()}",
            conversation_id=conversation_id,
            role=role,
            content=content,
            tokens_used=tokens_used,
            cost=cost,
            created_at=utc_now(),
            status="sending",
        )
        activity = self.store.snapshot_activity(conversation_id)
        self.store.add_message(conversation_id, pending)
        try:
            data = call()
        except APIError as exc:
            self.store.remove_message(conversation_id, pending.id)
            self.store.restore_activity(conversation_id, activity)
            logger.warning("Rolled back message on %s: %s", conversation_id, exc.message)
            if isinstance(exc, NotFoundError):
                # The conversation is gone on the server; drop the stale copy
                self.store.remove_conversation(conversation_id)
                self.store.set_error(exc.message)
            else:
                self._surface(conversation_id, exc)
            raise

        saved = ChatMessage.from_api(data)
        self.store.replace_message(conversation_id, pending.id, saved)
        conv = self.store.get_conversation(conversation_id)
        if conv is not None and saved.created_at:
            conv.updated_at = saved.created_at
            conv.last_message_at = saved.created_at
        return saved

    def _surface(self, conversation_id: str, exc: APIError):
        conv = self.store.get_conversation(conversation_id)
        if conv is not None:
            conv.error = exc.message
        self.store.set_error(exc.message)

    def _require(self, conversation_id: str) -> ChatConversation:
        conv = self.store.get_conversation(conversation_id)
        if conv is None:
            raise NotFoundError("Conversation not found", status_code=404, code="NOT_FOUND")
        return conv

    def _require_message(self, conversation_id: str, message_id: str) -> ChatMessage:
        if message_id.startswith(LOCAL_ID_PREFIX):
            raise ValidationError("Message is still sending")
        msg = self.store.get_message(conversation_id, message_id)
        if msg is None:
            raise NotFoundError("Message not found", status_code=404, code="NOT_FOUND")
        return msg
