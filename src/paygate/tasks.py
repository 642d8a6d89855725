"""
Deferred settlement for task-based executors.

A task executor reports completion through a later status-update event, not
a return value. At submission time the authorization is parked in the
TaskCorrelationStore under the task (or message) id; when a terminal event
carrying a `creditsUsed` annotation arrives, the handler settles against the
ledger and annotates both the event and the task with the transaction.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Optional, Protocol

from .auth import Authenticator, AuthorizationRecord
from .credentials import decode_credential
from .errors import MisconfigurationError
from .ledger import SettlementOutcome
from .logical_id import LogicalResource, ResourceKind
from .request_context import current_request_context, http_url_from_context
from .settlement import SettlementEngine, resolve_redemption_config

logger = logging.getLogger(__name__)

TERMINAL_STATES = frozenset({"completed", "failed", "canceled", "rejected"})


@dataclass(frozen=True)
class TaskCorrelationEntry:
    task_or_message_id: str
    credential: str
    requested_url: Optional[str] = None
    http_method: str = "POST"
    authorization: Optional[AuthorizationRecord] = None


class TaskCorrelationStore:
    """In-memory map from task/message id to the authorization of its request.

    Entries never expire on their own: a leaked entry means a task that is
    never billed, so every entry must be taken exactly once.
    """

    def __init__(self):
        self._tasks: dict[str, TaskCorrelationEntry] = {}
        self._messages: dict[str, TaskCorrelationEntry] = {}
        self._lock = threading.Lock()

    def set_context_for_task(self, task_id: str, entry: TaskCorrelationEntry) -> None:
        with self._lock:
            if task_id in self._tasks:
                logger.warning("Overwriting correlation entry for task %s", task_id)
            self._tasks[task_id] = entry

    def set_context_for_message(self, message_id: str, entry: TaskCorrelationEntry) -> None:
        with self._lock:
            self._messages[message_id] = entry

    def get_for_task(self, task_id: str) -> Optional[TaskCorrelationEntry]:
        with self._lock:
            return self._tasks.get(task_id)

    def get_for_message(self, message_id: str) -> Optional[TaskCorrelationEntry]:
        with self._lock:
            return self._messages.get(message_id)

    def delete_for_task(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)

    def delete_for_message(self, message_id: str) -> None:
        with self._lock:
            self._messages.pop(message_id, None)

    def take_for_task(self, task_id: str) -> Optional[TaskCorrelationEntry]:
        """Read and delete in one step."""
        with self._lock:
            return self._tasks.pop(task_id, None)

    def migrate_message_to_task(self, message_id: str, task_id: str) -> bool:
        """Move a message-keyed entry under its newly assigned task id."""
        with self._lock:
            entry = self._messages.pop(message_id, None)
            if entry is None:
                return False
            self._tasks[task_id] = TaskCorrelationEntry(
                task_or_message_id=task_id,
                credential=entry.credential,
                requested_url=entry.requested_url,
                http_method=entry.http_method,
                authorization=entry.authorization,
            )
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks) + len(self._messages)


@dataclass
class TaskStatusUpdateEvent:
    task_id: str
    context_id: str
    state: str
    final: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    kind = "status-update"

    @property
    def is_terminal(self) -> bool:
        return self.final and self.state in TERMINAL_STATES


@dataclass
class Task:
    id: str
    context_id: str
    state: str = "submitted"
    metadata: dict[str, Any] = field(default_factory=dict)
    history: list[Any] = field(default_factory=list)

    kind = "task"


class ResultManager(Protocol):
    def current_task(self) -> Optional[Task]: ...

    async def process_event(self, event: Any) -> None: ...


class TaskPaymentsHandler:
    """Authorizes task submissions and settles them on their terminal event."""

    def __init__(
        self,
        authenticator: Authenticator,
        settlement: SettlementEngine,
        agent_id: str,
        store: Optional[TaskCorrelationStore] = None,
        agent_metadata: Optional[dict[str, Any]] = None,
        default_batch: bool = False,
        default_margin_percent: Optional[float] = None,
    ):
        if not agent_id:
            raise MisconfigurationError("Server misconfiguration: missing agentId")
        self.authenticator = authenticator
        self.settlement = settlement
        self.agent_id = agent_id
        self.store = store or TaskCorrelationStore()
        self.agent_metadata = agent_metadata or {}
        self.default_batch = default_batch
        self.default_margin_percent = default_margin_percent

    async def authorize(
        self,
        extra: Any,
        *,
        task_id: Optional[str] = None,
        message_id: Optional[str] = None,
        requested_url: Optional[str] = None,
    ) -> TaskCorrelationEntry:
        """Authenticate a submission and park its authorization for later settlement."""
        if not task_id and not message_id:
            raise ValueError("Either task_id or message_id is required")

        url = requested_url or http_url_from_context()
        if not url:
            raise MisconfigurationError("Task submission needs a requested url or an ambient request context")
        ambient = current_request_context()
        method = (ambient.method if ambient and ambient.method else "POST").upper()

        auth = await self.authenticator.authenticate(
            extra,
            self.agent_id,
            LogicalResource(kind=ResourceKind.ENDPOINT, server_name="", name=url),
        )
        entry = TaskCorrelationEntry(
            task_or_message_id=task_id or message_id or "",
            credential=auth.credential,
            requested_url=url,
            http_method=method,
            authorization=auth,
        )
        if task_id:
            self.store.set_context_for_task(task_id, entry)
        else:
            self.store.set_context_for_message(message_id, entry)
        return entry

    async def handle_event(
        self,
        event: Any,
        result_manager: ResultManager,
        message_id: Optional[str] = None,
    ) -> Optional[SettlementOutcome]:
        """Forward one executor event; finalize when it is terminal.

        When `message_id` is given, an entry parked under that message moves
        to the task id the first time an event names one.
        """
        if message_id:
            task_id = _event_task_id(event)
            if task_id and self.store.migrate_message_to_task(message_id, task_id):
                logger.debug("Moved correlation entry for message %s to task %s", message_id, task_id)
        await result_manager.process_event(event)
        if not isinstance(event, TaskStatusUpdateEvent) or not event.is_terminal:
            return None

        entry = self.store.take_for_task(event.task_id)
        if entry is None:
            logger.debug("No correlation entry for task %s, skipping settlement", event.task_id)
            return None
        return await self.finalize(event, result_manager, entry)

    async def process_events(
        self,
        events: AsyncIterable[Any],
        result_manager: ResultManager,
        message_id: Optional[str] = None,
    ) -> None:
        async for event in events:
            await self.handle_event(event, result_manager, message_id)

    async def finalize(
        self,
        event: TaskStatusUpdateEvent,
        result_manager: ResultManager,
        entry: TaskCorrelationEntry,
    ) -> Optional[SettlementOutcome]:
        """Settle the credits reported by a terminal event.

        Ledger failures are logged and swallowed: the task has already
        completed and its terminal state stands regardless.
        """
        credits = _credits_used(event.metadata)
        if credits is None:
            return None

        try:
            decoded = decode_credential(entry.credential)
            subscriber = decoded.subscriber_address
        except ValueError:
            logger.debug("Could not decode credential for task %s", event.task_id)
            subscriber = None

        config = resolve_redemption_config(
            self.agent_metadata,
            default_batch=self.default_batch,
            default_margin_percent=self.default_margin_percent,
        )
        try:
            outcome = await self.settlement.settle_task(
                self.agent_id, entry.credential, credits, config, subscriber
            )
        except Exception:
            logger.exception("Settlement failed for task %s (%d credits)", event.task_id, credits)
            return None

        charged = {"transactionRef": outcome.transaction_ref, "creditsCharged": outcome.credits_redeemed}
        event.metadata = {**(event.metadata or {}), **charged}
        task = result_manager.current_task()
        if task is not None:
            task.metadata = {**(task.metadata or {}), **event.metadata}
            await result_manager.process_event(task)
        return outcome


def _event_task_id(event: Any) -> Optional[str]:
    if isinstance(event, TaskStatusUpdateEvent):
        return event.task_id
    if isinstance(event, Task):
        return event.id
    return None


def _credits_used(metadata: Optional[dict[str, Any]]) -> Optional[int]:
    value = (metadata or {}).get("creditsUsed")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric creditsUsed: %r", value)
        return None
