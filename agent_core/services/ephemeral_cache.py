"""
In-process recent-message cache keyed by thread id.

Serves as the context source when the conversation store is unavailable.
Only the newest `max_messages` non-agent messages of each thread are kept,
and only the `max_threads` most recently active threads.
"""

from collections import OrderedDict, deque

from agent_core.config import settings
from agent_core.infrastructure.observability.logging import get_logger
from agent_core.models.domain.conversation_domain import ThreadMessage, normalize_handle

logger = get_logger(__name__)


class EphemeralCache:
    def __init__(
        self,
        max_messages: int | None = None,
        agent_handle: str | None = None,
        max_threads: int | None = None,
    ):
        self.max_messages = max_messages or settings.MAX_CONTEXT_MESSAGES
        self.max_threads = max_threads or settings.CACHE_MAX_THREADS
        self.agent_handle = normalize_handle(
            agent_handle if agent_handle is not None else settings.AGENT_NUMBER
        )
        self._threads: OrderedDict[str, deque[ThreadMessage]] = OrderedDict()

    def add(self, thread_id: str, message: ThreadMessage) -> None:
        if self.agent_handle and message.is_from(self.agent_handle):
            return
        window = self._threads.get(thread_id)
        if window is None:
            window = deque(maxlen=self.max_messages)
            self._threads[thread_id] = window
        else:
            self._threads.move_to_end(thread_id)
        window.append(message)

        while len(self._threads) > self.max_threads:
            evicted, _ = self._threads.popitem(last=False)
            logger.debug("Evicted idle thread from cache", thread_id=evicted)

    def get(self, thread_id: str) -> list[ThreadMessage]:
        return list(self._threads.get(thread_id, ()))

    def clear(self, thread_id: str | None = None) -> None:
        if thread_id is None:
            self._threads.clear()
            logger.info("Ephemeral cache cleared")
        else:
            self._threads.pop(thread_id, None)

    def __len__(self) -> int:
        return len(self._threads)
