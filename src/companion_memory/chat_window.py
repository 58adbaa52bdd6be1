"""Rolling chat window accumulator.

Every turn is appended to the newest open window of its scope. When a
window reaches ``trunk_size`` turns it is handed to the memory formation
pipeline before ``append_turn`` returns; the next turn then opens a
fresh window.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from loguru import logger

from .config import WindowConfig
from .exceptions import SummarizationError, WindowConflictError
from .interfaces import ChatHistoryRepo
from .models import ChatWindow, Memory, Role, Scope
from .pipeline import MemoryFormationPipeline


@dataclass
class AppendResult:
    """Window state after an append, plus the memory if one was formed."""

    window: ChatWindow
    memory: Memory | None = None


def format_turn(role: Role, text: str) -> str:
    return f"{role.value}: {text}\n"


class ChatWindowAccumulator:
    """Appends turns to per-scope windows and triggers summarization.

    Appends for one scope are serialized with a per-scope lock; the
    window update itself is also guarded by a turn-count check so a
    writer in another process cannot be silently overwritten.
    """

    MAX_CONFLICT_RETRIES = 3

    def __init__(
        self,
        repo: ChatHistoryRepo,
        pipeline: MemoryFormationPipeline,
        config: WindowConfig | None = None,
    ):
        self._repo = repo
        self._pipeline = pipeline
        self._config = config or WindowConfig()
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def trunk_size(self) -> int:
        return self._config.trunk_size

    def _get_lock(self, scope: Scope) -> asyncio.Lock:
        key = scope.key
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def append_turn(
        self, scope: Scope, role: Role, text: str
    ) -> AppendResult | None:
        """Append one turn to the scope's open window.

        Args:
            scope: Conversation scope
            role: Author of the turn
            text: Turn text; blank text is ignored

        Returns:
            The updated window (and memory, if the window filled up),
            or None when the text was blank

        Raises:
            SummarizationError: the window filled up but no memory could be
                formed; the appended turn is kept and the window stays pending
        """
        text = text.strip()
        if not text:
            return None

        async with self._get_lock(scope):
            window = await self._append_locked(scope, role, text)
            memory = None
            if window.is_full(self.trunk_size):
                memory = await self._pipeline.run(window)
                window = window.model_copy(update={"summarized": True})
            return AppendResult(window=window, memory=memory)

    async def _append_locked(self, scope: Scope, role: Role, text: str) -> ChatWindow:
        line = format_turn(role, text)

        for attempt in range(1, self.MAX_CONFLICT_RETRIES + 1):
            window = await self._repo.get_latest_window(scope)

            if window is None or window.summarized or window.is_full(self.trunk_size):
                if window is not None and not window.summarized:
                    await self._retry_pending_locked(scope)
                created = await self._repo.create_window(
                    ChatWindow(scope=scope, content=line, turn_count=1)
                )
                logger.info(f"Opened chat window {created.id} for {scope.key}")
                return created

            new_count = window.turn_count + 1
            new_content = window.content + line
            try:
                await self._repo.append_to_window(
                    window.id,
                    new_content,
                    new_count,
                    expected_turn_count=window.turn_count,
                )
            except WindowConflictError:
                logger.debug(
                    f"Window {window.id} changed concurrently "
                    f"(attempt {attempt}), re-reading"
                )
                continue

            logger.debug(
                f"Appended {role.value} turn to window {window.id} "
                f"({new_count}/{self.trunk_size})"
            )
            return window.model_copy(
                update={"content": new_content, "turn_count": new_count}
            )

        raise WindowConflictError(window.id if window else -1)

    async def retry_pending(self, scope: Scope) -> list[Memory]:
        """Summarize full windows whose earlier summarization failed."""
        async with self._get_lock(scope):
            return await self._retry_pending_locked(scope)

    async def _retry_pending_locked(self, scope: Scope) -> list[Memory]:
        pending = await self._repo.get_pending_windows(scope, self.trunk_size)
        memories: list[Memory] = []
        for window in pending:
            logger.info(f"Retrying summarization of pending window {window.id}")
            try:
                memories.append(await self._pipeline.run(window))
            except SummarizationError as e:
                logger.warning(f"Window {window.id} still pending: {e.cause}")
        return memories
