"""Trace persistence.

``TraceRecorder.record`` is the single write path used when a completion
finishes. Store failures are logged and swallowed so that a broken trace store
never turns a delivered completion into an error for the caller.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Optional, Protocol

from .errors import TraceWriteError
from .types import TraceRecord, TraceStatus

logger = logging.getLogger(__name__)


class TraceStore(Protocol):
    async def write(self, record: TraceRecord) -> None: ...


class JsonlTraceStore:
    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None

    def _file(self) -> str:
        return os.path.join(self.dir, f"traces-{time.strftime('%Y%m%d')}.jsonl")

    async def write(self, record: TraceRecord) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        line = record.model_dump_json(by_alias=True)
        async with self._lock:
            try:
                with open(self._file(), "a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                raise TraceWriteError(f"failed to append trace: {exc}") from exc


class MemoryTraceStore:
    def __init__(self) -> None:
        self.records: list[TraceRecord] = []

    async def write(self, record: TraceRecord) -> None:
        self.records.append(record)


class TraceRecorder:
    def __init__(self, store: TraceStore) -> None:
        self.store = store

    async def record(
        self,
        *,
        user_id: str,
        prompt_id: str | None,
        model_id: str,
        input: str,
        output: str | None,
        tokens_input: int,
        tokens_output: int,
        latency_ms: int,
        status: TraceStatus,
        error_message: str | None = None,
    ) -> TraceRecord | None:
        try:
            record = TraceRecord(
                user_id=user_id,
                prompt_id=prompt_id,
                model_id=model_id,
                input=input,
                output=output,
                tokens_input=tokens_input,
                tokens_output=tokens_output,
                latency_ms=latency_ms,
                status=status,
                error_message=error_message,
            )
            await self.store.write(record)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("trace.write_failed model_id=%s status=%s", model_id, status)
            return None
        return record
