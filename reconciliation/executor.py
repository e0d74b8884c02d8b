"""
Batch/Transaction Executor - applies reconciliation operations in chunks.

This module provides:
- Fixed-size chunks, one transaction per chunk
- Per-row savepoints so one failing row does not void its chunk
- A per-chunk wait budget and a whole-run wall-clock deadline
- Partial-completion results instead of errors when the deadline hits
"""

import asyncio
import enum
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import logging

logger = logging.getLogger(__name__)


class ExecutorState(str, enum.Enum):
    """Lifecycle of one sync run"""
    STARTED = "STARTED"
    RESOLVING_ENUMS = "RESOLVING_ENUMS"
    PROCESSING_DETAIL = "PROCESSING_DETAIL"
    PROCESSING_SUMMARY = "PROCESSING_SUMMARY"
    DELETING = "DELETING"
    COMPLETED = "COMPLETED"
    TRUNCATED_BY_TIMEOUT = "TRUNCATED_BY_TIMEOUT"


class Outcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


class SyncResult(BaseModel):
    """Counters reported by one sync run"""
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    batches_processed: int = 0
    total_records: int = 0
    processed_records: int = 0
    completed: bool = False
    dates_fixed: int = 0
    orphaned_summaries: int = 0
    remaining_records: int = 0
    next_batch_number: Optional[int] = None
    state: ExecutorState = ExecutorState.STARTED
    duration_seconds: float = 0.0

    class Config:
        use_enum_values = True

    def record(self, outcome: Outcome):
        if outcome == Outcome.CREATED:
            self.created += 1
        elif outcome == Outcome.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1


class Operation(BaseModel):
    """One unit of work: upsert of a master or summary row"""
    kind: str  # "master" or "summary"
    key: str  # case_id
    payload: Any = None
    must_create: bool = False


class Deadline:
    """Wall-clock budget for a whole run"""

    def __init__(self, seconds: Optional[float]):
        self.seconds = seconds
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def expired(self) -> bool:
        return self.seconds is not None and self.elapsed >= self.seconds


ChunkPreparer = Callable[[AsyncSession, List[Operation]], Awaitable[Dict[str, Any]]]
OperationApplier = Callable[[AsyncSession, Operation, Dict[str, Any]], Awaitable[Outcome]]


class BatchExecutor:
    """
    Execute an ordered operation list in chunk-sized transactions.

    Error policy:
    - a row that raises is rolled back to its savepoint and counted as an
      error; the rest of the chunk still commits
    - a chunk whose commit fails (or exceeds its wait budget) counts all of
      its rows as errors; the next chunk still runs
    - the deadline is checked between chunks only; a started chunk always
      finishes or fails as a unit
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        batch_size: int,
        deadline: Deadline,
        batch_max_wait_seconds: Optional[float] = None
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session_maker = session_maker
        self.batch_size = batch_size
        self.deadline = deadline
        self.batch_max_wait_seconds = batch_max_wait_seconds

    def chunk(self, operations: List[Operation]) -> List[List[Operation]]:
        return [
            operations[i:i + self.batch_size]
            for i in range(0, len(operations), self.batch_size)
        ]

    async def execute(
        self,
        operations: List[Operation],
        apply: OperationApplier,
        result: SyncResult,
        prepare: Optional[ChunkPreparer] = None,
        start_chunk: int = 0,
        max_chunks: Optional[int] = None
    ) -> bool:
        """
        Run chunks starting at `start_chunk`.

        Returns:
            True if every chunk ran, False if stopped by the deadline or
            by max_chunks. On False, result.next_batch_number is the
            1-based number of the first chunk that did not run.
        """
        chunks = self.chunk(operations)
        ran = 0

        for index in range(start_chunk, len(chunks)):
            if ran > 0 and (self.deadline.expired() or (max_chunks is not None and ran >= max_chunks)):
                remaining = sum(len(c) for c in chunks[index:])
                result.remaining_records = remaining
                result.next_batch_number = index + 1
                logger.warning(
                    f"Stopping before batch {index + 1}/{len(chunks)} "
                    f"after {self.deadline.elapsed:.1f}s ({remaining} records remaining)"
                )
                return False

            chunk = chunks[index]
            if any(op.kind == "summary" for op in chunk):
                result.state = ExecutorState.PROCESSING_SUMMARY
            else:
                result.state = ExecutorState.PROCESSING_DETAIL

            await self._run_chunk(index, chunk, apply, prepare, result)
            ran += 1

        result.remaining_records = 0
        result.next_batch_number = None
        return True

    async def _run_chunk(
        self,
        index: int,
        chunk: List[Operation],
        apply: OperationApplier,
        prepare: Optional[ChunkPreparer],
        result: SyncResult
    ):
        outcomes: List[Outcome] = []
        row_errors = 0

        async def transaction():
            nonlocal row_errors
            async with self.session_maker() as session:
                async with session.begin():
                    context = await prepare(session, chunk) if prepare else {}
                    for op in chunk:
                        try:
                            async with session.begin_nested():
                                outcome = await apply(session, op, context)
                            outcomes.append(outcome)
                        except Exception as e:
                            row_errors += 1
                            logger.error(
                                f"Failed to apply {op.kind} {op.key}: {str(e)}",
                                extra={"error_context": {
                                    "kind": op.kind,
                                    "case_id": op.key,
                                    "batch_index": index,
                                    "error_type": type(e).__name__
                                }}
                            )

        try:
            if self.batch_max_wait_seconds:
                await asyncio.wait_for(transaction(), timeout=self.batch_max_wait_seconds)
            else:
                await transaction()
        except Exception as e:
            # Nothing from this chunk was committed
            result.errors += len(chunk)
            result.processed_records += len(chunk)
            result.batches_processed += 1
            logger.error(
                f"Batch {index + 1} failed, {len(chunk)} records counted as errors: {str(e)}",
                extra={"error_context": {
                    "batch_index": index,
                    "batch_size": len(chunk),
                    "error_type": type(e).__name__
                }}
            )
            return

        for outcome in outcomes:
            result.record(outcome)
        result.errors += row_errors
        result.processed_records += len(chunk)
        result.batches_processed += 1
        logger.debug(
            f"Batch {index + 1} committed: {len(outcomes)} applied, {row_errors} errors"
        )
