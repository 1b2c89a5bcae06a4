"""
Per-conversation enrichment cache with at-most-once fetch semantics.

Each key is in one of four states. Concurrent `ensure` calls for a key that
is already being fetched wait on the same future instead of issuing a second
request. A failed fetch is retried by later cycles until the conversation is
reported missing or the attempt budget runs out; after that it is given up.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from voicebatch.core.errors import EnrichmentFailure, TransportError, TransportErrorKind
from voicebatch.schemas.batch import EnrichmentRecord

logger = logging.getLogger(__name__)

FetchConversation = Callable[[str], Awaitable[EnrichmentRecord]]


class EntryState(str, enum.Enum):
    ABSENT = "absent"
    IN_FLIGHT = "in_flight"
    PRESENT = "present"
    FAILED = "failed"


@dataclass
class CacheEntry:
    state: EntryState
    record: Optional[EnrichmentRecord] = None
    error: Optional[Exception] = None
    waiter: Optional[asyncio.Future] = None
    attempts: int = 0
    final: bool = False


class EnrichmentCache:
    def __init__(self, fetch: FetchConversation, max_in_flight: int = 4, max_attempts: int = 5):
        self._fetch = fetch
        self._entries: dict[str, CacheEntry] = {}
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self.max_attempts = max_attempts
        self.fetch_count = 0

    def state(self, conversation_id: str) -> EntryState:
        entry = self._entries.get(conversation_id)
        return entry.state if entry else EntryState.ABSENT

    def get(self, conversation_id: str) -> Optional[EnrichmentRecord]:
        entry = self._entries.get(conversation_id)
        if entry and entry.state == EntryState.PRESENT:
            return entry.record
        return None

    def _is_final(self, error: Exception, attempts: int) -> bool:
        if isinstance(error, TransportError) and error.kind == TransportErrorKind.NOT_FOUND:
            return True
        return attempts >= self.max_attempts

    async def ensure(self, conversation_id: str) -> EnrichmentRecord:
        entry = self._entries.get(conversation_id)
        if entry and entry.state == EntryState.PRESENT:
            return entry.record
        if entry and entry.state == EntryState.IN_FLIGHT:
            return await self._wait(conversation_id, entry.waiter)
        if entry and entry.state == EntryState.FAILED and entry.final:
            raise EnrichmentFailure(conversation_id, entry.error, attempts=entry.attempts, final=True)

        attempts = entry.attempts if entry else 0
        waiter = asyncio.get_running_loop().create_future()
        pending = CacheEntry(state=EntryState.IN_FLIGHT, waiter=waiter, attempts=attempts)
        self._entries[conversation_id] = pending
        try:
            async with self._semaphore:
                self.fetch_count += 1
                record = await self._fetch(conversation_id)
        except asyncio.CancelledError:
            # Nobody owns the fetch any more; let the next caller start over
            if self._entries.get(conversation_id) is pending:
                del self._entries[conversation_id]
            waiter.set_result(None)
            raise
        except Exception as e:
            # Rate limiting says nothing about the conversation, so it costs no attempt
            rate_limited = isinstance(e, TransportError) and e.kind == TransportErrorKind.RATE_LIMITED
            failed_attempts = attempts if rate_limited else attempts + 1
            final = not rate_limited and self._is_final(e, failed_attempts)
            if final:
                logger.warning(
                    f"Giving up on conversation {conversation_id} after {failed_attempts} attempt(s): {e}"
                )
            else:
                logger.warning(f"Enrichment fetch failed for conversation {conversation_id}: {e}")
            self._store(conversation_id, pending, CacheEntry(
                state=EntryState.FAILED, error=e, attempts=failed_attempts, final=final
            ))
            failure = EnrichmentFailure(conversation_id, e, attempts=failed_attempts, final=final)
            waiter.set_result(failure)
            raise failure from e

        self._store(conversation_id, pending, CacheEntry(
            state=EntryState.PRESENT, record=record, attempts=attempts + 1
        ))
        waiter.set_result(record)
        return record

    def _store(self, conversation_id: str, pending: CacheEntry, entry: CacheEntry):
        # Entries released while the fetch was running stay released
        if self._entries.get(conversation_id) is pending:
            self._entries[conversation_id] = entry

    async def _wait(self, conversation_id: str, waiter: asyncio.Future) -> EnrichmentRecord:
        outcome = await asyncio.shield(waiter)
        if isinstance(outcome, EnrichmentRecord):
            return outcome
        if isinstance(outcome, EnrichmentFailure):
            raise EnrichmentFailure(conversation_id, outcome.cause, attempts=outcome.attempts, final=outcome.final)
        # The owning fetch was cancelled
        raise EnrichmentFailure(conversation_id, asyncio.CancelledError())

    def release(self):
        """Drop every entry. Fetches still running complete without writing back."""
        self._entries.clear()

    def stats(self) -> dict:
        counts = {state.value: 0 for state in EntryState if state != EntryState.ABSENT}
        for entry in self._entries.values():
            counts[entry.state.value] += 1
        counts["given_up"] = sum(1 for entry in self._entries.values() if entry.final)
        counts["fetches"] = self.fetch_count
        return counts
