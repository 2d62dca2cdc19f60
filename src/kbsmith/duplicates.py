"""Semantic duplicate detection and the duplicate pair store.

When a note is written, its embedding is compared against the other notes of
the same knowledge type. Neighbours at or above the similarity threshold are
recorded as candidate pairs. A pair then moves through:

    pending -> dismissed          (user says "not a duplicate")
    pending -> merging -> merged  (merge pipeline)
               merging -> pending (merge failed or was cancelled)

Dismissed pair ids are also kept in a separate index so re-detection never
brings them back.

Store format ({index_root}/duplicate-pairs.json):
    {"version": "1.0.0", "pairs": [...], "dismissed_pairs": ["a--b", ...]}
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from .config import PAIR_ID_SEPARATOR, Settings
from .errors import Err, ErrorCode, KBError, Ok, Result
from .indexer import VectorIndex
from .locks import LockCoordinator, type_key
from .models import DuplicatePair, DuplicatePairStatus, DuplicatePairStore
from .storage import read_json, write_json_atomic

log = logging.getLogger(__name__)

STORE_FILENAME = "duplicate-pairs.json"

PairListener = Callable[[list[DuplicatePair]], None]


def pair_id(node_a: str, node_b: str) -> str:
    """Order-independent id for a pair of notes."""
    first, second = sorted((node_a, node_b))
    return f"{first}{PAIR_ID_SEPARATOR}{second}"


class DuplicateManager:
    """Detects duplicate candidates and tracks their status."""

    def __init__(
        self,
        index_root: Path,
        vector_index: VectorIndex,
        locks: LockCoordinator,
        get_settings: Callable[[], Settings],
    ) -> None:
        self._path = index_root / STORE_FILENAME
        self._index = vector_index
        self._locks = locks
        self._get_settings = get_settings
        self._store = DuplicatePairStore()
        self._listeners: list[PairListener] = []
        self._save_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def load(self) -> None:
        """Load the pair store. A corrupt file is set aside and replaced."""
        try:
            data = read_json(self._path)
            self._store = DuplicatePairStore.model_validate(data) if data else DuplicatePairStore()
        except (json.JSONDecodeError, ValidationError) as e:
            backup = self._path.with_suffix(".json.corrupt")
            log.warning("Duplicate store is corrupt, moving it to %s: %s", backup.name, e)
            self._path.replace(backup)
            self._store = DuplicatePairStore()
        log.debug(
            "Loaded %d duplicate pairs (%d dismissed)",
            len(self._store.pairs), len(self._store.dismissed_pairs),
        )

    async def _save(self) -> None:
        async with self._save_lock:
            payload = self._store.model_dump(mode="json")
            await asyncio.to_thread(write_json_atomic, self._path, payload)

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def subscribe(self, listener: PairListener) -> Callable[[], None]:
        """Call listener with the pending pairs whenever the store changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        pending = self.get_pending_pairs()
        for listener in list(self._listeners):
            try:
                listener(pending)
            except Exception:
                log.exception("Duplicate pair listener failed")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_pair(self, pair_id_: str) -> DuplicatePair | None:
        for pair in self._store.pairs:
            if pair.id == pair_id_:
                return pair
        return None

    def get_pairs(self, status: DuplicatePairStatus | None = None) -> list[DuplicatePair]:
        return [p for p in self._store.pairs if status is None or p.status == status]

    def get_pending_pairs(self) -> list[DuplicatePair]:
        return self.get_pairs("pending")

    def is_dismissed(self, pair_id_: str) -> bool:
        return pair_id_ in self._store.dismissed_pairs

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    async def detect(self, node_id: str, concept_type: str, embedding: list[float]) -> Result[list[DuplicatePair]]:
        """Record new candidate pairs for a note.

        Holds the type bucket's lease for the duration. If another scan of the
        same bucket is running, returns Ok([]) straight away.

        Returns:
            Ok with the pairs added by this call (already known or dismissed
            pairs are not repeated), or Err if the search or save failed.
        """
        key = type_key(concept_type)
        if not self._locks.try_acquire(key, holder=f"detect:{node_id}"):
            log.info("Skipped duplicate scan for %s: %s bucket is busy", node_id, concept_type)
            return Ok([])

        try:
            settings = self._get_settings()
            hits = self._index.search_above_threshold(
                concept_type,
                embedding,
                settings.similarity_threshold,
                # One extra slot since the note usually finds itself
                top_k=settings.top_k + 1,
            )

            known = {p.id for p in self._store.pairs}
            dismissed = set(self._store.dismissed_pairs)
            added: list[DuplicatePair] = []
            for hit in hits:
                if hit.node_id == node_id:
                    continue
                candidate_id = pair_id(node_id, hit.node_id)
                if candidate_id in known or candidate_id in dismissed:
                    continue
                node_a, node_b = sorted((node_id, hit.node_id))
                added.append(
                    DuplicatePair(
                        id=candidate_id,
                        node_id_a=node_a,
                        node_id_b=node_b,
                        type=concept_type,
                        similarity=round(hit.similarity, 4),
                    )
                )
                known.add(candidate_id)

            if added:
                self._store.pairs.extend(added)
                try:
                    await self._save()
                except KBError:
                    added_ids = {p.id for p in added}
                    self._store.pairs = [p for p in self._store.pairs if p.id not in added_ids]
                    raise
                log.info("Found %d duplicate candidate(s) for %s", len(added), node_id)
                self._notify()
            return Ok(added)
        except KBError as e:
            log.warning("Duplicate scan for %s failed: %s", node_id, e.message)
            return Err(e)
        finally:
            self._locks.release(key)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        pair_id_: str,
        allowed_from: DuplicatePairStatus,
        target: DuplicatePairStatus,
    ) -> Result[DuplicatePair]:
        pair = self.get_pair(pair_id_)
        if pair is None:
            return Err(KBError.not_found("pair", pair_id_))
        if pair.status != allowed_from:
            return Err(
                KBError.invalid_state(
                    f"Pair {pair_id_} is {pair.status}, expected {allowed_from}",
                    pair_id=pair_id_,
                    status=pair.status,
                )
            )

        dismissed_before = list(self._store.dismissed_pairs)
        pair.status = target
        if target == "dismissed" and pair_id_ not in self._store.dismissed_pairs:
            self._store.dismissed_pairs.append(pair_id_)

        try:
            await self._save()
        except KBError as e:
            pair.status = allowed_from
            self._store.dismissed_pairs = dismissed_before
            return Err(e)

        log.info("Pair %s: %s -> %s", pair_id_, allowed_from, target)
        self._notify()
        return Ok(pair)

    async def mark_as_non_duplicate(self, pair_id_: str) -> Result[DuplicatePair]:
        return await self._transition(pair_id_, "pending", "dismissed")

    async def start_merge(self, pair_id_: str) -> Result[DuplicatePair]:
        return await self._transition(pair_id_, "pending", "merging")

    async def complete_merge(self, pair_id_: str) -> Result[DuplicatePair]:
        return await self._transition(pair_id_, "merging", "merged")

    async def abort_merge(self, pair_id_: str) -> Result[DuplicatePair]:
        return await self._transition(pair_id_, "merging", "pending")

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def _remove_where(self, predicate: Callable[[DuplicatePair], bool]) -> int:
        doomed = [p for p in self._store.pairs if predicate(p)]
        if not doomed:
            return 0

        previous_pairs = list(self._store.pairs)
        previous_dismissed = list(self._store.dismissed_pairs)
        doomed_ids = {p.id for p in doomed}
        self._store.pairs = [p for p in self._store.pairs if p.id not in doomed_ids]
        self._store.dismissed_pairs = [i for i in self._store.dismissed_pairs if i not in doomed_ids]
        try:
            await self._save()
        except KBError:
            self._store.pairs = previous_pairs
            self._store.dismissed_pairs = previous_dismissed
            raise
        self._notify()
        return len(doomed)

    async def remove_pair(self, pair_id_: str) -> Result[None]:
        """Forget one pair entirely, including a dismissal.

        A pair in `merging` belongs to its merge pipeline and cannot be removed.
        """
        pair = self.get_pair(pair_id_)
        if pair is None:
            return Err(KBError.not_found("pair", pair_id_))
        if pair.status == "merging":
            return Err(
                KBError(
                    ErrorCode.E310_INVALID_STATE,
                    f"Pair {pair_id_} is being merged",
                    {"pair_id": pair_id_, "status": pair.status},
                )
            )
        try:
            await self._remove_where(lambda p: p.id == pair_id_)
        except KBError as e:
            return Err(e)
        log.info("Removed pair %s", pair_id_)
        return Ok(None)

    async def remove_pairs_by_node_id(self, node_id: str) -> int:
        """Drop pending and dismissed pairs of a deleted note.

        Pairs in `merging` are left alone; their merge pipeline owns them.
        """
        removed = await self._remove_where(
            lambda p: p.involves(node_id) and p.status in ("pending", "dismissed")
        )
        if removed:
            log.info("Removed %d pair(s) for deleted note %s", removed, node_id)
        return removed

    async def clear_pending_pairs_by_node_id(self, node_id: str) -> int:
        """Drop pending pairs of a note whose content changed materially."""
        removed = await self._remove_where(lambda p: p.involves(node_id) and p.status == "pending")
        if removed:
            log.info("Cleared %d pending pair(s) for %s", removed, node_id)
        return removed
