"""
Consolidation Engine - finds near-duplicate memories and merges them reversibly.

A run:

1. Skips entirely when the active corpus is smaller than ``min_corpus_size``.
2. Finds candidate pairs among memories older than ``min_memory_age_days``
   (cosine similarity ≥ ``merge_threshold``, most similar first, capped).
3. Plans each pair in order. Pairs touching a memory already consumed earlier
   in the run are skipped. Pinned memories are never invalidated: if one side
   is pinned it survives, if both are it is a ``keep_both`` and the pair is
   linked ``similar_to``.
4. Synthesises LLM merges with bounded concurrency and a retry per pair. A
   pair whose synthesis fails is recorded in ``errors`` and left untouched.
5. Applies store mutations one pair at a time, in plan order. A pair that
   fails part-way is rolled back before the next one starts.

Losers are soft-invalidated (``valid_until`` plus an ``invalidated_by``
back-pointer) and a ``supersedes`` link is written from the survivor or the
synthetic merged memory to each original, and the original's other links are
copied onto the survivor. The ``supersedes`` links are the only record of
history; undo walks them to restore the originals and drops the synthetic
memory.
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from ..config import ConsolidationSettings, settings
from ..models.consolidation import (
    ConsolidationAction,
    ConsolidationCandidate,
    ConsolidationHistoryEntry,
    ConsolidationReport,
    ConsolidationStats,
    MemoryLink,
    UndoResult,
)
from ..models.memory import Memory
from ..storage.base import MemoryNotFoundError, MemoryStore
from ..utils.deduplication import find_consolidation_candidates, potential_reduction
from ..utils.embeddings import EmbeddingProvider, mean_embedding, validate_embedding
from ..utils.llm_merge import LLMMerger, MergeError
from ..utils.working_memory import DEFAULT_QUALITY, is_pinned, is_valid_at
from .index_registry import MEMORIES_CORPUS, IndexRegistry

logger = logging.getLogger(__name__)

SYNTHETIC_SOURCE = "consolidation-llm"

_DAY = 86400.0


@dataclass
class _PlannedPair:
    candidate: ConsolidationCandidate
    kind: str
    keeper: Memory | None = None
    loser: Memory | None = None
    reason: str = ""


def _quality(memory: Memory) -> float:
    return memory.quality_score if memory.quality_score is not None else DEFAULT_QUALITY


def choose_keeper(a: Memory, b: Memory) -> tuple[Memory, Memory]:
    """``(keeper, loser)``: higher quality wins, the newer memory on a tie."""
    qa, qb = _quality(a), _quality(b)
    if qa != qb:
        return (a, b) if qa > qb else (b, a)
    return (a, b) if a.created_at >= b.created_at else (b, a)


def _union_tags(a: Memory, b: Memory) -> list[str]:
    tags: list[str] = []
    for tag in [*a.tags, *b.tags]:
        if tag not in tags:
            tags.append(tag)
    return tags


class ConsolidationEngine:
    """Duplicate discovery, merge and undo over a ``MemoryStore``.

    Args:
        store: Memory persistence, including the link table.
        merger: LLM merge provider; without one every pair uses the
            deterministic keep-higher-quality path.
        embedder: Embeds synthetic merged content; without one the merged
            memory gets the normalised mean of the originals' embeddings.
        config: Thresholds and guards (defaults to ``settings.consolidation``).
        pin_threshold: Correction count that pins a memory.
        registry: When given, the memories corpus index is kept in step with
            synthetic memories created or deleted here.
        retry_wait: tenacity wait strategy between merge attempts.
    """

    def __init__(
        self,
        store: MemoryStore,
        merger: LLMMerger | None = None,
        embedder: EmbeddingProvider | None = None,
        config: ConsolidationSettings | None = None,
        pin_threshold: int | None = None,
        registry: IndexRegistry | None = None,
        corpus: str = MEMORIES_CORPUS,
        retry_wait: wait_base | None = None,
    ):
        self.store = store
        self.merger = merger
        self.embedder = embedder
        self.config = config or settings.consolidation
        self.pin_threshold = pin_threshold if pin_threshold is not None else settings.working_memory.pin_threshold
        self.registry = registry
        self.corpus = corpus
        self.retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=0.5, min=0.5, max=4)

    # -- discovery ---------------------------------------------------------

    def _old_enough(self, memory: Memory, now: float) -> bool:
        return (now - memory.created_at) / _DAY >= self.config.min_memory_age_days

    async def find_candidates(
        self,
        threshold: float | None = None,
        max_candidates: int | None = None,
        now: float | None = None,
        memories: Sequence[Memory] | None = None,
    ) -> list[ConsolidationCandidate]:
        """Near-duplicate pairs among active, currently valid memories old enough to merge."""
        now = now if now is not None else time.time()
        if memories is None:
            memories = await self.store.get_all_memories()
        eligible = [
            m
            for m in memories
            if m.is_active and is_valid_at(m.valid_from, m.valid_until, now) and self._old_enough(m, now)
        ]
        return find_consolidation_candidates(
            eligible,
            threshold=threshold if threshold is not None else self.config.merge_threshold,
            max_candidates=max_candidates if max_candidates is not None else self.config.max_candidates,
        )

    # -- planning ----------------------------------------------------------

    def _plan(self, candidates: Sequence[ConsolidationCandidate]) -> list[_PlannedPair]:
        use_llm = self.config.use_llm and self.merger is not None
        consumed: set[int] = set()
        plans: list[_PlannedPair] = []

        for candidate in candidates:
            a, b = candidate.memory_a, candidate.memory_b
            if a.id in consumed or b.id in consumed:
                plans.append(_PlannedPair(candidate, "skipped", reason="already consolidated in this run"))
                continue

            a_pinned, b_pinned = is_pinned(a, self.pin_threshold), is_pinned(b, self.pin_threshold)
            if a_pinned and b_pinned:
                plans.append(_PlannedPair(candidate, "keep_both", reason="both memories are pinned"))
                continue

            if a_pinned or b_pinned:
                keeper, loser = (a, b) if a_pinned else (b, a)
                plans.append(_PlannedPair(candidate, "keep_one", keeper, loser, reason="pinned memory kept"))
                consumed.add(loser.id)
                continue

            if use_llm:
                plans.append(_PlannedPair(candidate, "llm_merge", reason="LLM synthesis"))
                consumed.update((a.id, b.id))
                continue

            keeper, loser = choose_keeper(a, b)
            plans.append(_PlannedPair(candidate, "keep_one", keeper, loser, reason="higher quality kept"))
            consumed.add(loser.id)

        return plans

    # -- synthesis ---------------------------------------------------------

    async def _merge_with_retry(self, a: Memory, b: Memory) -> str:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.llm_retry_attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                merged = await self.merger.merge(a.content, b.content)
                if not merged or not merged.strip():
                    raise MergeError("merge provider returned empty content")
                return merged.strip()
        raise MergeError("merge retries exhausted")

    async def _merged_embedding(self, content: str, a: Memory, b: Memory) -> list[float] | None:
        if self.embedder is not None:
            vectors = await self.embedder.embed([content])
            return validate_embedding(vectors[0])
        originals = [m.embedding for m in (a, b) if m.embedding]
        if len(originals) == 2 and len(originals[0]) == len(originals[1]):
            return mean_embedding(originals)
        return originals[0] if originals else None

    async def _synthesise(self, a: Memory, b: Memory, now: float) -> Memory:
        content = await self._merge_with_retry(a, b)
        embedding = await self._merged_embedding(content, a, b)
        base = a if _quality(a) >= _quality(b) else b
        qualities = [m.quality_score for m in (a, b) if m.quality_score is not None]
        return Memory(
            id=0,
            content=content,
            embedding=embedding,
            tags=_union_tags(a, b),
            memory_type=base.memory_type,
            source=SYNTHETIC_SOURCE,
            project=base.project,
            quality_score=max(qualities) if qualities else None,
            access_count=a.access_count + b.access_count,
            correction_count=max(a.correction_count, b.correction_count),
            created_at=now,
        )

    async def _synthesise_all(self, plans: Sequence[_PlannedPair], now: float) -> dict[int, Memory | Exception]:
        """LLM merges for every planned pair, at most ``llm_concurrency`` in flight."""
        semaphore = asyncio.Semaphore(self.config.llm_concurrency)

        async def one(plan: _PlannedPair) -> Memory | Exception:
            async with semaphore:
                try:
                    return await self._synthesise(plan.candidate.memory_a, plan.candidate.memory_b, now)
                except Exception as e:
                    return e

        llm_plans = [(i, p) for i, p in enumerate(plans) if p.kind == "llm_merge"]
        outcomes = await asyncio.gather(*(one(p) for _, p in llm_plans))
        return {i: outcome for (i, _), outcome in zip(llm_plans, outcomes)}

    # -- mutation ----------------------------------------------------------

    async def _transfer_links(self, from_id: int, to_id: int) -> None:
        """Copy ``from_id``'s non-``supersedes`` links onto ``to_id``.

        Self-links and links the survivor already has are skipped.
        """
        links = await self.store.get_links(source_id=from_id) + await self.store.get_links(target_id=from_id)
        for link in links:
            if link.relation == "supersedes":
                continue
            source = to_id if link.source_id == from_id else link.source_id
            target = to_id if link.target_id == from_id else link.target_id
            if source == target:
                continue
            if await self.store.get_links(relation=link.relation, source_id=source, target_id=target):
                continue
            await self.store.create_link(
                link.model_copy(update={"source_id": source, "target_id": target, "transferred_from": from_id})
            )

    async def _return_links(self, survivor_id: int, original_id: int) -> None:
        """Drop the copies ``_transfer_links`` made from ``original_id``."""
        links = await self.store.get_links(source_id=survivor_id) + await self.store.get_links(target_id=survivor_id)
        for link in links:
            if link.transferred_from == original_id:
                await self.store.delete_link(link.source_id, link.target_id, link.relation)

    async def _supersede(self, survivor_id: int, original: Memory, similarity: float, now: float) -> None:
        await self.store.invalidate_memory(original.id, superseded_by=survivor_id, at=now)
        await self.store.create_link(
            MemoryLink(
                source_id=survivor_id, target_id=original.id, relation="supersedes", weight=similarity, created_at=now
            )
        )
        await self._transfer_links(original.id, survivor_id)

    async def _unsupersede(self, survivor_id: int, original_id: int) -> None:
        """Reverse ``_supersede`` as far as it got."""
        current = await self.store.get_memory(original_id)
        if current is not None and current.invalidated_by == survivor_id:
            await self.store.restore_memory(original_id)
        await self._return_links(survivor_id, original_id)
        await self.store.delete_link(survivor_id, original_id, "supersedes")

    async def _apply_keep_both(self, plan: _PlannedPair, now: float) -> ConsolidationAction:
        a_id, b_id = plan.candidate.pair_key
        await self.store.create_link(
            MemoryLink(
                source_id=a_id, target_id=b_id, relation="similar_to", weight=plan.candidate.similarity, created_at=now
            )
        )
        return self._describe(plan)

    async def _apply_keep_one(self, plan: _PlannedPair, now: float) -> ConsolidationAction:
        try:
            await self._supersede(plan.keeper.id, plan.loser, plan.candidate.similarity, now)
        except Exception:
            await self._unsupersede(plan.keeper.id, plan.loser.id)
            raise
        return ConsolidationAction(
            kind="keep_one",
            memory_ids=plan.candidate.pair_key,
            similarity=plan.candidate.similarity,
            merged_id=plan.keeper.id,
            invalidated_ids=[plan.loser.id],
            reason=plan.reason,
        )

    async def _apply_llm_merge(self, plan: _PlannedPair, merged: Memory, now: float) -> ConsolidationAction:
        originals = (plan.candidate.memory_a, plan.candidate.memory_b)
        # Synthesis ran concurrently with other writers
        for original in originals:
            current = await self.store.get_memory(original.id)
            if current is None or not current.is_active:
                raise MergeError(f"memory {original.id} was deleted or superseded during synthesis")

        saved = await self.store.save_memory(merged)
        try:
            if self.registry is not None:
                await self.registry.update(self.corpus, saved.to_unit())
            for original in originals:
                await self._supersede(saved.id, original, plan.candidate.similarity, now)
        except Exception as e:
            logger.warning(f"Rolling back merged memory {saved.id}: {e}")
            for original in originals:
                await self._unsupersede(saved.id, original.id)
            await self.store.delete_memory(saved.id, force=True)
            if self.registry is not None:
                await self.registry.remove(self.corpus, saved.id)
            raise
        return ConsolidationAction(
            kind="llm_merge",
            memory_ids=plan.candidate.pair_key,
            similarity=plan.candidate.similarity,
            merged_id=saved.id,
            invalidated_ids=[plan.candidate.memory_a.id, plan.candidate.memory_b.id],
            reason=plan.reason,
        )

    # -- runs --------------------------------------------------------------

    async def run(
        self,
        dry_run: bool = False,
        threshold: float | None = None,
        max_candidates: int | None = None,
        now: float | None = None,
    ) -> ConsolidationReport:
        """Consolidate near-duplicate memories.

        Args:
            dry_run: Report what would happen without calling the LLM or mutating the store.
            threshold: Merge similarity threshold (defaults to config).
            max_candidates: Cap on pairs considered (defaults to config).
            now: Evaluation time in epoch seconds.

        Returns:
            Run report; per-pair failures are listed in ``errors``.
        """
        now = now if now is not None else time.time()
        report = ConsolidationReport(dry_run=dry_run)

        active = await self.store.get_all_memories()
        if len(active) < self.config.min_corpus_size:
            report.skipped_reason = (
                f"only {len(active)} active memories, consolidation needs at least {self.config.min_corpus_size}"
            )
            logger.info(f"Consolidation skipped: {report.skipped_reason}")
            return report

        candidates = await self.find_candidates(threshold, max_candidates, now, memories=active)
        report.candidates_found = len(candidates)
        plans = self._plan(candidates)

        if dry_run:
            for plan in plans:
                report.actions.append(self._describe(plan))
                self._count(report, plan.kind)
            return report

        synthesised = await self._synthesise_all(plans, now)

        for i, plan in enumerate(plans):
            pair = plan.candidate.pair_key
            if plan.kind == "skipped":
                report.actions.append(self._describe(plan))
                self._count(report, plan.kind)
                continue

            try:
                if plan.kind == "llm_merge":
                    outcome = synthesised[i]
                    if isinstance(outcome, Exception):
                        raise outcome
                    action = await self._apply_llm_merge(plan, outcome, now)
                elif plan.kind == "keep_both":
                    action = await self._apply_keep_both(plan, now)
                else:
                    action = await self._apply_keep_one(plan, now)
            except Exception as e:
                logger.warning(f"Consolidation of pair {pair} failed (non-fatal): {e}")
                report.errors.append(f"pair {pair}: {e}")
                continue

            report.actions.append(action)
            self._count(report, action.kind)

        logger.info(
            f"Consolidation complete: {report.candidates_found} candidates, {report.merged} merged, "
            f"{report.invalidated} invalidated, {report.kept} kept, {report.skipped} skipped, "
            f"{report.errored} errors"
        )
        return report

    async def dry_run(
        self,
        threshold: float | None = None,
        max_candidates: int | None = None,
        now: float | None = None,
    ) -> ConsolidationReport:
        return await self.run(dry_run=True, threshold=threshold, max_candidates=max_candidates, now=now)

    @staticmethod
    def _describe(plan: _PlannedPair) -> ConsolidationAction:
        candidate = plan.candidate
        invalidated: list[int] = []
        if plan.kind == "keep_one":
            invalidated = [plan.loser.id]
        elif plan.kind == "llm_merge":
            invalidated = [candidate.memory_a.id, candidate.memory_b.id]
        return ConsolidationAction(
            kind=plan.kind,
            memory_ids=candidate.pair_key,
            similarity=candidate.similarity,
            merged_id=plan.keeper.id if plan.keeper is not None else None,
            invalidated_ids=invalidated,
            reason=plan.reason,
        )

    @staticmethod
    def _count(report: ConsolidationReport, kind: str) -> None:
        if kind == "keep_both":
            report.kept += 1
        elif kind == "skipped":
            report.skipped += 1
        else:
            report.merged += 1
            report.invalidated += 1 if kind == "keep_one" else 2

    # -- undo and history --------------------------------------------------

    async def undo_consolidation(self, merged_id: int) -> UndoResult:
        """Restore every original ``merged_id`` supersedes; delete it if it was synthetic."""
        result = UndoResult(merged_id=merged_id)
        links = await self.store.get_links(relation="supersedes", source_id=merged_id)
        if not links:
            result.message = "nothing to undo"
            return result

        for link in links:
            try:
                await self.store.restore_memory(link.target_id)
            except MemoryNotFoundError:
                result.errors.append(f"original memory {link.target_id} no longer exists")
            else:
                result.restored.append(link.target_id)
            await self._return_links(merged_id, link.target_id)
            await self.store.delete_link(link.source_id, link.target_id, "supersedes")

        merged = await self.store.get_memory(merged_id)
        if merged is not None and merged.source == SYNTHETIC_SOURCE:
            result.deleted_merge = await self.store.delete_memory(merged_id, force=True)
            if result.deleted_merge and self.registry is not None:
                await self.registry.remove(self.corpus, merged_id)

        result.message = f"restored {len(result.restored)} memories"
        if result.deleted_merge:
            result.message += f", deleted merged memory {merged_id}"
        logger.info(f"Undo consolidation {merged_id}: {result.message}")
        return result

    async def get_consolidation_history(self, limit: int = 20) -> list[ConsolidationHistoryEntry]:
        """Most recent consolidations first, reconstructed from ``supersedes`` links."""
        grouped: dict[int, list[MemoryLink]] = {}
        for link in await self.store.get_links(relation="supersedes"):
            grouped.setdefault(link.source_id, []).append(link)

        entries: list[ConsolidationHistoryEntry] = []
        for merged_id, links in grouped.items():
            merged = await self.store.get_memory(merged_id)
            entries.append(
                ConsolidationHistoryEntry(
                    merged_memory_id=merged_id,
                    original_ids=sorted(link.target_id for link in links),
                    merged_at=max(link.created_at for link in links),
                    merged_content=merged.content if merged is not None else None,
                )
            )

        entries.sort(key=lambda e: (e.merged_at, e.merged_memory_id), reverse=True)
        return entries[:limit]

    async def get_consolidation_stats(self, threshold: float | None = None) -> ConsolidationStats:
        """Corpus size, candidate pairs and how many memories a full pass could remove."""
        active = await self.store.get_all_memories()
        candidates = find_consolidation_candidates(
            active,
            threshold=threshold if threshold is not None else self.config.merge_threshold,
            max_candidates=None,
        )
        return ConsolidationStats(
            total_memories=len(active),
            candidate_pairs=len(candidates),
            potential_reduction=potential_reduction(candidates),
        )
