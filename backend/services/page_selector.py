"""
Best-page selection for multi-page capture sessions.

A document scanner may split one physical receipt into several candidate
images.  Every candidate is scored concurrently; the winner is picked only
once all scores are in (a best-so-far choice could miss a later, better
page).  Ties go to the lowest index so the choice is deterministic.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from services.capture import CapturedPage
from services.errors import CaptureEmpty
from services.quality_service import QualityScore

logger = logging.getLogger("basketscan.selector")


class PageScorer(Protocol):
    async def score(self, page: CapturedPage) -> QualityScore: ...


@dataclass(frozen=True)
class PageSelection:
    index: int
    page: CapturedPage
    scores: tuple[QualityScore, ...]   # empty when the session had a single page

    @property
    def score(self) -> Optional[QualityScore]:
        return self.scores[self.index] if self.scores else None


class BestPageSelector:

    def __init__(self, scorer: PageScorer):
        self._scorer = scorer

    async def select(self, pages: Sequence[CapturedPage]) -> PageSelection:
        if not pages:
            raise CaptureEmpty("Capture session produced no pages")

        if len(pages) == 1:
            return PageSelection(index=0, page=pages[0], scores=())

        # gather() cancels every outstanding score if this coroutine is cancelled
        scores = tuple(await asyncio.gather(*(self._scorer.score(p) for p in pages)))

        best = 0
        for i in range(1, len(scores)):
            if scores[i].total > scores[best].total:
                best = i

        logger.info(
            "Selected page %d of %d (scores: %s)",
            best + 1, len(pages), ", ".join(f"{s.total:.3f}" for s in scores),
        )
        return PageSelection(index=best, page=pages[best], scores=scores)

    async def select_best(self, pages: Sequence[CapturedPage]) -> CapturedPage:
        return (await self.select(pages)).page
