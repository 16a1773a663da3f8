"""Catalog lookup: keyword extraction and candidate search.

``StoreCatalogClient`` ranks catalog documents by how many query keywords
appear in their name, local name and keyword list. It scans the catalog
collection, which is fine at supermarket-catalog sizes; a dedicated search
index can replace it behind the same ``CatalogClient`` protocol.
"""

from __future__ import annotations

import re
from typing import Protocol

import structlog

from flyer_pipeline.models.contracts import CandidateProduct
from flyer_pipeline.models.entities import CatalogEntry
from flyer_pipeline.store.repository import Repository

logger = structlog.get_logger()

MAX_KEYWORDS = 10

STOP_WORDS = frozenset(
    {
        "the", "and", "or", "a", "an", "in", "on", "at", "to", "for", "with", "by", "of",
        # units
        "кг", "kg", "л", "l", "мл", "ml", "г", "g", "ден", "den",
    }
)  # fmt: skip

_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)


def extract_keywords(text: str | None, *extra: str) -> list[str]:
    """Lower-cased, de-duplicated words of length >= 2, stop words removed.

    Order of first appearance is kept. ``\\w`` is Unicode-aware, so Cyrillic
    words survive.
    """
    keywords: list[str] = []
    seen: set[str] = set()
    for chunk in (text, *extra):
        if not chunk:
            continue
        for word in _NON_WORD.sub(" ", chunk.lower()).split():
            if len(word) < 2 or word in STOP_WORDS or word in seen:
                continue
            seen.add(word)
            keywords.append(word)
    return keywords


class CatalogClient(Protocol):
    async def search(
        self,
        name: str,
        alt_names: list[str] | None = None,
        keywords: list[str] | None = None,
        limit: int = 10,
    ) -> list[CandidateProduct]: ...


def _entry_terms(entry: CatalogEntry) -> set[str]:
    terms = set(extract_keywords(entry.name, entry.name_mk or ""))
    terms.update(keyword.lower() for keyword in entry.keywords)
    return terms


def _to_candidate(entry: CatalogEntry) -> CandidateProduct:
    return CandidateProduct(
        id=entry.id,
        name=entry.name,
        name_mk=entry.name_mk,
        description=entry.description,
        category=entry.category,
        current_price=entry.current_price,
    )


class StoreCatalogClient:
    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    async def search(
        self,
        name: str,
        alt_names: list[str] | None = None,
        keywords: list[str] | None = None,
        limit: int = 10,
    ) -> list[CandidateProduct]:
        names = [name, *(alt_names or [])]
        query = extract_keywords(*names, *(keywords or []))[:MAX_KEYWORDS]
        if not query:
            return []
        wanted = {n.strip().lower() for n in names if n}

        scored: list[tuple[int, int, CatalogEntry]] = []
        for entry in await self._repo.list_catalog_entries():
            overlap = len(_entry_terms(entry).intersection(query))
            if overlap == 0:
                continue
            exact = int(entry.name.lower() in wanted or (entry.name_mk or "").lower() in wanted)
            scored.append((exact, overlap, entry))

        scored.sort(key=lambda row: (row[0], row[1]), reverse=True)
        candidates = [_to_candidate(entry) for _, _, entry in scored[:limit]]
        logger.info("catalog_search", keywords=query, candidates=len(candidates))
        return candidates
