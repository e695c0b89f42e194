"""Simple catalog matcher based on difflib string similarity."""

import difflib
from collections.abc import Sequence

from slipworker.models import (
    CatalogProduct,
    LineItemCandidate,
    MatchingOptions,
    MatchResult,
    MatchType,
    ProductMatch,
)

# Best matches below this confidence still go to a reviewer
REVIEW_CONFIDENCE = 0.85


def _normalize(value: str) -> str:
    return " ".join(value.lower().split())


def _similarity(a: str, b: str) -> float:
    return difflib.SequenceMatcher(None, a, b).ratio()


class CatalogMatcher:
    """Matches line item descriptions against a tenant's product names and aliases."""

    def _score(
        self, description: str, product: CatalogProduct, use_aliases: bool
    ) -> ProductMatch:
        name = _normalize(product.name)
        if description == name:
            return ProductMatch(
                product=product, similarity=1.0, confidence=1.0, match_type=MatchType.EXACT
            )

        aliases = [_normalize(a) for a in product.aliases] if use_aliases else []
        if description in aliases:
            return ProductMatch(
                product=product,
                similarity=1.0,
                confidence=0.95,
                match_type=MatchType.ALIAS,
            )

        score = max(
            [_similarity(description, name)]
            + [_similarity(description, a) for a in aliases]
        )
        return ProductMatch(
            product=product,
            similarity=round(score, 4),
            confidence=round(score * 0.9, 4),
            match_type=MatchType.FUZZY,
        )

    def match_item(
        self,
        line_item: LineItemCandidate,
        catalog: Sequence[CatalogProduct],
        options: MatchingOptions,
    ) -> MatchResult:
        description = _normalize(line_item.description)
        scored = [self._score(description, p, options.use_aliases) for p in catalog]
        matches = sorted(
            (m for m in scored if m.similarity >= options.similarity_threshold),
            key=lambda m: (m.confidence, m.similarity),
            reverse=True,
        )[: options.max_matches]

        best = matches[0] if matches else None
        return MatchResult(
            line_item=line_item,
            matches=matches,
            best_match=best,
            requires_manual_review=best is None or best.confidence < REVIEW_CONFIDENCE,
        )

    async def match(
        self,
        line_items: Sequence[LineItemCandidate],
        catalog: Sequence[CatalogProduct],
        options: MatchingOptions,
    ) -> list[MatchResult]:
        return [self.match_item(item, catalog, options) for item in line_items]
