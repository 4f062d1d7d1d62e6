from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Iterable, Sequence
from functools import partial

from ..config.loader import MappingConfig
from ..errors import ExternalServiceError, ImportPipelineError
from ..models.catalogue import PRODUCT_FIELDS, TargetField
from ..models.mapping import FieldMapping, MappingResult, MappingStrategy, MappingValidationResult
from ..models.source_field import SourceField
from .external import call_with_timeout
from .mapping_cache import MappingCacheStore
from .mapping_strategies import (
    Matcher,
    exact_match,
    fuzzy_match,
    historical_match,
    run_stage,
    statistical_match,
)
from .semantic import UNMAPPED, FieldSample, SemanticInferenceService, SemanticSuggestion

"""Field mapping engine.

Cascade (each stage only sees fields unresolved by the previous ones):
    exact -> fuzzy -> historical -> statistical -> semantic
At most one mapping per target field: a candidate that outranks the current holder
(higher confidence, ties to the earlier stage) takes the target and the displaced
source field goes back to the unresolved pool for the remaining stages.
Every accepted mapping is written back to the mapping cache.
"""

__all__ = [
    "MappingConflict",
    "FieldMappingEngine",
]

logger = logging.getLogger(__name__)


class MappingConflict(ImportPipelineError):
    """Mapping set that cannot be executed (or an invalid manual override)."""

    def __init__(self, message: str, validation: MappingValidationResult | None = None) -> None:
        super().__init__(message)
        self.validation = validation


def _merge(candidates: Iterable[FieldMapping], accepted: dict[str, FieldMapping]) -> list[str]:
    """Fold candidates into `accepted` (keyed by target). Returns displaced source names."""
    displaced: list[str] = []
    for candidate in candidates:
        holder = accepted.get(candidate.target_field)
        if holder is None:
            accepted[candidate.target_field] = candidate
        elif candidate.outranks(holder):
            accepted[candidate.target_field] = candidate
            displaced.append(holder.source_field)
        else:
            displaced.append(candidate.source_field)
    return displaced


class FieldMappingEngine:
    """Maps analysed source fields onto the product catalogue."""

    def __init__(
        self,
        cache: MappingCacheStore,
        semantic: SemanticInferenceService | None = None,
        config: MappingConfig | None = None,
        catalogue: dict[str, TargetField] | None = None,
    ) -> None:
        self.cache = cache
        self.semantic = semantic
        self.config = config or MappingConfig()
        self.catalogue = catalogue or PRODUCT_FIELDS

    # ---- cascade -----------------------------------------------------------

    def _historical(self, touch: bool) -> Matcher:
        def match(field: SourceField) -> FieldMapping | None:
            try:
                return historical_match(field, self.cache, touch=touch)
            except ExternalServiceError as e:
                logger.warning("Mapping cache lookup failed for %s: %s", field.name, e)
                return None
        return match

    def _stages(self) -> list[tuple[MappingStrategy, Matcher, float]]:
        cfg = self.config
        return [
            (MappingStrategy.EXACT, partial(exact_match, catalogue=self.catalogue), 0),
            (MappingStrategy.FUZZY,
             partial(fuzzy_match, catalogue=self.catalogue, candidate_threshold=cfg.fuzzy_candidate),
             cfg.fuzzy_accept),
            (MappingStrategy.HISTORICAL, self._historical(touch=True), cfg.historical_accept),
            (MappingStrategy.STATISTICAL, statistical_match, cfg.statistical_accept),
        ]

    def generate_mappings(self, fields: Sequence[SourceField]) -> MappingResult:
        start = time.perf_counter()
        order = {f.name: i for i, f in enumerate(fields)}
        by_name = {f.name: f for f in fields}
        accepted: dict[str, FieldMapping] = {}
        pending: list[SourceField] = list(fields)

        def requeue(unresolved: list[SourceField], displaced: list[str]) -> list[SourceField]:
            merged = unresolved + [by_name[n] for n in displaced]
            return sorted(merged, key=lambda f: order[f.name])

        for strategy, matcher, accept in self._stages():
            if not pending:
                break
            resolved, unresolved = run_stage(pending, matcher, accept)
            pending = requeue(unresolved, _merge(resolved, accepted))
            logger.debug("%s stage resolved %d field(s)", strategy.value, len(resolved))

        if pending and self.semantic is not None:
            resolved = self._semantic_stage(pending)
            mapped = {m.source_field for m in resolved}
            unresolved = [f for f in pending if f.name not in mapped]
            pending = requeue(unresolved, _merge(resolved, accepted))

        mappings = sorted(accepted.values(), key=lambda m: order[m.source_field])
        self._learn(mappings)

        counts = Counter(m.strategy.value for m in mappings)
        result = MappingResult(
            mappings=tuple(mappings),
            unmapped=tuple(pending),
            elapsed_seconds=time.perf_counter() - start,
            strategy_counts=dict(counts),
        )
        logger.info(
            "Mapped %d/%d field(s) (%s), %d unmapped",
            len(mappings), len(fields),
            ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "none",
            len(pending),
        )
        return result

    def _semantic_stage(self, fields: Sequence[SourceField]) -> list[FieldMapping]:
        suggestions = self._ask_semantic(fields)
        names = {f.name for f in fields}
        mappings: list[FieldMapping] = []
        seen: set[str] = set()
        for s in suggestions:
            mapping = self._accept_semantic(s)
            if mapping is None or mapping.source_field not in names or mapping.source_field in seen:
                continue
            seen.add(mapping.source_field)
            mappings.append(mapping)
        return mappings

    def _ask_semantic(self, fields: Sequence[SourceField]) -> list[SemanticSuggestion]:
        service = self.semantic
        if service is None:
            return []
        samples = [FieldSample(f.name, tuple(f.sample_values[:3])) for f in fields]
        targets = list(self.catalogue)
        try:
            return call_with_timeout(
                lambda: service.infer(samples, targets, self.config.domain_hint),
                self.config.semantic_timeout,
                name="semantic",
            )
        except ExternalServiceError as e:
            logger.warning("Semantic mapping failed, continuing without it: %s", e)
            return []

    def _accept_semantic(self, s: SemanticSuggestion) -> FieldMapping | None:
        cfg = self.config
        if s.target_field == UNMAPPED or s.confidence < cfg.semantic_min:
            return None
        if s.target_field not in self.catalogue:
            logger.debug("Semantic service proposed unknown target %r", s.target_field)
            return None
        return FieldMapping(
            s.source_field,
            s.target_field,
            min(cfg.semantic_cap, s.confidence),
            MappingStrategy.SEMANTIC,
            {"reasoning": s.reasoning, "reported_confidence": s.confidence},
        )

    def _learn(self, mappings: Iterable[FieldMapping]) -> None:
        for mapping in mappings:
            try:
                self.cache.upsert(mapping)
            except ExternalServiceError as e:
                logger.warning("Could not cache mapping %s -> %s: %s",
                               mapping.source_field, mapping.target_field, e)

    # ---- interactive -------------------------------------------------------

    def suggest(self, field: SourceField) -> list[FieldMapping]:
        """Every strategy's candidate for one field, best first, one per target.

        Read-only with respect to the cache.
        """
        matchers: list[Matcher] = [
            partial(exact_match, catalogue=self.catalogue),
            partial(fuzzy_match, catalogue=self.catalogue,
                    candidate_threshold=self.config.fuzzy_candidate),
            self._historical(touch=False),
            statistical_match,
        ]
        candidates = [m for m in (match(field) for match in matchers) if m is not None]
        candidates += self._semantic_stage([field])
        # sort は安定: 同点なら先の戦略が残る
        candidates.sort(key=lambda m: m.confidence, reverse=True)
        seen: set[str] = set()
        unique: list[FieldMapping] = []
        for m in candidates:
            if m.target_field not in seen:
                seen.add(m.target_field)
                unique.append(m)
        return unique

    def override(self, result: MappingResult, fields: Sequence[SourceField],
                 source_field: str, target_field: str | None) -> MappingResult:
        """Manually map `source_field` to `target_field` (None clears its mapping).

        The manual mapping (confidence 100) displaces any other mapping to the same target.

        Raises:
            MappingConflict: unknown source field or target field
        """
        names = [f.name for f in fields]
        if source_field not in names:
            raise MappingConflict(f"Unknown source field: {source_field}")
        if target_field is not None and target_field not in self.catalogue:
            raise MappingConflict(f"Unknown target field: {target_field}")

        kept = [
            m for m in result.mappings
            if m.source_field != source_field and m.target_field != target_field
        ]
        if target_field is not None:
            manual = FieldMapping(source_field, target_field, 100, MappingStrategy.MANUAL,
                                  {"previous": result.target_for(source_field)})
            kept.append(manual)
            self._learn([manual])

        order = {n: i for i, n in enumerate(names)}
        kept.sort(key=lambda m: order.get(m.source_field, len(order)))
        mapped = {m.source_field for m in kept}
        counts = Counter(m.strategy.value for m in kept)
        logger.info("Override %s -> %s", source_field, target_field or "(unmapped)")
        return MappingResult(
            mappings=tuple(kept),
            unmapped=tuple(f for f in fields if f.name not in mapped),
            elapsed_seconds=result.elapsed_seconds,
            strategy_counts=dict(counts),
        )

    # ---- validation --------------------------------------------------------

    def validate_mappings(self, mappings: Iterable[FieldMapping]) -> MappingValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        used: set[str] = set()
        for m in mappings:
            if m.target_field in used:
                errors.append(f"Target field '{m.target_field}' is mapped multiple times")
            used.add(m.target_field)
            if m.target_field not in self.catalogue:
                errors.append(f"Unknown target field: {m.target_field}")
            if m.confidence < self.config.low_confidence:
                warnings.append(
                    f"Low confidence mapping: {m.source_field} -> {m.target_field} ({m.confidence:g}%)"
                )
        missing = tuple(n for n, t in self.catalogue.items() if t.required and n not in used)
        for name in missing:
            warnings.append(f"Required field '{name}' is not mapped")
        return MappingValidationResult(tuple(errors), tuple(warnings), missing)

    def require_executable(self, mappings: Iterable[FieldMapping]) -> MappingValidationResult:
        """Validation result, or MappingConflict when it blocks execution."""
        validation = self.validate_mappings(mappings)
        if validation.blocks_execution:
            problems = list(validation.errors) + [
                f"Required field '{n}' is not mapped" for n in validation.missing_required
            ]
            raise MappingConflict("; ".join(problems), validation)
        return validation
