"""
Candidate-to-catalog matching.

A catalog result is scored against a candidate as

    score = title_weight * title_similarity + author_weight * best_author_similarity

and the best result across all providers decides whether the candidate is
validated. The weights, acceptance threshold and confidence bands are
heuristics and live in ScoringConfig so they can be tuned without code changes.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from shelfscan.core.models import (
    STATUS_UNVALIDATED,
    STATUS_VALIDATED,
    BookCandidate,
    ValidatedBook,
    ValidationResult,
)
from shelfscan.core.normalize import fold, words

EXACT_MATCH = 1.0
SUBSTRING_MATCH = 0.8


@dataclass(frozen=True)
class ScoringConfig:
    title_weight: float = 0.7
    author_weight: float = 0.3
    accept_threshold: float = 0.5
    unvalidated_penalty: float = 0.5
    mid_band_floor: float = 0.6
    high_band_floor: float = 0.8
    low_band_boost: float = 1.0
    mid_band_boost: float = 1.1
    high_band_boost: float = 1.2

    def validate(self) -> None:
        if self.title_weight < 0 or self.author_weight < 0:
            raise ValueError("weights must be >= 0")
        if abs((self.title_weight + self.author_weight) - 1.0) > 1e-6:
            raise ValueError("title_weight + author_weight must equal 1.0")
        if not (0.0 < self.accept_threshold <= self.mid_band_floor <= self.high_band_floor <= 1.0):
            raise ValueError("expected 0 < accept_threshold <= mid_band_floor <= high_band_floor <= 1")
        if not (0.5 <= self.unvalidated_penalty <= 0.6):
            raise ValueError("unvalidated_penalty must be within [0.5, 0.6]")
        if not (1.0 <= self.low_band_boost <= self.mid_band_boost <= self.high_band_boost):
            raise ValueError("band boosts must be >= 1.0 and non-decreasing")


DEFAULT_SCORING = ScoringConfig()


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    if not a or not b:
        return 0.0
    fa, fb = fold(a), fold(b)
    if fa == fb:
        return EXACT_MATCH
    if fa and fb and (fa in fb or fb in fa):
        return SUBSTRING_MATCH
    wa, wb = set(words(a)), set(words(b))
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / max(len(wa), len(wb))


def best_author_similarity(candidate_authors: Sequence[str], result_authors: Sequence[str]) -> float:
    best = 0.0
    for ca in candidate_authors or ():
        for ra in result_authors or ():
            best = max(best, title_similarity(ca, ra))
    return best


def match_score(candidate: BookCandidate, result: ValidationResult, cfg: ScoringConfig = DEFAULT_SCORING) -> float:
    t = title_similarity(candidate.title, result.title)
    a = best_author_similarity(candidate.authors(), result.authors)
    return cfg.title_weight * t + cfg.author_weight * a


def confidence_multiplier(score: float, cfg: ScoringConfig = DEFAULT_SCORING) -> float:
    if score < cfg.accept_threshold:
        return cfg.unvalidated_penalty
    if score > cfg.high_band_floor:
        return cfg.high_band_boost
    if score >= cfg.mid_band_floor:
        return cfg.mid_band_boost
    return cfg.low_band_boost


def adjust_confidence(confidence: float, score: float, cfg: ScoringConfig = DEFAULT_SCORING) -> float:
    adjusted = float(confidence) * confidence_multiplier(score, cfg)
    return max(0.0, min(1.0, adjusted))


@dataclass(frozen=True)
class ScoredMatch:
    result: ValidationResult
    score: float
    order: int

    def rank_key(self) -> tuple:
        # Highest score wins; ties prefer a result carrying an ISBN, then the earlier provider.
        return (self.score, 1 if self.result.isbn else 0, -self.order)


def pick_best(matches: Iterable[ScoredMatch]) -> Optional[ScoredMatch]:
    best: Optional[ScoredMatch] = None
    for m in matches:
        if best is None or m.rank_key() > best.rank_key():
            best = m
    return best


def best_per_provider(
    candidate: BookCandidate,
    responses: Sequence[Sequence[ValidationResult]],
    cfg: ScoringConfig = DEFAULT_SCORING,
) -> List[ScoredMatch]:
    """One best match per provider response set, in provider order; empty sets are skipped."""
    out: List[ScoredMatch] = []
    order = 0
    for results in responses:
        scored = []
        for r in results:
            if not r.validated:
                continue
            scored.append(ScoredMatch(result=r, score=match_score(candidate, r, cfg), order=order))
            order += 1
        best = pick_best(scored)
        if best is not None:
            out.append(best)
    return out


def resolve_candidate(
    candidate: BookCandidate,
    responses: Sequence[Sequence[ValidationResult]],
    cfg: ScoringConfig = DEFAULT_SCORING,
    errors: Sequence[str] = (),
) -> ValidatedBook:
    best = pick_best(best_per_provider(candidate, responses, cfg))
    score = best.score if best else 0.0
    confidence = adjust_confidence(candidate.confidence, score, cfg)
    accepted = best is not None and score >= cfg.accept_threshold

    if accepted:
        adjusted = BookCandidate(
            title=candidate.title,
            author=candidate.author,
            subtitle=candidate.subtitle,
            confidence=confidence,
        )
        return ValidatedBook(candidate=adjusted, validation=best.result, status=STATUS_VALIDATED, match_score=score)

    error = "; ".join(e for e in errors if e) or None
    if best is not None and not error:
        error = f"best match score {score:.2f} below threshold {cfg.accept_threshold:.2f}"
    kept = BookCandidate(
        title=candidate.title,
        author=candidate.author,
        subtitle=candidate.subtitle,
        confidence=confidence,
    )
    return ValidatedBook(
        candidate=kept,
        validation=ValidationResult(validated=False, error=error),
        status=STATUS_UNVALIDATED,
        match_score=score,
    )
