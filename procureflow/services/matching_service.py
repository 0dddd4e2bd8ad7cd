from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable

from rapidfuzz import fuzz

from procureflow.models import MatchConfidence

# Trailing tokens only; longest first so "pte ltd" is removed before "ltd".
LEGAL_SUFFIXES = (
    'private limited',
    'sdn bhd',
    'pte ltd',
    'incorporated',
    'corporation',
    'company',
    'limited',
    'gmbh',
    'corp',
    'bhd',
    'inc',
    'llc',
    'ltd',
    'plc',
    'pte',
    'pvt',
    'co',
)

_PUNCTUATION_RE = re.compile(r'[^\w\s]')
_WHITESPACE_RE = re.compile(r'\s+')
_SUFFIX_TOKENS = tuple(suffix.split(' ') for suffix in LEGAL_SUFFIXES)

AUTO_ACCEPT_TIERS = frozenset({MatchConfidence.EXACT, MatchConfidence.HIGH})


@dataclass(frozen=True)
class CandidateName:
    id: int
    name: str


@dataclass(frozen=True)
class MatchThresholds:
    medium: float = 85.0
    low: float = 60.0


@dataclass(frozen=True)
class MatchResult:
    confidence: MatchConfidence
    counterparty_id: int | None = None
    matched_name: str | None = None
    score: float = 0.0


NO_MATCH = MatchResult(confidence=MatchConfidence.NONE)


def _casefold(value: str) -> str:
    return unicodedata.normalize('NFKC', value).casefold().strip()


def _strip_legal_suffixes(tokens: list[str]) -> list[str]:
    # The first token always survives, so "Company" alone stays "company".
    while True:
        for suffix in _SUFFIX_TOKENS:
            size = len(suffix)
            if len(tokens) > size and tokens[-size:] == suffix:
                tokens = tokens[:-size]
                break
        else:
            return tokens


def normalize_name(value: str) -> str:
    """Lower-case, drop punctuation, collapse whitespace and strip trailing legal-entity suffixes."""
    cleaned = _PUNCTUATION_RE.sub(' ', _casefold(value))
    cleaned = _WHITESPACE_RE.sub(' ', cleaned).strip()
    return ' '.join(_strip_legal_suffixes(cleaned.split(' ')))


def similarity(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    return max(fuzz.ratio(left, right), fuzz.token_sort_ratio(left, right))


def _pick(matches: list[tuple[float, str, CandidateName]]) -> tuple[float, CandidateName]:
    matches.sort(key=lambda item: (-item[0], item[1], item[2].id))
    score, _, candidate = matches[0]
    return score, candidate


def match_counterparty(
    name: str | None,
    candidates: Iterable[CandidateName],
    thresholds: MatchThresholds = MatchThresholds(),
) -> MatchResult:
    pool = list(candidates)
    if not name or not name.strip() or not pool:
        return NO_MATCH

    folded = _casefold(name)
    exact = [(100.0, _casefold(c.name), c) for c in pool if _casefold(c.name) == folded]
    if exact:
        score, candidate = _pick(exact)
        return MatchResult(MatchConfidence.EXACT, candidate.id, candidate.name, score)

    normalized = normalize_name(name)
    if not normalized:
        return NO_MATCH

    normalized_pool = [(normalize_name(c.name), c) for c in pool]
    same = [(100.0, norm, c) for norm, c in normalized_pool if norm == normalized]
    if same:
        score, candidate = _pick(same)
        return MatchResult(MatchConfidence.HIGH, candidate.id, candidate.name, score)

    scored = [(similarity(normalized, norm), norm, c) for norm, c in normalized_pool]
    scored = [item for item in scored if item[0] >= thresholds.low]
    if not scored:
        return NO_MATCH

    score, candidate = _pick(scored)
    confidence = MatchConfidence.MEDIUM if score >= thresholds.medium else MatchConfidence.LOW
    return MatchResult(confidence, candidate.id, candidate.name, round(score, 2))


def needs_review(confidence: MatchConfidence) -> bool:
    return confidence not in AUTO_ACCEPT_TIERS
