"""Message quality scoring.

Scores a message's narrative density before any model call is spent on it.
Low-quality messages (short OOC, "okay", reactions) are skipped for
summarization and fact extraction.

Score range 0-10:
    0-2   skip      trivial ("ok", "lol", OOC chatter)
    3-4   low       short dialogue, simple actions
    5-6   medium    standard RP exchange
    7-8   high      combat, discovery, plot advancement
    9-10  critical  major reveals, character death, world-changing events
"""

from __future__ import annotations

import re
from typing import Iterable, Protocol

from lorekeeper.models import ChunkScore, QualityScore

MIN_QUALITY_SCORE = 3
MIN_CHUNK_SIZE = 6
MAX_CHUNK_SIZE = 15

OOC_PATTERNS = [
    re.compile(r"^\s*\(\(.*\)\)\s*$", re.DOTALL),  # ((whole message in double parens))
    re.compile(r"^\s*\(.*\)\s*$", re.DOTALL),  # (fully parenthesized)
    re.compile(r"^\s*\[ooc\b", re.IGNORECASE),  # [OOC: ...]
    re.compile(r"^\s*ooc\s*:", re.IGNORECASE),  # OOC: ...
    re.compile(r"^\s*//\s"),  # // comment style
]

TRIVIAL_PATTERNS = [
    re.compile(
        r"^(ok|okay|k|yes|no|yeah|nah|sure|fine|alright|yep|nope|mhm|hmm|hm|ah|oh|"
        r"lol|lmao|haha|heh|xd|gg|ty|thx|thanks|oui|non|ouais|mouais|d'accord)\s*[.!?]*$",
        re.IGNORECASE,
    ),
    re.compile(r"^(:\)|;\)|:D|<3|❤️|😊|👍|🤣|😂|💀)\s*$"),
    re.compile(r"^[^\w\s]+$"),  # emoji or punctuation only
]

ACTION_PATTERNS = [
    r"\b(attack|fight|cast|dodge|block|parry|slash|stab|shoot|throw|grab|push|pull|kick|punch)\w*",
    r"\b(attaque|frappe|lance|esquive|pare|tranche|poignarde|tire|saisit|pousse|attrape)\w*",
    r"\b(discover|find|reveal|uncover|explore|investigate|examine|search|open|unlock|solve)\w*",
    r"\b(découvre|trouve|révèle|explore|examine|cherche|ouvre|déverrouille|résout)\w*",
    r"\b(say|whisper|shout|scream|murmur|declare|announce|confess|plead|promise|threaten)\w*",
    r"\b(dit|murmure|crie|déclare|annonce|avoue|supplie|promet|menace)\w*",
    r"\b(walk|run|climb|swim|fly|teleport|travel|arrive|enter|leave|escape|flee)\w*",
    r"\b(marche|court|grimpe|nage|vole|voyage|arrive|entre|part|s'échappe|fuit)\w*",
]
ACTION_PATTERNS = [re.compile(p, re.IGNORECASE) for p in ACTION_PATTERNS]

HIGH_IMPORTANCE_PATTERNS = [
    r"\b(kill|die|death|betray|destroy|save|rescue|reveal|secret|transform)\w*",
    r"\b(tuer|mourir|mort|trahir|détruire|sauver|révéler|secret|transformer)\w*",
    r"\b(marriage|wedding|pregnant|born|curse|bless|enchant|resurrect|sacrifice)\w*",
    r"\b(mariage|enceinte|né|malédiction|bénir|enchanter|ressusciter|sacrifice)\w*",
    r"\b(war|battle|siege|invasion|conquest|rebellion|revolution|treaty|alliance)\w*",
    r"\b(guerre|bataille|siège|invasion|conquête|rébellion|révolution|traité)\w*",
]
HIGH_IMPORTANCE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in HIGH_IMPORTANCE_PATTERNS]

RP_FORMAT_PATTERNS = [
    re.compile(r"\*[^*]+\*"),  # *action*
    re.compile(r"\".+\""),  # "dialogue"
    re.compile(r"«.+»"),  # «dialogue»
    re.compile("“.+”"),  # smart quotes
]

LENGTH_THRESHOLDS = (15, 30, 60, 120, 250, 500)


class HasContent(Protocol):
    role: str
    content: str


def _skip(score: float, reason: str, word_count: int) -> QualityScore:
    return QualityScore(
        score=score, label="skip", reason=reason, word_count=word_count, action_density=0.0
    )


def _label_for(score: float) -> tuple[str, str]:
    if score <= 2:
        return "skip", "Below quality threshold"
    if score <= 4:
        return "low", "Light content"
    if score <= 6:
        return "medium", "Standard RP exchange"
    if score <= 8:
        return "high", "Dense narrative content"
    return "critical", "Major story event"


def score_message_quality(role: str, content: str) -> QualityScore:
    """Score a single message's narrative density.

    Args:
        role: Message role (scoring is currently role-independent)
        content: Message text

    Returns:
        QualityScore with score, label, word count and action density
    """
    content = (content or "").strip()
    word_count = len(content.split())

    if word_count == 0:
        return _skip(0, "Empty message", 0)

    if any(p.search(content) for p in OOC_PATTERNS):
        return _skip(1, "OOC content", word_count)

    if any(p.search(content) for p in TRIVIAL_PATTERNS):
        return _skip(1, "Trivial response", word_count)

    if word_count < 5 and not any(p.search(content) for p in RP_FORMAT_PATTERNS):
        return _skip(2, "Too short, no RP content", word_count)

    score = 3.0

    for threshold in LENGTH_THRESHOLDS:
        if word_count >= threshold:
            score += 0.5

    format_hits = sum(1 for p in RP_FORMAT_PATTERNS if p.search(content))
    score += min(format_hits * 0.3, 0.9)

    sentences = [s for s in re.split(r"[.!?]+", content) if len(s.strip()) > 3]
    sentence_count = max(len(sentences), 1)
    action_count = sum(len(p.findall(content)) for p in ACTION_PATTERNS)
    action_density = action_count / sentence_count
    score += min(action_density * 0.5, 1.5)

    high_hits = sum(1 for p in HIGH_IMPORTANCE_PATTERNS if p.search(content))
    score += min(high_hits * 0.7, 2.1)

    score = max(0.0, min(10.0, round(score * 10) / 10))
    label, reason = _label_for(score)

    return QualityScore(
        score=score,
        label=label,
        reason=reason,
        word_count=word_count,
        action_density=action_density,
    )


def score_message_chunk(messages: Iterable[HasContent]) -> ChunkScore:
    """Score a chunk of messages and decide whether it is worth an API call.

    A chunk qualifies when at least 30% of its messages score >= 3, it holds
    at least 50 words, and the mean score of its quality messages is >= 3.
    """
    messages = list(messages)
    scores = [score_message_quality(m.role, m.content) for m in messages]
    quality = [s for s in scores if s.score >= MIN_QUALITY_SCORE]
    total_words = sum(s.word_count for s in scores)

    average = sum(s.score for s in quality) / len(quality) if quality else 0.0
    max_score = max((s.score for s in scores), default=0.0)
    quality_ratio = len(quality) / max(len(messages), 1)

    return ChunkScore(
        average_score=average,
        max_score=max_score,
        total_words=total_words,
        quality_messages=len(quality),
        skip_messages=len(scores) - len(quality),
        scores=scores,
        should_summarize=(
            quality_ratio >= 0.3 and total_words >= 50 and average >= MIN_QUALITY_SCORE
        ),
    )


def filter_quality_messages(messages: Iterable[HasContent], min_score: float = MIN_QUALITY_SCORE):
    """Drop trivial and OOC messages before feeding them to a summarizer."""
    return [m for m in messages if score_message_quality(m.role, m.content).score >= min_score]


def get_adaptive_chunk_size(recent: Iterable[HasContent], base: int = 10) -> int:
    """Pick a summarization chunk size from the density of recent messages.

    Dense content shrinks the chunk (summarize more often); sparse content
    grows it. The result always lies in [6, 15].
    """
    recent = list(recent)
    if len(recent) < 3:
        return base

    scores = [score_message_quality(m.role, m.content) for m in recent]
    quality = [s for s in scores if s.score >= MIN_QUALITY_SCORE]
    if not quality:
        return min(base + 5, MAX_CHUNK_SIZE)

    avg_score = sum(s.score for s in quality) / len(quality)
    avg_words = sum(s.word_count for s in scores) / len(recent)

    if avg_score >= 7 and avg_words >= 100:
        size = 6
    elif avg_score >= 6 and avg_words >= 60:
        size = 8
    elif avg_score <= 3:
        size = 15
    elif avg_score <= 4 or avg_words <= 20:
        size = 13
    else:
        size = base

    return max(MIN_CHUNK_SIZE, min(MAX_CHUNK_SIZE, size))
