"""
Title Heuristics

Pure functions that read structure out of free-text playlist and video
titles: whether a playlist is worth ingesting, the canonical anime title
used as the catalog identity key, the episode ordinal, and the subtitle
language. No I/O; every function is deterministic.
"""
import re
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Substrings that mark a playlist as promotional noise (matched case-insensitively)
IRRELEVANT_KEYWORDS = ["trailer", "pv", "ost", "theme song", "clip", "teaser"]

# Substrings that suggest a playlist of full episodes. Informational only:
# a title without any of them is still accepted.
RELEVANT_KEYWORDS = ["episode", "full", "season", "s1", "s2", "s3", "s4"]

# Markers for Indonesian subtitled releases
INDONESIAN_KEYWORDS = ["sub indo", "indonesia", "[id]"]

LANGUAGE_INDONESIAN = "id"
LANGUAGE_ENGLISH = "en"

_DECORATION_PATTERN = re.compile(
    r"\[.*?\]"            # [Sub Indo], [ID], [English Sub]
    r"|\(.*?\)"           # (2023), (Uncut)
    r"|\bseason\s*\d+"
    r"|\bs\d+\b"
    r"|\bcour\s*\d+"
    r"|\bpart\s*\d+"
    r"|\bfull episodes?\b"
    r"|\bsub indo\b",
    re.IGNORECASE,
)

# Separators left dangling at either end once decorations are removed
_EDGE_SEPARATORS = " \t-–—:|/,"

_EPISODE_PATTERN = re.compile(r"(?:episode|ep\.?|#)\s*(\d{1,3})", re.IGNORECASE)


def is_relevant(raw_title: str) -> bool:
    """
    Decide whether a playlist should be ingested.

    Titles containing any blocklisted keyword are rejected; everything
    else is accepted, whether or not it carries an episode-like keyword.
    """
    lower_title = raw_title.lower()
    for keyword in IRRELEVANT_KEYWORDS:
        if keyword in lower_title:
            return False

    if not any(keyword in lower_title for keyword in RELEVANT_KEYWORDS):
        logger.debug(f"Accepting playlist without episode keywords: {raw_title}")
    return True


def extract_canonical_title(raw_title: str) -> str:
    """
    Strip decorations from a playlist title to get the catalog identity key.

    Removes bracketed and parenthesized segments, season/cour/part markers,
    and the phrases "full episode" and "sub indo", then trims whitespace and
    dangling separators and collapses inner whitespace.

    >>> extract_canonical_title("Attack on Titan [Sub Indo] Season 2")
    'Attack on Titan'
    """
    title = _DECORATION_PATTERN.sub(" ", raw_title)
    title = " ".join(title.split())
    return title.strip(_EDGE_SEPARATORS)


def extract_episode_number(raw_title: str) -> Optional[int]:
    """Return the first "Episode N" / "Ep N" / "#N" ordinal in a video title, if any."""
    match = _EPISODE_PATTERN.search(raw_title)
    if match:
        return int(match.group(1))
    return None


def extract_language(raw_title: str) -> str:
    """Classify a playlist as Indonesian ("id") or English ("en") subtitled."""
    lower_title = raw_title.lower()
    for keyword in INDONESIAN_KEYWORDS:
        if keyword in lower_title:
            return LANGUAGE_INDONESIAN
    return LANGUAGE_ENGLISH
