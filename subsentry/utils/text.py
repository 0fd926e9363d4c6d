# -*- coding: utf-8 -*-
"""
Text utilities shared across services/models.

normalize_service_name: lowercases, strips diacritics, punctuation and all
whitespace so that vendor spellings collapse onto one exact-match join key.
Examples:
  "Netflix"             -> "netflix"
  "  netflix "          -> "netflix"
  "Disney+ Hotstar"     -> "disneyhotstar"
  "Spotify AB."         -> "spotifyab"
  "Café—Gamma"          -> "cafegamma"

This is NOT the duplicate detector; fuzzy matching lives in
subsentry.services.normalization.similarity_score.
"""
from __future__ import annotations
import re
import unicodedata
from typing import Optional

_WS_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)


def _strip_diacritics(s: str) -> str:
    # NFKD then drop combining marks
    return "".join(
        ch for ch in unicodedata.normalize("NFKD", s) if not unicodedata.combining(ch)
    )


def normalize_service_name(val: Optional[str]) -> str:
    """
    Normalize a service/vendor name into a join key for exact-match lookups.

    Process:
    1. Strip, lowercase, remove diacritics
    2. Drop punctuation (including underscores)
    3. Drop all whitespace

    Empty or missing input yields "".
    """
    if not val:
        return ""
    s = val.strip().lower()
    s = _strip_diacritics(s)
    s = _PUNCT_RE.sub("", s).replace("_", "")
    return _WS_RE.sub("", s)


def clean_display(val: Optional[str]) -> str:
    """Trim and collapse internal whitespace; keeps the user's casing."""
    if not val:
        return ""
    return _WS_RE.sub(" ", val).strip()
