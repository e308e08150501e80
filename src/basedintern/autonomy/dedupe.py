from __future__ import annotations

import hashlib
import random
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .migrations import LIST_FIELD_MAX


STRIP_QUERY_KEYS = {
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "utm_id",
    "gclid",
    "fbclid",
    "ref",
    "source",
    "campaign",
    "mc_cid",
    "mc_eid",
}

_URL_RE = re.compile(r"https?://\S+")
_PUNCT_RE = re.compile(r"[.,!?;:'\"()\[\]{}]")
_SPACE_RE = re.compile(r"\s+")


def remember(items: Sequence[Any], value: Any, max_items: int) -> List[Any]:
    """Append ``value`` as the newest entry and evict the oldest beyond ``max_items``.

    Order is insertion order: re-inserting a value that is already present
    moves it to the newest slot instead of keeping a duplicate.
    """
    out = [item for item in items if item != value]
    out.append(value)
    if max_items <= 0:
        return []
    return out[-max_items:]


def remember_in_state(state: Dict[str, Any], field: str, value: Any) -> Dict[str, Any]:
    raw = state.get(field, [])
    if not isinstance(raw, list):
        raw = []
    out = dict(state)
    out[field] = remember(raw, value, LIST_FIELD_MAX[field])
    return out


def seen_in_state(state: Dict[str, Any], field: str, value: Any) -> bool:
    raw = state.get(field, [])
    if not isinstance(raw, list):
        return False
    return value in raw


def normalize_for_fingerprint(text: str) -> str:
    lowered = _URL_RE.sub("", text.lower())
    lowered = _PUNCT_RE.sub(" ", lowered)
    return _SPACE_RE.sub(" ", lowered).strip()


def fingerprint_content(text: str) -> str:
    return hashlib.sha256(normalize_for_fingerprint(text).encode("utf-8")).hexdigest()


def canonicalize_url(raw_url: str) -> str:
    try:
        parts = urlsplit(raw_url.strip())
    except ValueError:
        return raw_url.strip()
    if not parts.scheme or not parts.netloc:
        return raw_url.strip()
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in STRIP_QUERY_KEYS and not key.lower().startswith("utm_")
    ]
    query.sort(key=lambda kv: kv[0])
    path = parts.path
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return urlunsplit((parts.scheme, parts.netloc.lower(), path or "/", urlencode(query), ""))


def fingerprint_news_item(source: str, title: str, url: str) -> str:
    normalized_title = _SPACE_RE.sub(" ", title).strip().lower()
    payload = f"{source.strip().lower()}|{normalized_title}|{canonicalize_url(url)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def calculate_similarity(text1: str, text2: str) -> float:
    fp1 = normalize_for_fingerprint(text1)
    fp2 = normalize_for_fingerprint(text2)
    if fp1 == fp2:
        return 1.0
    words1 = set(fp1.split())
    words2 = set(fp2.split())
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def is_too_similar(content: str, recent_texts: Sequence[str], threshold: float = 0.75) -> bool:
    for recent in recent_texts:
        if calculate_similarity(content, recent) >= threshold:
            return True
    return False


def pick_non_recent_index(
    total: int,
    recent: Sequence[int],
    lookback: int = 3,
    rng: Optional[random.Random] = None,
) -> int:
    if total <= 0:
        raise ValueError("total must be positive")
    rng = rng or random.Random()
    window = set(recent[-lookback:]) if lookback > 0 else set()
    available = [i for i in range(total) if i not in window]
    if available:
        return rng.choice(available)
    return rng.randrange(total)


def pick_rotating_index(total: int, last_index: Optional[int], rng: Optional[random.Random] = None) -> int:
    """Pick a random index different from ``last_index`` whenever more than one exists."""
    if total <= 0:
        raise ValueError("total must be positive")
    rng = rng or random.Random()
    if total == 1 or last_index is None or not 0 <= last_index < total:
        return rng.randrange(total)
    choice = rng.randrange(total - 1)
    return choice if choice < last_index else choice + 1


ROTATION_INDEX_FIELDS = {"lastHookIndex", "lastCtaIndex"}
RECENT_TEMPLATES_PER_CATEGORY = 10


def rotate_in_state(
    state: Dict[str, Any],
    field: str,
    total: int,
    rng: Optional[random.Random] = None,
) -> Tuple[int, Dict[str, Any]]:
    """Pick the next hook/CTA index and return it with the state that remembers it."""
    if field not in ROTATION_INDEX_FIELDS:
        raise ValueError(f"Unknown rotation field: {field}")
    last = state.get(field)
    if isinstance(last, bool) or not isinstance(last, int):
        last = None
    index = pick_rotating_index(total, last, rng=rng)
    out = dict(state)
    out[field] = index
    return index, out


def pick_template_in_state(
    state: Dict[str, Any],
    category: str,
    total: int,
    lookback: int = 2,
    rng: Optional[random.Random] = None,
) -> Tuple[int, Dict[str, Any]]:
    """Pick a template not used recently in ``category`` and record it under recentTemplateIndices."""
    per_category = state.get("recentTemplateIndices")
    if not isinstance(per_category, dict):
        per_category = {}
    recent = per_category.get(category)
    if not isinstance(recent, list):
        recent = []
    index = pick_non_recent_index(total, recent, lookback=lookback, rng=rng)
    updated = dict(per_category)
    updated[category] = remember(recent, index, RECENT_TEMPLATES_PER_CATEGORY)
    out = dict(state)
    out["recentTemplateIndices"] = updated
    return index, out
