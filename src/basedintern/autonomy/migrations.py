"""Schema history of the persisted agent state document.

Every release that adds state fields appends one step to ``MIGRATIONS``.
A step maps a document of version ``n`` to version ``n + 1`` by adding the
fields introduced in ``n + 1`` when they are absent. Steps never delete or
overwrite a key, so running them on an already-migrated document is a no-op.

``schemaVersion`` itself is left alone here; the store stamps the current
version when the document is saved.
"""

from __future__ import annotations

import copy
import math
from typing import Any, Callable, Dict, List, Optional

CURRENT_SCHEMA_VERSION = 13

# Fields present in the very first, unversioned state file.
V1_FIELDS: Dict[str, Any] = {
    "lastExecutedTradeAtMs": None,
    "dayKey": None,
    "tradesExecutedToday": 0,
    "xApiFailureCount": 0,
    "xApiCircuitBreakerDisabledUntilMs": None,
    "lastPostedReceiptFingerprint": None,
}

V2_FIELDS: Dict[str, Any] = {
    "lastSeenNonce": None,
    "lastSeenEthWei": None,
    "lastSeenTokenRaw": None,
    "lastSeenBlockNumber": None,
    "lastPostDayUtc": None,
}

V3_FIELDS: Dict[str, Any] = {
    "newsLastPostMs": None,
    "newsDailyCount": 0,
    "newsLastPostDayUtc": None,
    "seenNewsFingerprints": [],
    "lastPostedNewsFingerprint": None,
}

V4_FIELDS: Dict[str, Any] = {
    "lastSeenMentionId": None,
    "repliedMentionFingerprints": [],
    "lastSuccessfulMentionPollMs": None,
    "xMentionsFailureCount": 0,
    "xMentionsCircuitBreakerDisabledUntilMs": None,
    "xMentionsLastReplyMs": None,
}

V5_FIELDS: Dict[str, Any] = {
    "moltbookLastPostMs": None,
    "lastPostedMoltbookReceiptFingerprint": None,
    "moltbookFailureCount": 0,
    "moltbookCircuitBreakerDisabledUntilMs": None,
}

V6_FIELDS: Dict[str, Any] = {
    "moltbookDiscussionPostsToday": 0,
    "moltbookDiscussionLastPostMs": None,
    "moltbookDiscussionLastDayUtc": None,
    "postedDiscussionTopics": [],
}

V7_FIELDS: Dict[str, Any] = {
    "repliedMoltbookCommentIds": [],
    "moltbookAnsweredChallengeIds": [],
}

V8_FIELDS: Dict[str, Any] = {
    "openclawAnnouncementPosted": False,
    "openclawAnnouncementPostedAt": None,
}

V9_FIELDS: Dict[str, Any] = {
    "lpCampaignPostsToday": 0,
    "lpCampaignLastPostMs": None,
    "lpCampaignLastDayUtc": None,
    "lpCampaignLaunchPosted": False,
    "lpCampaignRecentTemplates": [],
}

V10_FIELDS: Dict[str, Any] = {
    "miniAppCampaignLaunchPosted": False,
    "lastHookIndex": None,
    "lastCtaIndex": None,
    "recentTemplateIndices": {},
}

V11_FIELDS: Dict[str, Any] = {
    "chainPostFailureCount": 0,
    "chainPostCircuitBreakerDisabledUntilMs": None,
}

V12_FIELDS: Dict[str, Any] = {
    "lpLastTickMs": None,
    "lpWethPoolTvlWei": None,
    "lpUsdcPoolTvlWei": None,
    "lpLastAddAtMs": None,
}

V13_FIELDS: Dict[str, Any] = {
    "tickInFlightSinceMs": None,
    "lastTickCompletedAtMs": None,
    "lastTxNonce": None,
    "featureLastActionAtMs": {},
}

FIELDS_BY_VERSION: Dict[int, Dict[str, Any]] = {
    1: V1_FIELDS,
    2: V2_FIELDS,
    3: V3_FIELDS,
    4: V4_FIELDS,
    5: V5_FIELDS,
    6: V6_FIELDS,
    7: V7_FIELDS,
    8: V8_FIELDS,
    9: V9_FIELDS,
    10: V10_FIELDS,
    11: V11_FIELDS,
    12: V12_FIELDS,
    13: V13_FIELDS,
}

# Bounded dedupe lists; the newest entries are kept.
LIST_FIELD_MAX: Dict[str, int] = {
    "seenNewsFingerprints": 200,
    "repliedMentionFingerprints": 200,
    "postedDiscussionTopics": 50,
    "repliedMoltbookCommentIds": 100,
    "moltbookAnsweredChallengeIds": 50,
    "lpCampaignRecentTemplates": 10,
}

DICT_FIELDS = {"recentTemplateIndices", "featureLastActionAtMs"}


def _add_absent(doc: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    for key, default in fields.items():
        if key not in out:
            out[key] = copy.deepcopy(default)
    return out


def _v1_to_v2(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V2_FIELDS)


def _v2_to_v3(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V3_FIELDS)


def _v3_to_v4(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V4_FIELDS)


def _v4_to_v5(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V5_FIELDS)


def _v5_to_v6(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V6_FIELDS)


def _v6_to_v7(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V7_FIELDS)


def _v7_to_v8(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V8_FIELDS)


def _v8_to_v9(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V9_FIELDS)


def _v9_to_v10(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V10_FIELDS)


def _v10_to_v11(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V11_FIELDS)


def _v11_to_v12(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V12_FIELDS)


def _v12_to_v13(doc: Dict[str, Any]) -> Dict[str, Any]:
    return _add_absent(doc, V13_FIELDS)


# Keyed by source version.
MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: _v1_to_v2,
    2: _v2_to_v3,
    3: _v3_to_v4,
    4: _v4_to_v5,
    5: _v5_to_v6,
    6: _v6_to_v7,
    7: _v7_to_v8,
    8: _v8_to_v9,
    9: _v9_to_v10,
    10: _v10_to_v11,
    11: _v11_to_v12,
    12: _v12_to_v13,
}


def all_field_defaults() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for version in sorted(FIELDS_BY_VERSION):
        out.update(FIELDS_BY_VERSION[version])
    return out


def document_version(raw: Dict[str, Any]) -> int:
    value = raw.get("schemaVersion")
    # bool is an int subclass; a hand-edited `true` is not a version.
    if isinstance(value, int) and not isinstance(value, bool) and value >= 1:
        return value
    return 1


def pending_steps(raw: Dict[str, Any]) -> List[int]:
    start = document_version(raw)
    return [version for version in range(start, CURRENT_SCHEMA_VERSION) if version in MIGRATIONS]


def migrate_state(raw: Dict[str, Any]) -> Dict[str, Any]:
    doc = copy.deepcopy(raw)
    for version in pending_steps(raw):
        doc = MIGRATIONS[version](doc)
    return doc


def default_state(day_key: str) -> Dict[str, Any]:
    doc = copy.deepcopy(all_field_defaults())
    doc["dayKey"] = day_key
    doc["schemaVersion"] = CURRENT_SCHEMA_VERSION
    return doc


def timestamp_ms(value: Any) -> Optional[int]:
    """Read a stored millisecond timestamp; anything but a finite number is None."""
    # bool is an int subclass; NaN and Infinity survive json.loads as floats.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def normalize_state(doc: Dict[str, Any]) -> Dict[str, Any]:
    defaults = all_field_defaults()
    out = dict(doc)
    for key, value in doc.items():
        if isinstance(value, float) and not math.isfinite(value):
            out[key] = copy.deepcopy(defaults.get(key))
    for key, max_items in LIST_FIELD_MAX.items():
        value = out.get(key)
        if not isinstance(value, list):
            out[key] = []
        elif len(value) > max_items:
            out[key] = value[-max_items:]
    for key in DICT_FIELDS:
        if not isinstance(out.get(key), dict):
            out[key] = {}
    return _add_absent(out, defaults)
