from __future__ import annotations

import copy
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .dedupe import remember_in_state
from .logging_utils import get_logger
from .migrations import (
    CURRENT_SCHEMA_VERSION,
    default_state,
    document_version,
    migrate_state,
    normalize_state,
)
from .storage import (
    READ_NOT_FOUND,
    StateDirectoryError,
    backup_path,
    ensure_directory,
    read_document,
    write_document_atomic,
)


# counter name -> (UTC day key field, count field)
DAY_COUNTERS: Dict[str, Tuple[str, str]] = {
    "trades": ("dayKey", "tradesExecutedToday"),
    "news": ("newsLastPostDayUtc", "newsDailyCount"),
    "discussion": ("moltbookDiscussionLastDayUtc", "moltbookDiscussionPostsToday"),
    "campaign": ("lpCampaignLastDayUtc", "lpCampaignPostsToday"),
}

CHAIN_SNAPSHOT_FIELDS = ("lastSeenNonce", "lastSeenEthWei", "lastSeenTokenRaw", "lastSeenBlockNumber")

DEFAULT_BACKUP_EVERY = 10


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_day_key(at: datetime) -> str:
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return at.astimezone(timezone.utc).date().isoformat()


def to_ms(at: datetime) -> int:
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return int(at.timestamp() * 1000)


def now_ms() -> int:
    return to_ms(utc_now())


def copy_state(state: Dict[str, Any]) -> Dict[str, Any]:
    return copy.deepcopy(state)


class StateStore:
    """Loads and saves the single agent state document.

    ``load`` never raises for a missing, empty or corrupt file. ``save``
    writes atomically and refreshes the ``.bak`` sibling every
    ``backup_every`` successful saves made by this process.
    """

    def __init__(
        self,
        path: Path,
        backup_every: int = DEFAULT_BACKUP_EVERY,
        logger: Optional[logging.Logger] = None,
    ):
        self.path = Path(path)
        self.backup_path = backup_path(self.path)
        self.backup_every = max(1, int(backup_every))
        self.logger = logger or get_logger()
        self.save_count = 0

    def load(self, now: Optional[datetime] = None, persist: bool = True) -> Dict[str, Any]:
        at = now or utc_now()
        result = read_document(self.path)
        if result.ok:
            return self._prepare(result.data or {}, at)

        if result.kind == READ_NOT_FOUND:
            self.logger.info("No state file path=%s; creating defaults", self.path)
        else:
            self.logger.warning(
                "State file unreadable path=%s kind=%s error=%s; trying backup",
                self.path,
                result.kind,
                result.error,
            )
            backup = read_document(self.backup_path)
            if backup.ok:
                self.logger.warning("Recovered state from backup path=%s", self.backup_path)
                state = self._prepare(backup.data or {}, at)
                if persist:
                    self.save(state)
                return state
            self.logger.error(
                "Backup unusable path=%s kind=%s; falling back to default state",
                self.backup_path,
                backup.kind,
            )

        state = roll_day_counters(default_state(utc_day_key(at)), at)
        if persist:
            self.save(state)
        return state

    def _prepare(self, raw: Dict[str, Any], at: datetime) -> Dict[str, Any]:
        version = document_version(raw)
        if version > CURRENT_SCHEMA_VERSION:
            self.logger.warning(
                "State schema newer than this release version=%s current=%s; keeping fields as-is",
                version,
                CURRENT_SCHEMA_VERSION,
            )
        elif version < CURRENT_SCHEMA_VERSION:
            self.logger.info("Migrating state from_version=%s to_version=%s", version, CURRENT_SCHEMA_VERSION)
        state = normalize_state(migrate_state(raw))
        return roll_day_counters(state, at)

    def save(self, state: Dict[str, Any]) -> bool:
        doc = dict(state)
        doc["schemaVersion"] = CURRENT_SCHEMA_VERSION
        try:
            ensure_directory(self.path)
        except StateDirectoryError:
            if self.save_count == 0:
                raise
            self.logger.error("State directory unavailable path=%s", self.path.parent, exc_info=True)
            return False
        try:
            write_document_atomic(self.path, doc)
        except (OSError, TypeError, ValueError) as e:
            self.logger.error("State save failed path=%s error=%s", self.path, e)
            return False

        self.save_count += 1
        if self.save_count % self.backup_every == 0:
            self._refresh_backup()
        return True

    def _refresh_backup(self) -> None:
        try:
            shutil.copyfile(self.path, self.backup_path)
        except OSError as e:
            self.logger.warning("State backup failed path=%s error=%s", self.backup_path, e)
            return
        self.logger.debug("State backup refreshed path=%s saves=%s", self.backup_path, self.save_count)


def roll_day_counters(state: Dict[str, Any], at: datetime) -> Dict[str, Any]:
    today = utc_day_key(at)
    out = dict(state)
    for day_field, count_field in DAY_COUNTERS.values():
        if out.get(day_field) != today:
            out[day_field] = today
            out[count_field] = 0
    return out


def day_count(state: Dict[str, Any], name: str, at: datetime) -> int:
    day_field, count_field = DAY_COUNTERS[name]
    if state.get(day_field) != utc_day_key(at):
        return 0
    value = state.get(count_field, 0)
    return value if isinstance(value, int) else 0


def increment_day_counter(state: Dict[str, Any], name: str, at: datetime) -> Dict[str, Any]:
    day_field, count_field = DAY_COUNTERS[name]
    out = copy_state(state)
    out[count_field] = day_count(state, name, at) + 1
    out[day_field] = utc_day_key(at)
    return out


def record_trade(state: Dict[str, Any], at: datetime) -> Dict[str, Any]:
    out = increment_day_counter(state, "trades", at)
    out["lastExecutedTradeAtMs"] = to_ms(at)
    return out


def record_news_post(state: Dict[str, Any], at: datetime, fingerprint: str) -> Dict[str, Any]:
    out = increment_day_counter(state, "news", at)
    out["newsLastPostMs"] = to_ms(at)
    out["lastPostedNewsFingerprint"] = fingerprint
    return remember_in_state(out, "seenNewsFingerprints", fingerprint)


def record_discussion_post(state: Dict[str, Any], at: datetime, topic: str) -> Dict[str, Any]:
    out = increment_day_counter(state, "discussion", at)
    out["moltbookDiscussionLastPostMs"] = to_ms(at)
    return remember_in_state(out, "postedDiscussionTopics", topic)


def record_campaign_post(state: Dict[str, Any], at: datetime, template_index: int) -> Dict[str, Any]:
    out = increment_day_counter(state, "campaign", at)
    out["lpCampaignLastPostMs"] = to_ms(at)
    return remember_in_state(out, "lpCampaignRecentTemplates", template_index)


def record_mention_reply(state: Dict[str, Any], at: datetime, fingerprint: str, mention_id: str) -> Dict[str, Any]:
    out = copy_state(state)
    out["xMentionsLastReplyMs"] = to_ms(at)
    out["lastSeenMentionId"] = mention_id
    return remember_in_state(out, "repliedMentionFingerprints", fingerprint)


def record_comment_reply(state: Dict[str, Any], comment_id: str) -> Dict[str, Any]:
    return remember_in_state(copy_state(state), "repliedMoltbookCommentIds", comment_id)


# platform -> (fingerprint field, last post field)
RECEIPT_FIELDS: Dict[str, Tuple[str, Optional[str]]] = {
    "x": ("lastPostedReceiptFingerprint", None),
    "moltbook": ("lastPostedMoltbookReceiptFingerprint", "moltbookLastPostMs"),
}


def is_duplicate_receipt(state: Dict[str, Any], platform: str, fingerprint: str) -> bool:
    fingerprint_field, _ = RECEIPT_FIELDS[platform]
    return state.get(fingerprint_field) == fingerprint


def record_receipt_posted(state: Dict[str, Any], platform: str, fingerprint: str, at: datetime) -> Dict[str, Any]:
    fingerprint_field, last_post_field = RECEIPT_FIELDS[platform]
    out = copy_state(state)
    out[fingerprint_field] = fingerprint
    out["lastPostDayUtc"] = utc_day_key(at)
    if last_post_field:
        out[last_post_field] = to_ms(at)
    return out


def apply_chain_snapshot(state: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Store observed wallet/chain values; ``None`` keeps the previous observation."""
    out = copy_state(state)
    for key in CHAIN_SNAPSHOT_FIELDS:
        value = patch.get(key)
        if value is not None:
            out[key] = value
    return out


def record_lp_tick(
    state: Dict[str, Any],
    at: datetime,
    weth_pool_tvl_wei: Optional[int],
    usdc_pool_tvl_wei: Optional[int],
) -> Dict[str, Any]:
    out = copy_state(state)
    out["lpLastTickMs"] = to_ms(at)
    out["lpWethPoolTvlWei"] = str(weth_pool_tvl_wei) if weth_pool_tvl_wei is not None else None
    out["lpUsdcPoolTvlWei"] = str(usdc_pool_tvl_wei) if usdc_pool_tvl_wei is not None else None
    return out
