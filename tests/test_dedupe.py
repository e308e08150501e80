import random
import unittest

from basedintern.autonomy.dedupe import (
    canonicalize_url,
    fingerprint_content,
    fingerprint_news_item,
    is_too_similar,
    pick_non_recent_index,
    pick_rotating_index,
    pick_template_in_state,
    remember,
    remember_in_state,
    rotate_in_state,
    seen_in_state,
)


class DedupeTests(unittest.TestCase):
    def test_remember_keeps_newest_max_entries(self):
        items = []
        for i in range(13):
            items = remember(items, f"fp{i}", 10)
        self.assertEqual(len(items), 10)
        self.assertEqual(items[0], "fp3")
        self.assertEqual(items[-1], "fp12")

    def test_remember_moves_existing_value_to_newest(self):
        self.assertEqual(remember(["a", "b", "c"], "a", 5), ["b", "c", "a"])

    def test_remember_with_zero_max_is_empty(self):
        self.assertEqual(remember(["a"], "b", 0), [])

    def test_remember_in_state_uses_field_bound_and_copies(self):
        state = {"lpCampaignRecentTemplates": list(range(10))}
        out = remember_in_state(state, "lpCampaignRecentTemplates", 99)
        self.assertEqual(out["lpCampaignRecentTemplates"], list(range(1, 10)) + [99])
        self.assertEqual(state["lpCampaignRecentTemplates"], list(range(10)))
        self.assertTrue(seen_in_state(out, "lpCampaignRecentTemplates", 99))
        self.assertFalse(seen_in_state(state, "lpCampaignRecentTemplates", 99))

    def test_canonicalize_url_strips_tracking_and_sorts_query(self):
        self.assertEqual(
            canonicalize_url("https://News.Example.com/story/?utm_source=x&b=2&a=1&fbclid=z#top"),
            "https://news.example.com/story?a=1&b=2",
        )

    def test_news_fingerprint_ignores_tracking_noise(self):
        a = fingerprint_news_item("CoinDesk", "Base  TVL hits record", "https://example.com/a?utm_medium=rss")
        b = fingerprint_news_item("coindesk", "base tvl hits record", "https://example.com/a/")
        self.assertEqual(a, b)

    def test_content_fingerprint_ignores_punctuation_and_links(self):
        self.assertEqual(
            fingerprint_content("GM, Base! https://t.co/abc"),
            fingerprint_content("gm base"),
        )

    def test_is_too_similar(self):
        recent = ["the intern bought a little more INTERN today"]
        self.assertTrue(is_too_similar("The intern bought a little more INTERN today!", recent))
        self.assertFalse(is_too_similar("weekly liquidity report is out", recent))

    def test_pick_non_recent_index_avoids_lookback_window(self):
        rng = random.Random(7)
        for _ in range(20):
            self.assertEqual(pick_non_recent_index(4, [0, 1, 2], lookback=3, rng=rng), 3)

    def test_pick_non_recent_index_falls_back_when_all_recent(self):
        rng = random.Random(1)
        self.assertIn(pick_non_recent_index(2, [0, 1], lookback=3, rng=rng), {0, 1})

    def test_pick_rotating_index_never_repeats_last(self):
        rng = random.Random(3)
        for _ in range(50):
            self.assertNotEqual(pick_rotating_index(3, 1, rng=rng), 1)
        self.assertEqual(pick_rotating_index(1, 0, rng=rng), 0)

    def test_pick_requires_positive_total(self):
        with self.assertRaises(ValueError):
            pick_rotating_index(0, None)
        with self.assertRaises(ValueError):
            pick_non_recent_index(0, [])

    def test_rotate_in_state_records_index_and_avoids_last(self):
        rng = random.Random(5)
        state = {"lastHookIndex": 2}
        for _ in range(20):
            index, out = rotate_in_state(state, "lastHookIndex", 4, rng=rng)
            self.assertNotEqual(index, 2)
            self.assertEqual(out["lastHookIndex"], index)
        self.assertEqual(state, {"lastHookIndex": 2})

    def test_rotate_in_state_ignores_corrupt_last_index(self):
        index, out = rotate_in_state({"lastCtaIndex": "x"}, "lastCtaIndex", 1)
        self.assertEqual(index, 0)
        self.assertEqual(out["lastCtaIndex"], 0)
        with self.assertRaises(ValueError):
            rotate_in_state({}, "lastTxNonce", 3)

    def test_pick_template_in_state_threads_recent_indices(self):
        rng = random.Random(11)
        state = {"recentTemplateIndices": {"news": [0, 1], "lp": [3]}}
        index, out = pick_template_in_state(state, "news", 3, lookback=2, rng=rng)

        self.assertEqual(index, 2)
        self.assertEqual(out["recentTemplateIndices"]["news"], [0, 1, 2])
        self.assertEqual(out["recentTemplateIndices"]["lp"], [3])
        self.assertEqual(state["recentTemplateIndices"]["news"], [0, 1])

    def test_pick_template_in_state_bounds_history(self):
        state = {"recentTemplateIndices": {"news": list(range(10))}}
        index, out = pick_template_in_state(state, "news", 12, lookback=2, rng=random.Random(2))
        self.assertEqual(len(out["recentTemplateIndices"]["news"]), 10)
        self.assertEqual(out["recentTemplateIndices"]["news"][-1], index)

    def test_pick_template_in_state_starts_from_missing_map(self):
        index, out = pick_template_in_state({"recentTemplateIndices": None}, "campaign", 1)
        self.assertEqual(index, 0)
        self.assertEqual(out["recentTemplateIndices"], {"campaign": [0]})


if __name__ == "__main__":
    unittest.main()
