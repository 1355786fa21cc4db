import unittest

from rigwarden.lru_cache import BoundedCache


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class BoundedCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()

    def test_capacity_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            BoundedCache(0)

    def test_size_never_exceeds_capacity(self) -> None:
        cache = BoundedCache(3, clock=self.clock)
        for i in range(10):
            cache.set(f"k{i}", i)
            self.assertLessEqual(len(cache), 3)
        self.assertEqual(cache.keys(), ["k7", "k8", "k9"])

    def test_evicts_least_recently_used(self) -> None:
        cache = BoundedCache(2, clock=self.clock)
        cache.set("a", 1)
        cache.set("b", 2)
        self.assertEqual(cache.get("a"), 1)  # a is now most recent
        cache.set("c", 3)
        self.assertNotIn("b", cache)
        self.assertIn("a", cache)
        self.assertIn("c", cache)

    def test_overwrite_refreshes_position_and_value(self) -> None:
        cache = BoundedCache(2, clock=self.clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)
        self.assertEqual(cache.get("a"), 10)
        self.assertNotIn("b", cache)

    def test_expired_entry_reads_absent_but_is_kept(self) -> None:
        cache = BoundedCache(4, clock=self.clock)
        cache.set("ping", 12.5)
        self.clock.now = 61
        self.assertIsNone(cache.get("ping", ttl=60))
        self.assertEqual(cache.get("ping", ttl=60, default=-1), -1)
        self.assertIn("ping", cache)
        self.assertEqual(len(cache), 1)
        # a more lenient reader still sees it
        self.assertEqual(cache.get("ping", ttl=120), 12.5)

    def test_ttl_boundary_is_inclusive(self) -> None:
        cache = BoundedCache(1, clock=self.clock)
        cache.set("k", "v")
        self.clock.now = 30
        self.assertEqual(cache.get("k", ttl=30), "v")

    def test_expired_read_does_not_refresh_recency(self) -> None:
        cache = BoundedCache(2, clock=self.clock)
        cache.set("old", 1)
        self.clock.now = 10
        cache.set("new", 2)
        self.assertIsNone(cache.get("old", ttl=5))
        cache.set("third", 3)
        self.assertEqual(cache.keys(), ["new", "third"])

    def test_clear_empties_cache(self) -> None:
        cache = BoundedCache(3, clock=self.clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear()
        self.assertEqual(len(cache), 0)
        self.assertIsNone(cache.get("a"))


if __name__ == "__main__":
    unittest.main()
