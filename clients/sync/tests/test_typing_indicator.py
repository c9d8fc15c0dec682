import asyncio
import unittest

from chatsync.typing_indicator import TypingAggregator, TypingNotifier


def meta(user_id: str, ref: str, is_typing: bool = True) -> dict:
    return {"user_id": user_id, "is_typing": is_typing, "presence_ref": ref}


class TypingAggregatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.aggregator = TypingAggregator("me")
        self.changes: list[list[str]] = []
        self.aggregator.on_change(self.changes.append)

    def test_sync_excludes_current_user_and_idle_metas(self) -> None:
        self.aggregator.sync(
            {
                "conn-me": [meta("me", "r0")],
                "conn-bob": [meta("bob", "r1")],
                "conn-carol": [meta("carol", "r2", is_typing=False)],
                "conn-dave": [{"user_id": "dave", "presence_ref": "r3"}],
                "conn-erin": [{"user_id": "erin", "is_typing": "false", "presence_ref": "r4"}],
                "conn-fay": [meta("fay", "r5")],
            }
        )

        self.assertEqual(self.aggregator.typing_users(), ["bob", "fay"])
        self.assertEqual(self.aggregator.label(), "2 people are typing...")

    def test_join_adds_to_aggregate_instead_of_replacing_it(self) -> None:
        self.aggregator.sync({"conn-bob": [meta("bob", "r1")]})
        self.aggregator.join("conn-carol", [meta("carol", "r2")])

        self.assertEqual(self.aggregator.typing_users(), ["bob", "carol"])

        self.aggregator.leave("conn-bob", [meta("bob", "r1")])
        self.assertEqual(self.aggregator.typing_users(), ["carol"])
        self.assertEqual(self.aggregator.label(), "Someone is typing...")

    def test_leave_matches_by_presence_ref(self) -> None:
        self.aggregator.join("conn-bob", [meta("bob", "r1")])
        # A stale leave for an older ref does not remove the current presence.
        self.aggregator.leave("conn-bob", [meta("bob", "r0")])
        self.assertEqual(self.aggregator.typing_users(), ["bob"])

        self.aggregator.leave("conn-unknown", [meta("bob", "r1")])
        self.assertEqual(self.aggregator.typing_users(), ["bob"])

        self.aggregator.leave("conn-bob", [meta("bob", "r1")])
        self.assertEqual(self.aggregator.typing_users(), [])
        self.assertEqual(self.aggregator.label(), "")

    def test_same_user_on_two_connections_counts_once(self) -> None:
        self.aggregator.join("conn-1", [meta("bob", "r1")])
        self.aggregator.join("conn-2", [meta("bob", "r2")])
        self.assertEqual(self.aggregator.typing_users(), ["bob"])

        self.aggregator.leave("conn-1", [meta("bob", "r1")])
        self.assertEqual(self.aggregator.typing_users(), ["bob"])

    def test_listeners_fire_only_when_set_changes(self) -> None:
        self.aggregator.join("conn-bob", [meta("bob", "r1")])
        self.aggregator.join("conn-me", [meta("me", "r9")])
        self.aggregator.sync({"conn-bob": [meta("bob", "r1")]})
        self.assertEqual(self.changes, [["bob"]])

        self.aggregator.clear()
        self.assertEqual(self.changes, [["bob"], []])

    def test_malformed_presences_are_skipped(self) -> None:
        self.aggregator.sync({"conn-a": "nope", "conn-b": [None, meta("bob", "r1")]})
        self.aggregator.join("conn-c", ["junk", {"is_typing": True}])
        self.assertEqual(self.aggregator.typing_users(), ["bob"])


class FakeChannel:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def track(self, meta, ttl_seconds=None):
        self.calls.append(("track", meta, ttl_seconds))

    async def untrack(self):
        self.calls.append(("untrack",))


class TypingNotifierTests(unittest.IsolatedAsyncioTestCase):
    async def test_keystrokes_track_once_and_idle_untracks(self):
        channel = FakeChannel()
        notifier = TypingNotifier(channel, idle_s=0.05, ttl_s=10)

        notifier.keystroke()
        notifier.keystroke()
        notifier.keystroke()
        self.assertTrue(notifier.is_typing)
        await asyncio.sleep(0.15)

        self.assertFalse(notifier.is_typing)
        self.assertEqual(channel.calls, [("track", {"is_typing": True}, 10), ("untrack",)])

    async def test_long_burst_retracks_after_half_ttl(self):
        channel = FakeChannel()
        notifier = TypingNotifier(channel, idle_s=1.0, ttl_s=0.1)

        notifier.keystroke()
        await asyncio.sleep(0.07)
        notifier.keystroke()
        await notifier.aclose()

        self.assertEqual([call[0] for call in channel.calls], ["track", "track", "untrack"])

    async def test_stop_without_typing_is_a_noop(self):
        channel = FakeChannel()
        notifier = TypingNotifier(channel)
        notifier.stop()
        await notifier.aclose()
        self.assertEqual(channel.calls, [])

    async def test_failed_updates_are_logged(self):
        class BrokenChannel(FakeChannel):
            async def track(self, meta, ttl_seconds=None):
                raise RuntimeError("not joined")

        notifier = TypingNotifier(BrokenChannel(), idle_s=1.0)
        with self.assertLogs("chatsync.typing_indicator", level="WARNING"):
            notifier.keystroke()
            await asyncio.sleep(0.01)
        await notifier.aclose()


if __name__ == "__main__":
    unittest.main()
