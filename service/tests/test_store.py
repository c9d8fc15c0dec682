import unittest

from chat_service.cursors import ReadCursorStore
from chat_service.store import ChatStore


class FakeClock:
    def __init__(self, start_ms: int = 1_000) -> None:
        self.now_ms = start_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def now(self) -> int:
        return self.now_ms


class ChatStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = ChatStore(now_func=self.clock.now)
        for user_id, name in (("alice", "Alice"), ("bob", "Bob"), ("carol", "carol")):
            self.store.create_user(user_id, f"{user_id}@example.test", name)

    def test_conversation_pair_is_unordered(self) -> None:
        first, created = self.store.get_or_create_conversation("alice", "bob")
        again, created_again = self.store.get_or_create_conversation("bob", "alice")

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, again.id)
        self.assertEqual(first.creator_id, "alice")
        self.assertEqual(first.other("alice"), "bob")
        self.assertEqual(first.other("bob"), "alice")

    def test_conversation_with_self_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.get_or_create_conversation("alice", "alice")

    def test_conversation_with_unknown_user_is_rejected(self) -> None:
        with self.assertRaises(LookupError):
            self.store.get_or_create_conversation("alice", "mallory")

    def test_insert_assigns_monotonic_seq_and_is_idempotent_on_client_id(self) -> None:
        conv, _ = self.store.get_or_create_conversation("alice", "bob")
        first, created = self.store.insert_message(conv.id, "alice", "hi", client_id="k1")
        second, _ = self.store.insert_message(conv.id, "bob", "hello")
        repeat, repeat_created = self.store.insert_message(conv.id, "alice", "hi again", client_id="k1")

        self.assertTrue(created)
        self.assertEqual((first.seq, second.seq), (1, 2))
        self.assertFalse(repeat_created)
        self.assertEqual(repeat, first)
        self.assertEqual(len(self.store.list_messages(conv.id)), 2)

    def test_insert_requires_membership_and_text(self) -> None:
        conv, _ = self.store.get_or_create_conversation("alice", "bob")
        with self.assertRaises(PermissionError):
            self.store.insert_message(conv.id, "carol", "sneaky")
        with self.assertRaises(ValueError):
            self.store.insert_message(conv.id, "alice", "   ")
        with self.assertRaises(LookupError):
            self.store.insert_message("c_missing", "alice", "hi")

    def test_list_messages_pages_after_seq(self) -> None:
        conv, _ = self.store.get_or_create_conversation("alice", "bob")
        for index in range(5):
            self.store.insert_message(conv.id, "alice", f"m{index}")

        page = self.store.list_messages(conv.id, after_seq=2, limit=2)
        self.assertEqual([message.seq for message in page], [3, 4])
        self.assertEqual(self.store.list_messages(conv.id, after_seq=5), [])
        with self.assertRaises(ValueError):
            self.store.list_messages(conv.id, after_seq=-1)

    def test_new_message_moves_conversation_to_top(self) -> None:
        with_bob, _ = self.store.get_or_create_conversation("alice", "bob")
        self.clock.advance(10)
        with_carol, _ = self.store.get_or_create_conversation("carol", "alice")
        self.assertEqual([conv.id for conv in self.store.list_conversations("alice")], [with_carol.id, with_bob.id])

        self.clock.advance(10)
        self.store.insert_message(with_bob.id, "bob", "ping")
        self.assertEqual([conv.id for conv in self.store.list_conversations("alice")], [with_bob.id, with_carol.id])
        self.assertEqual([conv.id for conv in self.store.list_conversations("bob")], [with_bob.id])

    def test_unread_counts_only_other_senders_after_cursor(self) -> None:
        conv, _ = self.store.get_or_create_conversation("alice", "bob")
        self.store.insert_message(conv.id, "bob", "one")
        self.store.insert_message(conv.id, "alice", "two")
        self.store.insert_message(conv.id, "bob", "three")

        cursors = ReadCursorStore()
        self.assertEqual(self.store.count_unread(conv.id, "alice", cursors.last_read("alice", conv.id)), 2)
        cursors.mark_read("alice", conv.id, 1)
        self.assertEqual(self.store.count_unread(conv.id, "alice", cursors.last_read("alice", conv.id)), 1)
        self.assertEqual(cursors.mark_read("alice", conv.id, 0), 1)

    def test_status_and_profile_updates(self) -> None:
        self.assertEqual(self.store.update_status("alice", "away").status, "away")
        with self.assertRaises(ValueError):
            self.store.update_status("alice", "busy")

        user = self.store.update_profile("alice", name="  Alice A.  ", avatar_url="https://img.test/a.png")
        self.assertEqual(user.name, "Alice A.")
        self.assertEqual(user.avatar_url, "https://img.test/a.png")
        with self.assertRaises(ValueError):
            self.store.update_profile("alice", name=" ")

    def test_list_users_excludes_caller_and_sorts_by_name(self) -> None:
        self.assertEqual([user.id for user in self.store.list_users("alice")], ["bob", "carol"])
        self.assertEqual(len(self.store.list_users()), 3)

    def test_ensure_user_keeps_existing_profile(self) -> None:
        user, created = self.store.ensure_user("alice", "other@example.test", "Other")
        self.assertFalse(created)
        self.assertEqual(user.name, "Alice")


if __name__ == "__main__":
    unittest.main()
