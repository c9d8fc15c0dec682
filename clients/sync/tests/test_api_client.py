import unittest

from sync_test_util import ServiceTestCase

from chatsync.api import ChatApi
from chatsync.errors import ApiError, NotConnectedError


class ChatApiTests(ServiceTestCase):
    async def test_start_session_stores_token_and_returns_profile(self):
        api = ChatApi(self.http, self.config.base_url)
        with self.assertRaises(NotConnectedError):
            await api.get_all_users()

        user = await api.start_session("alice", name="Alice", email="alice@example.test")
        self.assertEqual((user.id, user.name, user.status), ("alice", "Alice", "online"))
        self.assertTrue(api.session_token.startswith("st_"))

        me = await api.get_user_by_id("alice")
        self.assertEqual(me.email, "alice@example.test")

    async def test_conversation_and_message_round(self):
        alice = await self.login("alice")
        bob = await self.login("bob")
        conversation = await alice.get_or_create_conversation("bob")
        self.assertEqual(conversation.other_user_id("alice"), "bob")
        self.assertEqual((await bob.get_or_create_conversation("alice")).id, conversation.id)

        first = await alice.send_message(conversation.id, "hello", client_id="k1")
        repeat = await alice.send_message(conversation.id, "hello", client_id="k1")
        second = await alice.send_message(conversation.id, "again")
        self.assertEqual(first, repeat)
        self.assertEqual((first.seq, second.seq), (1, 2))
        self.assertEqual(first.sender.name, "Alice")

        history = await bob.get_messages(conversation.id)
        self.assertEqual([message.text for message in history], ["hello", "again"])
        tail = await bob.get_messages(conversation.id, after_seq=1)
        self.assertEqual([message.id for message in tail], [second.id])

        rows = await bob.get_conversations()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].id, conversation.id)
        self.assertEqual(rows[0].other_user.name, "Alice")
        self.assertEqual(rows[0].last_message.text, "again")
        self.assertEqual(rows[0].unread_count, 2)

        self.assertEqual(await bob.mark_read(conversation.id, 2), 2)
        self.assertEqual((await bob.get_conversations())[0].unread_count, 0)

    async def test_errors_surface_status_and_code(self):
        alice = await self.login("alice")
        await self.login("bob")
        carol = await self.login("carol")
        conversation = await alice.get_or_create_conversation("bob")

        with self.assertRaises(ApiError) as ctx:
            await carol.get_messages(conversation.id)
        self.assertEqual((ctx.exception.status, ctx.exception.code), (403, "forbidden"))

        with self.assertRaises(ApiError) as ctx:
            await alice.get_user_by_id("nobody")
        self.assertEqual(ctx.exception.status, 404)

        with self.assertRaises(ApiError) as ctx:
            await alice.get_or_create_conversation("alice")
        self.assertEqual(ctx.exception.status, 400)

    async def test_users_status_and_profile(self):
        alice = await self.login("alice")
        await self.login("bob")

        self.assertEqual([user.id for user in await alice.get_all_users()], ["bob"])
        with self.assertRaises(ValueError):
            await alice.update_user_status("busy")
        self.assertEqual((await alice.update_user_status("away")).status, "away")
        updated = await alice.update_profile(name="Alice L.", avatar_url="https://example.test/a.png")
        self.assertEqual((updated.name, updated.avatar_url), ("Alice L.", "https://example.test/a.png"))


if __name__ == "__main__":
    unittest.main()
