import asyncio
import unittest

from sync_test_util import ServiceTestCase, wait_for

from chat_service.config import ServiceConfig
from chatsync.errors import ChannelError, NotConnectedError
from chatsync.realtime import RealtimeClient


class RealtimeClientTests(ServiceTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.alice = await self.login("alice")
        self.bob = await self.login("bob")
        self.conversation = await self.alice.get_or_create_conversation("bob")

    async def test_connect_reports_identity(self):
        realtime = await self.connect(self.alice)
        self.assertTrue(realtime.connected)
        self.assertEqual(realtime.user_id, "alice")
        self.assertTrue(realtime.connection_id)

    async def test_connect_with_bad_token_fails(self):
        realtime = RealtimeClient(self.http, self.config.ws_url, "st_bogus")
        with self.assertRaises(ChannelError) as ctx:
            await realtime.connect()
        self.assertEqual(ctx.exception.code, "unauthorized")
        self.assertFalse(realtime.connected)
        with self.assertRaises(NotConnectedError):
            await realtime.request("ping", {})

    async def test_join_rejections_raise_channel_errors(self):
        carol = await self.login("carol")
        realtime = await self.connect(carol)
        channel = realtime.channel(f"messages:{self.conversation.id}")
        with self.assertRaises(ChannelError) as ctx:
            await channel.subscribe()
        self.assertEqual(ctx.exception.code, "forbidden")
        self.assertFalse(channel.joined)

        with self.assertRaises(NotConnectedError):
            await realtime.channel(f"typing:{self.conversation.id}").track({"is_typing": True})
        with self.assertRaises(ValueError):
            channel.on("message.delete", lambda body: None)

    async def test_message_pushes_reach_handlers(self):
        realtime = await self.connect(self.bob)
        received = []

        def broken(_body):
            raise RuntimeError("boom")

        channel = realtime.channel(f"messages:{self.conversation.id}")
        self.assertIs(realtime.channel(channel.topic), channel)
        channel.on("message.insert", broken).on("message.insert", received.append)
        await channel.subscribe()

        with self.assertLogs("chatsync.realtime", level="ERROR"):
            await self.alice.send_message(self.conversation.id, "hi bob")
            await wait_for(lambda: received)
        self.assertEqual(received[0]["message"]["text"], "hi bob")

        await channel.unsubscribe()
        await self.alice.send_message(self.conversation.id, "gone")
        await asyncio.sleep(0.1)
        self.assertEqual(len(received), 1)

    async def test_presence_mirror_tracks_remote_state(self):
        alice_rt = await self.connect(self.alice)
        bob_rt = await self.connect(self.bob)
        topic = f"typing:{self.conversation.id}"
        events = []

        bob_channel = bob_rt.channel(topic)
        for event in ("presence.sync", "presence.join", "presence.leave"):
            bob_channel.on(event, lambda body, event=event: events.append(event))
        await bob_channel.subscribe()
        await wait_for(lambda: "presence.sync" in events)

        alice_channel = await alice_rt.channel(topic).subscribe()
        expires_at = await alice_channel.track({"is_typing": True}, ttl_seconds=5)
        self.assertGreater(expires_at, 0)

        await wait_for(lambda: bob_channel.presence_state())
        [(key, metas)] = bob_channel.presence_state().items()
        self.assertEqual(key, alice_rt.connection_id)
        self.assertEqual(metas[0]["user_id"], "alice")

        await alice_channel.untrack()
        await wait_for(lambda: not bob_channel.presence_state())
        self.assertEqual(events, ["presence.sync", "presence.join", "presence.leave"])

    async def test_reconnect_rejoins_and_notifies(self):
        realtime = await self.connect(self.bob, reconnect_max_s=1.0)
        received = []
        reconnected = asyncio.Event()

        async def on_reconnect():
            reconnected.set()

        channel = realtime.channel(f"messages:{self.conversation.id}")
        channel.on("message.insert", received.append)
        await channel.subscribe()
        realtime.on_reconnect(on_reconnect)
        first_connection = realtime.connection_id

        await realtime._ws.close()
        await asyncio.wait_for(reconnected.wait(), 5)
        self.assertNotEqual(realtime.connection_id, first_connection)
        self.assertTrue(channel.joined)

        await self.alice.send_message(self.conversation.id, "after reconnect")
        await wait_for(lambda: received)
        self.assertEqual(received[0]["message"]["text"], "after reconnect")

    async def test_drop_while_listeners_run_reconnects_again(self):
        realtime = await self.connect(self.bob, reconnect_max_s=1.0)
        received = []
        channel = realtime.channel(f"messages:{self.conversation.id}")
        channel.on("message.insert", received.append)
        await channel.subscribe()
        calls = []

        async def drop_first_time():
            calls.append(realtime.connection_id)
            if len(calls) == 1:
                await realtime._ws.close()

        realtime.on_reconnect(drop_first_time)
        await realtime._ws.close()

        await wait_for(lambda: len(calls) == 2, timeout=5)
        self.assertTrue(realtime.connected)
        self.assertTrue(channel.joined)
        self.assertNotEqual(calls[0], calls[1])

        await self.alice.send_message(self.conversation.id, "still here")
        await wait_for(lambda: received)

    async def test_close_stops_reconnecting(self):
        realtime = await self.connect(self.bob)
        channel = await realtime.channel(f"messages:{self.conversation.id}").subscribe()
        await realtime.close()

        self.assertFalse(realtime.connected)
        self.assertFalse(channel.joined)
        await asyncio.sleep(0.6)
        self.assertFalse(realtime.connected)


class ServerPingTests(ServiceTestCase):
    service_options = {"config": ServiceConfig(ping_interval_s=1), "ping_miss_limit": 1}

    async def test_server_pings_are_answered_without_leaking_tasks(self):
        alice = await self.login("alice")
        realtime = await self.connect(alice, heartbeat_s=60.0)
        connection_id = realtime.connection_id

        # Unanswered pings would close the socket after two intervals.
        await asyncio.sleep(3.5)
        self.assertTrue(realtime.connected)
        self.assertEqual(realtime.connection_id, connection_id)
        self.assertEqual(realtime._tasks, set())


if __name__ == "__main__":
    unittest.main()
