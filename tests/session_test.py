import itertools
import unittest

from fakes import FakeBroadcastService, FakeClock, FakeMulticastService
from lanchat import protocol
from lanchat.errors import InvalidTargetError, ModeError, MutedError, NotHostError, NotJoinedError
from lanchat.helpers import InterfaceInfo
from lanchat.interfaces import Transport
from lanchat.protocol import Message
from lanchat.session import ChatConfig, ChatSession, validate_group

LOCAL = "10.0.0.2"
GROUP = "239.255.0.1"
OTHER_GROUP = "239.255.0.2"


class SessionTestCase(unittest.TestCase):

    def setUp(self):
        self.delivered = []
        self.peer_events = []
        self.clock = FakeClock()
        self.broadcast = FakeBroadcastService()
        self.multicast = FakeMulticastService()
        self._ids = itertools.count()

    def make_session(self, mode=Transport.MULTICAST, host=False, nickname="me") -> ChatSession:
        config = ChatConfig(group=GROUP, mode=mode, host=host, nickname=nickname)
        interface = InterfaceInfo(name="eth0", address=LOCAL, netmask="255.255.255.0", broadcast="10.0.0.255")
        return ChatSession(
            config,
            interface,
            message_listener=lambda *args: self.delivered.append(args),
            peer_listener=lambda *args: self.peer_events.append(args),
            broadcast_service=self.broadcast,
            multicast_service=self.multicast,
            clock=self.clock
        )

    def next_id(self) -> str:
        return f"test-{next(self._ids)}"

    def receive(self, session, message_type, source, transport=Transport.MULTICAST, group=GROUP,
                payload="", message_id=None, **headers):
        """Feeds one inbound message to the session as a transport would."""
        headers[protocol.HEADER_ID] = message_id or self.next_id()
        if transport == Transport.MULTICAST and group is not None:
            headers.setdefault(protocol.HEADER_GROUP, group)
        message = Message(type=message_type, headers=headers, payload=payload)
        session.handle_message(transport, source, message, group if transport == Transport.MULTICAST else None)
        return message

    def delivered_types(self) -> list[tuple[str, str]]:
        return [(message.type, source) for _, source, message, _ in self.delivered]


class HostTrustTest(SessionTestCase):

    def test_only_established_host_can_ban(self):
        """
        Description

        Host is 10.0.0.5. A ban for 10.0.0.9 is sent by 10.0.0.6, then the same ban by 10.0.0.5.

        Expected

        The first ban is ignored and never delivered; the second is applied and delivered,
        after which chat from 10.0.0.9 is suppressed.
        :return:
        """
        session = self.make_session()
        session.join(GROUP)

        self.receive(session, protocol.TYPE_HELLO, "10.0.0.5", host="1")
        self.assertEqual(session.group_host, "10.0.0.5")

        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.6", target="10.0.0.9")
        self.assertEqual(session.banned(), [])

        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.5", host="1", target="10.0.0.9")
        self.assertEqual(session.banned(), ["10.0.0.9"])

        self.receive(session, protocol.TYPE_CHAT, "10.0.0.9", payload="hello?")

        self.assertEqual(self.delivered_types(), [
            (protocol.TYPE_HELLO, "10.0.0.5"),
            (protocol.TYPE_MBLOCK, "10.0.0.5"),
        ])

    def test_later_host_claim_ignored(self):
        session = self.make_session()
        session.join(GROUP)

        self.receive(session, protocol.TYPE_HELLO, "10.0.0.5", host="1")
        self.receive(session, protocol.TYPE_HELLO, "10.0.0.6", host="1")
        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.6", host="1", target="10.0.0.9")

        self.assertEqual(session.group_host, "10.0.0.5")
        self.assertEqual(session.banned(), [])

    def test_unban_by_host(self):
        session = self.make_session()
        session.join(GROUP)
        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.5", host="1", target="10.0.0.9")
        self.receive(session, protocol.TYPE_MUNBLOCK, "10.0.0.5", host="1", target="10.0.0.9")

        self.assertEqual(session.banned(), [])
        self.receive(session, protocol.TYPE_CHAT, "10.0.0.9", payload="back")
        self.assertIn((protocol.TYPE_CHAT, "10.0.0.9"), self.delivered_types())

    def test_ban_targeting_us_mutes_sending(self):
        session = self.make_session()
        session.join(GROUP)
        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.5", host="1", target=LOCAL)

        self.assertTrue(session.muted)
        with self.assertRaises(MutedError):
            session.send_chat("can anyone hear me")
        self.assertEqual(self.multicast.sent, [])

        self.receive(session, protocol.TYPE_MUNBLOCK, "10.0.0.5", host="1", target=LOCAL)
        self.assertFalse(session.muted)
        session.send_chat("back again")
        self.assertEqual(len(self.multicast.sent), 1)

    def test_moderation_over_broadcast_ignored(self):
        session = self.make_session(mode=Transport.BROADCAST)
        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.5", transport=Transport.BROADCAST, group=None,
                     host="1", target=LOCAL)
        self.assertFalse(session.muted)
        self.assertEqual(self.delivered, [])


class HostCommandTest(SessionTestCase):

    def test_host_ban_is_sent_and_applied(self):
        session = self.make_session(host=True)
        session.join(GROUP)
        self.assertEqual(session.group_host, LOCAL)

        session.ban("10.0.0.9")

        self.assertEqual(len(self.multicast.sent), 1)
        message_type, headers, payload = self.multicast.sent[0]
        self.assertEqual(message_type, protocol.TYPE_MBLOCK)
        self.assertEqual(headers[protocol.HEADER_TARGET], "10.0.0.9")
        self.assertEqual(headers[protocol.HEADER_HOST], "1")
        self.assertEqual(headers[protocol.HEADER_GROUP], GROUP)
        self.assertEqual(payload, "")
        self.assertEqual(session.banned(), ["10.0.0.9"])

        session.unban("10.0.0.9")
        self.assertEqual(self.multicast.sent[1][0], protocol.TYPE_MUNBLOCK)
        self.assertEqual(session.banned(), [])

    def test_self_ban_rejected_before_sending(self):
        session = self.make_session(host=True)
        session.join(GROUP)
        with self.assertRaises(InvalidTargetError):
            session.ban(LOCAL)
        self.assertEqual(self.multicast.sent, [])
        self.assertFalse(session.muted)

    def test_ban_preconditions(self):
        with self.subTest("blank target"):
            session = self.make_session(host=True)
            session.join(GROUP)
            with self.assertRaises(InvalidTargetError):
                session.ban("  ")

        with self.subTest("broadcast mode"):
            session = self.make_session(mode=Transport.BROADCAST, host=True)
            with self.assertRaises(ModeError):
                session.ban("10.0.0.9")

        with self.subTest("not joined"):
            self.multicast = FakeMulticastService()
            session = self.make_session(host=True)
            with self.assertRaises(NotJoinedError):
                session.ban("10.0.0.9")

        with self.subTest("not host"):
            self.multicast = FakeMulticastService()
            session = self.make_session(host=False)
            session.join(GROUP)
            with self.assertRaises(NotHostError):
                session.ban("10.0.0.9")

        self.assertEqual(self.multicast.sent, [])


class SendChatTest(SessionTestCase):

    def test_broadcast_send(self):
        session = self.make_session(mode=Transport.BROADCAST, nickname="alice")
        message = session.send_chat("hi all")

        self.assertEqual(len(self.broadcast.sent), 1)
        message_type, headers, payload = self.broadcast.sent[0]
        self.assertEqual((message_type, payload), (protocol.TYPE_CHAT, "hi all"))
        self.assertEqual(headers[protocol.HEADER_NICK], "alice")
        self.assertIn(protocol.HEADER_TS, headers)
        self.assertEqual(message.header(protocol.HEADER_ID), headers[protocol.HEADER_ID])

    def test_blank_text_not_sent(self):
        session = self.make_session(mode=Transport.BROADCAST)
        self.assertIsNone(session.send_chat("   "))
        self.assertEqual(self.broadcast.sent, [])

    def test_multicast_requires_join(self):
        session = self.make_session()
        with self.assertRaises(NotJoinedError):
            session.send_chat("anyone?")

    def test_own_message_echo_is_a_duplicate(self):
        session = self.make_session(mode=Transport.BROADCAST)
        sent = session.send_chat("hi")
        self.receive(session, protocol.TYPE_CHAT, "10.0.0.7", transport=Transport.BROADCAST, group=None,
                     payload="hi", message_id=sent.header(protocol.HEADER_ID))
        self.assertEqual(self.delivered, [])


class InboundFilterTest(SessionTestCase):

    def test_duplicate_delivered_once(self):
        session = self.make_session(mode=Transport.BROADCAST)
        for _ in range(3):
            self.receive(session, protocol.TYPE_CHAT, "10.0.0.7", transport=Transport.BROADCAST, group=None,
                         payload="once", message_id="dup-1")
        self.assertEqual(len(self.delivered), 1)

    def test_messages_without_id_are_not_deduplicated(self):
        session = self.make_session(mode=Transport.BROADCAST)
        message = Message(type=protocol.TYPE_CHAT, headers={}, payload="no id")
        session.handle_message(Transport.BROADCAST, "10.0.0.7", message, None)
        session.handle_message(Transport.BROADCAST, "10.0.0.7", message, None)
        self.assertEqual(len(self.delivered), 2)

    def test_own_address_dropped(self):
        session = self.make_session(mode=Transport.BROADCAST)
        self.receive(session, protocol.TYPE_CHAT, LOCAL, transport=Transport.BROADCAST, group=None, payload="me")
        self.assertEqual(self.delivered, [])
        self.assertEqual(session.peers(), [])

    def test_other_transport_tracked_but_not_delivered(self):
        session = self.make_session(mode=Transport.MULTICAST)
        session.join(GROUP)
        self.receive(session, protocol.TYPE_CHAT, "10.0.0.7", transport=Transport.BROADCAST, group=None,
                     payload="wrong mode")

        self.assertEqual(self.delivered, [])
        self.assertEqual(session.peers(), ["10.0.0.7"])
        self.assertEqual(self.peer_events, [("10.0.0.7", True, Transport.BROADCAST, None)])

    def test_other_group_dropped(self):
        session = self.make_session()
        session.join(GROUP)
        self.receive(session, protocol.TYPE_CHAT, "10.0.0.7", payload="elsewhere",
                     **{protocol.HEADER_GROUP: OTHER_GROUP})
        self.assertEqual(self.delivered, [])

    def test_multicast_copy_on_broadcast_socket_dropped(self):
        session = self.make_session(mode=Transport.BROADCAST)
        self.receive(session, protocol.TYPE_CHAT, "10.0.0.7", transport=Transport.BROADCAST, group=None,
                     payload="group chat", **{protocol.HEADER_GROUP: GROUP})
        self.assertEqual(self.delivered, [])
        self.assertEqual(session.peers(), [])

    def test_broadcast_copy_on_multicast_socket_dropped(self):
        """
        Description

        Broadcast mode with a group still joined. The same broadcast CHAT arrives first on the
        multicast socket (no grp header, since the two sockets share the port), then on the
        broadcast socket.

        Expected

        The multicast copy is ignored entirely, so the broadcast copy is delivered once and the
        sender is only a broadcast peer.
        :return:
        """
        session = self.make_session(mode=Transport.BROADCAST)
        session.join(GROUP)

        message = Message(type=protocol.TYPE_CHAT, headers={protocol.HEADER_ID: "bc-1"}, payload="hi all")
        session.handle_message(Transport.MULTICAST, "10.0.0.7", message, GROUP)
        session.handle_message(Transport.BROADCAST, "10.0.0.7", message, None)

        self.assertEqual(self.delivered_types(), [(protocol.TYPE_CHAT, "10.0.0.7")])
        self.assertEqual(self.peer_events, [("10.0.0.7", True, Transport.BROADCAST, None)])
        self.assertEqual(session.discovery.peers(Transport.MULTICAST), [])

    def test_blocked_sender_chat_dropped(self):
        session = self.make_session(mode=Transport.BROADCAST)
        session.block("10.0.0.7")

        self.receive(session, protocol.TYPE_CHAT, "10.0.0.7", transport=Transport.BROADCAST, group=None,
                     payload="ignored")
        self.receive(session, protocol.TYPE_HELLO, "10.0.0.7", transport=Transport.BROADCAST, group=None)
        self.assertEqual(self.delivered_types(), [(protocol.TYPE_HELLO, "10.0.0.7")])

        session.unblock("10.0.0.7")
        self.receive(session, protocol.TYPE_CHAT, "10.0.0.7", transport=Transport.BROADCAST, group=None,
                     payload="heard")
        self.assertEqual(self.delivered_types()[-1], (protocol.TYPE_CHAT, "10.0.0.7"))

    def test_cannot_block_ourselves(self):
        session = self.make_session()
        with self.assertRaises(InvalidTargetError):
            session.block(LOCAL)

    def test_nicknames_remembered(self):
        session = self.make_session(mode=Transport.BROADCAST)
        self.receive(session, protocol.TYPE_HELLO, "10.0.0.7", transport=Transport.BROADCAST, group=None,
                     nick="bob")
        self.assertEqual(session.nickname_of("10.0.0.7"), "bob")

        self.clock.advance(11)
        session.discovery.check_for_expired_peers()
        self.assertIsNone(session.nickname_of("10.0.0.7"))
        self.assertEqual(self.peer_events[-1], ("10.0.0.7", False, Transport.BROADCAST, None))


class GroupMembershipTest(SessionTestCase):

    def test_host_trusts_itself_before_receiving(self):
        """
        Description

        Joining as host while another peer's host=1 packet arrives as soon as the socket is open.

        Expected

        We are already the trusted host, so the other claim is ignored.
        :return:
        """
        session = self.make_session(host=True)

        def deliver_rival_claim(group):
            self.receive(session, protocol.TYPE_HELLO, "10.0.0.5", group=group, host="1")

        self.multicast.on_join = deliver_rival_claim
        session.join(GROUP)

        self.assertEqual(session.group_host, LOCAL)
        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.5", host="1", target="10.0.0.9")
        self.assertEqual(session.banned(), [])

    def test_join_resets_moderation(self):
        session = self.make_session()
        session.join(GROUP)
        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.5", host="1", target=LOCAL)
        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.5", host="1", target="10.0.0.9")
        self.assertTrue(session.muted)

        session.join(OTHER_GROUP)

        self.assertEqual(self.multicast.current_group, OTHER_GROUP)
        self.assertEqual(session.config.group, OTHER_GROUP)
        self.assertEqual(session.banned(), [])
        self.assertIsNone(session.group_host)
        self.assertFalse(session.muted)

    def test_rejoining_same_group_keeps_state(self):
        session = self.make_session()
        session.join(GROUP)
        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.5", host="1", target="10.0.0.9")
        session.join(GROUP)
        self.assertEqual(session.banned(), ["10.0.0.9"])

    def test_leave_resets_moderation(self):
        session = self.make_session()
        session.join(GROUP)
        self.receive(session, protocol.TYPE_MBLOCK, "10.0.0.5", host="1", target="10.0.0.9")
        session.leave()

        self.assertFalse(session.joined)
        self.assertEqual(session.banned(), [])
        self.assertFalse(session.use_multicast())

    def test_invalid_group_rejected(self):
        session = self.make_session()
        with self.assertRaises(ValueError):
            session.join("10.0.0.1")
        self.assertFalse(session.joined)

    def test_mode_selector(self):
        session = self.make_session(mode=Transport.BROADCAST)
        self.assertTrue(session.use_broadcast())
        self.assertFalse(session.use_multicast())

        session.set_mode(Transport.MULTICAST)
        self.assertFalse(session.use_broadcast())
        self.assertFalse(session.use_multicast(), "Multicast presence needs a joined group.")

        session.join(GROUP)
        self.assertTrue(session.use_multicast())
        self.assertEqual(session.current_multicast_group(), GROUP)

    def test_set_ttl_clamped(self):
        session = self.make_session()
        session.set_ttl(100)
        self.assertEqual(session.config.ttl, 32)
        session.set_ttl(0)
        self.assertEqual(session.config.ttl, 1)


class ValidateGroupTest(unittest.TestCase):

    def test_validate_group(self):
        self.assertEqual(validate_group(" 239.255.0.1 "), "239.255.0.1")
        for bad in ("", "10.0.0.1", "not-an-ip", "239.255.0.300"):
            with self.assertRaises(ValueError, msg=bad):
                validate_group(bad)


if __name__ == '__main__':
    unittest.main()
