import ipaddress
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from lanchat import protocol
from lanchat.blocklist import Blocklist
from lanchat.cache import RecentMessageCache
from lanchat.constants import Constants
from lanchat.discovery import PeerDiscoveryService
from lanchat.errors import InvalidTargetError, ModeError, MutedError, NotHostError, NotJoinedError
from lanchat.helpers import InterfaceInfo
from lanchat.interfaces import IModeSelector, MessageListener, PeerListener, Transport
from lanchat.moderation import GroupModeration
from lanchat.networking import BroadcastService, MulticastService
from lanchat.protocol import Message

logger = logging.getLogger("__main__")


@dataclass
class ChatConfig:
    port: int = Constants.DEFAULT_PORT
    group: str = Constants.DEFAULT_GROUP
    ttl: int = Constants.DEFAULT_TTL
    nickname: str = ""
    interval_ms: int = Constants.DISCOVERY_INTERVAL_MS
    dedup_capacity: int = Constants.DEDUP_CAPACITY
    dedup_ttl_ms: int = Constants.DEDUP_TTL_MS
    mode: Transport = Transport.BROADCAST
    host: bool = False
    interface_name: Optional[str] = None


def validate_group(group: str) -> str:
    """
    Returns the group address stripped, raising ValueError if it is not an IPv4 multicast address.
    :param group:
    :return:
    """
    group = (group or "").strip()
    try:
        address = ipaddress.IPv4Address(group)
    except ValueError as e:
        raise ValueError(f"Invalid multicast group {group!r}.") from e
    if not address.is_multicast:
        raise ValueError(f"{group} is not a multicast address.")
    return group


class ChatSession(IModeSelector):

    def __init__(self,
                 config: ChatConfig,
                 interface: InterfaceInfo,
                 message_listener: MessageListener | None = None,
                 peer_listener: PeerListener | None = None,
                 nickname_supplier: Callable[[], str | None] | None = None,
                 broadcast_service=None,
                 multicast_service=None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Everything one chat participant runs: both transports, presence, dedup, the local blocklist
        and group moderation, behind a single inbound dispatch path (handle_message).

        message_listener is called on a receive thread for every message that passes the filters;
        the caller does any hand-off to its own thread.

        :param config:
        :param interface: Interface to send, bind and join on.
        :param message_listener: (transport, source, message, group)
        :param peer_listener: (address, added, transport, group)
        :param nickname_supplier: Read before every send, defaults to config.nickname.
        :param broadcast_service: Replaces the BroadcastService, for tests.
        :param multicast_service: Replaces the MulticastService, for tests.
        :param clock: Returns the current time in seconds, for the dedup cache and discovery.
        """
        self.config = config
        self.interface = interface
        self.local_address = interface.address
        self.message_listener = message_listener
        self.peer_listener = peer_listener
        self.nickname_supplier = nickname_supplier or (lambda: self.config.nickname)

        self.dedup = RecentMessageCache(config.dedup_capacity, config.dedup_ttl_ms, clock=clock)
        self.blocklist = Blocklist()
        self.moderation = GroupModeration()

        self._lock = threading.Lock()
        self._mode: Transport = config.mode
        self._nicknames: dict[str, str] = {}

        if broadcast_service is None:
            broadcast_service = BroadcastService(config.port, interface, self.handle_message)
        if multicast_service is None:
            multicast_service = MulticastService(config.port, interface, self.handle_message, ttl=config.ttl)
        self.broadcast_service = broadcast_service
        self.multicast_service = multicast_service
        self.multicast_service.configure_host(config.host)

        self.discovery = PeerDiscoveryService(
            broadcast_service=self.broadcast_service,
            multicast_service=self.multicast_service,
            nickname_supplier=self.nickname_supplier,
            mode_selector=self,
            peer_listener=self._on_peer,
            interval_ms=config.interval_ms,
            clock=clock
        )

    # Lifecycle

    def start(self) -> None:
        """
        Starts the broadcast transport and presence announcements.
        Raises SocketSetupError if the broadcast sockets cannot be bound.
        :return:
        """
        logger.info(f"[Session] Starting on {self.interface}, port {self.config.port}.")
        self.broadcast_service.start()
        self.discovery.start()

    def stop(self) -> None:
        self.discovery.stop()
        self.leave()
        self.broadcast_service.stop()
        logger.info("[Session] Stopped.")

    # IModeSelector

    def use_broadcast(self) -> bool:
        return self.mode == Transport.BROADCAST

    def use_multicast(self) -> bool:
        return self.mode == Transport.MULTICAST and self.joined

    def current_multicast_group(self) -> str | None:
        return self.multicast_service.current_group

    # State

    @property
    def mode(self) -> Transport:
        with self._lock:
            return self._mode

    def set_mode(self, mode: Transport) -> None:
        with self._lock:
            self._mode = mode
        logger.info(f"[Session] Mode set to {mode.value}.")

    @property
    def joined(self) -> bool:
        return self.multicast_service.joined

    @property
    def is_host(self) -> bool:
        return self.multicast_service.is_host

    @property
    def muted(self) -> bool:
        return self.moderation.muted

    @property
    def group_host(self) -> str | None:
        return self.moderation.host_address

    def banned(self) -> list[str]:
        return self.moderation.banned_snapshot()

    def nickname_of(self, address: str) -> str | None:
        with self._lock:
            return self._nicknames.get(address)

    def peers(self) -> list[str]:
        """
        Returns every live peer except ourselves, sorted.
        :return:
        """
        return [peer for peer in self.discovery.snapshot_all_peers() if peer != self.local_address]

    def set_host(self, is_host: bool) -> None:
        self.config.host = bool(is_host)
        self.multicast_service.configure_host(is_host)

    def set_ttl(self, ttl: int) -> None:
        self.multicast_service.set_ttl(ttl)
        self.config.ttl = self.multicast_service.ttl

    # Group membership

    def join(self, group: str | None = None) -> str:
        """
        Joins (or switches to) a multicast group, starting a fresh moderation session.
        Joining as host makes us the trusted host of the new session.
        Raises SocketSetupError if the join fails.
        :param group: Defaults to config.group.
        :return: The group joined.
        """
        group = validate_group(group or self.config.group)
        if self.multicast_service.joined and self.multicast_service.current_group == group:
            return group

        self.multicast_service.leave()
        # Self-trust must be set before the receive thread starts.
        self.moderation.reset(self.local_address if self.multicast_service.is_host else None)
        self.multicast_service.join(group)
        self.config.group = group

        logger.info(f"[Session] Joined group {group}:{self.config.port}"
                    f"{' (as host)' if self.multicast_service.is_host else ''}.")
        return group

    def leave(self) -> None:
        if self.multicast_service.joined:
            self.multicast_service.leave()
        self.moderation.reset()

    # Outbound

    def _new_headers(self) -> dict[str, str]:
        return {protocol.HEADER_ID: protocol.next_message_id()}

    def send_chat(self, text: str) -> Message | None:
        """
        Sends chat text on the current mode's transport.
        Multicast requires a joined group and not being banned by its host.
        :param text:
        :return: The message sent, or None if text was blank.
        """
        if not text or not text.strip():
            return None

        headers = self._new_headers()
        headers[protocol.HEADER_TS] = str(protocol.now_ms())
        nickname = self.nickname_supplier()
        if nickname and nickname.strip():
            headers[protocol.HEADER_NICK] = nickname

        if self.mode == Transport.BROADCAST:
            self.dedup.is_duplicate_and_record(headers[protocol.HEADER_ID])
            self.broadcast_service.send(protocol.TYPE_CHAT, headers, text)
        else:
            if not self.joined:
                raise NotJoinedError("Join a multicast group before sending.")
            if self.muted:
                raise MutedError("You are banned by the group host.")
            self.dedup.is_duplicate_and_record(headers[protocol.HEADER_ID])
            self.multicast_service.send(protocol.TYPE_CHAT, headers, text)

        return Message(type=protocol.TYPE_CHAT, headers=headers, payload=text)

    def ban(self, address: str) -> None:
        self._send_moderation(protocol.TYPE_MBLOCK, address)

    def unban(self, address: str) -> None:
        self._send_moderation(protocol.TYPE_MUNBLOCK, address)

    def _send_moderation(self, command: str, address: str) -> None:
        target = (address or "").strip()
        if not target:
            raise InvalidTargetError("No address given.")
        if self.mode != Transport.MULTICAST:
            raise ModeError("Banning is only available in multicast mode.")
        if not self.joined:
            raise NotJoinedError("Banning is only available in an active multicast group.")
        if not self.is_host:
            raise NotHostError("Only the group host can ban or unban.")
        if target == self.local_address:
            raise InvalidTargetError("You cannot ban yourself.")

        headers = self._new_headers()
        headers[protocol.HEADER_TARGET] = target
        self.dedup.is_duplicate_and_record(headers[protocol.HEADER_ID])
        self.multicast_service.send(command, headers, "")
        self.moderation.apply(command, target, self.local_address)
        logger.info(f"[Session] Host {'banned' if command == protocol.TYPE_MBLOCK else 'unbanned'} {target}.")

    def block(self, address: str) -> None:
        """
        Ignores a peer locally - their chat is dropped on our side only.
        :param address:
        :return:
        """
        target = (address or "").strip()
        if target == self.local_address:
            raise InvalidTargetError("You cannot ignore your own address.")
        self.blocklist.block(target)

    def unblock(self, address: str) -> None:
        self.blocklist.unblock(address)

    # Inbound

    def handle_message(self, transport: Transport, source: str, message: Message, group: str | None) -> None:
        """
        Dispatch path for every decoded datagram from either transport. Messages that pass the
        filters below reach the message listener; the rest are dropped silently.
        :param transport:
        :param source: Sender IP address.
        :param message:
        :param group: Group the multicast socket was joined to, None for broadcast.
        :return:
        """
        if source == self.local_address:
            return
        # Both sockets share the port, so multicast datagrams can also turn up on the broadcast socket.
        if transport == Transport.BROADCAST and protocol.HEADER_GROUP in message.headers:
            return
        # Likewise broadcasts reach the multicast socket; only traffic stamped with its group belongs there.
        if transport == Transport.MULTICAST and (group is None or message.header(protocol.HEADER_GROUP) != group):
            return
        if self.dedup.is_duplicate_and_record(message.header(protocol.HEADER_ID)):
            return

        self.discovery.record_activity(transport, source, group if transport == Transport.MULTICAST else None)

        nickname = message.header(protocol.HEADER_NICK)
        if nickname and nickname.strip():
            with self._lock:
                self._nicknames[source] = nickname

        if transport != self.mode:
            return

        if transport == Transport.MULTICAST:
            current_group = self.current_multicast_group()
            if current_group is None or message.header(protocol.HEADER_GROUP) != current_group:
                return
            if message.header(protocol.HEADER_HOST) == "1":
                self.moderation.observe_host_claim(source)

        if message.type == protocol.TYPE_CHAT:
            if self.blocklist.is_blocked(source):
                return
            if transport == Transport.MULTICAST and self.moderation.is_banned(source):
                return

        elif message.type in protocol.MODERATION_TYPES:
            if transport != Transport.MULTICAST:
                return
            applied = self.moderation.handle_command(
                message.type, source, message.header(protocol.HEADER_TARGET), self.local_address
            )
            if not applied:
                return

        if self.message_listener:
            self.message_listener(transport, source, message, group)

    def _on_peer(self, address: str, added: bool, transport: Transport, group: str | None) -> None:
        if not added and address not in self.discovery.snapshot_all_peers():
            with self._lock:
                self._nicknames.pop(address, None)
        if self.peer_listener:
            self.peer_listener(address, added, transport, group)
