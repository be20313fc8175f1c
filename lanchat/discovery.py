import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from lanchat import protocol
from lanchat.constants import Constants
from lanchat.helpers import Timer
from lanchat.interfaces import IModeSelector, PeerListener, Transport

logger = logging.getLogger("__main__")


@dataclass
class PeerRecord:
    address: str
    last_seen: float
    group: Optional[str] = None

    def touch(self, now: float, group: Optional[str] = None) -> None:
        """Updates the last time the peer was seen."""
        self.last_seen = now
        if group:
            self.group = group


class PeerDiscoveryService:

    def __init__(self,
                 broadcast_service,
                 multicast_service,
                 nickname_supplier: Callable[[], str | None],
                 mode_selector: IModeSelector,
                 peer_listener: PeerListener | None = None,
                 interval_ms: int = Constants.DISCOVERY_INTERVAL_MS,
                 clock: Callable[[], float] = time.monotonic):
        """
        Announces our presence every interval_ms over whichever transports mode_selector allows,
        and tracks when each peer was last heard from, separately per transport.

        A peer that is not heard from for max(10s, 5 * interval_ms) is removed.

        :param broadcast_service: BroadcastService, or None if broadcast is not used.
        :param multicast_service: MulticastService, or None if multicast is not used.
        :param nickname_supplier: Called before every announcement, the nickname may change.
        :param mode_selector:
        :param peer_listener: Called with (address, added, transport, group) when peers come and go.
        :param interval_ms:
        :param clock: Returns the current time in seconds, replaceable for tests.
        """
        self.broadcast_service = broadcast_service
        self.multicast_service = multicast_service
        self.nickname_supplier = nickname_supplier
        self.mode_selector = mode_selector
        self.peer_listener = peer_listener
        self.interval_ms = interval_ms
        self._clock = clock

        self._peers: dict[Transport, dict[str, PeerRecord]] = {
            Transport.BROADCAST: {},
            Transport.MULTICAST: {},
        }
        self._locks: dict[Transport, threading.Lock] = {
            Transport.BROADCAST: threading.Lock(),
            Transport.MULTICAST: threading.Lock(),
        }

        # Two timers so a slow announcement never holds up the expiry sweep.
        self._announce_timer = Timer(interval_ms / 1000, self.announce_presence,
                                     auto_reset=True, name="Peer-Discovery-Announce")
        self._sweep_timer = Timer(Constants.EXPIRY_SWEEP_INTERVAL_MS / 1000, self.check_for_expired_peers,
                                  auto_reset=True, name="Peer-Discovery-Sweep")

    @property
    def peer_timeout_ms(self) -> int:
        return max(Constants.MIN_PEER_TIMEOUT_MS, Constants.PEER_TIMEOUT_MULTIPLIER * self.interval_ms)

    def start(self) -> None:
        """
        Announces once straight away, then starts the periodic announcement and expiry sweep.
        :return:
        """
        logger.info(f"[Discovery] Starting, announcing every {self.interval_ms}ms.")
        self.announce_presence()
        self._announce_timer.start()
        self._sweep_timer.start()

    def stop(self) -> None:
        """
        Cancels everything scheduled. Safe to call even if start() was never called.
        :return:
        """
        self._announce_timer.stop()
        self._sweep_timer.stop()
        logger.info("[Discovery] Stopped.")

    def _presence_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        nickname = self.nickname_supplier() if self.nickname_supplier else None
        if nickname and nickname.strip():
            headers[protocol.HEADER_NICK] = nickname
        headers[protocol.HEADER_ID] = protocol.next_message_id()
        return headers

    def announce_presence(self) -> None:
        """
        Sends one HELLO on each transport the mode selector currently allows.
        Send failures are logged, never raised, so the schedule keeps running.
        :return:
        """
        headers = self._presence_headers()

        if self.broadcast_service is not None and self.mode_selector.use_broadcast():
            try:
                self.broadcast_service.send(protocol.TYPE_HELLO, headers, "")
            except Exception as e:
                logger.error(f"[Discovery] Failed to send broadcast HELLO: {e}")

        if self.multicast_service is not None and self.mode_selector.use_multicast() \
                and self.multicast_service.joined:
            group = self.mode_selector.current_multicast_group()
            if group:
                multicast_headers = dict(headers)
                multicast_headers[protocol.HEADER_GROUP] = group
                try:
                    self.multicast_service.send(protocol.TYPE_HELLO, multicast_headers, "")
                except Exception as e:
                    logger.error(f"[Discovery] Failed to send multicast HELLO: {e}")

    def record_activity(self, transport: Transport, address: str, group: str | None = None) -> bool:
        """
        Marks a peer as alive on a transport. Called for every valid inbound message, not only HELLOs.
        The peer listener is told the first time a peer is seen on that transport.
        :param transport:
        :param address:
        :param group: Multicast group the message came from, None for broadcast.
        :return: True if the peer is new on this transport.
        """
        now = self._clock()
        with self._locks[transport]:
            peers = self._peers[transport]
            record = peers.get(address)
            if record is None:
                peers[address] = PeerRecord(address=address, last_seen=now, group=group)
                is_new = True
            else:
                record.touch(now, group)
                is_new = False

        if is_new:
            logger.info(f"[Discovery] Peer {address} seen on {transport.value}.")
            self._notify(address, True, transport, group)
        return is_new

    def check_for_expired_peers(self) -> list[tuple[Transport, str]]:
        """
        Removes every peer not heard from within the timeout, telling the peer listener about each.
        :return: (transport, address) of every removed peer.
        """
        now = self._clock()
        timeout_sec = self.peer_timeout_ms / 1000
        removed: list[tuple[Transport, PeerRecord]] = []

        for transport in Transport:
            with self._locks[transport]:
                peers = self._peers[transport]
                expired = [record for record in peers.values() if now - record.last_seen > timeout_sec]
                for record in expired:
                    del peers[record.address]
                    removed.append((transport, record))

        for transport, record in removed:
            logger.info(f"[Discovery] Peer {record.address} timed out on {transport.value}.")
            group = record.group if transport == Transport.MULTICAST else None
            self._notify(record.address, False, transport, group)

        return [(transport, record.address) for transport, record in removed]

    def _notify(self, address: str, added: bool, transport: Transport, group: str | None) -> None:
        if self.peer_listener is None:
            return
        try:
            self.peer_listener(address, added, transport, group)
        except Exception as e:
            logger.error(f"[Discovery] Peer listener failed for {address}: {e}")

    def peers(self, transport: Transport) -> list[str]:
        with self._locks[transport]:
            return sorted(self._peers[transport])

    def snapshot_all_peers(self) -> list[str]:
        """
        Returns every live peer on either transport, without duplicates, sorted.
        :return:
        """
        addresses: set[str] = set()
        for transport in Transport:
            with self._locks[transport]:
                addresses.update(self._peers[transport])
        return sorted(addresses)

    def clear(self, transport: Transport | None = None) -> None:
        """
        Forgets peers (on one transport, or all) without notifying the listener.
        :param transport:
        :return:
        """
        for t in ([transport] if transport else list(Transport)):
            with self._locks[t]:
                self._peers[t].clear()
