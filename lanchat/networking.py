import logging
import socket
import struct
import threading
from typing import Optional

from lanchat import protocol
from lanchat.constants import Constants
from lanchat.errors import DataDecodingError, NotJoinedError, NotRunningError, SocketSetupError
from lanchat.helpers import InterfaceInfo, clamp_ttl
from lanchat.interfaces import MessageListener, Transport

logger = logging.getLogger("__main__")


def _allow_address_reuse(sock: socket.socket) -> None:
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    if hasattr(socket, "SO_REUSEPORT"):
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        except OSError:
            pass  # SO_REUSEPORT not available on all platforms


def _close_quietly(sock: Optional[socket.socket]) -> None:
    if sock is None:
        return
    try:
        sock.close()
    except OSError as e:
        logger.debug(f"Error closing socket: {e}")


class BaseUDPService:
    """
    Shared receive loop for both transports. Each started socket gets its own receive thread,
    which is stopped by setting "closed" and closing the socket.
    """

    def __init__(self, port: int, interface: InterfaceInfo, message_listener: MessageListener | None):
        self.port = port
        self.interface = interface
        self.message_listener = message_listener

    def _start_receiver(self, sock: socket.socket, transport: Transport, group: str | None,
                        closed: threading.Event, name: str) -> threading.Thread:
        thread = threading.Thread(
            target=self._receive_loop,
            args=(sock, transport, group, closed),
            name=name,
            daemon=True
        )
        thread.start()
        return thread

    def _receive_loop(self, sock: socket.socket, transport: Transport, group: str | None,
                      closed: threading.Event) -> None:
        prefix = f"[{transport.value.capitalize()}]"
        logger.debug(f"{prefix} Receive loop started.")

        while not closed.is_set():
            try:
                data, source = sock.recvfrom(Constants.RECEIVE_BUFFER_BYTES)
            except socket.timeout:
                continue
            except OSError as e:
                if closed.is_set() or sock.fileno() == -1:
                    break
                logger.error(f"{prefix} Error receiving packet: {e}")
                continue

            try:
                message = protocol.decode(data)
            except DataDecodingError:
                logger.debug(f"{prefix} Dropped malformed packet from {source[0]}.")
                continue

            if self.message_listener:
                try:
                    self.message_listener(transport, source[0], message, group)
                except Exception as e:
                    logger.error(f"{prefix} Listener failed on {message.type} from {source[0]}: {e}")

        logger.debug(f"{prefix} Receive loop stopped.")

    @staticmethod
    def _join_thread(thread: Optional[threading.Thread]) -> None:
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(Constants.THREAD_JOIN_TIMEOUT_SEC)


class BroadcastService(BaseUDPService):

    def __init__(self, port: int, interface: InterfaceInfo, message_listener: MessageListener | None = None):
        """
        Sends and receives UDP broadcasts. Receiving is on "port" on all interfaces; sending is from
        the given interface, to its directed broadcast address and to 255.255.255.255.
        """
        super().__init__(port, interface, message_listener)
        self._receive_socket: Optional[socket.socket] = None
        self._send_socket: Optional[socket.socket] = None
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._send_socket is not None and not self._closed.is_set()

    def start(self) -> None:
        """
        Binds both sockets and starts the receive thread. Raises SocketSetupError if either bind fails.
        :return:
        """
        with self._lock:
            if self.running:
                logger.info("[Broadcast] Already started.")
                return

            receive_socket = None
            send_socket = None
            try:
                receive_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                _allow_address_reuse(receive_socket)
                receive_socket.bind(("", self.port))
                receive_socket.settimeout(Constants.RECEIVE_POLL_SEC)

                send_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                _allow_address_reuse(send_socket)
                send_socket.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                send_socket.bind((self.interface.address, 0))
            except OSError as e:
                _close_quietly(receive_socket)
                _close_quietly(send_socket)
                logger.error(f"[Broadcast] Could not bind on port {self.port} via {self.interface}: {e}")
                raise SocketSetupError(f"Could not start broadcast on port {self.port}: {e}") from e

            self._receive_socket = receive_socket
            self._send_socket = send_socket
            self._closed = threading.Event()
            self._thread = self._start_receiver(
                receive_socket, Transport.BROADCAST, None, self._closed, "UDP-Broadcast-Receiver"
            )
            logger.info(f"[Broadcast] Listening on port {self.port}, sending via {self.interface}.")

    def stop(self) -> None:
        """
        Closes both sockets and stops the receive thread. Safe to call more than once.
        :return:
        """
        with self._lock:
            if self._receive_socket is None and self._send_socket is None:
                return
            self._closed.set()
            _close_quietly(self._receive_socket)
            _close_quietly(self._send_socket)
            self._receive_socket = None
            self._send_socket = None
            thread, self._thread = self._thread, None

        self._join_thread(thread)
        logger.info("[Broadcast] Stopped.")

    def destinations(self) -> list[str]:
        """
        Returns the addresses each message is sent to: the directed broadcast address if known,
        plus the limited broadcast address unless they are the same.
        :return:
        """
        targets = []
        if self.interface.broadcast:
            targets.append(self.interface.broadcast)
        if Constants.LIMITED_BROADCAST not in targets:
            targets.append(Constants.LIMITED_BROADCAST)
        return targets

    def send(self, type: str, headers: dict[str, str] | None = None, payload: str = "") -> None:
        """
        Encodes the message once and sends it to every broadcast destination.
        :param type:
        :param headers:
        :param payload:
        :return:
        """
        data = protocol.encode(type, headers, payload)
        send_socket = self._send_socket
        if send_socket is None or self._closed.is_set():
            raise NotRunningError("Broadcast service has not been started.")

        for target in self.destinations():
            send_socket.sendto(data, (target, self.port))
        logger.debug(f"[Broadcast] Sent {type} ({len(data)} bytes).")


class MulticastService(BaseUDPService):

    def __init__(self, port: int, interface: InterfaceInfo, message_listener: MessageListener | None = None,
                 ttl: int = Constants.DEFAULT_TTL):
        """
        Joins, leaves and sends to one multicast group at a time on a given interface.
        Every public method holds the same lock, because they all share one socket.
        """
        super().__init__(port, interface, message_listener)
        self._lock = threading.RLock()
        self._socket: Optional[socket.socket] = None
        self._group: Optional[str] = None
        self._joined = False
        self._host = False
        self._ttl = clamp_ttl(ttl)
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def joined(self) -> bool:
        with self._lock:
            return self._joined

    @property
    def current_group(self) -> str | None:
        with self._lock:
            return self._group if self._joined else None

    @property
    def is_host(self) -> bool:
        with self._lock:
            return self._host

    @property
    def ttl(self) -> int:
        with self._lock:
            return self._ttl

    def configure_host(self, is_host: bool) -> None:
        """
        Sets whether our sends claim the host role (host=1). Nobody is told until the next send.
        :param is_host:
        :return:
        """
        with self._lock:
            self._host = bool(is_host)

    def set_ttl(self, ttl: int) -> None:
        """
        Sets the outgoing TTL, clamped to 1..32, applying it to the open socket if joined.
        Failing to apply it is only logged.
        :param ttl:
        :return:
        """
        with self._lock:
            self._ttl = clamp_ttl(ttl)
            if self._socket is not None:
                try:
                    self._socket.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self._ttl)
                except OSError as e:
                    logger.warning(f"[Multicast] Could not set TTL {self._ttl} on socket: {e}")

    def join(self, group: str) -> None:
        """
        Joins "group", leaving the current group first if it is a different one.
        Does nothing if already joined to "group". Raises SocketSetupError if the join fails.
        :param group: IPv4 multicast address, eg: 239.255.0.1
        :return:
        """
        if not group:
            raise ValueError("Multicast group cannot be empty.")

        with self._lock:
            if self._joined and self._group == group:
                return
            if self._joined:
                # The old receive thread exits on its own once its socket is closed.
                self._leave_locked()

            sock = self._open_socket(group)
            self._socket = sock
            self._group = group
            self._closed = threading.Event()
            self._joined = True
            self._thread = self._start_receiver(
                sock, Transport.MULTICAST, group, self._closed, "UDP-Multicast-Receiver"
            )
            logger.info(f"[Multicast] Joined {group}:{self.port} via {self.interface}.")

    def switch_group(self, new_group: str) -> None:
        """
        Leaves the current group (if any) and joins new_group; no-op if already in new_group.
        :param new_group:
        :return:
        """
        self.join(new_group)

    def _open_socket(self, group: str) -> socket.socket:
        sock = None
        try:
            group_bytes = socket.inet_aton(group)
            interface_bytes = socket.inet_aton(self.interface.address)

            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
            _allow_address_reuse(sock)
            sock.bind(("", self.port))
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_IF, interface_bytes)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self._ttl)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 0)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP,
                            struct.pack("4s4s", group_bytes, interface_bytes))
            sock.settimeout(Constants.RECEIVE_POLL_SEC)
        except OSError as e:
            _close_quietly(sock)
            logger.error(f"[Multicast] Could not join {group}:{self.port} via {self.interface}: {e}")
            raise SocketSetupError(f"Could not join multicast group {group}: {e}") from e
        return sock

    def leave(self) -> None:
        """
        Drops group membership and closes the socket. Does nothing if not joined.
        :return:
        """
        with self._lock:
            if not self._joined:
                return
            thread = self._leave_locked()

        self._join_thread(thread)

    def _leave_locked(self) -> Optional[threading.Thread]:
        self._joined = False
        self._closed.set()
        group = self._group
        sock, self._socket = self._socket, None
        thread, self._thread = self._thread, None
        try:
            if sock is not None:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_DROP_MEMBERSHIP,
                                struct.pack("4s4s", socket.inet_aton(group),
                                            socket.inet_aton(self.interface.address)))
        except OSError as e:
            logger.warning(f"[Multicast] Error while leaving {group}: {e}")
        finally:
            _close_quietly(sock)

        logger.info(f"[Multicast] Left {group}.")
        return thread

    def send(self, type: str, headers: dict[str, str] | None = None, payload: str = "") -> None:
        """
        Sends a message to the joined group, stamping grp (and host=1 if we are host).
        Raises NotJoinedError if no group is joined.
        :param type:
        :param headers: Not modified; a stamped copy is sent.
        :param payload:
        :return:
        """
        with self._lock:
            if not self._joined or self._socket is None:
                raise NotJoinedError("Not joined to a multicast group.")

            stamped = dict(headers or {})
            if self._host:
                stamped[protocol.HEADER_HOST] = "1"
            else:
                stamped.pop(protocol.HEADER_HOST, None)
            stamped[protocol.HEADER_GROUP] = self._group

            data = protocol.encode(type, stamped, payload)
            self._socket.sendto(data, (self._group, self.port))
            logger.debug(f"[Multicast] Sent {type} to {self._group} ({len(data)} bytes).")
