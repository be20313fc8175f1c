import ipaddress
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Optional

import psutil

from lanchat.constants import Constants

logger = logging.getLogger("__main__")


@dataclass(frozen=True)
class InterfaceInfo:
    """
    An IPv4 address on a network interface, which is what the transports bind and join on.
    broadcast is the directed broadcast address of the subnet, None if it could not be worked out.
    """
    name: str
    address: str
    netmask: Optional[str] = None
    broadcast: Optional[str] = None
    index: Optional[int] = None

    def __str__(self):
        return f"{self.name} - {self.address}"


def directed_broadcast(address: str, netmask: str | None) -> str | None:
    """
    Works out the broadcast address of the subnet "address" is on, given its netmask.
    :param address:
    :param netmask:
    :return: Broadcast address, or None if the netmask is missing or invalid.
    """
    if not netmask:
        return None
    try:
        network = ipaddress.IPv4Network(f"{address}/{netmask}", strict=False)
    except ValueError:
        logger.debug(f"Invalid netmask {netmask} for {address}.")
        return None
    if network.prefixlen >= 31:  # point-to-point links have no broadcast address
        return None
    return str(network.broadcast_address)


def _interface_index(name: str) -> int | None:
    try:
        return socket.if_nametoindex(name)
    except (OSError, AttributeError):
        return None


def get_active_ipv4_interfaces() -> list[InterfaceInfo]:
    """
    Lists every IPv4 address on interfaces that are up and are not loopback.
    :return:
    """
    stats = psutil.net_if_stats()
    interfaces: list[InterfaceInfo] = []

    for name, addresses in psutil.net_if_addrs().items():
        if name in stats and not stats[name].isup:
            continue
        for address in addresses:
            if address.family != socket.AF_INET:
                continue
            if ipaddress.IPv4Address(address.address).is_loopback:
                continue
            broadcast = address.broadcast or directed_broadcast(address.address, address.netmask)
            interfaces.append(InterfaceInfo(
                name=name,
                address=address.address,
                netmask=address.netmask,
                broadcast=broadcast,
                index=_interface_index(name)
            ))

    logger.debug(f"Found interfaces: {[str(i) for i in interfaces]}")
    return interfaces


def get_own_ip() -> str:
    """
    Returns the local address the OS would route outbound traffic from.
    Nothing is actually sent, connect() on UDP only makes the routing decision.
    :return:
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("8.8.8.8", 80))
        ip = sock.getsockname()[0]
    except OSError:
        ip = "127.0.0.1"
    finally:
        sock.close()
    return ip


def default_interface(name: str | None = None) -> InterfaceInfo:
    """
    Picks an interface: the one called "name" if given, else the one holding our routed address,
    else the first active one. Falls back to loopback if there are none.
    :param name:
    :return:
    """
    interfaces = get_active_ipv4_interfaces()
    if name:
        for interface in interfaces:
            if interface.name == name or interface.address == name:
                return interface
        raise ValueError(f"No active IPv4 interface called {name}.")

    own_ip = get_own_ip()
    for interface in interfaces:
        if interface.address == own_ip:
            return interface
    if interfaces:
        return interfaces[0]

    logger.warning("No active IPv4 interfaces found, using loopback.")
    return InterfaceInfo(name="lo", address="127.0.0.1", netmask="255.0.0.0", broadcast=None)


def clamp_ttl(ttl: int) -> int:
    return max(Constants.MIN_TTL, min(int(ttl), Constants.MAX_TTL))


class Timer:
    def __init__(self, interval_sec: float, function: callable, auto_reset: bool = False,
                 name: str = "Timer", *args, **kwargs):
        """
        Calls "function" after every interval_sec on its own daemon thread (once only if not auto_reset).
        An exception in "function" is logged and does not stop the timer.
        """
        self.interval_sec: float = interval_sec
        self.function: callable = function
        self.auto_reset: bool = auto_reset
        self.name = name
        self.args: tuple = args
        self.kwargs: dict = kwargs
        self._stop_event = threading.Event()
        self.__thread = None

    def run(self) -> None:
        logger.debug(f"Starting timer {self.name}.")

        while not self._stop_event.is_set():
            if self._stop_event.wait(self.interval_sec):
                break
            try:
                self.function(*self.args, **self.kwargs)
            except Exception as e:
                logger.error(f"Timer {self.name}: {e}")
            if not self.auto_reset:
                break

        logger.debug(f"Timer {self.name} stopped.")

    def start(self) -> None:
        if self.__thread is None or not self.__thread.is_alive():
            self._stop_event.clear()
            self.__thread = threading.Thread(target=self.run, name=self.name, daemon=True)
            self.__thread.start()
        else:
            logger.info(f"Timer {self.name} already running.")

    def stop(self) -> None:
        if self._stop_event.is_set():
            return

        self._stop_event.set()
        thread = self.__thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(Constants.THREAD_JOIN_TIMEOUT_SEC)

    def stopped(self) -> bool:
        return self._stop_event.is_set()
