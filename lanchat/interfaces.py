from abc import abstractmethod
from enum import Enum
from typing import Callable, Optional

from lanchat.protocol import Message


class Transport(Enum):
    BROADCAST = "broadcast"
    MULTICAST = "multicast"


# (transport, source address, message, group address or None)
MessageListener = Callable[[Transport, str, Message, Optional[str]], None]

# (address, added, transport, group address or None)
PeerListener = Callable[[str, bool, Transport, Optional[str]], None]


class IModeSelector:
    """
    Interface the discovery service uses to decide where presence is announced,
    so it never needs to know about the selected mode or the join state itself.
    """

    @abstractmethod
    def use_broadcast(self) -> bool:
        """
        Returns if presence should be announced over broadcast right now.
        :return:
        """
        pass

    @abstractmethod
    def use_multicast(self) -> bool:
        """
        Returns if presence should be announced over multicast right now.
        :return:
        """
        pass

    @abstractmethod
    def current_multicast_group(self) -> Optional[str]:
        """
        Returns the multicast group currently joined, or None.
        :return:
        """
        pass
