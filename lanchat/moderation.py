import logging
import threading
from typing import Optional

from lanchat import protocol

logger = logging.getLogger("__main__")


class GroupModeration:
    """
    Ban state for one multicast group session.

    The host is whoever is first seen sending host=1 after the join; that address is then the only
    one whose MBLOCK/MUNBLOCK commands are applied until the next join or leave. Two peers both
    claiming host in one group are not resolved: each member trusts whichever claim it saw first.

    All state is reset together by reset(), and every read happens under the same lock, so a
    change made by the receive thread is seen by the controlling thread right afterwards.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._banned: set[str] = set()
        self._host_address: Optional[str] = None
        self._muted = False

    def reset(self, host_address: str | None = None) -> None:
        """
        Clears the ban set, the host identity and the muted flag for a new session.
        :param host_address: Trusted host straight away, used when we join as host ourselves.
        :return:
        """
        with self._lock:
            self._banned.clear()
            self._host_address = host_address
            self._muted = False

    @property
    def host_address(self) -> str | None:
        with self._lock:
            return self._host_address

    @property
    def muted(self) -> bool:
        with self._lock:
            return self._muted

    def observe_host_claim(self, address: str) -> bool:
        """
        Records "address" as host if no host is known yet for this session.
        :param address:
        :return: True if this made "address" the host.
        """
        with self._lock:
            if self._host_address is not None:
                return False
            self._host_address = address
        logger.info(f"[Moderation] Group host identified: {address}.")
        return True

    def is_trusted(self, sender: str) -> bool:
        with self._lock:
            return self._host_address is not None and self._host_address == sender

    def is_banned(self, address: str) -> bool:
        with self._lock:
            return address in self._banned

    def banned_snapshot(self) -> list[str]:
        with self._lock:
            return sorted(self._banned)

    def apply(self, command: str, target: str, local_address: str | None = None) -> None:
        """
        Adds or removes "target" from the ban set, toggling our muted flag if the target is us.
        Only call this for commands that passed the trust check, or that we sent ourselves as host.
        :param command: protocol.TYPE_MBLOCK or protocol.TYPE_MUNBLOCK
        :param target:
        :param local_address:
        :return:
        """
        if command not in protocol.MODERATION_TYPES:
            raise ValueError(f"Not a moderation command: {command}")

        is_ban = command == protocol.TYPE_MBLOCK
        with self._lock:
            if is_ban:
                self._banned.add(target)
            else:
                self._banned.discard(target)
            if local_address is not None and target == local_address:
                self._muted = is_ban

    def handle_command(self, command: str, sender: str, target: str | None,
                       local_address: str | None = None) -> bool:
        """
        Applies a received MBLOCK/MUNBLOCK if it came from the established host and names a target.
        Anything else is ignored without error.
        :param command:
        :param sender:
        :param target:
        :param local_address:
        :return: True if the command was applied.
        """
        if command not in protocol.MODERATION_TYPES:
            return False
        if not target or not target.strip():
            return False
        if not self.is_trusted(sender):
            logger.debug(f"[Moderation] Ignored {command} from untrusted {sender}.")
            return False

        self.apply(command, target.strip(), local_address)
        logger.info(f"[Moderation] Host {sender} {'banned' if command == protocol.TYPE_MBLOCK else 'unbanned'} "
                    f"{target}.")
        return True
