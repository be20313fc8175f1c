import threading


class Blocklist:
    """
    In-memory set of locally ignored IP addresses. Only our own receiver enforces it.
    Safe to use from the receive threads and the controlling thread at once.
    """

    def __init__(self):
        self._blocked: set[str] = set()
        self._lock = threading.Lock()

    def block(self, ip: str | None) -> None:
        if ip and ip.strip():
            with self._lock:
                self._blocked.add(ip.strip())

    def unblock(self, ip: str | None) -> None:
        if ip and ip.strip():
            with self._lock:
                self._blocked.discard(ip.strip())

    def is_blocked(self, ip: str | None) -> bool:
        if not ip:
            return False
        with self._lock:
            return ip in self._blocked

    def snapshot(self) -> set[str]:
        """
        Returns a copy of the blocked addresses.
        :return:
        """
        with self._lock:
            return set(self._blocked)
