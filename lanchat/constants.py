from dataclasses import dataclass


@dataclass
class Constants:
    DEFAULT_PORT = 50000
    DEFAULT_GROUP = "239.255.0.1"
    LIMITED_BROADCAST = "255.255.255.255"
    ENCODING = "utf-8"

    RECEIVE_BUFFER_BYTES = 2048  # messages are short text, no fragmentation handling
    RECEIVE_POLL_SEC = 0.5  # how often a blocked receive re-checks the closed flag
    THREAD_JOIN_TIMEOUT_SEC = 2.0

    MIN_TTL = 1
    MAX_TTL = 32
    DEFAULT_TTL = 1

    DISCOVERY_INTERVAL_MS = 2000
    EXPIRY_SWEEP_INTERVAL_MS = 1000
    MIN_PEER_TIMEOUT_MS = 10_000
    PEER_TIMEOUT_MULTIPLIER = 5

    DEDUP_CAPACITY = 4096
    DEDUP_TTL_MS = 30_000
    DEDUP_MIN_CAPACITY = 256
    DEDUP_MIN_TTL_MS = 1000
    DEDUP_EVICT_RATIO = 0.7
