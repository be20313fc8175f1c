class LanChatError(Exception):
    pass


class DataDecodingError(LanChatError):
    """Raised when a datagram cannot be parsed into a Message."""
    pass


class SocketSetupError(LanChatError):
    """Raised when a socket cannot be bound, configured or joined to a group."""
    pass


class NotJoinedError(LanChatError):
    """Raised when sending to a multicast group that has not been joined."""
    pass


class NotHostError(LanChatError):
    """Raised when a non-host tries to send a ban/unban command."""
    pass


class InvalidTargetError(LanChatError):
    """Raised when a ban or ignore targets ourselves, or no address at all."""
    pass


class ModeError(LanChatError):
    """Raised when an operation is not valid in the current transport mode."""
    pass


class NotRunningError(LanChatError):
    """Raised when sending through a transport that has not been started."""
    pass


class MutedError(LanChatError):
    """Raised when sending chat to a group whose host has banned us."""
    pass
