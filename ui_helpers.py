import argparse
import logging
from datetime import datetime
from sys import stdout

from lanchat import protocol
from lanchat.constants import Constants
from lanchat.helpers import default_interface
from lanchat.interfaces import MessageListener, PeerListener, Transport
from lanchat.session import ChatConfig, ChatSession


def handle_terminal(argv: list[str] | None = None) -> tuple[ChatConfig, bool]:
    parser = argparse.ArgumentParser(description="Serverless LAN chat over UDP broadcast and multicast.")
    parser.add_argument("--port", type=int, required=False, default=Constants.DEFAULT_PORT,
                        help="UDP port shared by every peer.")
    parser.add_argument("--group", type=str, default=Constants.DEFAULT_GROUP,
                        help="Multicast group joined by /join.")
    parser.add_argument("--ttl", type=int, default=Constants.DEFAULT_TTL,
                        help="Multicast TTL, 1 to 32.")
    parser.add_argument("--nick", type=str, default="", help="Your display name.")
    parser.add_argument("--interface", type=str, default=None,
                        help="Interface name or address to use (default: the routed one).")
    parser.add_argument("--multicast", action="store_true",
                        help="Start in multicast mode instead of broadcast.")
    parser.add_argument("--host", action="store_true",
                        help="Claim the host role in multicast groups.")
    parser.add_argument("--interval", type=int, default=Constants.DISCOVERY_INTERVAL_MS,
                        help="Milliseconds between presence announcements.")
    parser.add_argument("--verbose", action="store_true", required=False, default=False,
                        help="If logs should be verbose.")
    parser.add_argument("-v", action="store_true", required=False, default=False,
                        help="If logs should be verbose.")

    args = parser.parse_args(argv)

    config = ChatConfig(
        port=args.port,
        group=args.group,
        ttl=args.ttl,
        nickname=args.nick.strip(),
        interval_ms=args.interval,
        mode=Transport.MULTICAST if args.multicast else Transport.BROADCAST,
        host=args.host,
        interface_name=args.interface
    )
    verbose: bool = args.v or args.verbose
    return config, verbose


def create_logger(verbose: bool, filename: str = "lanchat.log") -> logging.Logger:
    logger = logging.getLogger("__main__")
    handler = logging.StreamHandler(stdout)

    # clear the log file
    with open(filename, "w"):
        pass

    if verbose:
        logging.basicConfig(filename=filename, level=logging.DEBUG,
                            format="%(asctime)s [%(levelname)s] %(threadName)s %(message)s")
        handler.setLevel(logging.DEBUG)
    else:
        logging.basicConfig(filename=filename, level=logging.INFO,
                            format="%(asctime)s [%(levelname)s] %(threadName)s %(message)s")
        handler.setLevel(logging.WARNING)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', datefmt="%H:%M:%S")
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger


def format_timestamp(ts_header: str | None) -> str:
    """
    Formats a "ts" header (epoch milliseconds) as local HH:MM:SS, using now if it is missing or invalid.
    """
    try:
        millis = int(ts_header) if ts_header else protocol.now_ms()
    except ValueError:
        millis = protocol.now_ms()
    return datetime.fromtimestamp(millis / 1000).strftime("%H:%M:%S")


def initialise_session(config: ChatConfig,
                       message_listener: MessageListener | None = None,
                       peer_listener: PeerListener | None = None,
                       logger: logging.Logger | None = None) -> ChatSession:
    """
    Picks the interface, builds the session and starts it, joining the group straight away in multicast mode.
    """
    interface = default_interface(config.interface_name)
    if logger:
        logger.info(f"Using interface {interface} (broadcast {interface.broadcast or 'unknown'}).")

    session = ChatSession(
        config=config,
        interface=interface,
        message_listener=message_listener,
        peer_listener=peer_listener
    )
    session.start()
    if config.mode == Transport.MULTICAST:
        session.join(config.group)
    return session
