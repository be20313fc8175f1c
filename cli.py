import logging
import threading
from typing import Callable, Optional

import ui_helpers
from lanchat import protocol
from lanchat.errors import LanChatError
from lanchat.interfaces import Transport
from lanchat.protocol import Message
from lanchat.session import ChatSession

print_lock = threading.Lock()


def safe_print(*args, **kwargs):
    with print_lock:
        print(*args, **kwargs)


class ChatClient:
    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.session: Optional[ChatSession] = None
        self.running = False
        self.__commands: dict[str, dict] = {}

        self.add_command("/join", self.join, "[group] Join (or switch to) a multicast group.")
        self.add_command("/leave", self.leave, "Leave the multicast group.")
        self.add_command("/mode", self.set_mode, "broadcast|multicast")
        self.add_command("/host", self.set_host, "on|off Claim the host role in multicast groups.")
        self.add_command("/ttl", self.set_ttl, "<n> Multicast TTL, 1 to 32.")
        self.add_command("/ban", self.ban, "<ip> Ban a peer from the group (host only).")
        self.add_command("/unban", self.unban, "<ip> Unban a peer (host only).")
        self.add_command("/ignore", self.ignore, "<ip> Hide a peer's chat locally.")
        self.add_command("/unignore", self.unignore, "<ip> Stop hiding a peer's chat.")
        self.add_command("/peers", self.show_peers, "List peers seen recently.")
        self.add_command("/banned", self.show_banned, "List peers banned in the group.")
        self.add_command("/nick", self.set_nick, "<name> Change your display name.")
        self.add_command("/help", self.show_help, "Show this help.")
        self.add_command("/quit", self.quit, "Exit.")

    def add_command(self, name: str, command: Callable[[str], None], description: str = "") -> None:
        if name in self.__commands:
            raise ValueError(f"Command \"{name}\" already exists.")
        self.__commands[name] = {"command": command, "description": description}

    def pretty(self, address: str) -> str:
        nickname = self.session.nickname_of(address) if self.session else None
        return f"{address} - {nickname}" if nickname else address

    # Listeners, called on receive / timer threads.

    def on_message(self, transport: Transport, source: str, message: Message, group: str | None) -> None:
        if self.session is None:
            return
        if message.type == protocol.TYPE_CHAT:
            nickname = self.session.nickname_of(source) or "unknown"
            when = ui_helpers.format_timestamp(message.header(protocol.HEADER_TS))
            safe_print(f"[{when}] [{transport.value}] {nickname} ({source}): {message.payload}")

        elif message.type in protocol.MODERATION_TYPES:
            target = message.header(protocol.HEADER_TARGET)
            is_ban = message.type == protocol.TYPE_MBLOCK
            if target == self.session.local_address:
                safe_print("[system] " + ("You have been banned by the host." if is_ban
                                          else "The host has unbanned you."))
            else:
                safe_print(f"[system] Host {'banned' if is_ban else 'unbanned'} {self.pretty(target)}.")

    def on_peer(self, address: str, added: bool, transport: Transport, group: str | None) -> None:
        where = f"{transport.value} {group}" if group else transport.value
        safe_print(f"[system] {self.pretty(address)} {'joined' if added else 'left'} ({where}).")

    # Commands

    def join(self, argument: str) -> None:
        group = self.session.join(argument or None)
        self.session.set_mode(Transport.MULTICAST)
        safe_print(f"[system] Joined group {group}:{self.session.config.port}"
                   f"{' (as host)' if self.session.is_host else ''}.")

    def leave(self, argument: str) -> None:
        group = self.session.current_multicast_group()
        self.session.leave()
        if group:
            safe_print(f"[system] Left group {group}.")

    def set_mode(self, argument: str) -> None:
        try:
            mode = Transport(argument.strip().lower())
        except ValueError:
            safe_print("Usage: /mode broadcast|multicast")
            return
        self.session.set_mode(mode)
        safe_print(f"[system] Mode: {mode.value}.")

    def set_host(self, argument: str) -> None:
        self.session.set_host(argument.strip().lower() in ("on", "1", "yes", "true"))
        safe_print(f"[system] Host role {'on' if self.session.is_host else 'off'}.")

    def set_ttl(self, argument: str) -> None:
        if not argument.strip().isnumeric():
            safe_print("Usage: /ttl <n>")
            return
        self.session.set_ttl(int(argument))
        safe_print(f"[system] TTL is {self.session.config.ttl}.")

    def ban(self, argument: str) -> None:
        self.session.ban(argument)
        safe_print(f"[system] Host: banned {self.pretty(argument.strip())}.")

    def unban(self, argument: str) -> None:
        self.session.unban(argument)
        safe_print(f"[system] Host: unbanned {self.pretty(argument.strip())}.")

    def ignore(self, argument: str) -> None:
        self.session.block(argument)
        safe_print(f"[system] Locally ignoring {self.pretty(argument.strip())}.")

    def unignore(self, argument: str) -> None:
        self.session.unblock(argument)
        safe_print(f"[system] Stopped ignoring {self.pretty(argument.strip())}.")

    def show_peers(self, argument: str) -> None:
        peers = self.session.peers()
        ignored = self.session.blocklist.snapshot()
        safe_print("[PEERS]" if peers else "[PEERS] none")
        for peer in peers:
            safe_print(f"- {self.pretty(peer)}{' (ignored)' if peer in ignored else ''}")

    def show_banned(self, argument: str) -> None:
        banned = self.session.banned()
        safe_print("[BANNED]" if banned else "[BANNED] none")
        for address in banned:
            safe_print(f"- {self.pretty(address)}")

    def set_nick(self, argument: str) -> None:
        self.session.config.nickname = argument.strip()
        safe_print(f"[system] Nickname: {self.session.config.nickname or '(none)'}.")

    def show_help(self, argument: str) -> None:
        for name, entry in self.__commands.items():
            safe_print(f"{name} {entry['description']}")
        safe_print("Anything else is sent as chat.")

    def quit(self, argument: str) -> None:
        self.running = False

    def handle_line(self, line: str) -> None:
        if line.startswith("/"):
            name, _, argument = line.partition(" ")
            entry = self.__commands.get(name)
            if entry is None:
                safe_print(f"Unknown command {name}, try /help.")
                return
            entry["command"](argument)
            return

        if self.session.send_chat(line) is not None:
            nickname = self.session.config.nickname or "You"
            safe_print(f"[{ui_helpers.format_timestamp(None)}] [{self.session.mode.value}] {nickname}: {line}")

    def run(self, session: ChatSession) -> None:
        self.session = session
        self.running = True
        safe_print(f"LAN chat on {session.interface}, port {session.config.port}. /help for commands.")

        while self.running:
            try:
                line = input().strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                continue
            try:
                self.handle_line(line)
            except (LanChatError, ValueError) as e:
                safe_print(f"[error] {e}")
            except OSError as e:
                self.logger.error(f"Send error: {e}")


def main():
    config, verbose = ui_helpers.handle_terminal()
    logger = ui_helpers.create_logger(verbose)

    client = ChatClient(logger)
    session = ui_helpers.initialise_session(
        config,
        message_listener=client.on_message,
        peer_listener=client.on_peer,
        logger=logger
    )
    try:
        client.run(session)
    finally:
        session.stop()
        safe_print("[system] bye")


if __name__ == "__main__":
    main()
