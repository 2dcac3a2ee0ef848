from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, TextIO, Union

from kpxc_getpw import __version__
from kpxc_getpw.association import AssociationStore
from kpxc_getpw.errors import ConfigSaveError, KpxcError, NoMatchError
from kpxc_getpw.protocol import CredentialEntry, KeePassXCSession, ensure_association
from kpxc_getpw.settings import Settings, load_settings
from kpxc_getpw.transport import Channel, connect

logger = logging.getLogger(__name__)

PROG = "kpxc-getpw"

Connector = Callable[..., Awaitable[Channel]]


@dataclass(frozen=True)
class GetLogin:
    url: str
    all_entries: bool = False


@dataclass(frozen=True)
class GetPassword:
    url: str
    login: Optional[str] = None


Command = Union[GetLogin, GetPassword]


# ----------------------------
# Entry selection
# ----------------------------

def select_logins(entries: Sequence[CredentialEntry], all_entries: bool = False) -> List[CredentialEntry]:
    """First entry (the peer's best match), or every entry in peer order."""
    if not entries:
        raise NoMatchError("No entries found for URL.")
    return list(entries) if all_entries else [entries[0]]


def find_entry(entries: Sequence[CredentialEntry], login: Optional[str] = None) -> CredentialEntry:
    if not entries:
        raise NoMatchError("No entries found for URL.")
    if login is None:
        return entries[0]
    for entry in entries:
        if entry.login == login:
            return entry
    raise NoMatchError(f"No entry found for login name {login}.")


def render(command: Command, entries: Sequence[CredentialEntry]) -> List[str]:
    if isinstance(command, GetLogin):
        return [e.login for e in select_logins(entries, command.all_entries)]
    return [find_entry(entries, command.login).password]


# ----------------------------
# Execution
# ----------------------------

async def fetch_entries(
    url: str,
    settings: Settings,
    store: AssociationStore,
    *,
    connector: Connector = connect,
) -> List[CredentialEntry]:
    """
    One full session: connect, key exchange, association, get-logins.
    The channel is closed on every path; the store is only mutated in memory.
    """
    channel = await connector(settings.socket_path, settings.proxy, timeout=settings.timeout)
    async with KeePassXCSession(
        channel,
        timeout=settings.timeout,
        associate_timeout=settings.associate_timeout,
    ) as session:
        await session.handshake()
        await ensure_association(session, store)
        return await session.get_logins(url)


async def execute(
    command: Command,
    settings: Settings,
    *,
    out: TextIO,
    connector: Connector = connect,
) -> None:
    store = AssociationStore(settings.config_path, settings.passphrase)
    store.load()
    try:
        entries = await fetch_entries(command.url, settings, store, connector=connector)
    except Exception:
        # Keep identities obtained before a later failure, but report that failure.
        if store.dirty:
            try:
                store.save()
            except ConfigSaveError as save_error:
                logger.error("%s", save_error)
        raise
    if store.dirty:
        store.save()

    for line in render(command, entries):
        out.write(line + "\n")


# ----------------------------
# Argument parsing
# ----------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Retrieve logins and passwords from a running KeePassXC instance "
                    "through its browser integration.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", dest="config_path", metavar="PATH",
                        help="Association store file (default: ~/.config/kpxc-getpw/associations.json)")
    parser.add_argument("--socket", dest="socket_path", metavar="PATH",
                        help="Browser integration socket of KeePassXC")
    parser.add_argument("--proxy", metavar="CMD",
                        help="Talk through a native-messaging proxy command such as keepassxc-proxy")
    parser.add_argument("--timeout", type=float, metavar="SECONDS",
                        help="Seconds to wait for each reply")
    parser.add_argument("--associate-timeout", dest="associate_timeout", type=float, metavar="SECONDS",
                        help="Seconds to wait for the association to be approved in KeePassXC")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Log progress to stderr (repeat for debug output)")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("get-login", help="Gets the login name for the specified URL.")
    p.add_argument("url")
    p.add_argument("-a", "--all", dest="all_entries", action="store_true",
                   help="Display all matching entries, not just the first.")

    p = sub.add_parser("get-pw", help="Gets the password for the specified URL.")
    p.add_argument("url")
    p.add_argument("-l", "--login",
                   help="Get password for the entry with the specified login, instead of the first matching one")
    return parser


def _command_from_args(args: argparse.Namespace) -> Command:
    if args.command == "get-login":
        return GetLogin(url=args.url, all_entries=args.all_entries)
    return GetPassword(url=args.url, login=args.login)


def _configure_logging(verbosity: int) -> None:
    if verbosity <= 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    out: Optional[TextIO] = None,
    connector: Connector = connect,
    auto_dotenv: bool = True,
) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return int(e.code or 0)

    _configure_logging(args.verbose)

    try:
        settings = load_settings(
            {
                "config_path": args.config_path,
                "socket_path": args.socket_path,
                "proxy": args.proxy,
                "timeout": args.timeout,
                "associate_timeout": args.associate_timeout,
            },
            auto_dotenv=auto_dotenv,
        )
        command = _command_from_args(args)
        asyncio.run(execute(command, settings, out=out if out is not None else sys.stdout, connector=connector))
    except KpxcError as e:
        logger.debug("command failed", exc_info=True)
        sys.stderr.write(f"{PROG}: {e}\n")
        return 1
    return 0


def run() -> None:
    sys.exit(main())
