"""
FTB — File Tree Browser  CLI entry point.

Usage:
    python -m ftb serve
    python -m ftb peers [--wait N]
    python -m ftb search {path,filename,substring} <query> [--wait N]
    python -m ftb download <peer> <remote-path> [<local-path>] [--wait N]
    python -m ftb upload <peer> <local-path> <remote-path> [--wait N]
    python -m ftb delete <peer> <remote-path> [--wait N]

Global options (before the command) override the properties file:
    --config FILE  --root DIR  --id NAME  --log-file FILE  -v
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Callable, Optional

from .config import DEFAULT_PROPERTIES, Config, load_config
from .node import Peer
from .outcome import ConsoleSink, Outcome, QueueSink
from .progress import NullProgress, TransferProgress
from .protocol import SEARCH_TYPES, Message
from .transport import StartupError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NO_ANSWER = 2


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool, log_file: Optional[Path] = None) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        level=level,
    )
    if log_file is not None:
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(threadName)s %(name)s: %(message)s"))
        handler.setLevel(logging.DEBUG)
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.DEBUG)
        # the console keeps the level chosen by -v
        for h in root.handlers:
            if h is not handler:
                h.setLevel(level)


def _build_config(args: argparse.Namespace) -> Config:
    return load_config(
        properties=args.config,
        id=args.id,
        root_dir=args.root,
        log_file=args.log_file,
    )


def _progress_factory(quiet: bool) -> Callable[[str, str], "TransferProgress | NullProgress"]:
    def make(peer: str, direction: str) -> "TransferProgress | NullProgress":
        if quiet:
            return NullProgress()
        return TransferProgress(peer_name=peer, direction=direction)
    return make


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def cmd_serve(args: argparse.Namespace, config: Config) -> int:
    """Run a peer until Ctrl-C, printing every outcome."""
    peer = Peer(config, sink=ConsoleSink(), progress=_progress_factory(args.quiet))
    peer.start()

    print(f"[FTB] {peer.identity}  serving {Path(config.root_dir).resolve()}")
    print(f"[FTB] Services: {config.services}")
    print("[FTB] Press Ctrl-C to stop.\n")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        peer.close()
    return EXIT_OK


def cmd_peers(args: argparse.Namespace, config: Config) -> int:
    """List peers whose beacons arrive within --wait seconds."""
    peer = Peer(config, serve=False)
    peer.start()

    wait = max(1.0, args.wait)
    print(f"Listening for beacons for {wait:g}s …", file=sys.stderr)
    try:
        time.sleep(wait)
    finally:
        entries = peer.peers()
        peer.close()

    if not entries:
        print("No peers found.")
        return EXIT_OK

    print(f"\n{'IDENTITY':<36} {'HOST':<18} {'PORT':<6} SERVICES")
    print("-" * 96)
    for e in sorted(entries, key=lambda e: e.identity):
        print(f"{e.identity:<36} {e.host:<18} {e.server_port:<6} {e.services}")
    return EXIT_OK


def _request(
    args: argparse.Namespace,
    config: Config,
    send: Callable[[Peer], Optional[Message]],
    collect_all: bool = False,
) -> int:
    """
    Start a peer, send one request and wait for its outcome(s).

    *collect_all* keeps listening for the whole --wait window (search fans
    out to every peer); otherwise the first outcome ends the command.
    """
    sink = QueueSink()
    console = ConsoleSink()
    peer = Peer(config, sink=sink, progress=_progress_factory(args.quiet),
                serve=False)
    peer.start()

    outcomes: list[Outcome] = []
    try:
        request = send(peer)
        if request is None:
            print("[FTB] Request could not be sent.", file=sys.stderr)
            return EXIT_FAILED

        deadline = time.monotonic() + args.wait
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            outcome = sink.get(timeout=remaining)
            if outcome is None:
                break
            if outcome.request_key != request.key:
                continue
            console(outcome)
            outcomes.append(outcome)
            if not collect_all:
                break
    finally:
        peer.close()

    if not outcomes:
        print("[FTB] No answer.", file=sys.stderr)
        return EXIT_NO_ANSWER
    return EXIT_OK if any(o.success for o in outcomes) else EXIT_FAILED


def cmd_search(args: argparse.Namespace, config: Config) -> int:
    return _request(args, config,
                    lambda p: p.search(args.type, args.query),
                    collect_all=True)


def cmd_download(args: argparse.Namespace, config: Config) -> int:
    local = Path(args.local) if args.local else None
    return _request(args, config,
                    lambda p: p.download(args.peer, args.remote, local))


def cmd_upload(args: argparse.Namespace, config: Config) -> int:
    local = Path(args.local)
    if not local.is_file():
        print(f"Error: not a file: {local}", file=sys.stderr)
        return EXIT_FAILED
    return _request(args, config,
                    lambda p: p.upload(args.peer, local, args.remote))


def cmd_delete(args: argparse.Namespace, config: Config) -> int:
    return _request(args, config,
                    lambda p: p.delete(args.peer, args.remote))


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _add_wait(p: argparse.ArgumentParser, default: float) -> None:
    p.add_argument("--wait", type=float, default=default,
                   help=f"Seconds to wait for answers (default {default:g})")
    p.add_argument("--quiet", action="store_true", help="No progress bars")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ftb",
        description="FTB — File Tree Browser  (multicast discovery, TCP file exchange)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    parser.add_argument("--config", type=Path, default=None,
                        help=f"Properties file (default ./{DEFAULT_PROPERTIES})")
    parser.add_argument("--root", default=None,
                        help="Root of the shared file tree")
    parser.add_argument("--id", default=None,
                        help="Identity name (default: login name)")
    parser.add_argument("--log-file", type=Path, default=None,
                        help="Also write a debug log to FILE")

    sub = parser.add_subparsers(dest="command", required=True)

    # --- serve ---
    p_serve = sub.add_parser("serve", help="Run a peer and answer requests")
    p_serve.add_argument("--quiet", action="store_true", help="No progress bars")

    # --- peers ---
    p_peers = sub.add_parser("peers", help="List peers on the local network")
    p_peers.add_argument("--wait", type=float, default=3,
                         help="Seconds to listen for beacons (default 3)")

    # --- search ---
    p_search = sub.add_parser("search", help="Search every peer's file tree")
    p_search.add_argument("type", choices=SEARCH_TYPES, type=str.lower)
    p_search.add_argument("query")
    _add_wait(p_search, 5)

    # --- download ---
    p_down = sub.add_parser("download", help="Fetch a file from a peer")
    p_down.add_argument("peer", help="Target identity (user@host)")
    p_down.add_argument("remote", help="Path under the peer's root, e.g. /notes.txt")
    p_down.add_argument("local", nargs="?", default=None,
                        help="Where to save (default: <root>/<basename>)")
    _add_wait(p_down, 30)

    # --- upload ---
    p_up = sub.add_parser("upload", help="Send a file to a peer")
    p_up.add_argument("peer", help="Target identity (user@host)")
    p_up.add_argument("local", help="Local file to send")
    p_up.add_argument("remote", help="Destination under the peer's root")
    _add_wait(p_up, 30)

    # --- delete ---
    p_del = sub.add_parser("delete", help="Delete a file at a peer")
    p_del.add_argument("peer", help="Target identity (user@host)")
    p_del.add_argument("remote", help="Path under the peer's root")
    _add_wait(p_del, 10)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    config = _build_config(args)
    _setup_logging(args.verbose, config.log_file)

    handlers = {
        "serve":    cmd_serve,
        "peers":    cmd_peers,
        "search":   cmd_search,
        "download": cmd_download,
        "upload":   cmd_upload,
        "delete":   cmd_delete,
    }
    try:
        code = handlers[args.command](args, config)
    except StartupError as exc:
        print(f"[FTB] {exc}", file=sys.stderr)
        code = EXIT_FAILED
    sys.exit(code)


if __name__ == "__main__":
    main()
