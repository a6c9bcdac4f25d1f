#!/usr/bin/env python3
"""
Jukebox command line.

    python -m jukebox start [--daemon]
    python -m jukebox skip | stop | pause | status | volume N
    python -m jukebox vote SONG_ID VOTER | unvote SONG_ID VOTER
    python -m jukebox queue | history | add PATH ... | zap PLAYER_ID

Exit status: 0 on success, 1 on any jukebox error, 2 when the player gave up
after repeated crashes.
"""

import argparse
import logging
import logging.handlers
import sys
from typing import List, Optional

from jukebox import __version__
from jukebox.config import JukeboxConfig, load_config
from jukebox.errors import CrashLoop, JukeboxError
from jukebox.music_logic.playlist import Playlist
from jukebox.player.control import PlayerControl, start_player, zap
from jukebox.state.store import JukeboxStore

logger = logging.getLogger("jukebox")

EXIT_ERROR = 1
EXIT_CRASH_LOOP = 2


def configure_logging(config: JukeboxConfig) -> None:
    log_level = config.log_level.upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if config.log_file:
        # WatchedFileHandler reopens the file after external rotation
        handler = logging.handlers.WatchedFileHandler(config.log_file)
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logging.getLogger().addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jukebox", description="Voter-fair jukebox")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--player",
        help="Player id to act on (default: JUKEBOX_PLAYER_ID)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Run the player")
    start.add_argument("--daemon", action="store_true", help="Detach and run in the background")

    commands.add_parser("stop", help="Stop the running player")
    commands.add_parser("skip", help="Skip the current song")
    commands.add_parser("pause", help="Toggle pause")
    commands.add_parser("status", help="Show what the player is doing")

    volume = commands.add_parser("volume", help="Set the volume")
    volume.add_argument("level")

    zap_cmd = commands.add_parser("zap", help="Forget a player's runtime state")
    zap_cmd.add_argument("player_id")

    commands.add_parser("queue", help="Show the upcoming play order")

    for name in ("vote", "unvote"):
        cmd = commands.add_parser(name, help=f"{name.capitalize()} for a song")
        cmd.add_argument("song_id", type=int)
        cmd.add_argument("voter")

    add = commands.add_parser("add", help="Add a song to the library")
    add.add_argument("path")
    add.add_argument("--artist", default="")
    add.add_argument("--album", default="")
    add.add_argument("--title", default="")
    add.add_argument("--length", type=int, default=0, help="Length in seconds")
    add.add_argument("--track", type=int, default=0)
    add.add_argument("--offline", action="store_true", help="Add the song as not currently playable")

    history = commands.add_parser("history", help="Show recently played songs")
    history.add_argument("--limit", type=int, default=20)

    return parser


def run_command(args: argparse.Namespace, config: JukeboxConfig) -> int:
    if args.command == "start":
        return start_player(config, daemonize=args.daemon)

    store = JukeboxStore(config.db_path)
    try:
        player_id = config.player_id
        control = PlayerControl(store, player_id)

        if args.command == "stop":
            control.stop()
        elif args.command == "skip":
            control.skip()
        elif args.command == "pause":
            if not control.pause():
                print(f"Player {player_id} cannot pause")
        elif args.command == "volume":
            print(control.set_volume(args.level))
        elif args.command == "status":
            for key, value in control.status().items():
                print(f"{key}: {value}")
        elif args.command == "zap":
            if not zap(store, args.player_id):
                print(f"Player {args.player_id} had no runtime state")
        elif args.command == "queue":
            for position, entry in enumerate(Playlist(store, player_id).preview(), start=1):
                if entry.is_random:
                    print("(random pick)")
                    break
                voters = ", ".join(sorted(entry.contributing_voters))
                print(f"{position:3d}. [{entry.song.song_id}] {entry.song.display_name}  ({voters})")
        elif args.command == "vote":
            if not store.vote(args.song_id, args.voter, player_id):
                print(f"{args.voter} already voted for song {args.song_id}")
        elif args.command == "unvote":
            store.unvote(args.song_id, args.voter, player_id)
        elif args.command == "add":
            song = store.add_song(
                args.path,
                artist=args.artist,
                album=args.album,
                title=args.title,
                length=args.length,
                track=args.track,
                online=not args.offline,
            )
            print(song.song_id)
        elif args.command == "history":
            for record in store.list_history(player_id, limit=args.limit):
                print(f"{record.timestamp:.0f}  [{record.song_id}] {record.display_name}")
    finally:
        store.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config()
    except ValueError:
        return EXIT_ERROR
    if args.player:
        config.player_id = args.player
        try:
            config.validate()
        except ValueError as e:
            print(f"jukebox: {e}", file=sys.stderr)
            return EXIT_ERROR

    configure_logging(config)

    try:
        return run_command(args, config)
    except CrashLoop as e:
        logger.critical(f"Player {config.player_id} gave up: {e}")
        return EXIT_CRASH_LOOP
    except JukeboxError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
