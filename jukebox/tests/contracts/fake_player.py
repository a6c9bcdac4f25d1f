"""
Scripted stand-in for the external playback program.

Usage: python fake_player.py SONG_FILE

SONG_FILE is a JSON script describing how this "song" behaves:

    {"duration": 0.3, "exit_code": 0, "ignore_quit": false, "record": "/tmp/x.log"}

With "fail_first": N and "counter": PATH, the first N runs exit 3 at once.
With "banner": TEXT it first writes TEXT encoded as latin-1, the way players
echo tags from old files.

While playing it prints a status line every TICK_SEC. It reads commands on
stdin: "quit" exits 0 (unless ignore_quit), "pause" toggles pause (paused
time does not count toward duration), anything else is just recorded. When
the duration is used up it exits with exit_code.
"""

import json
import os
import sys
import threading
import time

TICK_SEC = 0.05


def main(argv):
    with open(argv[-1]) as f:
        script = json.load(f)

    duration = float(script.get("duration", 0.3))
    exit_code = int(script.get("exit_code", 0))
    ignore_quit = bool(script.get("ignore_quit", False))
    record_path = script.get("record")

    fail_first = int(script.get("fail_first", 0))
    if fail_first:
        counter = script["counter"]
        runs = int(open(counter).read()) if os.path.exists(counter) else 0
        with open(counter, "w") as out:
            out.write(str(runs + 1))
        if runs < fail_first:
            os._exit(3)

    paused = threading.Event()

    def record(line):
        if record_path:
            with open(record_path, "a") as out:
                out.write(line + "\n")

    def read_commands():
        for raw in sys.stdin:
            command = raw.strip()
            record(command)
            if command == "quit" and not ignore_quit:
                sys.stdout.flush()
                os._exit(0)
            elif command == "pause":
                if paused.is_set():
                    paused.clear()
                else:
                    paused.set()

    banner = script.get("banner")
    if banner:
        sys.stdout.buffer.write(banner.encode("latin-1") + b"\n")
        sys.stdout.buffer.flush()

    record(f"pid {os.getpid()}")
    threading.Thread(target=read_commands, daemon=True).start()

    played = 0.0
    while played < duration:
        time.sleep(TICK_SEC)
        if not paused.is_set():
            played += TICK_SEC
        print(f"A: {played:.2f} paused={paused.is_set()}", flush=True)

    sys.stdout.flush()
    os._exit(exit_code)


if __name__ == "__main__":
    main(sys.argv)
