#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# Time spent playing per player and per time control, from large PGN streams (Lichess exports).
#
# Output: one CSV row per username with, for each of ultrabullet, bullet, blitz, rapid, classical:
# - <perf>_games            = number of games kept for that player.
# - <perf>_approximate_time = sum over games of base + 40 * increment (seconds).
# - <perf>_real_time        = sum over games of the duration reconstructed from [%clk] comments (seconds).
# Buckets without games are left empty.
#
# Notes:
# - Games without a time control are skipped right after the headers (their movetext is not parsed).
# - A malformed game (undecodable header, unreadable clock, illegal move) is skipped and counted;
#   --strict makes it fatal instead.
# - I/O errors are fatal (abort the run).

from __future__ import annotations

import argparse
import bz2
import csv
import functools
import gzip
import io
import lzma
import sys
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, TextIO, Tuple

import chess
import chess.pgn
import zstandard as zstd
from tqdm import tqdm

from time_spent import (
    PERFS,
    PROGRESS_EVERY,
    InvalidGameError,
    Stats,
    TimeSpent,
    TimeSpentCollector,
    TimeSpents,
)


DEFAULT_OUT = Path("time-spent.csv")


# ----------------------------
# python-chess adapter
# ----------------------------

class ClockVisitor(chess.pgn.BaseVisitor[Optional[str]]):
    """Forward python-chess callbacks for one game to a TimeSpentCollector.

    result() closes the game, so it is closed even when the parser skipped its body.
    """

    def __init__(self, collector: TimeSpentCollector) -> None:
        self.collector = collector

    def begin_game(self) -> None:
        self.collector.begin_game()

    def visit_header(self, tagname: str, tagvalue: str) -> None:
        self.collector.header(tagname, tagvalue)

    def end_headers(self) -> Optional[chess.pgn.SkipType]:
        if self.collector.end_headers():
            return chess.pgn.SKIP
        return None

    def visit_move(self, board: chess.Board, move: chess.Move) -> None:
        self.collector.move()

    def visit_comment(self, comment) -> None:
        # Recent python-chess releases hand over all comments of a node as a list.
        if not isinstance(comment, str):
            comment = " ".join(comment)
        self.collector.comment(comment)

    def begin_variation(self) -> Optional[chess.pgn.SkipType]:
        if self.collector.begin_variation():
            return chess.pgn.SKIP
        return None

    def handle_error(self, error: Exception) -> None:
        self.collector.parse_error(error)

    def result(self) -> Optional[str]:
        return self.collector.end_game()


def read_time_spent(stream: TextIO, collector: TimeSpentCollector) -> TimeSpentCollector:
    """Feed every game of `stream` to `collector`."""
    visitor = functools.partial(ClockVisitor, collector)
    while True:
        seen = collector.stats.games_seen
        chess.pgn.read_game(stream, Visitor=visitor)
        # The visitor result is None for recorded games too: end of input is "no new game began".
        if collector.stats.games_seen == seen:
            break
    return collector


# ----------------------------
# Input
# ----------------------------

def open_pgn(path: str) -> TextIO:
    """Open a PGN file as text, picking the decompressor from the extension ('-' is stdin)."""
    if path == "-":
        return io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    if path.endswith(".zst"):
        fh = open(path, "rb")
        reader = zstd.ZstdDecompressor().stream_reader(fh, read_across_frames=True, closefd=True)
        return io.TextIOWrapper(reader, encoding="utf-8", errors="replace")
    if path.endswith(".bz2"):
        return bz2.open(path, "rt", encoding="utf-8", errors="replace")
    if path.endswith(".xz"):
        return lzma.open(path, "rt", encoding="utf-8", errors="replace")
    if path.endswith(".gz"):
        return gzip.open(path, "rt", encoding="utf-8", errors="replace")
    if path.endswith(".lz4"):
        import lz4.frame

        return lz4.frame.open(path, "rt", encoding="utf-8", errors="replace")
    return open(path, "r", encoding="utf-8", errors="replace")


# ----------------------------
# Output
# ----------------------------

def csv_header(ratings: bool = False) -> List[str]:
    cols = ["username"]
    for perf in PERFS:
        cols += [f"{perf}_games", f"{perf}_approximate_time", f"{perf}_real_time"]
        if ratings:
            cols.append(f"{perf}_average_rating")
    return cols


def csv_cells(spent: TimeSpent, ratings: bool = False) -> List[str]:
    n = 4 if ratings else 3
    if spent.games == 0:
        return [""] * n
    cells = [str(spent.games), str(spent.approximate), str(spent.exact)]
    if ratings:
        avg = spent.average_rating()
        cells.append("" if avg is None else str(avg))
    return cells


def write_csv(out_path: Path, rows: Iterable[Tuple[str, TimeSpents]], ratings: bool = False) -> None:
    """Write (username, TimeSpents) rows, atomically."""
    tmp = out_path.with_suffix(out_path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8", newline="") as fh:
        w = csv.writer(fh)
        w.writerow(csv_header(ratings))
        for username, spents in rows:
            row = [username]
            for _, spent in spents.items():
                row += csv_cells(spent, ratings)
            w.writerow(row)
    tmp.replace(out_path)


def fmt_int(n: int) -> str:
    return f"{n:,}".replace(",", " ")


def format_stats(s: Stats, players: int, elapsed: float) -> str:
    return (
        f"elapsed={elapsed / 60:.1f}m "
        f"games_seen={fmt_int(s.games_seen)} games_used={fmt_int(s.games_used)} "
        f"players={fmt_int(players)} skipped={fmt_int(s.games_skipped)} "
        f"skipped_no_tc={fmt_int(s.games_skipped_no_time_control)} "
        f"skipped_short={fmt_int(s.games_skipped_short)} "
        f"skipped_underflow={fmt_int(s.games_skipped_underflow)} "
        f"skipped_bad_clock={fmt_int(s.games_skipped_bad_clock)} "
        f"skipped_bad_header={fmt_int(s.games_skipped_bad_header)} "
        f"skipped_parse={fmt_int(s.games_skipped_parse_error)}"
    )


# ----------------------------
# CLI
# ----------------------------

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        description="Time spent playing per player and time control, from [%clk] annotated PGN."
    )
    ap.add_argument(
        "--pgn",
        required=True,
        help="Input PGN (.pgn, .zst, .bz2, .xz, .gz, .lz4), or '-' for stdin.",
    )
    ap.add_argument(
        "--total-games",
        type=int,
        default=None,
        help="Number of games in the input, for a proper progress estimate.",
    )
    ap.add_argument("--out", type=Path, default=DEFAULT_OUT, help="Output CSV.")
    ap.add_argument("--strict", action="store_true", help="Abort on the first malformed game instead of skipping it.")
    ap.add_argument("--ratings", action="store_true", help="Add a <perf>_average_rating column.")
    ap.add_argument("--verbose", action="store_true", help="Log every malformed game that is skipped.")
    ap.add_argument(
        "--progress-every",
        type=int,
        default=PROGRESS_EVERY,
        help="Games between progress bar updates; 0 disables the bar.",
    )
    return ap.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    pb = tqdm(
        total=args.total_games,
        unit="game",
        desc="Reading games",
        disable=args.progress_every <= 0,
        file=sys.stderr,
    )

    # Messages go through tqdm so they do not tear the progress bar.
    warn: Optional[Callable[[str], None]] = None
    if args.verbose:
        warn = functools.partial(tqdm.write, file=sys.stderr)

    collector = TimeSpentCollector(
        strict=args.strict,
        progress=pb.update,
        warn=warn,
        progress_every=args.progress_every,
    )

    t0 = time.time()
    pgn_stream = open_pgn(args.pgn)
    try:
        read_time_spent(pgn_stream, collector)
    except InvalidGameError as e:
        print(f"ERROR: invalid game ({e.reason}); aborting. {e}", file=sys.stderr, flush=True)
        raise
    finally:
        pb.close()
        if args.pgn == "-":
            # Leave the process stdin open.
            pgn_stream.detach()
        else:
            pgn_stream.close()

    write_csv(args.out, collector.table.items(), ratings=args.ratings)
    print(f"done: {format_stats(collector.stats, len(collector.table), time.time() - t0)}", file=sys.stderr, flush=True)
    print(f"done: out={args.out}", file=sys.stderr, flush=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
