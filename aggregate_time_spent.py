#!/usr/bin/env python3
"""
aggregate_time_spent.py

Merge time-spent CSVs (produced by time_spent_stats.py), e.g. one per monthly Lichess export.

- Rows are matched by username; games, approximate and real times are summed exactly per bucket.
- When the inputs carry <perf>_average_rating, the merged average is re-weighted by games. The rating
  total is reconstructed as average * games, so it can be off by the integer rounding of each input.
- Empty cells (no games in that bucket) contribute nothing.

The CSV format being read matches write_csv() in time_spent_stats.py.
"""

from __future__ import annotations

import argparse
import csv
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from time_spent import PERFS, TimeSpent, TimeSpents
from time_spent_stats import write_csv


@dataclass
class FileStats:
    path: Path
    ratings: bool
    users: Dict[str, TimeSpents] = field(default_factory=dict)


@dataclass
class PerfSummary:
    players: int = 0
    games: int = 0
    approximate: int = 0
    exact: int = 0


def _cell_int(row: Dict[str, str], name: str) -> int:
    v = (row.get(name) or "").strip()
    if not v:
        return 0
    return int(v)


def parse_csv(path: Path) -> FileStats:
    with path.open("r", encoding="utf-8", newline="") as fh:
        reader = csv.DictReader(fh)
        cols = reader.fieldnames or []
        if not cols or cols[0] != "username":
            raise ValueError(f"Missing CSV header row (username,...) in {path}")
        missing = [f"{p}_real_time" for p in PERFS if f"{p}_real_time" not in cols]
        if missing:
            raise ValueError(f"Missing columns {missing} in {path}")

        fs = FileStats(path=path, ratings=all(f"{p}_average_rating" in cols for p in PERFS))
        for line_no, row in enumerate(reader, start=2):
            username = row["username"]
            if not username:
                continue
            spents = fs.users.get(username)
            if spents is None:
                spents = TimeSpents()
                fs.users[username] = spents
            for perf in PERFS:
                try:
                    games = _cell_int(row, f"{perf}_games")
                    part = TimeSpent(
                        games=games,
                        approximate=_cell_int(row, f"{perf}_approximate_time"),
                        exact=_cell_int(row, f"{perf}_real_time"),
                    )
                    if fs.ratings:
                        avg = _cell_int(row, f"{perf}_average_rating")
                        if avg:
                            part.rating_total = avg * games
                            part.rated_games = games
                except ValueError as e:
                    raise ValueError(f"Invalid {perf} cells at {path}:{line_no}: {e}") from e
                spents[perf].merge(part)
    return fs


def merge(files: List[FileStats]) -> Dict[str, TimeSpents]:
    users: Dict[str, TimeSpents] = {}
    for fs in files:
        for username, spents in fs.users.items():
            acc = users.get(username)
            if acc is None:
                acc = TimeSpents()
                users[username] = acc
            for perf, spent in spents.items():
                acc[perf].merge(spent)
    return users


def summarize(users: Dict[str, TimeSpents]) -> Dict[str, PerfSummary]:
    out = {perf: PerfSummary() for perf in PERFS}
    for spents in users.values():
        for perf, spent in spents.items():
            if spent.games == 0:
                continue
            s = out[perf]
            s.players += 1
            s.games += spent.games
            s.approximate += spent.approximate
            s.exact += spent.exact
    return out


def iter_input_paths(args: argparse.Namespace) -> List[Path]:
    if args.paths:
        paths = [Path(p) for p in args.paths]
    else:
        paths = sorted(Path().glob(args.glob))

    out: List[Path] = []
    for p in paths:
        if p.is_dir():
            out.extend(sorted(p.glob("time-spent*.csv")))
        else:
            out.append(p)

    return [p for p in out if p.exists() and p.is_file()]


def print_summary(summary: Dict[str, PerfSummary]) -> None:
    cols = [
        ("perf", 12),
        ("players", 10),
        ("games", 12),
        ("approx_h", 12),
        ("real_h", 12),
        ("real/approx", 11),
    ]
    fmt = " ".join([f"{{:{w}}}" for _, w in cols])

    print(fmt.format(*[c[0] for c in cols]))
    print(fmt.format(*["-" * c[1] for c in cols]))

    for perf, s in summary.items():
        ratio = f"{s.exact / s.approximate:.4f}" if s.approximate else "-"
        print(
            fmt.format(
                perf,
                str(s.players),
                str(s.games),
                f"{s.approximate / 3600:.1f}",
                f"{s.exact / 3600:.1f}",
                ratio,
            )
        )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        description="Merge time-spent CSVs (per username and time control)."
    )
    ap.add_argument(
        "paths",
        nargs="*",
        help="CSV files and/or directories. If omitted, uses --glob.",
    )
    ap.add_argument(
        "--glob",
        default="data/time-spent*.csv",
        help="Glob used when no positional paths are provided.",
    )
    ap.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Write the merged CSV here (otherwise only the summary is printed).",
    )
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    paths = iter_input_paths(args)
    if not paths:
        print(
            f"No input CSV files found (paths={args.paths!r}, glob={args.glob!r}).",
            file=sys.stderr,
        )
        return 2

    files: List[FileStats] = []
    for p in paths:
        try:
            files.append(parse_csv(p))
        except (OSError, ValueError) as e:
            print(f"skip: {p}: {e}", file=sys.stderr)
            continue

    if not files:
        print("No valid CSV files after parsing.", file=sys.stderr)
        return 2

    users = merge(files)
    print_summary(summarize(users))

    if args.out is not None:
        ratings = all(fs.ratings for fs in files)
        write_csv(args.out, ((u, users[u]) for u in sorted(users)), ratings=ratings)
        print(f"done: files={len(files)} players={len(users)} out={args.out}", file=sys.stderr)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
