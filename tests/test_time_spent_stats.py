import bz2
import csv
import gzip
import io
import lzma
import sys
from pathlib import Path

import pytest
import zstandard as zstd

# Ensure project root (parent of tests/) is importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import time_spent as ts  # noqa: E402
import time_spent_stats as tss  # noqa: E402


QUALIFYING = """\
[Event "Rated Blitz game"]
[Site "https://lichess.org/aaa"]
[White "alice"]
[Black "bob"]
[Result "1-0"]
[WhiteElo "1500"]
[BlackElo "1600"]
[TimeControl "180+2"]

1. e4 { [%clk 0:03:00] } 1... e5 { [%clk 0:03:00] } 2. Nf3 { [%clk 0:02:55] } 2... Nc6 { [%clk 0:02:50] } 1-0

"""

UNTIMED = """\
[Event "Casual Correspondence game"]
[Site "https://lichess.org/bbb"]
[White "alice"]
[Black "bob"]
[Result "0-1"]
[TimeControl "-"]

1. d4 d5 2. c4 e6 0-1

"""

WITH_VARIATION = """\
[Event "Rated Blitz game"]
[Site "https://lichess.org/ccc"]
[White "carol"]
[Black "dave"]
[Result "1/2-1/2"]
[TimeControl "180+2"]

1. e4 { [%clk 0:03:00] } ( 1. d4 { [%clk 0:03:00] } 1... d5 { this is no clock } ) 1... e5 { [%clk 0:03:00] } 2. Nf3 { [%clk 0:02:55] } 2... Nc6 { [%clk 0:02:50] } 1/2-1/2

"""

BAD_CLOCK = """\
[Event "Rated Blitz game"]
[Site "https://lichess.org/ddd"]
[White "alice"]
[Black "bob"]
[Result "1-0"]
[TimeControl "180+2"]

1. e4 { [%clk 0:03:00] } 1... e5 { [%clk 0:03:00] } 2. Nf3 { great move } 2... Nc6 { [%clk 0:02:50] } 1-0

"""

ILLEGAL_MOVE = """\
[Event "Rated Blitz game"]
[Site "https://lichess.org/eee"]
[White "erin"]
[Black "frank"]
[Result "1-0"]
[TimeControl "180+2"]

1. e4 { [%clk 0:03:00] } 1... e4 { [%clk 0:03:00] } 2. Nf3 { [%clk 0:02:55] } 2... Nc6 { [%clk 0:02:50] } 1-0

"""

PGN = QUALIFYING + UNTIMED + WITH_VARIATION + BAD_CLOCK + ILLEGAL_MOVE


def run(pgn: str, **kwargs) -> ts.TimeSpentCollector:
    collector = ts.TimeSpentCollector(**kwargs)
    return tss.read_time_spent(io.StringIO(pgn), collector)


def test_read_time_spent_single_game():
    collector = run(QUALIFYING)
    # 180 + 180 + 4 * 2 - (175 + 170) = 23; average time 180 + 80 = 260 -> blitz.
    blitz = collector.table["alice"]["blitz"]
    assert (blitz.games, blitz.approximate, blitz.exact) == (1, 260, 23)
    assert blitz.average_rating() == 1500
    assert collector.table["bob"]["blitz"].average_rating() == 1600
    assert collector.stats.games_seen == 1
    assert collector.stats.games_used == 1


def test_read_time_spent_mixed_stream():
    collector = run(PGN)

    assert collector.stats.games_seen == 5
    assert collector.stats.games_used == 2
    assert collector.stats.games_skipped_no_time_control == 1
    assert collector.stats.games_skipped_bad_clock == 1
    assert collector.stats.games_skipped_parse_error == 1

    # The variation neither adds plies nor breaks the clock reading.
    assert collector.table["carol"]["blitz"].exact == 23
    assert collector.table["carol"]["blitz"].games == 1

    # Untimed and broken games do not add anything for alice.
    assert collector.table["alice"]["blitz"].games == 1
    assert "erin" not in collector.table
    assert "frank" not in collector.table


def test_read_time_spent_empty_stream():
    collector = run("")
    assert collector.stats.games_seen == 0
    assert len(collector.table) == 0


def test_strict_mode_raises_on_bad_clock():
    with pytest.raises(ts.InvalidGameError, match="lichess.org/ddd"):
        run(QUALIFYING + BAD_CLOCK, strict=True)


def test_visit_comment_accepts_comment_list():
    collector = ts.TimeSpentCollector()
    visitor = tss.ClockVisitor(collector)
    visitor.begin_game()
    visitor.visit_comment(["[%clk 0:00:05]", "nice"])
    assert collector.game.last_clocks == [5]


@pytest.mark.parametrize(
    "suffix,compress",
    [
        (".pgn", lambda b: b),
        (".pgn.gz", gzip.compress),
        (".pgn.bz2", bz2.compress),
        (".pgn.xz", lzma.compress),
        (".pgn.zst", lambda b: zstd.ZstdCompressor().compress(b)),
    ],
)
def test_open_pgn_by_extension(tmp_path, suffix, compress):
    path = tmp_path / f"games{suffix}"
    path.write_bytes(compress(PGN.encode("utf-8")))

    stream = tss.open_pgn(str(path))
    try:
        collector = tss.read_time_spent(stream, ts.TimeSpentCollector())
    finally:
        stream.close()

    assert collector.stats.games_seen == 5
    assert collector.table["alice"]["blitz"].exact == 23


def test_open_pgn_replaces_undecodable_bytes(tmp_path):
    raw = QUALIFYING.replace("alice", "ali\xff").encode("latin-1")
    path = tmp_path / "games.pgn"
    path.write_bytes(raw)

    stream = tss.open_pgn(str(path))
    try:
        collector = tss.read_time_spent(stream, ts.TimeSpentCollector())
    finally:
        stream.close()

    assert collector.stats.games_skipped_bad_header == 1
    assert len(collector.table) == 0


def test_main_reads_stdin_with_replacement(tmp_path, monkeypatch, capsys):
    raw = QUALIFYING.replace("alice", "ali\xff").encode("latin-1") + PGN.encode("utf-8")
    stdin = io.TextIOWrapper(io.BytesIO(raw), encoding="utf-8", errors="surrogateescape")
    monkeypatch.setattr(sys, "stdin", stdin)
    out = tmp_path / "out.csv"

    assert tss.main(["--pgn", "-", "--out", str(out), "--progress-every", "0"]) == 0

    with out.open(newline="", encoding="utf-8") as fh:
        rows = {r["username"]: r for r in csv.DictReader(fh)}
    assert set(rows) == {"alice", "bob", "carol", "dave"}
    assert rows["alice"]["blitz_games"] == "1"
    assert "skipped_bad_header=1" in capsys.readouterr().err
    assert not stdin.closed


def test_csv_header():
    cols = tss.csv_header()
    assert cols[0] == "username"
    assert cols[1:4] == ["ultrabullet_games", "ultrabullet_approximate_time", "ultrabullet_real_time"]
    assert cols[-1] == "classical_real_time"
    assert len(cols) == 1 + 3 * 5
    assert len(tss.csv_header(ratings=True)) == 1 + 4 * 5


def test_write_csv_leaves_empty_buckets_blank(tmp_path):
    table = ts.AggregationTable()
    table.record("bob", "blitz", 23, 260, 1600)
    table.record("alice", "blitz", 23, 260)
    table.record("alice", "classical", 3000, 2700)

    out = tmp_path / "time-spent.csv"
    tss.write_csv(out, table.items())

    with out.open(newline="", encoding="utf-8") as fh:
        rows = list(csv.reader(fh))
    assert rows[0] == tss.csv_header()
    assert rows[1] == ["alice"] + [""] * 6 + ["1", "260", "23"] + [""] * 3 + ["1", "2700", "3000"]
    assert rows[2] == ["bob"] + [""] * 6 + ["1", "260", "23"] + [""] * 6
    assert not out.with_suffix(".csv.tmp").exists()


def test_write_csv_with_ratings(tmp_path):
    table = ts.AggregationTable()
    table.record("bob", "blitz", 23, 260, 1600)
    table.record("bob", "blitz", 27, 260, 1700)
    table.record("bob", "rapid", 500, 600)

    out = tmp_path / "time-spent.csv"
    tss.write_csv(out, table.items(), ratings=True)

    with out.open(newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        header = reader.fieldnames
        row = next(reader)
    assert "blitz_average_rating" in header
    assert row["blitz_games"] == "2"
    assert row["blitz_real_time"] == "50"
    assert row["blitz_average_rating"] == "1650"
    assert row["rapid_average_rating"] == ""
    assert row["bullet_games"] == ""


def test_main_end_to_end(tmp_path, capsys):
    pgn = tmp_path / "games.pgn"
    pgn.write_text(PGN, encoding="utf-8")
    out = tmp_path / "out.csv"

    assert tss.main(["--pgn", str(pgn), "--out", str(out), "--progress-every", "0"]) == 0

    with out.open(newline="", encoding="utf-8") as fh:
        rows = {r["username"]: r for r in csv.DictReader(fh)}
    assert set(rows) == {"alice", "bob", "carol", "dave"}
    assert rows["alice"]["blitz_games"] == "1"
    assert rows["alice"]["blitz_approximate_time"] == "260"
    assert rows["alice"]["blitz_real_time"] == "23"
    assert rows["alice"]["rapid_games"] == ""

    err = capsys.readouterr().err
    assert "games_seen=5" in err
    assert "games_used=2" in err
    assert f"out={out}" in err


def test_main_verbose_logs_skips(tmp_path, capsys):
    pgn = tmp_path / "games.pgn"
    pgn.write_text(BAD_CLOCK, encoding="utf-8")
    out = tmp_path / "out.csv"

    assert tss.main(["--pgn", str(pgn), "--out", str(out), "--verbose", "--progress-every", "0"]) == 0
    err = capsys.readouterr().err
    assert "skip (bad_clock)" in err
    assert '[Site "https://lichess.org/ddd"]' in err


def test_main_strict_aborts(tmp_path, capsys):
    pgn = tmp_path / "games.pgn"
    pgn.write_text(BAD_CLOCK, encoding="utf-8")
    out = tmp_path / "out.csv"

    with pytest.raises(ts.InvalidGameError):
        tss.main(["--pgn", str(pgn), "--out", str(out), "--strict", "--progress-every", "0"])
    assert "aborting" in capsys.readouterr().err
    assert not out.exists()


def test_parse_args_defaults():
    args = tss.parse_args(["--pgn", "-"])
    assert args.pgn == "-"
    assert args.out == Path("time-spent.csv")
    assert args.total_games is None
    assert args.progress_every == ts.PROGRESS_EVERY
    assert not args.strict
