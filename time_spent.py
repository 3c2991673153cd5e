# -*- coding: utf-8 -*-
#
# Time spent playing, per player and per time control, reconstructed from clock annotations.
#
# Key conventions (explicit):
# - all durations are integer seconds.
# - a game's exact duration = sum(first two clocks) + plies * increment - sum(last two clocks).
#   The increment credit uses the whole game's ply count (both players), not a per-player split.
# - a game's approximate duration = base + 40 * increment (also the classification metric).
# - games with fewer than MIN_PLIES plies, no time control, or an inconsistent clock history
#   (the "+15s" button) are skipped, never clamped.
#
# This module has no dependency on the PGN parser: the collector is driven by plain method calls
# (see feed_events() for a typed event stream, and time_spent_stats.ClockVisitor for python-chess).

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union


# ----------------------------
# Constants
# ----------------------------

MIN_PLIES = 4

# Representative game length (moves per side) for the approximate duration.
AVERAGE_MOVES = 40

PROGRESS_EVERY = 10_000

# https://lichess.org/faq#time-controls (inclusive upper bounds on average time, seconds)
PERF_BOUNDS: Tuple[Tuple[str, int], ...] = (
    ("ultrabullet", 29),
    ("bullet", 179),
    ("blitz", 479),
    ("rapid", 1499),
)
CLASSICAL = "classical"
PERFS: Tuple[str, ...] = tuple(p for p, _ in PERF_BOUNDS) + (CLASSICAL,)

PLAYER_KEYS = ("White", "Black")
RATING_KEYS = {"WhiteElo": "White", "BlackElo": "Black"}

# Skip reasons (also the Stats counter suffixes).
SKIP_NO_TIME_CONTROL = "no_time_control"
SKIP_BAD_HEADER = "bad_header"
SKIP_BAD_CLOCK = "bad_clock"
SKIP_PARSE_ERROR = "parse_error"
SKIP_SHORT = "short"
SKIP_UNDERFLOW = "underflow"

# Skips that strict mode still tolerates: they describe the game, not broken data.
BENIGN_SKIPS = {SKIP_NO_TIME_CONTROL, SKIP_SHORT}

_CLK_MARKER = "[%clk "
_REPLACEMENT_CHAR = "\ufffd"


class InvalidGameError(ValueError):
    """A game that cannot be used, raised instead of skipping in strict mode."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


# ----------------------------
# Parsers
# ----------------------------

def _non_negative_int(s: str) -> Optional[int]:
    s = s.strip()
    # isdigit() alone also accepts non-ASCII digits such as "²", which int() rejects.
    if not (s.isascii() and s.isdigit()):
        return None
    return int(s)


def parse_clock(comment: str) -> Optional[int]:
    """Return the seconds of the first `[%clk H:MM:SS]` annotation in `comment`, or None."""
    _, marker, rest = comment.partition(_CLK_MARKER)
    if not marker:
        return None
    clock, bracket, _ = rest.partition("]")
    if not bracket:
        return None
    parts = clock.split(":")
    if len(parts) != 3:
        return None
    h, m, s = (_non_negative_int(p) for p in parts)
    if h is None or m is None or s is None:
        return None
    return h * 3600 + m * 60 + s


@dataclass(frozen=True)
class TimeControl:
    base: int = 0  # seconds
    increment: int = 0  # seconds

    @property
    def is_unknown(self) -> bool:
        return self.base == 0 and self.increment == 0

    def average_time(self) -> int:
        return self.base + AVERAGE_MOVES * self.increment


def parse_time_control(value: str) -> Optional[TimeControl]:
    """Parse `<base>+<increment>`. '-' (no time control) and malformed values give None."""
    value = (value or "").strip()
    if value == "-":
        return None
    base_s, plus, inc_s = value.partition("+")
    if not plus:
        return None
    base = _non_negative_int(base_s)
    inc = _non_negative_int(inc_s)
    if base is None or inc is None:
        return None
    return TimeControl(base, inc)


def _int_or_none(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


# ----------------------------
# Classification
# ----------------------------

def classify(average_time: int) -> str:
    for perf, upper in PERF_BOUNDS:
        if average_time <= upper:
            return perf
    return CLASSICAL


# ----------------------------
# Per-game state
# ----------------------------

@dataclass
class Game:
    # Header emission order, not necessarily white first.
    players: List[str] = field(default_factory=list)
    colors: List[str] = field(default_factory=list)
    ratings: Dict[str, int] = field(default_factory=dict)  # by color
    link: str = ""  # for diagnostics only
    plies: int = 0
    tc: TimeControl = field(default_factory=TimeControl)

    # Needed in case of berserk: the first recorded clocks already reflect the halved base time.
    first_clocks: List[int] = field(default_factory=list)
    # Sliding window over the last two clocks.
    last_clocks: List[int] = field(default_factory=list)

    error: Optional[str] = None
    error_detail: str = ""

    @property
    def site_tag(self) -> str:
        return f'[Site "{self.link}"]' if self.link else '[Site "<missing>"]'

    def fail(self, reason: str, detail: str) -> None:
        # Keep the first failure; later events of a broken game are noise.
        if self.error is None:
            self.error = reason
            self.error_detail = detail

    def add_header(self, key: str, value: str) -> None:
        if key in PLAYER_KEYS:
            if _REPLACEMENT_CHAR in value:
                self.fail(SKIP_BAD_HEADER, f"undecodable {key} header {value!r}")
            self.players.append(value)
            self.colors.append(key)
        elif key in RATING_KEYS:
            rating = _int_or_none(value)
            if rating is not None:
                self.ratings[RATING_KEYS[key]] = rating
        elif key == "TimeControl":
            if _REPLACEMENT_CHAR in value:
                self.fail(SKIP_BAD_HEADER, f"undecodable TimeControl header {value!r}")
                return
            tc = parse_time_control(value)
            if tc is not None:
                self.tc = tc
            elif value.strip() != "-":
                self.fail(SKIP_BAD_HEADER, f"could not read TimeControl {value!r}")
        elif key == "Site":
            self.link = value

    def add_clock(self, clock: int) -> None:
        if len(self.first_clocks) < 2:
            self.first_clocks.append(clock)
        if len(self.last_clocks) == 2:
            self.last_clocks[0] = self.last_clocks[1]
            self.last_clocks[1] = clock
        else:
            self.last_clocks.append(clock)

    def add_comment(self, comment: str) -> None:
        if self.error is not None:
            return
        clock = parse_clock(comment)
        if clock is None:
            self.fail(SKIP_BAD_CLOCK, f"could not read clock comment {comment!r}")
            return
        self.add_clock(clock)

    def duration(self) -> Tuple[List[str], Optional[int]]:
        """Return (players, exact duration in seconds), the duration being None on underflow.

        The use of the +15s button can make the remaining clocks exceed what the players ever had;
        such a game cannot be reconstructed.
        """
        available = sum(self.first_clocks) + self.plies * self.tc.increment
        remaining = sum(self.last_clocks)
        if remaining > available:
            return self.players, None
        return self.players, available - remaining

    def player_ratings(self) -> Iterator[Tuple[str, Optional[int]]]:
        for color, username in zip(self.colors, self.players):
            yield username, self.ratings.get(color)


# ----------------------------
# Aggregation
# ----------------------------

@dataclass
class TimeSpent:
    games: int = 0
    # seconds, computed with base + 40 * increment per game
    approximate: int = 0
    # seconds, reconstructed from the clocks
    exact: int = 0
    rating_total: int = 0
    rated_games: int = 0

    def add_game(self, exact: int, approximate: int, rating: Optional[int] = None) -> None:
        self.games += 1
        self.exact += exact
        self.approximate += approximate
        if rating is not None:
            self.rating_total += rating
            self.rated_games += 1

    def merge(self, other: "TimeSpent") -> None:
        self.games += other.games
        self.exact += other.exact
        self.approximate += other.approximate
        self.rating_total += other.rating_total
        self.rated_games += other.rated_games

    def average_rating(self) -> Optional[int]:
        if not self.rated_games:
            return None
        return self.rating_total // self.rated_games


@dataclass
class TimeSpents:
    by_perf: Dict[str, TimeSpent] = field(default_factory=lambda: {p: TimeSpent() for p in PERFS})

    def __getitem__(self, perf: str) -> TimeSpent:
        return self.by_perf[perf]

    def items(self) -> Iterator[Tuple[str, TimeSpent]]:
        for perf in PERFS:
            yield perf, self.by_perf[perf]


class AggregationTable:
    """username -> TimeSpents. Entries are created lazily and never removed."""

    def __init__(self) -> None:
        self._users: Dict[str, TimeSpents] = {}

    def __len__(self) -> int:
        return len(self._users)

    def __contains__(self, username: object) -> bool:
        return username in self._users

    def __getitem__(self, username: str) -> TimeSpents:
        return self._users[username]

    def record(
        self,
        username: str,
        perf: str,
        exact: int,
        approximate: int,
        rating: Optional[int] = None,
    ) -> None:
        if perf not in PERFS:
            raise ValueError(f"Unknown perf {perf!r}")
        spents = self._users.get(username)
        if spents is None:
            spents = TimeSpents()
            self._users[username] = spents
        spents[perf].add_game(exact, approximate, rating)

    def items(self) -> Iterator[Tuple[str, TimeSpents]]:
        """Read-only traversal, sorted by username."""
        for username in sorted(self._users):
            yield username, self._users[username]


@dataclass
class Stats:
    games_seen: int = 0
    games_used: int = 0
    games_skipped_no_time_control: int = 0
    games_skipped_bad_header: int = 0
    games_skipped_bad_clock: int = 0
    games_skipped_parse_error: int = 0
    games_skipped_short: int = 0
    games_skipped_underflow: int = 0

    def count_skip(self, reason: str) -> None:
        name = f"games_skipped_{reason}"
        setattr(self, name, getattr(self, name) + 1)

    @property
    def games_skipped(self) -> int:
        return (
            self.games_skipped_no_time_control
            + self.games_skipped_bad_header
            + self.games_skipped_bad_clock
            + self.games_skipped_parse_error
            + self.games_skipped_short
            + self.games_skipped_underflow
        )


# ----------------------------
# Driving loop
# ----------------------------

class TimeSpentCollector:
    """Consumes one game at a time and folds finished games into an AggregationTable.

    Call order per game: begin_game, header*, end_headers, (move | comment)*, end_game.
    end_headers() and begin_variation() return True when the caller should skip what follows.
    """

    def __init__(
        self,
        strict: bool = False,
        progress: Optional[Callable[[int], None]] = None,
        warn: Optional[Callable[[str], None]] = None,
        progress_every: int = PROGRESS_EVERY,
    ) -> None:
        self.strict = strict
        self.progress = progress
        self.warn = warn
        self.progress_every = progress_every
        self.table = AggregationTable()
        self.stats = Stats()
        self.game: Optional[Game] = None

    def begin_game(self) -> None:
        self.game = Game()
        self.stats.games_seen += 1
        if self.progress is not None and self.progress_every > 0:
            if self.stats.games_seen % self.progress_every == 0:
                self.progress(self.progress_every)

    def _current(self) -> Game:
        if self.game is None:
            raise RuntimeError("Game event received outside begin_game/end_game")
        return self.game

    def header(self, key: str, value: str) -> None:
        self._current().add_header(key, value)

    def end_headers(self) -> bool:
        game = self._current()
        # Avoiding games without clocks (or already unusable): the body is never read.
        return game.error is not None or game.tc.is_unknown

    def move(self) -> None:
        self._current().plies += 1

    def comment(self, text: str) -> None:
        self._current().add_comment(text)

    def begin_variation(self) -> bool:
        return True

    def parse_error(self, error: Exception) -> None:
        self._current().fail(SKIP_PARSE_ERROR, f"unreadable movetext: {error}")

    def _skip(self, game: Game, reason: str, detail: str) -> str:
        if self.strict and reason not in BENIGN_SKIPS:
            raise InvalidGameError(reason, f"{game.site_tag} {detail}")
        self.stats.count_skip(reason)
        if self.warn is not None and reason not in BENIGN_SKIPS:
            self.warn(f"skip ({reason}): {game.site_tag} {detail}")
        return reason

    def end_game(self) -> Optional[str]:
        """Close the current game. Returns the skip reason, or None if the game was recorded."""
        game = self.game
        if game is None:
            return None
        self.game = None

        if game.error is not None:
            return self._skip(game, game.error, game.error_detail)
        if game.tc.is_unknown:
            return self._skip(game, SKIP_NO_TIME_CONTROL, "no time control")

        if game.plies < MIN_PLIES:
            return self._skip(game, SKIP_SHORT, f"only {game.plies} plies")
        _, exact = game.duration()
        if exact is None:
            return self._skip(
                game,
                SKIP_UNDERFLOW,
                f"clocks {game.last_clocks} exceed {game.first_clocks} + {game.plies} x {game.tc.increment}s",
            )

        avg_time = game.tc.average_time()
        perf = classify(avg_time)
        for username, rating in game.player_ratings():
            self.table.record(username, perf, exact, avg_time, rating)
        self.stats.games_used += 1
        return None


# ----------------------------
# Typed events
# ----------------------------

@dataclass(frozen=True)
class BeginGame:
    pass


@dataclass(frozen=True)
class Header:
    key: str
    value: str


@dataclass(frozen=True)
class EndHeaders:
    pass


@dataclass(frozen=True)
class Move:
    pass


@dataclass(frozen=True)
class Comment:
    text: str


@dataclass(frozen=True)
class BeginVariation:
    pass


@dataclass(frozen=True)
class EndVariation:
    pass


@dataclass(frozen=True)
class EndGame:
    pass


Event = Union[BeginGame, Header, EndHeaders, Move, Comment, BeginVariation, EndVariation, EndGame]


def feed_events(collector: TimeSpentCollector, events: Iterable[Event]) -> None:
    """Drive `collector` with a typed event stream, honouring its skip decisions."""
    skipping_body = False
    variation_depth = 0  # depth inside a skipped variation

    for ev in events:
        if isinstance(ev, BeginGame):
            collector.begin_game()
            skipping_body = False
            variation_depth = 0
        elif isinstance(ev, EndGame):
            collector.end_game()
            skipping_body = False
            variation_depth = 0
        elif skipping_body:
            continue
        elif isinstance(ev, BeginVariation):
            if variation_depth:
                variation_depth += 1
            elif collector.begin_variation():
                variation_depth = 1
        elif isinstance(ev, EndVariation):
            if variation_depth:
                variation_depth -= 1
        elif variation_depth:
            continue
        elif isinstance(ev, Header):
            collector.header(ev.key, ev.value)
        elif isinstance(ev, EndHeaders):
            skipping_body = collector.end_headers()
        elif isinstance(ev, Move):
            collector.move()
        elif isinstance(ev, Comment):
            collector.comment(ev.text)
        else:
            raise TypeError(f"Unknown event {ev!r}")
