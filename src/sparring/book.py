"""Opening book index.

Named opening lines are replayed once at load time, normalized to UCI and
bucketed by (side, first move). Lines that do not replay legally are
dropped. The index is read-only after construction and safe to share
between pickers.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import chess

from sparring.rng import Rng, weighted_index

logger = logging.getLogger(__name__)

DEFAULT_BOOK_PATH = Path(__file__).parent / "data" / "openings.json"

_UCI_RE = re.compile(r"^[a-h][1-8][a-h][1-8][nbrq]?$", re.IGNORECASE)
_SAN_DECORATION_RE = re.compile(r"[+#?!]+")


@dataclass(frozen=True)
class NormalizedLine:
    eco: str
    name: str
    variation: str | None
    side: chess.Color
    opening_weight: float
    line_weight: float
    moves_uci: tuple[str, ...]


@dataclass(frozen=True)
class BookCandidate:
    move: str
    line: NormalizedLine


def base_move(uci: str) -> str:
    """Square pair of a UCI move, lower-cased; drops any promotion letter."""
    return str(uci or "")[:4].lower()


def to_uci_moves(moves: list[str] | None) -> list[str] | None:
    """Replay SAN or UCI tokens from the start position.

    Returns None when any token fails to parse or is illegal.
    """
    if not moves:
        return None
    board = chess.Board()
    out: list[str] = []
    for raw in moves:
        tok = str(raw or "").strip()
        if not tok:
            return None
        try:
            if _UCI_RE.match(tok):
                move = chess.Move.from_uci(tok.lower())
                if move not in board.legal_moves:
                    return None
            else:
                move = board.parse_san(_SAN_DECORATION_RE.sub("", tok))
        except ValueError:
            return None
        out.append(move.uci())
        board.push(move)
    return out


def _positive(value, default: float = 1.0) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    return default


def normalize_lines(source: dict) -> list[NormalizedLine]:
    """Flatten opening records into replay-validated lines."""
    rows = source.get("openings") if isinstance(source, dict) else None
    if not isinstance(rows, list):
        return []
    lines: list[NormalizedLine] = []
    dropped = 0
    for opening in rows:
        if not isinstance(opening, dict) or not isinstance(opening.get("lines"), list):
            continue
        side = chess.BLACK if str(opening.get("side", "")).lower().startswith("b") else chess.WHITE
        opening_weight = _positive(opening.get("weight"))
        for line in opening["lines"]:
            if not isinstance(line, dict):
                dropped += 1
                continue
            moves_uci = to_uci_moves(line.get("moves"))
            if not moves_uci:
                dropped += 1
                logger.debug(
                    "Dropping book line %s / %s: does not replay",
                    opening.get("name"), line.get("variation"),
                )
                continue
            lines.append(NormalizedLine(
                eco=str(opening.get("eco") or ""),
                name=str(opening.get("name") or ""),
                variation=line.get("variation"),
                side=side,
                opening_weight=opening_weight,
                line_weight=_positive(line.get("weight")),
                moves_uci=tuple(moves_uci),
            ))
    if dropped:
        logger.info("Opening book: %d lines loaded, %d dropped", len(lines), dropped)
    return lines


class OpeningBook:
    def __init__(self, lines: list[NormalizedLine]):
        self._lines = tuple(lines)
        self._index: dict[tuple[chess.Color, str], list[NormalizedLine]] = {}
        for line in self._lines:
            self._index.setdefault((line.side, base_move(line.moves_uci[0])), []).append(line)
        # Every prefix of every line -> first line reaching it.
        self._prefixes: dict[tuple[str, ...], NormalizedLine] = {}
        for line in self._lines:
            for i in range(1, len(line.moves_uci) + 1):
                self._prefixes.setdefault(line.moves_uci[:i], line)

    @classmethod
    def from_data(cls, source: dict) -> OpeningBook:
        return cls(normalize_lines(source))

    @classmethod
    def from_file(cls, path: str | Path) -> OpeningBook:
        with open(path) as f:
            return cls.from_data(json.load(f))

    @property
    def lines(self) -> tuple[NormalizedLine, ...]:
        return self._lines

    def __len__(self) -> int:
        return len(self._lines)

    def lookup(self, side: chess.Color, history: list[str]) -> list[NormalizedLine]:
        """Lines for ``side`` whose opening moves equal ``history``."""
        if not history:
            return [ln for ln in self._lines if ln.side == side]
        pool = self._index.get((side, base_move(history[0])), [])
        return [ln for ln in pool if _matches(ln, history)]

    def pick(
        self,
        side: chess.Color,
        history: list[str],
        fen: str,
        max_plies: int,
        top_lines: int,
        favor_common: bool,
        rng: Rng,
        exit_early=None,
    ) -> BookCandidate | None:
        """Choose the next book move, or None to leave the book.

        ``exit_early`` (a BookExit) abandons the book with its probability
        once the history is at least ``min_plies`` long.
        """
        if len(history) >= max_plies:
            return None
        if exit_early is not None and len(history) >= exit_early.min_plies:
            if rng.random() < exit_early.probability:
                return None
        matched = self.lookup(side, history)
        if not matched:
            return None

        groups: dict[tuple, list[NormalizedLine]] = {}
        for line in matched:
            groups.setdefault((line.side, line.eco, line.name), []).append(line)
        openings = list(groups.values())
        if favor_common:
            openings.sort(key=lambda grp: grp[0].opening_weight, reverse=True)
            chosen = openings[0]
        else:
            chosen = openings[weighted_index([grp[0].opening_weight for grp in openings], rng)]

        variants = sorted(chosen, key=lambda ln: ln.line_weight, reverse=True)
        if favor_common:
            line = variants[: max(1, top_lines)][0]
        else:
            line = variants[weighted_index([ln.line_weight for ln in variants], rng)]

        if len(history) >= len(line.moves_uci):
            return None
        next_uci = line.moves_uci[len(history)]
        try:
            board = chess.Board(fen)
            move = chess.Move.from_uci(next_uci)
        except ValueError:
            return None
        if move not in board.legal_moves:
            return None
        return BookCandidate(move=move.uci(), line=line)

    def book_mask(self, history: list[str]) -> list[bool]:
        """Per-ply flags: True while the game is still following a book line."""
        mask: list[bool] = []
        prefix: list[str] = []
        in_theory = True
        for move in history:
            if in_theory:
                prefix.append(move)
                in_theory = tuple(prefix) in self._prefixes
            mask.append(in_theory)
        return mask

    def line_for_history(self, history: list[str]) -> NormalizedLine | None:
        """The line matching the longest book prefix of ``history``."""
        best = None
        for i in range(1, len(history) + 1):
            line = self._prefixes.get(tuple(history[:i]))
            if line is None:
                break
            best = line
        return best


def _matches(line: NormalizedLine, history: list[str]) -> bool:
    if len(history) > len(line.moves_uci):
        return False
    return all(
        base_move(played) == base_move(book)
        for played, book in zip(history, line.moves_uci)
    )


@lru_cache(maxsize=None)
def load_book(path: str | None = None) -> OpeningBook:
    """Process-wide cached book; the bundled data when ``path`` is None."""
    book = OpeningBook.from_file(path or DEFAULT_BOOK_PATH)
    logger.info("Opening book ready: %d lines", len(book))
    return book
