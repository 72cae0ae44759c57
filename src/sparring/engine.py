from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import asyncio
import logging

import chess
import chess.engine

from sparring.book import OpeningBook, load_book

logger = logging.getLogger(__name__)


class EngineCancelled(RuntimeError):
    """The caller's cancellation signal fired during a search."""


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Cp:
    value: int


@dataclass(frozen=True)
class Mate:
    moves: int   # positive: side to move mates


Score = Cp | Mate


def mate_to_cp(mate: int) -> int:
    """Linearize a mate distance; shorter mates score higher."""
    cp = 10_000 - min(99, abs(mate)) * 100
    return cp if mate >= 0 else -cp


def score_to_cp(score: Score) -> int:
    if isinstance(score, Mate):
        return mate_to_cp(score.moves)
    return score.value


def _number(value) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return int(value)


def extract_score(raw) -> Score | None:
    """Normalize the score spellings engines and transports produce.

    Accepts a Cp/Mate, a python-chess ``Score``, ``{"type", "value"}``,
    ``{"cp"}``/``{"mate"}``, ``{"type", "score"}`` or ``{"score": {...}}``.
    """
    if raw is None:
        return None
    if isinstance(raw, (Cp, Mate)):
        return raw
    if isinstance(raw, chess.engine.Score):
        if raw.is_mate():
            return Mate(raw.mate())
        return Cp(raw.score())
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if kind in ("cp", "mate"):
        value = _number(raw.get("value"))
        if value is None:
            value = _number(raw.get("score"))
        if value is not None:
            return Cp(value) if kind == "cp" else Mate(value)
    cp = _number(raw.get("cp"))
    if cp is not None:
        return Cp(cp)
    mate = _number(raw.get("mate"))
    if mate is not None:
        return Mate(mate)
    nested = raw.get("score")
    if isinstance(nested, (dict, Cp, Mate, chess.engine.Score)):
        return extract_score(nested)
    return None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class EngineInfo:
    move: str
    score: Score
    multipv: int = 1
    depth: int = 0
    nodes: int | None = None
    pv: list[str] = field(default_factory=list)


@dataclass
class Analysis:
    side_to_move: chess.Color
    infos: list[EngineInfo]


@dataclass
class ReviewEntry:
    idx: int
    best_move: str | None
    score: Score | None


@dataclass
class OpeningDetection:
    eco: str
    name: str
    variation: str | None
    ply_depth: int


def _depth(entry: dict) -> int:
    return _number(entry.get("depth") or entry.get("seldepth")) or 0


def normalize_infos(entries: list[dict], fallback_move: str | None = None) -> list[EngineInfo]:
    """Keep the deepest iteration, one info per move, best score first.

    An engine that named a best move but reported no lines yields a single
    zero-score entry for that move.
    """
    if not entries:
        if fallback_move:
            return [EngineInfo(move=fallback_move, score=Cp(0), pv=[fallback_move])]
        return []
    latest = max(_depth(e) for e in entries)
    by_move: dict[str, EngineInfo] = {}
    for entry in entries:
        if _depth(entry) != latest:
            continue
        pv = entry.get("pv") if isinstance(entry.get("pv"), list) else []
        move = pv[0] if pv else fallback_move
        if not move:
            continue
        score = extract_score(entry)
        if score is None:
            continue
        info = EngineInfo(
            move=move,
            score=score,
            multipv=_number(entry.get("multipv")) or 1,
            depth=latest,
            nodes=_number(entry.get("nodes")),
            pv=list(pv),
        )
        prev = by_move.get(move)
        if prev is None or score_to_cp(prev.score) < score_to_cp(info.score):
            by_move[move] = info
    return sorted(by_move.values(), key=lambda i: score_to_cp(i.score), reverse=True)


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------


class EngineProtocol(ABC):
    @abstractmethod
    async def analyse(
        self,
        fen: str,
        multipv: int,
        movetime_ms: int,
        cancel: asyncio.Event | None = None,
    ) -> Analysis:
        """Ranked candidate moves, scores from the side to move."""

    @abstractmethod
    async def review_fast(
        self,
        moves_uci: list[str],
        movetime_ms: int = 100,
        cancel: asyncio.Event | None = None,
    ) -> list[ReviewEntry]:
        """Best move and score for every position along a move list."""

    @abstractmethod
    async def identify_opening(self, moves_uci: list[str]) -> OpeningDetection | None:
        """Named opening for the longest book prefix of a move list."""


async def run_cancellable(coro, cancel: asyncio.Event | None):
    """Await ``coro`` unless ``cancel`` fires first.

    Raises EngineCancelled when the signal wins; the search task is
    cancelled so no engine work outlives the call.
    """
    if cancel is None:
        return await coro
    if cancel.is_set():
        coro.close()
        raise EngineCancelled("Analysis cancelled")
    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if task in done:
        return task.result()
    raise EngineCancelled("Analysis cancelled")


class StockfishEngine(EngineProtocol):
    def __init__(
        self,
        stockfish_path: str = "stockfish",
        hash_mb: int = 64,
        threads: int = 1,
        book: OpeningBook | None = None,
    ):
        self._path = stockfish_path
        self._hash_mb = hash_mb
        self._threads = threads
        self._book = book
        self._engine: chess.engine.UciProtocol | None = None
        self._lock = asyncio.Lock()

    async def start(self):
        if self._engine is not None:
            try:
                await self._engine.quit()
            except chess.engine.EngineError:
                pass
            self._engine = None
        _, self._engine = await chess.engine.popen_uci(self._path)
        await self._engine.configure({"Hash": self._hash_mb, "Threads": self._threads})

    async def stop(self):
        if self._engine:
            try:
                await self._engine.quit()
            except chess.engine.EngineError:
                # Transport may already be closed (process killed, shutdown race)
                pass
            self._engine = None

    def _validate_board(self, fen: str) -> chess.Board:
        try:
            board = chess.Board(fen)
        except ValueError as e:
            raise ValueError(f"Invalid FEN: {fen}") from e
        if not board.is_valid():
            raise ValueError(f"Illegal position: {fen}")
        return board

    async def _analyse_with_retry(self, board: chess.Board, limit: chess.engine.Limit, **kwargs):
        """Run engine.analyse with one restart attempt on engine crash."""
        try:
            return await self._engine.analyse(board, limit, **kwargs)
        except chess.engine.EngineTerminatedError:
            logger.warning("Stockfish crashed, attempting restart")
            try:
                await self.start()
            except Exception as e:
                raise RuntimeError("Engine restart failed") from e
            try:
                return await self._engine.analyse(board, limit, **kwargs)
            except chess.engine.EngineTerminatedError as e:
                raise RuntimeError("Engine restart failed") from e

    async def analyse(
        self,
        fen: str,
        multipv: int,
        movetime_ms: int,
        cancel: asyncio.Event | None = None,
    ) -> Analysis:
        if self._engine is None:
            raise RuntimeError("Engine not started. Call start() first.")
        board = self._validate_board(fen)
        limit = chess.engine.Limit(time=max(1, movetime_ms) / 1000)
        async with self._lock:
            results = await run_cancellable(
                self._analyse_with_retry(board, limit, multipv=max(1, multipv)), cancel
            )
        if not isinstance(results, list):
            results = [results]
        entries = []
        for info in results:
            if "score" not in info:
                continue
            entries.append({
                "pv": [m.uci() for m in info.get("pv", [])],
                "score": info["score"].pov(board.turn),
                "depth": info.get("depth"),
                "multipv": info.get("multipv"),
                "nodes": info.get("nodes"),
            })
        return Analysis(side_to_move=board.turn, infos=normalize_infos(entries))

    async def review_fast(
        self,
        moves_uci: list[str],
        movetime_ms: int = 100,
        cancel: asyncio.Event | None = None,
    ) -> list[ReviewEntry]:
        board = chess.Board()
        fens = [board.fen()]
        for uci in moves_uci:
            try:
                move = chess.Move.from_uci(uci)
            except ValueError:
                break
            if move not in board.legal_moves:
                break
            board.push(move)
            fens.append(board.fen())

        entries = []
        for idx, fen in enumerate(fens):
            position = chess.Board(fen)
            if position.is_game_over():
                entries.append(ReviewEntry(idx=idx, best_move=None, score=None))
                continue
            analysis = await self.analyse(fen, multipv=1, movetime_ms=movetime_ms, cancel=cancel)
            top = analysis.infos[0] if analysis.infos else None
            entries.append(ReviewEntry(
                idx=idx,
                best_move=top.move if top else None,
                score=top.score if top else None,
            ))
        return entries

    async def identify_opening(self, moves_uci: list[str]) -> OpeningDetection | None:
        book = self._book or load_book()
        line = book.line_for_history(moves_uci)
        if line is None:
            return None
        return OpeningDetection(
            eco=line.eco,
            name=line.name,
            variation=line.variation,
            ply_depth=sum(book.book_mask(moves_uci)),
        )
