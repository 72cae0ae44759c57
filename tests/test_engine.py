import asyncio
import shutil
from unittest.mock import AsyncMock, MagicMock

import chess
import chess.engine
import pytest

from sparring.book import OpeningBook
from sparring.engine import (
    Analysis,
    Cp,
    EngineCancelled,
    EngineInfo,
    EngineProtocol,
    Mate,
    ReviewEntry,
    StockfishEngine,
    extract_score,
    mate_to_cp,
    normalize_infos,
    run_cancellable,
    score_to_cp,
)

# Illegal FEN: black to move, white king in check from a1 rook (opposite check)
ILLEGAL_FEN = "8/8/8/8/8/8/6k1/r3K3 b - - 0 1"
AFTER_E4 = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"


def _info(uci, cp=None, mate=None, depth=12, multipv=1, turn=chess.WHITE):
    score = chess.engine.Cp(cp) if mate is None else chess.engine.Mate(mate)
    return {
        "pv": [chess.Move.from_uci(uci)],
        "score": chess.engine.PovScore(score, turn),
        "depth": depth,
        "multipv": multipv,
        "nodes": 1000,
    }


@pytest.fixture
def fake_engine():
    e = StockfishEngine()
    e._engine = MagicMock()
    e._engine.analyse = AsyncMock(return_value=[_info("e2e4", cp=30)])
    return e


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


class TestScores:
    def test_mate_to_cp(self):
        assert mate_to_cp(1) == 9_900
        assert mate_to_cp(3) == 9_700
        assert mate_to_cp(-2) == -9_800
        assert mate_to_cp(500) == 100

    def test_shorter_mate_scores_higher(self):
        assert score_to_cp(Mate(1)) > score_to_cp(Mate(5)) > score_to_cp(Cp(2000))

    @pytest.mark.parametrize("raw, expected", [
        ({"type": "cp", "value": 35}, Cp(35)),
        ({"type": "mate", "value": -3}, Mate(-3)),
        ({"type": "cp", "score": 12}, Cp(12)),
        ({"cp": -40}, Cp(-40)),
        ({"mate": 2}, Mate(2)),
        ({"score": {"cp": 7}}, Cp(7)),
        ({"score": {"type": "mate", "value": 1}}, Mate(1)),
        (chess.engine.Cp(55), Cp(55)),
        (chess.engine.Mate(-4), Mate(-4)),
        (Cp(3), Cp(3)),
    ])
    def test_extract_score(self, raw, expected):
        assert extract_score(raw) == expected

    @pytest.mark.parametrize("raw", [
        None,
        "35",
        {},
        {"cp": "35"},
        {"cp": float("nan")},
        {"type": "cp", "value": None},
        {"cp": True},
    ])
    def test_extract_score_rejects_junk(self, raw):
        assert extract_score(raw) is None


# ---------------------------------------------------------------------------
# Info normalization
# ---------------------------------------------------------------------------


class TestNormalizeInfos:
    def test_keeps_deepest_iteration_only(self):
        infos = normalize_infos([
            {"pv": ["e2e4"], "cp": 500, "depth": 8},
            {"pv": ["d2d4"], "cp": 20, "depth": 14},
            {"pv": ["c2c4"], "cp": 10, "depth": 14},
        ])
        assert [i.move for i in infos] == ["d2d4", "c2c4"]
        assert all(i.depth == 14 for i in infos)

    def test_dedupes_by_move_keeping_best(self):
        infos = normalize_infos([
            {"pv": ["e2e4"], "cp": 10, "depth": 10, "multipv": 2},
            {"pv": ["e2e4", "e7e5"], "cp": 40, "depth": 10, "multipv": 1},
        ])
        assert len(infos) == 1
        assert infos[0].score == Cp(40)
        assert infos[0].pv == ["e2e4", "e7e5"]

    def test_sorted_best_first_with_mates_on_top(self):
        infos = normalize_infos([
            {"pv": ["a2a3"], "cp": -20},
            {"pv": ["d1h5"], "mate": 2},
            {"pv": ["e2e4"], "cp": 35},
        ])
        assert [i.move for i in infos] == ["d1h5", "e2e4", "a2a3"]

    def test_skips_entries_without_move_or_score(self):
        infos = normalize_infos([
            {"pv": [], "cp": 10},
            {"pv": ["e2e4"]},
            {"pv": ["d2d4"], "cp": 5},
        ])
        assert [i.move for i in infos] == ["d2d4"]

    def test_bestmove_only_fallback(self):
        infos = normalize_infos([], fallback_move="g1f3")
        assert infos == [EngineInfo(move="g1f3", score=Cp(0), pv=["g1f3"])]

    def test_empty(self):
        assert normalize_infos([]) == []


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestRunCancellable:
    async def test_no_signal_passes_through(self):
        async def search():
            return 42
        assert await run_cancellable(search(), None) == 42

    async def test_presignalled_never_starts(self):
        started = False

        async def search():
            nonlocal started
            started = True

        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(EngineCancelled):
            await run_cancellable(search(), cancel)
        assert not started

    async def test_signal_mid_search(self):
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)
        with pytest.raises(EngineCancelled):
            await run_cancellable(asyncio.sleep(10), cancel)

    async def test_search_finishing_first_wins(self):
        cancel = asyncio.Event()

        async def search():
            return "done"
        assert await run_cancellable(search(), cancel) == "done"


# ---------------------------------------------------------------------------
# StockfishEngine (transport mocked)
# ---------------------------------------------------------------------------


class TestStockfishEngine:
    async def test_not_started(self):
        with pytest.raises(RuntimeError, match="not started"):
            await StockfishEngine().analyse(chess.STARTING_FEN, 1, 100)

    async def test_invalid_fen(self, fake_engine):
        with pytest.raises(ValueError, match="Invalid FEN"):
            await fake_engine.analyse("not a valid fen", 1, 100)

    async def test_illegal_position(self, fake_engine):
        with pytest.raises(ValueError, match="Illegal position"):
            await fake_engine.analyse(ILLEGAL_FEN, 1, 100)

    async def test_analyse_passes_limits(self, fake_engine):
        result = await fake_engine.analyse(chess.STARTING_FEN, 3, 250)
        assert isinstance(result, Analysis)
        assert result.side_to_move == chess.WHITE
        assert result.infos[0].move == "e2e4"
        assert result.infos[0].score == Cp(30)
        _, limit = fake_engine._engine.analyse.call_args.args
        assert limit.time == 0.25
        assert fake_engine._engine.analyse.call_args.kwargs["multipv"] == 3

    async def test_scores_from_side_to_move(self, fake_engine):
        fake_engine._engine.analyse.return_value = [
            _info("e7e5", cp=30, multipv=1),
            _info("c7c5", mate=-3, multipv=2),
        ]
        result = await fake_engine.analyse(AFTER_E4, 2, 100)
        assert result.side_to_move == chess.BLACK
        assert [i.score for i in result.infos] == [Mate(3), Cp(-30)]

    async def test_single_info_result(self, fake_engine):
        fake_engine._engine.analyse.return_value = _info("d2d4", cp=15)
        result = await fake_engine.analyse(chess.STARTING_FEN, 1, 100)
        assert [i.move for i in result.infos] == ["d2d4"]

    async def test_cancel_signal(self, fake_engine):
        async def slow(board, limit, **kwargs):
            await asyncio.sleep(10)

        fake_engine._engine.analyse = slow
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)
        with pytest.raises(EngineCancelled):
            await fake_engine.analyse(chess.STARTING_FEN, 1, 100, cancel=cancel)

    async def test_restart_after_crash(self, fake_engine, monkeypatch):
        fake_engine._engine.analyse = AsyncMock(side_effect=chess.engine.EngineTerminatedError())
        fresh = MagicMock()
        fresh.analyse = AsyncMock(return_value=[_info("g1f3", cp=20)])

        async def restart():
            fake_engine._engine = fresh

        monkeypatch.setattr(fake_engine, "start", restart)
        result = await fake_engine.analyse(chess.STARTING_FEN, 1, 100)
        assert result.infos[0].move == "g1f3"

    async def test_double_crash_raises(self, fake_engine, monkeypatch):
        crashing = AsyncMock(side_effect=chess.engine.EngineTerminatedError())
        fake_engine._engine.analyse = crashing

        async def restart():
            fake_engine._engine = MagicMock(analyse=crashing)

        monkeypatch.setattr(fake_engine, "start", restart)
        with pytest.raises(RuntimeError, match="Engine restart failed"):
            await fake_engine.analyse(chess.STARTING_FEN, 1, 100)

    async def test_stop_tolerates_dead_transport(self, fake_engine):
        fake_engine._engine.quit = AsyncMock(side_effect=chess.engine.EngineTerminatedError())
        await fake_engine.stop()
        assert fake_engine._engine is None


class TestReviewFast:
    async def test_one_entry_per_position(self, fake_engine, monkeypatch):
        analyse = AsyncMock(return_value=Analysis(
            side_to_move=chess.WHITE, infos=[EngineInfo(move="e2e4", score=Cp(25))],
        ))
        monkeypatch.setattr(fake_engine, "analyse", analyse)
        entries = await fake_engine.review_fast(["e2e4", "e7e5"], movetime_ms=50)
        assert [e.idx for e in entries] == [0, 1, 2]
        assert entries[0] == ReviewEntry(idx=0, best_move="e2e4", score=Cp(25))
        assert analyse.call_args.kwargs["movetime_ms"] == 50

    async def test_stops_at_first_invalid_move(self, fake_engine, monkeypatch):
        analyse = AsyncMock(return_value=Analysis(side_to_move=chess.WHITE, infos=[]))
        monkeypatch.setattr(fake_engine, "analyse", analyse)
        entries = await fake_engine.review_fast(["e2e4", "e2e4", "e7e5"])
        assert len(entries) == 2
        assert entries[1].best_move is None

    async def test_game_over_position_not_searched(self, fake_engine, monkeypatch):
        analyse = AsyncMock(return_value=Analysis(
            side_to_move=chess.WHITE, infos=[EngineInfo(move="a2a3", score=Cp(0))],
        ))
        monkeypatch.setattr(fake_engine, "analyse", analyse)
        entries = await fake_engine.review_fast(["f2f3", "e7e5", "g2g4", "d8h4"])
        assert len(entries) == 5
        assert entries[-1] == ReviewEntry(idx=4, best_move=None, score=None)
        assert analyse.await_count == 4


class TestIdentifyOpening:
    @pytest.fixture
    def engine(self):
        book = OpeningBook.from_data({"openings": [{
            "name": "Italian Game", "eco": "C50", "side": "White",
            "lines": [{"variation": "Giuoco Piano", "moves": ["e4", "e5", "Nf3", "Nc6", "Bc4", "Bc5"]}],
        }]})
        return StockfishEngine(book=book)

    async def test_detects_longest_prefix(self, engine):
        found = await engine.identify_opening(["e2e4", "e7e5", "g1f3", "b8c6", "f1c4", "g8f6"])
        assert found.eco == "C50"
        assert found.variation == "Giuoco Piano"
        assert found.ply_depth == 5

    async def test_off_book(self, engine):
        assert await engine.identify_opening(["a2a3"]) is None
        assert await engine.identify_opening([]) is None


def test_protocol_is_abstract():
    with pytest.raises(TypeError):
        EngineProtocol()


# ---------------------------------------------------------------------------
# Real engine, when one is installed
# ---------------------------------------------------------------------------


@pytest.fixture
async def stockfish():
    if shutil.which("stockfish") is None:
        pytest.skip("stockfish not installed")
    e = StockfishEngine(hash_mb=16)
    await e.start()
    yield e
    await e.stop()


async def test_real_engine_multipv(stockfish):
    fen = "r1bqkbnr/pppp1ppp/2n5/4p3/2B1P3/5N2/PPPP1PPP/RNBQK2R b KQkq - 3 3"
    result = await stockfish.analyse(fen, multipv=3, movetime_ms=100)
    assert 1 <= len(result.infos) <= 3
    board = chess.Board(fen)
    for info in result.infos:
        assert chess.Move.from_uci(info.move) in board.legal_moves
    cps = [score_to_cp(i.score) for i in result.infos]
    assert cps == sorted(cps, reverse=True)
