"""Humanlike move selection at a target Elo.

The picker consults the opening book first, then asks the engine for
ranked candidates, widening the search step by step until a usable pool
exists. A chain of imperfection rules may substitute a weaker move; if
none fires, a candidate is drawn with weight ``exp(-k * drop)``.

Inside the calibration (dev) band the picker keeps a small amount of
per-game state and nudges its temperature and drop tolerance toward a
target average centipawn gap.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable

import chess
import chess.engine

from sparring.book import OpeningBook, load_book
from sparring.engine import EngineCancelled, EngineInfo, EngineProtocol, score_to_cp
from sparring.rng import Rng, create_rng, uniform_index, weighted_index
from sparring.strength import (
    DEFAULT_PICKER_CONFIG,
    BandConfig,
    PickerConfig,
    band_for_elo,
    clamp_elo,
    dev_band_includes,
    imperfection_for_elo,
    round_half_up,
)

logger = logging.getLogger(__name__)


class PickerError(RuntimeError):
    pass


class NoLegalMovesError(PickerError):
    pass


class PickCancelled(PickerError):
    pass


class PickerDisposedError(PickerError):
    pass


# (elo, think time ms); linear in between.
MOVE_TIME_POINTS: list[tuple[int, int]] = [
    (400, 120),
    (600, 160),
    (800, 210),
    (1000, 320),
    (1300, 500),
    (1700, 850),
    (2000, 1200),
    (2300, 1600),
    (2500, 1900),
]

# band id -> (time threshold ms, lines below it, lines at or above it, minimum lines)
MULTIPV_BY_BAND: dict[str, tuple[int, int, int, int]] = {
    "beginner": (200, 3, 4, 4),
    "developing": (250, 5, 6, 5),
    "intermediate": (260, 3, 5, 3),
    "advanced": (0, 2, 2, 1),
}
MIN_MULTIPV_MS = 80

# Bands that always play the most popular book line.
FAVOR_COMMON_BANDS = frozenset({"beginner", "developing", "intermediate"})

GAP_SMOOTHING = 0.9


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def movetime_for_elo(elo: float | int | str) -> int:
    e = clamp_elo(elo)
    for (e0, t0), (e1, t1) in zip(MOVE_TIME_POINTS, MOVE_TIME_POINTS[1:]):
        if e0 <= e <= e1:
            return round_half_up(t0 + (t1 - t0) * (e - e0) / (e1 - e0))
    return MOVE_TIME_POINTS[-1][1]


def multipv_for(band: BandConfig, ms: int) -> int:
    if ms < MIN_MULTIPV_MS:
        return 1
    threshold, below, above, minimum = MULTIPV_BY_BAND.get(band.id, (0, 1, 1, 1))
    lines = below if ms < threshold else above
    return min(max(lines, minimum), band.multipv_cap)


# ---------------------------------------------------------------------------
# Candidates and decision trace
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineCandidate:
    move: str
    cp: int                         # side to move, mates linearized
    pv: tuple[str, ...] = ()


@dataclass(frozen=True)
class PickerCandidate(EngineCandidate):
    drop: int = 0                   # best cp - this cp


def to_engine_candidates(infos: list[EngineInfo]) -> list[EngineCandidate]:
    """One candidate per move (highest score wins), best first."""
    best: dict[str, EngineCandidate] = {}
    for info in infos:
        if not info or not info.move or info.score is None:
            continue
        cp = score_to_cp(info.score)
        if not math.isfinite(cp):
            continue
        prev = best.get(info.move)
        if prev is None or prev.cp < cp:
            best[info.move] = EngineCandidate(info.move, cp, tuple(info.pv))
    return sorted(best.values(), key=lambda c: c.cp, reverse=True)


def with_drops(cands: list[EngineCandidate]) -> list[PickerCandidate]:
    if not cands:
        return []
    best_cp = cands[0].cp
    return [PickerCandidate(c.move, c.cp, c.pv, drop=max(0, best_cp - c.cp)) for c in cands]


@dataclass(frozen=True)
class BookLineRef:
    eco: str
    name: str
    variation: str | None


@dataclass(frozen=True)
class PickMeta:
    seed: int | str | None
    band: str
    history_length: int
    ms_budget: int
    multipv: int
    final_ms: int
    final_multipv: int
    k: float
    temperature: float
    max_drop: float
    drop_relaxations: tuple[int, ...]
    multipv_bumps: tuple[int, ...]
    time_extensions: tuple[int, ...]
    used_book: bool
    book_line: BookLineRef | None
    candidate_pool: tuple[PickerCandidate, ...]
    eval_drops: tuple[tuple[str, int], ...]
    used_imperfection: str | None


@dataclass(frozen=True)
class PickedMove:
    uci: str
    reason: str
    meta: PickMeta


@dataclass
class _Trace:
    """Mutable scratch for one pick; frozen into PickMeta on return."""
    seed: int | str | None
    band: str
    history_length: int
    ms_budget: int = 0
    multipv: int = 0
    final_ms: int = 0
    final_multipv: int = 0
    k: float = 0.0
    max_drop: float = 0.0
    drop_relaxations: list[int] = field(default_factory=list)
    multipv_bumps: list[int] = field(default_factory=list)
    time_extensions: list[int] = field(default_factory=list)
    used_book: bool = False
    book_line: BookLineRef | None = None
    candidate_pool: list[PickerCandidate] = field(default_factory=list)
    used_imperfection: str | None = None

    def freeze(self) -> PickMeta:
        return PickMeta(
            seed=self.seed,
            band=self.band,
            history_length=self.history_length,
            ms_budget=self.ms_budget,
            multipv=self.multipv,
            final_ms=self.final_ms,
            final_multipv=self.final_multipv,
            k=self.k,
            temperature=self.k,
            max_drop=self.max_drop,
            drop_relaxations=tuple(self.drop_relaxations),
            multipv_bumps=tuple(self.multipv_bumps),
            time_extensions=tuple(self.time_extensions),
            used_book=self.used_book,
            book_line=self.book_line,
            candidate_pool=tuple(self.candidate_pool),
            eval_drops=tuple((c.move, c.drop) for c in self.candidate_pool[:5]),
            used_imperfection=self.used_imperfection,
        )


# ---------------------------------------------------------------------------
# Calibration state
# ---------------------------------------------------------------------------


@dataclass
class DevTuningState:
    avg_gap: float | None = None
    k_scale: float = 1.0
    drop_adj: float = 0.0
    last_history_len: int = 0

    def reset(self) -> None:
        self.avg_gap = None
        self.k_scale = 1.0
        self.drop_adj = 0.0


@dataclass(frozen=True)
class SearchBudget:
    ms: int
    multipv: int
    max_drop: float
    k: float


def dev_phase_weight(history_len: int, config: PickerConfig) -> float:
    """1.0 at the first ply, fading linearly to 0 at ``phase.max_plies``."""
    if history_len <= 0:
        return 1.0
    span = max(1, config.dev_band.phase.max_plies)
    if history_len >= span:
        return 0.0
    return _clamp((span - history_len) / span, 0.0, 1.0)


def dev_tuning(
    state: DevTuningState,
    budget: SearchBudget,
    history_len: int,
    config: PickerConfig,
) -> SearchBudget:
    dev = config.dev_band
    base_drop = budget.max_drop
    base_k = budget.k
    ms = max(budget.ms, dev.phase.max_ms)
    multipv = min(budget.multipv, dev.phase.multipv_cap)
    drop_adj = _clamp(state.drop_adj, dev.min_drop - base_drop, dev.max_drop - base_drop)
    drop = _clamp(base_drop + drop_adj, dev.min_drop, dev.max_drop)
    k = base_k * state.k_scale

    phase = dev_phase_weight(history_len, config)
    if phase > 0:
        ms = min(ms, dev.phase.max_ms)
        drop = min(dev.max_drop, drop + phase * dev.phase.extra_drop)
        k *= 1 - (1 - dev.phase.k_scale) * phase

    k_lo, k_hi = (scale * base_k for scale in dev.k_range_scale)
    return SearchBudget(ms=ms, multipv=multipv, max_drop=drop, k=_clamp(k, k_lo, k_hi))


def dev_update_after_pick(state: DevTuningState, gap_cp: float, config: PickerConfig) -> None:
    dev = config.dev_band
    if state.avg_gap is None:
        state.avg_gap = gap_cp
    else:
        state.avg_gap = state.avg_gap * GAP_SMOOTHING + gap_cp * (1 - GAP_SMOOTHING)
    err = dev.target_gap_cp - state.avg_gap
    if abs(err) < 1:
        return
    adjust = _clamp(err / dev.target_gap_cp, -1.0, 1.0)
    state.k_scale = _clamp(state.k_scale - adjust * dev.k_adjust_step, *dev.k_range_scale)
    span = dev.max_drop - dev.min_drop
    state.drop_adj = _clamp(state.drop_adj + adjust * dev.drop_adjust_step, -span, span)


# ---------------------------------------------------------------------------
# Imperfection rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleContext:
    board: chess.Board
    pool: list[PickerCandidate]
    elo: int
    rng: Rng
    config: PickerConfig


@dataclass(frozen=True)
class RuleHit:
    move: str
    kind: str       # recorded in the trace
    reason: str     # suffix of the "engine:" reason


Rule = Callable[[RuleContext], "RuleHit | None"]


def random_legal_move(
    board: chess.Board, rng: Rng, exclude: set[str] | frozenset[str] = frozenset()
) -> str | None:
    moves = [m.uci() for m in board.legal_moves if m.uci() not in exclude]
    if not moves:
        return None
    return moves[uniform_index(len(moves), rng)]


def _worst_first(pool: list[PickerCandidate], min_drop: float) -> list[PickerCandidate]:
    return sorted((c for c in pool if c.drop >= min_drop), key=lambda c: c.drop, reverse=True)


def dev_forced_random(ctx: RuleContext) -> RuleHit | None:
    """Calibration band: occasionally play the worst candidate or a non-candidate."""
    dev = ctx.config.dev_band
    if not ctx.pool or not dev_band_includes(ctx.elo, ctx.config):
        return None
    if ctx.rng.random() >= dev.forced_random_rate:
        return None
    worst = _worst_first(ctx.pool, dev.forced_random_min_drop)
    if worst:
        return RuleHit(worst[0].move, "dev-forced", "devForced")
    move = random_legal_move(ctx.board, ctx.rng, {c.move for c in ctx.pool})
    return RuleHit(move, "dev-forced", "devForced") if move else None


def dev_noisy_pick(ctx: RuleContext) -> RuleHit | None:
    """Calibration band: sample uniformly among the worst few candidates."""
    dev = ctx.config.dev_band
    if not ctx.pool or not dev_band_includes(ctx.elo, ctx.config):
        return None
    if ctx.rng.random() >= dev.noise_rate:
        return None
    worst = _worst_first(ctx.pool, dev.noise_min_drop)
    if not worst:
        return None
    span = min(len(worst), dev.noise_take)
    return RuleHit(worst[uniform_index(span, ctx.rng)].move, "dev-noise", "devNoise")


def profile_imperfection(ctx: RuleContext) -> RuleHit | None:
    """Elo-keyed blunder injection."""
    profile = imperfection_for_elo(ctx.elo, ctx.config)
    if profile is None:
        return None
    if ctx.rng.random() >= profile.rate:
        return None
    worse = _worst_first([c for c in ctx.pool if c.drop > 0], 0)
    in_window = [
        c for c in worse
        if c.drop >= profile.min_drop and (profile.max_drop <= 0 or c.drop <= profile.max_drop)
    ]
    selection = in_window or worse
    if selection:
        span = max(1, min(len(selection), profile.take_worst))
        pick = selection[uniform_index(span, ctx.rng)]
        return RuleHit(pick.move, "imperfection:drop", "imperfection:drop")
    if profile.random_legal_rate > 0 and ctx.rng.random() < profile.random_legal_rate:
        move = random_legal_move(ctx.board, ctx.rng, {c.move for c in ctx.pool})
        if move:
            return RuleHit(move, "imperfection:randomLegal", "imperfection:randomLegal")
    return None


# Evaluated in order; the first hit wins.
IMPERFECTION_RULES: tuple[Rule, ...] = (dev_forced_random, dev_noisy_pick, profile_imperfection)


def weighted_pick(pool: list[PickerCandidate], k: float, rng: Rng) -> PickerCandidate:
    weights = [math.exp(-k * max(0, c.drop)) for c in pool]
    return pool[weighted_index(weights, rng)]


# ---------------------------------------------------------------------------
# Picker
# ---------------------------------------------------------------------------


class BotPicker:
    """Selects moves for one synthetic opponent.

    Calls are serialized per instance; the calibration state is never
    shared. The book and config may be shared between instances.
    """

    def __init__(
        self,
        engine: EngineProtocol,
        book: OpeningBook | None = None,
        rng: Rng | None = None,
        config: PickerConfig = DEFAULT_PICKER_CONFIG,
        rules: tuple[Rule, ...] = IMPERFECTION_RULES,
    ):
        self._engine = engine
        self._book = book if book is not None else load_book()
        self._rng = rng or create_rng()
        self._config = config
        self._rules = rules
        self._dev_state = DevTuningState()
        self._lock = asyncio.Lock()
        self._disposed = False

    @property
    def dev_state(self) -> DevTuningState:
        """Snapshot of the calibration state (a copy)."""
        s = self._dev_state
        return DevTuningState(s.avg_gap, s.k_scale, s.drop_adj, s.last_history_len)

    def dispose(self) -> None:
        self._disposed = True

    async def pick_move(
        self,
        fen: str,
        elo: float | int | str,
        history: list[str] | None = None,
        seed: int | str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> PickedMove:
        async with self._lock:
            # Checked under the lock so queued picks see a later dispose().
            if self._disposed:
                raise PickerDisposedError("bot picker disposed")
            return await self._pick(fen, elo, list(history or []), seed, cancel)

    async def _pick(
        self,
        fen: str,
        elo_raw: float | int | str,
        history: list[str],
        seed: int | str | None,
        cancel: asyncio.Event | None,
    ) -> PickedMove:
        config = self._config
        started = time.monotonic()
        board = chess.Board(fen)
        if not any(board.legal_moves):
            raise NoLegalMovesError(f"No legal moves in {fen}")

        elo = clamp_elo(elo_raw)
        band = band_for_elo(elo, config)
        rng = create_rng(seed) if seed is not None else self._rng
        in_dev = dev_band_includes(elo, config)
        trace = _Trace(
            seed=seed if seed is not None else self._rng.seed_value,
            band=band.id,
            history_length=len(history),
        )

        ms = max(band.movetime_floor_ms, min(movetime_for_elo(elo), config.global_time_cap_ms))
        budget = SearchBudget(ms=ms, multipv=multipv_for(band, ms), max_drop=band.base_max_drop, k=band.k)
        # Staged so a cancelled pick leaves the calibration state untouched.
        dev_state = self._staged_dev_state(len(history), in_dev)
        if in_dev:
            budget = dev_tuning(dev_state, budget, len(history), config)
        trace.ms_budget = trace.final_ms = budget.ms
        trace.multipv = trace.final_multipv = budget.multipv
        trace.k = budget.k
        trace.max_drop = budget.max_drop

        def finish(uci: str, reason: str) -> PickedMove:
            self._dev_state = dev_state
            meta = trace.freeze()
            logger.info("picker decision: %s", {
                "band": band.id,
                "reason": reason,
                "ms_budget": meta.ms_budget,
                "final_ms": meta.final_ms,
                "multipv": meta.final_multipv,
                "drop_cap": meta.max_drop,
                "history_len": meta.history_length,
                "widened_drop_steps": len(meta.drop_relaxations),
                "multipv_bumps": len(meta.multipv_bumps),
                "time_extensions": len(meta.time_extensions),
                "candidate_count": len(meta.candidate_pool),
                "used_book": meta.used_book,
                "elapsed_ms": round((time.monotonic() - started) * 1000),
                "cancel_requested": bool(cancel and cancel.is_set()),
            })
            return PickedMove(uci=uci, reason=reason, meta=meta)

        self._raise_if_cancelled(cancel)

        exit_early = band.book.exit_early
        if exit_early is None and in_dev:
            exit_early = config.dev_band.book_exit
        book_pick = self._book.pick(
            side=board.turn,
            history=history,
            fen=fen,
            max_plies=band.book.max_plies or config.default_book_max_plies,
            top_lines=band.book.top_lines,
            favor_common=band.id in FAVOR_COMMON_BANDS,
            rng=rng,
            exit_early=exit_early,
        )
        if book_pick is not None:
            line = book_pick.line
            trace.used_book = True
            trace.book_line = BookLineRef(line.eco, line.name, line.variation)
            return finish(book_pick.move, f"book:{line.name or line.eco}")

        pool, max_drop = await self._widen(fen, band, budget, trace, cancel)
        trace.max_drop = max_drop

        if not pool:
            fallback = random_legal_move(board, rng)
            if fallback is None:
                raise NoLegalMovesError(f"No legal moves in {fen}")
            return finish(fallback, "engine:fallback")

        ctx = RuleContext(board=board, pool=pool, elo=elo, rng=rng, config=config)
        for rule in self._rules:
            hit = rule(ctx)
            if hit is not None:
                trace.used_imperfection = hit.kind
                return finish(hit.move, f"engine:{hit.reason}")

        choice = weighted_pick(pool, budget.k, rng)
        if in_dev:
            dev_update_after_pick(dev_state, choice.drop, config)
        return finish(choice.move, "engine:weighted")

    def _staged_dev_state(self, history_len: int, in_dev: bool) -> DevTuningState:
        state = self.dev_state
        if history_len <= 1 or history_len < state.last_history_len or not in_dev:
            state.reset()
        state.last_history_len = history_len
        return state

    @staticmethod
    def _raise_if_cancelled(cancel: asyncio.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            logger.debug("pick cancelled")
            raise PickCancelled("pick cancelled")

    async def _query(
        self, fen: str, multipv: int, ms: int, cancel: asyncio.Event | None
    ) -> list[EngineCandidate]:
        self._raise_if_cancelled(cancel)
        try:
            analysis = await self._engine.analyse(fen, multipv=multipv, movetime_ms=ms, cancel=cancel)
        except EngineCancelled as e:
            logger.debug("pick cancelled during analysis")
            raise PickCancelled("pick cancelled") from e
        except (RuntimeError, asyncio.TimeoutError, chess.engine.EngineError) as e:
            logger.warning("Engine analysis failed (%s); widening", e)
            return []
        self._raise_if_cancelled(cancel)
        return to_engine_candidates(analysis.infos)

    async def _widen(
        self,
        fen: str,
        band: BandConfig,
        budget: SearchBudget,
        trace: _Trace,
        cancel: asyncio.Event | None,
    ) -> tuple[list[PickerCandidate], float]:
        """Query until a candidate fits the drop tolerance or steps run out.

        Each widening step is consumed at most once, so the number of
        engine calls is bounded by the schedule length plus one.
        """
        drop_steps = list(band.widening.drop_steps_cp)
        multipv_steps = list(band.widening.multipv_increments)
        time_steps = list(band.widening.time_extensions_ms)
        max_drop = budget.max_drop
        multipv = budget.multipv
        ms = budget.ms

        def bump_multipv() -> bool:
            nonlocal multipv
            if not multipv_steps:
                return False
            multipv = min(band.multipv_cap, multipv + multipv_steps.pop(0))
            trace.multipv_bumps.append(multipv)
            trace.final_multipv = multipv
            return True

        def extend_time() -> bool:
            nonlocal ms
            if not time_steps:
                return False
            extended = min(self._config.global_time_cap_ms, ms + time_steps.pop(0))
            if extended != ms:
                ms = extended
                trace.time_extensions.append(ms)
                trace.final_ms = ms
            return True

        while True:
            cands = await self._query(fen, multipv, ms, cancel)
            if not cands:
                if bump_multipv() or extend_time():
                    continue
                return [], max_drop

            pool = with_drops(cands)
            trace.candidate_pool = pool
            fitting = [c for c in pool if c.drop <= max_drop]
            if fitting:
                return fitting, max_drop

            if drop_steps:
                extra = drop_steps.pop(0)
                max_drop += extra
                trace.drop_relaxations.append(extra)
                fitting = [c for c in pool if c.drop <= max_drop]
                if fitting:
                    return fitting, max_drop

            if bump_multipv() or extend_time():
                continue
            return pool, max_drop
