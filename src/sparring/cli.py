"""CLI utility for picking one opponent move.

Usage:
    python -m sparring.cli <fen> [--elo N] [--history UCI ...]
        [--seed SEED] [--stockfish PATH]
    python -m sparring.cli --bands

Returns JSON with move, san, reason, and the decision trace.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict

import chess

from sparring.book import load_book
from sparring.config import Settings
from sparring.engine import StockfishEngine
from sparring.picker import BotPicker, PickerError


def _seed(value: str) -> int | str:
    try:
        return int(value)
    except ValueError:
        return value


def _bands(settings: Settings) -> dict:
    config = settings.picker_config()
    return {
        band_id: {"label": band.label, "elo_range": list(band.elo_range), "k": band.k}
        for band_id, band in config.bands.items()
    }


async def _run(args: argparse.Namespace, settings: Settings) -> dict:
    board = chess.Board(args.fen)
    config = settings.picker_config()

    engine = StockfishEngine(
        stockfish_path=args.stockfish or settings.stockfish_path,
        hash_mb=settings.effective_hash_mb(config),
        threads=settings.effective_threads(config),
    )
    await engine.start()
    try:
        picker = BotPicker(
            engine,
            book=load_book(settings.opening_book_path),
            config=config,
        )
        picked = await picker.pick_move(
            args.fen, args.elo, history=args.history, seed=args.seed,
        )
    finally:
        await engine.stop()

    return {
        "move": picked.uci,
        "san": board.san(chess.Move.from_uci(picked.uci)),
        "reason": picked.reason,
        "meta": asdict(picked.meta),
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Pick a humanlike move at a target Elo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("fen", nargs="?", default=chess.STARTING_FEN,
                        help="Position FEN (quote the full string)")
    parser.add_argument("--elo", type=int, default=1200, help="Target Elo (400-2500)")
    parser.add_argument(
        "--history", nargs="*", default=[], metavar="UCI",
        help="Moves played so far, in UCI, from the start of the game",
    )
    parser.add_argument("--seed", type=_seed, default=None,
                        help="Seed for a reproducible pick (integer or string)")
    parser.add_argument("--stockfish", default=None, help="Path to Stockfish binary")
    parser.add_argument("--bands", action="store_true",
                        help="Print the strength bands and exit")
    args = parser.parse_args()

    settings = Settings()
    logging.basicConfig(level=settings.log_level.upper())

    if args.bands:
        json.dump(_bands(settings), sys.stdout, indent=2)
        print()
        return

    try:
        result = asyncio.run(_run(args, settings))
    except (ValueError, PickerError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    json.dump(result, sys.stdout, indent=2)
    print()


if __name__ == "__main__":
    main()
