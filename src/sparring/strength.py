"""Elo-keyed strength table for the move picker.

Bands carry the search budget and sampling temperature for a tier of
players; imperfection profiles inject blunders at a rate that fades with
strength; the dev band is the calibration window whose temperature and
drop tolerance self-tune over a game.

The whole table is data. Callers may swap it out with
``picker_config_from_dict`` / ``load_picker_config``.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

MIN_ELO = 400
MAX_ELO = 2500


@dataclass(frozen=True)
class BookExit:
    min_plies: int
    probability: float


@dataclass(frozen=True)
class BookConfig:
    max_plies: int
    top_lines: int
    exit_early: BookExit | None = None


@dataclass(frozen=True)
class ProgressiveWidening:
    drop_steps_cp: tuple[int, ...] = ()      # extra drop tolerance per step
    multipv_increments: tuple[int, ...] = ()  # extra engine lines per step
    time_extensions_ms: tuple[int, ...] = ()  # extra think time per step


@dataclass(frozen=True)
class BandConfig:
    id: str
    label: str
    elo_range: tuple[int, int]
    movetime_floor_ms: int
    multipv_cap: int
    base_max_drop: int
    k: float
    book: BookConfig
    widening: ProgressiveWidening
    random_floor_drop: int


@dataclass(frozen=True)
class DevPhase:
    """Opening-phase override that fades out over ``max_plies``."""
    max_plies: int
    max_ms: int
    extra_drop: int
    k_scale: float
    multipv_cap: int


@dataclass(frozen=True)
class DevBandConfig:
    range: tuple[int, int]
    target_gap_cp: int
    min_drop: int
    max_drop: int
    k_range_scale: tuple[float, float]
    drop_adjust_step: float
    k_adjust_step: float
    noise_rate: float
    noise_min_drop: int
    noise_take: int
    forced_random_rate: float
    forced_random_min_drop: int
    book_exit: BookExit
    phase: DevPhase


@dataclass(frozen=True)
class ImperfectionProfile:
    rate: float
    min_drop: int
    max_drop: int
    random_legal_rate: float
    take_worst: int


@dataclass(frozen=True)
class ImperfectionEntry:
    range: tuple[int, int]
    profile: ImperfectionProfile


@dataclass(frozen=True)
class PickerConfig:
    threads: int
    hash_mb: int
    default_book_max_plies: int
    global_time_cap_ms: int
    bands: dict[str, BandConfig]
    dev_band: DevBandConfig
    imperfections: tuple[ImperfectionEntry, ...] = field(default_factory=tuple)
    default_band: str = "advanced"


BANDS: dict[str, BandConfig] = {
    "beginner": BandConfig(
        id="beginner", label="Beginner", elo_range=(400, 800),
        movetime_floor_ms=150, multipv_cap=4, base_max_drop=700, k=0.006,
        book=BookConfig(max_plies=5, top_lines=3),
        widening=ProgressiveWidening((120, 200), (1,), (180,)),
        random_floor_drop=250,
    ),
    "developing": BandConfig(
        id="developing", label="Developing", elo_range=(801, 1000),
        movetime_floor_ms=170, multipv_cap=6, base_max_drop=900, k=0.005,
        book=BookConfig(max_plies=2, top_lines=1, exit_early=BookExit(1, 0.7)),
        widening=ProgressiveWidening((160, 220), (1,), (220,)),
        random_floor_drop=320,
    ),
    "intermediate": BandConfig(
        id="intermediate", label="Intermediate", elo_range=(1001, 1300),
        movetime_floor_ms=160, multipv_cap=2, base_max_drop=480, k=0.012,
        book=BookConfig(max_plies=10, top_lines=3),
        widening=ProgressiveWidening((100, 160), (1,), (200,)),
        random_floor_drop=220,
    ),
    "advanced": BandConfig(
        id="advanced", label="Advanced", elo_range=(1301, 1700),
        movetime_floor_ms=130, multipv_cap=2, base_max_drop=300, k=0.0135,
        book=BookConfig(max_plies=12, top_lines=4),
        widening=ProgressiveWidening((80,), (1,), (220,)),
        random_floor_drop=150,
    ),
    "expert": BandConfig(
        id="expert", label="Expert", elo_range=(1701, 2600),
        movetime_floor_ms=120, multipv_cap=1, base_max_drop=220, k=0.024,
        book=BookConfig(max_plies=14, top_lines=6),
        widening=ProgressiveWidening((60,), (), (200,)),
        random_floor_drop=80,
    ),
}

DEV_BAND = DevBandConfig(
    range=(800, 1000),
    target_gap_cp=140,
    min_drop=80,
    max_drop=720,
    k_range_scale=(0.7, 1.15),
    drop_adjust_step=10,
    k_adjust_step=0.02,
    noise_rate=0.7,
    noise_min_drop=12,
    noise_take=6,
    forced_random_rate=0.15,
    forced_random_min_drop=180,
    book_exit=BookExit(min_plies=1, probability=0.7),
    phase=DevPhase(max_plies=24, max_ms=170, extra_drop=320, k_scale=0.5, multipv_cap=5),
)

IMPERFECTIONS: tuple[ImperfectionEntry, ...] = (
    ImperfectionEntry((0, 600), ImperfectionProfile(0.75, 60, 700, 0.32, 5)),
    ImperfectionEntry((601, 800), ImperfectionProfile(0.65, 45, 660, 0.24, 4)),
    ImperfectionEntry((801, 1000), ImperfectionProfile(0.58, 30, 620, 0.15, 4)),
    ImperfectionEntry((1001, 1300), ImperfectionProfile(0.18, 45, 280, 0.04, 2)),
    ImperfectionEntry((1301, 1700), ImperfectionProfile(0.08, 35, 160, 0.02, 2)),
    ImperfectionEntry((1701, 2000), ImperfectionProfile(0.04, 25, 110, 0.0, 2)),
    ImperfectionEntry((2001, 2300), ImperfectionProfile(0.02, 20, 80, 0.0, 2)),
)

DEFAULT_PICKER_CONFIG = PickerConfig(
    threads=2,
    hash_mb=256,
    default_book_max_plies=12,
    global_time_cap_ms=1500,
    bands=BANDS,
    dev_band=DEV_BAND,
    imperfections=IMPERFECTIONS,
)


def round_half_up(value: float) -> int:
    """Halves round toward +inf (the builtin round() goes to even)."""
    return math.floor(value + 0.5)


def clamp_elo(elo: Any) -> int:
    """Round and clamp to the supported range; junk input maps to the floor."""
    try:
        value = float(elo)
    except (TypeError, ValueError):
        return MIN_ELO
    if not math.isfinite(value):
        return MIN_ELO
    return max(MIN_ELO, min(MAX_ELO, round_half_up(value)))


def band_for_elo(elo: Any, config: PickerConfig = DEFAULT_PICKER_CONFIG) -> BandConfig:
    e = clamp_elo(elo)
    for band in config.bands.values():
        lo, hi = band.elo_range
        if lo <= e <= hi:
            return band
    return config.bands[config.default_band]


def dev_band_includes(elo: Any, config: PickerConfig = DEFAULT_PICKER_CONFIG) -> bool:
    e = clamp_elo(elo)
    lo, hi = config.dev_band.range
    return lo <= e <= hi


def imperfection_for_elo(
    elo: Any, config: PickerConfig = DEFAULT_PICKER_CONFIG
) -> ImperfectionProfile | None:
    e = clamp_elo(elo)
    for entry in config.imperfections:
        lo, hi = entry.range
        if lo <= e <= hi:
            return entry.profile
    return None


# ---------------------------------------------------------------------------
# Overrides from plain data
# ---------------------------------------------------------------------------


def _book_exit(raw: dict | None, base: BookExit | None = None) -> BookExit | None:
    if raw is None:
        return None
    merged = {**(asdict(base) if base is not None else {}), **raw}
    return BookExit(min_plies=int(merged["min_plies"]), probability=float(merged["probability"]))


def _band_from_dict(band_id: str, raw: dict, base: BandConfig | None) -> BandConfig:
    merged: dict[str, Any] = asdict(base) if base is not None else {"id": band_id, "label": band_id}
    book = {**merged.get("book", {}), **raw.get("book", {})}
    widening = {**merged.get("widening", {}), **raw.get("widening", {})}
    merged.update(raw)
    return BandConfig(
        id=band_id,
        label=str(merged.get("label", band_id)),
        elo_range=tuple(merged["elo_range"]),
        movetime_floor_ms=int(merged["movetime_floor_ms"]),
        multipv_cap=int(merged["multipv_cap"]),
        base_max_drop=int(merged["base_max_drop"]),
        k=float(merged["k"]),
        book=BookConfig(
            max_plies=int(book["max_plies"]),
            top_lines=int(book["top_lines"]),
            exit_early=_book_exit(
                book.get("exit_early"), base.book.exit_early if base is not None else None
            ),
        ),
        widening=ProgressiveWidening(
            drop_steps_cp=tuple(widening.get("drop_steps_cp", ())),
            multipv_increments=tuple(widening.get("multipv_increments", ())),
            time_extensions_ms=tuple(widening.get("time_extensions_ms", ())),
        ),
        random_floor_drop=int(merged["random_floor_drop"]),
    )


def _dev_band_from_dict(raw: dict, base: DevBandConfig) -> DevBandConfig:
    merged = asdict(base)
    merged.update(raw)
    phase = {**asdict(base.phase), **raw.get("phase", {})}
    return DevBandConfig(
        range=tuple(merged["range"]),
        target_gap_cp=int(merged["target_gap_cp"]),
        min_drop=int(merged["min_drop"]),
        max_drop=int(merged["max_drop"]),
        k_range_scale=tuple(merged["k_range_scale"]),
        drop_adjust_step=float(merged["drop_adjust_step"]),
        k_adjust_step=float(merged["k_adjust_step"]),
        noise_rate=float(merged["noise_rate"]),
        noise_min_drop=int(merged["noise_min_drop"]),
        noise_take=int(merged["noise_take"]),
        forced_random_rate=float(merged["forced_random_rate"]),
        forced_random_min_drop=int(merged["forced_random_min_drop"]),
        book_exit=_book_exit(merged["book_exit"], base.book_exit),
        phase=DevPhase(**phase),
    )


def picker_config_from_dict(
    raw: dict, base: PickerConfig = DEFAULT_PICKER_CONFIG
) -> PickerConfig:
    """Build a PickerConfig from plain data, merged over ``base``.

    Bands are merged one by one; a band id absent from ``base`` must be
    given in full. ``imperfections``, when present, replaces the whole list.
    """
    bands = dict(base.bands)
    for band_id, band_raw in raw.get("bands", {}).items():
        bands[band_id] = _band_from_dict(band_id, band_raw, base.bands.get(band_id))

    dev_band = base.dev_band
    if "dev_band" in raw:
        dev_band = _dev_band_from_dict(raw["dev_band"], base.dev_band)

    imperfections = base.imperfections
    if "imperfections" in raw:
        imperfections = tuple(
            ImperfectionEntry(
                range=tuple(row["range"]),
                profile=ImperfectionProfile(**row["profile"]),
            )
            for row in raw["imperfections"]
        )

    scalars = {
        key: raw[key]
        for key in ("threads", "hash_mb", "default_book_max_plies",
                    "global_time_cap_ms", "default_band")
        if key in raw
    }
    config = replace(
        base, bands=bands, dev_band=dev_band, imperfections=imperfections, **scalars
    )
    if config.default_band not in config.bands:
        raise ValueError(f"Unknown default band: {config.default_band}")
    return config


def load_picker_config(path: str | Path) -> PickerConfig:
    with open(path) as f:
        return picker_config_from_dict(json.load(f))
