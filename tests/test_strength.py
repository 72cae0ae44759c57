import json

import pytest

from sparring.strength import (
    BANDS,
    DEFAULT_PICKER_CONFIG,
    MAX_ELO,
    MIN_ELO,
    BandConfig,
    band_for_elo,
    clamp_elo,
    dev_band_includes,
    imperfection_for_elo,
    load_picker_config,
    picker_config_from_dict,
)

ORDERED = ["beginner", "developing", "intermediate", "advanced", "expert"]


def test_all_bands_are_band_configs():
    for band_id, band in BANDS.items():
        assert isinstance(band, BandConfig)
        assert band.id == band_id


def test_default_band_exists():
    assert DEFAULT_PICKER_CONFIG.default_band in DEFAULT_PICKER_CONFIG.bands


def test_every_elo_maps_to_containing_band():
    for elo in range(MIN_ELO, MAX_ELO + 1):
        band = band_for_elo(elo)
        lo, hi = band.elo_range
        assert lo <= elo <= hi
        matches = [b for b in BANDS.values() if b.elo_range[0] <= elo <= b.elo_range[1]]
        assert matches == [band]


def test_band_boundaries():
    assert band_for_elo(800).id == "beginner"
    assert band_for_elo(801).id == "developing"
    assert band_for_elo(1000).id == "developing"
    assert band_for_elo(1001).id == "intermediate"
    assert band_for_elo(1500).id == "advanced"
    assert band_for_elo(2500).id == "expert"


def test_out_of_range_elo_is_clamped():
    assert band_for_elo(-50).id == "beginner"
    assert band_for_elo(9000).id == "expert"


@pytest.mark.parametrize("raw, expected", [
    (1200, 1200),
    (1200.6, 1201),
    (100, MIN_ELO),
    (3000, MAX_ELO),
    (float("nan"), MIN_ELO),
    (float("inf"), MIN_ELO),
    (None, MIN_ELO),
    ("garbage", MIN_ELO),
    ("1500", 1500),
    (800.5, 801),
    (1200.5, 1201),
])
def test_clamp_elo(raw, expected):
    assert clamp_elo(raw) == expected


def test_temperature_increases_with_level_above_developing():
    ks = [BANDS[n].k for n in ORDERED[1:]]
    assert ks == sorted(ks)


def test_base_drop_tightens_above_developing():
    drops = [BANDS[n].base_max_drop for n in ORDERED[1:]]
    assert drops == sorted(drops, reverse=True)


def test_dev_band_range():
    assert dev_band_includes(800)
    assert dev_band_includes(1000)
    assert not dev_band_includes(799)
    assert not dev_band_includes(1001)


def test_imperfection_lookup():
    profile = imperfection_for_elo(500)
    assert profile is not None
    assert profile.rate == 0.75
    assert imperfection_for_elo(1200).take_worst == 2
    assert imperfection_for_elo(2400) is None


def test_imperfection_rate_fades_with_strength():
    rates = [entry.profile.rate for entry in DEFAULT_PICKER_CONFIG.imperfections]
    assert rates == sorted(rates, reverse=True)


def test_override_merges_single_band_field():
    config = picker_config_from_dict({"bands": {"advanced": {"k": 0.05}}})
    assert config.bands["advanced"].k == 0.05
    assert config.bands["advanced"].base_max_drop == BANDS["advanced"].base_max_drop
    assert config.bands["expert"] is BANDS["expert"]


def test_override_merges_nested_book_and_widening():
    config = picker_config_from_dict({
        "bands": {"beginner": {"book": {"max_plies": 2}, "widening": {"drop_steps_cp": [50]}}},
    })
    band = config.bands["beginner"]
    assert band.book.max_plies == 2
    assert band.book.top_lines == BANDS["beginner"].book.top_lines
    assert band.widening.drop_steps_cp == (50,)
    assert band.widening.multipv_increments == BANDS["beginner"].widening.multipv_increments


def test_override_replaces_imperfections_and_scalars():
    config = picker_config_from_dict({
        "global_time_cap_ms": 400,
        "imperfections": [
            {"range": [400, 2500], "profile": {
                "rate": 1.0, "min_drop": 0, "max_drop": 0,
                "random_legal_rate": 0.0, "take_worst": 1,
            }},
        ],
        "dev_band": {"target_gap_cp": 90, "phase": {"max_plies": 10}},
    })
    assert config.global_time_cap_ms == 400
    assert imperfection_for_elo(2400, config).rate == 1.0
    assert config.dev_band.target_gap_cp == 90
    assert config.dev_band.phase.max_plies == 10
    assert config.dev_band.phase.max_ms == DEFAULT_PICKER_CONFIG.dev_band.phase.max_ms


def test_override_rejects_unknown_default_band():
    with pytest.raises(ValueError, match="Unknown default band"):
        picker_config_from_dict({"default_band": "grandmaster"})


def test_half_elo_rounds_up_into_next_band():
    assert band_for_elo(800.5).id == "developing"
    assert dev_band_includes(800.5)


def test_override_merges_partial_book_exit():
    config = picker_config_from_dict({
        "bands": {"developing": {"book": {"exit_early": {"probability": 0.5}}}},
        "dev_band": {"book_exit": {"min_plies": 3}},
    })
    exit_early = config.bands["developing"].book.exit_early
    assert exit_early.min_plies == BANDS["developing"].book.exit_early.min_plies
    assert exit_early.probability == 0.5
    assert config.dev_band.book_exit.min_plies == 3
    assert config.dev_band.book_exit.probability == DEFAULT_PICKER_CONFIG.dev_band.book_exit.probability


def test_override_can_disable_book_exit():
    config = picker_config_from_dict({"bands": {"developing": {"book": {"exit_early": None}}}})
    assert config.bands["developing"].book.exit_early is None


def test_new_band_requires_full_definition():
    with pytest.raises(KeyError):
        picker_config_from_dict({"bands": {"titled": {"k": 0.1}}})


def test_load_picker_config(tmp_path):
    path = tmp_path / "picker.json"
    path.write_text(json.dumps({"bands": {"expert": {"multipv_cap": 3}}}))
    config = load_picker_config(path)
    assert config.bands["expert"].multipv_cap == 3
