import json
import sqlite3

import duy_energy_monitor as dem


def _write_raw(store, value):
    conn = sqlite3.connect(store.db_path)
    conn.execute(
        "INSERT OR REPLACE INTO settings(key, value) VALUES(?, ?)",
        (dem.STATE_KEY, value),
    )
    conn.commit()
    conn.close()


def test_load_without_stored_state(store):
    assert store.load("2024-06-15") == dem.AccumulatorState()


def test_save_then_load_same_day(store):
    state = dem.AccumulatorState(
        last_timestamp=1718470800000.0,
        last_power=640.0,
        peak_energy=0.75,
        off_peak_energy=2.5,
        day="2024-06-15",
    )
    assert store.save(state)

    assert store.load("2024-06-15") == state


def test_state_is_stored_as_camel_case_json(store):
    store.save(dem.AccumulatorState(peak_energy=1.0, day="2024-06-15"))

    conn = sqlite3.connect(store.db_path)
    (raw,) = conn.execute(
        "SELECT value FROM settings WHERE key=?", (dem.STATE_KEY,)
    ).fetchone()
    conn.close()

    assert json.loads(raw) == {
        "lastTimestamp": None,
        "lastPower": 0.0,
        "peakEnergy": 1.0,
        "offPeakEnergy": 0.0,
        "day": "2024-06-15",
    }


def test_stale_day_yields_fresh_state(store):
    store.save(dem.AccumulatorState(peak_energy=4.0, off_peak_energy=9.0, day="2024-06-14"))

    assert store.load("2024-06-15") == dem.AccumulatorState()


def test_save_overwrites_previous_value(store):
    store.save(dem.AccumulatorState(peak_energy=1.0, day="2024-06-15"))
    store.save(dem.AccumulatorState(peak_energy=2.0, day="2024-06-15"))

    assert store.load("2024-06-15").peak_energy == 2.0


def test_corrupt_json_is_treated_as_absent(store):
    _write_raw(store, "{not json")
    assert store.load("2024-06-15") == dem.AccumulatorState()


def test_foreign_content_is_treated_as_absent(store):
    for raw in (
        json.dumps([1, 2, 3]),
        json.dumps({"peakEnergy": "lots", "day": "2024-06-15"}),
        json.dumps({"peakEnergy": -1.0, "day": "2024-06-15"}),
        json.dumps({"lastTimestamp": "yesterday", "day": "2024-06-15"}),
        json.dumps({"day": 20240615}),
        json.dumps({"day": "15/06/2024"}),
    ):
        _write_raw(store, raw)
        assert store.load("2024-06-15") == dem.AccumulatorState(), raw


def test_missing_fields_take_defaults(store):
    _write_raw(store, json.dumps({"peakEnergy": 0.5, "day": "2024-06-15"}))

    state = store.load("2024-06-15")
    assert state.peak_energy == 0.5
    assert state.last_power == 0.0
    assert state.last_timestamp is None


def test_unavailable_database_degrades_to_memory(tmp_path):
    store = dem.StateStore(str(tmp_path / "missing" / "duy.db"))

    assert store.load("2024-06-15") == dem.AccumulatorState()
    assert store.save(dem.AccumulatorState(day="2024-06-15")) is False


def test_non_finite_totals_are_treated_as_absent(store):
    for raw in (
        '{"peakEnergy": Infinity, "day": "2024-06-15"}',
        '{"offPeakEnergy": NaN, "day": "2024-06-15"}',
        '{"lastPower": -Infinity, "day": "2024-06-15"}',
        '{"lastTimestamp": NaN, "day": "2024-06-15"}',
    ):
        _write_raw(store, raw)
        assert store.load("2024-06-15") == dem.AccumulatorState(), raw
