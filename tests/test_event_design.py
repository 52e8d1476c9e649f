import pandas as pd
import pytest

from staggered_did.analysis.event_study import build_event_design


def _panel() -> pd.DataFrame:
    rows = []
    for unit, cohort in [(1, 3), (2, 3), (3, 5), (4, 5), (5, 0), (6, 0)]:
        for period in range(1, 7):
            rows.append(
                {
                    "id": unit,
                    "period": period,
                    "G": cohort,
                    "event_time": period - cohort if cohort else pd.NA,
                    "Y": float(unit + period),
                    "ipw_weight_trimmed": 2.0 if cohort else 1.0,
                }
            )
    panel = pd.DataFrame(rows)
    panel["event_time"] = panel["event_time"].astype("Int64")
    return panel


def test_pooled_design_omits_reference() -> None:
    design, dummy_cols, cells, reference = build_event_design(_panel(), model="pooled")

    assert reference is None
    assert "event_-1" not in dummy_cols
    assert dummy_cols == [f"event_{t}" for t in [-4, -3, -2, 0, 1, 2, 3]]
    assert design["weight"].mean() == pytest.approx(1.0)
    assert set(cells["cohort"]) == {3, 5}


def test_interaction_design_columns() -> None:
    _, dummy_cols, _, reference = build_event_design(_panel(), model="interaction")

    # Cohort 3 spans event times -2..3, cohort 5 spans -4..1.
    assert reference == 3
    assert "event_-4" not in dummy_cols
    assert "event_-4_x_g5" in dummy_cols
    assert "event_0_x_g5" in dummy_cols
    assert "event_-1_x_g5" not in dummy_cols
    assert not any(col.endswith("_x_g3") for col in dummy_cols)
    assert {"event_-2", "event_0", "event_3"} <= set(dummy_cols)


def test_window_drops_treated_rows_only() -> None:
    design, dummy_cols, _, _ = build_event_design(
        _panel(), model="pooled", window={"pre": 2, "post": 1}
    )

    treated = design[design["G"] > 0]
    assert treated["event_time_f"].between(-2, 1).all()
    assert (design["G"] == 0).sum() == 12
    assert dummy_cols == ["event_-2", "event_0", "event_1"]

    with pytest.raises(ValueError):
        build_event_design(_panel(), model="pooled", window={"pre": 0, "post": 2})


def test_unknown_model_rejected() -> None:
    with pytest.raises(ValueError):
        build_event_design(_panel(), model="stacked")
