import logging
from datetime import date, datetime

import pytest

from backtest.candles import (
    CsvCandleDataProvider,
    InMemoryCandleDataProvider,
    aggregate_candles,
    aggregate_sessions,
    filter_sessions_to_window,
    parse_candle_rows,
    split_into_sessions,
)
from backtest.config import TimeWindow
from backtest.models import CandleDataError
from conftest import make_bars, make_candle


def test_aggregate_three_minute_bar_matches_expected_ohlcv():
    candles = make_bars(
        [
            ("09:30", 100, 101, 99, 100, 10),
            ("09:31", 100, 102, 100, 101, 12),
            ("09:32", 101, 101, 100, 100, 8),
        ]
    )

    bars = aggregate_candles(candles, 3)

    assert len(bars) == 1
    bar = bars[0]
    assert bar.timestamp == datetime(2024, 1, 2, 9, 30)
    assert (bar.open, bar.high, bar.low, bar.close, bar.volume) == (100, 102, 99, 100, 30)


def test_aggregate_emits_trailing_partial_group():
    candles = make_bars(
        [
            ("09:30", 1, 2, 0.5, 1.5, 1),
            ("09:31", 1.5, 3, 1, 2, 2),
            ("09:32", 2, 2.5, 1.8, 2.2, 3),
            ("09:33", 2.2, 4, 2, 3.5, 4),
            ("09:34", 3.5, 3.6, 1.2, 1.4, 5),
        ]
    )

    bars = aggregate_candles(candles, 3)

    assert [bar.timestamp.minute for bar in bars] == [30, 33]
    assert bars[1].open == 2.2
    assert bars[1].high == 4
    assert bars[1].low == 1.2
    assert bars[1].close == 1.4
    assert bars[1].volume == 9
    assert sum(bar.volume for bar in bars) == sum(candle.volume for candle in candles)


def test_aggregate_timeframe_one_is_identity_and_invalid_minutes_raise():
    candles = make_bars([("09:30", 1, 2, 0.5, 1.5), ("09:31", 1.5, 3, 1, 2)])
    assert aggregate_candles(candles, 1) == candles
    assert aggregate_candles([], 5) == []
    with pytest.raises(ValueError):
        aggregate_candles(candles, 0)


def test_aggregate_sessions_never_spans_two_days():
    day_one = make_bars([("15:58", 10, 11, 9, 10, 1), ("15:59", 10, 12, 10, 11, 1)], day=date(2024, 1, 2))
    day_two = make_bars(
        [("09:30", 20, 21, 19, 20, 1), ("09:31", 20, 22, 20, 21, 1), ("09:32", 21, 21, 18, 19, 1)],
        day=date(2024, 1, 3),
    )

    sessions = aggregate_sessions(day_one + day_two, 3)

    assert list(sessions) == [date(2024, 1, 2), date(2024, 1, 3)]
    first = sessions[date(2024, 1, 2)].candles
    second = sessions[date(2024, 1, 3)].candles
    assert len(first) == 1 and len(second) == 1
    assert (first[0].open, first[0].high, first[0].close, first[0].volume) == (10, 12, 11, 2)
    assert (second[0].open, second[0].low, second[0].close, second[0].volume) == (20, 18, 19, 3)


def test_split_into_sessions_preserves_first_seen_order():
    candles = [
        make_candle("09:30", 1, 1, 1, 1, day=date(2024, 1, 5)),
        make_candle("09:30", 1, 1, 1, 1, day=date(2024, 1, 3)),
        make_candle("09:31", 1, 1, 1, 1, day=date(2024, 1, 5)),
    ]

    sessions = split_into_sessions(candles)

    assert list(sessions) == [date(2024, 1, 5), date(2024, 1, 3)]
    assert len(sessions[date(2024, 1, 5)]) == 2


def test_filter_sessions_to_window_is_half_open_and_drops_empty_sessions():
    sessions = split_into_sessions(
        make_bars([("09:29", 1, 1, 1, 1), ("09:30", 1, 1, 1, 1), ("15:59", 1, 1, 1, 1), ("16:00", 1, 1, 1, 1)])
        + make_bars([("18:00", 1, 1, 1, 1)], day=date(2024, 1, 3))
    )
    window = TimeWindow.from_raw("09:30", "16:00")

    filtered = filter_sessions_to_window(sessions, window)

    assert list(filtered) == [date(2024, 1, 2)]
    assert [c.timestamp.strftime("%H:%M") for c in filtered[date(2024, 1, 2)].candles] == ["09:30", "15:59"]


def test_parse_rows_skips_header_blank_and_short_rows(caplog):
    lines = [
        "timestamp,open,high,low,close,volume",
        "2024-01-02 09:30:00,100,101,99,100,10",
        "",
        "2024-01-02 09:31:00,100,101",
        "1/2/2024 9:32:00 AM,100,102,99.5,101,5",
    ]

    with caplog.at_level(logging.WARNING, logger="backtest.candles"):
        candles = parse_candle_rows(lines)

    assert [c.timestamp for c in candles] == [datetime(2024, 1, 2, 9, 30), datetime(2024, 1, 2, 9, 32)]
    assert "expected 6 columns" in caplog.text


def test_parse_rows_drops_sunday_silently():
    lines = [
        "2024-01-07 18:00:00,1,1,1,1,1",
        "2024-01-08 09:30:00,2,2,2,2,2",
    ]

    candles = parse_candle_rows(lines)

    assert len(candles) == 1
    assert candles[0].trading_date == date(2024, 1, 8)


@pytest.mark.parametrize(
    "line",
    [
        "2024-01-02 09:30:00,abc,101,99,100,10",
        "not-a-date,100,101,99,100,10",
        "2024-01-02 09:30:00,100,101,99,100,",
        "2024-01-02 09:30:00,100,nan,99,100,10",
        "2024-01-02 09:30:00,100,101,99,inf,10",
        "2024-01-02 09:30:00,-inf,101,99,100,10",
        "2024-01-02 09:30:00,100,101,99,100,inf",
    ],
)
def test_parse_rows_malformed_value_aborts_load(line):
    lines = ["2024-01-02 09:29:00,100,101,99,100,10", line]
    with pytest.raises(CandleDataError):
        parse_candle_rows(lines)


def test_parse_rows_ignores_trailing_empty_cells():
    lines = ["2024-01-02 09:30:00,100,101,99,100,10,", "2024-01-02 09:31:00,100,101,99,100,10,,"]

    candles = parse_candle_rows(lines)

    assert [c.volume for c in candles] == [10.0, 10.0]


def test_parse_rows_keeps_extra_non_empty_cells_as_malformed(caplog):
    with caplog.at_level(logging.WARNING, logger="backtest.candles"):
        candles = parse_candle_rows(["2024-01-02 09:30:00,100,101,99,100,10,7"])
    assert candles == []
    assert "expected 6 columns, got 7" in caplog.text


@pytest.mark.parametrize("header", ["Date/Time,Open,High,Low,Close,Volume", "Time,O,H,L,C,V", "<DTYYYYMMDD>,o,h,l,c,v"])
def test_parse_rows_skips_any_non_numeric_first_line(header):
    candles = parse_candle_rows([header, "2024-01-02 09:30:00,100,101,99,100,10"])
    assert len(candles) == 1


def _write_csv(path, rows):
    path.write_text("\n".join(rows) + "\n", encoding="utf-8")
    return path


def test_csv_provider_date_bounds_are_inclusive(tmp_path):
    path = _write_csv(
        tmp_path / "candles.csv",
        [
            "2024-01-02 09:30:00,1,1,1,1,1",
            "2024-01-02 15:59:00,1,1,1,1,1",
            "2024-01-03 09:30:00,2,2,2,2,2",
            "2024-01-04 09:30:00,3,3,3,3,3",
            "2024-01-04 23:59:00,3,3,3,3,3",
            "2024-01-05 09:30:00,4,4,4,4,4",
        ],
    )
    provider = CsvCandleDataProvider(path)

    assert len(provider.load()) == 6
    bounded = provider.load(date(2024, 1, 3), date(2024, 1, 4))
    assert [c.timestamp for c in bounded] == [
        datetime(2024, 1, 3, 9, 30),
        datetime(2024, 1, 4, 9, 30),
        datetime(2024, 1, 4, 23, 59),
    ]
    assert provider.load(date(2024, 1, 6), None) == []
    assert len(provider.load(None, date(2024, 1, 2))) == 2


def test_csv_provider_rejects_out_of_order_rows(tmp_path):
    path = _write_csv(
        tmp_path / "candles.csv",
        ["2024-01-02 09:31:00,1,1,1,1,1", "2024-01-02 09:30:00,1,1,1,1,1"],
    )
    with pytest.raises(CandleDataError):
        CsvCandleDataProvider(path).load()


def test_csv_provider_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        CsvCandleDataProvider(tmp_path / "missing.csv").load()


def test_in_memory_provider_filters_by_date():
    candles = make_bars([("09:30", 1, 1, 1, 1)], day=date(2024, 1, 2)) + make_bars(
        [("09:30", 2, 2, 2, 2)], day=date(2024, 1, 3)
    )
    provider = InMemoryCandleDataProvider(candles)
    assert provider.load(date(2024, 1, 3)) == candles[1:]
    assert provider.load() == candles
