import pandas as pd
import pytest

from smclab.data_loader import (
    candles_to_dataframe, load_candles, load_csv, normalize_timestamps, prepare_data
)
from smclab.exceptions import ValidationError


def write_csv(path, text):
    path.write_text(text)
    return str(path)


def test_millisecond_timestamps_and_sorting(tmp_path):
    path = write_csv(tmp_path / 'ms.csv', (
        "Timestamp,Open,High,Low,Close,Volume\n"
        "1700000900000,101,103,100,102,5\n"
        "1700000000000,100,102,99,101,4\n"
    ))
    df = load_csv(path)
    assert df['timestamp'].tolist() == [1700000000, 1700000900]
    assert df['open'].tolist() == [100, 101]


def test_time_column_and_missing_volume(tmp_path):
    path = write_csv(tmp_path / 's.csv', (
        "time,open,high,low,close\n"
        "1700000000,100,102,99,101\n"
    ))
    candles = load_candles(path)
    assert candles[0].time == 1700000000
    assert candles[0].volume is None


def test_date_strings(tmp_path):
    path = write_csv(tmp_path / 'dates.csv', (
        "timestamp,open,high,low,close,volume\n"
        "2023-11-14 22:13:20,100,102,99,101,1\n"
        "not a date,100,102,99,101,1\n"
    ))
    df = load_csv(path)
    assert df['timestamp'].tolist() == [1700000000]


def test_invalid_rows_and_duplicates(tmp_path):
    path = write_csv(tmp_path / 'dirty.csv', (
        "timestamp,open,high,low,close,volume\n"
        "1700000000,100,102,99,101,1\n"
        "1700000900,100,98,99,101,1\n"
        "1700001800,100,102,99,101,1\n"
        "1700001800,101,104,100,103,2\n"
    ))
    df = load_csv(path)
    assert df['timestamp'].tolist() == [1700000000, 1700001800]
    assert df['close'].tolist() == [101, 103]


def test_missing_columns(tmp_path):
    path = write_csv(tmp_path / 'bad.csv', "timestamp,open,close\n1700000000,1,2\n")
    with pytest.raises(ValidationError):
        load_csv(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_csv(str(tmp_path / 'absent.csv'))


def test_prepare_data_with_htf(tmp_path, make_candles):
    ltf = make_candles([(100, 102, 99, 101)] * 4)
    htf = make_candles([(100, 104, 98, 103)] * 2, step=1800)
    ltf_path = tmp_path / 'ltf.csv'
    htf_path = tmp_path / 'htf.csv'
    candles_to_dataframe(ltf).to_csv(ltf_path, index=False)
    candles_to_dataframe(htf).to_csv(htf_path, index=False)

    loaded_ltf, loaded_htf = prepare_data(str(ltf_path), str(htf_path))
    assert loaded_ltf == ltf
    assert loaded_htf == htf
    assert prepare_data(str(ltf_path))[1] is None


@pytest.mark.parametrize('values', [
    pd.Series(['2023-11-14 22:13:20', None], dtype='string'),
    pd.Series(['2023-11-14 22:13:20', None], dtype=object),
    pd.Series(pd.to_datetime(['2023-11-14 22:13:20', None])),
    pd.Series([1700000000000, None], dtype='float64'),
])
def test_normalize_timestamps_dtypes(values):
    seconds = normalize_timestamps(values)
    assert seconds.iloc[0] == 1700000000
    assert pd.isna(seconds.iloc[1])
