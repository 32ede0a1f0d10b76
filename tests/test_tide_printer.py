import datetime

from tide.tide_printer import Printer


def test_scalars():
    p = Printer()
    assert p.pformat(3) == "3"
    assert p.pformat("hi") == "hi"
    assert p.pformat(True) == "true"
    assert p.pformat(None) == ""
    assert p.pformat(1.5) == "1.5"


def test_float_precision_from_config():
    assert Printer({"float_precision": 2}).pformat(1.0) == "1.00"


def test_record_is_a_two_column_grid():
    out = Printer().pformat({"name": "tide", "n": 1})
    lines = out.splitlines()
    assert lines[0].startswith("╭") and lines[-1].startswith("╰")
    assert "│ name │ tide │" in out
    assert "│ n    │ 1    │" in out


def test_table_has_header_and_index():
    out = Printer().pformat([{"a": 1}, {"a": 2, "b": 3}])
    assert "│ # │ a │ b │" in out
    assert "│ 0 │ 1 │ ❎ │" in out


def test_table_index_can_be_disabled():
    out = Printer({"table_index": False}).pformat([{"a": 1}])
    assert "#" not in out


def test_nested_values_are_summarised():
    out = Printer().pformat({"rows": [{"x": 1}, {"x": 2}], "rec": {"y": 1}, "xs": [1]})
    assert "[table 2 rows]" in out
    assert "{record 1 field}" in out
    assert "[list 1 item]" in out


def test_empty_collections():
    p = Printer()
    assert p.pformat([]) == "[empty list]"
    assert p.pformat({}) == "{record 0 fields}"


def test_debug_is_source_like():
    p = Printer()
    assert p.debug({"a": [1, "two words"], "b": None}) == "{a: [1, 'two words'], b: null}"


def test_dates_and_bytes():
    p = Printer()
    assert p.pformat(datetime.datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02 03:04:05"
    assert p.pformat(b"\x01\x02").startswith("Length: 2 (0x2) bytes")
