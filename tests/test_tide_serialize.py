import pytest

from tide.tide_serialize import deserialize, detect_format, encoding_from_content_type, serialize, to_markdown


def test_detect_format_from_content_type_and_sniffing():
    assert detect_format("application/json; charset=utf-8") == "json"
    assert detect_format("application/x-yaml") == "yaml"
    assert detect_format("text/csv") == "csv"
    assert detect_format(None, '  [1, 2]') == "json"
    assert detect_format(None, '<?xml version="1.0"?><a/>') == "xml"
    assert detect_format(None, "plain words") is None


def test_encoding_from_content_type():
    assert encoding_from_content_type('text/plain; charset="latin-1"') == "latin-1"
    assert encoding_from_content_type("text/plain") is None


def test_deserialize_lenient_returns_text_on_bad_input():
    assert deserialize(b"{broken", fmt="json") == "{broken"


def test_deserialize_strict_raises():
    with pytest.raises(ValueError):
        deserialize("{broken", fmt="json", strict=True)


def test_csv_and_tsv_cells_become_numbers_where_possible():
    assert deserialize("a,b\n1,x\n2.5,y\n", fmt="csv") == [{"a": 1, "b": "x"}, {"a": 2.5, "b": "y"}]
    assert deserialize("a\tb\n1\t2\n", fmt="tsv") == [{"a": 1, "b": 2}]


def test_xml_is_plain_dicts():
    value = deserialize("<root><item>1</item></root>", fmt="xml")
    assert value == {"root": {"item": "1"}}
    assert type(value) is dict


def test_serialize_json_pretty_and_compact():
    assert serialize({"a": 1}, fmt="json", pretty=False) == '{"a": 1}'
    assert serialize({"a": 1}, fmt="json") == '{\n  "a": 1\n}'


def test_serialize_toml_needs_a_record():
    assert serialize({"a": 1}, fmt="toml").strip() == "a = 1"
    with pytest.raises(ValueError):
        serialize([1, 2], fmt="toml")


def test_serialize_csv_unions_columns():
    text = serialize([{"a": 1}, {"b": 2}], fmt="csv")
    assert text == "a,b\n1,\n,2\n"


def test_serialize_unknown_format():
    with pytest.raises(ValueError):
        serialize(1, fmt="ini")


def test_to_markdown_table_and_list():
    assert to_markdown([{"a": 1, "b": 2}]) == "|a|b|\n|-|-|\n|1|2|"
    assert to_markdown([1, 2]) == "* 1\n* 2"
