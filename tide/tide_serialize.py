from __future__ import annotations

import collections.abc
import csv
import io
import json
import re
from typing import Any, List, Optional

import toml
import tomllib
import xmltodict
import yaml
from xml.parsers.expat import ExpatError

FORMATS = ("json", "yaml", "toml", "xml", "csv", "tsv")


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        try:
            return data.decode(encoding or 'utf-8', errors='replace')
        except LookupError:
            return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def _to_builtin(obj: Any) -> Any:
    # xmltodict returns OrderedDicts; tables want plain dicts
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {k: _to_builtin(v) for k, v in obj.items()}
    return obj


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml', 'toml', 'xml', 'csv'.
    Uses Content-Type first; falls back to simple data sniffing if provided.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'
    if 'toml' in ct:
        return 'toml'
    if 'xml' in ct:
        return 'xml'
    if 'csv' in ct:
        return 'csv'

    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        if s.startswith('<?xml'):
            return 'xml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None,
                strict: bool = False) -> Any:
    """
    Convert wire data (bytes/string) to tide values.

    With `strict`, malformed input raises ValueError; otherwise the raw text
    is returned (the lenient mode used for HTTP bodies).
    """
    text = _norm_text(data, encoding=encoding_from_content_type(content_type))
    f = fmt or detect_format(content_type, text)
    try:
        if f == 'json':
            return json.loads(text)
        if f == 'yaml':
            return _to_builtin(yaml.safe_load(text))
        if f == 'toml':
            return tomllib.loads(text)
        if f == 'xml':
            return _to_builtin(xmltodict.parse(text))
        if f in ('csv', 'tsv'):
            return _read_delimited(text, ',' if f == 'csv' else '\t')
    except (ValueError, yaml.YAMLError, tomllib.TOMLDecodeError, ExpatError, csv.Error) as e:
        if strict:
            raise ValueError(f"Could not parse input as {f}: {e}") from e
        return text
    return text


def _read_delimited(text: str, delimiter: str) -> List[dict]:
    reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)
    return [{k: _scalar(v) for k, v in row.items()} for row in reader]


def _scalar(text: Optional[str]) -> Any:
    if text is None:
        return None
    for conv in (int, float):
        try:
            return conv(text)
        except ValueError:
            pass
    return text


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True,
              xml_root: str = "root") -> str:
    """
    Convert a tide value into text.
    - fmt: 'json' | 'yaml' | 'toml' | 'xml' | 'csv' | 'tsv'
    - For XML, if value is not a single-key record, it is wrapped under {xml_root: value}
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None, default=str)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    if f == 'toml':
        if not isinstance(built, dict):
            raise ValueError("TOML output needs a record")
        return toml.dumps(built)
    if f == 'xml':
        root = built if isinstance(built, dict) and len(built) == 1 else {xml_root: built}
        return xmltodict.unparse(root, pretty=pretty)
    if f in ('csv', 'tsv'):
        return _write_delimited(built, ',' if f == 'csv' else '\t')
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def _write_delimited(value: Any, delimiter: str) -> str:
    rows = value if isinstance(value, list) else [value]
    if not all(isinstance(r, dict) for r in rows):
        raise ValueError("Delimited output needs a record or a table")
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=columns, delimiter=delimiter, lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buf.getvalue()


def to_markdown(value: Any) -> str:
    rows = value if isinstance(value, list) else [value]
    if rows and all(isinstance(r, dict) for r in rows):
        columns: List[str] = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)
        lines = ["|" + "|".join(columns) + "|", "|" + "|".join("-" * max(len(c), 1) for c in columns) + "|"]
        for row in rows:
            lines.append("|" + "|".join(str(row.get(c, "")) for c in columns) + "|")
        return "\n".join(lines)
    return "\n".join(f"* {v}" for v in rows)


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "to_markdown",
]
