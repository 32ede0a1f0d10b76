"""
Renders tide values as text for the terminal.
"""
import collections.abc
import datetime

from tide.tide_datatypes import Closure


class Printer:
    """Formats values: scalars inline, records and tables as bordered grids."""

    def __init__(self, config=None, indent_width=2):
        self.config = config or {}
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def debug(self, obj):
        """Source-like form, used by `debug` and for nested cells."""
        match obj:
            case None:
                return "null"
            case bool():
                return "true" if obj else "false"
            case str():
                return obj
            case float():
                return self._pformat_float(obj, 0)
            case dict():
                inner = ", ".join(f"{k}: {self._nested(v)}" for k, v in obj.items())
                return "{" + inner + "}"
            case list():
                return "[" + ", ".join(self._nested(v) for v in obj) + "]"
        return self.pformat(obj)

    def _nested(self, obj):
        if isinstance(obj, str):
            return obj if obj and " " not in obj else repr(obj)
        return self.debug(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_record
        if isinstance(obj, (list, tuple)):
            return self._pformat_list
        return lambda o, l: str(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_float,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            bytes: self._pformat_bytes,
            bytearray: self._pformat_bytes,
            datetime.datetime: self._pformat_date,
            datetime.timedelta: self._pformat_duration,
            Closure: self._pformat_closure,
            dict: self._pformat_record,
            list: self._pformat_list,
        }

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_str(self, obj, level):
        return obj

    def _pformat_float(self, obj, level):
        precision = self.config.get("float_precision")
        if precision is not None:
            return f"{obj:.{int(precision)}f}"
        return repr(obj)

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return ''

    def _pformat_bytes(self, obj, level):
        return f"Length: {len(obj)} (0x{len(obj):x}) bytes\n" + " ".join(f"{b:02x}" for b in obj[:64])

    def _pformat_date(self, obj, level):
        return obj.isoformat(sep=" ", timespec="seconds")

    def _pformat_duration(self, obj, level):
        return str(obj)

    def _pformat_closure(self, obj, level):
        return f"<Closure {obj.block_id}>"

    # --- grids -------------------------------------------------------

    def _cell(self, obj):
        if isinstance(obj, dict):
            return f"{{record {len(obj)} field{'s' if len(obj) != 1 else ''}}}"
        if isinstance(obj, list):
            if obj and all(isinstance(v, dict) for v in obj):
                return f"[table {len(obj)} row{'s' if len(obj) != 1 else ''}]"
            return f"[list {len(obj)} item{'s' if len(obj) != 1 else ''}]"
        return self.pformat(obj).replace("\n", " ")

    def _grid(self, header, rows):
        widths = [len(h) for h in header] if header else [0] * len(rows[0])
        for row in rows:
            for i, cell in enumerate(row):
                widths[i] = max(widths[i], len(cell))

        def line(left, mid, right):
            return left + mid.join("─" * (w + 2) for w in widths) + right

        def fmt(cells):
            return "│" + "│".join(f" {c.ljust(widths[i])} " for i, c in enumerate(cells)) + "│"

        out = [line("╭", "┬", "╮")]
        if header:
            out.append(fmt(header))
            out.append(line("├", "┼", "┤"))
        out.extend(fmt(r) for r in rows)
        out.append(line("╰", "┴", "╯"))
        return "\n".join(out)

    def _pformat_record(self, obj, level):
        if not obj:
            return "{record 0 fields}"
        rows = [[str(k), self._cell(v)] for k, v in obj.items()]
        return self._grid(None, rows)

    def _pformat_list(self, obj, level):
        if not obj:
            return "[empty list]"
        index = self.config.get("table_index", True)
        if all(isinstance(v, collections.abc.Mapping) for v in obj):
            columns = []
            for row in obj:
                for key in row:
                    if key not in columns:
                        columns.append(key)
            header = (["#"] if index else []) + [str(c) for c in columns]
            rows = []
            for i, row in enumerate(obj):
                cells = [self._cell(row[c]) if c in row else "❎" for c in columns]
                rows.append(([str(i)] if index else []) + cells)
            return self._grid(header, rows)
        rows = [([str(i)] if index else []) + [self._cell(v)] for i, v in enumerate(obj)]
        return self._grid(None, rows)
