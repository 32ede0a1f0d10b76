"""
Built-in commands that work on values: filters, strings, bytes, math,
conversions, dates, generators, hashing and format conversion.
"""
from __future__ import annotations

import asyncio
import base64
import datetime
import hashlib
import math
import os
import random
import re
import statistics
import uuid
from typing import Any, List

import pystache

from tide.tide_commands import Command, Signature, describe_value
from tide.tide_datatypes import Closure, ClosureExpr, EvalError
from tide.tide_interpreter import call_closure, eval_expression, follow_cell_path
from tide.tide_serialize import deserialize, serialize, to_markdown
from tide.tide_state import IT_VARIABLE_ID
from tide.tide_stream import ExternalStream, PipelineData

# ===================================================================
# 1. Helpers
# ===================================================================

def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def cell_path(text: Any) -> tuple:
    if isinstance(text, int):
        return (text,)
    return tuple(int(p) if p.isdigit() else p for p in str(text).split("."))


async def row_predicate(engine_state, stack, call, pos: int):
    """Build an async predicate from a closure or a row condition argument."""
    expr = call.positional[pos]
    if isinstance(expr, ClosureExpr):
        closure = await eval_expression(engine_state, stack, expr)

        async def test(row):
            return await call_closure(engine_state, closure, row)
    else:
        async def test(row):
            child = stack.child()
            child.add_var(IT_VARIABLE_ID, row)
            return await eval_expression(engine_state, child, expr)

    async def checked(row):
        result = await test(row)
        if not isinstance(result, bool):
            raise EvalError(f"Condition must evaluate to a bool, found {describe_value(result)}",
                            span=expr.span)
        return result
    return checked


def _sort_key(value: Any):
    # nothing < numbers < strings < everything else
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (3, str(value))


# ===================================================================
# 2. Filters
# ===================================================================

class _Filter(Command):
    category = "filters"


class Length(_Filter):
    name = "length"
    usage = "Count the items in a list or table."

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if value is None:
            return PipelineData.value(0)
        if isinstance(value, list):
            return PipelineData.value(len(value))
        if isinstance(value, dict):
            return PipelineData.value(1)
        raise EvalError(f"length only supports lists, records and tables, found {describe_value(value)}",
                        span=call.head)


class Each(_Filter):
    name = "each"
    usage = "Run a closure on each item of the input."

    def signature(self):
        return (Signature.build(self.name).required("closure", "closure")
                .switch("keep-empty", "keep empty results", "k").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        closure = await call.req(engine_state, stack, 0)
        keep = call.has_flag("keep-empty")
        out = []
        for item in as_list(await input.into_value()):
            result = await call_closure(engine_state, closure, item)
            if result is not None or keep:
                out.append(result)
        return PipelineData.value(out)


class ParEach(_Filter):
    name = "par-each"
    usage = "Run a closure on each item concurrently; output keeps input order."

    def signature(self):
        return Signature.build(self.name).required("closure", "closure").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        closure = await call.req(engine_state, stack, 0)
        items = as_list(await input.into_value())
        results = await asyncio.gather(*(call_closure(engine_state, closure, item) for item in items))
        return PipelineData.value([r for r in results if r is not None])


class Where(_Filter):
    name = "where"
    usage = "Keep rows matching a row condition, e.g. `where size > 10`."

    def signature(self):
        return Signature.build(self.name).required("cond", "condition").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        test = await row_predicate(engine_state, stack, call, 0)
        out = [row for row in as_list(await input.into_value()) if await test(row)]
        return PipelineData.value(out)


class Filter(Where):
    name = "filter"
    usage = "Keep items for which the closure returns true."


class All(_Filter):
    name = "all"
    usage = "Test whether every item satisfies the condition."

    def signature(self):
        return Signature.build(self.name).required("predicate", "condition").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        test = await row_predicate(engine_state, stack, call, 0)
        for row in as_list(await input.into_value()):
            if not await test(row):
                return PipelineData.value(False)
        return PipelineData.value(True)


class Any_(All):
    name = "any"
    usage = "Test whether any item satisfies the condition."

    async def run(self, engine_state, stack, call, input):
        test = await row_predicate(engine_state, stack, call, 0)
        for row in as_list(await input.into_value()):
            if await test(row):
                return PipelineData.value(True)
        return PipelineData.value(False)


class Reduce(_Filter):
    name = "reduce"
    usage = "Fold a list into one value with `{|it, acc| ...}`."

    def signature(self):
        return (Signature.build(self.name).required("closure", "closure")
                .named_flag("fold", "any", "initial accumulator", "f").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        closure = await call.req(engine_state, stack, 0)
        items = as_list(await input.into_value())
        if call.has_flag("fold"):
            acc = await call.get_flag(engine_state, stack, "fold")
        elif items:
            acc, items = items[0], items[1:]
        else:
            raise EvalError("reduce needs a non-empty list or --fold", span=call.head)
        for item in items:
            acc = await call_closure(engine_state, closure, item, acc)
        return PipelineData.value(acc)


class First(_Filter):
    name = "first"
    usage = "The first item, or the first n items."

    def signature(self):
        return Signature.build(self.name).optional("rows").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        n = await call.opt(engine_state, stack, 0)
        items = as_list(value)
        if n is None:
            if not items:
                raise EvalError("first: input is empty", span=call.head)
            return PipelineData.value(items[0])
        return PipelineData.value(items[:int(n)])


class Last(_Filter):
    name = "last"
    usage = "The last item, or the last n items."

    def signature(self):
        return Signature.build(self.name).optional("rows").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        items = as_list(await input.into_value())
        n = await call.opt(engine_state, stack, 0)
        if n is None:
            if not items:
                raise EvalError("last: input is empty", span=call.head)
            return PipelineData.value(items[-1])
        return PipelineData.value(items[-int(n):] if int(n) else [])


class Take(_Filter):
    name = "take"
    usage = "Keep the first n items."

    def signature(self):
        return Signature.build(self.name).required("n").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        n = int(await call.req(engine_state, stack, 0))
        value = await input.into_value()
        if isinstance(value, (str, bytes)):
            return PipelineData.value(value[:n])
        return PipelineData.value(as_list(value)[:n])


class Skip(_Filter):
    name = "skip"
    usage = "Drop the first n items."

    def signature(self):
        return Signature.build(self.name).optional("n", default=1).set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        n = int(await call.opt(engine_state, stack, 0, 1))
        return PipelineData.value(as_list(await input.into_value())[n:])


class Drop(_Filter):
    name = "drop"
    usage = "Remove the last n items."

    def signature(self):
        return Signature.build(self.name).optional("rows", default=1).set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        n = int(await call.opt(engine_state, stack, 0, 1))
        items = as_list(await input.into_value())
        return PipelineData.value(items[:-n] if n else items)


class DropColumn(_Filter):
    name = "drop column"
    usage = "Remove the last n columns."

    def signature(self):
        return Signature.build(self.name).optional("columns", default=1).set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        n = int(await call.opt(engine_state, stack, 0, 1))

        def trim(row):
            keys = list(row)[:-n] if n else list(row)
            return {k: row[k] for k in keys}
        value = await input.into_value()
        if isinstance(value, dict):
            return PipelineData.value(trim(value))
        return PipelineData.value([trim(r) for r in as_list(value)])


class DropNth(_Filter):
    name = "drop nth"
    usage = "Remove the rows at the given indices."

    def signature(self):
        return Signature.build(self.name).rest("rows").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        drop = set()
        for v in await call.rest(engine_state, stack, 0):
            drop.update(as_list(v))
        items = as_list(await input.into_value())
        return PipelineData.value([v for i, v in enumerate(items) if i not in drop])


class _WhileUntil(_Filter):
    until = False
    skip = False

    def signature(self):
        return Signature.build(self.name).required("predicate", "condition").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        test = await row_predicate(engine_state, stack, call, 0)
        items = as_list(await input.into_value())
        idx = 0
        while idx < len(items) and (await test(items[idx])) != self.until:
            idx += 1
        return PipelineData.value(items[idx:] if self.skip else items[:idx])


class TakeWhile(_WhileUntil):
    name = "take while"
    usage = "Keep items while the condition holds."


class TakeUntil(_WhileUntil):
    name = "take until"
    usage = "Keep items until the condition holds."
    until = True


class SkipWhile(_WhileUntil):
    name = "skip while"
    usage = "Drop items while the condition holds."
    skip = True


class SkipUntil(_WhileUntil):
    name = "skip until"
    usage = "Drop items until the condition holds."
    until = True
    skip = True


class Get(_Filter):
    name = "get"
    usage = "Extract data using a cell path, e.g. `get name` or `get 0.size`."

    def signature(self):
        return (Signature.build(self.name).required("cell_path")
                .switch("ignore-errors", "return nothing for missing cells", "i").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        path = cell_path(await call.req(engine_state, stack, 0))
        value = await input.into_value()
        try:
            return PipelineData.value(follow_cell_path(value, path, call.positional[0].span))
        except EvalError:
            if call.has_flag("ignore-errors"):
                return PipelineData.empty()
            raise


class Select(_Filter):
    name = "select"
    usage = "Keep only the given columns."

    def signature(self):
        return Signature.build(self.name).rest("columns").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        columns = [str(c) for c in await call.rest(engine_state, stack, 0)]
        value = await input.into_value()

        def pick(row):
            if not isinstance(row, dict):
                raise EvalError(f"select expects records, found {describe_value(row)}", span=call.head)
            missing = [c for c in columns if c not in row]
            if missing:
                raise EvalError(f"Cannot find column `{missing[0]}`", span=call.span)
            return {c: row[c] for c in columns}
        if isinstance(value, dict):
            return PipelineData.value(pick(value))
        return PipelineData.value([pick(r) for r in as_list(value)])


class Reject(_Filter):
    name = "reject"
    usage = "Remove the given columns."

    def signature(self):
        return Signature.build(self.name).rest("columns").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        columns = {str(c) for c in await call.rest(engine_state, stack, 0)}
        value = await input.into_value()

        def drop(row):
            return {k: v for k, v in row.items() if k not in columns}
        if isinstance(value, dict):
            return PipelineData.value(drop(value))
        return PipelineData.value([drop(r) for r in as_list(value)])


class Columns(_Filter):
    name = "columns"
    usage = "List the column names of a record or table."

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        names: List[str] = []
        for row in as_list(value):
            if not isinstance(row, dict):
                raise EvalError("columns expects a record or a table", span=call.head)
            names.extend(k for k in row if k not in names)
        return PipelineData.value(names)


class Values(_Filter):
    name = "values"
    usage = "List the values of a record."

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if not isinstance(value, dict):
            raise EvalError("values expects a record", span=call.head)
        return PipelineData.value(list(value.values()))


class Items(_Filter):
    name = "items"
    usage = "Call a closure with each key and value of a record."

    def signature(self):
        return Signature.build(self.name).required("closure", "closure").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        closure = await call.req(engine_state, stack, 0)
        value = await input.into_value()
        if not isinstance(value, dict):
            raise EvalError("items expects a record", span=call.head)
        return PipelineData.value([await call_closure(engine_state, closure, k, v) for k, v in value.items()])


class _Upsert(_Filter):
    must_exist = False
    must_not_exist = False

    def signature(self):
        return Signature.build(self.name).required("field").required("replacement value", "closure") \
            .set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        field = str(await call.req(engine_state, stack, 0))
        replacement = await call.req(engine_state, stack, 1)
        value = await input.into_value()

        async def apply(row):
            if not isinstance(row, dict):
                raise EvalError(f"{self.name} expects records", span=call.head)
            if self.must_exist and field not in row:
                raise EvalError(f"Cannot find column `{field}`", span=call.positional[0].span)
            if self.must_not_exist and field in row:
                raise EvalError(f"Column `{field}` already exists", span=call.positional[0].span)
            new = dict(row)
            if isinstance(replacement, Closure):
                new[field] = await call_closure(engine_state, replacement, row)
            else:
                new[field] = replacement
            return new
        if isinstance(value, dict):
            return PipelineData.value(await apply(value))
        return PipelineData.value([await apply(r) for r in as_list(value)])


class Upsert(_Upsert):
    name = "upsert"
    usage = "Update a column, or insert it when missing."


class Update(_Upsert):
    name = "update"
    usage = "Update an existing column."
    must_exist = True


class Insert(_Upsert):
    name = "insert"
    usage = "Insert a new column."
    must_not_exist = True


class Rename(_Filter):
    name = "rename"
    usage = "Rename columns in order."

    def signature(self):
        return Signature.build(self.name).rest("names").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        names = [str(n) for n in await call.rest(engine_state, stack, 0)]
        value = await input.into_value()

        def rename(row):
            keys = list(row)
            return {(names[i] if i < len(names) else k): row[k] for i, k in enumerate(keys)}
        if isinstance(value, dict):
            return PipelineData.value(rename(value))
        return PipelineData.value([rename(r) for r in as_list(value)])


class Append(_Filter):
    name = "append"
    usage = "Add a value (or each item of a list) to the end."

    def signature(self):
        return Signature.build(self.name).required("row").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        extra = await call.req(engine_state, stack, 0)
        return PipelineData.value(as_list(await input.into_value()) + as_list(extra))


class Prepend(Append):
    name = "prepend"
    usage = "Add a value (or each item of a list) to the start."

    async def run(self, engine_state, stack, call, input):
        extra = await call.req(engine_state, stack, 0)
        return PipelineData.value(as_list(extra) + as_list(await input.into_value()))


class Merge(_Filter):
    name = "merge"
    usage = "Merge a record into the input record (or row by row into a table)."

    def signature(self):
        return Signature.build(self.name).required("value").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        other = await call.req(engine_state, stack, 0)
        value = await input.into_value()
        if isinstance(value, dict) and isinstance(other, dict):
            return PipelineData.value({**value, **other})
        if isinstance(value, list) and isinstance(other, list):
            merged = [{**a, **b} for a, b in zip(value, other)]
            return PipelineData.value(merged + value[len(other):])
        raise EvalError("merge expects two records or two tables", span=call.head)


class Reverse(_Filter):
    name = "reverse"
    usage = "Reverse the order of the items."

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(list(reversed(as_list(await input.into_value()))))


class Sort(_Filter):
    name = "sort"
    usage = "Sort a list of values."

    def signature(self):
        return Signature.build(self.name).switch("reverse", "sort descending", "r").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        items = as_list(await input.into_value())
        return PipelineData.value(sorted(items, key=_sort_key, reverse=call.has_flag("reverse")))


class SortBy(_Filter):
    name = "sort-by"
    usage = "Sort a table by one or more columns."

    def signature(self):
        return (Signature.build(self.name).rest("columns").switch("reverse", "sort descending", "r")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        columns = [str(c) for c in await call.rest(engine_state, stack, 0)]
        items = as_list(await input.into_value())
        for row in items:
            for c in columns:
                if not isinstance(row, dict) or c not in row:
                    raise EvalError(f"Cannot find column `{c}`", span=call.span)
        return PipelineData.value(sorted(items, key=lambda r: [_sort_key(r[c]) for c in columns],
                                         reverse=call.has_flag("reverse")))


class Uniq(_Filter):
    name = "uniq"
    usage = "Remove duplicate items, keeping the first occurrence."

    def signature(self):
        return Signature.build(self.name).switch("count", "count occurrences", "c").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        seen: List[Any] = []
        counts: List[int] = []
        for item in as_list(await input.into_value()):
            if item in seen:
                counts[seen.index(item)] += 1
            else:
                seen.append(item)
                counts.append(1)
        if call.has_flag("count"):
            return PipelineData.value([{"value": v, "count": n} for v, n in zip(seen, counts)])
        return PipelineData.value(seen)


class GroupBy(_Filter):
    name = "group-by"
    usage = "Group rows into a record keyed by a column value."

    def signature(self):
        return Signature.build(self.name).required("grouper", "closure").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        grouper = await call.req(engine_state, stack, 0)
        groups: dict = {}
        for row in as_list(await input.into_value()):
            if isinstance(grouper, Closure):
                key = await call_closure(engine_state, grouper, row)
            else:
                key = follow_cell_path(row, cell_path(grouper), call.positional[0].span)
            groups.setdefault(str(key), []).append(row)
        return PipelineData.value(groups)


class Flatten(_Filter):
    name = "flatten"
    usage = "Flatten nested lists one level."

    async def run(self, engine_state, stack, call, input):
        out = []
        for item in as_list(await input.into_value()):
            out.extend(item if isinstance(item, list) else [item])
        return PipelineData.value(out)


class Compact(_Filter):
    name = "compact"
    usage = "Remove nothing values."

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value([v for v in as_list(await input.into_value()) if v is not None])


class Default(_Filter):
    name = "default"
    usage = "Replace nothing (or a missing column) with a default value."

    def signature(self):
        return Signature.build(self.name).required("default value").optional("column").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        default = await call.req(engine_state, stack, 0)
        column = await call.opt(engine_state, stack, 1)
        value = await input.into_value()
        if column is None:
            return PipelineData.value(default if value is None else value)

        def fill(row):
            return {**row, column: default} if row.get(column) is None else row
        if isinstance(value, dict):
            return PipelineData.value(fill(value))
        return PipelineData.value([fill(r) for r in as_list(value)])


class Enumerate(_Filter):
    name = "enumerate"
    usage = "Pair each item with its index."

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value([{"index": i, "item": v} for i, v in enumerate(as_list(await input.into_value()))])


class Every(_Filter):
    name = "every"
    usage = "Keep every nth item."

    def signature(self):
        return (Signature.build(self.name).required("stride").switch("skip", "skip the nth items instead", "s")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        stride = int(await call.req(engine_state, stack, 0))
        if stride <= 0:
            raise EvalError("every needs a positive stride", span=call.positional[0].span)
        items = as_list(await input.into_value())
        if call.has_flag("skip"):
            return PipelineData.value([v for i, v in enumerate(items) if i % stride])
        return PipelineData.value(items[::stride])


class Find(_Filter):
    name = "find"
    usage = "Keep items containing any of the search terms."

    def signature(self):
        return (Signature.build(self.name).rest("terms").switch("invert", "keep non-matching items", "v")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        terms = [str(t).lower() for t in await call.rest(engine_state, stack, 0)]
        invert = call.has_flag("invert")

        def matches(item):
            text = " ".join(str(v) for v in item.values()) if isinstance(item, dict) else str(item)
            return any(t in text.lower() for t in terms)
        value = await input.into_value()
        if isinstance(value, str):
            return PipelineData.value(value if matches(value) != invert else None)
        return PipelineData.value([v for v in as_list(value) if matches(v) != invert])


class IsEmpty(_Filter):
    name = "is-empty"
    usage = "Check whether the input is empty."

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        return PipelineData.value(value is None or (hasattr(value, "__len__") and len(value) == 0))


class Range(_Filter):
    name = "range"
    usage = "Keep the items whose index falls in a range, e.g. `range 1..3`."

    def signature(self):
        return Signature.build(self.name).required("rows").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        indices = as_list(await call.req(engine_state, stack, 0))
        items = as_list(await input.into_value())
        return PipelineData.value([items[i] for i in indices if 0 <= i < len(items)])


class Lines(_Filter):
    name = "lines"
    usage = "Split text into lines."

    def signature(self):
        return Signature.build(self.name).switch("skip-empty", "drop empty lines", "s").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        lines = [] if value is None else str(value).splitlines()
        if call.has_flag("skip-empty"):
            lines = [ln for ln in lines if ln.strip()]
        return PipelineData.value(lines)


class Collect(_Filter):
    name = "collect"
    usage = "Collect a stream into a value, optionally passing it to a closure."

    def signature(self):
        return Signature.build(self.name).optional("closure", "closure").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        closure = await call.opt(engine_state, stack, 0)
        if closure is None:
            return PipelineData.value(value)
        return PipelineData.value(await call_closure(engine_state, closure, value))


class Transpose(_Filter):
    name = "transpose"
    usage = "Turn the columns of a record or table into rows."

    def signature(self):
        return Signature.build(self.name).rest("names").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        names = [str(n) for n in await call.rest(engine_state, stack, 0)]
        value = await input.into_value()
        key_col = names[0] if names else "column0"
        val_col = names[1] if len(names) > 1 else "column1"
        if isinstance(value, dict):
            return PipelineData.value([{key_col: k, val_col: v} for k, v in value.items()])
        rows = as_list(value)
        columns: List[str] = []
        for row in rows:
            columns.extend(k for k in row if k not in columns)
        out = []
        for c in columns:
            rec = {key_col: c}
            for i, row in enumerate(rows):
                rec[names[i + 1] if i + 1 < len(names) else f"column{i + 1}"] = row.get(c)
            out.append(rec)
        return PipelineData.value(out)


class Wrap(_Filter):
    name = "wrap"
    usage = "Wrap each value in a record under the given column name."

    def signature(self):
        return Signature.build(self.name).required("name").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        name = str(await call.req(engine_state, stack, 0))
        value = await input.into_value()
        if isinstance(value, list):
            return PipelineData.value([{name: v} for v in value])
        return PipelineData.value({name: value})


class Zip(_Filter):
    name = "zip"
    usage = "Pair items of the input with items of another list."

    def signature(self):
        return Signature.build(self.name).required("other").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        other = as_list(await call.req(engine_state, stack, 0))
        return PipelineData.value([[a, b] for a, b in zip(as_list(await input.into_value()), other)])


class Shuffle(_Filter):
    name = "shuffle"
    usage = "Shuffle the items."

    async def run(self, engine_state, stack, call, input):
        items = list(as_list(await input.into_value()))
        random.shuffle(items)
        return PipelineData.value(items)


class SplitBy(_Filter):
    name = "split-by"
    usage = "Split a grouped record by a column of its rows."

    def signature(self):
        return Signature.build(self.name).required("splitter").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        column = str(await call.req(engine_state, stack, 0))
        value = await input.into_value()
        if not isinstance(value, dict):
            raise EvalError("split-by expects a record of grouped rows", span=call.head)
        out: dict = {}
        for group, rows in value.items():
            for row in as_list(rows):
                key = str(follow_cell_path(row, (column,), call.positional[0].span))
                out.setdefault(key, {}).setdefault(group, []).append(row)
        return PipelineData.value(out)


class Histogram(Command):
    name = "histogram"
    usage = "Count occurrences of each value in a column (or of each item)."
    category = "chart"

    def signature(self):
        return Signature.build(self.name).optional("column-name").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        column = await call.opt(engine_state, stack, 0)
        items = as_list(await input.into_value())
        values = [row[column] if column is not None else row for row in items] if items else []
        counts: dict = {}
        for v in values:
            counts[v] = counts.get(v, 0) + 1
        total = len(values) or 1
        key = column or "value"
        rows = [{key: v, "count": n, "frequency": "*" * round(n * 100 / total)} for v, n in counts.items()]
        return PipelineData.value(sorted(rows, key=lambda r: -r["count"]))


# ===================================================================
# 3. Strings
# ===================================================================

class _StrCommand(Command):
    """Applies `transform` to a string input or to every string of a list."""
    category = "strings"

    async def transform(self, engine_state, stack, call, text: str) -> Any:
        raise NotImplementedError

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if isinstance(value, list):
            return PipelineData.value([await self._one(engine_state, stack, call, v) for v in value])
        return PipelineData.value(await self._one(engine_state, stack, call, value))

    async def _one(self, engine_state, stack, call, value):
        if not isinstance(value, str):
            raise EvalError(f"`{self.name}` expects a string, found {describe_value(value)}", span=call.head)
        return await self.transform(engine_state, stack, call, value)


class StrUpcase(_StrCommand):
    name = "str upcase"
    usage = "Make text uppercase."

    async def transform(self, engine_state, stack, call, text):
        return text.upper()


class StrDowncase(_StrCommand):
    name = "str downcase"
    usage = "Make text lowercase."

    async def transform(self, engine_state, stack, call, text):
        return text.lower()


class StrCapitalize(_StrCommand):
    name = "str capitalize"
    usage = "Capitalize the first letter."

    async def transform(self, engine_state, stack, call, text):
        return text[:1].upper() + text[1:]


class StrTrim(_StrCommand):
    name = "str trim"
    usage = "Trim whitespace (or a given character) from both ends."

    def signature(self):
        return (Signature.build(self.name).named_flag("char", "any", "character to trim", "c")
                .switch("left", "trim the start only", "l").switch("right", "trim the end only", "r")
                .set_category(self.category))

    async def transform(self, engine_state, stack, call, text):
        chars = await call.get_flag(engine_state, stack, "char")
        if call.has_flag("left"):
            return text.lstrip(chars)
        if call.has_flag("right"):
            return text.rstrip(chars)
        return text.strip(chars)


class StrLength(_StrCommand):
    name = "str length"
    usage = "Length of the text in characters."

    async def transform(self, engine_state, stack, call, text):
        return len(text)


class StrReverse(_StrCommand):
    name = "str reverse"
    usage = "Reverse the text."

    async def transform(self, engine_state, stack, call, text):
        return text[::-1]


class StrContains(_StrCommand):
    name = "str contains"
    usage = "Check whether the text contains a substring."

    def signature(self):
        return (Signature.build(self.name).required("string")
                .switch("insensitive", "case-insensitive", "i").set_category(self.category))

    async def transform(self, engine_state, stack, call, text):
        needle = str(await call.req(engine_state, stack, 0))
        if call.has_flag("insensitive"):
            return needle.lower() in text.lower()
        return needle in text


class StrStartsWith(_StrCommand):
    name = "str starts-with"
    usage = "Check whether the text starts with a prefix."

    def signature(self):
        return Signature.build(self.name).required("string").set_category(self.category)

    async def transform(self, engine_state, stack, call, text):
        return text.startswith(str(await call.req(engine_state, stack, 0)))


class StrEndsWith(StrStartsWith):
    name = "str ends-with"
    usage = "Check whether the text ends with a suffix."

    async def transform(self, engine_state, stack, call, text):
        return text.endswith(str(await call.req(engine_state, stack, 0)))


class StrIndexOf(StrStartsWith):
    name = "str index-of"
    usage = "Index of the first occurrence of a substring, or -1."

    async def transform(self, engine_state, stack, call, text):
        return text.find(str(await call.req(engine_state, stack, 0)))


class StrReplace(_StrCommand):
    name = "str replace"
    usage = "Replace the first match of a pattern (all with --all)."

    def signature(self):
        return (Signature.build(self.name).required("find").required("replace")
                .switch("all", "replace every match", "a").switch("string", "match literally", "s")
                .set_category(self.category))

    async def transform(self, engine_state, stack, call, text):
        find = str(await call.req(engine_state, stack, 0))
        replace = str(await call.req(engine_state, stack, 1))
        count = 0 if call.has_flag("all") else 1
        if call.has_flag("string"):
            return text.replace(find, replace, -1 if count == 0 else 1)
        try:
            return re.sub(find, replace.replace("$", "\\"), text, count=count)
        except re.error as e:
            raise EvalError(f"Invalid pattern: {e}", span=call.positional[0].span) from None


class StrSubstring(_StrCommand):
    name = "str substring"
    usage = "Slice text by a range, e.g. `str substring 1..3`."

    def signature(self):
        return Signature.build(self.name).required("range").set_category(self.category)

    async def transform(self, engine_state, stack, call, text):
        rng = await call.req(engine_state, stack, 0)
        if isinstance(rng, list) and rng:
            return text[rng[0]:rng[-1] + 1]
        if isinstance(rng, int):
            return text[rng:]
        raise EvalError("str substring expects a range", span=call.positional[0].span)


class StrJoin(Command):
    name = "str join"
    usage = "Join a list of strings with an optional separator."
    category = "strings"

    def signature(self):
        return Signature.build(self.name).optional("separator", default="").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        sep = str(await call.opt(engine_state, stack, 0, ""))
        return PipelineData.value(sep.join(_plain(v) for v in as_list(await input.into_value())))


def _plain(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class SplitRow(_StrCommand):
    name = "split row"
    usage = "Split text into a list at a separator."

    def signature(self):
        return Signature.build(self.name).required("separator").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        sep = str(await call.req(engine_state, stack, 0))
        out: List[str] = []
        for text in as_list(value):
            out.extend(str(text).split(sep))
        return PipelineData.value(out)


class SplitChars(_StrCommand):
    name = "split chars"
    usage = "Split text into characters."

    async def transform(self, engine_state, stack, call, text):
        return list(text)


class SplitWords(_StrCommand):
    name = "split words"
    usage = "Split text into words."

    async def transform(self, engine_state, stack, call, text):
        return re.findall(r"[\w']+", text)


class SplitColumn(_StrCommand):
    name = "split column"
    usage = "Split text into a record of columns at a separator."

    def signature(self):
        return Signature.build(self.name).required("separator").rest("names").set_category(self.category)

    async def transform(self, engine_state, stack, call, text):
        sep = str(await call.req(engine_state, stack, 0))
        names = [str(n) for n in await call.rest(engine_state, stack, 1)]
        parts = text.split(sep)
        return {(names[i] if i < len(names) else f"column{i + 1}"): p for i, p in enumerate(parts)}


class Char(Command):
    name = "char"
    usage = "Output a special character by name, e.g. `char newline`."
    category = "strings"

    NAMES = {
        "newline": "\n", "nl": "\n", "lf": "\n", "tab": "\t", "space": " ", "cr": "\r",
        "crlf": "\r\n", "null": "\0", "pipe": "|", "dq": '"', "sq": "'", "bel": "\a", "esc": "\x1b",
        "path_sep": os.pathsep,
    }

    def signature(self):
        return Signature.build(self.name).required("character").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        name = str(await call.req(engine_state, stack, 0))
        if name not in self.NAMES:
            raise EvalError(f"Unknown character name `{name}`", span=call.positional[0].span,
                            help=f"known names: {', '.join(sorted(self.NAMES))}")
        return PipelineData.value(self.NAMES[name])


class Format(Command):
    name = "format"
    usage = "Fill `{column}` placeholders from each input record."
    category = "strings"

    def signature(self):
        return Signature.build(self.name).required("pattern").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        pattern = str(await call.req(engine_state, stack, 0))
        template = re.sub(r"\{([\w.-]+)\}", r"{{{\1}}}", pattern)
        value = await input.into_value()

        def render(row):
            if not isinstance(row, dict):
                raise EvalError(f"format expects records, found {describe_value(row)}", span=call.head)
            return pystache.render(template, {k: _plain(v) for k, v in row.items()})
        if isinstance(value, list):
            return PipelineData.value([render(r) for r in value])
        return PipelineData.value(render(value))


class Parse(Command):
    name = "parse"
    usage = "Extract columns from text with a `{name}` pattern."
    category = "strings"

    def signature(self):
        return (Signature.build(self.name).required("pattern")
                .switch("regex", "the pattern is a regular expression", "r").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        pattern = str(await call.req(engine_state, stack, 0))
        if not call.has_flag("regex"):
            parts = re.split(r"\{(\w+)\}", pattern)
            pattern = "".join(re.escape(p) if i % 2 == 0 else f"(?P<{p}>.*?)" for i, p in enumerate(parts)) + "$"
        try:
            rx = re.compile(pattern)
        except re.error as e:
            raise EvalError(f"Invalid pattern: {e}", span=call.positional[0].span) from None
        out = []
        for text in as_list(await input.into_value()):
            for line in str(text).splitlines():
                m = rx.match(line)
                if m:
                    groups = m.groupdict() or {f"capture{i}": g for i, g in enumerate(m.groups())}
                    out.append(groups)
        return PipelineData.value(out)


class Size(_StrCommand):
    name = "size"
    usage = "Count lines, words, characters and bytes of text."

    async def transform(self, engine_state, stack, call, text):
        return {
            "lines": len(text.splitlines()),
            "words": len(text.split()),
            "bytes": len(text.encode("utf-8")),
            "chars": len(text),
        }


class AnsiStrip(_StrCommand):
    name = "ansi strip"
    usage = "Remove ANSI escape sequences."

    async def transform(self, engine_state, stack, call, text):
        return re.sub(r"\x1b\[[0-9;]*[A-Za-z]", "", text)


class Encode(Command):
    name = "encode"
    usage = "Encode text into bytes (utf-8, base64, hex ...)."
    category = "strings"

    def signature(self):
        return Signature.build(self.name).required("encoding").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        encoding = str(await call.req(engine_state, stack, 0)).lower()
        value = await input.into_value()
        data = value if isinstance(value, bytes) else str(value).encode("utf-8")
        if encoding == "base64":
            return PipelineData.value(base64.b64encode(data).decode("ascii"))
        if encoding == "hex":
            return PipelineData.value(data.hex())
        try:
            return PipelineData.value(str(value).encode(encoding))
        except LookupError:
            raise EvalError(f"Unknown encoding `{encoding}`", span=call.positional[0].span) from None


class Decode(Command):
    name = "decode"
    usage = "Decode bytes (or base64/hex text) into text."
    category = "strings"

    def signature(self):
        return Signature.build(self.name).optional("encoding", default="utf-8").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        encoding = str(await call.opt(engine_state, stack, 0, "utf-8")).lower()
        value = await input.into_value()
        try:
            if encoding == "base64":
                return PipelineData.value(base64.b64decode(value).decode("utf-8", errors="replace"))
            if encoding == "hex":
                return PipelineData.value(bytes.fromhex(str(value)).decode("utf-8", errors="replace"))
            data = value if isinstance(value, bytes) else str(value).encode("utf-8")
            return PipelineData.value(data.decode(encoding, errors="replace"))
        except (ValueError, LookupError) as e:
            raise EvalError(f"Could not decode input as {encoding}: {e}", span=call.head) from None


class BuildString(Command):
    name = "build-string"
    usage = "Concatenate the arguments into one string."
    category = "strings"

    def signature(self):
        return Signature.build(self.name).rest("rest").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value("".join(_plain(v) for v in await call.rest(engine_state, stack, 0)))


# ===================================================================
# 4. Bytes
# ===================================================================

def _as_bytes(value: Any, call) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    raise EvalError(f"Expected binary data, found {describe_value(value)}", span=call.head)


class BytesLength(Command):
    name = "bytes length"
    usage = "Number of bytes."
    category = "bytes"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(len(_as_bytes(await input.into_value(), call)))


class BytesReverse(Command):
    name = "bytes reverse"
    usage = "Reverse the bytes."
    category = "bytes"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(_as_bytes(await input.into_value(), call)[::-1])


class BytesStartsWith(Command):
    name = "bytes starts-with"
    usage = "Check whether the bytes start with a pattern."
    category = "bytes"

    def signature(self):
        return Signature.build(self.name).required("pattern").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        pattern = _as_bytes(await call.req(engine_state, stack, 0), call)
        return PipelineData.value(_as_bytes(await input.into_value(), call).startswith(pattern))


class BytesEndsWith(BytesStartsWith):
    name = "bytes ends-with"
    usage = "Check whether the bytes end with a pattern."

    async def run(self, engine_state, stack, call, input):
        pattern = _as_bytes(await call.req(engine_state, stack, 0), call)
        return PipelineData.value(_as_bytes(await input.into_value(), call).endswith(pattern))


class BytesIndexOf(BytesStartsWith):
    name = "bytes index-of"
    usage = "Index of the first occurrence of a pattern, or -1."

    async def run(self, engine_state, stack, call, input):
        pattern = _as_bytes(await call.req(engine_state, stack, 0), call)
        return PipelineData.value(_as_bytes(await input.into_value(), call).find(pattern))


class BytesAdd(Command):
    name = "bytes add"
    usage = "Add bytes at the start (or the end with --end)."
    category = "bytes"

    def signature(self):
        return (Signature.build(self.name).required("data").switch("end", "append instead", "e")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        extra = _as_bytes(await call.req(engine_state, stack, 0), call)
        data = _as_bytes(await input.into_value(), call)
        return PipelineData.value(data + extra if call.has_flag("end") else extra + data)


class BytesBuild(Command):
    name = "bytes build"
    usage = "Concatenate the arguments as bytes."
    category = "bytes"

    def signature(self):
        return Signature.build(self.name).rest("rest").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        parts = await call.rest(engine_state, stack, 0)
        return PipelineData.value(b"".join(_as_bytes(p, call) for p in parts))


# ===================================================================
# 5. Math
# ===================================================================

class _MathReduce(Command):
    category = "math"

    def reduce(self, values: List[Any]) -> Any:
        raise NotImplementedError

    async def run(self, engine_state, stack, call, input):
        values = as_list(await input.into_value())
        if not values:
            raise EvalError(f"`{self.name}` needs a non-empty list", span=call.head)
        for v in values:
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                raise EvalError(f"`{self.name}` expects numbers, found {describe_value(v)}", span=call.head)
        return PipelineData.value(self.reduce(values))


class MathSum(_MathReduce):
    name = "math sum"
    usage = "Sum of a list of numbers."

    def reduce(self, values):
        return sum(values)


class MathProduct(_MathReduce):
    name = "math product"
    usage = "Product of a list of numbers."

    def reduce(self, values):
        return math.prod(values)


class MathAvg(_MathReduce):
    name = "math avg"
    usage = "Arithmetic mean."

    def reduce(self, values):
        return sum(values) / len(values)


class MathMin(_MathReduce):
    name = "math min"
    usage = "Smallest value."

    def reduce(self, values):
        return min(values)


class MathMax(_MathReduce):
    name = "math max"
    usage = "Largest value."

    def reduce(self, values):
        return max(values)


class MathMedian(_MathReduce):
    name = "math median"
    usage = "Median value."

    def reduce(self, values):
        return statistics.median(values)


class MathMode(_MathReduce):
    name = "math mode"
    usage = "Most frequent values."

    def reduce(self, values):
        return sorted(statistics.multimode(values))


class MathStddev(_MathReduce):
    name = "math stddev"
    usage = "Population standard deviation."

    def reduce(self, values):
        return statistics.pstdev(values)


class MathVariance(_MathReduce):
    name = "math variance"
    usage = "Population variance."

    def reduce(self, values):
        return statistics.pvariance(values)


class _MathMap(Command):
    category = "math"
    fn = None

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if isinstance(value, list):
            return PipelineData.value([self.apply(v, call) for v in value])
        return PipelineData.value(self.apply(value, call))

    def apply(self, value, call):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise EvalError(f"`{self.name}` expects numbers, found {describe_value(value)}", span=call.head)
        try:
            return type(self).fn(value)
        except ValueError as e:
            raise EvalError(f"`{self.name}`: {e}", span=call.head) from None


class MathAbs(_MathMap):
    name = "math abs"
    usage = "Absolute value."
    fn = abs


class MathFloor(_MathMap):
    name = "math floor"
    usage = "Round down to an integer."
    fn = math.floor


class MathCeil(_MathMap):
    name = "math ceil"
    usage = "Round up to an integer."
    fn = math.ceil


class MathSqrt(_MathMap):
    name = "math sqrt"
    usage = "Square root."
    fn = math.sqrt


class MathRound(_MathMap):
    name = "math round"
    usage = "Round to a precision (integer by default)."

    def signature(self):
        return (Signature.build(self.name).named_flag("precision", "any", "digits after the point", "p")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        precision = await call.get_flag(engine_state, stack, "precision")
        value = await input.into_value()

        def one(v):
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                raise EvalError(f"`{self.name}` expects numbers, found {describe_value(v)}", span=call.head)
            return round(v) if precision is None else round(v, int(precision))
        if isinstance(value, list):
            return PipelineData.value([one(v) for v in value])
        return PipelineData.value(one(value))


class MathLog(Command):
    name = "math log"
    usage = "Logarithm for a given base."
    category = "math"

    def signature(self):
        return Signature.build(self.name).required("base").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        base = await call.req(engine_state, stack, 0)
        value = await input.into_value()
        try:
            if isinstance(value, list):
                return PipelineData.value([math.log(v, base) for v in value])
            return PipelineData.value(math.log(value, base))
        except (ValueError, ZeroDivisionError) as e:
            raise EvalError(f"math log: {e}", span=call.head) from None


class MathEval(Command):
    name = "math eval"
    usage = "Evaluate an arithmetic expression given as a string."
    category = "math"

    def signature(self):
        return Signature.build(self.name).optional("math expression").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        from tide.tide_parser import parse
        from tide.tide_state import StateWorkingSet
        from tide.tide_interpreter import eval_block
        text = await call.opt(engine_state, stack, 0)
        if text is None:
            text = await input.into_value()
        working_set = StateWorkingSet(engine_state)
        block = parse(working_set, "math eval", f"({text})", True)
        if working_set.parse_errors:
            raise EvalError(f"Could not evaluate `{text}`: {working_set.parse_errors[0].msg}", span=call.span)
        engine_state.merge_delta(working_set.render())
        data = await eval_block(engine_state, stack.child(), block, PipelineData.empty())
        return PipelineData.value(await data.into_value())


# ===================================================================
# 6. Conversions
# ===================================================================

_DURATION_UNITS = {
    "ns": 1e-9, "us": 1e-6, "ms": 1e-3, "sec": 1, "s": 1, "min": 60, "hr": 3600, "h": 3600,
    "day": 86400, "wk": 604800,
}


def parse_duration(value: Any) -> datetime.timedelta:
    if isinstance(value, datetime.timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.timedelta(seconds=value)
    m = re.fullmatch(r"\s*(-?\d+(?:\.\d+)?)\s*([a-z]+)\s*", str(value))
    if not m or m.group(2) not in _DURATION_UNITS:
        raise ValueError(f"not a duration: {value!r}")
    return datetime.timedelta(seconds=float(m.group(1)) * _DURATION_UNITS[m.group(2)])


class _Into(Command):
    category = "conversions"

    def convert(self, value: Any) -> Any:
        raise NotImplementedError

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        try:
            if isinstance(value, list):
                return PipelineData.value([self.convert(v) for v in value])
            return PipelineData.value(self.convert(value))
        except (TypeError, ValueError) as e:
            raise EvalError(f"Can't convert {describe_value(value)} with `{self.name}`: {e}",
                            span=call.head) from None


class IntoInt(_Into):
    name = "into int"
    usage = "Convert to an integer."

    def convert(self, value):
        if isinstance(value, str):
            return int(value.strip().replace("_", ""), 0)
        if isinstance(value, datetime.timedelta):
            return int(value.total_seconds() * 1_000_000_000)
        return int(value)


class IntoFloat(_Into):
    name = "into float"
    usage = "Convert to a float."

    def convert(self, value):
        return float(value)


class IntoString(_Into):
    name = "into string"
    usage = "Convert to a string."

    def convert(self, value):
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return _plain(value)


class IntoBool(_Into):
    name = "into bool"
    usage = "Convert to a bool."

    def convert(self, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "1", "yes"):
                return True
            if lowered in ("false", "0", "no", ""):
                return False
            raise ValueError(f"{value!r} is not a bool")
        return bool(value)


class IntoBinary(_Into):
    name = "into binary"
    usage = "Convert to binary data."

    def convert(self, value):
        if isinstance(value, bytes):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return value.to_bytes(8, "little", signed=True)
        return _plain(value).encode("utf-8")


class IntoDatetime(_Into):
    name = "into datetime"
    usage = "Parse an ISO 8601 string (or epoch seconds) into a date."

    def convert(self, value):
        if isinstance(value, datetime.datetime):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.datetime.fromtimestamp(value, tz=datetime.timezone.utc)
        return datetime.datetime.fromisoformat(str(value).strip())


class IntoDuration(_Into):
    name = "into duration"
    usage = "Convert `5sec`, `2min` ... (or seconds) into a duration."

    def convert(self, value):
        return parse_duration(value)


class IntoRecord(_Into):
    name = "into record"
    usage = "Convert a list of pairs or a date into a record."

    def convert(self, value):
        if isinstance(value, dict):
            return value
        if isinstance(value, datetime.datetime):
            return _date_record(value)
        if isinstance(value, list):
            return {str(i): v for i, v in enumerate(value)}
        raise TypeError("unsupported input")


# ===================================================================
# 7. Dates
# ===================================================================

def _date_record(value: datetime.datetime) -> dict:
    return {
        "year": value.year, "month": value.month, "day": value.day,
        "hour": value.hour, "minute": value.minute, "second": value.second,
        "nanosecond": value.microsecond * 1000,
        "timezone": value.strftime("%z") or "+0000",
    }


class DateNow(Command):
    name = "date now"
    usage = "The current local date and time."
    category = "date"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(datetime.datetime.now().astimezone())


class DateFormat(Command):
    name = "date format"
    usage = "Format a date with a strftime pattern."
    category = "date"

    def signature(self):
        return Signature.build(self.name).optional("format string", default="%c").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        fmt = str(await call.opt(engine_state, stack, 0, "%c"))
        value = await input.into_value()
        if isinstance(value, str):
            value = datetime.datetime.fromisoformat(value)
        if not isinstance(value, datetime.datetime):
            raise EvalError(f"date format expects a date, found {describe_value(value)}", span=call.head)
        return PipelineData.value(value.strftime(fmt))


class DateToRecord(Command):
    name = "date to-record"
    usage = "Split a date into its fields."
    category = "date"

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if not isinstance(value, datetime.datetime):
            raise EvalError(f"date to-record expects a date, found {describe_value(value)}", span=call.head)
        return PipelineData.value(_date_record(value))


class DateToTimezone(Command):
    name = "date to-timezone"
    usage = "Convert a date to another time zone (IANA name, `UTC` or `local`)."
    category = "date"

    def signature(self):
        return Signature.build(self.name).required("time zone").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
        name = str(await call.req(engine_state, stack, 0))
        value = await input.into_value()
        if not isinstance(value, datetime.datetime):
            raise EvalError(f"date to-timezone expects a date, found {describe_value(value)}", span=call.head)
        if name.lower() == "local":
            return PipelineData.value(value.astimezone())
        try:
            tz = datetime.timezone.utc if name.upper() == "UTC" else ZoneInfo(name)
        except ZoneInfoNotFoundError:
            raise EvalError(f"Unknown time zone `{name}`", span=call.positional[0].span) from None
        return PipelineData.value(value.astimezone(tz))


class DateListTimezone(Command):
    name = "date list-timezone"
    usage = "List the known time zones."
    category = "date"

    async def run(self, engine_state, stack, call, input):
        from zoneinfo import available_timezones
        return PipelineData.value([{"timezone": tz} for tz in sorted(available_timezones())])


class DateHumanize(Command):
    name = "date humanize"
    usage = "Describe a date relative to now, e.g. `3 hours ago`."
    category = "date"

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if not isinstance(value, datetime.datetime):
            raise EvalError(f"date humanize expects a date, found {describe_value(value)}", span=call.head)
        now = datetime.datetime.now(value.tzinfo)
        delta = now - value
        seconds = abs(delta.total_seconds())
        for unit, size in (("year", 31536000), ("month", 2592000), ("day", 86400),
                           ("hour", 3600), ("minute", 60), ("second", 1)):
            if seconds >= size or unit == "second":
                n = int(seconds // size)
                text = f"{n} {unit}{'s' if n != 1 else ''}"
                return PipelineData.value(f"{text} ago" if delta.total_seconds() >= 0 else f"in {text}")


# ===================================================================
# 8. Generators, random and hashing
# ===================================================================

class Seq(Command):
    name = "seq"
    usage = "Numbers from first to last, e.g. `seq 1 5` or `seq 0 2 10`."
    category = "generators"

    def signature(self):
        return Signature.build(self.name).rest("rest").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        nums = await call.rest(engine_state, stack, 0)
        if len(nums) == 1:
            first, step, last = 1, 1, nums[0]
        elif len(nums) == 2:
            first, step, last = nums[0], 1, nums[1]
        elif len(nums) == 3:
            first, step, last = nums
        else:
            raise EvalError("seq takes one to three numbers", span=call.head)
        if step == 0:
            raise EvalError("seq step cannot be zero", span=call.span)
        if first > last and step > 0:
            step = -step
        out = []
        current = first
        while (step > 0 and current <= last) or (step < 0 and current >= last):
            out.append(current)
            current += step
        return PipelineData.value(out)


class SeqChar(Command):
    name = "seq char"
    usage = "Characters from one ASCII character to another."
    category = "generators"

    def signature(self):
        return Signature.build(self.name).required("start").required("end").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        start = str(await call.req(engine_state, stack, 0))
        end = str(await call.req(engine_state, stack, 1))
        if len(start) != 1 or len(end) != 1:
            raise EvalError("seq char expects single characters", span=call.span)
        return PipelineData.value([chr(c) for c in range(ord(start), ord(end) + 1)])


class SeqDate(Command):
    name = "seq date"
    usage = "Consecutive dates (YYYY-MM-DD) starting at --begin-date."
    category = "generators"

    def signature(self):
        return (Signature.build(self.name)
                .named_flag("begin-date", "any", "first date", "b")
                .named_flag("end-date", "any", "last date", "e")
                .named_flag("days", "any", "number of days", "n")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        begin = await call.get_flag(engine_state, stack, "begin-date")
        end = await call.get_flag(engine_state, stack, "end-date")
        days = await call.get_flag(engine_state, stack, "days")
        start = datetime.date.fromisoformat(begin) if begin else datetime.date.today()
        if end:
            count = (datetime.date.fromisoformat(end) - start).days + 1
        else:
            count = int(days) if days is not None else 1
        return PipelineData.value([(start + datetime.timedelta(days=i)).isoformat() for i in range(max(count, 0))])


class RandomInteger(Command):
    name = "random integer"
    usage = "A random integer in a range (default 0..max)."
    category = "random"

    def signature(self):
        return Signature.build(self.name).optional("range").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        rng = await call.opt(engine_state, stack, 0)
        if isinstance(rng, list) and rng:
            return PipelineData.value(random.randint(min(rng), max(rng)))
        return PipelineData.value(random.randint(0, 2 ** 63 - 1))


class RandomFloat(Command):
    name = "random float"
    usage = "A random float in [0, 1)."
    category = "random"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(random.random())


class RandomBool(Command):
    name = "random bool"
    usage = "A random bool, true with the given bias (default 0.5)."
    category = "random"

    def signature(self):
        return Signature.build(self.name).named_flag("bias", "any", "probability of true", "b") \
            .set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        bias = float(await call.get_flag(engine_state, stack, "bias", 0.5))
        return PipelineData.value(random.random() < bias)


class RandomChars(Command):
    name = "random chars"
    usage = "A random alphanumeric string."
    category = "random"

    def signature(self):
        return Signature.build(self.name).named_flag("length", "any", "length (default 25)", "l") \
            .set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        import string
        length = int(await call.get_flag(engine_state, stack, "length", 25))
        alphabet = string.ascii_letters + string.digits
        return PipelineData.value("".join(random.choice(alphabet) for _ in range(length)))


class RandomUuid(Command):
    name = "random uuid"
    usage = "A random UUID (version 4)."
    category = "random"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(str(uuid.uuid4()))


class RandomDice(Command):
    name = "random dice"
    usage = "Roll dice."
    category = "random"

    def signature(self):
        return (Signature.build(self.name).named_flag("dice", "any", "number of dice", "d")
                .named_flag("sides", "any", "sides per die", "s").set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        dice = int(await call.get_flag(engine_state, stack, "dice", 1))
        sides = int(await call.get_flag(engine_state, stack, "sides", 6))
        return PipelineData.value([random.randint(1, sides) for _ in range(dice)])


class _Hash(Command):
    category = "hash"
    algorithm = ""

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        data = value if isinstance(value, bytes) else _plain(value).encode("utf-8")
        return PipelineData.value(hashlib.new(self.algorithm, data).hexdigest())


class HashMd5(_Hash):
    name = "hash md5"
    usage = "MD5 digest of the input, as hex."
    algorithm = "md5"


class HashSha256(_Hash):
    name = "hash sha256"
    usage = "SHA-256 digest of the input, as hex."
    algorithm = "sha256"


class HashBase64(Command):
    name = "hash base64"
    usage = "Base64 encode (or --decode) the input."
    category = "hash"

    def signature(self):
        return Signature.build(self.name).switch("decode", "decode instead", "d").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        data = value if isinstance(value, bytes) else _plain(value).encode("utf-8")
        if call.has_flag("decode"):
            try:
                return PipelineData.value(base64.b64decode(data).decode("utf-8", errors="replace"))
            except ValueError as e:
                raise EvalError(f"Invalid base64 input: {e}", span=call.head) from None
        return PipelineData.value(base64.b64encode(data).decode("ascii"))


# ===================================================================
# 9. Formats and viewers
# ===================================================================

class FromFormat(Command):
    """`from json`, `from yaml` ...: parse text into structured data."""
    category = "formats"

    def __init__(self, fmt: str, alias: str = ""):
        self.fmt = fmt
        self.name = f"from {alias or fmt}"
        self.usage = f"Parse text as {fmt.upper()} into structured data."

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if value is None:
            return PipelineData.empty()
        if not isinstance(value, (str, bytes)):
            raise EvalError(f"`{self.name}` expects text, found {describe_value(value)}", span=call.head)
        try:
            return PipelineData.value(deserialize(value, fmt=self.fmt, strict=True))
        except ValueError as e:
            raise EvalError(str(e), span=call.head) from None


class ToFormat(Command):
    """`to json`, `to yaml` ...: render structured data as text."""
    category = "formats"

    def __init__(self, fmt: str):
        self.fmt = fmt
        self.name = f"to {fmt}"
        self.usage = f"Render the input as {fmt.upper()} text."

    def signature(self):
        sig = Signature.build(self.name).set_category(self.category)
        if self.fmt == "json":
            sig.switch("raw", "no indentation", "r")
        return sig

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        try:
            text = serialize(value, fmt=self.fmt, pretty=not call.has_flag("raw"))
        except (TypeError, ValueError) as e:
            raise EvalError(f"Could not convert to {self.fmt}: {e}", span=call.head) from None
        return PipelineData.value(text.rstrip("\n") if self.fmt != "csv" else text)


class ToMd(Command):
    name = "to md"
    usage = "Render a table or list as Markdown."
    category = "formats"

    async def run(self, engine_state, stack, call, input):
        return PipelineData.value(to_markdown(await input.into_value()))


class ToText(Command):
    name = "to text"
    usage = "Render the input as plain text."
    category = "formats"

    async def run(self, engine_state, stack, call, input):
        value = await input.into_value()
        if isinstance(value, list):
            return PipelineData.value("\n".join(_plain(v) for v in value))
        if isinstance(value, dict):
            return PipelineData.value("\n".join(f"{k}: {_plain(v)}" for k, v in value.items()))
        return PipelineData.value(_plain(value))


class Table(Command):
    name = "table"
    usage = "Render the input as a table string."
    category = "viewers"

    def signature(self):
        return (Signature.build(self.name).switch("no-index", "hide the index column", "n")
                .set_category(self.category))

    async def run(self, engine_state, stack, call, input):
        from tide.tide_printer import Printer
        if isinstance(input, ExternalStream):
            return input
        config = dict(engine_state.config)
        if call.has_flag("no-index"):
            config["table_index"] = False
        return PipelineData.value(Printer(config).pformat(await input.into_value()))


class Grid(Command):
    name = "grid"
    usage = "Render a list of names in columns."
    category = "viewers"

    def signature(self):
        return Signature.build(self.name).named_flag("width", "any", "total width", "w").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        import shutil
        width = int(await call.get_flag(engine_state, stack, "width", shutil.get_terminal_size().columns))
        items = []
        for v in as_list(await input.into_value()):
            items.append(_plain(v.get("name", "")) if isinstance(v, dict) else _plain(v))
        if not items:
            return PipelineData.value("")
        cell = max(len(i) for i in items) + 2
        per_row = max(1, width // cell)
        rows = ["".join(i.ljust(cell) for i in items[r:r + per_row]).rstrip()
                for r in range(0, len(items), per_row)]
        return PipelineData.value("\n".join(rows))


# ===================================================================
# 10. Deprecated names
# ===================================================================

class Deprecated(Command):
    category = "deprecated"

    def __init__(self, name: str, replacement: str):
        self.name = name
        self.replacement = replacement
        self.usage = f"Deprecated: use `{replacement}`."

    def signature(self):
        return Signature.build(self.name).rest("rest").set_category(self.category)

    async def run(self, engine_state, stack, call, input):
        raise EvalError(f"Deprecated command `{self.name}`", span=call.head,
                        help=f"use `{self.replacement}` instead")
