import pytest

from tide.tide_runtime import ScriptRunner


async def run_tide(src: str):
    runner = ScriptRunner(platform="linux")
    return await runner.handle_script(src)


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str | None = None):
    assert res.status == 'error', f"expected error, got {res.status} with value {res.value!r}"
    if contains:
        msg = res.error_message or ""
        assert contains in msg, f"error message did not contain {contains!r}: {msg!r}"


# Filters

@pytest.mark.asyncio
async def test_sort_and_reverse_sort():
    assert_ok(await run_tide("[3 1 2] | sort"), [1, 2, 3])
    assert_ok(await run_tide("[3 1 2] | sort -r"), [3, 2, 1])


@pytest.mark.asyncio
async def test_each_runs_closure_per_item():
    assert_ok(await run_tide("[1 2 3] | each {|x| $x * 2}"), [2, 4, 6])


@pytest.mark.asyncio
async def test_par_each_keeps_input_order():
    assert_ok(await run_tide("[1 2 3 4] | par-each {|x| $x + 10}"), [11, 12, 13, 14])


@pytest.mark.asyncio
async def test_where_row_condition_and_closure():
    src = "[{name: a, size: 1} {name: b, size: 5} {name: c, size: 9}] | where size > 2 | length"
    assert_ok(await run_tide(src), 2)
    assert_ok(await run_tide("[1 2 3 4] | where {|x| $x > 2}"), [3, 4])


@pytest.mark.asyncio
async def test_where_condition_must_be_bool():
    assert_error(await run_tide("[1 2] | where {|x| $x}"))


@pytest.mark.asyncio
async def test_reduce_with_and_without_fold():
    assert_ok(await run_tide("seq 1 5 | reduce {|x, acc| $x + $acc}"), 15)
    assert_ok(await run_tide("[1 2 3] | reduce --fold 10 {|x, acc| $x + $acc}"), 16)


@pytest.mark.asyncio
async def test_first_last_take_skip():
    assert_ok(await run_tide("[1 2 3] | first"), 1)
    assert_ok(await run_tide("[1 2 3] | last 2"), [2, 3])
    assert_ok(await run_tide("[1 2 3 4] | take 2"), [1, 2])
    assert_ok(await run_tide("[1 2 3 4] | skip 3"), [4])


@pytest.mark.asyncio
async def test_first_on_empty_list_errors():
    assert_error(await run_tide("[] | first"), "input is empty")


@pytest.mark.asyncio
async def test_get_select_reject_on_records():
    assert_ok(await run_tide("{a: 1, b: 2} | get b"), 2)
    assert_ok(await run_tide("[{a: 1, b: 2} {a: 3, b: 4}] | get a"), [1, 3])
    assert_ok(await run_tide("{a: 1, b: 2, c: 3} | select a c"), {"a": 1, "c": 3})
    assert_ok(await run_tide("{a: 1, b: 2, c: 3} | reject b"), {"a": 1, "c": 3})


@pytest.mark.asyncio
async def test_get_missing_column():
    assert_error(await run_tide("{a: 1} | get zzz"), "Cannot find column")
    assert_ok(await run_tide("{a: 1} | get -i zzz"))


@pytest.mark.asyncio
async def test_uniq_and_counts():
    assert_ok(await run_tide("[1 1 2 3 3 3] | uniq"), [1, 2, 3])
    res = await run_tide("[a a b] | uniq --count")
    assert_ok(res, [{"value": "a", "count": 2}, {"value": "b", "count": 1}])


@pytest.mark.asyncio
async def test_group_by_column():
    src = "[{k: x, v: 1} {k: y, v: 2} {k: x, v: 3}] | group-by k"
    res = await run_tide(src)
    assert_ok(res)
    assert list(res.value) == ["x", "y"]
    assert [r["v"] for r in res.value["x"]] == [1, 3]


@pytest.mark.asyncio
async def test_enumerate_and_transpose():
    assert_ok(await run_tide("[a b] | enumerate"), [{"index": 0, "item": "a"}, {"index": 1, "item": "b"}])
    assert_ok(await run_tide("{x: 1, y: 2} | transpose k v"), [{"k": "x", "v": 1}, {"k": "y", "v": 2}])


@pytest.mark.asyncio
async def test_default_fills_missing_column():
    assert_ok(await run_tide("[{a: 1} {a: 2, b: 5}] | default 0 b"), [{"a": 1, "b": 0}, {"a": 2, "b": 5}])


# Strings

@pytest.mark.asyncio
async def test_string_case_and_length():
    assert_ok(await run_tide('"hello" | str upcase'), "HELLO")
    assert_ok(await run_tide('"HeLLo" | str downcase'), "hello")
    assert_ok(await run_tide('"hello" | str length'), 5)


@pytest.mark.asyncio
async def test_split_and_join():
    assert_ok(await run_tide('"a,b,c" | split row ","'), ["a", "b", "c"])
    assert_ok(await run_tide('[a b c] | str join "-"'), "a-b-c")


@pytest.mark.asyncio
async def test_format_fills_placeholders():
    assert_ok(await run_tide('{name: tide, n: 3} | format "{name} has {n}"'), "tide has 3")


# Formats

@pytest.mark.asyncio
async def test_from_json_and_to_json():
    assert_ok(await run_tide("'{\"a\": [1, 2]}' | from json"), {"a": [1, 2]})
    assert_ok(await run_tide("{a: 1, b: 2} | to json --raw"), '{"a": 1, "b": 2}')


@pytest.mark.asyncio
async def test_from_json_rejects_bad_input():
    assert_error(await run_tide("'{nope' | from json"), "Could not parse input as json")


@pytest.mark.asyncio
async def test_yaml_alias_matches_yaml():
    assert_ok(await run_tide("'a: 1' | from yml"), {"a": 1})


# Math and conversions

@pytest.mark.asyncio
async def test_math_reductions():
    assert_ok(await run_tide("[1 2 3 4] | math sum"), 10)
    assert_ok(await run_tide("[1 2 3 4] | math max"), 4)
    assert_ok(await run_tide("[2 4] | math avg"), 3)


@pytest.mark.asyncio
async def test_math_rejects_non_numbers():
    assert_error(await run_tide("[1 a] | math sum"), "expects numbers")


@pytest.mark.asyncio
async def test_into_int_and_string():
    assert_ok(await run_tide('"42" | into int'), 42)
    assert_ok(await run_tide('"0x10" | into int'), 16)
    assert_ok(await run_tide("[true 1] | into string"), ["true", "1"])


@pytest.mark.asyncio
async def test_seq_counts_down():
    assert_ok(await run_tide("seq 3 1"), [3, 2, 1])


# Core language

@pytest.mark.asyncio
async def test_if_else():
    assert_ok(await run_tide('if 1 < 2 { "yes" } else { "no" }'), "yes")
    assert_ok(await run_tide('if 1 > 2 { "yes" } else { "no" }'), "no")


@pytest.mark.asyncio
async def test_mut_reassignment():
    assert_ok(await run_tide("mut x = 1; x = x + 1; $x"), 2)


@pytest.mark.asyncio
async def test_let_env_is_visible_through_env():
    assert_ok(await run_tide('let-env FOO = "bar"; $env.FOO'), "bar")


@pytest.mark.asyncio
async def test_describe_reports_type():
    assert_ok(await run_tide("42 | describe"), "int")


@pytest.mark.asyncio
async def test_deprecated_command_suggests_replacement():
    assert_error(await run_tide("[a b] | str collect"), "str join")
