import pytest

from tide.tide_runtime import ScriptRunner


@pytest.fixture
def runner(tmp_path):
    runner = ScriptRunner(platform="linux")
    runner.stack.add_env_var("PWD", str(tmp_path))
    return runner


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str | None = None):
    assert res.status == 'error', f"expected error, got {res.status} with value {res.value!r}"
    if contains:
        msg = res.error_message or ""
        assert contains in msg, f"error message did not contain {contains!r}: {msg!r}"


# File system

@pytest.mark.asyncio
async def test_mkdir_touch_ls(runner, tmp_path):
    assert_ok(await runner.handle_script("mkdir sub/deep; touch sub/a.txt; ls sub | length"), 2)
    assert (tmp_path / "sub" / "deep").is_dir()
    assert (tmp_path / "sub" / "a.txt").is_file()


@pytest.mark.asyncio
async def test_ls_hides_dotfiles_unless_asked(runner, tmp_path):
    (tmp_path / ".hidden").write_text("")
    (tmp_path / "shown").write_text("")
    assert_ok(await runner.handle_script("ls | length"), 1)
    assert_ok(await runner.handle_script("ls -a | length"), 2)


@pytest.mark.asyncio
async def test_save_and_open_by_extension(runner, tmp_path):
    assert_ok(await runner.handle_script("{a: 1, b: [x y]} | save data.json"))
    assert (tmp_path / "data.json").exists()
    assert_ok(await runner.handle_script("open data.json"), {"a": 1, "b": ["x", "y"]})
    assert_ok(await runner.handle_script("open data.json --raw | str length"),
              len((tmp_path / "data.json").read_text()))


@pytest.mark.asyncio
async def test_save_refuses_to_overwrite(runner):
    assert_ok(await runner.handle_script('"one" | save note.txt'))
    assert_error(await runner.handle_script('"two" | save note.txt'), "already exists")
    assert_ok(await runner.handle_script('"two" | save -f note.txt; open note.txt'), "two")


@pytest.mark.asyncio
async def test_rm_missing_file(runner):
    assert_error(await runner.handle_script("rm nothing-here"), "File not found")
    assert_ok(await runner.handle_script("rm -f nothing-here"))


@pytest.mark.asyncio
async def test_cd_and_back(runner, tmp_path):
    (tmp_path / "inner").mkdir()
    assert_ok(await runner.handle_script("cd inner; $env.PWD"), str((tmp_path / "inner").resolve()))
    assert_ok(await runner.handle_script("cd -; $env.PWD"), str(tmp_path))


@pytest.mark.asyncio
async def test_cd_to_missing_directory(runner):
    assert_error(await runner.handle_script("cd nowhere"), "Directory not found")


# Paths and URLs

@pytest.mark.asyncio
async def test_path_helpers(runner):
    assert_ok(await runner.handle_script('"/a/b/c.txt" | path basename'), "c.txt")
    assert_ok(await runner.handle_script('"/a/b/c.txt" | path parse'),
              {"parent": "/a/b", "stem": "c", "extension": "txt"})
    assert_ok(await runner.handle_script('[a b c.txt] | path join'), "a/b/c.txt")


@pytest.mark.asyncio
async def test_url_helpers(runner):
    assert_ok(await runner.handle_script('"https://x.org:8080/p?q=1" | url parse | get port'), "8080")
    assert_ok(await runner.handle_script("{a: 1, b: x} | url build-query"), "a=1&b=x")
    assert_ok(await runner.handle_script('"a b" | url encode'), "a%20b")


# Environment

@pytest.mark.asyncio
async def test_with_env_is_scoped(runner):
    assert_ok(await runner.handle_script("with-env {FOO: bar} { $env.FOO }"), "bar")
    assert runner.stack.get_env_var("FOO") is None


@pytest.mark.asyncio
async def test_load_env_sets_variables(runner):
    assert_ok(await runner.handle_script('load-env {X: "1", Y: "2"}'))
    assert runner.stack.get_env_var("X") == "1"
    assert runner.stack.get_env_var("Y") == "2"


@pytest.mark.asyncio
async def test_load_env_refuses_pwd(runner):
    assert_error(await runner.handle_script('load-env {PWD: "/"}'), "Use `cd`")


@pytest.mark.asyncio
async def test_exit_raises_system_exit(runner):
    with pytest.raises(SystemExit) as info:
        await runner.handle_script("exit 4")
    assert info.value.code == 4
