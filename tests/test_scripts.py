"""Tests for the script runner and built-in parsers."""

import sys
from typing import Any, Optional

import pytest

from sysstate.core.errors import ScriptError, TemplateError
from sysstate.core.scripts import ScriptRunner, default_shell, parse_json, parse_lines, parse_table

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses sh")


def test_parse_table_winget_output(winget_output: str) -> None:
    """Test parsing column-aligned winget output."""
    records = parse_table(winget_output)
    assert len(records) == 3
    assert records[0] == {"Name": "Git", "Id": "Git.Git", "Version": "2.45.1"}
    assert records[1]["Name"] == "Visual Studio Code"
    assert records[2]["Id"] == "7zip.7zip"


def test_parse_table_skips_spinner_and_blank_lines() -> None:
    """Test that progress spinners and blank lines are ignored."""
    text = "\n   - \n \\ \nName    Id\n------------\n\nFoo     Foo.Bar\n"
    assert parse_table(text) == [{"Name": "Foo", "Id": "Foo.Bar"}]


def test_parse_table_empty() -> None:
    """Test that empty input yields no records."""
    assert parse_table("") == []
    assert parse_table(None) == []


def test_parse_json_and_lines() -> None:
    """Test the JSON and line parsers."""
    assert parse_json('[{"Name": "Git"}]') == [{"Name": "Git"}]
    assert parse_json("  ") == []
    assert parse_lines("a\n\n  b  \n") == ["a", "b"]


def test_builtin_plugins_are_registered() -> None:
    """Test that built-in parsers are available by name."""
    runner = ScriptRunner(allow_external=False)
    assert runner.is_plugin("builtin:table")
    assert runner.run("  builtin:lines  ", "x\ny") == ["x", "y"]


def test_register_plugin_with_parameters() -> None:
    """Test registering a plugin as a decorator and passing parameters."""
    runner = ScriptRunner(allow_external=False)

    @runner.register("greet")
    def greet(input_text: Optional[str], **params: Any) -> str:
        return f"{params['greeting']}, {input_text}"

    assert runner.run("greet", "world", {"greeting": "Hello"}) == "Hello, world"


def test_plugin_failure_is_wrapped() -> None:
    """Test that plugin exceptions surface as script errors."""
    runner = ScriptRunner(allow_external=False)

    def boom(input_text: Optional[str], **params: Any) -> None:
        raise RuntimeError("boom")

    runner.register("boom", boom)
    with pytest.raises(ScriptError, match="boom"):
        runner.run("boom")


def test_plugin_state_errors_pass_through() -> None:
    """Test that library errors raised by plugins are not rewrapped."""
    runner = ScriptRunner(allow_external=False)

    def bad(input_text: Optional[str], **params: Any) -> None:
        raise TemplateError("bad template")

    runner.register("bad", bad)
    with pytest.raises(TemplateError):
        runner.run("bad")


def test_external_scripts_can_be_disabled() -> None:
    """Test that unknown script text is refused when external scripts are off."""
    runner = ScriptRunner(allow_external=False)
    with pytest.raises(ScriptError, match="External scripts are disabled"):
        runner.run("echo hello")


def test_empty_script() -> None:
    """Test that empty script text is rejected."""
    with pytest.raises(ScriptError):
        ScriptRunner().run("   ")


def test_default_shell() -> None:
    """Test the shell chosen for this platform."""
    shell = default_shell()
    if sys.platform == "win32":
        assert shell[0] == "powershell"
    else:
        assert shell == ["sh", "-c"]


@posix_only
def test_external_script_output_and_parameters() -> None:
    """Test running an external command with stdin and parameters."""
    runner = ScriptRunner(timeout=30)
    assert runner.run("echo hello").strip() == "hello"
    assert runner.run("cat", "from stdin") == "from stdin"
    assert runner.run('echo "$SYSSTATE_PARAM_NAME"', parameters={"name": "Git"}).strip() == "Git"


@posix_only
def test_external_script_failure() -> None:
    """Test that a non-zero exit status raises with the command output."""
    runner = ScriptRunner(timeout=30)
    with pytest.raises(ScriptError, match="status 3") as exc_info:
        runner.run("echo partial; echo oops >&2; exit 3")
    assert "oops" in str(exc_info.value)
    assert exc_info.value.output.strip() == "partial"


@posix_only
def test_external_script_timeout() -> None:
    """Test that a slow command is killed."""
    runner = ScriptRunner(timeout=0.2)
    with pytest.raises(ScriptError, match="timed out"):
        runner.run("sleep 5")


def test_missing_shell() -> None:
    """Test that a shell that cannot be started raises a script error."""
    runner = ScriptRunner(shell=["definitely-not-a-shell-binary"], timeout=5)
    with pytest.raises(ScriptError, match="Cannot start"):
        runner.run("echo hello")
