"""Tests for application discovery and replay."""

import json
from pathlib import Path

import pytest

from sysstate.core.application_state import ApplicationStateEngine, normalize_applications
from sysstate.core.context import StateContext
from sysstate.core.template import ApplicationStateConfig


def app_entry(discovery: str = "discover:winget", **kwargs) -> ApplicationStateConfig:
    return ApplicationStateConfig(
        name="Winget Installed Applications",
        dynamic_state_path="winget_apps.json",
        discovery_command=discovery,
        parse_script=kwargs.pop("parse_script", "builtin:table"),
        install_script=kwargs.pop("install_script", "install:apps"),
        **kwargs,
    )


def test_discover_parses_table(context: StateContext, state_dir: Path) -> None:
    """Test that discovery output is parsed and persisted."""
    applications = ApplicationStateEngine(context).discover(app_entry())
    assert len(applications) == 3
    assert applications[0] == {"Name": "Git", "Id": "Git.Git", "Version": "2.45.1"}
    assert json.loads((state_dir / "winget_apps.json").read_text()) == applications


def test_discover_failure_writes_nothing(context: StateContext, state_dir: Path) -> None:
    """Test that a failing discovery command is reported without raising."""
    assert ApplicationStateEngine(context).discover(app_entry("discover:broken")) is None
    assert not (state_dir / "winget_apps.json").exists()


def test_discover_parse_failure_writes_nothing(context: StateContext, state_dir: Path) -> None:
    """Test that output the parse script rejects is not persisted."""
    entry = app_entry(parse_script="builtin:json")
    assert ApplicationStateEngine(context).discover(entry) is None
    assert not (state_dir / "winget_apps.json").exists()


def test_discover_empty_output(context: StateContext, state_dir: Path) -> None:
    """Test that empty discovery output records an empty list."""
    assert ApplicationStateEngine(context).discover(app_entry("discover:empty")) == []
    assert json.loads((state_dir / "winget_apps.json").read_text()) == []


def test_install_without_saved_list(context: StateContext, plugins) -> None:
    """Test that install is a no-op when nothing was discovered."""
    assert ApplicationStateEngine(context).install(app_entry()) is False
    assert "install:apps" not in plugins.names()


def test_install_receives_saved_list(context: StateContext, plugins) -> None:
    """Test that the install script is run once with the whole list."""
    engine = ApplicationStateEngine(context)
    engine.discover(app_entry())
    assert engine.install(app_entry())

    calls = [c for c in plugins.calls if c["name"] == "install:apps"]
    assert len(calls) == 1
    received = json.loads(calls[0]["input"])
    assert [a["Id"] for a in received] == ["Git.Git", "Microsoft.VisualStudioCode", "7zip.7zip"]
    assert calls[0]["params"] == {"name": "Winget Installed Applications", "count": 3}


def test_uninstall(context: StateContext, plugins) -> None:
    """Test uninstall replay, and that a missing uninstall script is a no-op."""
    engine = ApplicationStateEngine(context)
    engine.discover(app_entry())
    assert engine.uninstall(app_entry()) is False

    assert engine.uninstall(app_entry(uninstall_script="uninstall:apps"))
    assert "uninstall:apps" in plugins.names()


def test_load(context: StateContext) -> None:
    """Test reading back a persisted list."""
    engine = ApplicationStateEngine(context)
    assert engine.load(app_entry()) is None
    engine.discover(app_entry())
    assert len(engine.load(app_entry())) == 3


def test_normalize_applications() -> None:
    """Test the accepted parse script result shapes."""
    assert normalize_applications(None) == []
    assert normalize_applications("  ") == []
    assert normalize_applications({"Name": "Git"}) == [{"Name": "Git", "Id": None, "Version": None}]
    assert normalize_applications('[{"Id": "Git.Git"}]') == [
        {"Name": None, "Id": "Git.Git", "Version": None}
    ]
    with pytest.raises(ValueError):
        normalize_applications(42)
    with pytest.raises(ValueError):
        normalize_applications(["Git"])
