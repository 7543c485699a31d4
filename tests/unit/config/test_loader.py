# pyright: reportAny=false, reportUnknownArgumentType=false
from __future__ import annotations

import copy
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from nodekeeper.config._loader import (
    deep_merge,
    parse_env_vars,
    parse_string_value,
    read_toml_file,
    set_nested_key,
)
from nodekeeper.exceptions import ConfigLoadError

if TYPE_CHECKING:
    from pyfakefs.fake_filesystem import FakeFilesystem


class TestReadTomlFile:
    def test_parses_valid_toml(self, fs: FakeFilesystem) -> None:
        content = """
[supervisor]
request_timeout = 2.5

[nodes.worker-1]
interface = "eth0"
"""
        path = Path("/etc/nodekeeper/config.toml")
        fs.create_file(path, contents=content)

        result = read_toml_file(path)

        assert result == {
            "supervisor": {"request_timeout": 2.5},
            "nodes": {"worker-1": {"interface": "eth0"}},
        }

    def test_raises_file_not_found_for_missing_file(self, fs: FakeFilesystem) -> None:
        with pytest.raises(FileNotFoundError):
            _ = read_toml_file(Path("/etc/nodekeeper/missing.toml"))

    def test_raises_config_load_error_with_position(self, fs: FakeFilesystem) -> None:
        path = Path("/etc/nodekeeper/invalid.toml")
        fs.create_file(path, contents='[valid]\nkey = "value"\n\n[invalid section\n')

        with pytest.raises(ConfigLoadError) as exc_info:
            _ = read_toml_file(path)

        error = exc_info.value
        assert error.path == path
        assert error.line is not None
        assert error.column is not None


class TestDeepMerge:
    def test_merges_nested_tables(self) -> None:
        base = {"supervisor": {"request_timeout": 10.0, "revival": {"base_delay": 1.0}}}
        override = {"supervisor": {"revival": {"max_delay": 8.0}}}

        result = deep_merge(base, override)

        assert result == {
            "supervisor": {
                "request_timeout": 10.0,
                "revival": {"base_delay": 1.0, "max_delay": 8.0},
            }
        }

    def test_arrays_are_replaced(self) -> None:
        base = {"nodes": {"w": {"scripts": ["a.py", "b.py"]}}}
        override = {"nodes": {"w": {"scripts": ["c.py"]}}}

        assert deep_merge(base, override)["nodes"]["w"]["scripts"] == ["c.py"]

    def test_scalar_replaces_table(self) -> None:
        assert deep_merge({"logging": {"level": "info"}}, {"logging": "off"}) == {
            "logging": "off"
        }

    def test_inputs_are_not_modified(self) -> None:
        base = {"a": {"b": [1, 2]}}
        override = {"a": {"c": {"d": 1}}}
        base_before = copy.deepcopy(base)
        override_before = copy.deepcopy(override)

        result = deep_merge(base, override)
        result["a"]["b"].append(3)
        result["a"]["c"]["d"] = 2

        assert base == base_before
        assert override == override_before


class TestParseStringValue:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("true", True),
            ("FALSE", False),
            ("42", 42),
            ("-3", -3),
            ("0.25", 0.25),
            ('["a.py", "b.py"]', ["a.py", "b.py"]),
            ('{"role": "leader"}', {"role": "leader"}),
            ("eth0", "eth0"),
            ("1.2.3", "1.2.3"),
            ("[not json", "[not json"),
        ],
    )
    def test_infers_type(self, raw: str, expected: object) -> None:
        assert parse_string_value(raw) == expected


class TestSetNestedKey:
    def test_creates_intermediate_tables(self) -> None:
        data: dict[str, object] = {}

        set_nested_key(data, "supervisor.revival.base_delay", 0.5)

        assert data == {"supervisor": {"revival": {"base_delay": 0.5}}}

    def test_replaces_scalar_on_the_path(self) -> None:
        data: dict[str, object] = {"supervisor": "oops"}

        set_nested_key(data, "supervisor.request_timeout", 3)

        assert data == {"supervisor": {"request_timeout": 3}}


class TestParseEnvVars:
    def test_maps_double_underscores_to_nesting(self) -> None:
        environ = {
            "NODEKEEPER_SUPERVISOR__REQUEST_TIMEOUT": "2.5",
            "NODEKEEPER_SUPERVISOR__REVIVAL__MAX_DELAY": "30",
            "NODEKEEPER_LOGGING__LEVEL": "debug",
            "HOME": "/root",
        }

        result = parse_env_vars(environ=environ)

        assert result == {
            "supervisor": {"request_timeout": 2.5, "revival": {"max_delay": 30}},
            "logging": {"level": "debug"},
        }

    def test_skips_process_control_variables(self) -> None:
        environ = {
            "NODEKEEPER_DEBUG": "1",
            "NODEKEEPER_LOG_LEVEL": "debug",
            "NODEKEEPER_STRICT_CONFIG": "1",
            "NODEKEEPER_NODE_NAME": "worker-1",
            "NODEKEEPER_": "empty",
        }

        assert parse_env_vars(environ=environ) == {}

    def test_reads_os_environ_by_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NODEKEEPER_LOGGING__FORMAT", "text")

        assert parse_env_vars()["logging"] == {"format": "text"}
