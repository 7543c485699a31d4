from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from nodekeeper.utils import dump_json, load_json, load_json_file

if TYPE_CHECKING:
    from pyfakefs.fake_filesystem import FakeFilesystem


class TestLoadJson:
    def test_parses_objects_and_arrays(self) -> None:
        assert load_json('{"name": "w", "scripts": ["a.py"]}') == {
            "name": "w",
            "scripts": ["a.py"],
        }
        assert load_json(b"[1, 2]") == [1, 2]

    def test_returns_none_for_invalid_json(self) -> None:
        assert load_json("{name = 'w'}") is None

    def test_loads_file(self, fs: FakeFilesystem) -> None:
        fs.create_file("/nodes/w.json", contents='{"name": "w"}')

        assert load_json_file(Path("/nodes/w.json")) == {"name": "w"}


class TestDumpJson:
    def test_compact_by_default(self) -> None:
        assert dump_json({"name": "w", "pid": 5000}) == '{"name":"w","pid":5000}'

    def test_indents_on_request(self) -> None:
        assert dump_json({"name": "w"}, indent=True) == '{\n  "name": "w"\n}'
