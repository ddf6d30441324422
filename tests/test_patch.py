from pathlib import Path

from forgeline.models import FileChange, FileEdit
from forgeline.patch import (
    EditCollision,
    FileUnavailable,
    SearchNotFound,
    apply_changes,
    apply_edits,
    build_error_snippet,
    find_match,
)
from forgeline.result import Err, Ok

SOURCE = """class Service:
    def start(self):
        self.running = True
        return self

    def stop(self):
        self.running = False
"""


def test_exact_match_replaces_verbatim():
    out = apply_edits(SOURCE, [FileEdit(search="self.running = True", replace="self.running = 1")], "svc.py")
    assert isinstance(out, Ok)
    assert "self.running = 1" in out.value
    assert "self.running = False" in out.value


def test_trimmed_multiline_match_ignores_indentation():
    search = "def stop(self):\n  self.running = False"
    out = apply_edits(SOURCE, [FileEdit(search=search, replace="    def stop(self):\n        pass")], "svc.py")
    assert isinstance(out, Ok)
    assert "        pass" in out.value
    assert "self.running = False" not in out.value


def test_trimmed_and_substring_strategies():
    assert find_match(SOURCE, FileEdit(search="   return self   ", replace="")).strategy == "trimmed-lines"
    assert find_match(SOURCE, FileEdit(search="  running = False  ", replace="")).strategy == "substring"
    assert find_match(SOURCE, FileEdit(search="running = False\n", replace="")).strategy == "exact"
    assert find_match(SOURCE, FileEdit(search="def  start", replace="")) is None


def test_line_range_fallback():
    edit = FileEdit(search="does not exist anywhere", replace="    def halt(self):", line=6, end_line=6)
    out = apply_edits(SOURCE, [edit], "svc.py")
    assert isinstance(out, Ok)
    assert "def halt(self):" in out.value
    assert "def stop" not in out.value


def test_edits_apply_sequentially():
    edits = [
        FileEdit(search="def start(self):", replace="def begin(self):\n        self.started = 0"),
        FileEdit(search="self.running = False", replace="self.running = None"),
    ]
    out = apply_edits(SOURCE, edits, "svc.py")
    assert isinstance(out, Ok)
    assert "def begin(self):\n        self.started = 0\n        self.running = True" in out.value
    assert out.value.endswith("self.running = None\n")


def test_later_edit_sees_mutated_content():
    edits = [
        FileEdit(search="def start(self):", replace="def begin(self):"),
        FileEdit(search="def start(self):", replace="def launch(self):"),
    ]
    out = apply_edits(SOURCE, edits, "svc.py")
    assert isinstance(out, Err)
    assert out.error.edit_index == 1


def test_search_not_found_is_typed_error():
    out = apply_edits(SOURCE, [FileEdit(search="self.running = None", replace="x")], "svc.py")
    assert isinstance(out, Err)
    assert isinstance(out.error, SearchNotFound)
    assert out.error.path == "svc.py"
    assert out.error.edit_index == 0
    assert "Search string not found in svc.py" in out.error.message


def test_edit_overlapping_earlier_write_collides():
    edits = [
        FileEdit(search="self.running = True", replace="self.running = True  # started"),
        FileEdit(search="True  # started", replace="False"),
    ]
    out = apply_edits(SOURCE, edits, "svc.py")
    assert isinstance(out, Err)
    assert out.error == EditCollision(path="svc.py", edit_index=1, overlapped_index=0)


def test_error_snippet_points_at_likely_region():
    snippet = build_error_snippet(SOURCE, "def stop(self) -> None:")
    assert "RELEVANT FILE REGION" in snippet
    head = build_error_snippet(SOURCE, "zzz qqq")
    assert head.startswith("FILE START")


def test_batch_is_all_or_nothing(tmp_path: Path):
    (tmp_path / "src").mkdir()
    a = tmp_path / "src" / "a.py"
    b = tmp_path / "src" / "b.py"
    a.write_text("x = 1\n")
    b.write_text("y = 2\n")

    changes = [
        FileChange(path="src/a.py", action="modify", edits=[FileEdit(search="x = 1", replace="x = 10")]),
        FileChange(path="src/new.py", action="create", content="z = 3\n"),
        FileChange(path="src/b.py", action="modify", edits=[FileEdit(search="nope", replace="y = 20")]),
    ]
    out = apply_changes(tmp_path, changes)

    assert isinstance(out, Err)
    assert a.read_text() == "x = 1\n"
    assert not (tmp_path / "src" / "new.py").exists()


def test_batch_writes_creates_and_modifies(tmp_path: Path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.py").write_text("x = 1\n")
    changes = [
        FileChange(path="src/a.py", action="modify", edits=[FileEdit(search="x = 1", replace="x = 10")]),
        FileChange(path="src/pkg/new.py", action="create", content="z = 3\n"),
    ]
    out = apply_changes(tmp_path, changes)
    assert out == Ok(["src/a.py", "src/pkg/new.py"])
    assert (tmp_path / "src" / "a.py").read_text() == "x = 10\n"
    assert (tmp_path / "src" / "pkg" / "new.py").read_text() == "z = 3\n"


def test_same_file_twice_sees_earlier_output(tmp_path: Path):
    (tmp_path / "a.py").write_text("one\n")
    changes = [
        FileChange(path="a.py", action="modify", edits=[FileEdit(search="one", replace="two")]),
        FileChange(path="a.py", action="modify", edits=[FileEdit(search="two", replace="three")]),
    ]
    assert isinstance(apply_changes(tmp_path, changes), Ok)
    assert (tmp_path / "a.py").read_text() == "three\n"


def test_modify_missing_file_and_escape_are_unavailable(tmp_path: Path):
    missing = apply_changes(tmp_path, [FileChange(path="gone.py", action="modify", edits=[FileEdit(search="a", replace="b")])])
    assert isinstance(missing.error, FileUnavailable)

    escape = apply_changes(tmp_path, [FileChange(path="../evil.py", action="create", content="x")])
    assert isinstance(escape.error, FileUnavailable)
    assert not (tmp_path.parent / "evil.py").exists()


def test_modify_without_edits_writes_full_content(tmp_path: Path):
    (tmp_path / "a.py").write_text("old\n")
    out = apply_changes(tmp_path, [FileChange(path="a.py", action="modify", content="new\n")])
    assert isinstance(out, Ok)
    assert (tmp_path / "a.py").read_text() == "new\n"
