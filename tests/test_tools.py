"""Tests for the tool registry and the file tools."""

import stat

import pytest

from phi.errors import SpawnError
from phi.tools import (
    DEFAULT_TOOLS,
    MAX_LINE_LENGTH,
    READ_FILE,
    ToolContext,
    ToolContract,
    ToolRegistry,
    _read_file,
    _write_file,
    atomic_write,
    build_registry,
    is_error_result,
)


def _echo_contract(name="echo", run=None):
    return ToolContract(
        name=name,
        description="Echo the text back.",
        input_schema={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
        run=run or (lambda args, ctx: args["text"]),
    )


# =========================================================================
# Registry
# =========================================================================


class TestRegistry:
    def test_default_tool_names(self):
        registry = build_registry()
        assert list(registry) == [
            "read_file",
            "write_file",
            "edit_file",
            "bash",
            "glob",
            "grep",
            "todo",
        ]
        assert len(registry) == len(DEFAULT_TOOLS)

    def test_lookup(self):
        assert build_registry()["read_file"] is READ_FILE
        assert "nope" not in build_registry()

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError, match="duplicate tool name"):
            ToolRegistry([_echo_contract(), _echo_contract()])

    def test_extra_tool_cannot_shadow_builtin(self):
        with pytest.raises(ValueError):
            build_registry([_echo_contract(name="bash")])

    def test_registry_is_read_only(self):
        registry = build_registry()
        with pytest.raises(TypeError):
            registry["echo"] = _echo_contract()
        with pytest.raises(TypeError):
            registry._contracts["echo"] = _echo_contract()

    def test_advertise_shape(self):
        entries = build_registry([_echo_contract()]).advertise()
        echo = entries[-1]
        assert echo == {
            "type": "function",
            "function": {
                "name": "echo",
                "description": "Echo the text back.",
                "parameters": _echo_contract().input_schema,
            },
        }
        for entry in entries:
            assert entry["function"]["parameters"]["type"] == "object"


class TestInvoke:
    def test_success(self):
        registry = ToolRegistry([_echo_contract()])
        assert registry.invoke("echo", {"text": "hi"}, ToolContext()) == ("hi", False)

    def test_unknown_name_raises(self):
        with pytest.raises(KeyError):
            ToolRegistry([]).invoke("missing", {}, ToolContext())

    def test_missing_required_argument(self):
        text, is_error = ToolRegistry([_echo_contract()]).invoke("echo", {}, ToolContext())
        assert is_error
        assert text == "Error: missing required argument 'text' for echo"

    def test_non_object_arguments(self):
        text, is_error = ToolRegistry([_echo_contract()]).invoke(
            "echo", ["hi"], ToolContext()
        )
        assert is_error
        assert "must be a JSON object" in text

    def test_exception_becomes_error_text(self):
        def boom(args, ctx):
            raise RuntimeError("kaboom")

        registry = ToolRegistry([_echo_contract(run=boom)])
        assert registry.invoke("echo", {"text": "x"}, ToolContext()) == (
            "Error: kaboom",
            True,
        )

    def test_transport_error_escapes(self):
        def spawn_fails(args, ctx):
            raise SpawnError("no shell")

        registry = ToolRegistry([_echo_contract(run=spawn_fails)])
        with pytest.raises(SpawnError):
            registry.invoke("echo", {"text": "x"}, ToolContext())

    def test_error_flag_follows_prefix(self):
        registry = ToolRegistry([_echo_contract()])
        assert registry.invoke("echo", {"text": "Error: nope"}, ToolContext())[1]
        assert not registry.invoke("echo", {"text": "no Error: here"}, ToolContext())[1]

    def test_context_reaches_tool(self, tmp_path):
        seen = []
        registry = ToolRegistry(
            [_echo_contract(run=lambda args, ctx: seen.append(ctx.base_dir) or "ok")]
        )
        registry.invoke("echo", {"text": "x"}, ToolContext(str(tmp_path)))
        assert seen == [str(tmp_path)]


def test_is_error_result():
    assert is_error_result("Error: x")
    assert not is_error_result("error: lowercase is not an error")
    assert not is_error_result("")


# =========================================================================
# read_file
# =========================================================================


class TestReadFile:
    def test_numbered_lines(self, tmp_path):
        (tmp_path / "hello.txt").write_text("alpha\nbeta\ngamma", encoding="utf-8")
        assert _read_file("hello.txt", str(tmp_path)) == "1\talpha\n2\tbeta\n3\tgamma"

    def test_numbers_right_aligned(self, tmp_path):
        (tmp_path / "ten.txt").write_text(
            "\n".join(f"l{i}" for i in range(1, 11)), encoding="utf-8"
        )
        lines = _read_file("ten.txt", str(tmp_path)).split("\n")
        assert lines[0] == " 1\tl1"
        assert lines[9] == "10\tl10"

    def test_offset_and_limit(self, tmp_path):
        (tmp_path / "nums.txt").write_text(
            "\n".join(f"line{i}" for i in range(1, 11)), encoding="utf-8"
        )
        result = _read_file("nums.txt", str(tmp_path), offset=3, limit=4)
        assert result.startswith("3\tline3\n4\tline4\n5\tline5\n6\tline6")
        assert result.endswith("[4 more lines. Use offset=7 to continue reading]")

    def test_offset_past_end(self, tmp_path):
        (tmp_path / "a.txt").write_text("one\ntwo", encoding="utf-8")
        result = _read_file("a.txt", str(tmp_path), offset=10)
        assert result == "Error: Offset 10 exceeds file length (2 lines)"

    def test_long_lines_truncated(self, tmp_path):
        (tmp_path / "wide.txt").write_text("x" * (MAX_LINE_LENGTH + 10), encoding="utf-8")
        result = _read_file("wide.txt", str(tmp_path))
        assert result.endswith(" [truncated]")
        assert len(result) == len("1\t") + MAX_LINE_LENGTH + len(" [truncated]")

    def test_missing_file(self, tmp_path):
        assert _read_file("nope.txt", str(tmp_path)) == "Error: File not found: nope.txt"

    def test_directory_refused(self, tmp_path):
        (tmp_path / "sub").mkdir()
        assert _read_file("sub", str(tmp_path)).startswith("Error: sub is a directory")

    def test_binary_refused(self, tmp_path):
        (tmp_path / "blob.bin").write_bytes(b"abc\x00def")
        assert _read_file("blob.bin", str(tmp_path)) == (
            "Error: binary file detected: blob.bin"
        )

    def test_invalid_utf8(self, tmp_path):
        (tmp_path / "latin.txt").write_bytes(b"caf\xe9")
        assert _read_file("latin.txt", str(tmp_path)).startswith(
            "Error: failed to decode latin.txt as UTF-8"
        )

    def test_absolute_path(self, tmp_path):
        target = tmp_path / "abs.txt"
        target.write_text("hi", encoding="utf-8")
        assert _read_file(str(target), "/") == "1\thi"

    def test_through_registry(self, tmp_path):
        (tmp_path / "a.txt").write_text("one\ntwo\nthree", encoding="utf-8")
        text, is_error = build_registry().invoke(
            "read_file", {"path": "a.txt", "offset": 2, "limit": 1}, ToolContext(str(tmp_path))
        )
        assert not is_error
        assert text.startswith("2\ttwo")

    def test_bad_offset_type(self, tmp_path):
        (tmp_path / "a.txt").write_text("one", encoding="utf-8")
        text, is_error = build_registry().invoke(
            "read_file", {"path": "a.txt", "offset": "two"}, ToolContext(str(tmp_path))
        )
        assert is_error
        assert "'offset' must be an integer" in text


# =========================================================================
# write_file
# =========================================================================


class TestWriteFile:
    def test_creates_file_and_parents(self, tmp_path):
        result = _write_file("deep/dir/new.txt", "a\nb\n", str(tmp_path))
        assert result == "Successfully wrote 4 bytes (2 lines) to deep/dir/new.txt"
        assert (tmp_path / "deep" / "dir" / "new.txt").read_text() == "a\nb\n"

    def test_counts_unterminated_last_line(self, tmp_path):
        result = _write_file("x.txt", "a\nb", str(tmp_path))
        assert "(2 lines)" in result

    def test_overwrites(self, tmp_path):
        target = tmp_path / "x.txt"
        target.write_text("old", encoding="utf-8")
        _write_file("x.txt", "new", str(tmp_path))
        assert target.read_text() == "new"

    def test_refuses_directory(self, tmp_path):
        (tmp_path / "sub").mkdir()
        assert _write_file("sub", "x", str(tmp_path)) == "Error: sub is a directory"

    def test_byte_count_is_utf8(self, tmp_path):
        result = _write_file("u.txt", "é", str(tmp_path))
        assert result.startswith("Successfully wrote 2 bytes")


class TestAtomicWrite:
    def test_preserves_mode(self, tmp_path):
        target = tmp_path / "script.sh"
        target.write_text("old", encoding="utf-8")
        target.chmod(0o755)
        atomic_write(target, "new")
        assert stat.S_IMODE(target.stat().st_mode) == 0o755
        assert target.read_text() == "new"

    def test_leaves_no_temp_files(self, tmp_path):
        atomic_write(tmp_path / "a.txt", "x")
        assert [p.name for p in tmp_path.iterdir()] == ["a.txt"]
