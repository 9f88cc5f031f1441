import json
from pathlib import Path

from looplang import run_cli


FARM_PATH = Path(__file__).resolve().parent.parent / "ext" / "farm.py"


class TestRunCli:
    def test_source_mode(self, capsys):
        assert run_cli(["-source", "print(1 + 2)"]) == 0
        assert capsys.readouterr().out == "3\n"

    def test_program_file(self, tmp_path, capsys):
        program = tmp_path / "count.loop"
        program.write_text("for i in range(3):\n    print(i)\n", encoding="utf-8")
        assert run_cli([str(program)]) == 0
        assert capsys.readouterr().out == "0\n1\n2\n"

    def test_missing_file(self, tmp_path, capsys):
        assert run_cli([str(tmp_path / "nope.loop")]) == 1
        assert "Failed to read" in capsys.readouterr().err

    def test_runtime_failure_prints_traceback(self, capsys):
        assert run_cli(["-source", "x = 1\nprint(y)"]) == 1
        err = capsys.readouterr().err
        assert err.startswith("Traceback (most recent call last):")
        assert err.rstrip().endswith("RuntimeError (Line 2): Undefined variable 'y'")

    def test_verbose_traceback_includes_state(self, capsys):
        assert run_cli(["-verbose", "-source", "x = 5\nprint(y)"]) == 1
        err = capsys.readouterr().err
        assert "State log index:" in err
        assert "x=5" in err

    def test_traceback_json(self, capsys):
        assert run_cli(["--traceback-json", "-source", "def f():\n    return [][0]\nf()"]) == 1
        err = capsys.readouterr().err
        payload = err[err.index("{"):]
        data = json.loads(payload)
        assert data["error"]["message"] == "List index out of range"
        assert [frame["name"] for frame in data["traceback"]] == ["<module>", "f"]

    def test_parse_error(self, capsys):
        assert run_cli(["-source", "x = = 1"]) == 1
        assert capsys.readouterr().err.strip() == "ParseError (Line 1): Unexpected token: '='"

    def test_lex_error(self, capsys):
        assert run_cli(["-source", "x = $"]) == 1
        assert capsys.readouterr().err.strip() == "LexError (Line 1): Unexpected character '$'"

    def test_extension_flag(self, capsys):
        assert run_cli(["--ext", str(FARM_PATH), "-source", "till()\nprint(get_ground_type())"]) == 0
        assert capsys.readouterr().out == "soil\n"

    def test_missing_extension(self, tmp_path, capsys):
        assert run_cli(["--ext", str(tmp_path / "absent.py"), "-source", "pass"]) == 1
        assert capsys.readouterr().err.startswith("ExtensionError:")

    def test_budget_flag(self, capsys):
        assert run_cli(["--budget", "1", "-source", "print(sum(range(10)))"]) == 0
        assert capsys.readouterr().out == "45\n"

    def test_invalid_budget(self, capsys):
        assert run_cli(["--budget", "0", "-source", "pass"]) == 1
        assert "--budget" in capsys.readouterr().err

    def test_source_flag_requires_program(self, capsys):
        assert run_cli(["-source"]) == 1
        assert "-source requires a program string" in capsys.readouterr().err

    def test_sleep_uses_virtual_clock(self, capsys):
        assert run_cli(["--tick", "0.5", "-source", "sleep(3600)\nprint('done')"]) == 0
        assert capsys.readouterr().out == "done\n"


class TestRepl:
    def feed(self, monkeypatch, lines):
        remaining = iter(lines)

        def fake_input(prompt=""):
            try:
                return next(remaining)
            except StopIteration:
                raise EOFError from None

        monkeypatch.setattr("builtins.input", fake_input)

    def test_single_lines_and_blocks(self, monkeypatch, capsys):
        self.feed(monkeypatch, ["x = 2", "print(x * 3)", "def f(a):", "    return a + 1", "", "print(f(x))", ":quit"])
        assert run_cli([]) == 0
        out = capsys.readouterr().out
        assert "6\n" in out
        assert "3\n" in out

    def test_state_survives_errors(self, monkeypatch, capsys):
        self.feed(monkeypatch, ["x = 1", "print(missing)", "print(x)"])
        assert run_cli([]) == 0
        captured = capsys.readouterr()
        assert "Undefined variable 'missing'" in captured.err
        assert captured.out.rstrip().endswith("1")

    def test_builtins_listing(self, monkeypatch, capsys):
        self.feed(monkeypatch, [":builtins", ":exit"])
        assert run_cli([]) == 0
        out = capsys.readouterr().out
        assert "sleep" in out and "suspends" in out
        assert "sorted" in out
