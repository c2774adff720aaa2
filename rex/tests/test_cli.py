"""Tests for CLI module."""

import os
import subprocess
import sys
from pathlib import Path
import pytest

from rex import E
from rex.cli import RexREPL, RexCompleter, ScriptRunner, count_parens

ROOT = Path(__file__).resolve().parents[2]
EXAMPLES = ROOT / "examples"


def run_cli(*args, **kwargs):
    """Run the CLI as a module from the project root."""
    env = dict(os.environ)
    env["PYTHONPATH"] = str(ROOT) + os.pathsep + env.get("PYTHONPATH", "")
    return subprocess.run(
        [sys.executable, "-m", "rex.cli", *args],
        capture_output=True, text=True, cwd=ROOT, env=env, **kwargs
    )


class TestREPLCommands:
    """Tests for REPL command handling."""

    def test_help_command(self):
        """Help command returns help text."""
        repl = RexREPL()
        result = repl.handle_command(":help")
        assert "help" in result.lower()
        assert ":load" in result
        assert "undo" in result

    def test_quit_commands(self):
        """:quit, :exit and :q stop the REPL."""
        for command in (":quit", ":exit", ":q"):
            repl = RexREPL()
            assert repl.handle_command(command) is None
            assert repl.running is False

    def test_unknown_command(self):
        repl = RexREPL()
        assert "Unknown command" in repl.handle_command(":frobnicate")
        assert "Unknown command" in repl.handle_command(":")

    def test_rules_command(self):
        """:rules lists definitions."""
        repl = RexREPL()
        assert repl.handle_command(":rules") == "No rules defined"
        repl.process_line("def swap as pair(x, y) => pair(y, x)")
        assert repl.handle_command(":rules") == "def swap as pair(x, y) => pair(y, x)"

    def test_clear_command(self):
        repl = RexREPL()
        repl.process_line("def swap as pair(x, y) => pair(y, x)")
        repl.handle_command(":clear")
        assert len(repl.registry) == 0

    def test_notation_command(self):
        """:notation switches the display notation."""
        repl = RexREPL()
        assert repl.handle_command(":notation") == "Notation: infix"
        assert "functor" in repl.handle_command(":notation functor")
        assert repl.notation == "functor"
        assert "Unknown notation" in repl.handle_command(":notation latex")
        assert repl.notation == "functor"

    def test_load_command(self, tmp_path):
        """:load reads rule definitions from a file."""
        rules = tmp_path / "rules.rx"
        rules.write_text("def swap as pair(x, y) => pair(y, x)\n")
        repl = RexREPL()
        result = repl.handle_command(f":load {rules}")
        assert "Loaded" in result
        assert "swap" in repl.registry

    def test_load_json(self):
        repl = RexREPL()
        repl.handle_command(f":load {EXAMPLES / 'calculus.json'}")
        assert repl.registry.names() == ["expand", "cancel", "split", "diff"]

    def test_load_errors(self, tmp_path):
        repl = RexREPL()
        assert repl.handle_command(":load").startswith("Usage")
        assert repl.handle_command(f":load {tmp_path / 'missing.rx'}").startswith("Error loading")
        bad = tmp_path / "bad.rx"
        bad.write_text("pair(A, B)\n")
        assert repl.handle_command(f":load {bad}").startswith("Error loading")

    def test_load_json_wrong_shape(self, tmp_path):
        """A malformed JSON rule file is reported, not raised."""
        repl = RexREPL()
        for i, text in enumerate(['{"rules": [{"name": "r", "replacement": "x"}]}', "[1, 2]"]):
            bad = tmp_path / f"bad{i}.json"
            bad.write_text(text)
            assert repl.handle_command(f":load {bad}").startswith("Error loading")
        assert len(repl.registry) == 0

    def test_history_command(self):
        """:history shows the derivation so far."""
        repl = RexREPL()
        assert repl.handle_command(":history") == "No active matching session"
        repl.process_line("pair(A, B)")
        repl.process_line("pair(x, y) => pair(y, x) at 0")
        history = repl.handle_command(":history")
        assert history.startswith("Initial: pair(A, B)")
        assert "pair(B, A)" in history


class TestREPLProcessLine:
    """Tests for REPL line processing."""

    def test_empty_line(self):
        """Empty line returns None."""
        repl = RexREPL()
        assert repl.process_line("") is None
        assert repl.process_line("   ") is None

    def test_comment_line(self):
        """Comment line returns None."""
        repl = RexREPL()
        assert repl.process_line("# comment") is None

    def test_rule_definition(self):
        """Rule definition stores the rule."""
        repl = RexREPL()
        result = repl.process_line("def swap as pair(x, y) => pair(y, x)")
        assert result == "Defined rule: swap"
        assert len(repl.registry) == 1

    def test_expression_starts_session(self):
        repl = RexREPL()
        assert repl.process_line("pair(A, B)") == "Start matching on: pair(A, B)"
        assert repl.session.active
        assert repl.prompt == "  ~> "

    def test_infix_display_shows_functor_form(self):
        repl = RexREPL()
        result = repl.process_line("y^2")
        assert result.startswith("Start matching on: y^2")
        assert "As functor: pow(y, 2)" in result

    def test_functor_notation(self):
        repl = RexREPL()
        repl.handle_command(":notation functor")
        assert repl.process_line("y^2") == "Start matching on: pow(y, 2)"

    def test_full_session(self):
        """Define, start, step and end."""
        repl = RexREPL()
        repl.process_line("def swap as pair(x, y) => pair(y, x)")
        repl.process_line("pair(A, B)")
        assert repl.process_line("swap at 0") == "    pair(B, A)"
        assert repl.process_line("end") == "Result: pair(B, A)"
        assert not repl.session.active
        assert repl.prompt == "rex> "

    def test_semicolon_separated(self):
        repl = RexREPL()
        result = repl.process_line("def swap as pair(x, y) => pair(y, x); pair(A, B); swap at 0; end")
        assert result.splitlines()[-1] == "Result: pair(B, A)"

    def test_expression_while_matching(self):
        """A second expression is ignored while a session is active."""
        repl = RexREPL()
        repl.process_line("pair(A, B)")
        result = repl.process_line("pair(C, D)")
        assert "Already matching" in result
        assert repl.session.current == E("pair(A, B)")

    def test_step_while_idle(self):
        repl = RexREPL()
        repl.process_line("def swap as pair(x, y) => pair(y, x)")
        assert repl.process_line("swap at 0").startswith("Error: No active matching session")

    def test_undo_while_idle(self):
        repl = RexREPL()
        assert repl.process_line("undo").startswith("Error: No active matching session")

    def test_end_while_idle(self):
        repl = RexREPL()
        assert repl.process_line("end") == "No active matching session to end"

    def test_no_match_reported(self):
        repl = RexREPL()
        repl.process_line("def swap as pair(x, y) => pair(y, x)")
        repl.process_line("pair(A, B)")
        result = repl.process_line("swap at 1")
        assert result == "Error: Rule 'swap' does not match anything at depth 1"
        assert repl.session.current == E("pair(A, B)")

    def test_unknown_rule_reported(self):
        repl = RexREPL()
        repl.process_line("pair(A, B)")
        assert repl.process_line("nope at 0") == "Error: No rule named 'nope'"

    def test_undo(self):
        repl = RexREPL()
        repl.process_line("pair(A, B)")
        repl.process_line("pair(x, y) => pair(y, x)")
        assert repl.process_line("undo") == "    pair(A, B)"
        assert repl.process_line("undo") == "Error: Nothing to undo"

    def test_invalid_rule_reported(self):
        repl = RexREPL()
        result = repl.process_line("def bad as f(x) => g(y)")
        assert result.startswith("Error: Replacement uses unbound variable(s): y")
        assert "bad" not in repl.registry

    def test_parse_error_reported(self):
        repl = RexREPL()
        assert repl.process_line("f(x").startswith("Error:")

    def test_outputs_before_error_kept(self):
        repl = RexREPL()
        result = repl.process_line("pair(A, B); nope at 0")
        assert result.splitlines() == ["Start matching on: pair(A, B)", "Error: No rule named 'nope'"]

    def test_quit_statement(self):
        repl = RexREPL()
        assert repl.process_line("quit") is None
        assert repl.running is False

    def test_end_writes_derivation(self, tmp_path):
        repl = RexREPL(base_path=tmp_path)
        repl.process_line("pair(A, B)")
        repl.process_line("pair(x, y) => pair(y, x)")
        result = repl.process_line('end "swap.txt"')
        assert "Derivation written to" in result
        text = (tmp_path / "swap.txt").read_text()
        assert text.startswith("Initial: pair(A, B)")
        assert "Final: pair(B, A)" in text

    def test_failed_write_keeps_session(self, tmp_path):
        """A derivation that cannot be written leaves the session open."""
        repl = RexREPL(base_path=tmp_path)
        repl.process_line("pair(A, B)")
        repl.process_line("pair(x, y) => pair(y, x) at 0")
        result = repl.process_line(f'end "{tmp_path / "missing_dir" / "d.txt"}"')
        assert result.startswith("Error:")
        assert repl.session.active
        assert repl.session.current == E("pair(B, A)")
        assert len(repl.session.history) == 1
        assert repl.process_line('end "d.txt"').startswith("Result: pair(B, A)")
        assert not repl.session.active
        assert (tmp_path / "d.txt").exists()


class TestScriptRunner:
    """Tests for script execution."""

    @pytest.mark.parametrize("script,result", [
        ("swap_pair.rx", "Result: pair(B, A)"),
        ("peano.rx", "Result: s(s(s(0)))"),
        ("simple_power_rule_calculus.rx", "Result: 2 * y"),
        ("limit_power_rule_calculus.rx", "Result: 2 * x"),
    ])
    def test_examples(self, script, result, capsys):
        """The bundled example scripts run to their expected results."""
        code = ScriptRunner().run_script(EXAMPLES / script)
        out, err = capsys.readouterr()
        assert code == 0
        assert err == ""
        assert result in out

    def test_error_reports_line(self, tmp_path, capsys):
        """Scripts stop at the first error with path:line."""
        script = tmp_path / "bad.rx"
        script.write_text("pair(A, B)\n\nnope at 0\nend\n")
        code = ScriptRunner().run_script(script)
        out, err = capsys.readouterr()
        assert code == 1
        assert f"{script}:3: Error: No rule named 'nope'" in err
        assert "Result" not in out

    def test_missing_script(self, tmp_path, capsys):
        assert ScriptRunner().run_script(tmp_path / "missing.rx") == 1
        assert "Error reading" in capsys.readouterr().err

    def test_multi_line_statement(self, tmp_path, capsys):
        script = tmp_path / "multi.rx"
        script.write_text("pair(\n  A,\n  B)\npair(x, y) => pair(y, x)\nend\n")
        assert ScriptRunner().run_script(script) == 0
        assert "Result: pair(B, A)" in capsys.readouterr().out

    def test_unbalanced_at_eof(self, tmp_path, capsys):
        script = tmp_path / "open.rx"
        script.write_text("pair(A,\n")
        assert ScriptRunner().run_script(script) == 1
        assert f"{script}:1: Error: Unbalanced parentheses" in capsys.readouterr().err

    def test_commands_in_scripts(self, tmp_path, capsys):
        script = tmp_path / "cmd.rx"
        script.write_text(":notation functor\ny^2\nend\n")
        assert ScriptRunner().run_script(script) == 0
        assert "Result: pow(y, 2)" in capsys.readouterr().out

    def test_unknown_command_in_script(self, tmp_path, capsys):
        script = tmp_path / "cmd.rx"
        script.write_text(":bogus\n")
        assert ScriptRunner().run_script(script) == 1
        assert f"{script}:1: Unknown command" in capsys.readouterr().err

    def test_end_path_relative_to_script(self, tmp_path):
        script = tmp_path / "swap.rx"
        script.write_text('pair(A, B)\npair(x, y) => pair(y, x)\nend "swap.json"\n')
        assert ScriptRunner().run_script(script, quiet=True) == 0
        assert '"final": "pair(B, A)"' in (tmp_path / "swap.json").read_text()

    def test_quit_stops_script(self, tmp_path, capsys):
        script = tmp_path / "quit.rx"
        script.write_text("pair(A, B)\nquit\nnope at 0\n")
        assert ScriptRunner().run_script(script) == 0

    def test_quiet_prints_results_only(self, capsys):
        code = ScriptRunner().run_script(EXAMPLES / "swap_pair.rx", quiet=True)
        out = capsys.readouterr().out
        assert code == 0
        assert out == "Result: pair(B, A)\n"

    def test_run_expression(self, capsys):
        """Run a program string."""
        runner = ScriptRunner()
        runner.repl.process_line("def swap as pair(x, y) => pair(y, x)")
        code = runner.run_expression("pair(A, B); swap at 0; end")
        assert code == 0
        assert "Result: pair(B, A)" in capsys.readouterr().out


class TestCLIIntegration:
    """Integration tests using subprocess."""

    def test_help_flag(self):
        """--help flag works."""
        result = run_cli("--help")
        assert result.returncode == 0
        assert "REX" in result.stdout

    def test_version_flag(self):
        """--version flag works."""
        result = run_cli("--version")
        assert result.returncode == 0
        assert "0.1.0" in result.stdout

    def test_expression_mode(self):
        """-e runs a program string."""
        result = run_cli("-e", "def swap as pair(x, y) => pair(y, x); pair(A, B); swap at 0; end")
        assert result.returncode == 0
        assert "Result: pair(B, A)" in result.stdout

    def test_expression_mode_error(self):
        result = run_cli("-e", "pair(A, B); swap at 0")
        assert result.returncode == 1
        assert "<expr>:1: Error: No rule named 'swap'" in result.stderr

    def test_rules_flag(self):
        result = run_cli("-r", "examples/calculus.json", "-n", "functor",
                         "-e", "y^2; diff at 0; end")
        assert result.returncode == 0
        assert "Loaded rules from examples/calculus.json" in result.stderr
        assert "Result: mul(2, pow(y, sub(2, 1)))" in result.stdout

    def test_script_mode(self):
        result = run_cli("examples/peano.rx")
        assert result.returncode == 0
        assert "Result: s(s(s(0)))" in result.stdout

    def test_pipe_mode(self):
        """Pipe mode runs stdin as a program."""
        result = run_cli("-q", input="def swap as pair(x, y) => pair(y, x)\npair(A, B)\nswap at 0\nend\n")
        assert result.returncode == 0
        assert result.stdout == "Result: pair(B, A)\n"

    def test_demo_script(self):
        env = dict(os.environ)
        env["PYTHONPATH"] = str(ROOT) + os.pathsep + env.get("PYTHONPATH", "")
        result = subprocess.run(
            [sys.executable, str(EXAMPLES / "demo.py")],
            capture_output=True, text=True, env=env
        )
        assert result.returncode == 0
        assert "Demo complete!" in result.stdout


class TestMultiLineInput:
    """Tests for multi-line input parsing."""

    def test_count_parens_balanced(self):
        """Balanced parens return 0."""
        assert count_parens("f(x, g(y))") == 0
        assert count_parens("x") == 0

    def test_count_parens_unbalanced_open(self):
        """More open parens return positive count."""
        assert count_parens("f(x, g(") == 2
        assert count_parens("(") == 1

    def test_count_parens_unbalanced_close(self):
        """More close parens return negative count."""
        assert count_parens("f(x))") == -1

    def test_count_parens_ignores_strings_and_comments(self):
        """Parens inside strings and comments are ignored."""
        assert count_parens('end "a(b.txt"') == 0
        assert count_parens("f(x) # (unfinished") == 0

    def test_repl_multi_line_buffer(self):
        """REPL has multi-line buffer initialized."""
        repl = RexREPL()
        assert repl.multi_line_buffer == ""
        repl.multi_line_buffer = "f("
        assert repl.prompt == "...... "


class TestTabCompletion:
    """Tests for tab completion."""

    def test_completer_commands(self):
        """Completer suggests commands."""
        completer = RexCompleter(RexREPL())
        matches = completer._get_matches(":", ":")
        assert ":help" in matches
        assert ":quit" in matches
        assert ":load" in matches

    def test_completer_partial_command(self):
        """Completer handles partial command."""
        completer = RexCompleter(RexREPL())
        matches = completer._get_matches(":h", ":h")
        assert matches == [":help", ":history"]

    def test_completer_notations(self):
        completer = RexCompleter(RexREPL())
        assert completer._get_matches("", ":notation ") == ["infix", "functor"]

    def test_completer_rule_names(self):
        """Completer suggests rule names and keywords."""
        repl = RexREPL()
        repl.registry.load_dsl('''
            def swap as pair(x, y) => pair(y, x)
            def split as (a + b) / c => a / c + b / c
        ''')
        completer = RexCompleter(repl)
        assert completer._get_matches("s", "s") == ["swap", "split"]
        assert completer._get_matches("un", "un") == ["undo"]
        assert completer._get_matches("", "") == []
