#!/usr/bin/env python3
"""
REX Command-Line Interface

Provides interactive REPL, script execution, and pipe/filter modes.

Usage:
    rex                                   # Start REPL
    rex script.rx                         # Run script
    rex -e "pair(A, B); swap at 0; end"   # Run a program string
    rex -r rules.rx                       # REPL with rules preloaded
    cat script.rx | rex                   # Filter mode

Script Format (.rx files):
    # Power rule
    def diff as pow(x, n) => n * pow(x, n - 1)

    y^2
    diff at 0
    2 - 1 => 1 at 2
    x^1 => x at 1
    end "power_rule.txt"

REPL Commands:
    :help              Show help
    :load FILE         Load rule definitions from file
    :rules             List defined rules
    :clear             Clear all rules
    :history           Show the derivation so far
    :notation NAME     Display notation (infix, functor)
    :quit              Exit
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .engine import (
    RuleRegistry, Session, ParseError, Statement,
    Define, RewriteInline, ApplyNamed, Expression, End, Undo, Quit,
    KEYWORDS, parse_program, format_infix, has_infix,
)
from .rewriter import Term, RewriteError, render

# Try to import readline for better REPL experience
try:
    import readline
    HAS_READLINE = True
except ImportError:
    HAS_READLINE = False

NOTATIONS = ["infix", "functor"]

# Errors a statement may raise that are reported to the user
STATEMENT_ERRORS = (RewriteError, ParseError, OSError)


class RexCompleter:
    """Tab completer for REX REPL."""

    COMMANDS = [
        ":help", ":quit", ":exit", ":q",
        ":load", ":rules", ":clear",
        ":history", ":notation",
    ]

    def __init__(self, repl: 'RexREPL'):
        self.repl = repl

    def complete(self, text: str, state: int) -> Optional[str]:
        """Return the next possible completion for 'text'."""
        if state == 0:
            line = readline.get_line_buffer() if HAS_READLINE else ""
            self.matches = self._get_matches(text, line)

        try:
            return self.matches[state]
        except IndexError:
            return None

    def _get_matches(self, text: str, line: str) -> list:
        """Get list of matches for the current input."""
        line = line.lstrip()

        if line.startswith(":notation "):
            return [n for n in NOTATIONS if n.startswith(text)]

        if line.startswith(":load "):
            return self._complete_path(text)

        if text.startswith(":") or (line.startswith(":") and " " not in line):
            return [c for c in self.COMMANDS if c.startswith(text)]

        # Statement context: rule names and keywords
        words = self.repl.registry.names() + sorted(KEYWORDS)
        return [w for w in words if text and w.startswith(text)]

    def _complete_path(self, text: str) -> list:
        """Complete file paths."""
        import glob

        if not text:
            text = "./"

        matches = []
        for path in glob.glob(text + "*"):
            if Path(path).is_dir():
                matches.append(path + "/")
            else:
                matches.append(path)

        return matches


def count_parens(text: str) -> int:
    """Count unbalanced parentheses. Returns >0 if more open than close."""
    depth = 0
    in_string = False
    in_comment = False

    for c in text:
        if in_comment:
            if c == '\n':
                in_comment = False
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == '#':
            in_comment = True
        elif c == '(':
            depth += 1
        elif c == ')':
            depth -= 1

    return depth


class RexREPL:
    """Interactive REPL for rex."""

    def __init__(self, base_path: Optional[Path] = None):
        self.registry = RuleRegistry()
        self.session = Session(self.registry)
        self.notation = "infix"
        self.base_path = base_path  # Directory for relative 'end "path"' outputs
        self.running = True
        self.multi_line_buffer = ""
        self.history_file: Optional[Path] = None

    def enable_readline(self):
        """Set up readline history and tab completion."""
        if not HAS_READLINE:
            return
        self.history_file = Path.home() / ".rex_history"
        try:
            readline.read_history_file(self.history_file)
        except OSError:
            pass
        readline.set_history_length(1000)

        self.completer = RexCompleter(self)
        readline.set_completer(self.completer.complete)
        readline.parse_and_bind("tab: complete")
        # Don't break on colons for commands
        readline.set_completer_delims(" \t\n(),")

    def save_history(self):
        """Save readline history."""
        if HAS_READLINE and self.history_file is not None:
            try:
                readline.write_history_file(self.history_file)
            except OSError:
                pass

    @property
    def prompt(self) -> str:
        if self.multi_line_buffer:
            return "...... "
        if self.session.active:
            return "  ~> "
        return "rex> "

    def show(self, term: Term, prefix: str = "") -> str:
        """Format a term for display, adding the functor form under infix output."""
        if self.notation == "functor":
            return prefix + render(term)
        text = prefix + format_infix(term)
        if has_infix(term):
            text += "\n" + " " * len(prefix) + "As functor: " + render(term)
        return text

    def output_path(self, path: str) -> Path:
        resolved = Path(path)
        if self.base_path is not None and not resolved.is_absolute():
            resolved = self.base_path / resolved
        return resolved

    def execute(self, statement: Statement) -> Optional[str]:
        """
        Execute one parsed statement against the registry and session.

        Returns a message to print, or None. Engine errors propagate.
        """
        if isinstance(statement, Define):
            self.registry.define(statement.name, statement.rule)
            return f"Defined rule: {statement.name}"

        if isinstance(statement, Expression):
            if self.session.active:
                return ("Already matching on "
                        f"{format_infix(self.session.current)}; use 'end' to finish first")
            self.session.start(statement.term)
            return self.show(statement.term, "Start matching on: ")

        if isinstance(statement, RewriteInline):
            return self.show(self.session.step(statement.rule, statement.depth), "    ")

        if isinstance(statement, ApplyNamed):
            return self.show(self.session.step(statement.name, statement.depth), "    ")

        if isinstance(statement, Undo):
            return self.show(self.session.undo(), "    ")

        if isinstance(statement, End):
            if not self.session.active:
                return "No active matching session to end"
            derivation = self.session.derivation()
            message = self.show(derivation.final, "Result: ")
            if statement.path:
                # A failed write keeps the session open for another 'end'
                written = derivation.save(self.output_path(statement.path))
                message += f"\nDerivation written to {written}"
            self.session.end()
            return message

        if isinstance(statement, Quit):
            self.running = False
            return None

        raise TypeError(f"Unknown statement: {statement!r}")

    def handle_command(self, line: str) -> Optional[str]:
        """
        Handle a REPL command (starts with :).

        Returns a message to print, or None.
        """
        parts = line[1:].split(None, 1)
        if not parts:
            return "Unknown command. Type :help for help."

        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd == "help":
            return self.help_text()

        elif cmd == "quit" or cmd == "exit" or cmd == "q":
            self.running = False
            return None

        elif cmd == "load":
            if not arg:
                return "Usage: :load FILENAME"
            try:
                path = Path(arg)
                before = len(self.registry)
                self.registry.load_file(path)
                return f"Loaded rules from {path} ({len(self.registry) - before} new, {len(self.registry)} total)"
            except (OSError, ValueError, RewriteError) as e:
                return f"Error loading {arg}: {e}"

        elif cmd == "rules":
            rules = self.registry.list_rules()
            if not rules:
                return "No rules defined"
            return "\n".join(rules)

        elif cmd == "clear":
            self.registry.clear()
            return "Cleared all rules"

        elif cmd == "history":
            if not self.session.active:
                return "No active matching session"
            return repr(self.session.derivation())

        elif cmd == "notation":
            if not arg:
                return f"Notation: {self.notation}"
            if arg.lower() in NOTATIONS:
                self.notation = arg.lower()
                return f"Notation set to: {self.notation}"
            return f"Unknown notation. Options: {', '.join(NOTATIONS)}"

        else:
            return f"Unknown command: {cmd}. Type :help for help."

    def help_text(self) -> str:
        """Return help text."""
        return """REX REPL Commands:
  :help              Show this help
  :load FILE         Load rule definitions from file (.rx or .json)
  :rules             List all defined rules
  :clear             Clear all rules
  :history           Show the derivation so far
  :notation NAME     Display notation (infix, functor)
  :quit              Exit

Statements:
  def NAME as PATTERN => REPLACEMENT   Define a named rule
  EXPRESSION                           Start matching on an expression
  NAME at DEPTH                        Apply a named rule at a depth
  PATTERN => REPLACEMENT at DEPTH      Apply an in-line rule at a depth
  undo                                 Revert the last step
  end ["file"]                         Finish, optionally writing the derivation
  quit                                 Exit

Depth 0 is the whole expression, 1 its arguments, and so on.
"""

    def process_line(self, line: str) -> Optional[str]:
        """
        Process a single line of input.

        Returns the result to print, or None.
        """
        line = line.strip()

        if not line or line.startswith("#"):
            return None

        if line.startswith(":"):
            return self.handle_command(line)

        outputs: List[str] = []
        try:
            for statement in parse_program(line):
                result = self.execute(statement)
                if result:
                    outputs.append(result)
                if not self.running:
                    break
        except STATEMENT_ERRORS as e:
            outputs.append(f"Error: {e}")

        return "\n".join(outputs) if outputs else None

    def run(self):
        """Run the REPL loop."""
        self.enable_readline()
        print(f"REX {__version__} - Rewriting EXpressions one step at a time")
        print("Type :help for help, :quit to exit")
        print()

        while self.running:
            try:
                line = input(self.prompt)

                if self.multi_line_buffer:
                    self.multi_line_buffer += "\n" + line
                else:
                    self.multi_line_buffer = line

                paren_count = count_parens(self.multi_line_buffer)

                if paren_count > 0:
                    continue
                elif paren_count < 0:
                    print("Error: Unbalanced parentheses (too many closing)")
                    self.multi_line_buffer = ""
                    continue

                complete_input = self.multi_line_buffer
                self.multi_line_buffer = ""

                result = self.process_line(complete_input)
                if result:
                    print(result)

            except EOFError:
                print()
                break
            except KeyboardInterrupt:
                if self.multi_line_buffer:
                    print("\nInput cancelled")
                    self.multi_line_buffer = ""
                else:
                    print()
                continue

        self.save_history()


class ScriptRunner:
    """Runs rex scripts and program strings."""

    def __init__(self):
        self.repl = RexREPL()

    def run_source(self, lines: List[str], source: str, quiet: bool = False) -> int:
        """
        Run program lines, stopping at the first error.

        Statements may span lines while parentheses are open.

        Args:
            lines: Program text split into lines
            source: Name used in error messages
            quiet: If True, only print session results

        Returns:
            Exit code (0 for success)
        """
        buffer = ""
        start_lineno = 0

        for lineno, line in enumerate(lines, 1):
            if not buffer:
                stripped = line.strip()
                if not stripped or stripped.startswith("#"):
                    continue
                if stripped.startswith(":"):
                    result = self.repl.handle_command(stripped)
                    if result and (result.startswith("Error") or result.startswith("Unknown")):
                        print(f"{source}:{lineno}: {result}", file=sys.stderr)
                        return 1
                    if not self.repl.running:
                        return 0
                    continue
                start_lineno = lineno

            buffer = f"{buffer}\n{line}" if buffer else line
            if count_parens(buffer) > 0:
                continue
            chunk, buffer = buffer, ""

            try:
                for statement in parse_program(chunk):
                    result = self.repl.execute(statement)
                    if result and (not quiet or isinstance(statement, End)):
                        print(result)
                    if not self.repl.running:
                        return 0
            except STATEMENT_ERRORS as e:
                print(f"{source}:{start_lineno}: Error: {e}", file=sys.stderr)
                return 1

        if buffer:
            print(f"{source}:{start_lineno}: Error: Unbalanced parentheses", file=sys.stderr)
            return 1
        return 0

    def run_script(self, path: Path, quiet: bool = False) -> int:
        """
        Run a script file.

        Returns:
            Exit code (0 for success)
        """
        try:
            lines = path.read_text().splitlines()
        except OSError as e:
            print(f"Error reading {path}: {e}", file=sys.stderr)
            return 1

        self.repl.base_path = path.parent
        return self.run_source(lines, str(path), quiet=quiet)

    def run_expression(self, program: str, quiet: bool = False) -> int:
        """Run a program string; ';' or newlines separate statements."""
        return self.run_source(program.splitlines(), "<expr>", quiet=quiet)

    def run_stdin(self, quiet: bool = False) -> int:
        """Run a program read from stdin."""
        return self.run_source(sys.stdin.read().splitlines(), "<stdin>", quiet=quiet)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="rex",
        description="REX - Rewriting EXpressions one step at a time",
        epilog="Examples:\n"
               "  rex                                  Start REPL\n"
               "  rex script.rx                        Run script\n"
               "  rex -e 'pair(A, B); swap at 0; end'  Run a program string\n"
               "  rex -r rules.rx                      REPL with rules\n"
               "  cat script.rx | rex                  Filter mode\n",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "script",
        nargs="?",
        help="Script file to run (.rx)"
    )

    parser.add_argument(
        "-r", "--rules",
        action="append",
        default=[],
        help="Load rule definitions from file (can be specified multiple times)"
    )

    parser.add_argument(
        "-e", "--expr",
        help="Run a program string"
    )

    parser.add_argument(
        "-n", "--notation",
        default="infix",
        choices=NOTATIONS,
        help="Display notation"
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Quiet mode (only print session results)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    args = parser.parse_args()

    runner = ScriptRunner()
    runner.repl.notation = args.notation

    for rules_file in args.rules:
        try:
            runner.repl.registry.load_file(Path(rules_file))
            if not args.quiet:
                print(f"Loaded rules from {rules_file}", file=sys.stderr)
        except (OSError, ValueError, RewriteError) as e:
            print(f"Error loading {rules_file}: {e}", file=sys.stderr)
            sys.exit(1)

    if args.script:
        sys.exit(runner.run_script(Path(args.script), quiet=args.quiet))

    elif args.expr:
        sys.exit(runner.run_expression(args.expr, quiet=args.quiet))

    elif not sys.stdin.isatty():
        sys.exit(runner.run_stdin(quiet=args.quiet))

    else:
        runner.repl.run()


if __name__ == "__main__":
    main()
