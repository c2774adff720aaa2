"""
Sessions, Rule Registry and Surface Language for REX

REX - Rewriting EXpressions one step at a time

This module provides the surface language parser and formatter, the
registry of named rules, and matching sessions with their derivation
history.

Surface language (.rx files):
    # Comment
    def swap as pair(x, y) => pair(y, x)     - define a named rule
    pair(A, B)                               - start matching on an expression
    swap at 0                                - apply a named rule at depth 0
    x^1 => x at 1                            - apply an in-line rule at depth 1
    undo                                     - revert the last step
    end "derivation.txt"                     - finish, optionally writing the derivation
    quit                                     - leave the interpreter

Keywords (def, as, at, end, undo, quit) cannot be variable names, but a
keyword directly followed by '(' is an ordinary functor: end(x), at().

Infix operators are sugar for functors:
    a + b + c  -> add(a, b, c)      a - b  -> sub(a, b)
    a * b * c  -> mul(a, b, c)      a / b  -> div(a, b)
    a ^ b      -> pow(a, b)         -a     -> neg(a)

Rule files (.rx or .json) hold definitions only:
    {
        "rules": [
            {"name": "swap", "pattern": "pair(x, y)", "replacement": "pair(y, x)"}
        ]
    }
"""

import json
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, IO, Iterator, List, NamedTuple, Optional, Tuple, Union

from .rewriter import (
    Term, Constant, Variable, Functor, Rule, Bindings, PathType, NumericType,
    render, format_number, rewrite_at_depth, find_matches,
    UnknownRuleName, EmptyHistory, SessionNotStarted,
)


# ============================================================
# Tokenizer
# ============================================================

class ParseError(ValueError):
    """Syntax error in surface-language text."""

    def __init__(self, message: str, pos: Optional[int] = None):
        self.pos = pos
        if pos is not None:
            message = f"{message} at position {pos}"
        super().__init__(message)


class Token(NamedTuple):
    kind: str
    text: str
    pos: int


KEYWORDS = {"def", "as", "at", "end", "undo", "quit"}

# Infix operator -> functor name
INFIX_FUNCTORS = {
    "+": "add",
    "-": "sub",
    "*": "mul",
    "/": "div",
    "^": "pow",
}

_TOKEN_RE = re.compile(r"""
    (?P<space>\s+)
  | (?P<comment>\#[^\n]*)
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)
  | (?P<name>[A-Za-z_][A-Za-z0-9_']*)
  | (?P<string>"[^"\n]*")
  | (?P<derive>=>)
  | (?P<op>[-+*/^])
  | (?P<punct>[(),;])
""", re.VERBOSE)


def tokenize(text: str) -> List[Token]:
    """
    Split surface-language text into tokens.

    Whitespace and comments are dropped; keywords get their own kind.

    Raises:
        ParseError: On unknown characters or unterminated strings
    """
    tokens = []
    pos = 0
    while pos < len(text):
        match_obj = _TOKEN_RE.match(text, pos)
        if match_obj is None:
            if text[pos] == '"':
                raise ParseError("Unterminated string literal", pos)
            if text[pos] == '=':
                raise ParseError("Expected '>' after '='", pos)
            raise ParseError(f"Unknown character {text[pos]!r}", pos)
        kind = match_obj.lastgroup
        value = match_obj.group()
        if kind == "name" and value in KEYWORDS:
            kind = value
        if kind not in ("space", "comment"):
            tokens.append(Token(kind, value, pos))
        pos = match_obj.end()
    return tokens


def parse_number(text: str, pos: Optional[int] = None) -> NumericType:
    """Parse a number token, keeping integers as int."""
    try:
        return int(text)
    except ValueError:
        value = float(text)
    if not math.isfinite(value):
        raise ParseError(f"Number out of range: {text}", pos)
    return value


# ============================================================
# Statements
# ============================================================

@dataclass(frozen=True)
class Define:
    """def NAME as PATTERN => REPLACEMENT"""
    name: str
    rule: Rule


@dataclass(frozen=True)
class RewriteInline:
    """PATTERN => REPLACEMENT [at DEPTH]"""
    rule: Rule
    depth: int = 0


@dataclass(frozen=True)
class ApplyNamed:
    """NAME at DEPTH"""
    name: str
    depth: int


@dataclass(frozen=True)
class Expression:
    """A bare expression; starts a matching session."""
    term: Term


@dataclass(frozen=True)
class End:
    """end ["path"]"""
    path: Optional[str] = None


@dataclass(frozen=True)
class Undo:
    """undo"""


@dataclass(frozen=True)
class Quit:
    """quit"""


Statement = Union[Define, RewriteInline, ApplyNamed, Expression, End, Undo, Quit]


# ============================================================
# Parser
# ============================================================

class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    # --- token helpers ---

    def peek(self, offset: int = 0) -> Optional[Token]:
        i = self.index + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def at(self, kind: str, text: Optional[str] = None) -> bool:
        tok = self.peek()
        return tok is not None and tok.kind == kind and (text is None or tok.text == text)

    def advance(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise ParseError("Unexpected end of input", len(self.text))
        self.index += 1
        return tok

    def expect(self, kind: str, text: Optional[str] = None) -> Token:
        tok = self.peek()
        wanted = repr(text) if text else kind
        if tok is None:
            raise ParseError(f"Expected {wanted}, but got nothing", len(self.text))
        if tok.kind != kind or (text is not None and tok.text != text):
            raise ParseError(f"Expected {wanted}, but got {tok.text!r}", tok.pos)
        self.index += 1
        return tok

    def at_end(self) -> bool:
        return self.index >= len(self.tokens)

    # --- statements ---

    def program(self) -> List[Statement]:
        statements = []
        while not self.at_end():
            if self.at("punct", ";"):
                self.advance()
                continue
            statements.append(self.statement())
        return statements

    def at_call(self, offset: int = 0) -> bool:
        """True if the token at offset is directly followed by '('."""
        following = self.peek(offset + 1)
        return following is not None and following.kind == "punct" and following.text == "("

    def at_keyword(self, kind: str) -> bool:
        """A keyword token, unless it names a functor call like end(x)."""
        return self.at(kind) and not self.at_call()

    def statement(self) -> Statement:
        if self.at_keyword("def"):
            return self.definition()
        if self.at_keyword("end"):
            self.advance()
            if self.at("string"):
                return End(self.advance().text[1:-1])
            return End()
        if self.at_keyword("undo"):
            self.advance()
            return Undo()
        if self.at_keyword("quit"):
            self.advance()
            return Quit()

        left = self.expression()
        if self.at("derive"):
            self.advance()
            right = self.expression()
            rule = Rule(left, right)
            if self.at_keyword("at"):
                self.advance()
                return RewriteInline(rule, self.depth())
            return RewriteInline(rule)
        if self.at_keyword("at"):
            if not isinstance(left, Variable):
                raise ParseError(f"Expected a rule name before 'at', got {render(left)}",
                                 self.peek().pos)
            self.advance()
            return ApplyNamed(left.name, self.depth())
        return Expression(left)

    def definition(self) -> Define:
        self.expect("def")
        tok = self.peek()
        if tok is None or tok.kind != "name":
            got = repr(tok.text) if tok else "nothing"
            raise ParseError(f"Expected identifier after 'def', but got {got}",
                             tok.pos if tok else len(self.text))
        name = self.advance().text
        self.expect("as")
        pattern = self.expression()
        self.expect("derive")
        replacement = self.expression()
        return Define(name, Rule(pattern, replacement, name))

    def depth(self) -> int:
        tok = self.expect("number")
        value = parse_number(tok.text, tok.pos)
        if not isinstance(value, int):
            raise ParseError(f"Depth must be a whole number, got {tok.text}", tok.pos)
        return value

    # --- expressions ---

    def expression(self) -> Term:
        return self.chain(self.multiplicative, ("+", "-"), "add")

    def multiplicative(self) -> Term:
        return self.chain(self.unary, ("*", "/"), "mul")

    def chain(self, operand, operators: Tuple[str, ...], flat: str) -> Term:
        """Left-associative operator chain; runs of the flat operator become one n-ary functor."""
        left = operand()
        previous = None
        while self.peek() is not None and self.peek().kind == "op" and self.peek().text in operators:
            name = INFIX_FUNCTORS[self.advance().text]
            right = operand()
            if name == flat and previous == flat:
                left = Functor(name, left.args + (right,))
            else:
                left = Functor(name, [left, right])
            previous = name
        return left

    def unary(self) -> Term:
        if self.at("op", "-"):
            self.advance()
            following = self.peek(1)
            if self.at("number") and not (following and following.kind == "op" and following.text == "^"):
                tok = self.advance()
                return Constant(-parse_number(tok.text, tok.pos))
            return Functor("neg", [self.unary()])
        return self.power()

    def power(self) -> Term:
        base = self.primary()
        if self.at("op", "^"):
            self.advance()
            return Functor("pow", [base, self.unary()])
        return base

    def primary(self) -> Term:
        tok = self.peek()
        if tok is None:
            raise ParseError("Expected constant or variable, but got nothing", len(self.text))
        if tok.kind == "number":
            self.advance()
            return Constant(parse_number(tok.text, tok.pos))
        if tok.kind == "name" or (tok.kind in KEYWORDS and self.at_call()):
            self.advance()
            if self.at("punct", "("):
                return Functor(tok.text, self.arguments())
            return Variable(tok.text)
        if tok.kind == "punct" and tok.text == "(":
            self.advance()
            inner = self.expression()
            self.expect("punct", ")")
            return inner
        raise ParseError(f"Expected constant or variable, but got {tok.text!r}", tok.pos)

    def arguments(self) -> List[Term]:
        self.expect("punct", "(")
        args = []
        if self.at("punct", ")"):
            self.advance()
            return args
        while True:
            args.append(self.expression())
            if self.at("punct", ","):
                self.advance()
                continue
            self.expect("punct", ")")
            return args

    def finish(self):
        tok = self.peek()
        if tok is not None:
            raise ParseError(f"Unexpected {tok.text!r}", tok.pos)


def parse_program(text: str) -> List[Statement]:
    """
    Parse surface-language text into a list of statements.

    Examples:
        parse_program("pair(A, B) swap at 0 end")
        # => [Expression(pair(A, B)), ApplyNamed("swap", 0), End()]
    """
    return _Parser(text).program()


def parse_term(text: str) -> Term:
    """
    Parse a single expression.

    Examples:
        parse_term("f(x, g(y))")  -> Functor("f", [Variable("x"), Functor("g", [Variable("y")])])
        parse_term("x^2 + 1")     -> add(pow(x, 2), 1)
    """
    parser = _Parser(text)
    term = parser.expression()
    parser.finish()
    return term


def parse_rule(text: str, name: Optional[str] = None) -> Rule:
    """Parse 'PATTERN => REPLACEMENT' into a Rule."""
    parser = _Parser(text)
    pattern = parser.expression()
    parser.expect("derive")
    replacement = parser.expression()
    parser.finish()
    return Rule(pattern, replacement, name)


# ============================================================
# Infix Formatting
# ============================================================

_ATOM_PREC = 5
_POW_PREC = 4
_NEG_PREC = 3
_MUL_PREC = 2
_ADD_PREC = 1

_INFIX_SYMBOLS = {name: symbol for symbol, name in INFIX_FUNCTORS.items()}


def _is_infix(term: Term) -> bool:
    if not isinstance(term, Functor):
        return False
    if term.name in ("add", "mul"):
        return term.arity >= 2
    if term.name in ("sub", "div", "pow"):
        return term.arity == 2
    if term.name == "neg":
        return term.arity == 1
    return False


def _precedence(term: Term) -> int:
    if isinstance(term, Constant):
        return _NEG_PREC if term.value < 0 else _ATOM_PREC
    if not _is_infix(term):
        return _ATOM_PREC
    return {
        "add": _ADD_PREC, "sub": _ADD_PREC,
        "mul": _MUL_PREC, "div": _MUL_PREC,
        "neg": _NEG_PREC, "pow": _POW_PREC,
    }[term.name]


def has_infix(term: Term) -> bool:
    """Check if any node of a term prints with infix notation."""
    if _is_infix(term):
        return True
    return isinstance(term, Functor) and any(has_infix(arg) for arg in term.args)


def format_infix(term: Term) -> str:
    """
    Format a term using infix notation where it applies.

    Parentheses are added only where needed for the text to parse back
    to the same term.

    Examples:
        add(pow(x, 2), mul(2, x), 1)   -> "x^2 + 2 * x + 1"
        mul(2, pow(y, sub(2, 1)))      -> "2 * y^(2 - 1)"
        f(add(a, b))                   -> "f(a + b)"
    """
    def wrap(sub: Term, parens: bool) -> str:
        text = format_infix(sub)
        return f"({text})" if parens else text

    if isinstance(term, Constant):
        return format_number(term.value)
    if isinstance(term, Variable):
        return term.name
    if not _is_infix(term):
        return f"{term.name}({', '.join(format_infix(arg) for arg in term.args)})"

    name = term.name
    if name == "neg":
        operand = term.args[0]
        parens = _precedence(operand) < _POW_PREC or isinstance(operand, Constant)
        return "-" + wrap(operand, parens)
    if name == "pow":
        base, exponent = term.args
        return (wrap(base, _precedence(base) <= _POW_PREC) + "^"
                + wrap(exponent, _precedence(exponent) < _NEG_PREC))

    prec = _precedence(term)
    symbol = f" {_INFIX_SYMBOLS[name]} "
    first, rest = term.args[0], term.args[1:]
    # Runs of the same n-ary operator flatten when parsed, so keep them grouped
    first_parens = _precedence(first) < prec or (
        name in ("add", "mul") and isinstance(first, Functor) and first.name == name and _is_infix(first))
    parts = [wrap(first, first_parens)]
    parts.extend(wrap(arg, _precedence(arg) <= prec) for arg in rest)
    return symbol.join(parts)


# ============================================================
# Expression Builder
# ============================================================

class _ExprBuilder:
    """
    Expression builder for REX.

    Examples:
        from rex import E

        # Parse surface syntax
        expr = E("f(x, g(y))")
        expr = E("x^2 + 2*x + 1")

        # Build programmatically
        expr = E.op("pair", E.var("A"), E.const(2))
        x, y = E.vars("x", "y")
        expr = E.op("add", x, y)
    """

    def __call__(self, s: str) -> Term:
        """Parse an expression string."""
        return parse_term(s)

    def op(self, name: str, *args) -> Functor:
        """
        Build a functor; plain strings become variables and numbers constants.

        Examples:
            E.op("f", "x", 1)   -> f(x, 1)
            E.op("nil")         -> nil()
        """
        return Functor(name, [self._coerce(arg) for arg in args])

    def var(self, name: str) -> Variable:
        """Create a variable."""
        return Variable(name)

    def vars(self, *names: str) -> Tuple[Variable, ...]:
        """Create multiple variables for unpacking."""
        return tuple(Variable(name) for name in names)

    def const(self, value: NumericType) -> Constant:
        """Create a constant."""
        return Constant(value)

    def rule(self, text: str, name: Optional[str] = None) -> Rule:
        """Parse a rule: E.rule("pair(x, y) => pair(y, x)", "swap")."""
        return parse_rule(text, name)

    @staticmethod
    def _coerce(value) -> Term:
        if isinstance(value, Term):
            return value
        if isinstance(value, str):
            return Variable(value)
        return Constant(value)

    def __repr__(self) -> str:
        return "E (expression builder)"


# Singleton instance
E = _ExprBuilder()


# ============================================================
# Rule Loading
# ============================================================

def load_rules_from_dsl(text: str) -> List[Rule]:
    """
    Load named rules from surface-language text.

    Only 'def' statements are allowed.

    Example:
        def swap as pair(x, y) => pair(y, x)
        def diff as pow(x, n) => n * pow(x, n - 1)
    """
    rules = []
    for statement in parse_program(text):
        if not isinstance(statement, Define):
            raise ParseError(f"Rule files may only contain definitions, got {type(statement).__name__}")
        rules.append(statement.rule)
    return rules


def load_rules_from_json(text: str) -> List[Rule]:
    """
    Load named rules from JSON text.

    Expected format:
        {"rules": [{"name": "...", "pattern": "...", "replacement": "..."}]}
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Rule file must hold a JSON object, got {type(data).__name__}")
    entries = data.get('rules', [])
    if not isinstance(entries, list):
        raise ValueError(f"'rules' must be a list, got {type(entries).__name__}")

    rules = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"Rule entry must be an object: {entry!r}")
        name = entry.get('name')
        if not name or not isinstance(name, str):
            raise ValueError(f"Rule entry without a name: {entry}")
        for key in ('pattern', 'replacement'):
            if not isinstance(entry.get(key), str):
                raise ValueError(f"Rule entry '{name}' needs a string '{key}': {entry}")
        rules.append(Rule(parse_term(entry['pattern']), parse_term(entry['replacement']), name))
    return rules


def load_rules_from_file(path: Union[str, Path]) -> List[Rule]:
    """Load rules from a .rx or .json file."""
    path = Path(path)
    text = path.read_text()
    if path.suffix == '.json':
        return load_rules_from_json(text)
    return load_rules_from_dsl(text)


# ============================================================
# Rule Registry
# ============================================================

class RuleRegistry:
    """
    Named rules available to rewrite steps.

    Names are unique; defining an existing name replaces the old rule.

    Example:
        registry = RuleRegistry.from_dsl('''
            def swap as pair(x, y) => pair(y, x)
        ''')
        registry.lookup("swap")   # => Rule(pair(x, y), pair(y, x), "swap")
    """

    def __init__(self):
        self._rules: Dict[str, Rule] = {}

    def define(self, name: str, rule: Rule) -> Rule:
        """Store a rule under a name (last write wins) and return the stored rule."""
        if not name:
            raise ValueError("Rule name cannot be empty")
        named = rule if rule.name == name else rule.named(name)
        self._rules[name] = named
        return named

    def lookup(self, name: str) -> Optional[Rule]:
        """Get a rule by name, or None."""
        return self._rules.get(name)

    def resolve(self, rule: Union[Rule, str]) -> Rule:
        """Return an in-line rule as-is, or look a name up."""
        if isinstance(rule, Rule):
            return rule
        found = self.lookup(rule)
        if found is None:
            raise UnknownRuleName(rule)
        return found

    def names(self) -> List[str]:
        """Rule names in definition order."""
        return list(self._rules)

    def load_dsl(self, text: str) -> 'RuleRegistry':
        """Define every rule in surface-language text."""
        for rule in load_rules_from_dsl(text):
            self.define(rule.name, rule)
        return self

    def load_file(self, path: Union[str, Path]) -> 'RuleRegistry':
        """Define every rule in a .rx or .json file."""
        for rule in load_rules_from_file(path):
            self.define(rule.name, rule)
        return self

    def clear(self) -> 'RuleRegistry':
        """Remove all rules."""
        self._rules = {}
        return self

    def list_rules(self) -> List[str]:
        """List all rules as 'def' statements."""
        return [f"def {name} as {format_infix(rule.pattern)} => {format_infix(rule.replacement)}"
                for name, rule in self._rules.items()]

    def to_dsl(self, name: Optional[str] = None) -> str:
        """Export rules as surface-language text, loadable with load_dsl()."""
        lines = [f"# {name}", ""] if name else []
        lines.extend(self.list_rules())
        return "\n".join(lines)

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Export rules as JSON, loadable with load_rules_from_json()."""
        rules_list = [
            {"name": name, "pattern": render(rule.pattern), "replacement": render(rule.replacement)}
            for name, rule in self._rules.items()
        ]
        return json.dumps({"rules": rules_list}, indent=indent)

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, name: str) -> bool:
        return name in self._rules

    def __getitem__(self, name: str) -> Rule:
        if name not in self._rules:
            raise UnknownRuleName(name)
        return self._rules[name]

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules.values())

    def __repr__(self) -> str:
        return f"RuleRegistry({len(self._rules)} rules)"

    @classmethod
    def from_dsl(cls, text: str) -> 'RuleRegistry':
        """Create a registry from surface-language text."""
        return cls().load_dsl(text)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'RuleRegistry':
        """Create a registry from a rule file."""
        return cls().load_file(path)


# ============================================================
# History
# ============================================================

class HistoryEntry:
    """A single rewrite step of a matching session."""

    def __init__(self, before: Term, rule: Rule, depth: int, after: Term,
                 paths: Tuple[PathType, ...] = ()):
        self.before = before
        self.rule = rule
        self.depth = depth
        self.after = after
        self.paths = paths

    @property
    def label(self) -> str:
        """Rule label and depth, e.g. 'swap at 0'."""
        return f"{self.rule.label} at {self.depth}"

    def __repr__(self) -> str:
        return f"{self.label}: {render(self.before)} -> {render(self.after)}"

    def to_dict(self) -> Dict:
        """Convert the entry to a dictionary for serialization."""
        return {
            "rule": self.rule.label,
            "named": self.rule.name is not None,
            "depth": self.depth,
            "before": render(self.before),
            "after": render(self.after),
            "rewrites": len(self.paths),
        }


class Derivation:
    """
    The ordered record of a matching session.

    Provides multiple formatting options:
        - Default repr: verbose multi-line format
        - format("compact"): single line showing the rule chain
        - format("rules"): just the rules applied
        - format("chain"): expression transformations as a chain
        - to_dict(): JSON-serializable dictionary
    """

    def __init__(self, initial: Term, steps: List[HistoryEntry], final: Term):
        self.initial = initial
        self.steps = steps
        self.final = final

    def format(self, style: str = "verbose") -> str:
        """
        Format the derivation in different styles.

        Args:
            style: One of "verbose", "compact", "rules", "chain"

        Returns:
            Formatted string representation of the derivation.
        """
        if style == "compact":
            labels = [step.label for step in self.steps]
            return f"{render(self.initial)} --[{', '.join(labels)}]--> {render(self.final)}"

        elif style == "rules":
            labels = [step.label for step in self.steps]
            return " -> ".join(labels) if labels else "(no rules applied)"

        elif style == "chain":
            parts = [render(self.initial)]
            for step in self.steps:
                parts.append(f"  --({step.label})-->")
                parts.append(render(step.after))
            return "\n".join(parts)

        elif style == "verbose":
            return repr(self)

        raise ValueError(f"Unknown style: {style}. Valid options: verbose, compact, rules, chain")

    def __repr__(self) -> str:
        lines = [f"Initial: {render(self.initial)}"]
        for i, step in enumerate(self.steps, 1):
            lines.append(f"  {i}. {step}")
        lines.append(f"Final: {render(self.final)}")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self.steps)

    def __bool__(self) -> bool:
        """True if any rewriting was done."""
        return len(self.steps) > 0

    def rules_applied(self) -> List[str]:
        """Rule labels in order of application."""
        return [step.rule.label for step in self.steps]

    def to_dict(self) -> Dict:
        """Convert the derivation to a dictionary for JSON serialization."""
        return {
            "initial": render(self.initial),
            "final": render(self.final),
            "steps": [step.to_dict() for step in self.steps],
            "step_count": len(self.steps),
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def write(self, stream: IO[str]) -> None:
        """Write the verbose text form to a stream."""
        stream.write(repr(self) + "\n")

    def save(self, path: Union[str, Path]) -> Path:
        """Write the derivation to a file: JSON for .json paths, text otherwise."""
        path = Path(path)
        if path.suffix == '.json':
            path.write_text(self.to_json() + "\n")
        else:
            path.write_text(repr(self) + "\n")
        return path


# ============================================================
# Session
# ============================================================

class Session:
    """
    A matching session: one expression transformed step by step.

    Example:
        registry = RuleRegistry.from_dsl("def swap as pair(x, y) => pair(y, x)")
        session = Session(registry).start(E("pair(A, B)"))
        session.step("swap", 0)          # => pair(B, A)
        session.undo()                   # => pair(A, B)
        derivation = session.end()
    """

    def __init__(self, registry: Optional[RuleRegistry] = None):
        self.registry = registry if registry is not None else RuleRegistry()
        self._initial: Optional[Term] = None
        self._current: Optional[Term] = None
        self._history: List[HistoryEntry] = []

    def start(self, expression: Term) -> 'Session':
        """Begin matching on an expression with an empty history."""
        if not isinstance(expression, Term):
            raise TypeError(f"Session.start expects a Term, got {expression!r}")
        self._initial = expression
        self._current = expression
        self._history = []
        return self

    @property
    def active(self) -> bool:
        """True between start() and end()."""
        return self._current is not None

    @property
    def current(self) -> Optional[Term]:
        return self._current

    @property
    def history(self) -> Tuple[HistoryEntry, ...]:
        return tuple(self._history)

    def _require_current(self) -> Term:
        if self._current is None:
            raise SessionNotStarted()
        return self._current

    def step(self, rule: Union[Rule, str], depth: int = 0) -> Term:
        """
        Apply a rule (or a registered rule name) at a depth.

        On failure the error propagates and the session is unchanged.

        Returns:
            The new current expression
        """
        current = self._require_current()
        resolved = self.registry.resolve(rule)
        after, paths = rewrite_at_depth(current, resolved, depth)
        self._history.append(HistoryEntry(current, resolved, depth, after, paths))
        self._current = after
        return after

    def matches(self, rule: Union[Rule, str], depth: int = 0) -> List[Tuple[PathType, Bindings]]:
        """The sub-terms a step would rewrite, without applying it."""
        return find_matches(self._require_current(), self.registry.resolve(rule).pattern, depth)

    def undo(self) -> Term:
        """Revert the last step and return the restored expression."""
        self._require_current()
        if not self._history:
            raise EmptyHistory()
        entry = self._history.pop()
        self._current = entry.before
        return self._current

    def derivation(self) -> Derivation:
        """Snapshot of the derivation so far."""
        current = self._require_current()
        return Derivation(self._initial, list(self._history), current)

    def end(self) -> Derivation:
        """Finish the session and return its derivation."""
        derivation = self.derivation()
        self._initial = None
        self._current = None
        self._history = []
        return derivation

    def __repr__(self) -> str:
        if self._current is None:
            return "Session(idle)"
        return f"Session({render(self._current)}, {len(self._history)} steps)"
