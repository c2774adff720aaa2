"""
Core rewriter module for step-by-step term rewriting.

REX - Rewriting EXpressions one step at a time

This module provides the term model, pattern matching, depth-indexed
sub-term selection and single-step rule application.
"""

import math
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union
from dataclasses import dataclass, replace
from abc import ABC, abstractmethod

# Type aliases
NumericType = Union[int, float]
PathType = Tuple[int, ...]  # Argument indices from the root to a sub-term


# ============================================================
# Errors
# ============================================================

class RewriteError(Exception):
    """Base class for all errors raised by the rewriting engine."""


class NoMatchAtDepth(RewriteError):
    """The rule's pattern matched no sub-term at the requested depth."""

    def __init__(self, depth: int, rule: Optional['Rule'] = None):
        self.depth = depth
        self.rule = rule
        if rule is not None:
            message = f"Rule '{rule.label}' does not match anything at depth {depth}"
        else:
            message = f"No match at depth {depth}"
        super().__init__(message)


class InvalidRuleDefinition(RewriteError, ValueError):
    """A replacement refers to variables the pattern never binds."""

    def __init__(self, unbound: List[str], rule_text: str = ""):
        self.unbound = unbound
        names = ", ".join(unbound)
        message = f"Replacement uses unbound variable(s): {names}"
        if rule_text:
            message += f" in '{rule_text}'"
        super().__init__(message)


class UnknownRuleName(RewriteError, LookupError):
    """A rule was referenced by a name the registry does not hold."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No rule named '{name}'")


class EmptyHistory(RewriteError):
    """Undo was requested with nothing to undo."""

    def __init__(self):
        super().__init__("Nothing to undo")


class SessionNotStarted(RewriteError):
    """A session operation needs an expression but none was started."""

    def __init__(self):
        super().__init__("No active matching session; enter an expression first")


# ============================================================
# Term Model
# ============================================================

class Term(ABC):
    """Abstract base class for all terms."""

    @abstractmethod
    def variables(self) -> Set[str]:
        """Get all variable names occurring in this term."""

    def __str__(self) -> str:
        return render(self)


@dataclass(frozen=True)
class Constant(Term):
    """An opaque numeric atom, equal to any constant of the same numeric value."""
    value: NumericType

    def __post_init__(self):
        if isinstance(self.value, bool) or not isinstance(self.value, (int, float)):
            raise TypeError(f"Constant value must be a number, got {self.value!r}")
        if not math.isfinite(self.value):
            raise ValueError(f"Constant value must be finite, got {self.value!r}")

    def variables(self) -> Set[str]:
        return set()


@dataclass(frozen=True)
class Variable(Term):
    """A named atomic symbol; a wildcard when it appears in a pattern."""
    name: str

    def __post_init__(self):
        if not self.name:
            raise ValueError("Variable name cannot be empty")

    def variables(self) -> Set[str]:
        return {self.name}


@dataclass(frozen=True)
class Functor(Term):
    """A named node with an ordered tuple of argument terms."""
    name: str
    args: Tuple[Term, ...] = ()

    def __init__(self, name: str, args=()):
        if not name:
            raise ValueError("Functor name cannot be empty")
        if not isinstance(args, (list, tuple)):
            raise TypeError(f"Functor args must be list or tuple, got {type(args)}")
        for arg in args:
            if not isinstance(arg, Term):
                raise TypeError(f"Functor argument must be a Term, got {arg!r}")
        object.__setattr__(self, 'name', name)
        object.__setattr__(self, 'args', tuple(args))

    @property
    def arity(self) -> int:
        """Number of arguments."""
        return len(self.args)

    def variables(self) -> Set[str]:
        names: Set[str] = set()
        for arg in self.args:
            names.update(arg.variables())
        return names


def constant(term: Any) -> bool:
    """Check if a term is a numeric constant."""
    return isinstance(term, Constant)


def variable(term: Any) -> bool:
    """Check if a term is a variable."""
    return isinstance(term, Variable)


def compound(term: Any) -> bool:
    """Check if a term is a functor (including nullary functors)."""
    return isinstance(term, Functor)


def atom(term: Any) -> bool:
    """Check if a term is atomic (constant or variable)."""
    return constant(term) or variable(term)


def format_number(value: NumericType) -> str:
    """Format a numeric constant, dropping the fraction of integral floats."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render(term: Term) -> str:
    """
    Render a term in canonical functor form.

    The output is deterministic and parses back to an equal term.

    Examples:
        Functor("f", [Variable("x"), Functor("g", [Variable("y")])]) -> "f(x, g(y))"
        Functor("nil")                                               -> "nil()"
        Constant(2.0)                                                -> "2"
    """
    if isinstance(term, Constant):
        return format_number(term.value)
    if isinstance(term, Variable):
        return term.name
    if isinstance(term, Functor):
        return f"{term.name}({', '.join(render(arg) for arg in term.args)})"
    raise TypeError(f"render: not a term: {term!r}")


# ============================================================
# Bindings Class - Dict-like interface for match results
# ============================================================

class Bindings:
    """
    Read-only mapping from variable names to the terms they matched.

    Bindings objects are truthy when a match succeeded, even when empty
    (a pattern without variables). Use NoMatch (which is falsy) to
    represent failed matches:

        if bindings := match(pattern, term):
            print(bindings["x"])

    Examples:
        bindings = Bindings({"x": Variable("a")})
        bindings["x"]      # => Variable("a")
        bindings.get("z")  # => None
        "x" in bindings    # => True
        len(bindings)      # => 1
    """

    __slots__ = ('_dict',)

    def __init__(self, pairs: Union[Mapping[str, Term], List[Tuple[str, Term]], None] = None):
        """Initialize from a mapping or a list of (name, term) pairs."""
        self._dict: Dict[str, Term] = dict(pairs or {})

    def __bool__(self) -> bool:
        """Bindings are always truthy (use NoMatch for failed matches)."""
        return True

    def __getitem__(self, key: str) -> Term:
        return self._dict[key]

    def get(self, key: str, default=None):
        """Get a bound term with optional default."""
        return self._dict.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._dict

    def keys(self):
        return self._dict.keys()

    def values(self):
        return self._dict.values()

    def items(self):
        return self._dict.items()

    def __iter__(self):
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        inner = ", ".join(f"{name}: {render(term)}" for name, term in self._dict.items())
        return f"Bindings({{{inner}}})"

    def __eq__(self, other):
        if isinstance(other, Bindings):
            return self._dict == other._dict
        return False

    __hash__ = None

    def to_dict(self) -> Dict[str, Term]:
        """Convert to a plain dictionary."""
        return self._dict.copy()


class _NoMatch:
    """
    Singleton representing a failed pattern match.

    NoMatch is falsy, allowing natural use in conditionals.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NoMatch"

    def __getitem__(self, key: str):
        raise KeyError(f"NoMatch has no binding for '{key}'")

    def get(self, key: str, default=None):
        return default

    def __contains__(self, key: str) -> bool:
        return False

    def __len__(self) -> int:
        return 0

    def __iter__(self):
        return iter([])


# Singleton instance
NoMatch = _NoMatch()


# ============================================================
# Pattern Matching
# ============================================================

def extend_bindings(var: Variable, term: Term, table: Dict[str, Term]) -> bool:
    """
    Bind a pattern variable, or check an existing binding for consistency.

    Args:
        var: The pattern variable
        term: The candidate sub-term to bind
        table: Bindings built so far (extended in place)

    Returns:
        True if the variable was unbound or already bound to an equal term
    """
    bound = table.get(var.name)
    if bound is None:
        table[var.name] = term
        return True
    return bound == term


def _match_into(pattern: Term, candidate: Term, table: Dict[str, Term]) -> bool:
    if isinstance(pattern, Variable):
        return extend_bindings(pattern, candidate, table)

    if isinstance(pattern, Constant):
        return isinstance(candidate, Constant) and candidate.value == pattern.value

    if isinstance(pattern, Functor):
        if not isinstance(candidate, Functor):
            return False
        if candidate.name != pattern.name or candidate.arity != pattern.arity:
            return False
        # Left to right; a failed argument ends the match (no backtracking)
        return all(_match_into(p, c, table) for p, c in zip(pattern.args, candidate.args))

    raise TypeError(f"match: not a term: {pattern!r}")


def match(pattern: Term, candidate: Term,
          bindings: Optional[Bindings] = None) -> Union[Bindings, _NoMatch]:
    """
    Match a pattern against a candidate term.

    Rules:
        Constant pattern - matches an equal constant only
        Variable pattern - binds the whole candidate; a variable seen before
                           must meet a structurally equal candidate
        Functor pattern  - same name and arity, arguments matched left to
                           right with bindings threaded through

    Args:
        pattern: The pattern to match
        candidate: The term to match against
        bindings: Optional bindings to extend

    Returns:
        Bindings on success, NoMatch on failure

    Examples:
        match(E("add(a, a)"), E("add(x, x)"))  # => Bindings({a: x})
        match(E("add(a, a)"), E("add(x, y)"))  # => NoMatch
    """
    table = bindings.to_dict() if bindings is not None else {}
    if _match_into(pattern, candidate, table):
        return Bindings(table)
    return NoMatch


# ============================================================
# Instantiation
# ============================================================

def instantiate(replacement: Term, bindings: Union[Bindings, Mapping[str, Term]]) -> Term:
    """
    Instantiate a replacement term with bindings.

    Every variable bound in ``bindings`` is replaced by its bound term;
    unbound variables and constants are kept as-is.

    Args:
        replacement: The right-hand side of a rule
        bindings: The bindings produced by a successful match

    Returns:
        The instantiated term
    """
    if isinstance(replacement, Variable):
        return bindings.get(replacement.name, replacement)
    if isinstance(replacement, Functor):
        return Functor(replacement.name,
                       [instantiate(arg, bindings) for arg in replacement.args])
    return replacement


# ============================================================
# Depth Selection
# ============================================================

def iter_subterms(term: Term, path: PathType = ()) -> Iterator[Tuple[Term, PathType]]:
    """
    Yield every sub-term with its path, in pre-order, left to right.

    A sub-term's depth is ``len(path)``; the root has the empty path.
    """
    yield term, path
    if isinstance(term, Functor):
        for i, arg in enumerate(term.args):
            yield from iter_subterms(arg, path + (i,))


def collect_at_depth(term: Term, depth: int) -> List[Tuple[Term, PathType]]:
    """
    Collect every sub-term at the given depth.

    The root is at depth 0 and each functor argument is one deeper than
    its parent. Results are in pre-order, left-to-right argument order.

    Args:
        term: The expression to search
        depth: Nesting depth to select

    Returns:
        List of (subterm, path) pairs

    Examples:
        collect_at_depth(E("f(a, g(b))"), 1)  # => [(a, (0,)), (g(b), (1,))]
    """
    if depth < 0:
        raise ValueError(f"Depth must be non-negative, got {depth}")

    found: List[Tuple[Term, PathType]] = []

    def walk(node: Term, path: PathType):
        if len(path) == depth:
            found.append((node, path))
            return
        if isinstance(node, Functor):
            for i, arg in enumerate(node.args):
                walk(arg, path + (i,))

    walk(term, ())
    return found


def subterm_at(term: Term, path: PathType) -> Term:
    """Return the sub-term addressed by a path of argument indices."""
    node = term
    for index in path:
        if not isinstance(node, Functor) or index >= node.arity:
            raise IndexError(f"Path {path} does not address a sub-term of {render(term)}")
        node = node.args[index]
    return node


def height(term: Term) -> int:
    """Depth of the deepest node in a term (0 for atoms)."""
    if isinstance(term, Functor) and term.args:
        return 1 + max(height(arg) for arg in term.args)
    return 0


def replace_paths(term: Term, replacements: Mapping[PathType, Term]) -> Term:
    """
    Replace the sub-terms at the given paths, all at once.

    Subtrees off the replaced paths are shared with the original term.
    Paths must not be nested inside one another.
    """
    touched = {path[:i] for path in replacements for i in range(len(path))}

    def rebuild(node: Term, path: PathType) -> Term:
        if path in replacements:
            return replacements[path]
        if path not in touched or not isinstance(node, Functor):
            return node
        return Functor(node.name, [rebuild(arg, path + (i,)) for i, arg in enumerate(node.args)])

    return rebuild(term, ())


# ============================================================
# Rules
# ============================================================

@dataclass(frozen=True)
class Rule:
    """
    A rewrite rule: pattern => replacement, optionally named.

    Every variable of the replacement must occur in the pattern; this is
    checked on construction so an invalid rule never exists.
    """
    pattern: Term
    replacement: Term
    name: Optional[str] = None

    def __post_init__(self):
        unbound = self.replacement.variables() - self.pattern.variables()
        if unbound:
            raise InvalidRuleDefinition(
                sorted(unbound), f"{render(self.pattern)} => {render(self.replacement)}")

    @property
    def label(self) -> str:
        """The rule's name, or its text for in-line rules."""
        if self.name:
            return self.name
        return f"{render(self.pattern)} => {render(self.replacement)}"

    def named(self, name: str) -> 'Rule':
        """Return a copy of this rule carrying the given name."""
        return replace(self, name=name)

    def __str__(self) -> str:
        body = f"{render(self.pattern)} => {render(self.replacement)}"
        return f"{self.name}: {body}" if self.name else body


# ============================================================
# Rewriting
# ============================================================

def find_matches(expression: Term, pattern: Term, depth: int) -> List[Tuple[PathType, Bindings]]:
    """
    Match a pattern against every sub-term at a depth.

    Returns:
        (path, bindings) for each matching sub-term, left to right
    """
    matches = []
    for candidate, path in collect_at_depth(expression, depth):
        bindings = match(pattern, candidate)
        if bindings:
            matches.append((path, bindings))
    return matches


def rewrite_at_depth(expression: Term, rule: Rule, depth: int) -> Tuple[Term, Tuple[PathType, ...]]:
    """
    Rewrite every sub-term at ``depth`` that the rule's pattern matches.

    All matches are replaced in one step. Either every match is rewritten
    or, when nothing matches, NoMatchAtDepth is raised and no new term
    is produced.

    Returns:
        (new expression, paths of the rewritten sub-terms)
    """
    matches = find_matches(expression, rule.pattern, depth)
    if not matches:
        raise NoMatchAtDepth(depth, rule)

    replacements = {path: instantiate(rule.replacement, bindings) for path, bindings in matches}
    return replace_paths(expression, replacements), tuple(replacements)


def apply_rule(expression: Term, rule: Rule, depth: int = 0) -> Term:
    """
    Apply a rule at a depth and return the rewritten expression.

    Examples:
        swap = Rule(E("pair(x, y)"), E("pair(y, x)"), "swap")
        apply_rule(E("pair(A, B)"), swap, 0)  # => pair(B, A)
    """
    result, _ = rewrite_at_depth(expression, rule, depth)
    return result
