"""
REX - Rewriting EXpressions one step at a time

A term rewriting library and interpreter for deriving results by hand:
start from an expression, apply one rule at a chosen depth per step,
undo when needed, and keep the full derivation.

Quick Start:
    from rex import RuleRegistry, Session, E

    registry = RuleRegistry.from_dsl('''
        def diff as pow(x, n) => n * pow(x, n - 1)
    ''')

    session = Session(registry).start(E("y^2"))
    session.step("diff", 0)              # => mul(2, pow(y, sub(2, 1)))
    session.step(E.rule("2 - 1 => 1"), 2)  # => mul(2, pow(y, 1))
    session.step(E.rule("x^1 => x"), 1)    # => mul(2, y)
    print(session.end())

Terms:
    f(x, g(y))    - functor f with arguments x and g(y)
    nil()         - nullary functor (distinct from the variable nil)
    x             - variable (a wildcard inside a rule pattern)
    2, -1.5       - numeric constants, compared by value only

Depth:
    The whole expression is at depth 0, its arguments at depth 1, and so
    on. A step rewrites every sub-term at the given depth that matches.
"""

__version__ = "0.1.0"

# Core rewriter components
from .rewriter import (
    # Terms
    Term,
    Constant,
    Variable,
    Functor,
    Rule,
    render,
    NumericType,
    PathType,
    # Bindings classes
    Bindings,
    NoMatch,
    # Matching and rewriting
    match,
    instantiate,
    iter_subterms,
    collect_at_depth,
    subterm_at,
    height,
    replace_paths,
    find_matches,
    rewrite_at_depth,
    apply_rule,
    # Errors
    RewriteError,
    NoMatchAtDepth,
    InvalidRuleDefinition,
    UnknownRuleName,
    EmptyHistory,
    SessionNotStarted,
)

# Sessions, registry and surface language
from .engine import (
    RuleRegistry,
    Session,
    HistoryEntry,
    Derivation,
    E,
    ParseError,
    parse_term,
    parse_rule,
    parse_program,
    format_infix,
    load_rules_from_dsl,
    load_rules_from_file,
    load_rules_from_json,
)

# Public API
__all__ = [
    # Version
    "__version__",
    # Terms
    "Term",
    "Constant",
    "Variable",
    "Functor",
    "Rule",
    "render",
    "NumericType",
    "PathType",
    # Bindings
    "Bindings",
    "NoMatch",
    # Matching and rewriting
    "match",
    "instantiate",
    "iter_subterms",
    "collect_at_depth",
    "subterm_at",
    "height",
    "replace_paths",
    "find_matches",
    "rewrite_at_depth",
    "apply_rule",
    # Errors
    "RewriteError",
    "NoMatchAtDepth",
    "InvalidRuleDefinition",
    "UnknownRuleName",
    "EmptyHistory",
    "SessionNotStarted",
    "ParseError",
    # Sessions
    "RuleRegistry",
    "Session",
    "HistoryEntry",
    "Derivation",
    # Expression builder
    "E",
    # Surface language utilities
    "parse_term",
    "parse_rule",
    "parse_program",
    "format_infix",
    "load_rules_from_dsl",
    "load_rules_from_file",
    "load_rules_from_json",
]
