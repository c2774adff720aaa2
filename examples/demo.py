#!/usr/bin/env python3
"""
REX Feature Demonstration

This script demonstrates the major features of the REX library.
"""

from pathlib import Path
from rex import (
    RuleRegistry, Session, E,
    NoMatchAtDepth, collect_at_depth, format_infix, render,
)


def section(title: str):
    """Print a section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print('='*60)


def demo_basic_usage():
    """Demonstrate a named rule applied at the root."""
    section("Basic Usage")

    registry = RuleRegistry.from_dsl('''
        def swap as pair(x, y) => pair(y, x)
    ''')

    session = Session(registry).start(E("pair(A, B)"))
    print(f"  Start:     {render(session.current)}")
    print(f"  swap at 0: {render(session.step('swap', 0))}")


def demo_depths():
    """Demonstrate how depth selects sub-terms."""
    section("Depth Selection")

    expr = E("lim(h, ((x + h)^2 - x^2) / h)")
    print(f"  Expression: {format_infix(expr)}")
    for depth in range(4):
        found = ", ".join(format_infix(term) for term, _ in collect_at_depth(expr, depth))
        print(f"    depth {depth}: {found}")


def demo_power_rule():
    """Demonstrate a derivation with named and in-line rules."""
    section("Power Rule")

    registry = RuleRegistry.from_dsl('''
        def diff as pow(x, n) => n * pow(x, n - 1)
    ''')

    session = Session(registry).start(E("y^2"))
    steps = [
        ("diff", 0),
        (E.rule("2 - 1 => 1"), 2),
        (E.rule("x^1 => x"), 1),
    ]
    for rule, depth in steps:
        result = session.step(rule, depth)
        print(f"  {session.history[-1].label:<22} {format_infix(result)}")

    print()
    print(session.end().format("chain"))


def demo_multiple_matches():
    """Demonstrate that every match at the depth is rewritten in one step."""
    section("Multiple Matches")

    session = Session().start(E("x^2 + 2*x*h + h^2 - x^2"))
    session.step(E.rule("pow(a, 2) => sq(a)"), 2)
    entry = session.history[-1]
    print(f"  Before: {format_infix(entry.before)}")
    print(f"  After:  {format_infix(entry.after)}")
    print(f"  Rewritten {len(entry.paths)} sub-terms at paths {list(entry.paths)}")


def demo_undo():
    """Demonstrate undo and error recovery."""
    section("Undo and Errors")

    registry = RuleRegistry.from_dsl('''
        def add_zero as add(x, 0) => x
        def add_succ as add(x, s(y)) => s(add(x, y))
    ''')

    session = Session(registry).start(E("add(s(0), s(s(0)))"))
    session.step("add_succ", 0)
    print(f"  After add_succ at 0: {render(session.current)}")

    try:
        session.step("add_zero", 1)
    except NoMatchAtDepth as e:
        print(f"  Error: {e}")
    print(f"  Unchanged:           {render(session.current)}")

    print(f"  Undo:                {render(session.undo())}")


def demo_file_loading():
    """Demonstrate loading rules from files."""
    section("Loading Rules from Files")

    examples_dir = Path(__file__).parent

    registry = RuleRegistry.from_file(examples_dir / "calculus.json")
    print(f"  Loaded {len(registry)} rules from calculus.json")
    for line in registry.list_rules():
        print(f"    {line}")

    session = Session(registry).start(E("lim(h, ((x + h)^2 - x^2) / h)"))
    session.step("expand", 3)
    session.step("cancel", 2)
    session.step("split", 1)
    session.step(E.rule("2*x*h / h => 2*x"), 2)
    session.step(E.rule("h^2 / h => h"), 2)
    session.step(E.rule("lim(v, a + v) => a"), 0)

    derivation = session.end()
    print()
    print(derivation.format("compact"))
    print(f"\n  Result: {format_infix(derivation.final)}")


def main():
    """Run all demonstrations."""
    print("REX - Rewriting EXpressions one step at a time")
    print("Feature Demonstration")

    demo_basic_usage()
    demo_depths()
    demo_power_rule()
    demo_multiple_matches()
    demo_undo()
    demo_file_loading()

    print("\n" + "="*60)
    print(" Demo complete!")
    print("="*60)


if __name__ == "__main__":
    main()
