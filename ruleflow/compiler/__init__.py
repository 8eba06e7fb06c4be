"""
Compiler package for the rule engine.

Provides compile-time transformation of rule specs to an immutable
Intermediate Representation (IR) shared by every session.
"""

from ruleflow.compiler.ir import (
    AggregateCondition,
    CompiledRule,
    Condition,
    FieldRef,
    FieldTest,
    JoinCondition,
    KeyBinding,
    NegationCondition,
    PatternCondition,
    RuleSet,
)
from ruleflow.compiler.compiler import (
    RuleCompiler,
    append_to,
    compile_rules,
    explain,
    insert_fact,
    retract_var,
    sequence,
    set_field,
)
from ruleflow.compiler.operators import OPERATORS, compare, normalize_operator
from ruleflow.compiler.type_index import TypeIndex

__all__ = [
    # IR Types
    "AggregateCondition",
    "CompiledRule",
    "Condition",
    "FieldRef",
    "FieldTest",
    "JoinCondition",
    "KeyBinding",
    "NegationCondition",
    "PatternCondition",
    "RuleSet",
    # Compiler
    "RuleCompiler",
    "compile_rules",
    # Actions
    "set_field",
    "append_to",
    "insert_fact",
    "retract_var",
    "explain",
    "sequence",
    # Operators
    "OPERATORS",
    "compare",
    "normalize_operator",
    # Index
    "TypeIndex",
]
