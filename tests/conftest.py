"""Pytest fixtures for test suite."""

import pytest
from typing import Any

from ruleflow.compiler import RuleSet, compile_rules
from ruleflow.core.config import get_settings


# =============================================================================
# Rule Set Specs
# =============================================================================


def risk_spec() -> dict[str, Any]:
    """Transaction tagging rules: large amounts and risky countries."""
    return {
        "name": "risk",
        "version": "1.0",
        "fact_types": [
            {"name": "transaction", "fields": ["amount", "country", "tags"]},
        ],
        "rules": [
            {
                "name": "large",
                "priority": 10,
                "explanation": "amount {t.amount} exceeds 10000",
                "conditions": [
                    {
                        "kind": "pattern",
                        "var": "t",
                        "fact_type": "transaction",
                        "tests": [{"field": "amount", "operator": ">", "value": 10000}],
                    },
                ],
                "actions": [
                    {"kind": "append", "target": "t", "field": "tags", "value": "large"},
                ],
            },
            {
                "name": "risky-country",
                "priority": 5,
                "explanation": "country {t.country} is high risk",
                "conditions": [
                    {
                        "kind": "pattern",
                        "var": "t",
                        "fact_type": "transaction",
                        "tests": [{"field": "country", "operator": "in", "value": ["CN", "KP", "IR"]}],
                    },
                ],
                "actions": [
                    {"kind": "append", "target": "t", "field": "tags", "value": "risky-country"},
                ],
            },
        ],
    }


def orders_spec() -> dict[str, Any]:
    """Order handling: a cancellation retracts its order before it ships."""
    return {
        "name": "orders",
        "fact_types": [
            {"name": "order", "fields": ["id", "status"]},
            {"name": "cancel", "fields": ["order_id"]},
            {"name": "payment", "fields": ["order_id", "amount"]},
        ],
        "rules": [
            {
                "name": "cleanup",
                "priority": 10,
                "conditions": [
                    {"kind": "pattern", "var": "c", "fact_type": "cancel"},
                    {"kind": "pattern", "var": "o", "fact_type": "order"},
                    {"kind": "join", "left": "c.order_id", "operator": "==", "right": "o.id"},
                ],
                "actions": [{"kind": "retract", "target": "o"}],
            },
            {
                "name": "ship",
                "priority": 1,
                "conditions": [
                    {"kind": "pattern", "var": "o", "fact_type": "order"},
                    {"kind": "pattern", "var": "p", "fact_type": "payment"},
                    {"kind": "join", "left": "p.order_id", "operator": "==", "right": "o.id"},
                ],
                "actions": [{"kind": "set", "target": "o", "field": "status", "value": "shipped"}],
            },
            {
                "name": "unpaid",
                "conditions": [
                    {"kind": "pattern", "var": "o", "fact_type": "order"},
                    {"kind": "not", "fact_type": "payment", "match": {"order_id": "o.id"}},
                ],
                "actions": [{"kind": "explain", "text": "order {o.id} awaits payment"}],
            },
        ],
    }


def mixed_spec() -> dict[str, Any]:
    """Rules covering every condition kind over open fact types."""
    return {
        "name": "mixed",
        "fact_types": [
            {"name": "account"},
            {"name": "transaction"},
            {"name": "flag"},
        ],
        "rules": [
            {
                "name": "big",
                "conditions": [
                    {
                        "kind": "pattern",
                        "var": "t",
                        "fact_type": "transaction",
                        "tests": [{"field": "amount", "operator": ">", "value": 500}],
                    },
                ],
            },
            {
                "name": "owned",
                "conditions": [
                    {"kind": "pattern", "var": "a", "fact_type": "account"},
                    {"kind": "pattern", "var": "t", "fact_type": "transaction"},
                    {"kind": "join", "left": "t.account", "operator": "==", "right": "a.id"},
                ],
            },
            {
                "name": "unflagged",
                "conditions": [
                    {"kind": "pattern", "var": "a", "fact_type": "account"},
                    {"kind": "not", "fact_type": "flag", "match": {"account": "a.id"}},
                ],
            },
            {
                "name": "busy",
                "conditions": [
                    {"kind": "pattern", "var": "a", "fact_type": "account"},
                    {
                        "kind": "aggregate",
                        "fact_type": "transaction",
                        "function": "count",
                        "match": {"account": "a.id"},
                        "operator": ">=",
                        "threshold": 2,
                        "bind": "n",
                    },
                ],
            },
            {
                "name": "heavy",
                "conditions": [
                    {"kind": "pattern", "var": "a", "fact_type": "account"},
                    {
                        "kind": "aggregate",
                        "fact_type": "transaction",
                        "function": "sum",
                        "field": "amount",
                        "match": {"account": "a.id"},
                        "operator": ">=",
                        "threshold": 1000,
                    },
                ],
            },
            {
                "name": "peak",
                "conditions": [
                    {"kind": "pattern", "var": "a", "fact_type": "account"},
                    {
                        "kind": "aggregate",
                        "fact_type": "transaction",
                        "function": "max",
                        "field": "amount",
                        "match": {"account": "a.id"},
                        "operator": ">",
                        "threshold": 800,
                    },
                ],
            },
            {
                "name": "pair",
                "conditions": [
                    {"kind": "pattern", "var": "t1", "fact_type": "transaction"},
                    {"kind": "pattern", "var": "t2", "fact_type": "transaction"},
                    {"kind": "join", "left": "t1.account", "operator": "==", "right": "t2.account"},
                    {"kind": "not", "fact_type": "flag", "match": {"account": "t1.account"}},
                ],
            },
        ],
    }


# =============================================================================
# Compiled Rule Sets
# =============================================================================


@pytest.fixture
def risk_rule_spec() -> dict[str, Any]:
    """Raw spec of the transaction tagging rules."""
    return risk_spec()


@pytest.fixture
def risk_rules() -> RuleSet:
    """Compiled transaction tagging rules."""
    return compile_rules(risk_spec())


@pytest.fixture
def order_rules() -> RuleSet:
    """Compiled order handling rules."""
    return compile_rules(orders_spec())


@pytest.fixture
def mixed_rules() -> RuleSet:
    """Compiled rules with patterns, joins, negations and aggregates."""
    return compile_rules(mixed_spec())


@pytest.fixture
def echo_rules() -> RuleSet:
    """A rule that keeps inserting facts matching its own LHS."""
    return compile_rules({
        "name": "echo",
        "fact_types": [{"name": "ping", "fields": ["n"]}],
        "rules": [
            {
                "name": "echo",
                "conditions": [{"kind": "pattern", "var": "p", "fact_type": "ping"}],
                "actions": [
                    {
                        "kind": "insert",
                        "fact_type": "ping",
                        "data": {"n": lambda ctx: ctx.fact("p")["n"] + 1},
                    },
                ],
            },
        ],
    })


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def fresh_settings():
    """Clear the cached settings before and after a test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
