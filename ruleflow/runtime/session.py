"""
Sessions and the inference loop.

A session combines one fact store, one matching network and one agenda with a
shared, read-only rule set. ``run`` drives select -> execute -> re-match until
the agenda is empty (converged) or a cycle / time budget is exhausted.
"""

from __future__ import annotations

import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, Mapping, Sequence

from ruleflow.compiler.compiler import compile_rules
from ruleflow.compiler.ir import RuleSet
from ruleflow.core.config import get_settings
from ruleflow.core.errors import (
    MalformedRuleSet,
    SessionStateError,
    StaleFactReference,
)
from ruleflow.core.logging import get_logger
from ruleflow.facts.models import Fact, FactInput
from ruleflow.facts.store import FactStore
from ruleflow.rules.schemas import RuleSetSpec
from ruleflow.runtime.actions import ActionContext
from ruleflow.runtime.agenda import Activation, Agenda
from ruleflow.runtime.network import MatchingNetwork
from ruleflow.runtime.trace import FiringStatus, RunResult, TerminalState, TraceEntry

logger = get_logger("ruleflow.session")

InitialFact = FactInput | tuple[str, Mapping[str, Any]]


class Session:
    """One isolated run of the engine over one fact store."""

    def __init__(
        self,
        rule_set: RuleSet,
        cycle_limit: int | None = None,
        time_budget: float | None = None,
    ):
        """Initialize the session.

        Args:
            rule_set: Compiled rule set, shared read-only
            cycle_limit: Maximum number of firings (default from settings)
            time_budget: Wall-clock budget in seconds (default from settings)
        """
        if not isinstance(rule_set, RuleSet):
            raise MalformedRuleSet([f"expected a compiled RuleSet, got {type(rule_set).__name__}"])

        settings = get_settings()
        self.session_id = uuid.uuid4().hex[:12]
        self.rule_set = rule_set
        self.cycle_limit = cycle_limit if cycle_limit is not None else settings.default_cycle_limit
        self.time_budget = time_budget if time_budget is not None else settings.default_time_budget_s
        if self.cycle_limit < 0:
            raise ValueError("cycle_limit must be >= 0")

        self.store = FactStore(rule_set.fact_types)
        self.agenda = Agenda()
        self.network = MatchingNetwork(rule_set, self.agenda)
        self.store.subscribe(self.network.on_change)

        self.state = TerminalState.RUNNING
        self.cycle = 0
        self.trace: list[TraceEntry] = []
        self._result: RunResult | None = None

    # =========================================================================
    # Fact source
    # =========================================================================

    def insert(self, fact_type: str, data: Mapping[str, Any] | None = None) -> int:
        return self.store.insert(fact_type, data)

    def update(self, fact_id: int, data: Mapping[str, Any]) -> Fact:
        return self.store.update(fact_id, data)

    def modify(self, fact_id: int, **changes: Any) -> Fact:
        return self.store.modify(fact_id, **changes)

    def retract(self, fact_id: int) -> Fact:
        return self.store.retract(fact_id)

    def get(self, fact_id: int) -> Fact:
        return self.store.get(fact_id)

    def scan(self, fact_type: str) -> list[Fact]:
        return self.store.scan(fact_type)

    # =========================================================================
    # Inference loop
    # =========================================================================

    def run(self) -> RunResult:
        """Run to convergence or until a budget is exhausted.

        Returns:
            RunResult with final facts, trace and terminal state

        Raises:
            SessionStateError: If the session already ran
        """
        if self._result is not None:
            raise SessionStateError(f"Session {self.session_id} already ran", self.state.value)

        started = time.monotonic()
        halted_by: str | None = None

        while True:
            if not self.agenda:
                self.state = TerminalState.CONVERGED
                break
            if self.cycle >= self.cycle_limit:
                halted_by = "cycle_limit"
                break
            if self.time_budget is not None and time.monotonic() - started > self.time_budget:
                halted_by = "time_budget"
                break

            activation = self.agenda.select()
            if activation is None:
                self.state = TerminalState.CONVERGED
                break

            self.cycle += 1
            self.store.begin_cycle()
            self.network.mark_fired(activation)
            self.trace.append(self._fire(activation))

        if halted_by is not None:
            self.state = TerminalState.CYCLE_LIMIT_EXCEEDED
            logger.warning(
                "Session halted before convergence",
                session_id=self.session_id,
                halted_by=halted_by,
                cycles=self.cycle,
                pending=len(self.agenda),
            )

        elapsed_ms = (time.monotonic() - started) * 1000
        self._result = RunResult(
            session_id=self.session_id,
            terminal_state=self.state,
            final_facts=self.store.facts(),
            trace=list(self.trace),
            cycles=self.cycle,
            halted_by=halted_by,
            elapsed_ms=elapsed_ms,
            rule_set_digest=self.rule_set.digest,
        )
        logger.info(
            "Session finished",
            session_id=self.session_id,
            state=self.state.value,
            cycles=self.cycle,
            facts=len(self.store),
            elapsed_ms=round(elapsed_ms, 3),
        )
        return self._result

    def _fire(self, activation: Activation) -> TraceEntry:
        """Execute one activation's action and build its trace entry."""
        rule = activation.rule
        context = ActionContext(
            self.store,
            activation,
            self.network.bindings(activation),
            self.network.aggregate_values(activation),
            cycle=self.cycle,
        )
        status = FiringStatus.FIRED
        error: Exception | None = None

        # Queued changes reach the network when the deferred block exits, so
        # errors raised while matching them are recorded against this firing.
        try:
            with self.store.deferred():
                if rule.explanation:
                    context.explain(context.format(rule.explanation))
                rule.action(context)
        except StaleFactReference as exc:
            status, error = FiringStatus.STALE, exc
        except Exception as exc:
            status, error = FiringStatus.FAILED, exc

        if error is not None:
            logger.warning(
                "Activation aborted",
                session_id=self.session_id,
                rule=rule.name,
                cycle=self.cycle,
                status=status.value,
                error=str(error),
            )
        else:
            logger.debug("Rule fired", session_id=self.session_id, rule=rule.name, cycle=self.cycle)

        return TraceEntry(
            cycle_number=self.cycle,
            rule_name=rule.name,
            bound_fact_identities=list(activation.token),
            explanation_text=context.explanation,
            status=status,
            error=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
        )

    # =========================================================================
    # Inspection
    # =========================================================================

    @property
    def result(self) -> RunResult | None:
        return self._result

    def is_fixpoint(self) -> bool:
        """True when a from-scratch match finds nothing that has not fired."""
        pending = self.network.pending()
        return not pending and self.network.rescan() == self.network.matches()


def _normalize_fact(item: InitialFact) -> FactInput:
    if isinstance(item, FactInput):
        return item
    if isinstance(item, Mapping):
        return FactInput.model_validate(item)
    fact_type, data = item
    return FactInput(fact_type=fact_type, data=dict(data))


def create_session(
    rule_set: RuleSet | RuleSetSpec | dict[str, Any],
    initial_facts: Iterable[InitialFact] = (),
    cycle_limit: int | None = None,
    time_budget: float | None = None,
) -> Session:
    """Create a session and load its initial facts.

    Args:
        rule_set: A compiled RuleSet, or a spec compiled on the spot
        initial_facts: ``FactInput`` models or ``(fact_type, data)`` pairs
        cycle_limit: Maximum number of firings
        time_budget: Wall-clock budget in seconds

    Returns:
        A session ready to run

    Raises:
        MalformedRuleSet: If the rule set does not compile
    """
    if isinstance(rule_set, (RuleSetSpec, dict)):
        rule_set = compile_rules(rule_set)

    session = Session(rule_set, cycle_limit=cycle_limit, time_budget=time_budget)
    for item in initial_facts:
        fact = _normalize_fact(item)
        session.insert(fact.fact_type, fact.data)

    logger.info(
        "Session created",
        session_id=session.session_id,
        rule_set=rule_set.name,
        rules=len(rule_set),
        facts=len(session.store),
        pending=len(session.agenda),
    )
    return session


def run(session: Session) -> RunResult:
    """Run a session to a terminal state."""
    return session.run()


def run_sessions(
    rule_set: RuleSet,
    fact_batches: Sequence[Iterable[InitialFact]],
    cycle_limit: int | None = None,
    time_budget: float | None = None,
    max_workers: int | None = None,
) -> list[RunResult]:
    """Run independent sessions over one rule set in parallel.

    Args:
        rule_set: Compiled rule set shared by all sessions
        fact_batches: Initial facts of each session
        cycle_limit: Maximum number of firings per session
        time_budget: Wall-clock budget per session in seconds
        max_workers: Thread pool size (default from settings)

    Returns:
        Results in the order of ``fact_batches``
    """
    workers = max_workers or get_settings().max_workers

    def _run_one(facts: Iterable[InitialFact]) -> RunResult:
        return create_session(rule_set, facts, cycle_limit, time_budget).run()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(_run_one, fact_batches))
