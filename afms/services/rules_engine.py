"""
Business rules engine.

Per rule and invocation: Loaded -> Evaluated -> Executed | Skipped | Failed.

Rules are loaded per category from storage (active and inside their validity
window, highest priority first) and cached with a TTL. Each matching rule runs
its actions through a fixed dispatch table. A failure in one rule never aborts
the rest of the batch.
"""
import inspect
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from afms.core.clock import utcnow
from afms.core.exceptions import RuleExecutionFailure
from afms.core.logging import Logger
from afms.models.domain import (
    DomainEvent,
    ExecutedAction,
    Rule,
    RuleAction,
    RuleCondition,
    RuleExecutionContext,
    RuleExecutionResult,
    UnknownAction,
    action_parameters,
    action_type_name,
)
from afms.models.enums import ActionOutcome, ActionType, ConditionOperator, EventType, LogicalOperator, RuleCategory
from afms.models.rules import ApprovalRequest, BusinessRule, PayrollBonus, PayrollDeduction, RuleExecutionLog

DEFAULT_CACHE_TTL_SECONDS = 300

STATISTICS_PERIODS = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


class _Missing:
    """Value of a condition field that does not resolve in the context."""

    def __repr__(self):
        return "MISSING"


MISSING = _Missing()


@dataclass(frozen=True)
class Blocked:
    """Returned by an executor to halt the remaining actions of its rule."""
    reason: str


CustomActionFn = Callable[[Dict[str, Any], RuleExecutionContext], Any]


# Condition evaluation

def resolve_field(path: str, snapshot: Dict[str, Any]) -> Any:
    """Follow a dot path through nested mappings; MISSING if any segment is absent."""
    value: Any = snapshot
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return MISSING
    return value


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    """Ordering comparisons fail on missing fields and on incomparable types."""
    def evaluate(field_value, condition_value):
        if field_value is MISSING:
            return False
        try:
            return bool(compare(field_value, condition_value))
        except TypeError:
            return False
    return evaluate


def _between(field_value, condition_value) -> bool:
    if not isinstance(condition_value, list) or len(condition_value) != 2:
        return False
    low, high = condition_value
    return _ordered(lambda a, _: low <= a <= high)(field_value, None)


def _contains(field_value, condition_value) -> bool:
    return isinstance(field_value, str) and str(condition_value) in field_value


OPERATORS: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQ: lambda a, b: a is not MISSING and a == b,
    ConditionOperator.NE: lambda a, b: a is MISSING or a != b,
    ConditionOperator.GT: _ordered(lambda a, b: a > b),
    ConditionOperator.GTE: _ordered(lambda a, b: a >= b),
    ConditionOperator.LT: _ordered(lambda a, b: a < b),
    ConditionOperator.LTE: _ordered(lambda a, b: a <= b),
    ConditionOperator.IN: lambda a, b: isinstance(b, list) and a in b,
    ConditionOperator.NIN: lambda a, b: isinstance(b, list) and a not in b,
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.BETWEEN: _between,
}


def evaluate_condition(condition: RuleCondition, snapshot: Dict[str, Any]) -> bool:
    try:
        operator = ConditionOperator(condition.operator)
    except ValueError:
        return False
    return OPERATORS[operator](resolve_field(condition.field, snapshot), condition.value)


def evaluate_conditions(conditions: List[RuleCondition], snapshot: Dict[str, Any]) -> bool:
    """
    Fold the condition list left to right. An empty list matches.

    NOTE: a condition's logical_operator sets how the *next* condition is
    combined with the running result, and stays in force until another
    condition declares one. Stored rules depend on this pairing, so it is
    kept as is rather than treating the operator as a prefix.
    Every condition is evaluated; there is no short-circuit.
    """
    result = True
    combinator = LogicalOperator.AND

    for i, condition in enumerate(conditions):
        matched = evaluate_condition(condition, snapshot)
        if i == 0:
            result = matched
        elif combinator == LogicalOperator.AND:
            result = result and matched
        else:
            result = result or matched

        if condition.logical_operator is not None:
            combinator = condition.logical_operator

    return result


class RulesEngine:
    """Loads, evaluates and executes business rules. Also an event bus handler."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        event_bus,
        logger: Optional[Logger] = None,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        metrics=None,
        clock=utcnow,
        time_source: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.event_bus = event_bus
        self.logger = logger or Logger(__name__)
        self.cache_ttl_seconds = cache_ttl_seconds
        self.metrics = metrics
        self.clock = clock
        self._time = time_source
        # category -> (loaded at, rules)
        self._cache: Dict[str, Tuple[float, List[Rule]]] = {}
        self._custom_actions: Dict[str, CustomActionFn] = {}
        self._executors: Dict[ActionType, Callable[[Any, RuleExecutionContext], Awaitable[Any]]] = {
            ActionType.DEDUCTION: self._apply_deduction,
            ActionType.BONUS: self._apply_bonus,
            ActionType.NOTIFICATION: self._send_notification,
            ActionType.APPROVAL_REQUIRED: self._require_approval,
            ActionType.BLOCK: self._block,
            ActionType.CUSTOM: self._execute_custom_action,
        }

    # Event handler

    async def handle(self, event: DomainEvent) -> None:
        if event.event_type == EventType.ATTENDANCE_RECORDED:
            data = event.event_data
            context = RuleExecutionContext(
                employee_id=str(data.get("employeeId") or event.aggregate_id),
                branch_id=data.get("branchId"),
                attendance_data=data,
                timestamp=data.get("timestamp") or event.occurred_at,
            )
            await self.execute_rules(RuleCategory.ATTENDANCE.value, context)
        elif event.event_type == EventType.PAYROLL_CALCULATION_STARTED:
            data = event.event_data
            context = RuleExecutionContext(
                employee_id=str(data.get("employeeId") or event.aggregate_id),
                branch_id=data.get("branchId"),
                payroll_data=data,
                timestamp=event.occurred_at,
            )
            await self.execute_rules(RuleCategory.PAYROLL.value, context)

    # Loading

    async def load_rules(self, category: str) -> List[Rule]:
        """Active, time-valid rules for a category, highest priority first. Cached."""
        now = self._time()
        cached = self._cache.get(category)
        if cached is not None and now - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        try:
            rules = await self._query_rules(category)
        except Exception:
            self.logger.exception("Failed to load rules", category=category)
            return []

        self._cache[category] = (now, rules)
        self.logger.info(f"Loaded {len(rules)} rules for category: {category}")
        return rules

    async def _query_rules(self, category: str) -> List[Rule]:
        current = self.clock()
        stmt = (
            select(BusinessRule)
            .where(
                BusinessRule.category == category,
                BusinessRule.is_active.is_(True),
                BusinessRule.valid_from <= current,
                or_(BusinessRule.valid_to.is_(None), BusinessRule.valid_to >= current),
            )
            .order_by(BusinessRule.priority.desc())
        )
        async with self.session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()

        rules = []
        for record in records:
            try:
                rules.append(Rule.from_record(record))
            except ValidationError as e:
                # A malformed rule is skipped; the rest of the category still loads
                self.logger.error(
                    "Invalid stored rule skipped",
                    rule_id=record.id,
                    rule_category=category,
                    error_count=e.error_count(),
                    error=str(e),
                )
        return rules

    def clear_cache(self) -> None:
        self._cache.clear()
        self.logger.info("Rules cache cleared")

    def register_custom_action(self, name: str, fn: CustomActionFn) -> None:
        """Register a handler for custom actions with parameters.actionName == name."""
        self._custom_actions[name] = fn

    # Execution

    async def execute_rules(self, category: str, context: RuleExecutionContext) -> List[RuleExecutionResult]:
        started = time.perf_counter()
        rules = await self.load_rules(category)
        snapshot = context.snapshot()
        results: List[RuleExecutionResult] = []

        self.logger.info(
            "Executing rules",
            category=category,
            rule_count=len(rules),
            employee_id=context.employee_id,
        )

        for rule in rules:
            results.append(await self._execute_rule(rule, context, snapshot))

        # Actions are committed by now; reporting must not fail the batch
        try:
            self._record_batch(category, len(rules), results, (time.perf_counter() - started) * 1000)
        except Exception:
            self.logger.exception("Failed to record rules execution", rule_category=category)

        return results

    def _record_batch(self, category: str, rule_count: int, results: List[RuleExecutionResult], total_ms: float) -> None:
        self.logger.log_performance_metric(
            "rules_execution",
            total_ms,
            rule_category=category,
            rule_count=rule_count,
            executed_count=sum(1 for r in results if r.executed),
        )
        if self.metrics is not None:
            self.metrics.histogram("rules.execution.duration", total_ms, labels={"category": category})

    async def _execute_rule(
        self,
        rule: Rule,
        context: RuleExecutionContext,
        snapshot: Dict[str, Any],
    ) -> RuleExecutionResult:
        started = time.perf_counter()

        def elapsed() -> float:
            return (time.perf_counter() - started) * 1000

        try:
            matched = self._evaluate(rule, snapshot)
        except RuleExecutionFailure as e:
            self.logger.error(
                "Rule execution failed",
                rule_id=rule.id,
                rule_name=rule.name,
                employee_id=context.employee_id,
                error=str(e),
            )
            await self._log_rule_execution(rule.id, context, [], success=False)
            return RuleExecutionResult(
                rule_id=rule.id,
                rule_name=rule.name,
                executed=False,
                reason=str(e),
                execution_time_ms=elapsed(),
            )

        if not matched:
            return RuleExecutionResult(
                rule_id=rule.id,
                rule_name=rule.name,
                executed=False,
                reason="Conditions not met",
                execution_time_ms=elapsed(),
            )

        actions = await self.execute_actions(rule.actions, context)
        success = all(a.success for a in actions)
        await self._log_rule_execution(rule.id, context, actions, success=success)

        self.logger.log_business_event(
            "rule_executed",
            rule_id=rule.id,
            rule_name=rule.name,
            employee_id=context.employee_id,
            actions_count=len(actions),
        )
        return RuleExecutionResult(
            rule_id=rule.id,
            rule_name=rule.name,
            executed=True,
            actions=actions,
            execution_time_ms=elapsed(),
            blocked=any(a.outcome == ActionOutcome.BLOCKED for a in actions),
        )

    @staticmethod
    def _evaluate(rule: Rule, snapshot: Dict[str, Any]) -> bool:
        try:
            return evaluate_conditions(rule.conditions, snapshot)
        except Exception as e:
            raise RuleExecutionFailure(rule.id, f"Condition evaluation failed: {e}", cause=e) from e

    async def execute_actions(self, actions: List[RuleAction], context: RuleExecutionContext) -> List[ExecutedAction]:
        """Run actions in order. Failures are isolated; a block halts the rest."""
        executed: List[ExecutedAction] = []
        for action in actions:
            outcome = await self._execute_action(action, context)
            executed.append(outcome)
            if outcome.outcome == ActionOutcome.BLOCKED:
                break
        return executed

    async def _execute_action(self, action: RuleAction, context: RuleExecutionContext) -> ExecutedAction:
        name = action_type_name(action)
        parameters = action_parameters(action)

        if isinstance(action, UnknownAction):
            return ExecutedAction(type=name, parameters=parameters, outcome=ActionOutcome.FAILED, error=action.error)

        try:
            result = await self._executors[action.type](action.parameters, context)
        except Exception as e:
            self.logger.warning("Rule action failed", action_type=name, employee_id=context.employee_id, error=str(e))
            return ExecutedAction(type=name, parameters=parameters, outcome=ActionOutcome.FAILED, error=str(e))

        if isinstance(result, Blocked):
            return ExecutedAction(
                type=name,
                parameters=parameters,
                outcome=ActionOutcome.BLOCKED,
                error=f"Action blocked: {result.reason}",
            )
        return ExecutedAction(type=name, parameters=parameters, outcome=ActionOutcome.EXECUTED, result=result)

    # Action executors

    async def _apply_deduction(self, params, context: RuleExecutionContext) -> Dict[str, Any]:
        async with self.session_factory() as session:
            deduction = PayrollDeduction(
                employee_id=context.employee_id,
                amount=params.amount,
                type=params.type,
                reason=params.reason,
                applied_date=self.clock(),
                status="applied",
            )
            session.add(deduction)
            await session.commit()
            return {"deductionId": deduction.id, "amount": deduction.amount}

    async def _apply_bonus(self, params, context: RuleExecutionContext) -> Dict[str, Any]:
        async with self.session_factory() as session:
            bonus = PayrollBonus(
                employee_id=context.employee_id,
                amount=params.amount,
                type=params.type,
                reason=params.reason,
                applied_date=self.clock(),
                status="applied",
            )
            session.add(bonus)
            await session.commit()
            return {"bonusId": bonus.id, "amount": bonus.amount}

    async def _send_notification(self, params, context: RuleExecutionContext) -> Dict[str, Any]:
        event = DomainEvent(
            id=f"notif-{uuid.uuid4()}",
            aggregate_id=context.employee_id,
            aggregate_type="Employee",
            event_type=EventType.NOTIFICATION_TRIGGERED,
            event_data={
                "employeeId": context.employee_id,
                "message": params.message,
                "type": params.type,
                "recipients": params.recipients,
            },
            event_version=1,
            occurred_at=self.clock(),
        )
        await self.event_bus.publish(event)
        return {"notificationSent": True, "message": params.message}

    async def _require_approval(self, params, context: RuleExecutionContext) -> Dict[str, Any]:
        async with self.session_factory() as session:
            approval = ApprovalRequest(
                employee_id=context.employee_id,
                approver_role=params.approver_role,
                reason=params.reason,
                request_data=_jsonable(params.data),
                status="pending",
                created_at=self.clock(),
            )
            session.add(approval)
            await session.commit()
            return {"approvalId": approval.id, "status": "pending"}

    async def _block(self, params, context: RuleExecutionContext) -> Blocked:
        self.logger.log_security_event(
            "action_blocked",
            user_id=context.employee_id,
            reason=params.reason,
            block_type=params.block_type,
            context=context.json_snapshot(),
        )
        return Blocked(reason=params.reason)

    async def _execute_custom_action(self, params, context: RuleExecutionContext) -> Any:
        fn = self._custom_actions.get(params.action_name)
        if fn is None:
            # Nothing registered: the action is recorded but has no effect
            self.logger.info(
                "Custom action executed",
                action_name=params.action_name,
                config=params.config,
                employee_id=context.employee_id,
            )
            return {"customActionExecuted": True, "actionName": params.action_name}

        result = fn(params.config, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    # Execution log

    async def _log_rule_execution(
        self,
        rule_id: str,
        context: RuleExecutionContext,
        actions: List[ExecutedAction],
        success: bool,
    ) -> None:
        try:
            async with self.session_factory() as session:
                session.add(RuleExecutionLog(
                    rule_id=rule_id,
                    employee_id=context.employee_id,
                    execution_context=context.json_snapshot(),
                    executed_actions=_jsonable([a.to_dict() for a in actions]),
                    success=success,
                    executed_at=self.clock(),
                ))
                await session.commit()
        except Exception:
            self.logger.exception("Failed to log rule execution", rule_id=rule_id)

    async def get_execution_statistics(self, period: str = "day") -> Optional[Dict[str, Any]]:
        """Execution counts over the last day, week or month; None if storage fails."""
        if period not in STATISTICS_PERIODS:
            raise ValueError(f"Unknown statistics period: {period}")
        start_date = self.clock() - STATISTICS_PERIODS[period]

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(RuleExecutionLog.success, func.count(RuleExecutionLog.id))
                    .where(RuleExecutionLog.executed_at >= start_date)
                    .group_by(RuleExecutionLog.success)
                )
                counts = {bool(success): count for success, count in result.all()}
        except Exception:
            self.logger.exception("Failed to get rule execution statistics")
            return None

        successful = counts.get(True, 0)
        failed = counts.get(False, 0)
        total = successful + failed
        return {
            "period": period,
            "total_executions": total,
            "successful_executions": successful,
            "failed_executions": failed,
            "success_rate": (successful / total) * 100 if total > 0 else 0,
        }


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))
