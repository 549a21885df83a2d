"""Business rules and the rows their actions produce."""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, Float, JSON

from afms.core.clock import utcnow
from afms.database import Base


class BusinessRule(Base):
    """
    A versioned, time-bounded policy.

    Invariants:
    - Only loaded while is_active and valid_from <= now <= valid_to (null valid_to = unbounded)
    - Never mutated by evaluation
    """
    __tablename__ = "business_rules"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    category = Column(String, nullable=False, index=True)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    valid_from = Column(DateTime, nullable=False, default=utcnow)
    valid_to = Column(DateTime, nullable=True)

    # Audit fields
    created_by = Column(String, nullable=False, default="system")
    updated_by = Column(String, nullable=False, default="system")
    version = Column(Integer, nullable=False, default=1)


class RuleExecutionLog(Base):
    """Append-only record of every rule the engine acted on."""
    __tablename__ = "rule_execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(String, nullable=False, index=True)
    employee_id = Column(String, nullable=True)
    execution_context = Column(JSON, nullable=False)
    executed_actions = Column(JSON, nullable=False)
    success = Column(Boolean, nullable=False)
    executed_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class PayrollDeduction(Base):
    __tablename__ = "payroll_deductions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    type = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    applied_date = Column(DateTime, nullable=False, default=utcnow)
    status = Column(String, nullable=False, default="applied")


class PayrollBonus(Base):
    __tablename__ = "payroll_bonuses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    type = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    applied_date = Column(DateTime, nullable=False, default=utcnow)
    status = Column(String, nullable=False, default="applied")


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, nullable=False, index=True)
    approver_role = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    request_data = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime, nullable=False, default=utcnow)
