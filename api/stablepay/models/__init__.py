from stablepay.models.rule import Execution, ExecutionStatus, Rule, RuleStatus, RuleType
from stablepay.models.wallet import Contact, Wallet

__all__ = [
    "Contact",
    "Execution",
    "ExecutionStatus",
    "Rule",
    "RuleStatus",
    "RuleType",
    "Wallet",
]
