"""SplitLedger - Shared-expense ledger with split policies and net settlement."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .ledger import ObligationLedger
from .members import MemberDirectory
from .models import (
    Address,
    Expense,
    ExpenseInput,
    ExpenseUpdate,
    Identity,
    NetBalance,
    SettlementOutcome,
    Share,
    SplitPolicy,
    TransferPlan,
    TransferPlanEntry,
    parse_member_ref,
)
from .optimizer import SettlementOptimizer, compute_net_balances, plan_transfers
from .splitting import compute_shares, from_minor_units, to_minor_units

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "ObligationLedger",
    "MemberDirectory",
    "Address",
    "Expense",
    "ExpenseInput",
    "ExpenseUpdate",
    "Identity",
    "NetBalance",
    "SettlementOutcome",
    "Share",
    "SplitPolicy",
    "TransferPlan",
    "TransferPlanEntry",
    "parse_member_ref",
    "SettlementOptimizer",
    "compute_net_balances",
    "plan_transfers",
    "compute_shares",
    "from_minor_units",
    "to_minor_units",
]
