from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    accounts: Any
    billing: Any
    plans: Any

T = Tables(
    accounts=ddb.Table(S.accounts_table_name),
    billing=ddb.Table(S.billing_table_name),
    plans=ddb.Table(S.plans_table_name),
)
