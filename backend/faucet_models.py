# faucet_models.py
from pydantic import BaseModel
from typing import List, Optional


# Input models
class DisburseIn(BaseModel):
    receiving_address: str


# Output models
class WhoAmIOut(BaseModel):
    user_hash: Optional[str]
    account_created_at: Optional[str]


class BalanceOut(BaseModel):
    balance_sat: int
    address: str


class EligibilityOut(BaseModel):
    eligible: bool
    reason: str


class DisburseOut(BaseModel):
    ok: bool
    transaction_id: str
    dry_run: bool


class HistoryEntryOut(BaseModel):
    id: int
    transaction_id: str
    amount: int
    created_at: int
    pending: bool


class ConfigOut(BaseModel):
    network: str
    faucet_address: str
    initial_payout: int
    minimum_payout: int
    decay_rate: float
    fee_rate_sat_per_vb: float
    min_account_age_months: int
    dry_run: bool
    payouts_issued: int
    next_payout: int


class HistoryOut(BaseModel):
    entries: List[HistoryEntryOut]
