from typing import List
from pydantic import BaseModel, Field

class CurrentSupply(BaseModel):
    amount: int = Field(..., description="Pegged-in minus pegged-out, in satoshis")
    last_side_height: int

class CurrentReserves(BaseModel):
    amount: int = Field(..., description="Sum of unspent federation outputs, in satoshis")
    last_audit_height: int

class AuditStatus(BaseModel):
    current_base_height: int
    base_header_height: int
    last_audit_height: int
    is_synced: bool

class MonthlyPegs(BaseModel):
    date: str
    net_amount: int

class MonthlyReserves(BaseModel):
    date: str
    amount: int

class AddressBalance(BaseModel):
    address: str
    balance: int
    last_verified_height: int

class FederationUtxoItem(BaseModel):
    txid: str
    output_index: int
    address: str
    amount: int
    created_height: int
    created_time: int

class FederationAddressCount(BaseModel):
    count: int

class ProgressCursors(BaseModel):
    last_side_chain_height: int
    last_base_chain_audit_height: int

class SyncRunResponse(BaseModel):
    engine: str
    status: str
    start_height: int | None = None
    end_height: int | None = None
    target_height: int | None = None
    blocks_processed: int = 0

