from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class DepositRequest(BaseModel):
    tier_id: int
    amount: Decimal
    network: str = Field(..., description="TRC20, BEP20 or ERC20")
    transaction_id: str = Field(..., description="On-chain transaction hash")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "tier_id": 7,
            "amount": 200,
            "network": "TRC20",
            "transaction_id": "a3f9c1d2e4b5a6978812ffe0c1d2e3f4a5b6c7d8",
        }
    })


class WithdrawalRequest(BaseModel):
    amount: Decimal
    network: str = Field(..., description="TRC20, BSC20, ERC20 or BTC")
    wallet_address: str


class WithdrawalAddressRequest(BaseModel):
    wallet_address: Optional[str] = None
    network: Optional[str] = Field(None, description="TRC20, BSC20, ERC20 or BTC")


class DepositDecision(BaseModel):
    status: str = Field(..., description='"approved" or "rejected"')
    admin_notes: Optional[str] = None


class WithdrawalDecision(BaseModel):
    status: str = Field(..., description='"approved" or "rejected"')
    rejection_reason: Optional[str] = None


class SubscribeRequest(BaseModel):
    tier_id: int


class AnnouncementRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)
