from typing import Literal, Optional

from pydantic import BaseModel, Field


class RefundDTO(BaseModel):
    """Refund request; ``amount`` defaults to the order total."""

    amount: Optional[int] = Field(default=None, gt=0)
    reason: str = Field(default="", max_length=500)


class WalletTransactionQuery(BaseModel):
    type: Optional[Literal["purchase", "refund", "deposit", "withdrawal"]] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
