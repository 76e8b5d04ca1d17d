from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt


class BorrowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: str = Field(min_length=1)
    userName: Optional[str] = None
    equipmentId: int
    quantity: StrictInt = 1
    purpose: Optional[str] = None
    expectedReturnDate: Optional[datetime] = None


class WithdrawRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userId: str = Field(min_length=1)
    userName: Optional[str] = None
    equipmentId: int
    quantity: StrictInt = 1
    purpose: Optional[str] = None
    jobReference: Optional[str] = None


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    usageId: int
    returnQuantity: Optional[StrictInt] = None
    note: Optional[str] = None
