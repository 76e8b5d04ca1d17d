from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

EquipmentKind = Literal["borrowable", "consumable"]
EquipmentStatus = Literal["available", "low_stock", "out_of_stock", "in_use", "maintenance"]


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    type: EquipmentKind
    code: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = None
    unit: Optional[str] = None
    minStock: Optional[int] = None
    imageUrl: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None


class EquipmentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    type: Optional[EquipmentKind] = None
    code: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = None
    unit: Optional[str] = None
    minStock: Optional[int] = None
    imageUrl: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[EquipmentStatus] = None
    note: Optional[str] = None
