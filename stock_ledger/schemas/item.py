from datetime import datetime
from typing import Optional

from pydantic import ConfigDict, Field, field_validator, model_validator

from stock_ledger.core.constants import ItemCategory
from stock_ledger.schemas.common import CamelModel


def _clean_required(value: str, field_name: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{field_name} is required")
    return cleaned


class ItemCreate(CamelModel):
    name: str = Field(max_length=255)
    sku: str = Field(max_length=100)
    category: ItemCategory
    current_stock: int = Field(default=0, ge=0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _clean_required(value, "name")

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, value: str) -> str:
        return _clean_required(value, "sku")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Layer Mash 25kg",
                "sku": "FD-LM-25",
                "category": "feeds",
                "currentStock": 500,
            }
        }
    )


class ItemUpdate(CamelModel):
    name: Optional[str] = Field(default=None, max_length=255)
    sku: Optional[str] = Field(default=None, max_length=100)
    category: Optional[ItemCategory] = None
    current_stock: Optional[int] = Field(default=None, ge=0)
    expected_stock: Optional[int] = Field(
        default=None,
        ge=0,
        description="Stock the new value was computed from; a mismatch is rejected with 409.",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _clean_required(value, "name")

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _clean_required(value, "sku")

    @model_validator(mode="after")
    def validate_has_changes(self) -> "ItemUpdate":
        if self.expected_stock is not None and self.current_stock is None:
            raise ValueError("expectedStock requires currentStock")
        if not self.detail_fields() and self.current_stock is None:
            raise ValueError("At least one of currentStock, name, sku or category is required")
        return self

    def detail_fields(self) -> dict[str, object]:
        fields = {"name": self.name, "sku": self.sku, "category": self.category}
        return {key: value for key, value in fields.items() if value is not None}

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "currentStock": 1100,
                "expectedStock": 1000,
            }
        }
    )


class ItemIdentity(CamelModel):
    id: str


class ItemOut(CamelModel):
    id: str
    name: str
    sku: str
    category: ItemCategory
    current_stock: int = Field(ge=0)
    inserted_at: datetime
    updated_at: datetime | None = None
    updated_by: str | None = None

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ItemPageOut(CamelModel):
    data: list[ItemOut]
    count: int


class LedgerCheckOut(CamelModel):
    item_id: str
    current_stock: int
    ledger_total: int
    movement_count: int
    consistent: bool
