"""Payload schemas for the Holoo stock webhook."""

import json
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StockChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    erp_code: str = Field(alias="ErpCode", min_length=1)
    few: Optional[int] = Field(default=None, alias="Few")

    @field_validator("erp_code", mode="before")
    @classmethod
    def as_str(cls, v):
        return str(v) if v is not None else v


class ErpWebhookDTO(BaseModel):
    """Change notification pushed by Holoo.

    ``changedfields`` arrives as a JSON-encoded string holding a list of
    ``{"ErpCode", "Few"}`` objects; an already decoded list is accepted too.
    """

    operation: str = ""
    table: str = Field(default="", alias="Table")
    changedfields: Union[list[StockChange], str] = Field(default_factory=list)

    @field_validator("changedfields", mode="before")
    @classmethod
    def decode(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v.strip() else []
        return v

    @property
    def is_stock_update(self) -> bool:
        return self.operation.upper() == "UPDATE" and self.table.lower() == "product"


class PendingQuery(BaseModel):
    limit: int = Field(default=20, ge=1, le=100)
