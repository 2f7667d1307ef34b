from pydantic import BaseModel, ConfigDict, Field


class ProductCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    uom: str = Field(default="unit", min_length=1, max_length=32)
    active: bool = True


class ProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sku: str
    name: str
    uom: str
    active: bool


class SupplierCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    lead_time_days: int = Field(default=14, ge=0)


class SupplierRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    lead_time_days: int
