from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class PriceRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float
    max: float

    @model_validator(mode="after")
    def check_order(self) -> "PriceRange":
        if self.min > self.max:
            raise ValueError("price range min must not exceed max")
        return self


class ProductItem(BaseModel):
    """Catalog entry as the dashboard and the prompt builder see it."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    category: str
    name: str
    price_range: PriceRange
    description: str = ""
    specs: dict[str, Any] = Field(default_factory=dict)
    images: list[str] = Field(default_factory=list)


class ProductsUpdate(BaseModel):
    products: list[ProductItem]
