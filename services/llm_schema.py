from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class RecipeCandidate(BaseModel):
    title: NonEmptyStr
    ingredients: List[NonEmptyStr] = Field(min_length=1)
    steps: List[NonEmptyStr] = Field(min_length=1)
    notes: str = ""


class RecipeResponse(BaseModel):
    recipes: List[RecipeCandidate] = Field(min_length=1)


class ReceiptLineCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: NonEmptyStr
    quantity_value: Optional[float] = Field(default=None, gt=0, alias="quantityValue")
    unit: Optional[str] = None
    raw_line: NonEmptyStr = Field(alias="rawLine")
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class ReceiptExtraction(BaseModel):
    items: List[ReceiptLineCandidate]
