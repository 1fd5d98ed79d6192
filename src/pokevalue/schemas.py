"""Pydantic schemas for validating model responses at the collaborator boundary."""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticUndefined

NOT_FOUND = "Not found"

NOT_FOUND_ALIASES = {
    "",
    "n/a",
    "na",
    "none",
    "null",
    "unknown",
    "not found",
    "not available",
    "no data",
}

MARKETPLACE_ALIASES = {
    "ebay": "eBay",
    "ebay.com": "eBay",
    "pricecharting": "PriceCharting",
    "pricecharting.com": "PriceCharting",
    "price charting": "PriceCharting",
}


def _clean_text(value: object) -> Optional[str]:
    if value is None or value is PydanticUndefined:
        return None
    text = str(value).strip()
    return text or None


class CardIdentity(BaseModel):
    """Identity of a card as resolved by the identification step."""

    name: str = Field(..., min_length=1, alias="cardName")
    number: str = Field(..., min_length=1, alias="cardNumber")
    deck_letter: Optional[str] = Field(default=None, alias="deckIdLetter")
    illustrator: Optional[str] = Field(default=None, alias="illustratorName")

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    @field_validator("name", "number", mode="before")
    @classmethod
    def strip_required(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("deck_letter", mode="before")
    @classmethod
    def normalise_deck_letter(cls, value: object) -> Optional[str]:
        text = _clean_text(value)
        return text.upper() if text else None

    @field_validator("illustrator", mode="before")
    @classmethod
    def strip_illustrator(cls, value: object) -> Optional[str]:
        text = _clean_text(value)
        if text and text.lower().startswith("illus."):
            text = text[len("illus."):].strip() or None
        return text

    def as_payload(self) -> Dict[str, Optional[str]]:
        return self.model_dump(by_alias=True)


class IdentificationResponse(BaseModel):
    """Raw identification output; name and number may still be missing here."""

    card_name: Optional[str] = Field(default=None, alias="cardName")
    card_number: Optional[str] = Field(default=None, alias="cardNumber")
    deck_id_letter: Optional[str] = Field(default=None, alias="deckIdLetter")
    illustrator_name: Optional[str] = Field(default=None, alias="illustratorName")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("card_name", "card_number", "deck_id_letter", "illustrator_name", mode="before")
    @classmethod
    def empty_to_none(cls, value: object) -> Optional[str]:
        if isinstance(value, (dict, list)):
            raise ValueError("expected a scalar value")
        return _clean_text(value)

    @property
    def is_complete(self) -> bool:
        return bool(self.card_name and self.card_number)

    def to_identity(self) -> CardIdentity:
        return CardIdentity(
            name=self.card_name,
            number=self.card_number,
            deck_letter=self.deck_id_letter,
            illustrator=self.illustrator_name,
        )


class MarketplaceEstimate(BaseModel):
    """One marketplace's value estimate for a card."""

    marketplace: str = Field(..., min_length=1)
    estimated_value: str = Field(default=NOT_FOUND, alias="estimatedValue")
    search_url: Optional[str] = Field(default=None, alias="searchUrl")

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    @field_validator("marketplace", mode="before")
    @classmethod
    def canonical_marketplace(cls, value: object) -> object:
        text = _clean_text(value)
        if text is None:
            return value
        return MARKETPLACE_ALIASES.get(text.lower(), text)

    @field_validator("estimated_value", mode="before")
    @classmethod
    def sentinel_for_missing(cls, value: object) -> str:
        text = _clean_text(value)
        if text is None or text.lower().rstrip(".") in NOT_FOUND_ALIASES:
            return NOT_FOUND
        return text

    @field_validator("search_url", mode="before")
    @classmethod
    def strip_url(cls, value: object) -> Optional[str]:
        return _clean_text(value)

    @property
    def found(self) -> bool:
        return self.estimated_value != NOT_FOUND

    def as_payload(self) -> Dict[str, Optional[str]]:
        return self.model_dump(by_alias=True)


class ValuationResponse(BaseModel):
    """Envelope the valuation prompt asks the model to answer with."""

    estimates: Optional[List[MarketplaceEstimate]] = None

    model_config = ConfigDict(extra="ignore")
