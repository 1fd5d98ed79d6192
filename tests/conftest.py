import base64
import io
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from PIL import Image

from pokevalue.collaborators import parse_identification, parse_valuation
from pokevalue.schemas import CardIdentity, IdentificationResponse, MarketplaceEstimate


def make_image_bytes(fmt: str = "PNG", size=(32, 32)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color="white").save(buffer, format=fmt)
    return buffer.getvalue()


def make_data_uri(fmt: str = "PNG", mime: Optional[str] = None) -> str:
    raw = make_image_bytes(fmt)
    mime = mime or f"image/{fmt.lower()}"
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


PIKACHU_ESTIMATES = [
    {"marketplace": "eBay", "estimatedValue": "$15.50", "searchUrl": "https://www.ebay.com/sch/i.html?_nkw=Pikachu+025"},
    {
        "marketplace": "PriceCharting",
        "estimatedValue": "Not found",
        "searchUrl": "https://www.pricecharting.com/search-products?q=Pikachu+025&type=prices",
    },
]


class FakeIdentifier:
    def __init__(self, payload=None, error: Optional[Exception] = None) -> None:
        self.payload = payload if payload is not None else {"cardName": "Pikachu", "cardNumber": "025"}
        self.error = error
        self.calls: List[str] = []

    def identify(self, image_reference: str) -> IdentificationResponse:
        self.calls.append(image_reference)
        if self.error is not None:
            raise self.error
        return parse_identification(self.payload)


class FakeValuer:
    def __init__(self, payload=PIKACHU_ESTIMATES, error: Optional[Exception] = None) -> None:
        self.payload = payload
        self.error = error
        self.calls: List[CardIdentity] = []

    def estimate(self, identity: CardIdentity) -> Optional[List[MarketplaceEstimate]]:
        self.calls.append(identity)
        if self.error is not None:
            raise self.error
        return parse_valuation(self.payload, identity)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def png_data_uri() -> str:
    return make_data_uri("PNG")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
