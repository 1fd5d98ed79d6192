import json
from types import SimpleNamespace

import pytest

from pokevalue.collaborators import OpenAICardClient, build_client
from pokevalue.config import AppConfig
from pokevalue.errors import CollaboratorResponseError, MissingAPIKey
from pokevalue.schemas import NOT_FOUND, CardIdentity


class FakeResponses:
    def __init__(self, text: str) -> None:
        self.text = text
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(output_text=self.text)


def _client(text: str):
    responses = FakeResponses(text)
    return OpenAICardClient("test-model", client=SimpleNamespace(responses=responses)), responses


def test_identify_sends_image_and_strict_schema(png_data_uri):
    client, responses = _client(
        json.dumps({"cardName": "Pikachu", "cardNumber": "025", "deckIdLetter": None, "illustratorName": "Mitsuhiro Arita"})
    )

    response = client.identify(png_data_uri)

    assert response.card_name == "Pikachu"
    assert response.illustrator_name == "Mitsuhiro Arita"
    call = responses.calls[0]
    assert call["model"] == "test-model"
    assert call["text"]["format"]["type"] == "json_schema"
    assert call["text"]["format"]["strict"] is True
    user_content = call["input"][1]["content"]
    assert {"type": "input_image", "image_url": png_data_uri} in user_content


def test_estimate_includes_card_details_in_prompt():
    client, responses = _client(
        json.dumps(
            {
                "estimates": [
                    {"marketplace": "eBay", "estimatedValue": "$15.50", "searchUrl": "https://www.ebay.com/sch/i.html?_nkw=x"},
                    {"marketplace": "PriceCharting", "estimatedValue": "N/A", "searchUrl": ""},
                ]
            }
        )
    )
    identity = CardIdentity(name="Pikachu", number="025", illustrator="Atsuko Nishida")

    estimates = client.estimate(identity)

    assert [estimate.marketplace for estimate in estimates] == ["eBay", "PriceCharting"]
    assert estimates[1].estimated_value == NOT_FOUND
    assert estimates[1].search_url.startswith("https://www.pricecharting.com/search-products?q=Pikachu+025")
    prompt = responses.calls[0]["input"][1]["content"][0]["text"]
    assert "Card Name: Pikachu" in prompt
    assert "Illustrator: Atsuko Nishida" in prompt
    assert "Deck ID Letter: N/A" in prompt


@pytest.mark.parametrize("text", ["", "   ", "Sorry, I cannot help with that."])
def test_unusable_model_output_is_a_collaborator_error(text, png_data_uri):
    client, _ = _client(text)
    with pytest.raises(CollaboratorResponseError):
        client.identify(png_data_uri)


def test_dry_run_returns_synthetic_results_without_a_client(png_data_uri):
    client = OpenAICardClient("test-model", dry_run=True)

    identity = client.identify(png_data_uri).to_identity()
    estimates = client.estimate(identity)

    assert identity.name == "Pikachu"
    assert [estimate.marketplace for estimate in estimates] == ["eBay", "PriceCharting"]
    assert all(estimate.search_url for estimate in estimates)
    assert not any(estimate.found for estimate in estimates)


def test_build_client_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(MissingAPIKey):
        build_client(AppConfig(store_backend="memory"))


def test_build_client_dry_run_needs_no_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = build_client(AppConfig(store_backend="memory", dry_run=True))

    assert client.identify("data:image/png;base64,AAAA").is_complete
