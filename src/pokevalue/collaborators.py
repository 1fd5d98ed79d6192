"""OpenAI-backed identification and valuation collaborators."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence
from urllib.parse import quote_plus

from openai import OpenAI
from pydantic import ValidationError

from .config import AppConfig, read_env
from .errors import CollaboratorResponseError, MissingAPIKey
from .schemas import (
    NOT_FOUND,
    CardIdentity,
    IdentificationResponse,
    MarketplaceEstimate,
    ValuationResponse,
)

LOGGER = logging.getLogger(__name__)

MARKETPLACES = ("eBay", "PriceCharting")

IDENTIFY_INSTRUCTIONS = (
    "You are an expert Pokemon card identifier. From the photo, extract: the card name "
    "(e.g. \"Pikachu\", \"Charizard ex\"); the card number within its set, the part before the "
    "slash (\"025\" from \"025/165\", \"RC25\" from \"RC25/RC32\"); the deck letter appended to the "
    "number if one is printed (e.g. the \"D\" in \"56D\"), else null; the illustrator name from "
    "the bottom edge without the \"Illus.\" prefix, else null."
)

VALUATION_INSTRUCTIONS = (
    "You are a Pokemon card appraiser. Estimate the market value of the card below on eBay "
    "(recently sold listings only) and PriceCharting (primary ungraded price). Return one "
    "estimate per marketplace with the price including currency, e.g. \"$15.50 (average sold "
    "ungraded)\", or \"Not found\" when no credible price exists, and the exact search URL "
    "that supports it."
)


class CardIdentifier(Protocol):
    def identify(self, image_reference: str) -> IdentificationResponse:
        ...


class CardValuer(Protocol):
    def estimate(self, identity: CardIdentity) -> Optional[List[MarketplaceEstimate]]:
        ...


def search_query(identity: CardIdentity) -> str:
    number = identity.number + (identity.deck_letter or "")
    return f"{identity.name} {number}"


def marketplace_search_url(marketplace: str, identity: CardIdentity) -> Optional[str]:
    """Canonical search page for ``identity`` on a known marketplace."""

    query = quote_plus(search_query(identity))
    if marketplace == "eBay":
        return f"https://www.ebay.com/sch/i.html?_nkw={query}&_sacat=0&LH_Complete=1&LH_Sold=1"
    if marketplace == "PriceCharting":
        return f"https://www.pricecharting.com/search-products?q={query}&type=prices"
    return None


def parse_identification(payload: object) -> IdentificationResponse:
    """Validate an identification payload, failing closed on any schema mismatch."""

    if not isinstance(payload, dict):
        raise CollaboratorResponseError(
            f"Identification response must be a JSON object, got {type(payload).__name__}"
        )
    try:
        return IdentificationResponse.model_validate(payload)
    except ValidationError as exc:
        raise CollaboratorResponseError(f"Identification response did not match the schema: {exc}") from exc


def parse_valuation(payload: object, identity: CardIdentity) -> Optional[List[MarketplaceEstimate]]:
    """Validate a valuation payload.

    Returns None when the model produced no estimates at all (null), an empty
    list when it answered with none, and fills in missing search URLs.
    """

    if payload is None:
        return None
    if isinstance(payload, list):
        payload = {"estimates": payload}
    if not isinstance(payload, dict):
        raise CollaboratorResponseError(
            f"Valuation response must be a JSON object or array, got {type(payload).__name__}"
        )
    try:
        response = ValuationResponse.model_validate(payload)
    except ValidationError as exc:
        raise CollaboratorResponseError(f"Valuation response did not match the schema: {exc}") from exc
    if response.estimates is None:
        return None
    return [_with_search_url(estimate, identity) for estimate in response.estimates]


def _with_search_url(estimate: MarketplaceEstimate, identity: CardIdentity) -> MarketplaceEstimate:
    if estimate.search_url:
        return estimate
    url = marketplace_search_url(estimate.marketplace, identity)
    if url is None:
        return estimate
    return estimate.model_copy(update={"search_url": url})


class OpenAICardClient:
    """Wrapper around the OpenAI Responses API serving both collaborator roles."""

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        organization: Optional[str] = None,
        dry_run: bool = False,
        max_output_tokens: int = 800,
        timeout: Optional[float] = None,
        client: Any = None,
    ) -> None:
        self._model = model
        self._dry_run = dry_run
        self._max_output_tokens = max_output_tokens
        if client is not None or dry_run:
            self._client = client
        else:
            kwargs: Dict[str, Any] = {}
            if api_key:
                kwargs["api_key"] = api_key
            if organization:
                kwargs["organization"] = organization
            if timeout:
                kwargs["timeout"] = timeout
            self._client = OpenAI(**kwargs)

    def identify(self, image_reference: str) -> IdentificationResponse:
        """Ask the model who is on the card in ``image_reference`` (a data URI)."""

        if self._dry_run:
            LOGGER.info("Dry-run enabled; returning synthetic identification")
            return parse_identification({"cardName": "Pikachu", "cardNumber": "025"})

        assert self._client is not None, "Client should be initialized when dry_run is False"
        payload = self._request(
            [
                {"role": "system", "content": IDENTIFY_INSTRUCTIONS},
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": "Identify this card."},
                        {"type": "input_image", "image_url": image_reference},
                    ],
                },
            ],
            "card_identification",
            _identification_schema(),
        )
        return parse_identification(payload)

    def estimate(self, identity: CardIdentity) -> Optional[List[MarketplaceEstimate]]:
        """Ask the model for eBay and PriceCharting estimates of ``identity``."""

        if self._dry_run:
            LOGGER.info("Dry-run enabled; returning synthetic valuation for %s", search_query(identity))
            return parse_valuation(
                [{"marketplace": name, "estimatedValue": NOT_FOUND} for name in MARKETPLACES],
                identity,
            )

        assert self._client is not None, "Client should be initialized when dry_run is False"
        details = "\n".join(
            [
                f"- Card Name: {identity.name}",
                f"- Card Number: {identity.number}",
                f"- Deck ID Letter: {identity.deck_letter or 'N/A'}",
                f"- Illustrator: {identity.illustrator or 'N/A'}",
                "Example search URLs:",
                *(f"- {name}: {marketplace_search_url(name, identity)}" for name in MARKETPLACES),
            ]
        )
        payload = self._request(
            [
                {"role": "system", "content": VALUATION_INSTRUCTIONS},
                {"role": "user", "content": [{"type": "input_text", "text": details}]},
            ],
            "card_valuation",
            _valuation_schema(),
        )
        return parse_valuation(payload, identity)

    def _request(self, messages: Sequence[Dict[str, Any]], schema_name: str, schema: Dict[str, Any]) -> object:
        response = self._client.responses.create(
            model=self._model,
            input=list(messages),
            max_output_tokens=self._max_output_tokens,
            text={
                "format": {
                    "type": "json_schema",
                    "name": schema_name,
                    "schema": schema,
                    "strict": True,
                }
            },
        )
        LOGGER.debug("Received %s response: %s", schema_name, response)
        raw = (getattr(response, "output_text", None) or "").strip()
        if not raw:
            raise CollaboratorResponseError(f"Model returned no text for {schema_name}")
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CollaboratorResponseError(f"Model response was not valid JSON: {raw[:200]}") from exc


def _identification_schema() -> Dict[str, object]:
    nullable = {"type": ["string", "null"]}
    return {
        "type": "object",
        "properties": {
            "cardName": {"type": "string"},
            "cardNumber": {"type": "string"},
            "deckIdLetter": nullable,
            "illustratorName": nullable,
        },
        "required": ["cardName", "cardNumber", "deckIdLetter", "illustratorName"],
        "additionalProperties": False,
    }


def _valuation_schema() -> Dict[str, object]:
    return {
        "type": "object",
        "properties": {
            "estimates": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "marketplace": {"type": "string", "enum": list(MARKETPLACES)},
                        "estimatedValue": {"type": "string"},
                        "searchUrl": {"type": "string"},
                    },
                    "required": ["marketplace", "estimatedValue", "searchUrl"],
                    "additionalProperties": False,
                },
            }
        },
        "required": ["estimates"],
        "additionalProperties": False,
    }


def build_client(config: AppConfig) -> OpenAICardClient:
    api_key = None
    organization = None
    if not config.dry_run:
        api_key = read_env("OPENAI_API_KEY")
        organization = read_env("OPENAI_ORG")
        if not api_key:
            raise MissingAPIKey("OPENAI_API_KEY is not set. Populate it in your .env or environment.")
    return OpenAICardClient(
        config.api_model,
        api_key=api_key,
        organization=organization,
        dry_run=config.dry_run,
        max_output_tokens=config.max_output_tokens,
        timeout=config.collaborator_timeout,
    )
