"""
AI-suggested checklist items.

A templated prompt goes to the hosted model with the craft's details; the reply
must be a JSON array of item descriptions. Both sides are validated with
pydantic so a malformed reply never reaches the checklist.
"""
import json
import logging
from typing import List, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from utils import llm_chat
from utils.errors import SuggestionFormatError, SuggestionUnavailableError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert marine safety inspector."

PROMPT_TEMPLATE = """Based on the following information about a craft, suggest a list of checklist items that should be included in a safety inspection. Be as comprehensive as possible.

Craft Make: {craft_make}
Craft Model: {craft_model}
Craft Year: {craft_year}
Craft Type: {craft_type}
Registration History: {registration_history}

Suggest a list of checklist items (just the descriptions) relevant for inspecting this craft. Respond as a JSON array of strings. Do not include any additional text."""

MAX_SUGGESTIONS = 25

_suggestions_adapter = TypeAdapter(List[str])


class SuggestChecklistItemsInput(BaseModel):
    craft_make: str = Field(min_length=1)
    craft_model: str = Field(min_length=1)
    craft_year: Optional[int] = None
    craft_type: str = "Unknown"
    registration_history: str = "No prior history on record."


def build_prompt(data: SuggestChecklistItemsInput) -> str:
    return PROMPT_TEMPLATE.format(
        craft_make=data.craft_make,
        craft_model=data.craft_model,
        craft_year=data.craft_year if data.craft_year is not None else "Unknown",
        craft_type=data.craft_type,
        registration_history=data.registration_history,
    )


def parse_suggestions(response_text: str) -> List[str]:
    """Validate the model reply as a JSON array of strings."""
    text = response_text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]

    try:
        items = _suggestions_adapter.validate_python(json.loads(text.strip()))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Checklist suggestion reply rejected: {e}")
        raise SuggestionFormatError("AI suggestion reply was not a JSON array of strings")

    return [item.strip() for item in items if item.strip()][:MAX_SUGGESTIONS]


async def suggest_checklist_items(data: SuggestChecklistItemsInput) -> List[str]:
    if not llm_chat._get_api_key():
        raise SuggestionUnavailableError("Checklist suggestions unavailable (LLM_API_KEY not set)")

    try:
        response_text = await llm_chat.chat(
            system_prompt=SYSTEM_PROMPT,
            user_text=build_prompt(data),
            json_output=True,
        )
    except Exception as e:
        logger.error(f"Checklist suggestion request failed: {e}")
        raise SuggestionUnavailableError(f"Checklist suggestion request failed: {e}")

    suggestions = parse_suggestions(response_text)
    logger.info(f"Received {len(suggestions)} checklist suggestion(s) for {data.craft_make} {data.craft_model}")
    return suggestions


def registration_history_summary(registration: dict, inspections: List[dict]) -> str:
    """Short plain-text history fed into the prompt."""
    parts = [f"Registration status: {registration.get('status', 'Unknown')}."]
    if registration.get("registration_type") == "Renewal":
        parts.append(f"Renewal of {registration.get('previous_sca_rego_no') or 'an earlier registration'}.")
    past = [i for i in inspections if i.get("overall_result")]
    if past:
        outcomes = ", ".join(f"{i.get('inspection_type')}: {i.get('overall_result')}" for i in past[:5])
        parts.append(f"Previous inspections: {outcomes}.")
    else:
        parts.append("No previous inspection results.")
    return " ".join(parts)
