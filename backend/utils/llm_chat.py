"""
LLM chat using Google Generative AI (Gemini).
Uses LLM_API_KEY from environment (Gemini API key from Google AI Studio).
"""
import asyncio
import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)

LLM_API_KEY = os.environ.get("LLM_API_KEY")
DEFAULT_MODEL = os.environ.get("LLM_MODEL", "gemini-2.0-flash")


def _get_api_key() -> Optional[str]:
    return LLM_API_KEY


def _sync_chat(system_prompt: str, user_text: str, model: str = DEFAULT_MODEL, json_output: bool = False) -> str:
    """Synchronous chat completion using Google Generative AI."""
    import google.generativeai as genai
    api_key = _get_api_key()
    if not api_key:
        raise ValueError("LLM_API_KEY not found in environment")
    genai.configure(api_key=api_key)
    model_name = model if model and "gemini" in model else "gemini-2.0-flash"
    gemini = genai.GenerativeModel(
        model_name,
        system_instruction=system_prompt,
    )
    generation_config = {"response_mime_type": "application/json"} if json_output else None
    response = gemini.generate_content(user_text, generation_config=generation_config)
    if not response or not response.text:
        raise ValueError("Empty response from LLM")
    return response.text


async def chat(
    system_prompt: str,
    user_text: str,
    model: str = DEFAULT_MODEL,
    json_output: bool = False,
) -> str:
    """Async chat completion. Runs sync SDK in thread pool."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(
        None,
        lambda: _sync_chat(system_prompt, user_text, model, json_output),
    )
