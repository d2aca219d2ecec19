# logic/model_options.py

"""Catalogue of selectable narrator and image models."""

from typing import Dict, List, Optional

DEFAULT_MODEL_ID = "openrouter/sherlock-think-alpha"
DEFAULT_IMAGE_MODEL_ID = "google/gemini-2.5-flash-image"

MODEL_OPTIONS: List[Dict[str, str]] = [
    {"id": "deepseek/deepseek-chat-v3-0324", "label": "DeepSeek V3"},
    {"id": "google/gemini-2.5-pro", "label": "Gemini 2.5 Pro"},
    {"id": "mistralai/mistral-nemo", "label": "Mistral Nemo"},
    {"id": "google/gemini-2.5-flash", "label": "Gemini 2.5 Flash"},
    {"id": "openrouter/sherlock-think-alpha", "label": "Sherlock Think Alpha"},
    {"id": "x-ai/grok-4-fast", "label": "Grok 4 Fast"},
]

IMAGE_MODEL_OPTIONS: List[Dict[str, str]] = [
    {"id": "openai/gpt-5-image-mini", "label": "GPT-5 Image Mini"},
    {"id": "google/gemini-2.5-flash-image", "label": "Gemini 2.5 Flash Image"},
]

_MODEL_IDS = {option["id"] for option in MODEL_OPTIONS}
_IMAGE_MODEL_IDS = {option["id"] for option in IMAGE_MODEL_OPTIONS}


def resolve_model_id(model_id: Optional[str]) -> str:
    """Known ids pass through; anything else falls back to the default narrator."""
    if model_id and model_id in _MODEL_IDS:
        return model_id
    return DEFAULT_MODEL_ID


def resolve_image_model_id(model_id: Optional[str]) -> str:
    if model_id and model_id in _IMAGE_MODEL_IDS:
        return model_id
    return DEFAULT_IMAGE_MODEL_ID
