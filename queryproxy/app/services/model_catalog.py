"""Static catalog of logical model names and their upstream identifiers.

The key set doubles as the validation allow-list.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

DEFAULT_LOGICAL_MODEL = "ooverta"
DEFAULT_UPSTREAM_MODEL = "google/gemini-2.0-flash-exp:free"
VISION_DEFAULT_MODEL = "google/gemini-2.0-flash-exp:free"

MODEL_MAP: Dict[str, str] = {
    "ooverta": DEFAULT_UPSTREAM_MODEL,
    "gemini-flash": "google/gemini-2.0-flash-exp:free",
    "deepseek-free": "deepseek/deepseek-r1-0528:free",
    "nemotron-30b": "nvidia/nemotron-3-nano-30b-a3b:free",
    "llama-405b": "nousresearch/hermes-3-llama-3.1-405b:free",
    "gpt-4o": "openai/gpt-4o",
    "claude-3-5-sonnet": "anthropic/claude-3.5-sonnet",
    "perplexity": "perplexity/sonar-reasoning",
    "gpt-4-turbo": "openai/gpt-4-turbo",
    "claude-3-opus": "anthropic/claude-3-opus",
    "claude-3-haiku": "anthropic/claude-3-haiku",
    "gemini-pro": "google/gemini-pro",
    "llama-3-70b": "meta-llama/llama-3-70b-instruct",
    "mistral-large": "mistralai/mistral-large",
    "qwen-2-5": "qwen/qwen-2.5-72b-instruct",
    "pi-mini": "inflection/inflection-pi",
    "command-r-plus": "cohere/command-r-plus",
    "llama-3-1-8b": "meta-llama/llama-3.1-8b-instruct",
}

VISION_MODELS: FrozenSet[str] = frozenset({
    "google/gemini-2.0-flash-exp:free",
    "google/gemini-flash-1.5:free",
    "google/gemini-pro",
    "meta-llama/llama-4-maverick:free",
})


@dataclass(frozen=True)
class ModelSelection:
    label: str
    upstream_id: str
    is_default: bool
    switched_for_vision: bool = False


class ModelCatalog:
    """Resolves a caller-supplied logical model name to an upstream id."""

    def __init__(
        self,
        models: Optional[Dict[str, str]] = None,
        default_model: str = DEFAULT_LOGICAL_MODEL,
    ):
        self.models = dict(models or MODEL_MAP)
        self.default_model = default_model

    @property
    def allowed_models(self) -> set[str]:
        return set(self.models)

    @property
    def default_upstream_id(self) -> str:
        return self.models.get(self.default_model, DEFAULT_UPSTREAM_MODEL)

    def resolve(self, model: Optional[str], has_image: bool = False) -> ModelSelection:
        """Pick the upstream model for a request.

        Absent or unknown names use the default. An attached image forces a
        vision-capable target.
        """
        upstream_id = self.models.get(model) if model else None
        is_default = upstream_id is None or model == self.default_model
        if upstream_id is None:
            upstream_id = self.default_upstream_id

        label = model if model in self.models else self.default_model
        if has_image and upstream_id not in VISION_MODELS:
            return ModelSelection(
                label=label,
                upstream_id=VISION_DEFAULT_MODEL,
                is_default=is_default,
                switched_for_vision=True,
            )
        return ModelSelection(label=label, upstream_id=upstream_id, is_default=is_default)
