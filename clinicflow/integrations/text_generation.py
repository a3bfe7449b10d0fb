"""Text generation for the ai_analysis node, backed by OpenAI chat completions."""

from typing import Any, Dict, Optional
from openai import OpenAI, OpenAIError

from ..core.exceptions import TextGenerationError
from ..core.logging import get_logger

logger = get_logger(__name__)


class OpenAITextGenerator:
    """Generates text from a system prompt and a user message.

    The client is created lazily so that the service starts without an API
    key; a missing key fails the node that needs it.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        default_model: str = "gpt-4o-mini",
        timeout: float = 60.0
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.default_model = default_model
        self.timeout = timeout
        self._client: Optional[OpenAI] = None

    def _get_client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise TextGenerationError("AI API key is not configured (CLINICFLOW_AI_API_KEY)")
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout)
        return self._client

    def generate(self, prompt: str, message: str, model: Optional[str] = None) -> Dict[str, Any]:
        """
        Run one completion.

        Args:
            prompt: Instructions, sent as the system message
            message: Data to analyse, sent as the user message
            model: Model override

        Returns:
            Dict with the generated ``text`` and the ``model`` that produced it

        Raises:
            TextGenerationError: If the key is missing or the provider call fails
        """
        model = model or self.default_model
        client = self._get_client()

        logger.info(f"Requesting completion from model: {model}")
        try:
            response = client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": message},
                ]
            )
        except OpenAIError as e:
            raise TextGenerationError(f"Text generation failed: {str(e)}", model=model)

        if not response.choices:
            raise TextGenerationError("Empty response from text generation provider", model=model)

        text = response.choices[0].message.content or ""
        return {"text": text, "model": response.model or model}
