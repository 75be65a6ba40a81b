import logging
from typing import Optional

from openai import OpenAI, OpenAIError

from sopbot.errors import GenerationFailure

logger = logging.getLogger(__name__)


class OpenAIAnswerGenerator:
    """Paraphrases SOP steps into an answer; one HTTP call, no retries."""

    def __init__(self, api_key: str, model: str = "gpt-4", temperature: float = 0.2,
                 timeout: Optional[float] = None, client: Optional[OpenAI] = None):
        self.model = model
        self.temperature = temperature
        if client is None:
            client_kwargs = {"api_key": api_key, "max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            client = OpenAI(**client_kwargs)
        self.client = client

    def generate(self, context: str, instructions: str) -> str:
        """
        Generate an answer from prompt context and the instruction set.

        Raises:
            GenerationFailure: If the API call fails or returns no text
        """
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": instructions},
                    {"role": "user", "content": context},
                ],
                temperature=self.temperature,
            )
        except OpenAIError as e:
            logger.error(f"Answer generation failed: {e}")
            raise GenerationFailure(f"Answer generation failed: {e}") from e

        choices = response.choices or []
        answer = (choices[0].message.content or "").strip() if choices else ""
        if not answer:
            raise GenerationFailure("Answer generator returned an empty response")
        return answer
