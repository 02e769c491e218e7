"""
AI Providers
Text completion backends used by the complaint classifier
Supports multiple AI providers (OpenAI, Anthropic, Gemini)
"""
from typing import Optional
from abc import ABC, abstractmethod
import structlog

from ticket_ingest.config.settings import Settings, ConfigurationError, settings as default_settings

logger = structlog.get_logger(__name__)


class AIProvider(ABC):
    """Abstract base class for AI providers"""

    @abstractmethod
    def generate_response(self, prompt: str, temperature: float = 0.0, system_text: Optional[str] = None) -> str:
        """
        Generate a response from the AI model

        Args:
            prompt: Text prompt
            temperature: Sampling temperature
            system_text: System message/instructions

        Returns:
            Generated response text
        """
        pass


class OpenAIProvider(AIProvider):
    """OpenAI API provider (GPT-4, etc.)"""

    def __init__(self, api_key: str, model: str, max_tokens: int = 16, timeout: float = 30.0):
        import openai
        self.client = openai.OpenAI(api_key=api_key, timeout=timeout)
        self.model = model
        self.max_tokens = max_tokens

    def generate_response(self, prompt: str, temperature: float = 0.0, system_text: Optional[str] = None) -> str:
        try:
            model_lower = self.model.lower()
            is_reasoning_model = 'o1' in model_lower or 'gpt-5' in model_lower
            uses_completion_tokens = is_reasoning_model or 'gpt-4o' in model_lower

            messages = []
            # Reasoning models don't support system messages
            if is_reasoning_model and system_text:
                messages.append({"role": "user", "content": f"{system_text}\n\n{prompt}"})
            else:
                if system_text:
                    messages.append({"role": "system", "content": system_text})
                messages.append({"role": "user", "content": prompt})

            kwargs = {
                "model": self.model,
                "messages": messages,
            }
            if is_reasoning_model:
                kwargs["max_completion_tokens"] = self.max_tokens
            elif uses_completion_tokens:
                kwargs["temperature"] = temperature
                kwargs["max_completion_tokens"] = self.max_tokens
            else:
                kwargs["temperature"] = temperature
                kwargs["max_tokens"] = self.max_tokens

            response = self.client.chat.completions.create(**kwargs)
            content = response.choices[0].message.content or ''
            logger.debug("Received OpenAI response", model=self.model, response_preview=content[:50])
            return content
        except Exception as e:
            logger.error("OpenAI API error", error=str(e))
            raise


class AnthropicProvider(AIProvider):
    """Anthropic API provider (Claude)"""

    def __init__(self, api_key: str, model: str, max_tokens: int = 16, timeout: float = 30.0):
        import anthropic
        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout)
        self.model = model
        self.max_tokens = max_tokens

    def generate_response(self, prompt: str, temperature: float = 0.0, system_text: Optional[str] = None) -> str:
        try:
            kwargs = {
                "model": self.model,
                "max_tokens": self.max_tokens,
                "temperature": temperature,
                "messages": [{"role": "user", "content": prompt}],
            }
            if system_text:
                kwargs["system"] = system_text
            response = self.client.messages.create(**kwargs)
            return response.content[0].text
        except Exception as e:
            logger.error("Anthropic API error", error=str(e))
            raise


class GeminiProvider(AIProvider):
    """Google Gemini API provider"""

    def __init__(self, api_key: str, model: str, max_tokens: int = 16, timeout: float = 30.0):
        import google.generativeai as genai
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model)
        self.max_tokens = max_tokens
        self.timeout = timeout

    def generate_response(self, prompt: str, temperature: float = 0.0, system_text: Optional[str] = None) -> str:
        try:
            text_content = prompt if not system_text else f"SYSTEM:\n{system_text}\n\n{prompt}"
            response = self.model.generate_content(
                text_content,
                generation_config={
                    'temperature': temperature,
                    'max_output_tokens': self.max_tokens
                },
                request_options={'timeout': self.timeout}
            )
            return response.text
        except Exception as e:
            logger.error("Gemini API error", error=str(e))
            raise


def create_provider(config: Optional[Settings] = None) -> AIProvider:
    """
    Initialize the configured AI provider

    Raises:
        ConfigurationError: provider unknown or its API key is missing
    """
    config = config or default_settings
    provider_name = config.ai_provider
    model = config.ai_model
    api_key = config.ai_api_key()
    if not api_key:
        raise ConfigurationError(f"{provider_name} API key not configured")

    providers = {
        'openai': OpenAIProvider,
        'anthropic': AnthropicProvider,
        'gemini': GeminiProvider,
    }
    if provider_name not in providers:
        raise ConfigurationError(f"Unsupported AI provider: {provider_name}")

    logger.info("Initializing AI provider", provider=provider_name, model=model)
    return providers[provider_name](
        api_key,
        model,
        max_tokens=config.ai_max_tokens,
        timeout=config.ai_timeout_seconds
    )
