import os
from abc import ABC, abstractmethod

import google.generativeai as genai

SUPPORTED_MODELS = {
    "gemini-2.0-flash": "Gemini 2.0 Flash",
    "gemini-flash-latest": "Gemini Flash",
    "gemini-1.5-flash": "Gemini 1.5 Flash",
}

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_OUTPUT_TOKENS = 1000


def get_api_key():
    return os.environ.get("GEMINI_API_KEY")


class GeminiConversation:
    def __init__(self, user_prompt, system_prompt=None):
        self.messages = []
        if system_prompt is not None:
            self.messages.append({"role": "user", "parts": [system_prompt]})
            self.messages.append({"role": "model", "parts": ["Understood."]})
        self.messages.append({"role": "user", "parts": [user_prompt]})


class Model(ABC):
    def __init__(self, model_name):
        self.model_name = model_name

    @abstractmethod
    def call_model(self, user_prompt, system_prompt=None):
        pass


def create_model(model_name):
    if model_name not in SUPPORTED_MODELS:
        raise NotImplementedError(f"Unsupported model: {model_name}")
    return GeminiModel(model_name)


class GeminiModel(Model):
    """Chat-style text completion against Gemini; returns the raw response text."""

    def __init__(self, model_name="gemini-2.0-flash", temperature=DEFAULT_TEMPERATURE,
                 max_output_tokens=DEFAULT_MAX_OUTPUT_TOKENS):
        api_key = get_api_key()
        if not api_key:
            raise EnvironmentError("Set GEMINI_API_KEY to enable LLM screen analysis.")

        genai.configure(api_key=api_key)
        super().__init__(model_name)
        self.generation_config = {
            "temperature": temperature,
            "max_output_tokens": max_output_tokens,
        }
        self.model = genai.GenerativeModel(self.model_name)
        self.convo = None

    def call_model(self, user_prompt, system_prompt=None):
        self.convo = GeminiConversation(user_prompt=user_prompt, system_prompt=system_prompt)
        response = self.model.generate_content(
            self.convo.messages,
            generation_config=self.generation_config,
        )
        return response.text
