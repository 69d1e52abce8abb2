"""
LLM provider selection shared by all agents.
Priority: NVIDIA NIM (OpenAI-compatible) → Groq → Gemini.
"""

import os
import re
from typing import Optional, Tuple

from dotenv import load_dotenv
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_groq import ChatGroq
from langchain_openai import ChatOpenAI

load_dotenv()

NVIDIA_BASE_URL = "https://integrate.api.nvidia.com/v1"

# role -> (nvidia model, groq model, gemini model)
DEFAULT_MODELS = {
    "classifier": ("meta/llama-3.3-70b-instruct", "llama-3.3-70b-versatile", "gemini-2.5-flash"),
    "generator": ("mistralai/devstral-2-123b-instruct-2512", "qwen/qwen3-32b", "gemini-2.5-flash"),
    "reviewer": ("meta/llama-3.2-11b-vision-instruct", "meta-llama/llama-4-scout-17b-16e-instruct", "gemini-2.5-flash"),
}


def build_chat_model(
    role: str,
    model: Optional[str] = None,
    temperature: float = 0.2,
    max_tokens: int = 8192,
) -> Tuple[BaseChatModel, str]:
    """Pick the chat model for an agent role from the environment.

    `<ROLE>_MODEL` overrides the default model name for that role.
    """
    nvidia_model, groq_model, gemini_model = DEFAULT_MODELS.get(role, DEFAULT_MODELS["generator"])
    model = model or os.getenv(f"{role.upper()}_MODEL")
    use_nvidia = os.getenv("USE_NVIDIA", "").lower() == "true" and os.getenv("NVIDIA_API_KEY")

    if use_nvidia:
        name = model or nvidia_model
        llm = ChatOpenAI(
            model=name,
            base_url=NVIDIA_BASE_URL,
            api_key=os.getenv("NVIDIA_API_KEY"),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        print(f"🎯 [{role}] Using NVIDIA NIM: {name}")
    elif os.getenv("GROQ_API_KEY"):
        name = model or groq_model
        llm = ChatGroq(
            model=name,
            api_key=os.getenv("GROQ_API_KEY"),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        print(f"🚀 [{role}] Using Groq: {name}")
    else:
        name = model or os.getenv("GEMINI_MODEL", gemini_model)
        llm = ChatGoogleGenerativeAI(
            model=name,
            google_api_key=os.getenv("GOOGLE_API_KEY"),
            temperature=temperature,
            max_output_tokens=max_tokens,
        )
        print(f"🔄 [{role}] Using Gemini: {name}")

    return llm, name


def extract_content(response) -> str:
    """Safely extract model output text and strip thinking tokens."""
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        content = "\n".join(parts)
    clean = re.sub(r"<(?:think|thinking)>.*?</(?:think|thinking)>", "", str(content), flags=re.DOTALL | re.IGNORECASE)
    return clean.strip()


def model_name(llm) -> str:
    return getattr(llm, "model_name", None) or getattr(llm, "model", None) or type(llm).__name__
