"""
Provider wire formats.

Each backend kind is a closed variant described by a ``ProviderAdapter``:
a pair of pure converters (``encode_request`` / ``decode_response``), a
models-list decoder and the endpoint paths. Adapters are resolved through
``PROVIDER_ADAPTERS`` keyed by provider kind; there is no dynamic loading.

``build_provider_request`` turns an AIRequest into the provider-neutral
ProviderRequest (prompt, system prompt, token budget and temperature per
request type), shared by every adapter.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from codeintel.models.requests import (
    AIRequest,
    AIRequestType,
    ModelDescriptor,
    ModelProvider,
    PrivacyLevel,
    ProviderRequest,
    ProviderResponse,
)

CODE_COMPLETION_STOP = ["\n\n", "```", "};", "});"]

# Token budget per request type
MAX_TOKENS_BY_TYPE: Dict[AIRequestType, int] = {
    AIRequestType.CODE_COMPLETION: 150,
    AIRequestType.NATURAL_LANGUAGE: 1024,
    AIRequestType.PREDICTIVE_ANALYSIS: 1024,
    AIRequestType.DEBUG_ASSISTANCE: 1024,
    AIRequestType.CONTEXT_ANALYSIS: 512,
}

TEMPERATURE_BY_TYPE: Dict[AIRequestType, float] = {
    AIRequestType.CODE_COMPLETION: 0.1,
    AIRequestType.NATURAL_LANGUAGE: 0.3,
    AIRequestType.PREDICTIVE_ANALYSIS: 0.2,
    AIRequestType.DEBUG_ASSISTANCE: 0.1,
    AIRequestType.CONTEXT_ANALYSIS: 0.2,
}


def _language(request: AIRequest) -> str:
    return request.context.language if request.context else "javascript"


def _framework(request: AIRequest) -> str:
    return (request.context.framework if request.context else None) or ""


def build_system_prompt(request: AIRequest) -> str:
    language = _language(request)
    framework = _framework(request)

    if request.type == AIRequestType.CODE_COMPLETION:
        return (
            f"You are an expert {language} developer. Complete code accurately and efficiently. "
            "Only provide the completion, no explanations or additional text."
        )
    if request.type == AIRequestType.PREDICTIVE_ANALYSIS:
        return (
            "You are an expert code analyzer. Analyze the provided code for potential issues, "
            "optimizations, and best practices."
        )
    if request.type == AIRequestType.DEBUG_ASSISTANCE:
        return "You are an expert debugging assistant. Help identify root causes and provide clear solutions."

    prompt = f"You are an expert {language} developer"
    if framework:
        prompt += f" specializing in {framework}"
    prompt += ". Provide accurate, efficient, and well-documented code solutions."
    if request.privacy_level in (PrivacyLevel.CONFIDENTIAL, PrivacyLevel.LOCAL_ONLY):
        prompt += " Do not store or remember any code or data from this conversation."
    return prompt


def build_user_prompt(request: AIRequest) -> str:
    payload = request.payload
    language = _language(request)

    if request.type == AIRequestType.CODE_COMPLETION:
        framework = _framework(request)
        prompt = f"Complete the following {language} code"
        if framework:
            prompt += f" using {framework}"
        prompt += ":\n\n"
        if payload.get("context"):
            prompt += f"Context:\n{payload['context']}\n\n"
        prompt += f"Code to complete:\n{payload.get('code', '')}"
        return prompt

    if request.type == AIRequestType.DEBUG_ASSISTANCE:
        error = payload.get("error", "")
        code = payload.get("code", "")
        return f"Debug this {language} code error:\n\nError: {error}\n\nCode:\n{code}"

    if request.type in (AIRequestType.PREDICTIVE_ANALYSIS, AIRequestType.CONTEXT_ANALYSIS):
        return f"Analyze this {language} code:\n\n{payload.get('code', request.prompt)}"

    return payload.get("message") or payload.get("command") or request.prompt


def build_provider_request(request: AIRequest, model: ModelDescriptor) -> ProviderRequest:
    """AIRequest -> provider-neutral request for ``model``."""
    max_tokens = int(request.payload.get("max_tokens") or MAX_TOKENS_BY_TYPE[request.type])
    temperature = request.payload.get("temperature")
    return ProviderRequest(
        model=model.model_id,
        prompt=build_user_prompt(request),
        system_prompt=build_system_prompt(request),
        max_tokens=min(max_tokens, model.max_tokens),
        temperature=TEMPERATURE_BY_TYPE[request.type] if temperature is None else float(temperature),
        stop=list(CODE_COMPLETION_STOP) if request.type == AIRequestType.CODE_COMPLETION else [],
    )


# ============================================================================
# OpenAI-compatible (/chat/completions)
# ============================================================================

def encode_openai_request(request: ProviderRequest) -> Dict[str, Any]:
    messages: List[Dict[str, str]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    messages.append({"role": "user", "content": request.prompt})

    body: Dict[str, Any] = {
        "model": request.model,
        "messages": messages,
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
    }
    if request.stop:
        body["stop"] = request.stop
    return body


def decode_openai_response(data: Dict[str, Any]) -> ProviderResponse:
    choices = data.get("choices") or []
    choice = choices[0] if choices else {}
    message = choice.get("message") or {}
    usage = data.get("usage") or {}
    return ProviderResponse(
        content=message.get("content") or choice.get("text") or "",
        finish_reason=choice.get("finish_reason"),
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
        model=data.get("model"),
        raw=data,
    )


def decode_openai_models(data: Dict[str, Any]) -> List[str]:
    return [item["id"] for item in data.get("data") or [] if item.get("id")]


# ============================================================================
# Ollama (/api/generate)
# ============================================================================

def encode_ollama_request(request: ProviderRequest) -> Dict[str, Any]:
    options: Dict[str, Any] = {
        "num_predict": request.max_tokens,
        "temperature": request.temperature,
    }
    if request.stop:
        options["stop"] = request.stop
    body: Dict[str, Any] = {
        "model": request.model,
        "prompt": request.prompt,
        "stream": False,
        "options": options,
    }
    if request.system_prompt:
        body["system"] = request.system_prompt
    return body


def decode_ollama_response(data: Dict[str, Any]) -> ProviderResponse:
    return ProviderResponse(
        content=data.get("response") or "",
        finish_reason=data.get("done_reason") or ("stop" if data.get("done") else None),
        prompt_tokens=int(data.get("prompt_eval_count") or 0),
        completion_tokens=int(data.get("eval_count") or 0),
        model=data.get("model"),
        raw=data,
    )


def decode_ollama_models(data: Dict[str, Any]) -> List[str]:
    return [item["name"] for item in data.get("models") or [] if item.get("name")]


@dataclass(frozen=True)
class ProviderAdapter:
    kind: ModelProvider
    completion_path: str
    models_path: str
    encode_request: Callable[[ProviderRequest], Dict[str, Any]]
    decode_response: Callable[[Dict[str, Any]], ProviderResponse]
    decode_models: Callable[[Dict[str, Any]], List[str]]
    requires_api_key: bool


OPENAI_ADAPTER = ProviderAdapter(
    kind=ModelProvider.OPENAI,
    completion_path="/chat/completions",
    models_path="/models",
    encode_request=encode_openai_request,
    decode_response=decode_openai_response,
    decode_models=decode_openai_models,
    requires_api_key=True,
)

OLLAMA_ADAPTER = ProviderAdapter(
    kind=ModelProvider.OLLAMA,
    completion_path="/api/generate",
    models_path="/api/tags",
    encode_request=encode_ollama_request,
    decode_response=decode_ollama_response,
    decode_models=decode_ollama_models,
    requires_api_key=False,
)

PROVIDER_ADAPTERS: Dict[ModelProvider, ProviderAdapter] = {
    ModelProvider.OPENAI: OPENAI_ADAPTER,
    ModelProvider.OLLAMA: OLLAMA_ADAPTER,
}


def get_adapter(kind: ModelProvider) -> ProviderAdapter:
    try:
        return PROVIDER_ADAPTERS[kind]
    except KeyError:
        raise ValueError(f"No adapter registered for provider kind {kind.value!r}") from None
