"""Request validation against a provider's capability slice.

Checks run in a fixed order and stop at the first failure, so a request
that is wrong in several ways always reports the same problem.
"""

from __future__ import annotations

from unified_chat.capabilities import ProviderCapabilities
from unified_chat.errors import InputError, UnsupportedFeatureError
from unified_chat.types import ChatRequest, FunctionMessage, has_images, iter_text

MAX_TEMPERATURE = 2.0


def validate_request(
    req: ChatRequest,
    caps: ProviderCapabilities,
    *,
    model: str | None = None,
    bypass_model_check: bool = False,
) -> None:
    """Fail fast if the request asks for something the provider/model lacks.

    ``model`` overrides ``req.model`` for adapters that strip a routing prefix.
    """
    model = model if model is not None else req.model
    provider = caps.provider

    if not bypass_model_check and not caps.is_supported_model(model):
        raise InputError(f"Invalid 'model' field: {model}.")

    if req.stream and not caps.supports("streaming", model):
        raise UnsupportedFeatureError("streaming", provider, model)

    if req.tools is not None and not caps.supports("tool_calls", model):
        raise InputError(
            f"Detected a 'tools' parameter, but the following model does not support tools: {model}"
        )
    if req.tool_choice is not None and not caps.supports("tool_calls", model):
        raise InputError(
            f"Detected a 'tool_choice' parameter, but the following model does not support tools: {model}"
        )

    if req.temperature is not None and not 0 <= req.temperature <= MAX_TEMPERATURE:
        raise InputError(
            f"Expected a temperature between 0 and {MAX_TEMPERATURE:g}, but got: {req.temperature}"
        )

    for message in req.messages:
        if isinstance(message, FunctionMessage):
            raise InputError("The 'function' role is deprecated. Please use the 'tool' role instead.")

    if any(has_images(message.content) for message in req.messages):
        if not caps.supports("images", model):
            raise InputError(
                "Detected an image in the 'messages' array, but the following model does not "
                f"support images: {model}"
            )

    if req.n is not None and req.n > 1:
        if not caps.supports("n", model):
            raise InputError(f"The model {model} does not support setting 'n' greater than 1.")
        if req.stream and not caps.n_with_streaming:
            raise InputError(
                f"{provider} requires that 'n' equals 1 when streaming is enabled. "
                f"Received an 'n' value of: {req.n}"
            )

    if req.response_format is not None and req.response_format.type == "json_object":
        if not caps.supports("json", model):
            raise InputError(
                f"The model {model} does not support the 'response_format' type 'json_object'."
            )
        # enforced for every provider, not only the ones whose API demands it
        mentions_json = any(
            "json" in text.lower() for message in req.messages for text in iter_text(message.content)
        )
        if not mentions_json:
            raise InputError(
                "You must include the string 'JSON' somewhere in your prompt when the "
                "'response_format' type is 'json_object'."
            )
