"""Sentiment analysis delegated to an LLM instance."""
from __future__ import annotations

from typing import Any, Dict

from taskrelay.core.models import ExecutionContext, FunctionDefinition, FunctionParameter, FunctionType
from taskrelay.core.text import extract_json_object
from taskrelay.functions.registry import CallableFunction

MAX_TEXT_LENGTH = 5000

SYSTEM_PROMPT = (
    "You are an expert sentiment analysis AI. Analyze text sentiment with high accuracy "
    "and provide structured insights. Always respond in valid JSON format."
)

definition = FunctionDefinition(
    name="sentimentAnalysis",
    description="Analyzes the sentiment and emotional tone of text using AI, providing detailed insights and scores",
    type=FunctionType.WORKER,
    parameters=(
        FunctionParameter("text", "string", "Text to analyze for sentiment"),
        FunctionParameter(
            "includeEmotions",
            "boolean",
            "Whether to include detailed emotion analysis",
            required=False,
            default=True,
        ),
        FunctionParameter(
            "language", "string", "Language of the text (default: auto-detect)", required=False, default="auto"
        ),
    ),
    timeout=25.0,
    retries=2,
)

PROMPT_TEMPLATE = """Analyze the sentiment of the following text (language: {language}).
Respond with JSON only:
{{"sentiment": "positive" | "negative" | "neutral" | "mixed", "score": number between -1 and 1, "confidence": number between 0 and 1{emotions}}}

Text:
\"\"\"{text}\"\"\""""


async def handler(params: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    text = params.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Text parameter is required and must be a string")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValueError(f"Text too long. Maximum {MAX_TEXT_LENGTH} characters allowed.")

    llm = context.services.get("llm")
    instance_id = context.services.get("llm_instance_id")
    if llm is None or instance_id is None:
        raise RuntimeError("No LLM instance available for sentiment analysis")

    include_emotions = bool(params.get("includeEmotions", True))
    prompt = PROMPT_TEMPLATE.format(
        language=params.get("language") or "auto",
        emotions=', "emotions": {"joy": 0-1, "anger": 0-1, "sadness": 0-1, "fear": 0-1, "surprise": 0-1}'
        if include_emotions
        else "",
        text=text,
    )
    context.logger.info("Starting sentiment analysis of %d chars", len(text))
    response = await llm.generate_response(instance_id, prompt)

    analysis = extract_json_object(response.content)
    if analysis is None or "sentiment" not in analysis:
        raise ValueError("Sentiment model returned an unparseable verdict")
    if not include_emotions:
        analysis.pop("emotions", None)
    analysis["textLength"] = len(text)
    analysis["tokensUsed"] = response.usage.total_tokens
    return analysis


def create() -> CallableFunction:
    return CallableFunction(definition=definition, handler=handler)
