"""
Prompt construction, response parsing and sub-batch merging per analysis type.

Responses are sent numbered from 0 within each sub-batch ("[0] text").
Parsers map the model's JSON back onto those local indices, and
merge_payloads shifts them to global input positions.
"""

import json
import re
from collections import Counter
from typing import Any

from .errors import ProviderResponseError
from .models import AnalysisOptions, AnalysisType
from .providers.base import PromptPayload


SYSTEM_PROMPT = (
    "You are an expert sociological analyst specializing in workshop and survey "
    "feedback. Provide insights that are culturally sensitive and evidence-based. "
    "Respond only with valid JSON in the format requested."
)

SENTIMENT_LABELS = ("positive", "negative", "neutral", "mixed")

_LABEL_SCORES = {"positive": 1.0, "negative": -1.0, "neutral": 0.0, "mixed": 0.0}

_INSTRUCTIONS = {
    AnalysisType.SENTIMENT: (
        "Classify the sentiment of every response below.\n"
        "Return JSON: {\"sentiments\": [{\"response_index\": <int>, \"label\": "
        "\"positive|negative|neutral|mixed\", \"score\": <float -1..1>}]}\n"
        "Include exactly one entry per response, using the bracketed index."
    ),
    AnalysisType.THEMATIC: (
        "Identify the main themes across the responses below.\n"
        "Return JSON: {\"themes\": [{\"name\": <str>, \"description\": <str>, "
        "\"response_indices\": [<int>, ...]}]}\n"
        "Reference responses by their bracketed index."
    ),
    AnalysisType.CLUSTERS: (
        "Group the responses below into clusters of similar meaning.\n"
        "Return JSON: {\"clusters\": [{\"label\": <str>, \"summary\": <str>, "
        "\"response_indices\": [<int>, ...]}]}\n"
        "Every response should belong to exactly one cluster."
    ),
}

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _language_line(language: str) -> str:
    if not language or language == "auto":
        return "Detect the language of the responses and write descriptions in that language."
    return f"Responses are in language '{language}'. Write descriptions in that language."


def build_prompt(
    analysis_type: AnalysisType | str,
    texts: list[str],
    options: AnalysisOptions,
) -> PromptPayload:
    """Build the prompt for one sub-batch."""
    analysis_type = AnalysisType(analysis_type)
    if analysis_type is AnalysisType.CUSTOM:
        if not options.custom_prompt:
            raise ValueError("custom analysis requires custom_prompt")
        instructions = f"{options.custom_prompt}\nReturn your answer as a JSON object."
    else:
        instructions = _INSTRUCTIONS[analysis_type]

    lines = [instructions, _language_line(options.language)]
    if options.cultural_context:
        lines.append(
            f"Cultural context: {options.cultural_context}. "
            "Ensure your analysis is culturally sensitive and avoids bias."
        )
    lines.append("")
    lines.append("Responses:")
    for index, text in enumerate(texts):
        lines.append(f"[{index}] {' '.join(text.split())}")

    return PromptPayload(system=SYSTEM_PROMPT, user="\n".join(lines))


def extract_json(text: str) -> Any:
    """Pull the JSON object out of a model reply that may be fenced or chatty."""
    cleaned = _FENCE.sub("", (text or "").strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ProviderResponseError("No JSON object in response", detail=text[:500] if text else None)
    try:
        return json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise ProviderResponseError(f"Invalid JSON in response: {e}", detail=text[:500]) from e


def _indices(raw: Any, response_count: int) -> list[int]:
    if not isinstance(raw, list):
        return []
    result = []
    for value in raw:
        try:
            index = int(value)
        except (TypeError, ValueError):
            continue
        if 0 <= index < response_count and index not in result:
            result.append(index)
    return sorted(result)


def _parse_sentiment(data: dict, response_count: int) -> dict[str, Any]:
    entries = data.get("sentiments")
    if not isinstance(entries, list):
        raise ProviderResponseError("Missing 'sentiments' list")

    by_index: dict[int, dict[str, Any]] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            index = int(entry.get("response_index"))
        except (TypeError, ValueError):
            continue
        label = str(entry.get("label", "")).strip().lower()
        if label not in SENTIMENT_LABELS or not 0 <= index < response_count:
            continue
        try:
            score = float(entry.get("score", _LABEL_SCORES[label]))
        except (TypeError, ValueError):
            score = _LABEL_SCORES[label]
        by_index[index] = {
            "response_index": index,
            "label": label,
            "score": max(-1.0, min(1.0, score)),
        }

    missing = [i for i in range(response_count) if i not in by_index]
    if missing:
        raise ProviderResponseError(f"Sentiment missing for responses {missing}")
    return {"sentiments": [by_index[i] for i in range(response_count)]}


def _parse_themes(data: dict, response_count: int) -> dict[str, Any]:
    themes = data.get("themes")
    if not isinstance(themes, list):
        raise ProviderResponseError("Missing 'themes' list")
    parsed = []
    for theme in themes:
        if not isinstance(theme, dict) or not str(theme.get("name", "")).strip():
            continue
        parsed.append({
            "name": str(theme["name"]).strip(),
            "description": str(theme.get("description", "")),
            "response_indices": _indices(theme.get("response_indices"), response_count),
        })
    return {"themes": parsed}


def _parse_clusters(data: dict, response_count: int) -> dict[str, Any]:
    clusters = data.get("clusters")
    if not isinstance(clusters, list):
        raise ProviderResponseError("Missing 'clusters' list")
    parsed = []
    for cluster in clusters:
        if not isinstance(cluster, dict):
            continue
        indices = _indices(cluster.get("response_indices"), response_count)
        if not indices:
            continue
        parsed.append({
            "label": str(cluster.get("label", "")),
            "summary": str(cluster.get("summary", "")),
            "response_indices": indices,
        })
    return {"clusters": parsed}


def parse_response(analysis_type: AnalysisType | str, text: str, response_count: int) -> dict[str, Any]:
    """
    Parse and validate a model reply for one sub-batch.

    Raises:
        ProviderResponseError: reply is not JSON or lacks required fields
    """
    analysis_type = AnalysisType(analysis_type)
    if analysis_type is AnalysisType.CUSTOM:
        try:
            data = extract_json(text)
        except ProviderResponseError:
            return {"output": (text or "").strip()}
        return data if isinstance(data, dict) else {"output": data}

    data = extract_json(text)
    if not isinstance(data, dict):
        raise ProviderResponseError("Response JSON is not an object")

    if analysis_type is AnalysisType.SENTIMENT:
        return _parse_sentiment(data, response_count)
    if analysis_type is AnalysisType.THEMATIC:
        return _parse_themes(data, response_count)
    return _parse_clusters(data, response_count)


def _shift(indices: list[int], offset: int) -> list[int]:
    return [offset + i for i in indices]


def merge_payloads(analysis_type: AnalysisType | str, parts: list[tuple[int, dict[str, Any]]]) -> dict[str, Any]:
    """
    Merge parsed sub-batch payloads into one result.

    Args:
        analysis_type: Analysis type
        parts: (offset of the sub-batch in the input, parsed payload), in input order
    """
    analysis_type = AnalysisType(analysis_type)

    if analysis_type is AnalysisType.SENTIMENT:
        entries = []
        for offset, payload in parts:
            for entry in payload["sentiments"]:
                entries.append({**entry, "response_index": offset + entry["response_index"]})
        counts = Counter(entry["label"] for entry in entries)
        total = len(entries)
        distribution = {
            label: round(counts.get(label, 0) / total, 4) if total else 0.0
            for label in SENTIMENT_LABELS
        }
        overall = max(SENTIMENT_LABELS, key=lambda label: counts.get(label, 0)) if total else "neutral"
        average = round(sum(e["score"] for e in entries) / total, 4) if total else 0.0
        return {
            "sentiments": entries,
            "distribution": distribution,
            "overall": overall,
            "average_score": average,
        }

    if analysis_type is AnalysisType.THEMATIC:
        merged: dict[str, dict[str, Any]] = {}
        for offset, payload in parts:
            for theme in payload["themes"]:
                key = theme["name"].casefold()
                target = merged.setdefault(key, {
                    "name": theme["name"],
                    "description": theme["description"],
                    "response_indices": [],
                })
                target["response_indices"].extend(_shift(theme["response_indices"], offset))
        themes = []
        for theme in merged.values():
            theme["response_indices"] = sorted(set(theme["response_indices"]))
            theme["frequency"] = len(theme["response_indices"])
            themes.append(theme)
        # Stable sort keeps first-seen order among equal frequencies
        themes.sort(key=lambda t: t["frequency"], reverse=True)
        return {"themes": themes}

    if analysis_type is AnalysisType.CLUSTERS:
        clusters = []
        for offset, payload in parts:
            for cluster in payload["clusters"]:
                clusters.append({
                    **cluster,
                    "id": len(clusters),
                    "response_indices": _shift(cluster["response_indices"], offset),
                    "size": len(cluster["response_indices"]),
                })
        return {"clusters": clusters}

    return {"outputs": [payload for _, payload in parts]}
