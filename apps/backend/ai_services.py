from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
import re
import time
from typing import Any, Awaitable, Callable, Protocol

from google import genai

from ai_support import (
    build_analysis_prompt,
    build_qna_prompt,
    calculate_grade_from_score,
    create_grade_info,
    extract_improvements,
    extract_key_insights,
    extract_section,
    format_meta_decks_for_ai,
    format_player_data_for_ai,
    normalize_score,
    parse_ai_scores,
    parse_player_deck,
    sanitize_ai_response,
)
from cache_manager import CacheManager, cache_manager
from cache_ttl import CACHE_TTL
from http_errors import NotFoundError, ValidationError
from match_analyzer import find_analysis_targets
from meta_store import MetaStore, meta_store
from metrics import metrics_collector
from responses import now_iso
from riot_api import RiotApiClient
from score_calculator import calculate_all_scores
from tft_data import as_list

logger = logging.getLogger(__name__)

MAX_HISTORY = 10
MAX_QUESTION_LENGTH = 1000
SPAM_PATTERNS = (re.compile(r"(.)\1{10,}"), re.compile(r"^[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]+$"), re.compile(r"^\d+$"))
NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")


class TextGenerator(Protocol):
    model: str

    async def generate(self, prompt: str) -> str: ...


class GeminiGenerator:
    def __init__(self, api_key: str, model: str = "gemini-2.5-pro", timeout_ms: int = 30000) -> None:
        self.client = genai.Client(api_key=api_key)
        self.model = model
        self.timeout = timeout_ms / 1000.0

    async def generate(self, prompt: str) -> str:
        response = await asyncio.wait_for(self.client.aio.models.generate_content(model=self.model, contents=prompt), timeout=self.timeout)
        if response.text:
            return response.text
        if response.candidates:
            parts = response.candidates[0].content.parts or []
            return "".join(part.text for part in parts if getattr(part, "text", None))
        return ""


def build_generator(settings: Any) -> GeminiGenerator | None:
    if not settings.google_ai_key or not settings.enable_ai_analysis:
        return None
    return GeminiGenerator(settings.google_ai_key, settings.google_ai_model, settings.ai_timeout_ms)


def describe_ai_error(error: BaseException) -> str:
    message = str(error).lower()
    if isinstance(error, asyncio.TimeoutError) or "timeout" in message or "network" in message:
        return "A network problem interrupted the AI service. Please try again."
    if "api key" in message or "api_key" in message:
        return "The AI service is not configured correctly."
    if "quota" in message or "limit" in message or "resource_exhausted" in message:
        return "The AI service usage quota was exceeded. Please try again later."
    if "model" in message:
        return "The AI model is currently unavailable."
    return "An error occurred while generating the AI analysis."


def _as_list_of_str(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(item) for item in as_list(value) if str(item).strip()]


def _score(raw: dict[str, Any], *names: str, default: int = 50) -> int:
    """First usable number among ``names``; accepts strings like "85/100"."""
    for name in names:
        value = raw.get(name)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            number = float(value)
        else:
            match = NUMBER_PATTERN.search(str(value))
            if match is None:
                continue
            number = float(match.group(0))
        if math.isfinite(number):
            return normalize_score(number)
    return default


def parse_ai_analysis(text: str) -> dict[str, Any]:
    """Read a model reply as JSON when possible, falling back to loose text parsing."""
    match = re.search(r"\{[\s\S]*\}", text or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as error:
            logger.warning("AI reply was not valid JSON, parsing as text: %s", error)
            parsed = None
        if isinstance(parsed, dict) and isinstance(parsed.get("scores"), dict):
            raw = parsed["scores"]
            meta_fit = _score(raw, "metaFit", "meta_suitability")
            completion = _score(raw, "deckCompletion", "deck_completion")
            items = _score(raw, "itemEfficiency", "item_efficiency")
            total = round((meta_fit + completion + items) / 3)
            score_analysis = parsed.get("scoreAnalysis") if isinstance(parsed.get("scoreAnalysis"), dict) else {}
            recommendations = parsed.get("recommendations") if isinstance(parsed.get("recommendations"), dict) else {}
            comparison = parsed.get("comparison") if isinstance(parsed.get("comparison"), dict) else {}
            return {
                "scores": {"metaFit": meta_fit, "deckCompletion": completion, "itemEfficiency": items, "total": total},
                "grade": create_grade_info(calculate_grade_from_score(total)),
                "aiComments": {
                    "summary": str(parsed.get("summary") or "The AI reviewed the whole game."),
                    "scoreAnalysis": {key: str(score_analysis.get(key) or "") for key in ("metaFit", "deckCompletion", "itemEfficiency")},
                    "keyInsights": _as_list_of_str(parsed.get("keyInsights")),
                    "improvements": _as_list_of_str(parsed.get("improvements")),
                    "nextSteps": str(parsed.get("nextSteps") or ""),
                    "fullAnalysis": text,
                },
                "recommendations": {key: _as_list_of_str(recommendations.get(key)) for key in ("positioning", "itemPriority", "synergies")},
                "comparison": {key: str(comparison.get(key) or "") for key in ("vsAverage", "vsTopPlayers")},
            }

    clean = sanitize_ai_response(text)
    scores = parse_ai_scores(clean)
    return {
        "scores": scores,
        "grade": create_grade_info(calculate_grade_from_score(scores["total"])),
        "aiComments": {
            "summary": extract_section(clean, ("summary", "overall", "conclusion"), "The AI reviewed the whole game."),
            "scoreAnalysis": {"metaFit": "", "deckCompletion": "", "itemEfficiency": ""},
            "keyInsights": extract_key_insights(clean),
            "improvements": extract_improvements(clean),
            "nextSteps": extract_section(clean, ("next steps", "next game"), "Keep studying the meta decks and play them out."),
            "fullAnalysis": clean,
        },
        "recommendations": {"positioning": [], "itemPriority": [], "synergies": []},
        "comparison": {"vsAverage": "", "vsTopPlayers": ""},
    }


def build_fallback_analysis(player_deck: dict[str, Any], score_result: dict[str, Any]) -> dict[str, Any]:
    scores = score_result["scores"]
    primary = score_result["analysis"]["primaryMatch"]
    differences = score_result["analysis"]["differences"] or {}
    growth = score_result["analysis"]["growthGuide"]

    insights = []
    if primary:
        deck = primary["metaDeck"]
        insights.append(f"Closest meta deck: {deck.get('mainTraitName')} {deck.get('carryChampionName')} ({primary['similarity']}% similar).")
    else:
        insights.append("No meta deck data is available yet, so the board was scored on its own.")
    if differences.get("missingUnits"):
        insights.append("Missing core units: " + ", ".join(differences["missingUnits"][:4]) + ".")

    improvements = [f"Pick up {row['itemName']} for the carry." for row in differences.get("itemSuggestions") or []]
    for row in (differences.get("synergyDifferences") or [])[:3]:
        if row["difference"] > 0:
            improvements.append(f"Push {row['name']} from tier {row['playerTier']} to tier {row['targetTier']}.")
    if growth:
        improvements.append(f"Consider transitioning to {growth['recommendedDeck'].get('mainTraitName')} for a higher win rate.")

    return {
        "scores": scores,
        "grade": create_grade_info(calculate_grade_from_score(scores["total"])),
        "aiComments": {
            "summary": f"Finished {player_deck['placement']} with a total score of {scores['total']}.",
            "scoreAnalysis": {
                "metaFit": f"Meta fit {scores['metaFit']}/100.",
                "deckCompletion": f"Deck completion {scores['deckCompletion']}/100.",
                "itemEfficiency": f"Item efficiency {scores['itemEfficiency']}/100.",
            },
            "keyInsights": insights,
            "improvements": improvements or ["Itemize your main carry earlier and stabilise before rolling down."],
            "nextSteps": "Queue again with one of the top tier decks and compare the results.",
            "fullAnalysis": "",
        },
        "recommendations": {"positioning": [], "itemPriority": [row["itemName"] for row in differences.get("itemSuggestions") or []], "synergies": []},
        "comparison": {"vsAverage": "", "vsTopPlayers": ""},
        "scoreDetails": score_result["analysis"],
    }


def _is_valid_analysis(value: Any) -> bool:
    return isinstance(value, dict) and bool(value.get("success")) and isinstance(value.get("analysis"), dict) and "metadata" in value


class AIAnalysisService:
    def __init__(
        self,
        riot: RiotApiClient,
        load_tft_data: Callable[[], Awaitable[dict[str, Any]]],
        generator: TextGenerator | None = None,
        store: MetaStore | None = None,
        cache: CacheManager | None = None,
    ) -> None:
        self.riot = riot
        self.load_tft_data = load_tft_data
        self.generator = generator
        self.store = store or meta_store
        self.cache = cache or cache_manager

    async def analyze_match(self, match_id: str, puuid: str, region: str) -> dict[str, Any]:
        cache_key = f"ai_analysis_{match_id}_{puuid}"
        cached = await self.cache.get(cache_key)
        if _is_valid_analysis(cached):
            logger.info("Returning cached AI analysis for %s", match_id)
            return {**cached, "metadata": {**cached["metadata"], "cacheHit": True}}

        match = await self.riot.get_match_detail(match_id, region)
        participant = next((row for row in as_list((match.get("info") or {}).get("participants")) if row.get("puuid") == puuid), None)
        if participant is None:
            raise NotFoundError("The player did not take part in this match.", resource="participant")

        tft_data = await self.load_tft_data()
        player_deck = parse_player_deck(participant, tft_data)
        meta_decks = await self.store.find("decktier", sort="tierOrder", limit=15)
        score_result = calculate_all_scores(player_deck, find_analysis_targets(player_deck, meta_decks))
        metadata = {"analyzedAt": now_iso(), "matchId": match_id, "userPuuid": puuid, "cacheHit": False}

        if self.generator is None:
            return {
                "success": True,
                "fallback": True,
                "reason": "GOOGLE_AI_MAIN_API_KEY missing",
                "analysis": build_fallback_analysis(player_deck, score_result),
                "metadata": {**metadata, "source": "deterministic"},
            }

        prompt = build_analysis_prompt(format_player_data_for_ai(player_deck), format_meta_decks_for_ai(meta_decks))
        started = time.perf_counter()
        try:
            reply = await self.generator.generate(prompt)
        except Exception as error:
            logger.warning("AI analysis for %s failed, using deterministic fallback: %s", match_id, error)
            metrics_collector.record_performance("ai_analysis", (time.perf_counter() - started) * 1000, {"model": self.generator.model, "outcome": "error"})
            return {
                "success": True,
                "fallback": True,
                "reason": describe_ai_error(error),
                "analysis": build_fallback_analysis(player_deck, score_result),
                "metadata": {**metadata, "source": "deterministic"},
            }
        metrics_collector.record_performance("ai_analysis", (time.perf_counter() - started) * 1000, {"model": self.generator.model, "outcome": "success"})

        try:
            analysis = parse_ai_analysis(reply)
        except (AttributeError, KeyError, TypeError, ValueError) as error:
            logger.warning("AI reply for %s could not be parsed, using deterministic fallback: %s", match_id, error)
            return {
                "success": True,
                "fallback": True,
                "reason": "The AI reply could not be read.",
                "analysis": build_fallback_analysis(player_deck, score_result),
                "metadata": {**metadata, "source": "deterministic"},
            }

        result = {
            "success": True,
            "fallback": False,
            "reason": None,
            "analysis": {**analysis, "scoreDetails": score_result["analysis"]},
            "metadata": {**metadata, "source": "fresh_analysis", "model": self.generator.model},
        }
        await self.cache.set(cache_key, result, CACHE_TTL["AI_ANALYSIS"])
        logger.info("AI analysis complete for %s", match_id)
        return result


def validate_question(question: Any) -> dict[str, Any]:
    text = str(question or "")
    if not text.strip():
        return {"isValid": False, "reason": "The question is empty."}
    if len(text) > MAX_QUESTION_LENGTH:
        return {"isValid": False, "reason": f"The question is too long (max {MAX_QUESTION_LENGTH} characters)."}
    if any(pattern.search(text.strip()) for pattern in SPAM_PATTERNS):
        return {"isValid": False, "reason": "The question format is not valid."}
    return {"isValid": True, "reason": None}


def limit_history(history: list[dict[str, str]]) -> list[dict[str, str]]:
    return history[-MAX_HISTORY:]


def qna_cache_key(question: str, history: list[dict[str, str]]) -> str:
    context = "|".join(f"{row.get('role')}:{row.get('content')}" for row in history[-2:])
    return "qna_" + hashlib.sha1(f"{question}|{context}".encode("utf-8")).hexdigest()[:16]


class QnAService:
    def __init__(
        self,
        load_tft_data: Callable[[], Awaitable[dict[str, Any]]],
        generator: TextGenerator | None = None,
        store: MetaStore | None = None,
        cache: CacheManager | None = None,
    ) -> None:
        self.load_tft_data = load_tft_data
        self.generator = generator
        self.store = store or meta_store
        self.cache = cache or cache_manager

    async def meta_summary(self) -> str:
        decks = await self.store.find("decktier", sort="tierOrder", limit=10)
        tft_data = await self.load_tft_data()
        lines = [
            f"{index}. {deck.get('mainTraitName')} {deck.get('carryChampionName')} - avg placement {deck.get('averagePlacement')}, "
            f"pick rate {deck.get('pickRate')}%, win rate {deck.get('winRate')}%"
            for index, deck in enumerate(decks, start=1)
        ]
        return "\n".join(
            [
                f"Current TFT meta ({tft_data.get('currentSet') or 'unknown set'}):",
                "Top decks:",
                *(lines or ["No deck data collected yet."]),
                f"Champions: {len(tft_data.get('champions') or [])}, traits: {len(tft_data.get('traitMap') or {})}, "
                f"completed items: {len((tft_data.get('items') or {}).get('completed') or [])}",
            ]
        )

    async def process_question(self, question: str, history: list[dict[str, str]] | None = None) -> dict[str, Any]:
        check = validate_question(question)
        if not check["isValid"]:
            raise ValidationError(check["reason"], field="question")
        history = limit_history([row for row in history or [] if isinstance(row, dict)])
        cache_key = qna_cache_key(question, history)
        cached = await self.cache.get(cache_key)
        if isinstance(cached, dict) and cached.get("success") and isinstance(cached.get("history"), list):
            return {**cached, "metadata": {**(cached.get("metadata") or {}), "cacheHit": True}}

        meta = await self.meta_summary()
        if self.generator is None:
            answer = "AI answers are unavailable right now. Here is the latest meta snapshot:\n" + meta
            return {
                "success": True,
                "fallback": True,
                "answer": answer,
                "history": [*history, {"role": "user", "content": question}, {"role": "assistant", "content": answer}],
                "metadata": {"answeredAt": now_iso(), "cacheHit": False},
            }

        try:
            answer = sanitize_ai_response(await self.generator.generate(build_qna_prompt(question, history, meta)))
        except Exception as error:
            logger.warning("QnA generation failed: %s", error)
            message = describe_ai_error(error)
            return {
                "success": False,
                "error": message,
                "history": [*history, {"role": "user", "content": question}, {"role": "assistant", "content": message}],
                "metadata": {"answeredAt": now_iso(), "cacheHit": False},
            }

        result = {
            "success": True,
            "fallback": False,
            "answer": answer,
            "history": [*history, {"role": "user", "content": question}, {"role": "assistant", "content": answer}],
            "metadata": {"answeredAt": now_iso(), "cacheHit": False, "model": self.generator.model},
        }
        await self.cache.set(cache_key, result, CACHE_TTL["QNA"])
        return result
