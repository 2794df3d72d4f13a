from __future__ import annotations

import asyncio
import json

import pytest

from ai_services import (
    AIAnalysisService,
    QnAService,
    build_generator,
    describe_ai_error,
    parse_ai_analysis,
    qna_cache_key,
    validate_question,
)
from cache_manager import CacheManager
from conftest import rebel_board, sample_matches
from deck_analyzer import analyze_decks
from env_config import Settings
from http_errors import NotFoundError, ValidationError
from meta_store import MetaStore
from metrics import metrics_collector

AI_REPLY = "```json\n" + json.dumps(
    {
        "scores": {"metaFit": 82, "deckCompletion": 74, "itemEfficiency": 90},
        "summary": "Strong rebel board.",
        "scoreAnalysis": {"metaFit": "Textbook rebels."},
        "keyInsights": ["Jinx was itemized early"],
        "improvements": "Level to 9 sooner",
        "recommendations": {"positioning": ["Corner Jinx"]},
        "comparison": {"vsAverage": "Above average"},
    }
) + "\n```"


class FakeGenerator:
    model = "fake-model"

    def __init__(self, reply: str = AI_REPLY, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeRiot:
    def __init__(self, match: dict) -> None:
        self.match = match
        self.calls = 0

    async def get_match_detail(self, match_id: str, region: str) -> dict:
        self.calls += 1
        return self.match


@pytest.fixture
def store(tmp_path, tft_data):
    store = MetaStore(tmp_path / "store.json")
    asyncio.run(store.replace_all("decktier", analyze_decks(sample_matches(4), tft_data)))
    return store


def make_service(tft_data, store, generator=None):
    match = sample_matches(1)[0]
    match["info"]["participants"].append(rebel_board("me", 6))

    async def load_tft_data():
        return tft_data

    return AIAnalysisService(FakeRiot(match), load_tft_data, generator=generator, store=store, cache=CacheManager())


def test_analysis_without_generator_is_deterministic(tft_data, store):
    service = make_service(tft_data, store)

    result = asyncio.run(service.analyze_match("KR_1", "me", "kr"))
    assert result["success"] is True
    assert result["fallback"] is True
    assert result["reason"] == "GOOGLE_AI_MAIN_API_KEY missing"
    assert result["metadata"]["source"] == "deterministic"
    analysis = result["analysis"]
    assert analysis["aiComments"]["keyInsights"][0] == "Closest meta deck: Rebel Jinx (100% similar)."
    assert analysis["scoreDetails"]["primaryMatch"]["similarity"] == 100
    assert "ai_analysis_KR_1_me" not in service.cache.l1


def test_analysis_with_generator_is_cached(tft_data, store):
    generator = FakeGenerator()
    service = make_service(tft_data, store, generator)

    async def scenario():
        return await service.analyze_match("KR_1", "me", "kr"), await service.analyze_match("KR_1", "me", "kr")

    first, second = asyncio.run(scenario())
    assert first["fallback"] is False
    assert first["metadata"]["model"] == "fake-model"
    assert first["analysis"]["scores"] == {"metaFit": 82, "deckCompletion": 74, "itemEfficiency": 90, "total": 82}
    assert first["analysis"]["grade"]["grade"] == "B"
    assert first["analysis"]["aiComments"]["improvements"] == ["Level to 9 sooner"]
    assert first["analysis"]["recommendations"]["positioning"] == ["Corner Jinx"]
    assert second["metadata"]["cacheHit"] is True
    assert len(generator.prompts) == 1
    assert service.riot.calls == 1
    assert "Rebel (Jinx carry, tier S)" in generator.prompts[0]


def test_generator_failure_falls_back_with_reason(tft_data, store):
    service = make_service(tft_data, store, FakeGenerator(error=RuntimeError("429 RESOURCE_EXHAUSTED: quota")))

    result = asyncio.run(service.analyze_match("KR_1", "me", "kr"))
    assert result["fallback"] is True
    assert result["reason"] == "The AI service usage quota was exceeded. Please try again later."


def test_unreadable_reply_falls_back(tft_data, store):
    service = make_service(tft_data, store, FakeGenerator(reply={"scores": "not text"}))

    result = asyncio.run(service.analyze_match("KR_1", "me", "kr"))
    assert result["fallback"] is True
    assert result["reason"] == "The AI reply could not be read."
    assert result["analysis"]["scoreDetails"]["primaryMatch"]["similarity"] == 100
    assert metrics_collector.performance["ai_analysis"]["metadata"]["outcome"] == {"success": 1}


def test_unknown_participant_is_not_found(tft_data, store):
    service = make_service(tft_data, store)
    with pytest.raises(NotFoundError):
        asyncio.run(service.analyze_match("KR_1", "stranger", "kr"))


def test_parse_ai_analysis_text_reply():
    parsed = parse_ai_analysis("Meta fit: 90\nDeck completion: 90\nItem efficiency: 90\n\nKey insights:\n- Great tempo\n\nSummary: Clean win")
    assert parsed["scores"]["total"] == 90
    assert parsed["grade"]["grade"] == "A"
    assert parsed["aiComments"]["keyInsights"] == ["Great tempo"]
    assert parsed["aiComments"]["summary"] == "Clean win"


def test_parse_ai_analysis_reads_loose_scores():
    reply = json.dumps({"scores": {"metaFit": "85/100", "deckCompletion": 0, "itemEfficiency": "n/a", "item_efficiency": 140}})
    parsed = parse_ai_analysis(reply)
    assert parsed["scores"] == {"metaFit": 85, "deckCompletion": 0, "itemEfficiency": 100, "total": 62}

    parsed = parse_ai_analysis(json.dumps({"scores": {"metaFit": None, "deckCompletion": "unknown"}}))
    assert parsed["scores"]["metaFit"] == 50
    assert parsed["scores"]["deckCompletion"] == 50


def test_describe_ai_error():
    assert "network" in describe_ai_error(asyncio.TimeoutError())
    assert describe_ai_error(RuntimeError("invalid API key")) == "The AI service is not configured correctly."
    assert describe_ai_error(RuntimeError("model not found")) == "The AI model is currently unavailable."
    assert describe_ai_error(RuntimeError("boom")) == "An error occurred while generating the AI analysis."


def test_build_generator_requires_key_and_flag():
    assert build_generator(Settings()) is None
    assert build_generator(Settings(google_ai_key="key", enable_ai_analysis=False)) is None


def test_validate_question():
    assert validate_question("Which Jinx items are best?") == {"isValid": True, "reason": None}
    assert validate_question("   ")["isValid"] is False
    assert validate_question("x" * 1001)["isValid"] is False
    assert validate_question("aaaaaaaaaaaaaaa")["isValid"] is False
    assert validate_question("?!?!")["isValid"] is False
    assert validate_question("12345")["isValid"] is False


def test_qna_cache_key_uses_recent_context():
    history = [{"role": "user", "content": "old"}, {"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]
    assert qna_cache_key("q", history) == qna_cache_key("q", history[1:])
    assert qna_cache_key("q", history) != qna_cache_key("q", [])
    assert qna_cache_key("q", []).startswith("qna_")


def make_qna(tft_data, store, generator=None):
    async def load_tft_data():
        return tft_data

    return QnAService(load_tft_data, generator=generator, store=store, cache=CacheManager())


def test_qna_without_generator_returns_meta_snapshot(tft_data, store):
    result = asyncio.run(make_qna(tft_data, store).process_question("What is strong?", []))
    assert result["fallback"] is True
    assert "Current TFT meta (Set14):" in result["answer"]
    assert "1. Rebel Jinx - avg placement 2.5" in result["answer"]
    assert result["history"][-2] == {"role": "user", "content": "What is strong?"}


def test_qna_answer_is_cached(tft_data, store):
    generator = FakeGenerator(reply="**Play** rebels.")
    service = make_qna(tft_data, store, generator)
    history = [{"role": "user", "content": f"m{index}"} for index in range(12)]

    async def scenario():
        return await service.process_question("What is strong?", history), await service.process_question("What is strong?", history)

    first, second = asyncio.run(scenario())
    assert first["answer"] == "Play rebels."
    assert len(first["history"]) == 12
    assert first["history"][0] == {"role": "user", "content": "m2"}
    assert second["metadata"]["cacheHit"] is True
    assert len(generator.prompts) == 1
    assert "Current question: What is strong?" in generator.prompts[0]


def test_qna_failure_reports_error(tft_data, store):
    service = make_qna(tft_data, store, FakeGenerator(error=TimeoutError("deadline")))
    result = asyncio.run(service.process_question("What is strong?", []))
    assert result["success"] is False
    assert result["history"][-1]["content"] == result["error"]
    assert not any(key.startswith("qna_") for key in service.cache.l1)


def test_qna_rejects_invalid_question(tft_data, store):
    with pytest.raises(ValidationError):
        asyncio.run(make_qna(tft_data, store).process_question("!!!!", []))
