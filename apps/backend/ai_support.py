from __future__ import annotations

import re
from typing import Any

from tft_data import as_list, unit_cost

GRADE_INFO = {
    "S": ("#FFD700", "Flawless game"),
    "A": ("#10B981", "Excellent result"),
    "B": ("#3B82F6", "Good result"),
    "C": ("#F59E0B", "Average result"),
    "D": ("#EF4444", "Below average"),
    "F": ("#DC2626", "Needs improvement"),
}
GRADE_THRESHOLDS = ((95, "S"), (85, "A"), (70, "B"), (55, "C"), (40, "D"))

SYSTEM_ROLE = (
    "You are a Teamfight Tactics coach who reviews ranked games. "
    "You compare a player's final board with the current meta and give concrete, honest advice."
)
QNA_SYSTEM_ROLE = (
    "You are a friendly Teamfight Tactics assistant. "
    "Answer questions about compositions, items, augments and game strategy for the current set."
)
ANALYSIS_FORMAT = """Reply with a single JSON object and nothing else:
{
  "scores": {"metaFit": 0-100, "deckCompletion": 0-100, "itemEfficiency": 0-100},
  "summary": "two or three sentences",
  "scoreAnalysis": {"metaFit": "...", "deckCompletion": "...", "itemEfficiency": "..."},
  "keyInsights": ["..."],
  "improvements": ["..."],
  "nextSteps": "...",
  "recommendations": {"positioning": ["..."], "itemPriority": ["..."], "synergies": ["..."]},
  "comparison": {"vsAverage": "...", "vsTopPlayers": "..."}
}"""
QNA_FORMAT = "Answer in plain text, in at most three short paragraphs. Use bullet points for lists."


def calculate_grade_from_score(score: float) -> str:
    for minimum, grade in GRADE_THRESHOLDS:
        if score >= minimum:
            return grade
    return "F"


def create_grade_info(grade: str) -> dict[str, str]:
    grade = grade or "C"
    color, description = GRADE_INFO.get(grade, ("#6B7280", "Analysis in progress"))
    return {"grade": grade, "color": color, "description": description}


def normalize_score(score: float, minimum: float = 0, maximum: float = 100) -> int:
    return int(round(max(minimum, min(maximum, score))))


def parse_player_deck(participant: dict[str, Any], tft_data: dict[str, Any] | None = None) -> dict[str, Any]:
    tft_data = tft_data or {}
    champion_map = tft_data.get("championMap") or {}
    return {
        "placement": int(participant.get("placement") or 0),
        "eliminated": int(participant.get("last_round") or 0),
        "level": int(participant.get("level") or 1),
        "goldLeft": int(participant.get("gold_left") or 0),
        "totalDamage": int(participant.get("total_damage_to_players") or 0),
        "augments": [str(name) for name in as_list(participant.get("augments"))],
        "units": [
            {
                "apiName": str(unit.get("character_id") or "Unknown"),
                "name": (champion_map.get(str(unit.get("character_id") or "").lower()) or {}).get("name") or unit.get("character_id") or "Unknown",
                "tier": int(unit.get("tier") or 1),
                "cost": unit_cost(tft_data, unit.get("character_id"), unit.get("rarity")),
                "items": [str(name) for name in as_list(unit.get("itemNames"))],
            }
            for unit in as_list(participant.get("units"))
        ],
        "synergies": [
            {
                "apiName": str(trait.get("name") or "Unknown"),
                "name": ((tft_data.get("traitMap") or {}).get(str(trait.get("name") or "").lower()) or {}).get("name") or trait.get("name") or "Unknown",
                "numUnits": int(trait.get("num_units") or 0),
                "style": int(trait.get("style") or 0),
                "tierCurrent": int(trait.get("tier_current") or 0),
            }
            for trait in as_list(participant.get("traits"))
            if int(trait.get("style") or 0) > 0
        ],
    }


def format_player_data_for_ai(player_deck: dict[str, Any]) -> str:
    units = "\n".join(
        f"{unit['name']} ({unit['tier']} star, {unit['cost'] or '?'} cost) - items: {', '.join(unit['items']) or 'none'}" for unit in player_deck["units"]
    )
    synergies = "\n".join(f"{trait['name']} (tier {trait['tierCurrent']}, {trait['numUnits']} units)" for trait in player_deck["synergies"])
    return "\n".join(
        [
            "=== Player board ===",
            f"Placement: {player_deck['placement']}",
            f"Level: {player_deck['level']}",
            f"Gold left: {player_deck['goldLeft']}",
            f"Damage to players: {player_deck['totalDamage']}",
            "",
            "Units:",
            units or "none",
            "",
            "Active traits:",
            synergies or "none",
        ]
    )


def format_meta_decks_for_ai(meta_decks: list[dict[str, Any]]) -> str:
    if not meta_decks:
        return "Meta deck data is not available right now."
    blocks = []
    for index, deck in enumerate(meta_decks, start=1):
        core = ", ".join(str(unit.get("name")) for unit in as_list(deck.get("coreUnits"))) or "unknown"
        blocks.append(
            "\n".join(
                [
                    f"{index}. {deck.get('mainTraitName') or 'Unknown deck'} ({deck.get('carryChampionName') or '?'} carry, tier {deck.get('tierRank') or '?'})",
                    f"   - Core units: {core}",
                    f"   - Win rate: {deck.get('winRate') or 0}%",
                    f"   - Pick rate: {deck.get('pickRate') or 0}%",
                    f"   - Average placement: {deck.get('averagePlacement') or 0}",
                    f"   - Games: {deck.get('totalGames') or 0}",
                ]
            )
        )
    return "\n\n".join(blocks)


SCORE_PATTERN = re.compile(r"([A-Za-z][A-Za-z ]*?)\s*[:：]\s*(\d+(?:\.\d+)?)")


def parse_ai_scores(text: str) -> dict[str, int | float]:
    found: dict[str, float] = {}
    for key, value in SCORE_PATTERN.findall(text or ""):
        key = key.lower()
        if "meta" in key:
            found["metaFit"] = float(value)
        elif "deck" in key or "completion" in key:
            found["deckCompletion"] = float(value)
        elif "item" in key or "efficiency" in key:
            found["itemEfficiency"] = float(value)
        elif "total" in key or "overall" in key:
            found["total"] = float(value)
    meta_fit = max(0.0, min(100.0, found.get("metaFit", 50)))
    completion = max(0.0, min(100.0, found.get("deckCompletion", 50)))
    items = max(0.0, min(100.0, found.get("itemEfficiency", 50)))
    total = max(0.0, min(100.0, found["total"])) if "total" in found else round((meta_fit + completion + items) / 3)
    return {"metaFit": meta_fit, "deckCompletion": completion, "itemEfficiency": items, "total": total}


def build_analysis_prompt(player_data: str, meta_data: str, context: str = "") -> str:
    parts = [SYSTEM_ROLE, context, "Current meta decks:", meta_data, player_data, ANALYSIS_FORMAT, "Follow the format above exactly."]
    return "\n\n".join(part for part in parts if part).strip()


def build_qna_prompt(question: str, history: list[dict[str, str]], meta_data: str = "") -> str:
    history_text = "\n".join(f"{'User' if row.get('role') == 'user' else 'Assistant'}: {row.get('content', '')}" for row in history) or "No previous messages."
    parts = [QNA_SYSTEM_ROLE, meta_data, "Conversation so far:", history_text, f"Current question: {question}", QNA_FORMAT]
    return "\n\n".join(part for part in parts if part).strip()


def sanitize_ai_response(text: str) -> str:
    text = re.sub(r"```[\s\S]*?```", "", text or "")
    text = re.sub(r"\*\*(.*?)\*\*", r"\1", text)
    text = re.sub(r"\*(.*?)\*", r"\1", text)
    text = re.sub(r"#{1,6}\s*", "", text)
    text = re.sub(r"^\s*[-*+]\s*", "• ", text, flags=re.M)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _extract_bullets(text: str, headings: tuple[str, ...]) -> list[str]:
    for heading in headings:
        match = re.search(rf"{heading}[:\s]*(.*?)(?=\n\n|$)", text or "", flags=re.S | re.I)
        if not match:
            continue
        lines = [line.strip() for line in match.group(1).split("\n")]
        bullets = [re.sub(r"^[-•]\s*", "", line) for line in lines if line.startswith(("-", "•"))]
        return [line for line in bullets if line]
    return []


def extract_key_insights(text: str) -> list[str]:
    return _extract_bullets(text, ("key insights", "main findings", "important points"))


def extract_improvements(text: str) -> list[str]:
    return _extract_bullets(text, ("improvements", "how to improve", "recommendations"))


def extract_section(text: str, headings: tuple[str, ...], default: str) -> str:
    for heading in headings:
        match = re.search(rf"{heading}[:\s]*(.*?)(?=\n\n|$)", text or "", flags=re.S | re.I)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return default
