from __future__ import annotations

from ai_support import (
    build_qna_prompt,
    calculate_grade_from_score,
    create_grade_info,
    extract_improvements,
    extract_key_insights,
    format_meta_decks_for_ai,
    format_player_data_for_ai,
    parse_ai_scores,
    parse_player_deck,
    sanitize_ai_response,
)
from conftest import bruiser_board, make_match, rebel_board, sample_matches
from deck_analyzer import analyze_decks, calculate_tier_rank, select_carry
from match_analyzer import (
    analyze_deck_differences,
    calculate_deck_similarity,
    calculate_synergy_strength,
    evaluate_player_deck_performance,
    find_analysis_targets,
)
from score_calculator import (
    calculate_all_scores,
    calculate_cost_distribution_score,
    calculate_item_equipment_score,
    calculate_meta_fit_score,
    calculate_synergy_diversity_score,
)
from stats_analyzer import analyze_item_stats, analyze_trait_stats


def test_tier_rank_thresholds():
    assert calculate_tier_rank(3.9, 0.62) == {"rank": "S", "order": 1}
    assert calculate_tier_rank(4.2, 0.55) == {"rank": "A", "order": 2}
    assert calculate_tier_rank(3.9, 0.40) == {"rank": "D", "order": 5}
    assert calculate_tier_rank(5.0, 0.30) == {"rank": "D", "order": 5}


def test_select_carry_preference():
    three_star = {"characterId": "a", "tier": 3, "cost": 1, "itemNames": ["x", "y"]}
    four_cost = {"characterId": "b", "tier": 2, "cost": 4, "itemNames": ["x", "y"]}
    holder = {"characterId": "c", "tier": 1, "cost": 2, "itemNames": ["x", "y", "z"]}
    assert select_carry([holder, four_cost, three_star]) is three_star
    assert select_carry([holder, four_cost]) is four_cost
    assert select_carry([holder, {**four_cost, "tier": 1}]) is holder
    assert select_carry([]) is None


def test_analyze_decks_groups_by_trait_and_carry(tft_data):
    decks = analyze_decks(sample_matches(4), tft_data)
    assert [deck["deckKey"] for deck in decks] == ["TFT14_Rebel TFT14_Jinx", "TFT14_Bruiser TFT14_Garen"]

    rebel = decks[0]
    assert rebel["mainTraitName"] == "Rebel"
    assert rebel["carryChampionName"] == "Jinx"
    assert rebel["totalGames"] == 4
    assert rebel["averagePlacement"] == 2.5
    assert rebel["top4Rate"] == 100.0
    assert rebel["winRate"] == 25.0
    assert rebel["pickRate"] == 50.0
    assert rebel["tierRank"] == "S"
    assert [unit["name"] for unit in rebel["coreUnits"]] == ["Jinx", "Vi", "Ekko"]
    assert [item["name"] for item in rebel["coreUnits"][0]["recommendedItems"]] == ["Infinity Edge", "Guinsoo's Rageblade"]
    assert rebel["coreUnits"][0]["tier"] == 2
    assert [(row["name"], row["tierCurrent"]) for row in rebel["synergies"]] == [("Rebel", 2), ("Bruiser", 1)]

    assert decks[1]["tierRank"] == "D"
    assert decks[1]["averagePlacement"] == 8


def test_analyze_decks_respects_min_games(tft_data):
    assert analyze_decks(sample_matches(2), tft_data) == []
    assert len(analyze_decks(sample_matches(2), tft_data, min_games=2)) == 2


def test_item_stats(tft_data):
    assert analyze_item_stats(sample_matches(4), tft_data) == []

    stats = analyze_item_stats(sample_matches(4), tft_data, min_games=4)
    by_id = {row["itemId"]: row for row in stats}
    assert set(by_id) == {"TFT_Item_InfinityEdge", "TFT_Item_GuinsoosRageblade", "TFT14_Item_RebelEmblemItem", "TFT_Item_BFSword"}
    assert by_id["TFT_Item_InfinityEdge"]["averagePlacement"] == 2.5
    assert by_id["TFT_Item_InfinityEdge"]["itemType"] == "completed"
    assert by_id["TFT_Item_BFSword"]["top4Rate"] == 0.0
    assert stats[-1]["itemId"] == "TFT_Item_BFSword"


def test_item_counts_once_per_board(tft_data):
    board = rebel_board("p", 1)
    board["units"][1]["itemNames"] = ["TFT_Item_InfinityEdge"]
    stats = analyze_item_stats([make_match("KR_1", [board])], tft_data, min_games=1)
    infinity_edge = next(row for row in stats if row["itemId"] == "TFT_Item_InfinityEdge")
    assert infinity_edge["totalGames"] == 1


def test_trait_stats(tft_data):
    stats = analyze_trait_stats(sample_matches(4), tft_data, min_games=4)
    assert [row["traitName"] for row in stats] == ["Rebel", "Bruiser"]
    bruiser = stats[1]
    assert bruiser["totalGames"] == 8
    assert bruiser["averagePlacement"] == 5.25
    assert bruiser["top4Rate"] == 50.0
    assert [level["level"] for level in bruiser["activationLevels"]] == [1]
    assert stats[0]["activationLevels"] == []


def test_similarity_and_synergy_strength():
    player = {"units": [{"apiName": "A"}, {"apiName": "B"}, {"apiName": "C"}]}
    assert calculate_deck_similarity(player, {"coreUnits": [{"apiName": "a"}, {"apiName": "b"}, {"apiName": "c"}]}) == 100
    assert calculate_deck_similarity(player, {"coreUnits": [{"apiName": "B"}, {"apiName": "D"}]}) == 25
    assert calculate_deck_similarity({}, {}) == 0
    deck = {"synergies": [{"tierCurrent": 2}, {"tierCurrent": 4}, {"tierCurrent": 7}, {"tierCurrent": 0}]}
    assert calculate_synergy_strength(deck) == 20


def test_player_performance():
    assert evaluate_player_deck_performance({"placement": 1, "eliminated": 36}) == {"placementScore": 100, "survivalScore": 100, "overallPerformance": 100}
    assert evaluate_player_deck_performance({"placement": 6, "eliminated": 22}) == {"placementScore": 38, "survivalScore": 73, "overallPerformance": 56}


def test_find_targets_offers_alternative_to_bottom_four():
    player = {"placement": 7, "units": [{"apiName": "A"}, {"apiName": "B"}], "synergies": []}
    close = {"deckKey": "close", "coreUnits": [{"apiName": "A"}, {"apiName": "B"}], "winCount": 1, "totalGames": 10}
    stronger = {"deckKey": "stronger", "coreUnits": [{"apiName": "A"}, {"apiName": "C"}], "winCount": 5, "totalGames": 10}

    targets = find_analysis_targets(player, [stronger, close])
    assert targets["primaryMatchDeck"]["metaDeck"]["deckKey"] == "close"
    assert targets["alternativeDeck"]["metaDeck"]["deckKey"] == "stronger"
    assert targets["alternativeDeck"]["similarity"] == 33

    top4 = find_analysis_targets({**player, "placement": 3}, [stronger, close])
    assert top4["alternativeDeck"] is None

    empty = find_analysis_targets(player, [])
    assert empty["primaryMatchDeck"] is None
    assert empty["similarities"] == []


def test_deck_differences():
    player = {"units": [{"apiName": "A"}, {"apiName": "X"}], "synergies": [{"apiName": "T1", "tierCurrent": 1}]}
    target = {
        "coreUnits": [{"apiName": "A"}, {"apiName": "B"}],
        "synergies": [{"apiName": "T1", "tierCurrent": 2}],
        "items": [{"name": "Infinity Edge"}, {"name": "Bloodthirster"}, {"name": "Giant Slayer"}, {"name": "Spear"}],
    }
    differences = analyze_deck_differences(player, target)
    assert differences["missingUnits"] == ["b"]
    assert differences["extraUnits"] == ["x"]
    assert differences["synergyDifferences"] == [{"name": "t1", "playerTier": 1, "targetTier": 2, "difference": 1}]
    assert [row["itemName"] for row in differences["itemSuggestions"]] == ["Infinity Edge", "Bloodthirster", "Giant Slayer"]
    assert analyze_deck_differences(player, None)["missingUnits"] == []


def test_score_components():
    assert calculate_meta_fit_score(None) == 0
    assert calculate_meta_fit_score({"similarity": 100, "metaDeck": {"winRate": 25.0, "pickRate": 50.0}}) == 68
    units = [{"cost": cost} for cost in (1, 1, 2, 2, 3, 3, 4, 5)]
    assert calculate_cost_distribution_score(units) == 8
    assert calculate_synergy_diversity_score({"synergies": [{"tierCurrent": 1}] * 4}) == 5
    assert calculate_synergy_diversity_score({"synergies": [{"tierCurrent": 1}] * 2}) == 3
    assert calculate_synergy_diversity_score({"synergies": []}) == 1
    assert calculate_item_equipment_score({"units": [{"items": ["a"]}, {"items": ["b"]}, {"items": []}]}) == 13


def test_all_scores_against_collected_meta(tft_data):
    decks = analyze_decks(sample_matches(4), tft_data)
    player = parse_player_deck(rebel_board("me", 6), tft_data)
    result = calculate_all_scores(player, find_analysis_targets(player, decks))

    scores = result["scores"]
    assert all(0 <= scores[key] <= 100 for key in ("metaFit", "deckCompletion", "itemEfficiency"))
    assert scores["total"] == round(scores["metaFit"] * 0.4 + scores["deckCompletion"] * 0.4 + scores["itemEfficiency"] * 0.2)
    assert result["analysis"]["primaryMatch"]["similarity"] == 100
    assert result["analysis"]["differences"]["missingUnits"] == []
    assert result["analysis"]["growthGuide"] is None
    assert result["metadata"]["playerEliminated"] == 22


def test_parse_player_deck(tft_data):
    deck = parse_player_deck(rebel_board("me", 3), tft_data)
    assert deck["placement"] == 3
    assert deck["eliminated"] == 30
    assert [unit["name"] for unit in deck["units"]] == ["Jinx", "Vi", "Ekko"]
    assert deck["units"][0]["cost"] == 4
    assert [trait["name"] for trait in deck["synergies"]] == ["Rebel", "Bruiser"]

    text = format_player_data_for_ai(deck)
    assert "Jinx (2 star, 4 cost) - items: TFT_Item_InfinityEdge, TFT_Item_GuinsoosRageblade" in text
    assert "Rebel (tier 2, 5 units)" in text

    bare = parse_player_deck(bruiser_board("b", 8))
    assert bare["units"][0]["name"] == "TFT14_Garen"


def test_meta_deck_prompt_block(tft_data):
    assert format_meta_decks_for_ai([]) == "Meta deck data is not available right now."
    block = format_meta_decks_for_ai(analyze_decks(sample_matches(4), tft_data))
    assert block.startswith("1. Rebel (Jinx carry, tier S)")
    assert "   - Core units: Jinx, Vi, Ekko" in block


def test_grades():
    assert calculate_grade_from_score(96) == "S"
    assert calculate_grade_from_score(85) == "A"
    assert calculate_grade_from_score(39) == "F"
    assert create_grade_info("B")["description"] == "Good result"
    assert create_grade_info("Z") == {"grade": "Z", "color": "#6B7280", "description": "Analysis in progress"}


def test_parse_ai_scores_from_text():
    scores = parse_ai_scores("Meta fit: 80\nDeck completion: 70\nItem efficiency: 60")
    assert scores == {"metaFit": 80.0, "deckCompletion": 70.0, "itemEfficiency": 60.0, "total": 70}
    assert parse_ai_scores("Overall total: 120")["total"] == 100.0
    assert parse_ai_scores("")["metaFit"] == 50


def test_sanitize_and_extract():
    assert sanitize_ai_response("**Bold** text\n## Head\n- item") == "Bold text\nHead\n• item"
    text = "Key insights:\n- Strong board\n- Good items\n\nImprovements:\n- Roll earlier"
    assert extract_key_insights(text) == ["Strong board", "Good items"]
    assert extract_improvements(text) == ["Roll earlier"]
    assert extract_key_insights("nothing here") == []


def test_qna_prompt_includes_history():
    prompt = build_qna_prompt("Best carry?", [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}], "Top decks: Rebel")
    assert "User: hi\nAssistant: hello" in prompt
    assert "Current question: Best carry?" in prompt
    assert "Top decks: Rebel" in prompt
    assert "No previous messages." in build_qna_prompt("Best carry?", [])
