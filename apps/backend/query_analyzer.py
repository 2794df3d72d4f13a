"""Groups slow store queries by shape and suggests indexes.

Run ``python query_analyzer.py --log .cache/logs/slow-queries.log`` to write a
markdown report plus a JSON dump next to it.
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from slow_query_detector import SlowQueryDetector

logger = logging.getLogger(__name__)

SCAN_HINT = "Full collection scan detected. Add an index on the queried fields."
REGEX_HINT = "Regex match detected. Consider a text index."
LIMIT_HINT = "$limit used without $sort. Add a sort or tune the index."
OR_HINT = "Several $or clauses. Split the query or revisit the index strategy."
RANGE_HINT = "Range query detected. Consider a compound index."


def normalize_query(value: Any) -> Any:
    if isinstance(value, list):
        return [normalize_query(item) for item in value]
    if not isinstance(value, dict):
        return value
    out: dict[str, Any] = {}
    for key, item in value.items():
        if isinstance(item, bool):
            out[key] = "<boolean>"
        elif isinstance(item, str):
            out[key] = "<string>"
        elif isinstance(item, (int, float)):
            out[key] = "<number>"
        elif isinstance(item, (datetime, date)):
            out[key] = "<date>"
        elif item is None:
            out[key] = None
        elif isinstance(item, (dict, list)):
            out[key] = normalize_query(item)
        else:
            out[key] = "<value>"
    return out


def create_query_pattern(query: Any) -> str:
    return json.dumps(normalize_query(query or {}), separators=(",", ":"))


def generate_pattern_suggestions(pattern: str, queries: list[dict[str, Any]]) -> list[str]:
    out = []
    sample = queries[0].get("query") if queries else {}
    if "{}" in pattern or not sample:
        out.append(SCAN_HINT)
    if "$regex" in pattern:
        out.append(REGEX_HINT)
    if "$limit" in pattern and "$sort" not in pattern:
        out.append(LIMIT_HINT)
    if pattern.count("$or") > 1:
        out.append(OR_HINT)
    if any(op in pattern for op in ("$gte", "$lte", "$gt", "$lt")):
        out.append(RANGE_HINT)
    return out


def analyze_query_patterns(queries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    groups: dict[str, list[dict[str, Any]]] = {}
    for query in queries:
        groups.setdefault(create_query_pattern(query.get("query")), []).append(query)

    analyses = []
    for pattern, rows in groups.items():
        durations = [float(row.get("duration") or 0) for row in rows]
        analyses.append(
            {
                "pattern": pattern,
                "count": len(rows),
                "avgDuration": sum(durations) / len(durations),
                "maxDuration": max(durations),
                "collections": list(dict.fromkeys(str(row.get("collection")) for row in rows)),
                "operations": list(dict.fromkeys(str(row.get("operation")) for row in rows)),
                "suggestions": generate_pattern_suggestions(pattern, rows),
            }
        )
    analyses.sort(key=lambda row: -row["avgDuration"])
    return analyses


def generate_optimization_suggestions(analyses: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out = []
    for analysis in analyses:
        collection = analysis["collections"][0] if analysis["collections"] else "unknown"
        if analysis["avgDuration"] > 3000:
            out.append(
                {
                    "type": "performance",
                    "priority": "high",
                    "collection": collection,
                    "description": f"Very slow query pattern (avg {analysis['avgDuration']:.0f}ms)",
                    "implementation": "Redesign the query or restructure the stored documents.",
                    "estimatedImprovement": "50-80%",
                }
            )
        if analysis["count"] > 100:
            out.append(
                {
                    "type": "index",
                    "priority": "high",
                    "collection": collection,
                    "description": f"Frequently executed query ({analysis['count']} runs)",
                    "implementation": "Add a dedicated index or cache the result.",
                    "estimatedImprovement": "30-60%",
                }
            )
        if SCAN_HINT in analysis["suggestions"]:
            out.append(
                {
                    "type": "index",
                    "priority": "high",
                    "collection": collection,
                    "description": "Collection scan",
                    "implementation": "Index the queried fields.",
                    "estimatedImprovement": "80-95%",
                }
            )
        if REGEX_HINT in analysis["suggestions"]:
            out.append(
                {
                    "type": "index",
                    "priority": "medium",
                    "collection": collection,
                    "description": "Regex query",
                    "implementation": "Use a text index or a prefix index.",
                    "estimatedImprovement": "40-70%",
                }
            )
    return out


def generate_index_suggestions(analyses: list[dict[str, Any]]) -> list[dict[str, Any]]:
    by_collection: dict[str, dict[str, int]] = {}
    for analysis in analyses:
        fields = re.findall(r'"([^"]+)":', analysis["pattern"])
        for collection in analysis["collections"]:
            counts = by_collection.setdefault(collection, {})
            for field in fields:
                if field.startswith("$"):
                    continue
                counts[field] = counts.get(field, 0) + analysis["count"]
    out = []
    for collection, counts in by_collection.items():
        top = sorted(counts.items(), key=lambda row: -row[1])[:5]
        if top:
            out.append(
                {
                    "collection": collection,
                    "fields": {field: 1 for field, _count in top},
                    "description": "Compound index over the most queried fields",
                    "priority": "high",
                }
            )
    return out


def generate_report(analyses: list[dict[str, Any]], suggestions: list[dict[str, Any]]) -> str:
    avg = sum(a["avgDuration"] for a in analyses) / len(analyses) if analyses else 0
    lines = [
        "# Store query analysis",
        "",
        f"Generated: {datetime.now(timezone.utc).isoformat()}",
        "",
        "## Summary",
        "",
        f"- Query patterns: {len(analyses)}",
        f"- Optimization suggestions: {len(suggestions)}",
        f"- Average duration: {avg:.2f}ms",
        "",
        "## Slowest patterns",
        "",
    ]
    for index, analysis in enumerate(analyses[:10], start=1):
        lines.append(f"### {index}. {analysis['collections'][0]} - {analysis['operations'][0]}")
        lines.append(f"- Runs: {analysis['count']}")
        lines.append(f"- Average duration: {analysis['avgDuration']:.2f}ms")
        lines.append(f"- Max duration: {analysis['maxDuration']:.2f}ms")
        lines.append(f"- Pattern: `{analysis['pattern']}`")
        if analysis["suggestions"]:
            lines.append("- Suggestions:")
            lines.extend(f"  - {row}" for row in analysis["suggestions"])
        lines.append("")

    lines.extend(["## Optimization suggestions", ""])
    for priority, heading in (("high", "### High priority"), ("medium", "### Medium priority")):
        rows = [row for row in suggestions if row["priority"] == priority]
        if not rows:
            continue
        lines.extend([heading, ""])
        for index, row in enumerate(rows, start=1):
            lines.append(f"{index}. **{row['collection']}** - {row['description']}")
            lines.append(f"   - Implementation: {row['implementation']}")
            lines.append(f"   - Estimated improvement: {row['estimatedImprovement']}")
            lines.append("")
    return "\n".join(lines)


def analyze(queries: list[dict[str, Any]]) -> dict[str, Any]:
    analyses = analyze_query_patterns(queries)
    suggestions = generate_optimization_suggestions(analyses)
    return {"analyses": analyses, "suggestions": suggestions, "indexSuggestions": generate_index_suggestions(analyses)}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Analyze the slow query log and suggest optimizations.")
    parser.add_argument("--log", type=Path, default=Path.cwd() / ".cache" / "logs" / "slow-queries.log")
    parser.add_argument("--limit", type=int, default=1000)
    parser.add_argument("--out", type=Path, default=Path.cwd() / "query-analysis-report.md")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    detector = SlowQueryDetector(log_path=args.log)
    loaded = detector.analyze_slow_queries(args.limit)
    queries = loaded["queries"]
    if not queries:
        logger.info("No slow queries to analyze in %s", args.log)
        return 0

    result = analyze(queries)
    summary = loaded["summary"]
    logger.info("Analyzed %s slow queries (avg %.2fms)", summary["total"], summary["averageDuration"])
    logger.info("Patterns: %s, suggestions: %s, index suggestions: %s", len(result["analyses"]), len(result["suggestions"]), len(result["indexSuggestions"]))

    args.out.parent.mkdir(parents=True, exist_ok=True)
    args.out.write_text(generate_report(result["analyses"], result["suggestions"]), encoding="utf-8")
    json_path = args.out.with_suffix(".json")
    json_path.write_text(json.dumps({"summary": summary, **result}, indent=2, default=str), encoding="utf-8")
    logger.info("Report written to %s and %s", args.out, json_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
