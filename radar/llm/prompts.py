"""Prompt templates for all LLM tasks."""

TRIAGE_PROMPT_ID = "triage_v1"
AGGREGATE_PROMPT_ID = "aggregate_summary_v1"
CATCHUP_PROMPT_ID = "catchup_pack_v1"

SYSTEM_ANALYST = """You are a research assistant curating a personal feed for one reader.
Be concise and factual. Judge items by how much genuine signal they carry.
Never fabricate information. If uncertain, say so."""

TRIAGE = """\
Rate how much high-signal, novel information this item carries for a reader \
following the topic "{topic}". {tier_hint}

TITLE: {title}
SOURCE: {source_type}
PUBLISHED: {published_at}
CONTENT:
{content}

Respond in EXACTLY this JSON format (no markdown, no extra text):
{{
    "schema_version": "triage_v1",
    "prompt_id": "triage_v1",
    "aha_score": 0,
    "reason": "Short explanation of why this is (or is not) high-signal.",
    "is_relevant": true,
    "is_novel": true,
    "categories": ["category"],
    "should_deep_summarize": false
}}
aha_score is an integer from 0 (noise) to 100 (must read)."""

TIER_HINTS = {
    "low": "Be brief; a one-line reason is enough.",
    "normal": "",
    "high": "Take care to separate real developments from rehashed news.",
}

AGGREGATE_SUMMARY = """\
Summarize the following {count} items collected for the reader \
({scope_type} scope, {window}).

ITEMS:
{items}

Respond in EXACTLY this JSON format (no markdown, no extra text):
{{
    "schema_version": "aggregate_summary_v1",
    "prompt_id": "aggregate_summary_v1",
    "one_liner": "One sentence capturing the period",
    "overview": "2-4 sentence overview",
    "sentiment": {{"label": "positive|neutral|negative", "confidence": 0.5, "rationale": "..."}},
    "themes": [{{"title": "...", "summary": "...", "item_ids": ["id"]}}],
    "notable_items": [{{"item_id": "id", "why": "..."}}],
    "open_questions": ["..."],
    "suggested_followups": ["..."]
}}
Only use item ids that appear in ITEMS."""

CATCHUP_PACK = """\
The reader has {minutes} minutes to catch up on "{topic}" for {window}. \
From the candidate items below, build a reading plan with three tiers:
- must_read: up to {must_read} items worth reading in full
- worth_scanning: up to {worth_scanning} items worth a quick look
- headlines: up to {headlines} items where the headline is enough
Group the selected items into a few themes. Write for a normal person, \
not a technical system.

CANDIDATES:
{items}

Respond in EXACTLY this JSON format (no markdown, no extra text):
{{
    "schema_version": "catchup_pack_v1",
    "prompt_id": "catchup_pack_v1",
    "tiers": {{
        "must_read": [{{"item_id": "id", "why": "...", "theme": "..."}}],
        "worth_scanning": [{{"item_id": "id", "why": "...", "theme": "..."}}],
        "headlines": [{{"item_id": "id", "why": "...", "theme": "..."}}]
    }},
    "themes": [{{"title": "...", "summary": "...", "item_ids": ["id"]}}],
    "notes": null
}}
Each item id may appear in at most one tier. Only use ids from CANDIDATES."""
