"""Judge prompts."""

JUDGE_SYSTEM_PROMPT = (
    "You are a senior cybersecurity news editor. Decide whether an incoming "
    "article is a DUPLICATE of existing coverage, an UPDATE to an existing "
    "story, or a DISTINCT story that deserves its own article."
)

JUDGE_PROMPT = """Compare the INCOMING article against the EXISTING articles.

DISTINCT - publish as a separate article if:
- It reports a different incident or vulnerability
- Different threat actor or campaign, even if an actor is shared
- Different affected organization or product
- Substantially different technical details

DUPLICATE - skip if:
- Same incident/vulnerability with different wording
- Same story from another outlet
- No new information beyond an existing article
- Less detailed than an existing article

UPDATE - merge into an existing article if it reports, for the same incident:
- New developments or consequences
- New technical details (CVEs, IOCs, TTPs)
- Additional victims of the same campaign
- Patch or mitigation information for the same vulnerability
- Expert analysis or attribution

EXISTING ARTICLES:
{existing_articles}

INCOMING ARTICLE ({incoming_date}):
Headline: {incoming_headline}
Summary: {incoming_summary}
Full Report: {incoming_report}
Sources:
{incoming_sources}

For DUPLICATE or UPDATE, "matched_article_id" must be the id of one EXISTING
article above. For UPDATE, fill every field of "update" using the INCOMING
article and its sources.

Respond in JSON:
{{
    "decision": "distinct" or "duplicate" or "update",
    "matched_article_id": "existing article id, null if distinct",
    "reasoning": "1-2 sentence explanation",
    "update": {{
        "datetime": "ISO 8601 time of the new development",
        "summary": "50-150 character summary of what is new",
        "content": "200-800 character standalone description of the new information",
        "sources": [{{"url": "https://...", "title": "Source title"}}],
        "severity_change": "increased" or "decreased" or "unchanged" or "unknown"
    }} or null
}}"""

EXISTING_ARTICLE_TEMPLATE = """[Article id={id}] ({published})
Headline: {headline}
Summary: {summary}
Full Report: {full_report}"""
