import json

import pytest

from kibble.catalog import CatalogFeed
from kibble.llm.prompts import (
    build_discover_prompt,
    build_facts_prompt,
    build_summarize_prompt,
    extract_json,
    load_json_list,
    parse_numbered_lines,
)
from kibble.models import ScrapedContent


def test_facts_prompt_carries_count_instructions_and_word_bounds():
    prompt = build_facts_prompt("Space", "the cosmos", "No myths.", "Playful.", 5, 10, 30)

    assert 'Generate exactly 5 unique, interesting, and accurate facts about the topic: "Space".' in prompt
    assert "Topic description: the cosmos" in prompt
    assert "Additional instructions: No myths." in prompt
    assert "Tone and style: Playful." in prompt
    assert "between 10 and 30 words" in prompt
    assert "REFERENCE MATERIAL" not in prompt


def test_facts_prompt_puts_research_first():
    prompt = build_facts_prompt("Bees", "", "", "", 3, research="## Bee\nBees are insects.")

    assert prompt.startswith("=== REFERENCE MATERIAL ===")
    assert "## Bee\nBees are insects." in prompt
    assert prompt.index("END REFERENCE MATERIAL") < prompt.index("Generate exactly 3")


def test_parse_numbered_lines_strips_markers_and_blanks():
    text = "1. First fact.\n\n2) Second fact.\n- Third fact.\n*  Fourth fact.\n   \nPlain fifth fact."

    assert parse_numbered_lines(text) == [
        "First fact.",
        "Second fact.",
        "Third fact.",
        "Fourth fact.",
        "Plain fifth fact.",
    ]


def test_parse_numbered_lines_keeps_leading_numbers_that_are_content():
    assert parse_numbered_lines("1. 1969 was the year of the first Moon landing.") == [
        "1969 was the year of the first Moon landing."
    ]


def test_discover_prompt_lists_suggestions_and_community_domains():
    feeds = [CatalogFeed(name="NASA", url="https://nasa.gov/rss", description="")]
    prompt = build_discover_prompt(
        "Space",
        "rockets",
        "Prefer RSS.",
        feeds,
        ["spacenews.com", "esa.int"],
    )

    assert "Topic: Space\nDescription: rockets" in prompt
    assert "Prefer RSS." in prompt
    assert "- NASA (https://nasa.gov/rss)" in prompt
    assert "- spacenews.com\n- esa.int\n" in prompt
    assert "Return ONLY a valid JSON array" in prompt


def test_summarize_prompt_numbers_sources_and_lists_existing_titles():
    contents = [
        ScrapedContent(source_name="NASA", url="https://nasa.gov/rss", content="ARTICLE: Launch"),
        ScrapedContent(source_name="r/space", url="https://reddit.com/r/space", content="REDDIT POST: Hi"),
    ]
    prompt = build_summarize_prompt(
        "Space", contents, "Be brief.", "", 4, existing_titles=["Old story", ""]
    )

    assert "--- Source 1: NASA ---\nURL: https://nasa.gov/rss\nARTICLE: Launch" in prompt
    assert "--- Source 2: r/space ---" in prompt
    assert "Do NOT repeat them:\n- Old story\n" in prompt
    assert "identify the 4 most interesting" in prompt
    assert "Tone and style" not in prompt


@pytest.mark.parametrize(
    "raw",
    [
        '[{"url": "https://a.com"}]',
        '```json\n[{"url": "https://a.com"}]\n```',
        'Sure! Here you go:\n[{"url": "https://a.com"}]\nHope that helps.',
        '{"sources": [{"url": "https://a.com"}]}',
        '{"whatever": [{"url": "https://a.com"}], "count": 1}',
    ],
)
def test_load_json_list_recovers_arrays(raw):
    assert load_json_list(raw, "sources") == [{"url": "https://a.com"}]


def test_load_json_list_wraps_single_object():
    assert load_json_list('{"url": "https://a.com", "name": "A"}', "sources") == [
        {"url": "https://a.com", "name": "A"}
    ]


def test_load_json_list_rejects_garbage():
    with pytest.raises(ValueError):
        load_json_list("I could not find any sources.", "sources")
    with pytest.raises(ValueError):
        load_json_list("42", "sources")


def test_extract_json_leaves_clean_payload_alone():
    payload = json.dumps([{"title": "t", "summary": "s"}])
    assert extract_json(payload) == payload
