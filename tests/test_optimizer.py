"""Unit tests for the text rewrite rules and model reply parsing."""

import pytest

from fixrez.optimizer import (
    build_mock_resume,
    compose_prompt,
    extract_json_candidate,
    extract_llm_text,
    optimize_for_clarity,
    optimize_for_engagement,
    optimize_for_seo,
    parse_resume_json,
    resume_json_to_text,
)


class TestTextRules:
    def test_seo_replaces_whole_words_case_insensitively(self):
        result = optimize_for_seo("Good goods, NICE and great.")
        assert result.startswith("## Overview\n\nexcellent goods, outstanding and exceptional.")
        assert "## Key Benefits" in result

    def test_seo_keeps_existing_structure(self):
        assert optimize_for_seo("## Intro\ngood") == "## Intro\nexcellent"

    def test_engagement_rewrites(self):
        result = optimize_for_engagement("This is important. We help teams.")
        assert result.startswith("This is absolutely crucial! We revolutionize teams!")
        assert result.endswith("Discover the power of AI optimization today!")

    def test_engagement_skips_call_to_action_when_already_inviting(self):
        result = optimize_for_engagement("Learn more here.")
        assert result == "Learn more here!"

    def test_clarity_simplifies_phrases(self):
        result = optimize_for_clarity("In order to ship, due to the fact that we are late, at this point in time")
        assert result.startswith("### Main Points\n\nto ship, because we are late, now")
        assert result.endswith("optimized for maximum clarity and understanding.")


class TestReplyParsing:
    def test_plain_json(self):
        assert parse_resume_json('{"summary": "x"}') == {"summary": "x"}

    def test_json_inside_prose(self):
        reply = 'Sure! Here is the resume: {"summary": "uses {braces} in text"} Hope it helps.'
        assert parse_resume_json(reply) == {"summary": "uses {braces} in text"}

    def test_fenced_json_with_trailing_commas_and_smart_quotes(self):
        reply = "```json\n{“summary”: “Lead”, \"experience\": [{\"title\": \"Dev\",},],}\n```"
        assert parse_resume_json(reply) == {"summary": "Lead", "experience": [{"title": "Dev"}]}

    def test_escaped_quotes_inside_strings(self):
        candidate = extract_json_candidate('note {"a": "say \\"hi\\" }"} trailing')
        assert candidate == '{"a": "say \\"hi\\" }"}'

    def test_no_json_raises(self):
        with pytest.raises(ValueError):
            parse_resume_json("no structured output today")

    def test_non_object_json_raises(self):
        with pytest.raises(ValueError):
            parse_resume_json("[1, 2, 3]")

    def test_content_blocks_are_joined(self):
        blocks = [{"type": "text", "text": '{"a":'}, {"type": "text", "text": " 1}"}]
        assert extract_llm_text(blocks) == '{"a":\n 1}'


class TestPromptAndFlattening:
    def test_prompt_truncates_inputs(self):
        prompt = compose_prompt("r" * 4000, "j" * 2500)
        assert prompt == f"Resume:\n{'r' * 3000}\n\nJob Description:\n{'j' * 2000}"

    def test_resume_json_to_text(self):
        text = resume_json_to_text(build_mock_resume("", "Platform engineering role"))
        lines = text.split("\n")
        assert lines[0] == "Dev User"
        assert "EXPERIENCE" in lines
        assert "Software Engineer | Acme Corp" in lines
        assert "- Built scalable React apps using TypeScript" in lines
        assert "Technical Skills: TypeScript, React, Node.js, AWS, Docker" in lines

    def test_resume_json_to_text_ignores_malformed_sections(self):
        assert resume_json_to_text({"header": "oops", "experience": ["x"], "summary": "Hi"}) == "SUMMARY\nHi"

    def test_resume_json_to_text_ignores_scalar_lists(self):
        data = {"experience": 7, "education": "none", "summary": "Hi"}
        assert resume_json_to_text(data) == "SUMMARY\nHi"
        assert resume_json_to_text({"experience": [{"title": "T", "bullets": 5}]}) == "EXPERIENCE\nT"
