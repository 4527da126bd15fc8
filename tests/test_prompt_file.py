"""Unit tests for conference/prompt_file.py."""

import textwrap
from pathlib import Path

import pytest

from conference.prompt_file import parse_prompt_file


def test_parse_plain_markdown(tmp_path: Path) -> None:
    f = tmp_path / "prompt.md"
    f.write_text("Should we use Redis or Memcached?\n", encoding="utf-8")
    parsed = parse_prompt_file(f)
    assert parsed.content == "Should we use Redis or Memcached?"
    assert parsed.agents == []
    assert parsed.follow_ups == []


def test_parse_front_matter_lists(tmp_path: Path) -> None:
    f = tmp_path / "prompt.md"
    f.write_text(
        textwrap.dedent("""\
            ---
            agents: [skeptic, synthesist]
            follow_ups:
              - What breaks first at 10x load?
              - Which option is cheaper to run, all things considered?
            ---
            REST or GraphQL for a public API?
        """),
        encoding="utf-8",
    )
    parsed = parse_prompt_file(f)
    assert parsed.content == "REST or GraphQL for a public API?"
    assert parsed.agents == ["skeptic", "synthesist"]
    assert parsed.follow_ups == [
        "What breaks first at 10x load?",
        "Which option is cheaper to run, all things considered?",
    ]


def test_agents_as_comma_string(tmp_path: Path) -> None:
    f = tmp_path / "prompt.md"
    f.write_text("---\nagents: strategist, engineer\nfollow_ups: One more, please\n---\nBody\n", encoding="utf-8")
    parsed = parse_prompt_file(f)
    assert parsed.agents == ["strategist", "engineer"]
    assert parsed.follow_ups == ["One more, please"]


def test_empty_body_rejected(tmp_path: Path) -> None:
    f = tmp_path / "prompt.md"
    f.write_text("---\nagents: [skeptic]\n---\n\n", encoding="utf-8")
    with pytest.raises(ValueError, match="no body"):
        parse_prompt_file(f)
