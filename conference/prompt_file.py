"""Prompt files: Markdown body with optional YAML front matter."""

from dataclasses import dataclass, field
from pathlib import Path

import frontmatter


@dataclass
class PromptFile:
    content: str
    agents: list[str] = field(default_factory=list)
    follow_ups: list[str] = field(default_factory=list)


def _as_list(value, split_commas: bool) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",") if split_commas else [value]
    else:
        items = [str(v) for v in value]
    return [item.strip() for item in items if item.strip()]


def parse_prompt_file(file_path: Path) -> PromptFile:
    """Parse a prompt file.

    Front matter keys: ``agents`` (list or comma-separated string) and
    ``follow_ups`` (messages posted as later rounds). Both optional.

    Raises:
        ValueError: If the body is empty.
    """
    post = frontmatter.load(str(file_path))
    content = post.content.strip()
    if not content:
        raise ValueError(f"Prompt file has no body: {file_path}")
    return PromptFile(
        content=content,
        agents=_as_list(post.metadata.get("agents"), split_commas=True),
        follow_ups=_as_list(post.metadata.get("follow_ups"), split_commas=False),
    )
