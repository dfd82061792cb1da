"""
Markdown import: YAML frontmatter and heading-delimited sections.

A file becomes one memory per section. Sections start at level 1 or 2
headings; text before the first heading is its own section. Deeper
headings stay inside their section.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

_HEADING_RE = re.compile(r"^#{1,2}\s+\S")


@dataclass
class MarkdownSection:
    """One section of a Markdown file."""
    content: str
    tags: list[str] = field(default_factory=list)


def split_frontmatter(text: str) -> tuple[str, list[str]]:
    """
    Separate YAML frontmatter from the body.

    ``tags`` may be a list or a comma-separated string.

    Returns:
        (body, tags) tuple. Tags empty if no frontmatter.

    Raises:
        ValueError: If the frontmatter is not valid YAML
    """
    if not text.startswith("---"):
        return text, []
    parts = text.split("---", 2)
    if len(parts) < 3:
        return text, []
    try:
        frontmatter = yaml.safe_load(parts[1]) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid frontmatter: {e}") from e
    body = parts[2].lstrip("\n")
    if not isinstance(frontmatter, dict):
        return body, []
    raw = frontmatter.get("tags") or []
    if isinstance(raw, str):
        raw = raw.split(",")
    tags = [str(t).strip() for t in raw if str(t).strip()]
    return body, tags


def parse_markdown(text: str) -> list[MarkdownSection]:
    """Split Markdown text into sections carrying the frontmatter tags."""
    body, tags = split_frontmatter(text)
    sections = []
    current: list[str] = []
    in_fence = False

    def flush():
        content = "\n".join(current).strip()
        if content:
            sections.append(MarkdownSection(content=content, tags=list(tags)))

    for line in body.splitlines():
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
        if not in_fence and _HEADING_RE.match(line) and current:
            flush()
            current = []
        current.append(line)
    flush()
    return sections


def parse_markdown_file(path: Path) -> list[MarkdownSection]:
    return parse_markdown(Path(path).read_text(encoding="utf-8"))


def find_markdown_files(directory: Path) -> list[Path]:
    """All ``*.md`` files under ``directory``, sorted, skipping hidden dirs."""
    directory = Path(directory)
    return sorted(
        p for p in directory.rglob("*.md")
        if p.is_file() and not any(part.startswith(".") for part in p.relative_to(directory).parts)
    )
