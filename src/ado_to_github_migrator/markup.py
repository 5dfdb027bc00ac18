"""
Convert the HTML stored in Azure DevOps rich-text fields to GitHub Markdown.
"""

from __future__ import annotations

import re
from typing import Final

from bs4 import BeautifulSoup, Comment
from markdownify import ATX, MarkdownConverter

from .exceptions import MarkupConversionError

# Dropped together with their content
_DROPPED_TAGS: Final[tuple[str, ...]] = ("script", "style")


def html_to_markdown(content: str) -> str:
    """Convert an HTML fragment to Markdown with ATX headings and ``-`` bullets.

    Raises:
        MarkupConversionError: If the fragment cannot be parsed or rendered
    """
    if not content:
        return ""

    try:
        soup = BeautifulSoup(content, "html.parser")
        for node in soup.find_all(_DROPPED_TAGS):
            node.decompose()
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()
        markdown = MarkdownConverter(heading_style=ATX, bullets="-").convert_soup(soup)
    except (RecursionError, ValueError, TypeError, AttributeError) as e:
        msg = f"Failed to convert HTML to Markdown: {e}"
        raise MarkupConversionError(msg) from e

    return _tidy(markdown)


def _tidy(markdown: str) -> str:
    lines = [line.rstrip() for line in markdown.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()
