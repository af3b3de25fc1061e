"""
Text preparation for speech synthesis.

Chat replies arrive as Markdown; the synthesizer should hear the words, not
the markup. Long replies are cut into short chunks so synthesis can start
before the whole reply has been sent upstream.
"""

from typing import List

from markdown_it import MarkdownIt

_markdown = MarkdownIt("commonmark").enable(["table", "strikethrough"])

# Block closings that end a line of spoken text
_LINE_BREAK_TOKENS = frozenset(
    {
        "heading_close",
        "paragraph_close",
        "list_item_close",
        "bullet_list_close",
        "ordered_list_close",
        "blockquote_close",
        "table_close",
        "tr_close",
        "th_close",
        "td_close",
    }
)


def markdown_to_plain_text(text: str) -> str:
    """
    Render Markdown as plain text suitable for speech output.

    Inline markup (emphasis, links, code spans, strikethrough) is dropped and
    its text kept. Block elements end with a newline, soft breaks become
    spaces. Raw HTML is discarded.

    Example:
        >>> markdown_to_plain_text("Hello **world**!")
        'Hello world!'
    """
    parts: List[str] = []

    for token in _markdown.parse(text):
        if token.type == "inline":
            for child in token.children or []:
                if child.type in ("text", "code_inline", "image"):
                    parts.append(child.content)
                elif child.type == "softbreak":
                    parts.append(" ")
                elif child.type == "hardbreak":
                    parts.append("\n")

        elif token.type in ("fence", "code_block"):
            parts.append(token.content)
            parts.append("\n")

        elif token.type in _LINE_BREAK_TOKENS:
            # paragraphs inside tight list items are hidden
            if token.type == "paragraph_close" and token.hidden:
                continue
            parts.append("\n")

    return "".join(parts).strip()


def chunk_text(text: str, limit: int = 100) -> List[str]:
    """
    Split text into chunks of at most ``limit`` characters.

    Text within the limit is returned as a single untouched chunk. Longer
    text is split on whitespace and words are packed greedily; a run without
    whitespace that exceeds the limit (e.g. CJK text) is cut hard.

    Returns:
        List of non-empty chunks, empty for empty input
    """
    if not text:
        return []

    if len(text) <= limit:
        return [text]

    chunks: List[str] = []
    current = ""

    for word in text.split():
        while len(word) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(word[:limit])
            word = word[limit:]

        if not word:
            continue

        if current and len(current) + 1 + len(word) > limit:
            chunks.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word

    if current:
        chunks.append(current)

    return chunks
