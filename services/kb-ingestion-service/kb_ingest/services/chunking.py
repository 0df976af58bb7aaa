"""Greedy character-bounded chunking of fetched markdown."""

from __future__ import annotations

import re
from collections.abc import Iterator

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n+")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?:;])\s+")


def normalize_to_markdown(content: str) -> str:
    normalized = content.replace("\r\n", "\n").replace("\r", "\n")
    out_lines: list[str] = []
    in_code_block = False

    for line in normalized.split("\n"):
        if line.strip().startswith("```"):
            out_lines.append(line.rstrip())
            in_code_block = not in_code_block
            continue

        if in_code_block or not line:
            out_lines.append(line)
            continue

        match = re.match(r"^[ \t]*", line)
        leading = match.group(0) if match else ""
        body = line[len(leading) :]
        if body.count("|") >= 2:
            out_lines.append(f"{leading}{body.rstrip()}")
            continue

        collapsed = re.sub(r"[ \t]+", " ", body).rstrip()
        out_lines.append(f"{leading}{collapsed}")

    return "\n".join(out_lines)


def _hard_split(word: str, max_chars: int) -> list[str]:
    return [word[i : i + max_chars] for i in range(0, len(word), max_chars)]


def _pack(pieces: list[str], separator: str, max_chars: int) -> list[str]:
    packed: list[str] = []
    current = ""
    for piece in pieces:
        if not current:
            current = piece
        elif len(current) + len(separator) + len(piece) <= max_chars:
            current = f"{current}{separator}{piece}"
        else:
            packed.append(current)
            current = piece
    if current:
        packed.append(current)
    return packed


def _split_words(sentence: str, max_chars: int) -> list[str]:
    words: list[str] = []
    for word in sentence.split():
        if len(word) > max_chars:
            words.extend(_hard_split(word, max_chars))
        else:
            words.append(word)
    return _pack(words, " ", max_chars)


def _split_sentences(line: str, max_chars: int) -> list[str]:
    sentences: list[str] = []
    for sentence in _SENTENCE_BREAK.split(line):
        sentence = sentence.strip()
        if not sentence:
            continue
        if len(sentence) > max_chars:
            sentences.extend(_split_words(sentence, max_chars))
        else:
            sentences.append(sentence)
    return _pack(sentences, " ", max_chars)


def _split_paragraph(paragraph: str, max_chars: int) -> list[str]:
    lines: list[str] = []
    for line in paragraph.split("\n"):
        line = line.rstrip()
        if not line.strip():
            continue
        if len(line) > max_chars:
            lines.extend(_split_sentences(line, max_chars))
        else:
            lines.append(line)
    return _pack(lines, "\n", max_chars)


def split_into_chunks(text: str | None, max_chars: int = 1000) -> Iterator[str]:
    """Yield non-empty chunks of at most ``max_chars`` characters.

    Paragraphs are packed greedily and joined with a blank line. A paragraph that
    does not fit on its own falls back to line packing, then sentence packing, then
    word packing, and
    a single word longer than the limit is cut on character boundaries.
    Whitespace-only input yields nothing.
    """
    if max_chars < 1:
        raise ValueError("max_chars must be >= 1")
    if not text or not text.strip():
        return

    current = ""
    for raw_paragraph in _PARAGRAPH_BREAK.split(normalize_to_markdown(text)):
        paragraph = raw_paragraph.strip()
        if not paragraph:
            continue

        if not current and len(paragraph) <= max_chars:
            current = paragraph
            continue
        if current and len(current) + 2 + len(paragraph) <= max_chars:
            current = f"{current}\n\n{paragraph}"
            continue

        if current:
            yield current
            current = ""

        if len(paragraph) <= max_chars:
            current = paragraph
            continue

        pieces = _split_paragraph(paragraph, max_chars)
        for piece in pieces[:-1]:
            yield piece
        current = pieces[-1] if pieces else ""

    if current.strip():
        yield current.strip()
