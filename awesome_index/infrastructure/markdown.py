import logging
from typing import Iterable, Iterator, List

from markdown_it import MarkdownIt
from markdown_it.token import Token

from awesome_index.domain.exceptions import DocumentParseException, InvalidEntityIdException
from awesome_index.domain.models import EntityId, Link

logger = logging.getLogger(__name__)

# CommonMark plus the GFM table/strikethrough rules most awesome lists rely on.
_PARSER = MarkdownIt("commonmark").enable(["table", "strikethrough"])

_TEXT_TOKENS = {"text", "code_inline"}
_BREAK_TOKENS = {"softbreak", "hardbreak"}


def extract_links(markdown: str) -> List[Link]:
    """
    Parses a markdown document into the links it contains, in document order.

    Each link carries the heading path active where it appeared. Level-1
    headings are treated as the document title and ignored; links that do not
    point at a known repository host are dropped.

    Raises:
        DocumentParseException: If the parser produced an inconsistent token stream.
    """
    return extract_links_from_tokens(_PARSER.parse(markdown))


def extract_links_from_tokens(tokens: Iterable[Token]) -> List[Link]:
    stream = _flatten(tokens)
    section: List[str] = []
    links: List[Link] = []

    for token in stream:
        if token.type == "heading_open":
            level = int(token.tag[1:])
            if level == 1:
                continue
            title = _consume(stream, token)
            del section[level - 2:]
            section.append(title)

        elif token.type == "link_open":
            # The label must be consumed even though only the destination matters.
            _consume(stream, token)
            href = token.attrGet("href")
            try:
                target = EntityId.parse_url(str(href or ""))
            except InvalidEntityIdException:
                continue
            links.append(Link(target=target, section=tuple(section)))

    logger.debug(f"Extracted {len(links)} links.")
    return links


def _flatten(tokens: Iterable[Token]) -> Iterator[Token]:
    """Yields block tokens with the children of inline tokens spliced in place."""
    for token in tokens:
        if token.type == "inline" and token.children:
            yield from token.children
        else:
            yield token


def _consume(stream: Iterator[Token], opening: Token) -> str:
    """
    Advances the stream past the token closing `opening`, returning the text found inside.
    """
    closing = opening.type[: -len("_open")] + "_close"
    parts: List[str] = []

    for token in stream:
        if token.nesting == 1:
            parts.append(_consume(stream, token))
        elif token.nesting == -1:
            if token.type != closing:
                raise DocumentParseException(
                    f"Could not parse content: unexpected closing token '{token.type}', expected '{closing}'."
                )
            return " ".join("".join(parts).split())
        elif token.type in _TEXT_TOKENS:
            parts.append(token.content)
        elif token.type in _BREAK_TOKENS:
            parts.append(" ")

    raise DocumentParseException(f"Could not parse content: '{opening.type}' is never closed.")
