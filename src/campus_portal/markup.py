"""Markup extraction over leniently parsed HTML.

Portal pages are third-party markup that changes without notice and is often
not well-formed, so parsing uses the html5lib tree builder, which recovers
from broken markup the same way browsers do. Callers only ever see the
functions in this module; which parser sits underneath is an implementation
detail.

Selectors are CSS (tag, .class, #id, [attr=value], :has(), ...). An empty
result is a valid answer unless the caller asks for exactly one element.
"""

from bs4 import BeautifulSoup, CData, NavigableString, Tag
from soupsieve import SelectorSyntaxError

from campus_portal.errors import Ambiguous, NotFound, SelectorError
from campus_portal.utils import collapse_whitespace

PARSER = "html5lib"

# elements whose boundaries separate words; inline tags such as <b> do not
BREAK_TAGS: frozenset[str] = frozenset(
    {
        "address", "article", "aside", "blockquote", "br", "dd", "div", "dl", "dt",
        "fieldset", "figcaption", "figure", "footer", "form", "h1", "h2", "h3", "h4",
        "h5", "h6", "header", "hr", "li", "main", "nav", "ol", "p", "pre", "section",
        "table", "tbody", "td", "tfoot", "th", "thead", "tr", "ul",
    }
)
_TEXT_TYPES = (NavigableString, CData)

Node = BeautifulSoup | Tag


def parse_document(html: str) -> BeautifulSoup:
    """Parse markup into a document tree, repairing unclosed or stray tags."""
    return BeautifulSoup(html or "", PARSER)


def select(root: Node, selector: str) -> list[Tag]:
    """All elements under root matching selector, in document order.

    Raises:
        SelectorError: If the selector expression is invalid.
    """
    try:
        return list(root.select(selector))
    except SelectorSyntaxError as e:
        raise SelectorError(f"Invalid selector {selector!r}: {e}") from e


def select_one(root: Node, selector: str) -> Tag:
    """The single element matching selector.

    Raises:
        NotFound: If nothing matches.
        Ambiguous: If more than one element matches.
    """
    matches = select(root, selector)
    if not matches:
        raise NotFound(f"No element matches {selector!r}")
    if len(matches) > 1:
        raise Ambiguous(f"{len(matches)} elements match {selector!r}, expected one")
    return matches[0]


def select_first(root: Node, selector: str) -> Tag | None:
    matches = select(root, selector)
    return matches[0] if matches else None


def _collect_text(element: Node, parts: list[str]) -> None:
    for child in element.children:
        if isinstance(child, Tag):
            boundary = child.name in BREAK_TAGS
            if boundary:
                parts.append("\n")
            _collect_text(child, parts)
            if boundary:
                parts.append("\n")
        elif type(child) in _TEXT_TYPES:
            parts.append(str(child))


def raw_text(element: Node) -> str:
    """Text content with line breaks only at <br> and block boundaries.

    Adjacent text nodes are joined as they are, so a word split by inline
    markup (<b>Lin</b>ear) stays one word. Whitespace is not collapsed.
    """
    parts: list[str] = []
    _collect_text(element, parts)
    return "".join(parts)


def text(element: Node) -> str:
    """Trimmed, whitespace-collapsed text content of element and its descendants."""
    return collapse_whitespace(raw_text(element))


def attribute(element: Tag, name: str) -> str:
    """Value of a named attribute.

    Multi-valued attributes such as class are joined with single spaces.

    Raises:
        NotFound: If the element has no such attribute.
    """
    value = element.get(name)
    if value is None:
        raise NotFound(f"<{element.name}> has no attribute {name!r}")
    if isinstance(value, list):
        return " ".join(value)
    return value


def attribute_or(element: Tag, name: str, default: str | None = None) -> str | None:
    try:
        return attribute(element, name)
    except NotFound:
        return default


def children(element: Node) -> list[Tag]:
    """Direct child elements, skipping text and comment nodes."""
    return [child for child in element.children if isinstance(child, Tag)]
