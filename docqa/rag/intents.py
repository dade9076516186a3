"""Query intent patterns and retrieval query expansion."""
import re
from typing import List

AUTHOR_QUERY = re.compile(
    r"\b(author|authors|who wrote|written by|who is the author|author name|writer|byline)\b",
    re.IGNORECASE,
)
TITLE_QUERY = re.compile(
    r"\b(title|what is the title|book title|name of the (paper|document|book))\b",
    re.IGNORECASE,
)
TOC_QUERY = re.compile(
    r"\b(chapter|chapters|table of contents|contents|list chapters)\b",
    re.IGNORECASE,
)
OVERVIEW_QUERY = re.compile(
    r"\b(abstract|summary|summari[sz]e|overview|what is (this|the) (document|paper|book)? ?about"
    r"|purpose|objective|aim|main idea)\b",
    re.IGNORECASE,
)

# (pattern, hint terms) in the order hints are appended
_EXPANSIONS = [
    (TITLE_QUERY, "title document title paper title front page heading name of paper heading title page"),
    (AUTHOR_QUERY, "author authors byline writer creator contributors affiliation"),
    (OVERVIEW_QUERY, "abstract summary overview main takeaways key points"),
    (re.compile(r"\bkeywords?\b", re.IGNORECASE), "keywords key words index terms subject headings"),
    (
        re.compile(r"\b(references?|bibliography|citations?)\b", re.IGNORECASE),
        "references bibliography citations works cited DOI list of references",
    ),
    (
        re.compile(r"\brequirements?\b", re.IGNORECASE),
        "requirements functional requirements security requirements FR SR",
    ),
]

_GENERIC_HINT = "summary key points details clauses title authors keywords references"


def is_front_matter_query(query: str) -> bool:
    """Title or author request."""
    return bool(TITLE_QUERY.search(query) or AUTHOR_QUERY.search(query))


def is_overview_query(query: str) -> bool:
    return bool(OVERVIEW_QUERY.search(query))


def expand_query(question: str) -> str:
    """Append domain hint terms to a question for embedding-based retrieval.

    The original phrasing is kept first; a generic hint is added when no
    specific intent matches.
    """
    additions: List[str] = [hint for pattern, hint in _EXPANSIONS if pattern.search(question)]
    if not additions:
        additions.append(_GENERIC_HINT)
    return f"{question} {' '.join(additions)}"
