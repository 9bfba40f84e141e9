import re
from dataclasses import dataclass
from typing import Optional

LOCATION_PREFIX_RE = re.compile(
    r"\b(?:window\.|document\.|top\.|self\.)?location(?:\.href)?\s*=\s*(?=[\"'])"
)
INPUT_TAG_RE = re.compile(
    r"<input\b((?:[^>\"']|\"[^\"]*\"|'[^']*')*)>",
    re.IGNORECASE,
)
ATTR_RE = re.compile(
    r"([^\s=/>\"']+)\s*=\s*(?:\"([^\"]*)\"|'([^']*)'|([^\s\"'>]+))"
)

MAGIC_FIELD = "magic"


@dataclass(frozen=True)
class PortalSession:
    portal_url: str
    magic_token: str


def extract_portal_url(html: str) -> Optional[str]:
    """Return the URL of the first script-level location assignment, verbatim."""
    if not html:
        return None
    match = LOCATION_PREFIX_RE.search(html)
    if not match:
        return None
    start = match.end()
    quote = html[start]
    end = start + 1
    while end < len(html) and html[end] not in (quote, "\r", "\n"):
        end += 1
    if end >= len(html) or html[end] != quote:
        return None
    return html[start + 1 : end] or None


def _input_attrs(tag_body: str) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for match in ATTR_RE.finditer(tag_body):
        name = match.group(1).lower()
        if name in attrs:
            continue
        for value in match.group(2, 3, 4):
            if value is not None:
                attrs[name] = value
                break
    return attrs


def extract_magic_value(html: str) -> Optional[str]:
    """Return the value of the ``magic`` form field exactly as written.

    An explicitly empty value is reported as not found: the portal cannot
    accept a login without a token, so there is nothing to submit.
    """
    if not html:
        return None
    for match in INPUT_TAG_RE.finditer(html):
        attrs = _input_attrs(match.group(1))
        if attrs.get("name") != MAGIC_FIELD:
            continue
        value = attrs.get("value")
        return value or None
    return None


def parse_portal_session(html: str) -> Optional[PortalSession]:
    portal_url = extract_portal_url(html)
    magic = extract_magic_value(html)
    if portal_url is None or magic is None:
        return None
    return PortalSession(portal_url=portal_url, magic_token=magic)


def clean_text(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def extract_error_hint(text: str) -> str:
    if not text:
        return ""
    patterns = (
        r'alert\(["\']([^"\']+)["\']\)',
        r'<p[^>]*class="[^"]*error[^"]*"[^>]*>([^<]+)</p>',
        r'<span[^>]*class="[^"]*error[^"]*"[^>]*>([^<]+)</span>',
        r"<h2[^>]*>([^<]*fail[^<]*)</h2>",
    )
    for pattern in patterns:
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            return clean_text(match.group(1))
    return ""
