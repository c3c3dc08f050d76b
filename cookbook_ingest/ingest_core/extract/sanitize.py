from __future__ import annotations

import re
from dataclasses import dataclass, field

import trafilatura
from bs4 import BeautifulSoup
from readability import Document

REMOVED_TAGS = (
    "script",
    "style",
    "noscript",
    "iframe",
    "svg",
    "nav",
    "header",
    "footer",
    "aside",
    "form",
    "button",
    "input",
    "select",
    "textarea",
)

NAV_CLASS_PATTERN = re.compile(
    r"(^|[-_ ])(nav|navbar|menu|breadcrumb|sidebar|cookie|banner|advert|ads|social|share|newsletter|popup|modal|comments?)([-_ ]|$)",
    re.IGNORECASE,
)

MIN_MAIN_TEXT_CHARS = 200


@dataclass(slots=True)
class PageMetadata:
    title: str | None = None
    description: str | None = None
    author: str | None = None
    site_name: str | None = None
    canonical_url: str | None = None
    language: str | None = None
    image_url: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "title": self.title,
            "description": self.description,
            "author": self.author,
            "siteName": self.site_name,
            "canonicalUrl": self.canonical_url,
            "language": self.language,
            "imageUrl": self.image_url,
        }


@dataclass(slots=True)
class SanitizedPage:
    text: str
    method: str
    metadata: PageMetadata = field(default_factory=PageMetadata)


def normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _meta_content(soup: BeautifulSoup, *selectors: tuple[str, str]) -> str | None:
    for attr, value in selectors:
        tag = soup.find("meta", attrs={attr: value})
        if tag and tag.get("content"):
            content = str(tag["content"]).strip()
            if content:
                return content
    return None


def extract_metadata(soup: BeautifulSoup) -> PageMetadata:
    title = _meta_content(soup, ("property", "og:title"))
    if not title and soup.title and soup.title.string:
        title = soup.title.string.strip() or None

    canonical = None
    link = soup.find("link", rel="canonical")
    if link and link.get("href"):
        canonical = str(link["href"]).strip() or None

    language = None
    html_tag = soup.find("html")
    if html_tag and html_tag.get("lang"):
        language = str(html_tag["lang"]).strip() or None

    return PageMetadata(
        title=title,
        description=_meta_content(soup, ("name", "description"), ("property", "og:description")),
        author=_meta_content(soup, ("name", "author"), ("property", "article:author")),
        site_name=_meta_content(soup, ("property", "og:site_name"), ("name", "application-name")),
        canonical_url=canonical,
        language=language,
        image_url=_meta_content(soup, ("property", "og:image")),
    )


def strip_boilerplate(soup: BeautifulSoup) -> BeautifulSoup:
    for tag in soup.find_all(REMOVED_TAGS):
        tag.decompose()
    for tag in soup.find_all(True):
        if tag.decomposed:
            continue
        classes = " ".join(tag.get("class") or [])
        marker = f"{classes} {tag.get('id') or ''} {tag.get('role') or ''}"
        if NAV_CLASS_PATTERN.search(marker) and tag.name not in ("html", "body", "main", "article"):
            tag.decompose()
    return soup


class HtmlSanitizer:
    """Turns raw HTML into review-safe text plus page metadata."""

    def sanitize(self, html: str) -> SanitizedPage:
        soup = BeautifulSoup(html or "", "html.parser")
        metadata = extract_metadata(soup)

        methods = (
            ("trafilatura", self._extract_trafilatura),
            ("readability", self._extract_readability),
        )
        for method, fn in methods:
            text = normalize_text(fn(html))
            if len(text) >= MIN_MAIN_TEXT_CHARS:
                return SanitizedPage(text=text, method=method, metadata=metadata)

        cleaned = strip_boilerplate(soup)
        return SanitizedPage(
            text=normalize_text(cleaned.get_text("\n")),
            method="raw",
            metadata=metadata,
        )

    def _extract_trafilatura(self, html: str) -> str:
        if not html:
            return ""
        extracted = trafilatura.extract(html, output_format="txt", include_comments=False)
        return extracted if isinstance(extracted, str) else ""

    def _extract_readability(self, html: str) -> str:
        if not html:
            return ""
        try:
            summary_html = Document(html).summary(html_partial=True)
        except Exception:
            return ""
        soup = strip_boilerplate(BeautifulSoup(summary_html, "html.parser"))
        return soup.get_text("\n")
