import re
from bs4 import BeautifulSoup


def clean_html(html_content: str) -> str:
    """
    Extracts readable text from an HTML page.
    Drops scripts, styles and page chrome, and collapses whitespace.
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    # Prefer the main content region when the page marks one
    main = soup.find('main') or soup.find('article') or soup.body or soup

    for tag in main(['script', 'style', 'noscript', 'nav', 'header', 'footer', 'aside']):
        tag.decompose()

    text = main.get_text(" ", strip=True)
    text = re.sub(r'\s+', ' ', text)   # Collapse all whitespace to single spaces
    return text.strip()


def truncate(text: str, limit: int = 200) -> str:
    """Shortens text for log lines and event messages."""
    if len(text) <= limit:
        return text
    return text[:limit - 3] + "..."
