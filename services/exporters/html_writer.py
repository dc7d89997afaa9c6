"""HTML writer for rendered articles."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from core.config import settings
from core.logger import logger
from utils.html_utils import escape_attr, escape_html

# Same delimiter set the article viewer hands to KaTeX auto-render
KATEX_DELIMITERS = [
    {"left": "$$", "right": "$$", "display": True},
    {"left": "\\(", "right": "\\)", "display": False},
    {"left": "\\[", "right": "\\]", "display": True},
    {"left": "\\begin{equation}", "right": "\\end{equation}", "display": True},
    {"left": "\\begin{align}", "right": "\\end{align}", "display": True},
    {"left": "\\begin{gather}", "right": "\\end{gather}", "display": True},
    {"left": "\\begin{displaymath}", "right": "\\end{displaymath}", "display": True},
]

PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{title}</title>
<link rel="stylesheet" href="{katex_url}/katex.min.css">
<script defer src="{katex_url}/katex.min.js"></script>
<script defer src="{katex_url}/contrib/auto-render.min.js"></script>
<script>
document.addEventListener("DOMContentLoaded", function () {{
  renderMathInElement(document.body, {{delimiters: {delimiters}, throwOnError: false}});
}});
</script>
<style>
body {{ max-width: 52rem; margin: 2rem auto; padding: 0 1rem; font-family: Georgia, serif; line-height: 1.5; }}
.article-title {{ font-size: 2rem; font-weight: bold; text-align: center; }}
.article-subtitle, .article-author {{ text-align: center; }}
.article-equation {{ overflow-x: auto; margin: 1rem 0; }}
.article-theorem, .article-proof {{ margin: 1rem 0; }}
.article-theorem-title {{ font-weight: bold; }}
.article-proof .article-theorem-title {{ font-style: italic; font-weight: normal; }}
.article-table {{ border-collapse: collapse; margin: 1rem auto; }}
.article-table th, .article-table td {{ border: 1px solid #ccc; padding: 0.25rem 0.5rem; }}
.footnote {{ display: block; font-size: 0.85em; color: #555; }}
.tex-error, .error-message {{ color: #a00; }}
</style>
</head>
<body>
<article>
{body}
</article>
</body>
</html>
"""


class HTMLWriter:
    """Persist rendered article fragments as standalone pages."""

    def __init__(self, output_dir: Optional[Path] = None) -> None:
        self.output_dir = Path(output_dir) if output_dir is not None else settings.output_dir
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def build_page(self, body_html: str, title: str = "Article") -> str:
        return PAGE_TEMPLATE.format(
            title=escape_html(title),
            katex_url=escape_attr(settings.katex_url.rstrip("/")),
            delimiters=json.dumps(KATEX_DELIMITERS),
            body=body_html,
        )

    def write_article(self, body_html: str, name: str, title: Optional[str] = None) -> Path:
        """Write one article page; returns the written path."""
        path = self.output_dir / f"{Path(name).stem}.html"
        logger.info("Writing HTML to %s", path)
        path.write_text(self.build_page(body_html, title or Path(name).stem), encoding="utf-8")
        return path
