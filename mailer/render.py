"""
mailer/render.py -- Jinja2 rendering of notices into mail messages.

Each notice template lives in mailer/templates/<template>.md. The first line,
"# Subject", becomes the subject and is stripped from the body. The rest is
the plain-text body; the HTML alternative wraps its paragraphs in layout.html
(autoescaped, so user-controlled values such as a display name cannot inject
markup).

The Environment is built once per Renderer and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from mailer.notices import Notice, notice_context

_TEMPLATE_DIR = Path(__file__).parent / "templates"


@dataclass(frozen=True)
class MailMessage:
    to: str
    subject: str
    text: str
    html: str


class Renderer:
    def __init__(self, product_name: str = "Latchkey", template_dir: Path = _TEMPLATE_DIR) -> None:
        self.product_name = product_name
        # StrictUndefined: a notice missing a field its template uses is a bug,
        # not an email with a blank hole in it.
        self._env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            keep_trailing_newline=False,
        )

    def render(self, to: str, notice: Notice) -> MailMessage:
        context = notice_context(notice)
        context["product_name"] = self.product_name
        markdown = self._env.get_template(f"{notice.template}.md").render(**context).strip()
        subject = self.product_name
        if markdown.startswith("# "):
            first, _, rest = markdown.partition("\n")
            subject = first[2:].strip() or subject
            markdown = rest.strip()
        paragraphs = [p.strip() for p in markdown.split("\n\n") if p.strip()]
        html = self._env.get_template("layout.html").render(
            subject=subject,
            paragraphs=paragraphs,
            action_url=context.get("action_url"),
            product_name=self.product_name,
        )
        return MailMessage(to=to, subject=subject, text=markdown, html=html)
