"""Build the capability links embedded in a digest."""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlencode

from newsletter.models import Article
from newsletter.tokens import TokenMinter

SURVEY_QUESTION = "Helpful?"


@dataclass
class DigestLinks:
    manage_url: str
    unsubscribe_url: str
    resubscribe_url: str
    # article id -> {"yes": url, "no": url}
    survey_urls: dict[str, dict[str, str]] = field(default_factory=dict)


def _link(base_url: str, path: str, **params: str) -> str:
    return f"{base_url}{path}?{urlencode(params)}"


def build_digest_links(
    minter: TokenMinter,
    base_url: str,
    user_id: str,
    articles: list[Article],
    now: float | None = None,
) -> DigestLinks:
    """Mint one fresh token per link for ``user_id``.

    Every link gets its own nonce, so using one never burns another.
    """
    links = DigestLinks(
        manage_url=_link(base_url, "/manage", token=minter.mint(user_id, now)),
        unsubscribe_url=_link(base_url, "/unsubscribe", token=minter.mint(user_id, now)),
        resubscribe_url=_link(
            base_url, "/unsubscribe", token=minter.mint(user_id, now), action="subscribe"
        ),
    )
    thanks = f"{base_url}/survey/thanks"
    for article in articles:
        links.survey_urls[article.id] = {
            answer: _link(
                base_url,
                "/api/survey",
                token=minter.mint(user_id, now),
                article_id=article.id,
                q=SURVEY_QUESTION,
                a=answer,
                redirect=thanks,
            )
            for answer in ("yes", "no")
        }
    return links
