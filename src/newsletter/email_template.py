"""Render the digest email as HTML."""

from __future__ import annotations

from html import escape

from newsletter.links import DigestLinks
from newsletter.models import Article, SubscriberPreference

# Inline styles (email clients strip <style> tags)
BODY_STYLE = "font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif; background: #f8fafc; margin: 0; padding: 24px;"
CONTAINER_STYLE = "max-width: 680px; margin: 0 auto; background: #ffffff; border: 1px solid #e5e7eb; border-radius: 8px;"
HEADER_STYLE = "padding: 24px 32px 8px;"
HEADER_TITLE_STYLE = "margin: 0; font-size: 22px; font-weight: 600; color: #111111;"
HEADER_SUB_STYLE = "margin: 6px 0 0; font-size: 14px; color: #555555;"
UNSUB_NOTE_STYLE = "color: #b91c1c; font-weight: 600;"
CONTENT_STYLE = "padding: 8px 32px 16px;"
CARD_STYLE = "padding: 12px 0; border-bottom: 1px solid #f1f5f9;"
TITLE_STYLE = "font-size: 16px; font-weight: 600; line-height: 1.3; margin: 0;"
TITLE_LINK_STYLE = "color: #111111; text-decoration: none;"
SUMMARY_STYLE = "color: #555555; font-size: 14px; margin: 4px 0 0;"
SURVEY_STYLE = "margin-top: 8px;"
SURVEY_LINK_STYLE = "font-size: 12px; color: #2563eb; text-decoration: none; margin-right: 8px;"
FOOTER_STYLE = "padding: 16px 32px 24px; font-size: 12px; color: #6b7280; border-top: 1px solid #e5e7eb;"
FOOTER_LINK_STYLE = "color: #2563eb;"


def _render_article(article: Article, survey: dict[str, str] | None) -> str:
    """Render a single article with its yes/no survey links."""
    summary_html = ""
    if article.summary:
        summary_html = f'<p style="{SUMMARY_STYLE}">{escape(article.summary)}</p>'

    survey_html = ""
    if survey:
        survey_html = f"""
      <div style="{SURVEY_STYLE}">
        <a href="{escape(survey['yes'])}" style="{SURVEY_LINK_STYLE}">&#128077; Helpful</a>
        <a href="{escape(survey['no'])}" style="{SURVEY_LINK_STYLE}">&#128078; Not really</a>
      </div>"""

    return f"""
    <div style="{CARD_STYLE}">
      <p style="{TITLE_STYLE}"><a href="{escape(article.url)}" style="{TITLE_LINK_STYLE}">{escape(article.title)}</a></p>
      {summary_html}{survey_html}
    </div>
    """


def render_digest(
    pref: SubscriberPreference,
    articles: list[Article],
    links: DigestLinks,
    title: str = "Your Newsletter",
) -> str:
    """Render the full digest email.

    Args:
        pref: The recipient's preferences, echoed in the header.
        articles: Article pool for this run, newest first.
        links: Capability links minted for this recipient.
        title: Heading shown at the top of the email.
    """
    header_lines = []
    if pref.interests:
        header_lines.append(f"Interests: {escape(pref.interests)}")
    if pref.timeline:
        header_lines.append(f"Timeline: {escape(pref.timeline)}")
    if pref.unsubscribed:
        header_lines.append(f'<strong style="{UNSUB_NOTE_STYLE}">(Currently unsubscribed)</strong>')
    header_sub = ""
    if header_lines:
        header_sub = f'<p style="{HEADER_SUB_STYLE}">{"<br/>".join(header_lines)}</p>'

    article_cards = "\n".join(
        _render_article(a, links.survey_urls.get(a.id)) for a in articles
    )
    no_articles_msg = ""
    if not articles:
        no_articles_msg = '<p style="text-align: center; color: #6b7280; padding: 40px 0;">Nothing new this time.</p>'

    manage = escape(links.manage_url)
    unsub = escape(links.unsubscribe_url)
    resub = escape(links.resubscribe_url)

    return f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1.0"><title>{escape(title)}</title></head>
<body style="{BODY_STYLE}">
  <div style="{CONTAINER_STYLE}">
    <div style="{HEADER_STYLE}">
      <h1 style="{HEADER_TITLE_STYLE}">{escape(title)}</h1>
      {header_sub}
    </div>
    <div style="{CONTENT_STYLE}">
      {no_articles_msg}
      {article_cards}
    </div>
    <div style="{FOOTER_STYLE}">
      <p>Manage preferences: <a href="{manage}" style="{FOOTER_LINK_STYLE}">link</a></p>
      <p>Unsubscribe: <a href="{unsub}" style="{FOOTER_LINK_STYLE}">link</a> | Resubscribe: <a href="{resub}" style="{FOOTER_LINK_STYLE}">link</a></p>
    </div>
  </div>
</body>
</html>"""
