"""
rendering.py — Email rendering for delivered itineraries and operator notices.

HTML is built with f-strings; every user-supplied value goes through
html.escape.  The generated itinerary is Markdown text and is shown
preformatted (white-space: pre-wrap) rather than converted.
"""

import json
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from html import escape

from schemas import TripRequest

NO_DOCUMENT_TEXT = 'The itinerary could not be generated.'


@dataclass(frozen=True)
class RenderedEmail:
    subject:   str
    html_body: str
    text_body: str


def _e(value, fallback='') -> str:
    return escape(str(value)) if value else fallback


def render_itinerary_email(request: TripRequest, document: str) -> RenderedEmail:
    """Render the recipient-facing email for one itinerary."""
    city     = request.destination or 'your destination'
    greeting = f'Hello, {_e(request.recipient_name)}!' if request.recipient_name else 'Hello!'
    dates    = request.dates_label
    dates_html = f'<p class="dates">{_e(dates)}</p>' if dates else ''
    body     = document or NO_DOCUMENT_TEXT

    html = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Your trip to {_e(city)}</title>
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333;
               max-width: 800px; margin: 0 auto; padding: 20px; }}
        .header {{ background: #2c3e50; color: #fff; padding: 30px; text-align: center;
                  border-radius: 10px 10px 0 0; }}
        .header h1 {{ margin: 0; }}
        .dates {{ margin: 8px 0 0; color: #e67e22; }}
        .content {{ background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; }}
        .itinerary {{ background: #fff; padding: 20px; border-radius: 5px; margin-top: 20px;
                     white-space: pre-wrap; }}
        .footer {{ text-align: center; margin-top: 30px; color: #666; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="header">
        <h1>Your trip to {_e(city)}</h1>
        {dates_html}
    </div>
    <div class="content">
        <p>{greeting}</p>
        <p>Your personal itinerary is ready. Here is the day-by-day plan:</p>
        <div class="itinerary">{escape(body)}</div>
        <div class="footer">
            <p>AI Travel Planner</p>
            <p>This is an automated message, please do not reply.</p>
        </div>
    </div>
</body>
</html>
"""
    text = f'Your trip to {city}\n'
    if dates:
        text += f'{dates}\n'
    text += f'\n{body}\n'

    return RenderedEmail(subject=f'Your trip itinerary for {city}', html_body=html, text_body=text)


def render_failure_notice(error: BaseException, context: dict | None = None) -> RenderedEmail:
    """Minimal diagnostic email for the operator address."""
    context  = context or {}
    err_type = type(error).__name__
    trace    = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
    ctx_json = json.dumps(context, indent=2, default=str, ensure_ascii=False)
    when     = datetime.now(timezone.utc).isoformat(timespec='seconds')

    html = f"""<h2>Itinerary pipeline failure</h2>
<p><strong>When:</strong> {escape(when)}</p>
<p><strong>Error:</strong> {escape(err_type)}: {escape(str(error))}</p>
<pre>{escape(trace)}</pre>
<h3>Context</h3>
<pre>{escape(ctx_json)}</pre>
"""
    text = f'Itinerary pipeline failure at {when}\n\n{err_type}: {error}\n\n{trace}\nContext:\n{ctx_json}\n'
    return RenderedEmail(
        subject=f'[trip-planner] Itinerary generation failed: {err_type}',
        html_body=html,
        text_body=text,
    )
