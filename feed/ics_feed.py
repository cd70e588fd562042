"""Fetcher for team iCalendar feeds."""
import base64
import binascii
import logging
import re
from typing import Optional
from urllib.parse import parse_qs, quote, unquote, urlparse, urlunparse

import requests

from processor.exceptions import FetchError, InvalidFeedError, ValidationError

logger = logging.getLogger(__name__)

CALENDAR_MARKER = 'BEGIN:VCALENDAR'
GOOGLE_HOST = 'calendar.google.com'
GOOGLE_FEED_TEMPLATE = 'https://calendar.google.com/calendar/ical/{}/public/basic.ics'
OUTLOOK_PAGE = re.compile(r'/owa/calendar/.+/calendar\.html$', re.IGNORECASE)


def normalize_feed_url(url: str) -> str:
    """
    Rewrite browser-facing calendar URLs to their direct feed URL.

    Args:
        url: URL as entered by a coach or admin

    Returns:
        Canonical feed URL

    Raises:
        ValidationError: If the URL is not an absolute http(s) URL
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError('icsUrl is required')

    url = url.strip()
    lowered = url.lower()
    if lowered.startswith('webcals://'):
        url = 'https://' + url[len('webcals://'):]
    elif lowered.startswith('webcal://'):
        url = 'https://' + url[len('webcal://'):]

    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValidationError(f'icsUrl is not a valid http(s) URL: {url}')

    host = parsed.hostname or ''
    if host == GOOGLE_HOST and '/calendar/ical/' not in parsed.path:
        calendar_id = _google_calendar_id(parsed.query)
        if calendar_id:
            canonical = GOOGLE_FEED_TEMPLATE.format(quote(calendar_id, safe=''))
            logger.info(f"Normalized Google Calendar page URL to feed URL: {canonical}")
            return canonical

    if OUTLOOK_PAGE.search(parsed.path):
        path = parsed.path[:-len('.html')] + '.ics'
        canonical = urlunparse(parsed._replace(path=path))
        logger.info(f"Normalized Outlook calendar page URL to feed URL: {canonical}")
        return canonical

    return url


def _google_calendar_id(query: str) -> Optional[str]:
    params = parse_qs(query)
    if params.get('src'):
        return unquote(params['src'][0])
    if params.get('cid'):
        cid = params['cid'][0]
        # cid is usually the base64 encoded calendar address
        try:
            padded = cid + '=' * (-len(cid) % 4)
            decoded = base64.urlsafe_b64decode(padded).decode('utf-8')
            if '@' in decoded:
                return decoded
        except (binascii.Error, UnicodeDecodeError):
            pass
        return unquote(cid)
    return None


class IcsFeedFetcher:
    """Downloads raw iCalendar text for a team feed."""

    ACCEPT = 'text/calendar, text/plain, */*'
    USER_AGENT = 'ChampionTrackPro/1.0 (+ics-sync)'

    def __init__(self, timeout: int = 30):
        """
        Initialize the feed fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.timeout = timeout

    def fetch(self, url: str, timeout: Optional[float] = None) -> str:
        """
        Fetch a calendar feed.

        The request is attempted once; the next scheduled run is the retry.

        Args:
            url: Feed URL, possibly a calendar page URL
            timeout: Optional override of the request timeout in seconds

        Returns:
            Raw iCalendar text

        Raises:
            ValidationError: If the URL is malformed
            FetchError: On transport failure or non-2xx status
            InvalidFeedError: If the body is not an iCalendar document
        """
        feed_url = normalize_feed_url(url)
        logger.info(f"Fetching calendar feed: {feed_url}")

        try:
            response = requests.get(
                feed_url,
                headers={'Accept': self.ACCEPT, 'User-Agent': self.USER_AGENT},
                timeout=timeout if timeout is not None else self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Calendar feed request failed: {e}")
            raise FetchError(f'Fetch ICS failed: {e}') from e

        if not 200 <= response.status_code < 300:
            logger.error(
                f"Calendar feed returned HTTP {response.status_code} for {feed_url}"
            )
            raise FetchError(
                f'Fetch ICS HTTP {response.status_code}',
                status=response.status_code
            )

        if 'charset' not in response.headers.get('Content-Type', '').lower():
            response.encoding = 'utf-8'
        text = response.text.lstrip('\ufeff')

        if not text.strip():
            raise InvalidFeedError('Calendar feed body is empty')
        if CALENDAR_MARKER not in text:
            raise InvalidFeedError(f'Calendar feed has no {CALENDAR_MARKER} marker')

        logger.info(f"Fetched {len(text)} characters of ICS data")
        return text
