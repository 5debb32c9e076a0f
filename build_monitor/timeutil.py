"""
Clock and time formatting helpers

Provides the current time, GitLab timestamp parsing, relative
"time ago" humanization and the fixed-format "last run" stamp.

This module uses only Python standard library (no pip dependencies).
"""

from datetime import datetime, timezone

# Format of the "last run" stamp, e.g. 'Mon, 2026-10-19 14:03:00'
LAST_RUN_FORMAT = '%a, %Y-%m-%d %H:%M:%S'

# (upper bound in seconds, label, unit in seconds) - thresholds mirror the
# usual "a few seconds ago" / "a minute ago" / "3 hours ago" wording
_RELATIVE_THRESHOLDS = (
    (45, 'a few seconds', None),
    (90, 'a minute', None),
    (45 * 60, '{n} minutes', 60),
    (90 * 60, 'an hour', None),
    (22 * 3600, '{n} hours', 3600),
    (36 * 3600, 'a day', None),
    (26 * 86400, '{n} days', 86400),
    (45 * 86400, 'a month', None),
    (320 * 86400, '{n} months', 30 * 86400),
    (548 * 86400, 'a year', None),
)


def utcnow():
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_timestamp(value):
    """Parse a GitLab ISO 8601 timestamp

    GitLab sends values like '2024-05-01T10:20:30.123Z'. Naive values are
    assumed to be UTC.

    Returns:
        datetime: Timezone-aware datetime, or None for empty/unparseable input
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def time_ago(moment, now=None):
    """Humanize the distance between moment and now

    Examples: 'a few seconds ago', '5 minutes ago', '3 days ago', 'in 2 hours'
    """
    if moment is None:
        return ''
    now = now or utcnow()
    delta = (now - moment).total_seconds()
    seconds = abs(delta)

    phrase = None
    for bound, label, unit in _RELATIVE_THRESHOLDS:
        if seconds < bound:
            phrase = label.format(n=round(seconds / unit)) if unit else label
            break
    if phrase is None:
        years = round(seconds / (365 * 86400))
        phrase = f'{years} years'

    if delta < 0:
        return f'in {phrase}'
    return f'{phrase} ago'


def format_last_run(moment=None):
    """Fixed-format local timestamp of a poll cycle start"""
    moment = moment or datetime.now()
    return moment.strftime(LAST_RUN_FORMAT)
