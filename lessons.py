"""
PedaClic — lesson log (cahier de textes) kept by each prof.
A notebook per class and subject holds one entry per session; these helpers
parse session times and summarise a notebook.
"""
import re

from scoring import round_half_up

CONTENT_TYPES = ('cours', 'exercices', 'correction', 'devoir_surveille', 'devoir_maison',
                 'travaux_pratiques', 'evaluation', 'revision')
SESSION_STATUSES    = ('realise', 'planifie', 'annule', 'reporte')
EVALUATION_TYPES    = ('interro', 'ds', 'examen', 'oral', 'autre')
EVALUATION_STATUSES = ('a_evaluer', 'evaluation_creee', 'evaluation_terminee')
DEFAULT_COLOR = '#2563eb'
TIME_RE  = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')
COLOR_RE = re.compile(r'^#[0-9a-fA-F]{6}$')


def default_title(subject: str, grade: str, school_year: str) -> str:
    return f'{subject} - {grade} {school_year}'.strip()


def minutes(value: str) -> int:
    """'08:30' -> 510. Raises ValueError."""
    m = TIME_RE.match(value or '')
    if not m:
        raise ValueError('Times must use the HH:MM format.')
    return int(m.group(1)) * 60 + int(m.group(2))


def session_hours(start: str, end: str) -> float:
    if not start or not end:
        return 0.0
    return max(0, minutes(end) - minutes(start)) / 60


def notebook_stats(entries: list) -> dict:
    """entries: dicts with status, content_type, start_time, end_time."""
    stats = {'total': len(entries), 'by_type': {}, 'hours': 0.0}
    stats.update({status: 0 for status in SESSION_STATUSES})
    for e in entries:
        stats[e['status']] = stats.get(e['status'], 0) + 1
        stats['by_type'][e['content_type']] = stats['by_type'].get(e['content_type'], 0) + 1
        stats['hours'] += session_hours(e.get('start_time'), e.get('end_time'))
    stats['hours'] = round(stats['hours'], 2)
    return stats


def progress_rate(done: int, planned: int) -> int:
    if not planned:
        return 0
    return min(100, round_half_up(done / planned * 100))
