import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from .. import clock, config
from ..database import get_store
from ..errors import ForbiddenError, NotFoundError
from ..models import FOUND_REPORTS, LOST_REPORTS, FoundReportStatus, LostReportStatus

_logger = logging.getLogger(__name__)

# English plus common Kinyarwanda function words; "lost", "found" and "item"
# appear in nearly every report and carry no signal
STOPWORDS = frozenset([
    'the', 'a', 'an', 'in', 'on', 'at', 'to', 'for', 'of', 'and', 'or', 'is', 'it',
    'was', 'be', 'been', 'being', 'have', 'has', 'had', 'do', 'does', 'did', 'will',
    'would', 'could', 'should', 'may', 'might', 'must', 'shall', 'can', 'need', 'dare',
    'ought', 'used', 'my', 'your', 'his', 'her', 'its', 'our', 'their', 'this', 'that',
    'these', 'those', 'i', 'you', 'he', 'she', 'we', 'they', 'what', 'which', 'who',
    'whom', 'whose', 'where', 'when', 'why', 'how', 'all', 'each', 'every', 'both',
    'few', 'more', 'most', 'other', 'some', 'such', 'no', 'not', 'only', 'same', 'so',
    'than', 'too', 'very', 'just', 'also', 'now', 'here', 'there', 'then', 'once',
    'with', 'about', 'after', 'before', 'above', 'below', 'between', 'into', 'through',
    'during', 'under', 'again', 'further', 'while', 'lost', 'found', 'item',
    'mu', 'ku', 'ni', 'na', 'ndi', 'uri', 'ari', 'dufite', 'nta', 'hari', 'ya', 'yo',
    'by', 'bya', 'cy', 'cya', 'ry', 'rya', 'wa', 'wo', 'ba', 'bo', 'ka', 'ko', 'ha',
])

MIN_TOKEN_LENGTH = 3

_PUNCTUATION = re.compile(r'[^\w\s]')


# Text utilities
def tokenize(text: str) -> List[str]:
    cleaned = _PUNCTUATION.sub(' ', (text or '').lower())
    return [w for w in cleaned.split() if w.strip()]


def _build_text(report: dict) -> str:
    title = report.get('title') or ''
    desc = report.get('description') or ''
    return f"{title} {desc}".strip()


def extract_keywords(text: str) -> set:
    """Distinct meaningful tokens of a free-text field."""
    return {
        w for w in tokenize(text)
        if len(w) >= MIN_TOKEN_LENGTH and w not in STOPWORDS
    }


def _normalize_area(area: Optional[str]) -> str:
    return ' '.join((area or '').split()).lower()


@dataclass
class MatchScore:
    """Score of one lost/found pair with its human-readable breakdown."""
    score: int = 0
    explanation: List[str] = field(default_factory=list)
    contributions: List[Tuple[str, int]] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    excluded: bool = False

    def add(self, label: str, points: int):
        self.score += points
        self.contributions.append((label, points))
        self.explanation.append(f"{label} (+{points})")

    def to_dict(self) -> Dict:
        return {
            'score': self.score,
            'explanation': list(self.explanation),
            'keywords': list(self.keywords),
        }


def score_pair(lost: dict, found: dict) -> MatchScore:
    """
    Score how likely a found report is the item described by a lost report.

    Category is a hard filter: a mismatch yields an excluded score of 0.
    Otherwise points accrue for category, location area, time proximity and
    every shared keyword, and each award is listed in the explanation.
    """
    result = MatchScore()
    category = lost.get('category')
    if not category or category != found.get('category'):
        result.excluded = True
        return result

    result.add(f"Category match: {category}", config.MATCH_CATEGORY_POINTS)

    lost_area = _normalize_area(lost.get('location_area'))
    if lost_area and lost_area == _normalize_area(found.get('location_area')):
        result.add(f"Same location area: {lost.get('location_area').strip()}", config.MATCH_SAME_AREA_POINTS)

    lost_at = clock.as_utc(lost.get('lost_at'))
    found_at = clock.as_utc(found.get('found_at'))
    if lost_at and found_at:
        gap = abs(found_at - lost_at)
        if gap <= timedelta(hours=24):
            result.add("Found within 24 hours of loss", config.MATCH_WITHIN_24H_POINTS)
        elif gap <= timedelta(hours=72):
            result.add("Found within 72 hours of loss", config.MATCH_WITHIN_72H_POINTS)

    shared = sorted(extract_keywords(_build_text(lost)) & extract_keywords(_build_text(found)))
    result.keywords = shared
    for word in shared:
        result.add(f'Keyword match: "{word}"', config.MATCH_KEYWORD_POINTS)

    return result


def rank_candidates(subject: dict, candidates: List[dict], subject_is_lost: bool = True,
                    limit: int = None) -> List[dict]:
    """Score candidates against a report and keep the best displayable ones."""
    limit = config.MATCH_MAX_RESULTS if limit is None else limit
    ranked = []
    for candidate in candidates:
        lost, found = (subject, candidate) if subject_is_lost else (candidate, subject)
        match = score_pair(lost, found)
        if match.excluded or match.score < config.MATCH_MINIMUM_SCORE:
            continue
        when = clock.as_utc(candidate.get('found_at' if subject_is_lost else 'lost_at'))
        ranked.append((match, when, candidate))

    # Highest score first, then the most recent report
    ranked.sort(key=lambda r: (-r[0].score, -(r[1].timestamp() if r[1] else 0.0)))
    return [
        {'report': candidate, **match.to_dict()}
        for match, _, candidate in ranked[:limit]
    ]


def find_matches(lost_report_id: str, actor=None) -> List[dict]:
    """Top found-report candidates for a lost report, best first."""
    from .report_service import public_found_report
    store = get_store()
    lost = store.get(LOST_REPORTS, lost_report_id)
    if not lost:
        raise NotFoundError('Lost report not found')
    if actor is not None and not actor.is_admin and lost.get('owner_id') != actor.user_id:
        raise ForbiddenError('Only the owner can view matches for this report')

    candidates = store.query(FOUND_REPORTS, [
        ('status', '==', FoundReportStatus.UNCLAIMED.value),
        ('category', '==', lost.get('category')),
    ])
    rejected = set(lost.get('rejected_found_report_ids') or [])
    candidates = [c for c in candidates if c.get('found_report_id') not in rejected]

    results = rank_candidates(lost, candidates, subject_is_lost=True)
    _logger.info("Matched lost report %s against %d candidates, %d shown",
                 lost_report_id, len(candidates), len(results))
    return [
        {'found_report': public_found_report(r.pop('report')), **r}
        for r in results
    ]


def find_matches_for_found_report(found_report_id: str, actor=None) -> List[dict]:
    """Top lost-report candidates for a found report, best first."""
    from .report_service import public_lost_report
    store = get_store()
    found = store.get(FOUND_REPORTS, found_report_id)
    if not found:
        raise NotFoundError('Found report not found')
    if actor is not None and not actor.is_admin:
        is_finder = found.get('finder_id') == actor.user_id
        is_staff = (actor.is_coop_staff and found.get('cooperative_id')
                    and found.get('cooperative_id') == actor.cooperative_id)
        if not (is_finder or is_staff):
            raise ForbiddenError('Only the finder can view matches for this report')

    candidates = store.query(LOST_REPORTS, [
        ('status', '==', LostReportStatus.ACTIVE.value),
        ('category', '==', found.get('category')),
    ])
    candidates = [
        c for c in candidates
        if found_report_id not in (c.get('rejected_found_report_ids') or [])
    ]

    results = rank_candidates(found, candidates, subject_is_lost=False)
    _logger.info("Matched found report %s against %d candidates, %d shown",
                 found_report_id, len(candidates), len(results))
    return [
        {'lost_report': public_lost_report(r.pop('report')), **r}
        for r in results
    ]
