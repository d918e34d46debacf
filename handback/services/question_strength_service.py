"""
Question Strength Service
Rates how hard a lost report's secret questions would be to answer for
someone who has only seen the public report.

Rules:
- An answer that appears in the report's own title or description is a leak;
  the report is refused
- Each question starts at 50 points; guessable shapes (yes/no, generic
  colour/brand questions, short or common answers) lose points, questions
  asking for counts or specific details gain them
- Questions that all ask about the same thing cost the set 15 points
"""
import logging
import re
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, List, Optional

from ..models import Category, QuestionStrength
from .crypto_service import normalize_answer
from .matching_service import extract_keywords, tokenize

_logger = logging.getLogger(__name__)

BASE_SCORE = 50
REDUNDANCY_PENALTY = 15
# Answers this short are rated, but not checked for leaks
MIN_LEAK_CHECK_LENGTH = 2

_YES_NO = re.compile(r'^(is|are|was|were|do|does|did|can|has|have)\s')
_GENERIC = (
    re.compile(r'^what colou?r'),
    re.compile(r'^what is the colou?r'),
    re.compile(r'^is it\b'),
    re.compile(r'^what brand'),
    re.compile(r'^where did'),
    re.compile(r'^when did'),
    re.compile(r'^how old'),
)
_SPECIFIC = re.compile(r'how many|describe|last \d|name (one|a|the)|specific|exact')

COMMON_ANSWERS = frozenset([
    'yes', 'no', 'black', 'white', 'red', 'blue', 'green', '1', '2', '3', 'none', 'n/a',
])
VAGUE_WORDS = frozenset(['thing', 'stuff', 'something', 'item', 'object', 'it'])

SUGGESTED_QUESTIONS = {
    Category.PHONE.value: 'What is your lock screen wallpaper?',
    Category.ID.value: 'What are the last 3 characters of the ID number?',
    Category.WALLET.value: 'How many cards are inside the wallet?',
    Category.BAG.value: 'Describe any distinctive marks, stickers or damage',
    Category.KEYS.value: 'How many keys are on the keyring?',
    Category.OTHER.value: 'Describe a specific mark or feature on the item',
}


@dataclass
class QuestionAnalysis:
    """Rating of a single question/answer pair."""
    index: int
    score: int = BASE_SCORE
    issues: List[str] = field(default_factory=list)

    def penalise(self, points: int, issue: str):
        self.score -= points
        self.issues.append(issue)

    @property
    def strength(self) -> QuestionStrength:
        if self.score >= 65:
            return QuestionStrength.STRONG
        if self.score >= 35:
            return QuestionStrength.MODERATE
        return QuestionStrength.WEAK

    def to_dict(self) -> Dict:
        return {
            'index': self.index,
            'score': self.score,
            'strength': self.strength.value,
            'issues': list(self.issues),
        }


def _contains_phrase(tokens: List[str], phrase: List[str]) -> bool:
    n = len(phrase)
    return n > 0 and any(tokens[i:i + n] == phrase for i in range(len(tokens) - n + 1))


def find_leaked_answers(answers: List[str], title: Optional[str], description: Optional[str]) -> List[int]:
    """
    Indexes of answers that can be read off the report's title or description.

    Matching is on whole words, so 'red' does not leak through 'shredded'.
    """
    text_tokens = tokenize(f"{title or ''} {description or ''}")
    leaked = []
    for i, answer in enumerate(answers):
        if len(normalize_answer(answer)) <= MIN_LEAK_CHECK_LENGTH:
            continue
        if _contains_phrase(text_tokens, tokenize(answer)):
            leaked.append(i)
    return leaked


def _analyze_question(index: int, question: str, answer: str) -> QuestionAnalysis:
    analysis = QuestionAnalysis(index=index)
    q = ' '.join(question.split()).lower()
    a = normalize_answer(answer)

    if len(q) < 15:
        analysis.penalise(20, 'Question is too short and vague')
    if _YES_NO.match(q):
        analysis.penalise(25, 'Yes/no questions can be guessed half of the time')
    if any(p.match(q) for p in _GENERIC):
        analysis.penalise(15, 'This kind of question is easy to guess')

    if len(a) <= 2:
        analysis.penalise(20, 'Answer is too short to be hard to guess')
    elif len(a) <= 5:
        analysis.penalise(10, 'Short answers are easier to guess')
    elif len(a) >= 10:
        analysis.score += 10

    if a in COMMON_ANSWERS:
        analysis.penalise(15, 'This answer is very common')
    if VAGUE_WORDS.intersection(tokenize(q)):
        analysis.penalise(10, 'Question uses vague words')
    if _SPECIFIC.search(q):
        analysis.score += 15

    analysis.score = max(0, min(100, analysis.score))
    return analysis


def _topic_words(question: str) -> set:
    return {w.replace('colour', 'color') for w in extract_keywords(question)}


def questions_are_redundant(questions: List[str]) -> bool:
    """True when at least half the question pairs share most of their topic words."""
    topics = [_topic_words(q) for q in questions]
    pairs = list(combinations(topics, 2))
    if not pairs:
        return False
    overlapping = 0
    for left, right in pairs:
        smaller = min(len(left), len(right))
        if smaller and len(left & right) >= 0.5 * smaller:
            overlapping += 1
    return overlapping >= len(pairs) / 2


def analyze_question_strength(questions: List[str], answers: List[str], category: str) -> Dict:
    """
    Rate a set of secret questions.

    Args:
        questions (list): question texts
        answers (list): plaintext answers, same order; never part of the result
        category (str): item category, used for the suggestion tip

    Returns:
        dict: overall_strength, overall_score, questions, redundancy_warning,
            improvement_tips
    """
    analyses = [_analyze_question(i, q, a) for i, (q, a) in enumerate(zip(questions, answers))]
    redundant = questions_are_redundant(questions)

    average = sum(a.score for a in analyses) / len(analyses) if analyses else 0
    overall_score = max(0, round(average - (REDUNDANCY_PENALTY if redundant else 0)))
    if overall_score >= 70:
        overall = QuestionStrength.STRONG
    elif overall_score >= 40:
        overall = QuestionStrength.MODERATE
    else:
        overall = QuestionStrength.WEAK

    tips = []
    if overall == QuestionStrength.WEAK:
        tips.append('These questions may not protect your item; anyone holding it could guess the answers.')
    if redundant:
        tips.append('Your questions ask about the same thing. Ask about different details instead.')
    weak = [a for a in analyses if a.strength == QuestionStrength.WEAK]
    if weak:
        tips.append(f"{len(weak)} of your {len(analyses)} questions are weak.")
    if overall != QuestionStrength.STRONG:
        suggestion = SUGGESTED_QUESTIONS.get(category, SUGGESTED_QUESTIONS[Category.OTHER.value])
        tips.append(f'Try a question like: "{suggestion}"')

    _logger.debug("Question strength %s (%d), redundant=%s", overall.value, overall_score, redundant)
    return {
        'overall_strength': overall.value,
        'overall_score': overall_score,
        'questions': [a.to_dict() for a in analyses],
        'redundancy_warning': redundant,
        'improvement_tips': tips,
    }
