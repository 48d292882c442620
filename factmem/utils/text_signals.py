"""
Pure text-signal helpers used by routing, deduplication, retrieval and validation.

Every public function caps its input with bounded() before any regex runs, so
adversarial input cannot trigger catastrophic backtracking.
"""

import hashlib
import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

MAX_SIGNAL_INPUT = 4000

STOPWORDS = frozenset({
    'a', 'about', 'above', 'after', 'again', 'all', 'also', 'am', 'an', 'and', 'any', 'are', 'as', 'at', 'be', 'because',
    'been', 'before', 'being', 'below', 'between', 'both', 'but', 'by', 'can', 'could', 'did', 'do', 'does', 'doing',
    'done', 'down', 'during', 'each', 'even', 'ever', 'every', 'few', 'for', 'from', 'further', 'get', 'gets', 'got',
    'had', 'has', 'have', 'having', 'he', 'her', 'here', 'hers', 'him', 'his', 'how', 'i', 'if', 'in', 'into', 'is', 'it',
    'its', 'just', 'know', 'like', 'me', 'more', 'most', 'much', 'my', 'myself', 'no', 'nor', 'not', 'now', 'of', 'off',
    'on', 'once', 'only', 'or', 'other', 'our', 'ours', 'out', 'over', 'own', 'please', 'same', 'she', 'should', 'so',
    'some', 'such', 'tell', 'than', 'that', 'the', 'their', 'them', 'then', 'there', 'these', 'they', 'thing', 'things',
    'this', 'those', 'through', 'to', 'too', 'under', 'until', 'up', 'very', 'was', 'we', 'were', 'what', 'when', 'where',
    'which', 'while', 'who', 'whom', 'why', 'will', 'with', 'would', 'you', 'your', 'yours', 'remember', 'recall',
    'said', 'say', 'told', 'want', 'need', 'think', 'really', 'still', 'yes', 'okay'
})

# Capitalized words that start sentences or questions and are never names
NON_NAME_WORDS = frozenset({
    'i', 'the', 'my', 'what', 'when', 'where', 'who', 'whom', 'why', 'how', 'which', 'does', 'do', 'did', 'is', 'are',
    'was', 'were', 'can', 'could', 'would', 'should', 'will', 'please', 'remember', 'tell', 'note', 'also', 'and', 'but',
    'yes', 'no', 'hi', 'hello', 'hey', 'thanks', 'thank', 'okay', 'ok', 'our', 'your', 'his', 'her', 'their', 'this',
    'that', 'these', 'those', 'it', 'we', 'they', 'he', 'she', 'you', 'a', 'an', 'in', 'on', 'at', 'for', 'from', 'since',
    'after', 'before', 'if', 'so', 'then', 'today', 'tomorrow', 'yesterday', 'don', 'doesn', 'mr', 'mrs', 'ms', 'dr',
    'monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday', 'january', 'february', 'march',
    'april', 'may', 'june', 'july', 'august', 'september', 'october', 'november', 'december', 'based', 'key'
})

ORDINAL_WORDS: Dict[str, int] = {
    'first': 1, 'second': 2, 'third': 3, 'fourth': 4, 'fifth': 5, 'sixth': 6, 'seventh': 7, 'eighth': 8, 'ninth': 9,
    'tenth': 10, '1st': 1, '2nd': 2, '3rd': 3, '4th': 4, '5th': 5, '6th': 6, '7th': 7, '8th': 8, '9th': 9, '10th': 10
}
ORDINAL_NAMES = ('first', 'second', 'third', 'fourth', 'fifth', 'sixth', 'seventh', 'eighth', 'ninth', 'tenth')

_ORDINAL_ALTERNATION = '|'.join(sorted(ORDINAL_WORDS, key=len, reverse=True))
ORDINAL_PATTERN = re.compile(
    r"\b(?:my|the|your)\s+(" + _ORDINAL_ALTERNATION + r")\s+([a-z][a-z'-]*)"
    r"(?:\s+(?:is|was|=|:)\s*[\"']?([^\s,;!?\"']+))?", re.IGNORECASE)

TEMPORAL_PATTERNS = (
    re.compile(r'\b\d{1,2}(?::\d{2})?\s*(?:am|pm|a\.m\.|p\.m\.)', re.IGNORECASE),
    re.compile(r'\b\d{1,2}:\d{2}\b'),
    re.compile(r'\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday|weekend|weekday)s?\b', re.IGNORECASE),
    re.compile(r'\b(?:january|february|march|april|may|june|july|august|september|october|november|december)\b', re.IGNORECASE),
    re.compile(r'\b(?:today|tonight|tomorrow|yesterday|noon|midnight|morning|afternoon|evening)\b', re.IGNORECASE),
    re.compile(r'\b(?:next|last|this)\s+(?:week|month|year|time)\b', re.IGNORECASE),
    re.compile(r'\b(?:schedule[sd]?|rescheduled|moved\s+to|postponed|deadline|due)\b', re.IGNORECASE),
    re.compile(r'\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b'),
    re.compile(r'\b\d{4}-\d{2}-\d{2}\b'),
    re.compile(r'\b(?:19|20)\d{2}\b'),
)

HIGH_ENTROPY_PATTERN = re.compile(
    r'\b[A-Z]+-\d+-[A-Z0-9]+\b|\b[A-Z]+-[A-Z]+-\d{4,}\b|\b[A-Z]+-\d{4,}\b|\b[A-Z0-9]{12,}\b|\b[A-Z]{4,}\b')
NUMBER_PATTERN = re.compile(r'\d+(?:[.,:]\d+)*')
PROPER_NAME_PATTERN = re.compile(r"\b[A-ZÀ-ÖØ-Þ][a-zß-öø-ÿ']+(?:\s+[A-ZÀ-ÖØ-Þ][a-zß-öø-ÿ']+)*")
WORD_PATTERN = re.compile(r"[a-z0-9][a-z0-9'-]*")
LETTER_WORD_PATTERN = re.compile(r'[^\W\d_]+')

EXPLICIT_STORAGE_PATTERNS = (
    re.compile(r'\bremember\s+(?:this|that|exactly)\b', re.IGNORECASE),
    re.compile(r"\b(?:don'?t|do not)\s+forget\b", re.IGNORECASE),
    re.compile(r'\bplease\s+remember\b', re.IGNORECASE),
    re.compile(r'\b(?:make a note|note that|keep in mind|save this|store this)\b', re.IGNORECASE),
)
STORAGE_COMMAND_PREFIX = re.compile(
    r"^\s*(?:please\s+)?(?:remember|don'?t\s+forget|do\s+not\s+forget|note|keep\s+in\s+mind|save|store|make\s+a\s+note)"
    r"(?:\s+(?:this|that|of\s+this))?(?:\s+exactly)?(?:\s+for\s+me)?\s*[:,\-]?\s*(?:that\s+)?", re.IGNORECASE)

PRIORITY_PATTERNS = (
    re.compile(r'(?:i |my )(?:priority|priorities|most important|care most about)', re.IGNORECASE),
    re.compile(r'(?:always|never) (?:want|need|prefer)', re.IGNORECASE),
    re.compile(r"(?:this is|that's) (?:important|critical|essential)", re.IGNORECASE),
    re.compile(r"(?:don't|do not) ever", re.IGNORECASE),
    re.compile(r'(?:make sure|ensure|remember that)', re.IGNORECASE),
)

# (importance, pattern) ordered from most to least important
IMPORTANCE_ARCHETYPES: Tuple[Tuple[float, re.Pattern], ...] = (
    (0.95, re.compile(r'\b(?:allerg(?:y|ic|ies)|anaphyla\w*|epipen|medication|diagnos\w+|blood type|emergency|seizure|'
                      r'diabet\w+|heart condition|asthma|pregnan\w+)\b', re.IGNORECASE)),
    (0.85, re.compile(r'\b(?:married|divorced|engaged|passed away|died|funeral|new job|fired|laid off|promoted|'
                      r'moved to|baby|born|graduated|retired)\b', re.IGNORECASE)),
    (0.80, re.compile(r'\b(?:urgent|asap|immediately|critical|deadline|important)\b', re.IGNORECASE)),
    (0.70, re.compile(r'\b(?:always|never|must|password|code|account|pin|birthday|anniversary|prefer\w*)\b', re.IGNORECASE)),
)
DEFAULT_IMPORTANCE = 0.5
HEALTH_IMPORTANCE_FLOOR = 0.75
EXPLICIT_IMPORTANCE_FLOOR = 0.85

BOILERPLATE_PATTERNS = (
    re.compile(r"I don't retain memory[^.]*\.?", re.IGNORECASE),
    re.compile(r'session-based memory[^.]*\.?', re.IGNORECASE),
    re.compile(r'this appears to be our first interaction[^.]*\.?', re.IGNORECASE),
    re.compile(r"I'm an AI assistant[^.]*\.?", re.IGNORECASE),
    re.compile(r'confidence is lower than ideal[^.]*\.?', re.IGNORECASE),
    re.compile(r'I should clarify[^.]*\.?', re.IGNORECASE),
    re.compile(r'I cannot access previous conversations[^.]*\.?', re.IGNORECASE),
    re.compile(r"I don't have access to[^.]*\.?", re.IGNORECASE),
)

_PETS = r'(dog|cat|pet|puppy|kitten|bird|parrot|rabbit|hamster|horse|fish)'
FINGERPRINT_PATTERNS: Tuple[Tuple[str, float, Tuple[re.Pattern, ...]], ...] = (
    ('user_phone_number', 0.95, (
        re.compile(r'\b(?:my|our)\s+(?:phone|cell|mobile|telephone)\s*(?:number|#)?\s*(?:is|:)\s*[\d\-()\s+]{7,}', re.IGNORECASE),
        re.compile(r'\b(?:call|reach|text)\s+(?:me|us)\s+(?:at|on)\s+[\d\-()\s+]{7,}', re.IGNORECASE),
    )),
    ('user_email', 0.95, (
        re.compile(r'\b(?:my|our)\s+(?:email|e-mail)\s*(?:address)?\s*(?:is|:)\s*[\w.\-]+@[\w.\-]+\.\w+', re.IGNORECASE),
        re.compile(r'\b(?:email|reach|contact)\s+(?:me|us)\s+at\s+[\w.\-]+@[\w.\-]+\.\w+', re.IGNORECASE),
    )),
    ('user_name', 0.90, (
        re.compile(r"\bmy\s+name\s+is\s+(?-i:[A-Z][a-z]+)", re.IGNORECASE),
        re.compile(r"\bcall\s+me\s+(?-i:[A-Z][a-z]+)", re.IGNORECASE),
    )),
    ('user_location_residence', 0.85, (
        re.compile(r'\bi\s+(?:live|reside|am located)\s+(?:in|at)\s+\w+', re.IGNORECASE),
        re.compile(r'\b(?:my|our)\s+(?:home|house|address|residence)\s+(?:is|:)\s+\w+', re.IGNORECASE),
        re.compile(r"\b(?:i|we)(?:'ve| have)?\s+(?:just\s+)?moved\s+to\s+(?-i:[A-Z])\w+", re.IGNORECASE),
    )),
    ('user_job_title', 0.85, (
        re.compile(r'\bi\s+(?:work|am employed)\s+as\s+(?:an?\s+)?\w+', re.IGNORECASE),
        re.compile(r'\b(?:my|our)\s+(?:job|occupation|profession|role|job title|position)\s+(?:is|:)\s+\w+', re.IGNORECASE),
        re.compile(r"\bi(?:'m| am)\s+an?\s+(?:developer|engineer|manager|designer|analyst|consultant|director|ceo|cto|"
                   r"founder|doctor|lawyer|teacher|nurse|accountant)\b", re.IGNORECASE),
    )),
    ('user_employer', 0.85, (
        re.compile(r'\bi\s+work\s+(?:at|for)\s+\w+', re.IGNORECASE),
        re.compile(r'\b(?:my|our)\s+(?:company|employer|workplace)\s+(?:is|:)\s+\w+', re.IGNORECASE),
    )),
    ('user_age', 0.90, (
        re.compile(r"\bi(?:'m| am)\s+\d{1,3}\s*(?:years?\s*old|yo)\b", re.IGNORECASE),
        re.compile(r'\bmy\s+age\s+(?:is|:)\s*\d{1,3}', re.IGNORECASE),
    )),
    ('user_marital_status', 0.90, (
        re.compile(r"\bi(?:'m| am)\s+(?:now\s+)?(?:married|single|divorced|widowed|engaged|separated)\b", re.IGNORECASE),
        re.compile(r'\bi\s+got\s+(?:married|divorced|engaged)\b', re.IGNORECASE),
    )),
    ('user_spouse_name', 0.85, (
        re.compile(r"\bmy\s+(?:wife|husband|spouse|partner)(?:'s name)?\s+is\s+(?-i:[A-Z][a-z]+)", re.IGNORECASE),
    )),
    ('user_children_count', 0.85, (
        re.compile(r'\bi\s+have\s+(?:\d+|no|one|two|three|four|five|six)\s+(?:kids|children|sons|daughters)\b', re.IGNORECASE),
    )),
    ('user_favorite_color', 0.80, (
        re.compile(r'\bmy\s+favou?rite\s+colou?r\s+is\s+\w+', re.IGNORECASE),
    )),
    ('user_timezone', 0.85, (
        re.compile(r'\bmy\s+time\s?zone\s+is\s+\S+', re.IGNORECASE),
        re.compile(r"\bi(?:'m| am)\s+(?:in|on)\s+\w+\s+time\b", re.IGNORECASE),
    )),
)
PET_FINGERPRINT = re.compile(r"\bmy\s+" + _PETS + r"(?:'s name)?\s+is\s+(?:named\s+|called\s+)?(?-i:[A-Z][a-z]+)", re.IGNORECASE)
PET_FINGERPRINT_CONFIDENCE = 0.80


@dataclass
class OrdinalFact:
    """An ordinal mention such as "my second code is DELTA"."""
    position: int
    subject: str
    value: Optional[str]
    start: int
    end: int


def bounded(text: Optional[str], limit: int = MAX_SIGNAL_INPUT) -> str:
    if not text:
        return ''
    return text[:limit]


def normalize_text(text: str) -> str:
    """Lowercase, strip edge punctuation and collapse whitespace."""
    text = bounded(text).lower()
    text = re.sub(r'\s+', ' ', text)
    return text.strip(' \t\n.,!?;:"\'')


def words(text: str) -> List[str]:
    return WORD_PATTERN.findall(bounded(text).lower())


def singular(word: str) -> str:
    if len(word) > 4 and word.endswith('ies'):
        return word[:-3] + 'y'
    if len(word) > 3 and word.endswith('es') and word[-3] in 'sxz':
        return word[:-2]
    if len(word) > 3 and word.endswith('s') and not word.endswith('ss'):
        return word[:-1]
    return word


def keyword_terms(text: str) -> List[str]:
    """Content words of a text, in order, without duplicates."""
    seen = []
    for word in words(text):
        word = word.strip("'-")
        if len(word) > 2 and word not in STOPWORDS and word not in seen:
            seen.append(word)
    return seen


def word_variants(word: str) -> Set[str]:
    """Simple morphological variants: plural forms and one or two trailing characters stripped."""
    variants = {word, word + 's', word + 'es', singular(word)}
    if word.endswith('s'):
        variants.add(word[:-1])
    if word.endswith('es'):
        variants.add(word[:-2])
    if len(word) > 4:
        variants.add(word[:-1])
    if len(word) > 5:
        variants.add(word[:-2])
    return {v for v in variants if len(v) > 2}


def keyword_match_score(query: str, content: str) -> float:
    """Fraction of query keywords found in the content.

    Exact word matches count 1.0, morphological variants count 0.7. Queries
    without any keywords score a neutral 0.5.
    """
    terms = keyword_terms(query)
    if not terms:
        return 0.5
    content_words = set(words(content))
    content_variants: Set[str] = set()
    for word in content_words:
        content_variants |= word_variants(word)

    total = 0.0
    for term in terms:
        if term in content_words:
            total += 1.0
        elif word_variants(term) & content_variants:
            total += 0.7
    return min(1.0, total / len(terms))


def phrase_contained(query: str, content: str, min_length: int = 8) -> bool:
    q = normalize_text(query)
    c = normalize_text(content)
    if len(q) < min_length or len(c) < min_length:
        return False
    return q in c or c in q


def salient_nouns(text: str, limit: int = 8) -> List[str]:
    """Important nouns for topic fallback: letter-only words longer than three characters."""
    nouns = []
    for word in LETTER_WORD_PATTERN.findall(bounded(text).lower()):
        if len(word) > 3 and word not in STOPWORDS and word not in nouns:
            nouns.append(word)
        if len(nouns) >= limit:
            break
    return nouns


def text_similarity(a: str, b: str) -> float:
    """Embedding-free similarity used while a record's embedding is pending."""
    if phrase_contained(a, b):
        return 1.0
    terms_a = keyword_terms(a)
    if not terms_a:
        return 0.0
    words_b = set(keyword_terms(b))
    variants_b: Set[str] = set()
    for word in words_b:
        variants_b |= word_variants(word)

    score = 0.0
    for term in terms_a:
        if term in words_b:
            score += 1.0
        elif word_variants(term) & variants_b:
            score += 0.5
    base = score / len(terms_a)

    nouns_a = set(salient_nouns(a))
    if nouns_a:
        shared = len(nouns_a & set(salient_nouns(b)))
        base += 0.3 * (shared / len(nouns_a))
    return min(1.0, base)


def proper_names(text: str) -> List[str]:
    """Capitalized name-like tokens, excluding sentence starters, weekdays and months."""
    names = []
    for match in PROPER_NAME_PATTERN.finditer(bounded(text)):
        parts = [p for p in match.group(0).split() if p.lower().strip("'") not in NON_NAME_WORDS]
        for part in parts:
            part = part.strip("'")
            if part.endswith("'s"):
                part = part[:-2]
            if len(part) > 1 and part not in names and part.lower() not in STOPWORDS:
                names.append(part)
    return names


def mentions_name(text: str, name: str) -> bool:
    return re.search(r'\b' + re.escape(name) + r'\b', bounded(text), re.IGNORECASE) is not None


def ordinal_facts(text: str) -> List[OrdinalFact]:
    facts = []
    for match in ORDINAL_PATTERN.finditer(bounded(text)):
        value = match.group(3)
        if value:
            value = value.strip('.')
        facts.append(OrdinalFact(position=ORDINAL_WORDS[match.group(1).lower()],
                                 subject=singular(match.group(2).lower()),
                                 value=value or None,
                                 start=match.start(),
                                 end=match.end()))
    return facts


def detect_ordinal(text: str) -> Optional[OrdinalFact]:
    facts = ordinal_facts(text)
    return facts[0] if facts else None


def ordinal_name(position: int) -> str:
    if 1 <= position <= len(ORDINAL_NAMES):
        return ORDINAL_NAMES[position - 1]
    return f'#{position}'


def has_temporal_marker(text: str) -> bool:
    text = bounded(text)
    return any(pattern.search(text) for pattern in TEMPORAL_PATTERNS)


def numbers_in(text: str) -> Set[str]:
    return {n.replace(',', '') for n in NUMBER_PATTERN.findall(bounded(text))}


def high_entropy_tokens(text: str) -> Set[str]:
    return {t.upper() for t in HIGH_ENTROPY_PATTERN.findall(bounded(text))}


def merge_conflict(existing: str, new: str, check_numbers: bool = True) -> Optional[str]:
    """Reason two similar texts must stay separate records, or None if they may merge.

    Args:
        existing: Content of the stored record
        new: Content of the candidate fact
        check_numbers: Compare numeric values (disabled for supersession, where
            changed numbers are the point)

    Returns:
        A short reason string when the texts describe different facts
    """
    existing_ordinals = {(f.position, f.subject) for f in ordinal_facts(existing)}
    new_ordinals = {(f.position, f.subject) for f in ordinal_facts(new)}
    if existing_ordinals != new_ordinals and (existing_ordinals or new_ordinals):
        return 'ordinal_mismatch'

    new_tokens = high_entropy_tokens(new)
    if new_tokens and high_entropy_tokens(existing) and new_tokens - high_entropy_tokens(existing):
        return 'identifier_mismatch'

    if check_numbers and numbers_in(existing) != numbers_in(new):
        return 'number_mismatch'

    existing_names = {n.lower() for n in proper_names(existing)}
    new_names = {n.lower() for n in proper_names(new)}
    if existing_names != new_names and (existing_names or new_names):
        return 'name_mismatch'
    return None


def detect_fingerprint(text: str) -> Optional[Tuple[str, float]]:
    """Deterministic lineage key for facts that describe a single user attribute.

    Returns:
        Tuple of (fingerprint, confidence), or None when nothing matches
    """
    text = bounded(text)
    for fingerprint, confidence, patterns in FINGERPRINT_PATTERNS:
        if any(p.search(text) for p in patterns):
            return fingerprint, confidence
    match = PET_FINGERPRINT.search(text)
    if match:
        return f'user_pet_{match.group(1).lower()}', PET_FINGERPRINT_CONFIDENCE
    return None


def detect_explicit_storage(text: str) -> bool:
    text = bounded(text)
    return any(p.search(text) for p in EXPLICIT_STORAGE_PATTERNS)


def strip_storage_command(text: str) -> str:
    """Drop a leading "remember this:" style command, keeping the fact itself."""
    stripped = STORAGE_COMMAND_PREFIX.sub('', text, count=1).strip()
    if not stripped:
        return text.strip()
    return stripped[0].upper() + stripped[1:]


def detect_user_priority(text: str) -> bool:
    text = bounded(text)
    return any(p.search(text) for p in PRIORITY_PATTERNS)


def score_importance(text: str, category: Optional[str] = None, explicit: bool = False) -> float:
    """Importance in [0, 1] from content archetypes and named-entity density."""
    text = bounded(text)
    score = DEFAULT_IMPORTANCE
    for importance, pattern in IMPORTANCE_ARCHETYPES:
        if pattern.search(text):
            score = importance
            break

    if explicit or detect_user_priority(text):
        score = max(score, EXPLICIT_IMPORTANCE_FLOOR)
    if category == 'health_wellness':
        score = max(score, HEALTH_IMPORTANCE_FLOOR)

    score += min(0.10, 0.05 * len(proper_names(text)))
    return round(min(1.0, score), 2)


def sanitize_for_storage(text: str, min_chars: int = 10) -> Optional[str]:
    """Strip assistant boilerplate. Returns None when nothing meaningful remains."""
    if not text:
        return None
    sanitized = text
    for pattern in BOILERPLATE_PATTERNS:
        sanitized = pattern.sub('', sanitized)
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    if len(sanitized) < min_chars:
        return None
    if "i'm an ai" in sanitized.lower():
        return None
    return sanitized


CHARACTER_FOLDS = {
    'ß': 'ss', 'Æ': 'AE', 'æ': 'ae', 'Ø': 'O', 'ø': 'o', 'Œ': 'OE', 'œ': 'oe', 'Ł': 'L', 'ł': 'l', 'Đ': 'D', 'đ': 'd',
    'Þ': 'Th', 'þ': 'th', 'ı': 'i'
}


def fold_diacritics(text: str) -> str:
    """ASCII-fold a string: NFD decomposition without combining marks, plus a few letter mappings."""
    text = ''.join(CHARACTER_FOLDS.get(ch, ch) for ch in text)
    decomposed = unicodedata.normalize('NFD', text)
    return ''.join(ch for ch in decomposed if not unicodedata.combining(ch))


def content_hash(text: str) -> str:
    """Stable key for exact-duplicate detection, insensitive to case and spacing."""
    return hashlib.sha1(normalize_text(text).encode('utf-8')).hexdigest()
