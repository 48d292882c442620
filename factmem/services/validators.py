"""
Deterministic correctness checks applied to a draft answer before it reaches the user.
"""

import re
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..models.core import ValidationResult, ValidationStepResult
from ..utils.config import ValidatorConfig
from ..utils.logging_config import get_logger
from ..utils.text_signals import (ORDINAL_WORDS, STOPWORDS, bounded, detect_ordinal, fold_diacritics, keyword_terms,
                                  ordinal_facts, ordinal_name, proper_names)
from ..utils.timestamp_utils import Deadline

logger = get_logger(__name__)

MAX_VALIDATION_INPUT = 20000
ORDINAL_CONTEXT_WINDOW = 40

TEMPORAL_QUERY_PATTERN = re.compile(
    r'\bwhen\b|\bwhat year\b|\bsince when\b|\bhow long ago\b|\bstart(?:ing)? date\b|\bbegan\b|\bbegin\b|\bstart(?:ed)?\b', re.IGNORECASE)
NUMBER_WORDS = {
    'one': 1, 'two': 2, 'three': 3, 'four': 4, 'five': 5, 'six': 6, 'seven': 7, 'eight': 8, 'nine': 9, 'ten': 10,
    'eleven': 11, 'twelve': 12, 'fifteen': 15, 'twenty': 20, 'thirty': 30
}
DURATION_PATTERN = re.compile(r'\b(\d{1,3}|' + '|'.join(NUMBER_WORDS) + r')\s+years?\b(?!\s+ago\b)', re.IGNORECASE)
YEAR_PATTERN = re.compile(r'\b(19\d{2}|20\d{2})\b')

PRICE_PATTERN = re.compile(r'\$\d[\d,]*(?:\.\d{2})?|\b\d+\s*(?:dollars?|USD)\b', re.IGNORECASE)
PERCENT_PATTERN = re.compile(r'\b\d+(?:\.\d+)?%')
DURATION_ANCHOR_PATTERN = re.compile(r'\b\d+\s+(?:years?|months?|weeks?|days?|hours?|minutes?)\b', re.IGNORECASE)
DATE_PATTERN = re.compile(
    r'\b(?:\d{1,2}[-/]\d{1,2}[-/]\d{2,4}|\d{4}-\d{1,2}-\d{1,2}|'
    r'(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+\d{1,2},?\s+\d{4})\b', re.IGNORECASE)

ANCHOR_PATTERNS = {
    'price': PRICE_PATTERN,
    'percentage': PERCENT_PATTERN,
    'duration': DURATION_ANCHOR_PATTERN,
    'date': DATE_PATTERN,
}
# Query phrasing that asks for each anchor group
ANCHOR_QUERY_PATTERNS = {
    'price': re.compile(r'\b(?:price|prices|pricing|cost|costs|fee|fees|charge|rate|plan|tier|how much)\b', re.IGNORECASE),
    'percentage': re.compile(r'\b(?:percent|percentage|rate|share|margin|discount|how much)\b|%', re.IGNORECASE),
    'duration': re.compile(r'\b(?:how long|duration|years|months|weeks|days)\b', re.IGNORECASE),
    'date': re.compile(r'\b(?:date|when|deadline|day)\b', re.IGNORECASE),
}

StepOutcome = Tuple[str, ValidationStepResult]


def _skipped(name: str, reason: str) -> ValidationStepResult:
    return ValidationStepResult(name=name, applied=False, reason=reason)


def _duration_value(token: str) -> int:
    token = token.lower()
    return NUMBER_WORDS[token] if token in NUMBER_WORDS else int(token)


def _price_variants(value: str) -> Set[str]:
    numeric = re.sub(r'[^\d.]', '', value)
    variants = {value, f'${numeric}', f'{numeric} dollars'}
    try:
        variants.add(f'${float(numeric):.2f}')
    except ValueError:
        pass
    return variants


class CorrectnessValidatorChain:
    """Ordered validator pipeline: ordinal, temporal arithmetic, character preservation, numeric anchors.

    Steps only replace or append text, so a later step never removes an
    earlier step's correction. A step that raises is recorded as not applied
    and the chain continues with the draft unchanged by that step.
    """

    def __init__(self, config: ValidatorConfig):
        self.config = config
        self.steps: List[Tuple[str, bool, Callable[[str, str, str], StepOutcome]]] = [
            ('ordinal_correctness', config.ordinal_enabled, self.ordinal_correctness),
            ('temporal_arithmetic', config.temporal_enabled, self.temporal_arithmetic),
            ('character_preservation', config.character_enabled, self.character_preservation),
            ('numeric_anchor_preservation', config.numeric_enabled, self.numeric_anchor_preservation),
        ]

    def ordinal_correctness(self, query: str, context: str, draft: str) -> StepOutcome:
        """Replace values that belong to a different ordinal and inject the requested one if missing."""
        name = 'ordinal_correctness'
        requested = detect_ordinal(query)
        if not requested:
            return draft, _skipped(name, 'no_ordinal_in_query')

        facts = [f for f in ordinal_facts(context) if f.subject == requested.subject and f.value]
        correct = next((f.value for f in facts if f.position == requested.position), None)
        if not correct:
            return draft, _skipped(name, 'ordinal_not_in_context')
        if len(correct) < 2 or correct.lower() in STOPWORDS:
            return draft, _skipped(name, 'ordinal_value_not_specific')

        wrong: Dict[str, int] = {f.value: f.position for f in facts if f.position != requested.position and f.value.lower() != correct.lower()}
        replaced: List[str] = []
        for value, position in wrong.items():
            if len(value) < 2 or value.lower() in STOPWORDS:
                continue
            pattern = re.compile(r'\b' + re.escape(value) + r'\b', re.IGNORECASE)
            labels = [word for word, word_position in ORDINAL_WORDS.items() if word_position == position]

            def substitute(match: 're.Match') -> str:
                # Leave the value alone where the draft names its own ordinal
                preceding = draft[max(0, match.start() - ORDINAL_CONTEXT_WINDOW):match.start()].lower()
                if any(label in preceding for label in labels):
                    return match.group(0)
                replaced.append(value)
                return correct

            draft = pattern.sub(substitute, draft)

        injected = False
        if not re.search(r'\b' + re.escape(correct) + r'\b', draft, re.IGNORECASE):
            draft = f'{draft.rstrip()}\n\nYour {ordinal_name(requested.position)} {requested.subject} is {correct}.'.lstrip()
            injected = True

        applied = bool(replaced) or injected
        reason = 'replaced_wrong_value' if replaced else 'injected_missing_value' if injected else 'already_correct'
        return draft, ValidationStepResult(name=name,
                                           applied=applied,
                                           reason=reason,
                                           telemetry={
                                               'ordinal': requested.position,
                                               'subject': requested.subject,
                                               'expected': correct,
                                               'replaced': replaced,
                                               'injected': injected,
                                           })

    @staticmethod
    def _temporal_pairs(context: str) -> Optional[Tuple[int, int, str]]:
        """Find (duration, anchor year, pairing) with same-line, shared-entity, then single-pair preference."""
        lines = [line for line in context.splitlines() if line.strip()]
        durations = []
        years = []
        for index, line in enumerate(lines):
            for match in DURATION_PATTERN.finditer(line):
                durations.append((index, _duration_value(match.group(1))))
            for match in YEAR_PATTERN.finditer(line):
                years.append((index, int(match.group(1))))

        for line_index, duration in durations:
            same_line = [year for index, year in years if index == line_index]
            if same_line:
                return duration, same_line[0], 'same_line'

        for line_index, duration in durations:
            entities = {n.lower() for n in proper_names(lines[line_index])}
            if not entities:
                continue
            for index, year in years:
                if entities & {n.lower() for n in proper_names(lines[index])}:
                    return duration, year, 'shared_entity'

        if len(durations) == 1 and len(years) == 1:
            return durations[0][1], years[0][1], 'single_pair'
        return None

    def temporal_arithmetic(self, query: str, context: str, draft: str) -> StepOutcome:
        """Compute anchor year minus duration for start-date questions."""
        name = 'temporal_arithmetic'
        if not TEMPORAL_QUERY_PATTERN.search(query):
            return draft, _skipped(name, 'not_temporal_query')

        pair = self._temporal_pairs(context)
        if not pair:
            return draft, _skipped(name, 'no_duration_anchor_pair')

        duration, anchor, pairing = pair
        result = anchor - duration
        telemetry = {'duration_years': duration, 'anchor_year': anchor, 'computed_year': result, 'pairing': pairing}
        if re.search(r'\b' + str(result) + r'\b', draft):
            return draft, ValidationStepResult(name=name, applied=False, reason='already_present', telemetry=telemetry)

        draft = f'{draft.rstrip()}\n\nThat would be {result} ({duration} years before {anchor}).'.lstrip()
        return draft, ValidationStepResult(name=name, applied=True, reason='injected_computed_year', telemetry=telemetry)

    def character_preservation(self, query: str, context: str, draft: str) -> StepOutcome:
        """Restore diacritics the draft dropped from names found in the context."""
        name = 'character_preservation'
        originals = []
        for word in re.findall(r'[^\W\d_]+', context):
            if word not in originals and fold_diacritics(word) != word:
                originals.append(word)
        if not originals:
            return draft, _skipped(name, 'no_diacritics_in_context')

        restored = []
        for original in originals:
            folded = fold_diacritics(original)
            folded_pattern = re.compile(r'(?<![^\W\d_])' + re.escape(folded) + r'(?![^\W\d_])')
            if original in draft or not folded_pattern.search(draft):
                continue
            draft = folded_pattern.sub(original, draft)
            restored.append(original)

        return draft, ValidationStepResult(name=name,
                                           applied=bool(restored),
                                           reason='restored_characters' if restored else 'no_normalized_names',
                                           telemetry={
                                               'candidates': len(originals),
                                               'restored': restored
                                           })

    @staticmethod
    def _anchor_present(draft: str, group: str, value: str) -> bool:
        if value in draft:
            return True
        if group == 'price':
            return any(variant in draft for variant in _price_variants(value))
        return value.lower() in draft.lower()

    def numeric_anchor_preservation(self, query: str, context: str, draft: str) -> StepOutcome:
        """Append prices, percentages, durations or dates the query asks about but the draft omits."""
        name = 'numeric_anchor_preservation'
        groups = [group for group, pattern in ANCHOR_QUERY_PATTERNS.items() if pattern.search(query)]
        if not groups:
            return draft, _skipped(name, 'query_requests_no_anchors')

        terms = set(keyword_terms(query))
        relevant_lines = [line for line in context.splitlines() if terms & set(keyword_terms(line))]
        if not relevant_lines:
            return draft, _skipped(name, 'no_relevant_context_lines')

        anchors: List[Tuple[str, str]] = []
        for line in relevant_lines:
            for group in groups:
                for match in ANCHOR_PATTERNS[group].finditer(line):
                    value = match.group(0).strip()
                    if (group, value) not in anchors:
                        anchors.append((group, value))

        missing = [(group, value) for group, value in anchors if not self._anchor_present(draft, group, value)]
        if not missing:
            return draft, ValidationStepResult(name=name,
                                               applied=False,
                                               reason='anchors_present' if anchors else 'no_anchors_found',
                                               telemetry={'groups': groups, 'checked': len(anchors)})

        injected = [value for _, value in missing[:self.config.max_numeric_injections]]
        draft = f'{draft.rstrip()}\n\nKey figures: {", ".join(injected)}.'.lstrip()
        return draft, ValidationStepResult(name=name,
                                           applied=True,
                                           reason='injected_missing_anchors',
                                           telemetry={
                                               'groups': groups,
                                               'checked': len(anchors),
                                               'injected': injected
                                           })

    def run(self, query: str, context: str, draft: str, deadline: Optional[Deadline] = None) -> ValidationResult:
        """Run every enabled step in order.

        Args:
            query: The user query
            context: The assembled context the draft was generated from
            draft: The LLM draft answer
            deadline: Optional deadline; steps after it expires are skipped

        Returns:
            ValidationResult with the final answer and per-step telemetry
        """
        query = bounded(query or '', MAX_VALIDATION_INPUT)
        context = bounded(context or '', MAX_VALIDATION_INPUT)
        answer = draft or ''
        telemetry: List[ValidationStepResult] = []

        for name, enabled, step in self.steps:
            if not enabled:
                result = _skipped(name, 'disabled')
            elif deadline is not None and deadline.expired():
                result = _skipped(name, 'deadline_exceeded')
            else:
                try:
                    answer, result = step(query, context, answer)
                except Exception as e:
                    logger.error(f'Validator {name} failed, leaving answer unchanged: {e}')
                    result = ValidationStepResult(name=name, applied=False, reason='error', telemetry={'error': str(e)})
            logger.info(f'Validator {name}: applied={result.applied} reason={result.reason} telemetry={result.telemetry}')
            telemetry.append(result)

        return ValidationResult(final_answer=answer, telemetry=telemetry)
