"""
Context assembly under fixed per-source and total token budgets.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from ..models.core import ContextBudgetResult, MemoryRecord, RetrievalCandidate, SourceBudget
from ..utils.config import ContextBudgetConfig
from ..utils.logging_config import get_logger
from ..utils.text_signals import keyword_terms
from ..utils.token_utils import TokenCounter, count_tokens, truncate_to_tokens

logger = get_logger(__name__)

MEMORY_HEADER = '=== RELEVANT MEMORY ==='
DOCUMENT_HEADER = '=== DOCUMENTS ==='
VAULT_HEADER = '=== VAULT ==='

# Assembly order; trimming for the total budget walks it backwards
SOURCE_ORDER = ('memory', 'documents', 'vault')

MIN_SECTION_CHARS = 100
MIN_PARAGRAPH_CHARS = 200
VAULT_CHUNK_CHARS = 4000
MAX_TRIM_ROUNDS = 10

SECTION_BOUNDARY_PATTERNS = (
    re.compile(r'={3,}'),
    re.compile(r'\n\n[A-Z][^\n]{0,200}\n={2,}'),
    re.compile(r'\[DOCUMENT:\s{0,5}[^\]]{1,200}\]', re.IGNORECASE),
    re.compile(r'FILE:\s*[^\n]{0,200}', re.IGNORECASE),
)
FOLDER_PATTERNS = (
    re.compile(r'folder[:\s]+([^\n]{1,200})', re.IGNORECASE),
    re.compile(r'directory[:\s]+([^\n]{1,200})', re.IGNORECASE),
    re.compile(r'path[:\s]+([^\n/]{1,200})', re.IGNORECASE),
)
PATH_SEGMENT_PATTERN = re.compile(r'/([^/\n]{1,100})/')
FILE_PATTERNS = (
    re.compile(r'file:\s*([^\n]{1,200})', re.IGNORECASE),
    re.compile(r'document:\s*([^\n]{1,200})', re.IGNORECASE),
    re.compile(r'\[DOCUMENT:\s{0,5}([^\]]{1,200})\]', re.IGNORECASE),
)
HEADER_PATTERN = re.compile(r'^\s*[A-Z][^\n]{0,200}\n={2,}', re.MULTILINE)
FOUNDER_PATTERN = re.compile(r'founder|directive|rule|policy|must|required', re.IGNORECASE)
PRICING_PATTERN = re.compile(r'pricing|price|cost|\$\d+|revenue|business', re.IGNORECASE)
LEGAL_PATTERN = re.compile(r'legal|contract|agreement|terms|privacy|policy', re.IGNORECASE)
INVENTORY_PATTERNS = (
    re.compile(r"what'?s?\s+(?:in|inside|stored|contained|within)\s+(?:the\s+)?vault", re.IGNORECASE),
    re.compile(r'\blist\s+(?:all|everything|vault|contents)\b', re.IGNORECASE),
    re.compile(r'\bshow\s+(?:me\s+)?(?:all|everything|vault|contents)\b', re.IGNORECASE),
)

FOLDER_MATCH_POINTS = 50
FILE_MATCH_POINTS = 30
KEYWORD_POINTS = 10
EXACT_PHRASE_POINTS = 100
HEADER_POINTS = 20
FOUNDER_POINTS = 30
PRICING_POINTS = 25
LEGAL_POINTS = 40

MemoryItem = Union[RetrievalCandidate, MemoryRecord, str]
DocumentInput = Union[str, Sequence[Tuple[str, str]], None]


@dataclass
class VaultSelection:
    content: str
    sections_selected: int
    total_sections: int
    reason: str


def split_vault_sections(vault_text: str) -> List[str]:
    """Split vault text at document markers, falling back to paragraphs and then fixed-size chunks."""
    boundaries = sorted({match.start() for pattern in SECTION_BOUNDARY_PATTERNS for match in pattern.finditer(vault_text)})

    sections = []
    if boundaries:
        last = 0
        for index in boundaries:
            if index > last:
                section = vault_text[last:index].strip()
                if len(section) > MIN_SECTION_CHARS:
                    sections.append(section)
            last = index
        section = vault_text[last:].strip()
        if len(section) > MIN_SECTION_CHARS:
            sections.append(section)

    if not sections:
        sections = [p for p in re.split(r'\n\n+', vault_text) if len(p) > MIN_PARAGRAPH_CHARS]
    if not sections:
        sections = [vault_text[i:i + VAULT_CHUNK_CHARS] for i in range(0, len(vault_text), VAULT_CHUNK_CHARS)]
    return [s for s in sections if s]


def _label_matches(label: str, keywords: List[str]) -> int:
    label = label.strip().lower()
    if not label:
        return 0
    return sum(1 for keyword in keywords if keyword in label or label in keyword)


def score_vault_section(section: str, keywords: List[str], query: str) -> int:
    """Relevance of one vault section to a query.

    Folder and file-title matches dominate, then exact phrase, header and
    content heuristics, then plain keyword counts.
    """
    score = 0
    section_lower = section.lower()
    query_lower = query.lower().strip()

    folder_names = PATH_SEGMENT_PATTERN.findall(section)
    for pattern in FOLDER_PATTERNS:
        match = pattern.search(section)
        if match:
            folder_names.append(match.group(1))
    for folder in folder_names:
        score += FOLDER_MATCH_POINTS * _label_matches(folder, keywords)

    for pattern in FILE_PATTERNS:
        match = pattern.search(section)
        if match:
            score += FILE_MATCH_POINTS * _label_matches(match.group(1), keywords)

    for keyword in keywords:
        score += KEYWORD_POINTS * section_lower.count(keyword)

    if query_lower and query_lower in section_lower:
        score += EXACT_PHRASE_POINTS
    if HEADER_PATTERN.search(section):
        score += HEADER_POINTS
    if FOUNDER_PATTERN.search(section):
        score += FOUNDER_POINTS
    if PRICING_PATTERN.search(section):
        score += PRICING_POINTS
    if LEGAL_PATTERN.search(query_lower) and LEGAL_PATTERN.search(section_lower):
        score += LEGAL_POINTS
    return score


def is_inventory_query(query: str) -> bool:
    return any(p.search(query or '') for p in INVENTORY_PATTERNS)


class ContextAssembler:
    """Builds the factual context block in a fixed order: memory, documents, vault.

    Each source is capped by its own budget; if the combined text still
    exceeds the total budget, vault is trimmed first, then documents, then
    memory. Missing sources contribute nothing and never block assembly.
    """

    def __init__(self, config: ContextBudgetConfig, token_counter: Optional[TokenCounter] = None):
        self.config = config
        self.token_counter = token_counter

    def tokens(self, text: Optional[str]) -> int:
        return count_tokens(text, self.token_counter)

    def budgets(self) -> Dict[str, int]:
        return {'memory': self.config.memory_tokens, 'documents': self.config.document_tokens, 'vault': self.config.vault_tokens}

    @staticmethod
    def _memory_line(item: MemoryItem) -> str:
        if isinstance(item, RetrievalCandidate):
            return f'- {item.record.content}'
        if isinstance(item, MemoryRecord):
            return f'- {item.content}'
        return f'- {item}'

    def assemble_memory(self, ranked_memory: Optional[Sequence[MemoryItem]], budget: int) -> Tuple[List[str], bool]:
        """Whole facts in rank order until the next one no longer fits.

        Returns:
            Tuple of (included lines, truncated flag)
        """
        lines: List[str] = []
        items = list(ranked_memory or [])
        for item in items:
            line = self._memory_line(item)
            if self.tokens('\n'.join(lines + [line])) > budget:
                break
            lines.append(line)
        return lines, len(lines) < len(items)

    @staticmethod
    def render_documents(document_text: DocumentInput) -> str:
        if not document_text:
            return ''
        if isinstance(document_text, str):
            return document_text.strip()
        parts = []
        for label, text in document_text:
            if text and text.strip():
                parts.append(f'[DOCUMENT: {label}]\n{text.strip()}')
        return '\n\n'.join(parts)

    def truncate(self, text: str, budget: int) -> Tuple[str, bool]:
        if self.tokens(text) <= budget:
            return text, False
        return truncate_to_tokens(text, budget, self.token_counter), True

    def _head_truncate_vault(self, vault_text: str, budget: int, total_sections: int, reason: str) -> VaultSelection:
        content, _ = self.truncate(vault_text, budget)
        return VaultSelection(content=content, sections_selected=1 if content else 0, total_sections=total_sections, reason=reason)

    def select_vault(self, vault_text: str, query: str, budget: int) -> VaultSelection:
        """Pick the most query-relevant vault sections within the budget.

        Any scoring failure, or no section reaching the minimum score, falls
        back to head truncation.
        """
        if self.tokens(vault_text) <= budget:
            return VaultSelection(content=vault_text, sections_selected=1, total_sections=1, reason='full_vault')
        if is_inventory_query(query):
            return self._head_truncate_vault(vault_text, budget, 1, 'inventory_query')

        try:
            sections = split_vault_sections(vault_text)
            keywords = keyword_terms(query)
            scored = sorted(((score_vault_section(s, keywords, query), s) for s in sections), key=lambda pair: pair[0], reverse=True)
            scored = [(score, s) for score, s in scored if score >= self.config.min_section_score]
            if not scored:
                return self._head_truncate_vault(vault_text, budget, len(sections), 'no_scoring_sections')

            selected: List[str] = []
            for score, section in scored:
                candidate = '\n\n'.join(selected + [section])
                if self.tokens(candidate) <= budget:
                    selected.append(section)
                    continue
                remaining = budget - self.tokens('\n\n'.join(selected + ['']))
                if remaining > self.config.partial_section_min_tokens and score >= self.config.partial_section_min_score:
                    partial = truncate_to_tokens(section, remaining, self.token_counter)
                    if partial:
                        selected.append(partial)
                break

            reason = 'high_relevance' if scored[0][0] >= self.config.partial_section_min_score else 'relevant_sections'
            content, _ = self.truncate('\n\n'.join(selected), budget)
            return VaultSelection(content=content, sections_selected=len(selected), total_sections=len(sections), reason=reason)

        except Exception as e:
            logger.warning(f'Vault section selection failed, using head truncation: {e}')
            return self._head_truncate_vault(vault_text, budget, 0, 'selection_error')

    @staticmethod
    def render(parts: Dict[str, str]) -> str:
        headers = {'memory': MEMORY_HEADER, 'documents': DOCUMENT_HEADER, 'vault': VAULT_HEADER}
        blocks = [f'{headers[name]}\n{parts[name]}' for name in SOURCE_ORDER if parts.get(name)]
        return '\n\n'.join(blocks)

    def _enforce_total(self, parts: Dict[str, str], memory_lines: List[str], truncated: Dict[str, bool]) -> str:
        final_context = self.render(parts)
        for _ in range(MAX_TRIM_ROUNDS):
            overflow = self.tokens(final_context) - self.config.total_tokens
            if overflow <= 0:
                break
            for name in reversed(SOURCE_ORDER):
                if not parts.get(name):
                    continue
                if name == 'memory':
                    while memory_lines and overflow > 0:
                        overflow -= self.tokens(memory_lines.pop()) + 1
                    parts['memory'] = '\n'.join(memory_lines)
                else:
                    target = max(0, self.tokens(parts[name]) - overflow)
                    parts[name] = truncate_to_tokens(parts[name], target, self.token_counter)
                truncated[name] = True
                logger.warning(f'Trimmed {name} to fit total context budget of {self.config.total_tokens} tokens')
                break
            final_context = self.render(parts)
        return final_context

    def assemble(self,
                 ranked_memory: Optional[Sequence[MemoryItem]] = None,
                 document_text: DocumentInput = None,
                 vault_text: Optional[str] = None,
                 query: str = '') -> ContextBudgetResult:
        """Assemble the context block.

        Args:
            ranked_memory: Retrieval candidates, records or plain fact strings, best first
            document_text: Document text, or a list of (label, text) pairs
            vault_text: Vault corpus text
            query: The user query, used for vault section scoring

        Returns:
            ContextBudgetResult with the final context and per-source accounting
        """
        budgets = self.budgets()
        truncated = {name: False for name in SOURCE_ORDER}
        parts: Dict[str, str] = {}

        memory_lines, truncated['memory'] = self.assemble_memory(ranked_memory, budgets['memory'])
        parts['memory'] = '\n'.join(memory_lines)

        parts['documents'], truncated['documents'] = self.truncate(self.render_documents(document_text), budgets['documents'])

        vault_selection = None
        if vault_text and vault_text.strip():
            vault_selection = self.select_vault(vault_text.strip(), query, budgets['vault'])
            parts['vault'] = vault_selection.content
            truncated['vault'] = vault_selection.content != vault_text.strip()
        else:
            parts['vault'] = ''

        final_context = self._enforce_total(parts, memory_lines, truncated)

        sources = {}
        for name in SOURCE_ORDER:
            allotted = self.tokens(parts[name])
            sources[name] = SourceBudget(allotted_tokens=allotted,
                                         budget=budgets[name],
                                         truncated=truncated[name],
                                         compliant=allotted <= budgets[name])
        total_tokens = self.tokens(final_context)
        compliant = total_tokens <= self.config.total_tokens and all(s.compliant for s in sources.values())

        telemetry = {
            'per_source_tokens': {name: s.allotted_tokens for name, s in sources.items()},
            'truncated': [name for name, s in sources.items() if s.truncated],
            'total_tokens': total_tokens,
            'compliant': compliant,
            'memory_facts': len(memory_lines),
        }
        if vault_selection:
            telemetry['vault_sections'] = f'{vault_selection.sections_selected}/{vault_selection.total_sections}'
            telemetry['vault_selection'] = vault_selection.reason
        if compliant:
            logger.info(f'Context assembled: {telemetry}')
        else:
            logger.warning(f'Context assembled over budget: {telemetry}')

        return ContextBudgetResult(final_context=final_context,
                                   sources=sources,
                                   total_tokens=total_tokens,
                                   total_budget=self.config.total_tokens,
                                   compliant=compliant,
                                   telemetry=telemetry)
