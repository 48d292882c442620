"""
Fact extraction service: compresses conversation turns into short atomic facts.
"""

import json
import re
from typing import Dict, List

from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import MemoryConfig
from ..utils.json_utils import parse_json_list
from ..utils.logging_config import get_logger
from ..utils.text_signals import high_entropy_tokens, sanitize_for_storage
from ..utils.token_utils import estimate_tokens, truncate_to_tokens

logger = get_logger(__name__)

MAX_FACTS = 5
FALLBACK_CHARS = 200


class FactExtractionError(Exception):
    """Custom exception for fact extraction errors."""
    pass


class FactExtractionService:
    """Extract atomic facts from user messages using a Bedrock LLM."""

    def __init__(self, llm: BedrockLLM, config: MemoryConfig):
        """Initialize the fact extraction service.

        Args:
            llm: Bedrock LLM client used for compression
            config: Memory settings (fact size limits)
        """
        self.llm = llm
        self.config = config

        logger.info('Initialized FactExtractionService')

    @staticmethod
    def conversation_text(messages: List[Dict[str, str]]) -> str:
        content_list = []
        for msg in messages:
            if msg.get('role') in ['user', 'assistant'] and (msg.get('content') or '').strip():
                content_list.append(f'{msg["role"].capitalize()}:\n{msg["content"]}')
        return '\n\n'.join(content_list)

    @staticmethod
    def user_text(messages: List[Dict[str, str]]) -> str:
        return '\n'.join(msg['content'].strip() for msg in messages if msg.get('role') == 'user' and (msg.get('content') or '').strip())

    def protect_identifiers(self, user_text: str, facts: List[str]) -> List[str]:
        """Append a short fact for any identifier the compression dropped."""
        joined = ' '.join(facts).upper()
        for token in high_entropy_tokens(user_text):
            if token in joined:
                continue
            match = re.search(r"(?:[\w.']+\s+){0,3}" + re.escape(token), user_text, re.IGNORECASE)
            facts.append(f'{match.group(0)}.' if match else f'Identifier: {token}.')
            logger.debug(f'Protected identifier {token} lost during fact compression')
        return facts

    def fallback_fact(self, messages: List[Dict[str, str]]) -> List[str]:
        """Sanitized head of the user text, used when the LLM is unavailable."""
        fact = sanitize_for_storage(self.user_text(messages)[:FALLBACK_CHARS], self.config.min_content_chars)
        return [fact] if fact else []

    def extract_facts(self, owner_id: str, messages: List[Dict[str, str]]) -> List[str]:
        """Compress the user turns of a conversation into atomic facts.

        Args:
            owner_id: Owner the facts belong to
            messages: List of message dicts with 'role' and 'content' keys

        Returns:
            List of fact strings of at most max_fact_tokens tokens each

        Raises:
            FactExtractionError: If the LLM call or its JSON output fails
        """
        user_text = self.user_text(messages)
        if not user_text:
            logger.debug(f'No user content to extract facts from for owner {owner_id}')
            return []

        system_prompt = f"""
You compress conversations into short atomic facts about the USER.

Rules:
- Each fact is one self-contained statement of 3 to 30 words
- Preserve identifiers, codes, names, numbers, prices, dates and times EXACTLY as written
- If the user says "My X is Y", the fact must contain Y verbatim
- Keep ordinal wording such as "first" or "second" when the user uses it
- Exclude questions, greetings, explanations and anything only the assistant said
- Return at most {MAX_FACTS} facts

Return a JSON array of strings with this exact format:
```json
["fact one", "fact two"]
```

Return empty array [] if the user stated no facts."""

        try:
            response = self.llm.generate_json(f'Extract facts from the conversation:\n{self.conversation_text(messages)}',
                                              system_prompt=system_prompt,
                                              max_tokens=400)
            data = parse_json_list(response)
        except BedrockLLMError as e:
            logger.error(f'LLM error during fact extraction: {e}')
            raise FactExtractionError(f'Fact extraction failed: {e}')
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f'Failed to parse fact extraction JSON: {e}')
            raise FactExtractionError(f'Fact extraction returned invalid JSON: {e}')

        facts = []
        for item in data[:MAX_FACTS]:
            if not isinstance(item, str) or not item.strip():
                continue
            fact = item.strip()
            if estimate_tokens(fact) > self.config.max_fact_tokens:
                fact = truncate_to_tokens(fact, self.config.max_fact_tokens)
            facts.append(fact)

        facts = self.protect_identifiers(user_text, facts)
        logger.debug(f'Extracted {len(facts)} facts for owner {owner_id}')
        return facts
