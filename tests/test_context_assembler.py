"""Tests for context_assembler.py: per-source budgets, total budget and vault section selection."""

import dataclasses

import pytest

from factmem.services.context_assembler import (DOCUMENT_HEADER, MEMORY_HEADER, VAULT_HEADER, ContextAssembler, is_inventory_query,
                                                score_vault_section, split_vault_sections)
from factmem.utils.config import load_config
from factmem.utils.text_signals import keyword_terms
from factmem.utils.token_utils import estimate_tokens

ONBOARDING = 'FILE: onboarding.txt\n' + 'Welcome aboard. ' * 200
REFUNDS = ('FILE: refunds.txt\nRefund policy: customers on the Pro plan may request a refund within 30 days. ' +
           'Details follow. ' * 100)
HISTORY = 'FILE: history.txt\n' + 'The company was started in a garage. ' * 100
SEPARATOR = '\n=====\n'


@pytest.fixture
def context_config():
    return load_config().context


@pytest.fixture
def assembler(context_config):
    return ContextAssembler(context_config)


def facts(count, length=100):
    return [f'Fact {i}: ' + 'x' * length for i in range(count)]


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------

class TestBudgets:

    def test_oversized_sources_are_capped(self, assembler, context_config):
        result = assembler.assemble(facts(1000), document_text='d' * 50000, vault_text='v ' * 50000, query='anything')

        assert result.sources['memory'].allotted_tokens <= context_config.memory_tokens
        assert result.sources['documents'].allotted_tokens <= context_config.document_tokens
        assert result.sources['vault'].allotted_tokens <= context_config.vault_tokens
        assert result.total_tokens <= context_config.total_tokens
        assert result.compliant
        assert all(source.truncated for source in result.sources.values())

    def test_memory_keeps_whole_facts_in_rank_order(self, assembler):
        ranked = facts(1000)
        result = assembler.assemble(ranked)
        lines = result.final_context.split('\n')[1:]
        assert lines == [f'- {fact}' for fact in ranked[:len(lines)]]

    def test_missing_sources_contribute_nothing(self, assembler):
        result = assembler.assemble(['My favorite color is green'])
        assert result.final_context == f'{MEMORY_HEADER}\n- My favorite color is green'
        assert result.per_source_tokens['documents'] == 0
        assert result.per_source_tokens['vault'] == 0
        assert result.compliant

    def test_everything_empty(self, assembler):
        result = assembler.assemble()
        assert result.final_context == ''
        assert result.total_tokens == 0
        assert result.compliant

    def test_sources_in_fixed_order(self, assembler):
        result = assembler.assemble(['My favorite color is green'], document_text='Some notes', vault_text='Vault text')
        context = result.final_context
        assert context.index(MEMORY_HEADER) < context.index(DOCUMENT_HEADER) < context.index(VAULT_HEADER)

    def test_labelled_documents(self, assembler):
        result = assembler.assemble(document_text=[('notes.txt', 'Ship on Friday'), ('empty.txt', '  ')])
        assert '[DOCUMENT: notes.txt]\nShip on Friday' in result.final_context
        assert 'empty.txt' not in result.final_context

    def test_total_budget_trims_vault_first(self, context_config):
        config = dataclasses.replace(context_config, memory_tokens=500, document_tokens=500, vault_tokens=500, total_tokens=1000)
        assembler = ContextAssembler(config)
        memory = facts(10, length=70)

        result = assembler.assemble(memory, document_text='d ' * 5000, vault_text='v ' * 5000)

        assert result.total_tokens <= 1000
        assert result.compliant
        assert result.sources['vault'].truncated
        assert result.sources['vault'].allotted_tokens < 500
        assert not result.sources['memory'].truncated
        assert result.telemetry['memory_facts'] == 10
        assert result.sources['documents'].allotted_tokens > 450

    def test_custom_token_counter(self, context_config):
        config = dataclasses.replace(context_config, memory_tokens=20, document_tokens=20, vault_tokens=20, total_tokens=100)
        count_words = lambda text: len(text.split())
        assembler = ContextAssembler(config, token_counter=count_words)

        result = assembler.assemble(['one two three four five'] * 10, document_text='word ' * 100, vault_text='token ' * 100)

        assert result.sources['memory'].allotted_tokens <= 20
        assert result.sources['documents'].allotted_tokens <= 20
        assert result.sources['vault'].allotted_tokens <= 20
        assert count_words(result.final_context) == result.total_tokens


# ---------------------------------------------------------------------------
# Vault selection
# ---------------------------------------------------------------------------

class TestVault:

    def test_split_at_file_markers(self):
        sections = split_vault_sections(SEPARATOR.join([ONBOARDING, REFUNDS, HISTORY]))
        assert len(sections) == 3
        assert sections[1].startswith('FILE: refunds.txt')

    def test_split_falls_back_to_chunks(self):
        # No markers and every paragraph too short to stand alone
        vault = '\n\n'.join(['z' * 150] * 60)
        sections = split_vault_sections(vault)
        assert [len(s) for s in sections] == [4000, 4000, len(vault) - 8000]

    def test_section_scoring(self):
        query = 'What is the refund policy for the Pro plan?'
        keywords = keyword_terms(query)
        assert score_vault_section(REFUNDS, keywords, query) >= 100
        assert score_vault_section(HISTORY, keywords, query) == 0

    def test_relevant_section_selected(self, context_config):
        assembler = ContextAssembler(dataclasses.replace(context_config, vault_tokens=1000))
        vault = SEPARATOR.join([ONBOARDING, REFUNDS, HISTORY])

        result = assembler.assemble(vault_text=vault, query='What is the refund policy for the Pro plan?')

        assert 'Refund policy: customers on the Pro plan' in result.final_context
        assert 'garage' not in result.final_context
        assert 'Welcome aboard' not in result.final_context
        assert result.telemetry['vault_selection'] == 'high_relevance'
        assert result.sources['vault'].allotted_tokens <= 1000

    def test_no_scoring_section_uses_head_truncation(self, context_config):
        assembler = ContextAssembler(dataclasses.replace(context_config, vault_tokens=500))
        vault = SEPARATOR.join([ONBOARDING, HISTORY])

        result = assembler.assemble(vault_text=vault, query='xyzzy')

        assert result.telemetry['vault_selection'] == 'no_scoring_sections'
        assert result.final_context.startswith(f'{VAULT_HEADER}\nFILE: onboarding.txt')
        assert result.sources['vault'].allotted_tokens <= 500

    def test_small_vault_is_used_whole(self, assembler):
        result = assembler.assemble(vault_text=REFUNDS, query='refund')
        assert result.telemetry['vault_selection'] == 'full_vault'
        assert not result.sources['vault'].truncated

    def test_inventory_query(self, context_config):
        assembler = ContextAssembler(dataclasses.replace(context_config, vault_tokens=500))
        result = assembler.assemble(vault_text=SEPARATOR.join([ONBOARDING, REFUNDS]), query="What's in the vault?")
        assert result.telemetry['vault_selection'] == 'inventory_query'
        assert estimate_tokens(result.final_context) <= 520

    def test_inventory_patterns(self):
        assert is_inventory_query('list all documents')
        assert is_inventory_query('show me everything')
        assert not is_inventory_query('what is our refund policy')
