"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from factmem.services.memory_management import InvalidRequestError, MemoryManagementError, MemoryManagementService
from factmem.utils.config import config
from factmem.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Fact Memory')
memory_service = MemoryManagementService()


@mcp.tool()
def store_fact(owner_id: str, text: str, explicit: Optional[bool] = None) -> Dict[str, Any]:
    """Store a fact for an owner.

    Args:
        owner_id: Owner ID
        text: Fact text; phrases like "remember this" mark it as explicit
        explicit: Force explicit-storage handling

    Returns:
        Dict with action, record_id, category and superseded_ids

    Raises:
        Exception: If storage fails
    """
    try:
        result = memory_service.store_fact(owner_id, text, explicit=explicit)
        return {
            'action': result.action.value,
            'record_id': result.record_id,
            'category': result.category,
            'superseded_ids': result.superseded_ids,
            'embedding_status': result.embedding_status,
        }

    except InvalidRequestError as e:
        raise ValueError(str(e))
    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP store: {e}')
        raise Exception(f'Fact storage failed: {e}')


@mcp.tool()
def store_interaction(owner_id: str, messages: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    """Extract facts from a conversation turn and store them.

    Args:
        owner_id: Owner ID
        messages: List of {'role': ..., 'content': ...} dicts

    Returns:
        List of dicts with action, record_id and category per stored fact
    """
    try:
        results = memory_service.store_interaction(owner_id, messages)
        logger.debug(f'MCP store_interaction stored {len(results)} facts for owner {owner_id}')
        return [{'action': r.action.value, 'record_id': r.record_id, 'category': r.category} for r in results]

    except InvalidRequestError as e:
        raise ValueError(str(e))
    except MemoryManagementError as e:
        logger.error(f'Memory management error in MCP store_interaction: {e}')
        raise Exception(f'Fact storage failed: {e}')


@mcp.tool()
def retrieve_context(owner_id: str, query: str, document_text: Optional[str] = None, vault_text: Optional[str] = None) -> Dict[str, Any]:
    """Retrieve the owner's relevant facts assembled into a budgeted context block.

    Args:
        owner_id: Owner ID
        query: Natural language query
        document_text: Optional document text to include
        vault_text: Optional vault text to select sections from

    Returns:
        Dict with final_context, per_source_tokens, total_tokens and compliant
    """
    try:
        result = memory_service.retrieve_context(owner_id, query, document_text=document_text, vault_text=vault_text)
        logger.debug(f'MCP retrieve assembled {result.total_tokens} tokens for owner {owner_id}')
        return {
            'final_context': result.final_context,
            'per_source_tokens': result.per_source_tokens,
            'total_tokens': result.total_tokens,
            'compliant': result.compliant,
        }

    except InvalidRequestError as e:
        raise ValueError(str(e))


@mcp.tool()
def validate_answer(query: str, context: str, draft: str) -> Dict[str, Any]:
    """Run the correctness validators on a draft answer.

    Args:
        query: The user query
        context: The context the draft was generated from
        draft: Draft answer

    Returns:
        Dict with final_answer and the list of applied corrections
    """
    try:
        result = memory_service.validate_answer(query, context, draft)
        corrections: List[Dict[str, Any]] = [{
            'name': step.name,
            'reason': step.reason
        } for step in result.telemetry if step.applied]
        return {'final_answer': result.final_answer, 'corrections': corrections}

    except InvalidRequestError as e:
        raise ValueError(str(e))


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
