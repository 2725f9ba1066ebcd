"""Built-in node handlers.

Loop nodes are not listed here: the simulator drives loop bodies itself.
"""

from ..models.core import NodeType
from .control import (
    handle_approval,
    handle_condition,
    handle_delay,
    handle_end,
    handle_parallel,
    handle_question_classifier,
    handle_start,
)
from .integrations import (
    handle_api_call,
    handle_document_extractor,
    handle_knowledge_retrieval,
    handle_sql,
)
from .tasks import (
    handle_cc,
    handle_data_op,
    handle_llm,
    handle_notification,
    handle_pass_through,
    handle_script,
)

DEFAULT_HANDLERS = {
    NodeType.START: handle_start,
    NodeType.END: handle_end,
    NodeType.CONDITION: handle_condition,
    NodeType.PARALLEL: handle_parallel,
    NodeType.QUESTION_CLASSIFIER: handle_question_classifier,
    NodeType.APPROVAL: handle_approval,
    NodeType.DELAY: handle_delay,
    NodeType.API_CALL: handle_api_call,
    NodeType.SQL: handle_sql,
    NodeType.KNOWLEDGE_RETRIEVAL: handle_knowledge_retrieval,
    NodeType.DOCUMENT_EXTRACTOR: handle_document_extractor,
    NodeType.SCRIPT: handle_script,
    NodeType.DATA_OP: handle_data_op,
    NodeType.NOTIFICATION: handle_notification,
    NodeType.CC: handle_cc,
    NodeType.LLM: handle_llm,
    NodeType.CLOUD_PHONE: handle_pass_through,
    NodeType.STORAGE: handle_pass_through,
}


def register_default_handlers(registry) -> None:
    """Register every built-in handler on ``registry``."""
    for node_type, handler in DEFAULT_HANDLERS.items():
        registry.register(node_type, handler)


__all__ = ["DEFAULT_HANDLERS", "register_default_handlers"]
