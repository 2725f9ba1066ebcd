"""Handlers for nodes that talk to external systems: HTTP, SQL, knowledge bases, documents."""

import base64
import json
import re
from typing import Any, Dict, List
from urllib.parse import parse_qsl, urlencode

from ..core.exceptions import ExpressionError, HttpCallError, NodeExecutionError
from ..core.expressions import build_scope, evaluate_expression, is_truthy
from ..core.handler_registry import HandlerResult, HandlerRuntime
from ..core.logging import get_logger
from ..core.variables import UNDEFINED, VariableContext, substitute, walk_path
from ..models.configs import (
    APICallConfig,
    DocumentExtractorConfig,
    KeyValueParam,
    KnowledgeRetrievalConfig,
    SQLConfig,
)
from ..models.core import Node

logger = get_logger(__name__)

DEFAULT_API_URL = "https://api.example.com"
HEADER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-_]+$")
SQL_IF_PATTERN = re.compile(
    r"\{%\s*if\s+(.+?)\s*%\}([\s\S]*?)(?:\{%\s*else\s*%\}([\s\S]*?))?\{%\s*endif\s*%\}"
)

MOCK_SELECT_ROWS = [
    {"id": 1, "name": "Sample User", "email": "user@example.com", "created_at": "2024-01-01"},
    {"id": 2, "name": "Another User", "email": "test@example.com", "created_at": "2024-01-02"},
]


def _append_query(url: str, query: str) -> str:
    if not query:
        return url
    return url + ("&" if "?" in url else "?") + query


def _enabled(params: List[KeyValueParam]) -> List[KeyValueParam]:
    return [param for param in params if param.enabled]


def build_request(config: APICallConfig, ctx: VariableContext) -> Dict[str, Any]:
    """Assemble the effective URL, headers and body of an API Call node."""
    mode = config.mode_for("url")
    url = substitute(ctx, config.url or DEFAULT_API_URL, mode)

    query_mode = config.mode_for("query_params")
    query = urlencode([
        (substitute(ctx, param.key, query_mode), substitute(ctx, str(param.value), query_mode))
        for param in _enabled(config.query_params)
    ])
    url = _append_query(url, query)

    header_mode = config.mode_for("headers")
    headers: Dict[str, str] = {}
    for header in _enabled(config.headers):
        if not header.key or not header.key.strip():
            continue
        key = substitute(ctx, header.key, header_mode).strip()
        if key and HEADER_NAME_PATTERN.match(key):
            headers[key] = substitute(ctx, str(header.value), header_mode)

    auth = config.auth
    auth_mode = config.mode_for("auth")
    if auth.type == "basic":
        username = substitute(ctx, auth.username or "", auth_mode)
        password = substitute(ctx, auth.password or "", auth_mode)
        credentials = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        headers["Authorization"] = f"Basic {credentials}"
    elif auth.type == "bearer":
        headers["Authorization"] = f"Bearer {substitute(ctx, auth.token or '', auth_mode)}"
    elif auth.type == "api_key":
        api_key = substitute(ctx, auth.api_key or "", auth_mode)
        api_key_name = substitute(ctx, auth.api_key_name or "X-API-Key", auth_mode)
        if auth.api_key_location == "header":
            headers[api_key_name] = api_key
        elif auth.api_key_location == "query":
            url = _append_query(url, f"{api_key_name}={api_key}")

    body_mode = config.mode_for("body")
    body: Any = ctx.payload
    if config.body_type == "json":
        body_text = substitute(ctx, config.body or "", body_mode)
        if body_text:
            try:
                body = json.loads(body_text)
            except ValueError:
                logger.debug("API body is not valid JSON, sending the payload instead")
    elif config.body_type == "x-www-form-urlencoded":
        body = urlencode(parse_qsl(substitute(ctx, config.body or "", body_mode), keep_blank_values=True))
    elif config.body:
        body = substitute(ctx, config.body, body_mode)

    return {"url": url, "headers": headers, "body": body}


def _wire_body(method: str, body_type: str, body: Any, headers: Dict[str, str]):
    """Encode the body for sending; GET and HEAD never carry one."""
    if method in ("GET", "HEAD"):
        return None, headers
    if body_type == "json":
        if "Content-Type" not in headers:
            headers = {**headers, "Content-Type": "application/json"}
        return json.dumps(body if body not in (None, "") else {}), headers
    if body_type == "x-www-form-urlencoded":
        if "Content-Type" not in headers:
            headers = {**headers, "Content-Type": "application/x-www-form-urlencoded"}
        return body, headers
    if body is None or isinstance(body, (str, bytes)):
        return body, headers
    return json.dumps(body), headers


def handle_api_call(node: Node, config: APICallConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Perform (or synthesize) the configured HTTP call.

    Any 2xx status is a success. Network failures fail the node with status 0.
    """
    method = (config.method or "GET").upper()
    request = build_request(config, ctx)
    timeout = config.timeout or runtime.default_http_timeout_ms
    wire_body, wire_headers = _wire_body(method, config.body_type, request["body"], request["headers"])

    status = 0
    response_headers: Dict[str, str] = {}
    raw_data: Any = None
    error = None
    try:
        response = runtime.http_client.send(method, request["url"], wire_headers, wire_body, timeout)
        status = response.status
        response_headers = response.headers
        raw_data = response.data
        if not response.ok:
            error = f"API Error: {response.status} {response.reason}".strip()
    except HttpCallError as e:
        error = e.message

    data = raw_data
    extract_path = config.response_handling.extract_path
    if extract_path and raw_data:
        extracted = walk_path(raw_data, extract_path.split("."))
        data = None if extracted is UNDEFINED else extracted

    trace_input = {
        "api_url": request["url"],
        "method": method,
        "headers": request["headers"],
        "body": request["body"],
        "bodyType": config.body_type or "none",
        "timeout": timeout,
        "retryConfig": config.retry.model_dump(by_alias=True),
    }
    output = {
        "status": status,
        "data": data,
        "response": data,
        "headers": response_headers,
        "raw_data": raw_data,
    }
    return HandlerResult(
        success=error is None,
        output=output,
        trace_input=trace_input,
        trace_output={**output, "originalUrl": config.url or DEFAULT_API_URL},
        error=error,
    )


def process_sql_template(sql: str, ctx: VariableContext, mode) -> str:
    """Expand ``{% if %}...{% else %}...{% endif %}`` blocks, then variables.

    A block whose condition cannot be evaluated is left as written.
    """
    scope = build_scope(ctx)

    def replace(match):
        condition, true_part, false_part = match.group(1), match.group(2), match.group(3)
        try:
            result = evaluate_expression(condition, scope)
        except ExpressionError:
            return match.group(0)
        return true_part if is_truthy(result) else (false_part or "")

    return substitute(ctx, SQL_IF_PATTERN.sub(replace, sql), mode)


def handle_sql(node: Node, config: SQLConfig, ctx: VariableContext, runtime: HandlerRuntime) -> HandlerResult:
    """Render the statement and return mocked rows."""
    raw_sql = config.sql or ""
    processed_sql = process_sql_template(raw_sql, ctx, config.mode_for("sql"))
    database_id = config.database_id or "default"

    is_select = processed_sql.strip().lower().startswith("select")
    if is_select:
        results: Any = [dict(row) for row in MOCK_SELECT_ROWS]
        affected_rows = len(results)
        data = (results[0] if results else None) if config.return_single_record else results
    else:
        results = {"affectedRows": 1, "success": True}
        affected_rows = 1
        data = []

    output = {
        "data": data,
        "affectedRows": affected_rows,
        "output": results,
        "success": True,
        "database": database_id,
    }
    trace_input = {
        "database_id": database_id,
        "original_sql": raw_sql,
        "processed_sql": processed_sql,
        "options": {
            "returnSingleRecord": config.return_single_record,
            "unsafeMode": config.unsafe_mode,
        },
    }
    return HandlerResult(success=True, output=output, trace_input=trace_input)


def handle_knowledge_retrieval(node: Node, config: KnowledgeRetrievalConfig, ctx: VariableContext,
                               runtime: HandlerRuntime) -> HandlerResult:
    """Return mocked knowledge segments for the substituted query."""
    query = substitute(ctx, config.query or "", config.mode_for("query"))
    trace_input = {"query": query, "dataset_ids": list(config.dataset_ids)}

    references = [
        {"id": "seg_1", "content": f"First knowledge segment about {query}.", "score": 0.92, "title": "Product document A"},
        {"id": "seg_2", "content": f"Second reference about {query} with more detail.", "score": 0.85, "title": "Technical specification B"},
    ][:max(config.top_k, 0)]
    result = "\n\n".join(reference["content"] for reference in references)
    output = {
        "result": result,
        "context": f"Knowledge retrieved for \"{query}\":\n\n{result}",
        "references": references,
    }

    if not config.dataset_ids:
        raise NodeExecutionError(
            "No knowledge base selected",
            node_id=node.id,
            output=output,
            details={"input": trace_input},
        )
    return HandlerResult(success=True, output=output, trace_input=trace_input)


def handle_document_extractor(node: Node, config: DocumentExtractorConfig, ctx: VariableContext,
                              runtime: HandlerRuntime) -> HandlerResult:
    """Return mocked text extracted from the substituted document URL."""
    file_url = substitute(ctx, config.file_url or "", config.mode_for("file_url"))
    trace_input = {"file_url": file_url, "mode": config.extraction_mode}

    if not file_url:
        raise NodeExecutionError(
            "No valid file URL provided",
            node_id=node.id,
            details={"input": trace_input},
        )

    output: Dict[str, Any] = {
        "text": f"[Simulated extraction from: {file_url}]\n\n"
                f"Plain text extracted from the document. Extraction mode: {config.extraction_mode}."
    }
    fields = [field.get("name") if isinstance(field, dict) else str(field) for field in config.extract_fields]
    if fields:
        output["fields"] = {name: None for name in fields if name}
    return HandlerResult(success=True, output=output, trace_input=trace_input)
