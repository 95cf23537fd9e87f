"""HTTP nodes: ``api`` requests and outbound ``webhook`` notifications.

Both resolve ``{{variables}}`` in the URL, headers, query params and body.
The StepExecutor performs the call:

- 2xx: the response body is stored under ``response_variable`` and each
  ``response_mapping`` entry (context key -> JSONPath) is extracted, then the
  ``success`` edge (or an unlabelled edge) is followed
- 4xx: the ``failure`` edge (``error`` is accepted as an alias)
- timeouts, network errors and 5xx: retried by the scheduler

Example config:
    {
        "url": "https://crm.example.com/contacts/{{$contact_id}}",
        "method": "GET",
        "headers": {"Authorization": "Bearer {{crm_token}}"},
        "response_variable": "crm",
        "response_mapping": {"customer_tier": "$.data.tier"}
    }
"""

from typing import Any

from chatflow.core.effects import CallExternal, Effect, HttpCall
from chatflow.core.graph import FlowNode
from chatflow.nodes.base import NodeInput, NodeSpec
from chatflow.utils.errors import ConfigurationError
from chatflow.utils.variables import validate_jsonpath

HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


def _http_call(step: NodeInput, method: str, body: Any) -> HttpCall:
    config = step.config
    resolver = step.resolver()
    headers = {
        key: str(resolver.resolve_value(value))
        for key, value in (config.get("headers") or {}).items()
    }
    params = resolver.resolve_value(config.get("query_params") or {})
    return HttpCall(
        method=method,
        url=resolver.resolve(config["url"]),
        headers=headers,
        params=params,
        body=resolver.resolve_value(body),
        timeout_seconds=config.get("timeout_seconds"),
        response_variable=config.get("response_variable"),
        response_mapping=dict(config.get("response_mapping") or {}),
    )


def build_api(step: NodeInput) -> Effect:
    method = (step.config.get("method") or "GET").upper()
    return CallExternal(_http_call(step, method, step.config.get("body")))


def build_webhook(step: NodeInput) -> Effect:
    """POST by default; without a configured body the run identifiers and context are sent."""
    method = (step.config.get("method") or "POST").upper()
    body = step.config.get("body")
    if body is None:
        body = {
            "execution_id": step.execution_id,
            "conversation_id": step.conversation_id,
            "contact_id": step.contact_id,
            "context": dict(step.context),
        }
    return CallExternal(_http_call(step, method, body))


def _validate(node: FlowNode) -> None:
    data = node.data
    url = data.get("url")
    if not isinstance(url, str) or not (url.startswith(("http://", "https://")) or "{{" in url):
        raise ConfigurationError(f"invalid url '{url}'", node_id=node.id)

    method = data.get("method")
    if method is not None and str(method).upper() not in HTTP_METHODS:
        raise ConfigurationError(f"unsupported HTTP method '{method}'", node_id=node.id)

    timeout = data.get("timeout_seconds")
    if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
        raise ConfigurationError("'timeout_seconds' must be a positive number", node_id=node.id)

    mapping = data.get("response_mapping") or {}
    if not isinstance(mapping, dict):
        raise ConfigurationError("'response_mapping' must be an object", node_id=node.id)
    for key, expression in mapping.items():
        if not isinstance(expression, str):
            raise ConfigurationError(f"mapping for '{key}' must be a string", node_id=node.id)
        try:
            validate_jsonpath(expression)
        except ConfigurationError as e:
            raise ConfigurationError(str(e), node_id=node.id)


API = NodeSpec(
    type="api",
    builder=build_api,
    edges=frozenset({"success", "failure", "error"}),
    required=frozenset({"url"}),
    primary_edges=frozenset({"success"}),
    validate_config=_validate,
)

WEBHOOK = NodeSpec(
    type="webhook",
    builder=build_webhook,
    edges=frozenset({"success", "failure", "error"}),
    required=frozenset({"url"}),
    primary_edges=frozenset({"success"}),
    validate_config=_validate,
)
