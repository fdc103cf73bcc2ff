"""Handler entry point generation for workload bundles.

Every bundle carries a generated ``skiff_handler`` module that adapts the
platform event to the workload's call signature.
"""

from jinja2 import Template

from skiff.models.workload import WorkloadDeclaration

HANDLER_MODULE = "skiff_handler"
HANDLER_ENTRY = f"{HANDLER_MODULE}.handle"

# Jinja2 template for the generated handler module
HANDLER_TEMPLATE = """\
# Generated entry point for workload {{ name }} ({{ kind }})
# Source: {{ source_path }}:{{ line }}
import importlib

from skiff.runtime import QueueRecord, Request, Response

WORKLOAD = {{ name | tojson }}
KIND = {{ kind | tojson }}

_module = importlib.import_module({{ module | tojson }})
_function = getattr(_module, {{ function | tojson }})


def handle(event, secrets, config):
{%- if kind == "endpoint" %}
    request = Request(
        body=event.get("body") or "",
        headers=dict(event.get("headers") or {}),
        path=event.get("path") or {{ url_path | tojson }},
        method=event.get("method") or "POST",
    )
    result = _function(request, secrets, config)
    if isinstance(result, Response):
        return {"status": result.status, "body": result.body, "headers": result.headers}
    return {"status": 200, "body": result, "headers": {}}
{%- elif kind == "worker" %}
    records = [
        QueueRecord(
            body=record["body"],
            message_id=record.get("message_id") or "local-%d" % index,
            attributes=dict(record.get("attributes") or {}),
        )
        for index, record in enumerate(event.get("records") or [])
    ]
    return _function(records, secrets, config)
{%- else %}
    return _function(secrets, config)
{%- endif %}
"""


def generate_handler(declaration: WorkloadDeclaration) -> str:
    """Render the handler module of a workload bundle.

    Args:
        declaration: Workload the bundle is built for

    Returns:
        Python source of ``skiff_handler.py``
    """
    template = Template(HANDLER_TEMPLATE)
    params = declaration.params

    return template.render(
        name=declaration.name,
        kind=declaration.kind.value,
        module=declaration.source.module,
        function=declaration.source.function,
        source_path=declaration.source.path,
        line=declaration.source.line,
        url_path=getattr(params, "url_path", "/"),
    ) + "\n"
