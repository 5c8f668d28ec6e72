# Common response helpers for V2 routers
# JSON envelope {ok, error, data} and plain-text endpoint documentation.

import textwrap
from typing import Any

from fastapi.responses import JSONResponse, PlainTextResponse

def json_result(ok: bool, error: str, data: Any) -> JSONResponse:
  """Consistent JSON response: {ok, error, data}. 200 on success, 400 on failure."""
  status_code = 200 if ok else 400
  return JSONResponse({"ok": ok, "error": error, "data": data}, status_code=status_code)

def generate_endpoint_docs(docstring: str, router_prefix: str) -> str:
  """Endpoint documentation (plain text UTF-8): the docstring with {router_prefix} replaced."""
  return docstring.replace("{router_prefix}", router_prefix) if docstring else ""

def endpoint_docs_response(endpoint_function, router_prefix: str) -> PlainTextResponse:
  """Plain-text docs response for an endpoint called without query parameters."""
  doc = textwrap.dedent(endpoint_function.__doc__ or "").strip()
  return PlainTextResponse(generate_endpoint_docs(doc, router_prefix), media_type="text/plain; charset=utf-8")
