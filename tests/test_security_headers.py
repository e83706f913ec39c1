import asyncio

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

import app.api as api_module


def _request(path="/api/v1/search"):
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": [],
        "query_string": b"",
    }
    return Request(scope)


def test_security_headers_applied():
    async def run_test():
        async def call_next(_request: Request) -> Response:
            return JSONResponse({"articles": []})

        resp = await api_module.add_security_headers(_request(), call_next)

        assert resp.status_code == 200
        headers = resp.headers
        assert headers.get("X-Content-Type-Options") == "nosniff"
        assert headers.get("X-Frame-Options") == "SAMEORIGIN"
        csp = headers.get("Content-Security-Policy")
        assert csp is not None
        assert "default-src 'self'" in csp

    asyncio.run(run_test())


def test_security_headers_preserve_existing_csp():
    async def run_test():
        async def call_next(_request: Request) -> Response:
            resp = Response()
            resp.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:"
            return resp

        resp = await api_module.add_security_headers(_request("/unsubscribe"), call_next)

        # Existing CSP should not be overridden; other headers still set
        assert resp.headers["Content-Security-Policy"] == "default-src 'self'; img-src 'self' data:"
        assert resp.headers.get("X-Content-Type-Options") == "nosniff"
        assert resp.headers.get("X-Frame-Options") == "SAMEORIGIN"

    asyncio.run(run_test())


def test_security_headers_on_api_and_error_responses(client):
    for resp in (
        client.get("/health"),
        client.get("/api/v1/search", params={"page": 0}),  # 400
        client.get("/api/v1/search/saved"),  # 401
    ):
        assert resp.headers.get("X-Content-Type-Options") == "nosniff"
        assert resp.headers.get("X-Frame-Options") == "SAMEORIGIN"
        assert "default-src 'self'" in (resp.headers.get("Content-Security-Policy") or "")
